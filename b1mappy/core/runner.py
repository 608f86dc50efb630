from __future__ import annotations

import configparser
import logging
import time

from b1mappy.core.validation import ConfigurationError


def load_run_config(cfg_path: str, output_mode: str | None = None) -> configparser.ConfigParser:
    """Read a run configuration and record where it came from.

    ``output_mode`` (from the command line) overrides the file's setting.
    """
    input_cfg_file = configparser.ConfigParser()
    if not input_cfg_file.read(cfg_path):
        raise ConfigurationError(f"Could not read configuration file: {cfg_path}")

    if not input_cfg_file.has_section('DEBUG'):
        input_cfg_file.add_section('DEBUG')
    input_cfg_file.set('DEBUG', 'cfg_source', str(cfg_path))

    if output_mode:
        if not input_cfg_file.has_section('GLOBAL'):
            input_cfg_file.add_section('GLOBAL')
        input_cfg_file.set('GLOBAL', 'output_mode', str(output_mode))
    return input_cfg_file


def run(cfg_dct):
    """Entrypoint used by the CLI to run one B1 mapping from a config path."""
    cfg_path = cfg_dct.get('cfg_path')
    if not cfg_path:
        raise ConfigurationError("A configuration file is required (--cfg_path).")
    input_cfg_file = load_run_config(cfg_path, cfg_dct.get('output_mode'))

    from b1mappy.core.b1map import B1Mapper

    start = time.time()
    outputs = B1Mapper(input_cfg_file).__call__()
    end = time.time()
    logging.info(f"Total Runtime: {round(end-start,4)} sec")
    return outputs
