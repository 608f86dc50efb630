"""B1mapPy run orchestration: parameters, protocol dispatch, outputs and provenance."""

from __future__ import annotations

import json
import logging
import os
import platform
import shlex
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np
import torch

from b1mappy._version import __version__
from b1mappy.core.configuration import configuration
from b1mappy.core.dispatch import dispatch
from b1mappy.core.io import Volume
from b1mappy.core.logfmt import (
    OUTPUT_MODE_LEVELS,
    STATUS,
    VERBOSE,
    ensure_custom_levels_registered,
    log_banner,
    log_table,
)
from b1mappy.core.masking import mask_output_path
from b1mappy.core.metadata import to_jsonable, init_output_metadata
from b1mappy.core.parameters import B1MapParameters, resolve_b1map_params
from b1mappy.core.progress import set_progress_enabled
from b1mappy.core.protocol import B1MapResult, Collaborators
from b1mappy.maps.map_metadata import get_map_spec_safe


SUPPLEMENTARY_DIR = 'Supplementary'


class _B1Formatter(logging.Formatter):
    """Consistent, readable console/file formatting.

    - INFO:    "B1: <message>"
    - WARNING: "B1 [WARNING]: <message>"
    - ERROR:   "B1 [ERROR]: <message>"
    """

    def format(self, record: logging.LogRecord) -> str:
        prefix = "B1"
        if record.levelno in (logging.INFO, STATUS):
            return f"{prefix}: {record.getMessage()}"
        return f"{prefix} [{record.levelname}]: {record.getMessage()}"


class B1Mapper:
    """One B1 mapping run: resolve parameters, compute, save outputs and provenance."""

    def __init__(self, cfg_file, collaborators: Optional[Collaborators] = None) -> None:
        self.configuration = configuration(cfg_file)
        self.collaborators = collaborators or Collaborators(
            device=self.configuration.DEVICE,
            n_jobs=self.configuration.n_jobs,
        )
        self.params: Optional[B1MapParameters] = None
        self.result: Optional[B1MapResult] = None
        self.outputs: List[str] = []
        self.output_specs: List[Dict] = []
        self._timings: Dict[str, float] = {}
        self._argv_str: Optional[str] = None
        self._total_runtime_s: Optional[float] = None
        self._run_started_utc: Optional[str] = None
        self._run_finished_utc: Optional[str] = None
        self.configure_logging()
        return

    def _write_run_manifest(self) -> None:
        from b1mappy.core.provenance import write_run_manifest

        write_run_manifest(self, b1mappy_version=__version__)

    def _write_final_config_snapshot(self) -> None:
        cfg = self.configuration.cfg_file
        for section in ['INPUT', 'GLOBAL', 'DEBUG']:
            if not cfg.has_section(section):
                cfg.add_section(section)

        cfg.set('INPUT', 'b1_type', str(self.configuration.b1_type))
        cfg.set('GLOBAL', 'output_mode', str(self.configuration.output_mode))
        cfg.set('GLOBAL', 'b1_defaults', str(self.configuration.b1_defaults_path or ''))

        snapshot_path = os.path.join(self.save_dir, 'config_final.ini')
        with open(snapshot_path, 'w', encoding='utf-8') as f:
            cfg.write(f)
        logging.info(f"Config snapshot saved: {os.path.basename(snapshot_path)}")

    def _log_verbose_runtime_environment(self) -> None:
        try:
            argv_str = shlex.join(sys.argv)
        except TypeError:
            argv_str = ' '.join(str(a) for a in sys.argv)
        self._argv_str = argv_str

        rows = [
            ('B1mapPy Version', __version__),
            ('Python', sys.version.split()[0]),
            ('Platform', platform.platform()),
            ('NumPy', np.__version__),
            ('PyTorch', torch.__version__),
            ('Working Dir', os.getcwd()),
            ('Command', argv_str),
            ('CUDA Available', torch.cuda.is_available()),
            ('Selected DEVICE', self.configuration.DEVICE),
        ]
        log_table('Runtime Environment', rows, level=VERBOSE)

    def _base_dir(self) -> Path:
        if self.configuration.save_dir_override:
            return Path(self.configuration.save_dir_override)
        if self.configuration.b1_files:
            return Path(self.configuration.b1_files[0]).parent.absolute()
        return Path.cwd()

    def configure_logging(self) -> None:
        stamp = datetime.now().strftime('%Y%m%d_%H%M')
        run_tag = self.configuration.run_tag
        prefix = f"{stamp}_" + (f"{run_tag}_" if run_tag else "")

        self.save_dir = str(self._base_dir() / f'{prefix}B1_{self.configuration.b1_type}_Results')
        os.makedirs(self.save_dir, exist_ok=True)

        ensure_custom_levels_registered()
        level = OUTPUT_MODE_LEVELS[self.configuration.output_mode]

        #### Configure Log File ####
        log_file = os.path.join(self.save_dir, 'log')
        file_handler = logging.FileHandler(log_file, mode='w', encoding='utf-8')
        file_handler.setLevel(min(level, logging.INFO))
        file_handler.setFormatter(_B1Formatter())

        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(_B1Formatter())

        logging.basicConfig(
            level=min(level, logging.INFO),
            handlers=[file_handler, console_handler],
            force=True,
        )
        if self.configuration.output_mode == 'quiet':
            set_progress_enabled(False)

        self._write_final_config_snapshot()

        if self.configuration.verbose_flag:
            self._log_verbose_runtime_environment()

        log_banner('Input Parameters')
        log_table('Input Files', [
            ('B1 Protocol', self.configuration.b1_type),
            *[(f'B1 File {i + 1}', os.path.basename(f)) for i, f in enumerate(self.configuration.b1_files)],
            *[(f'B0 File {i + 1}', os.path.basename(f)) for i, f in enumerate(self.configuration.b0_files)],
        ])
        logging.info(
            f"  Run Config   : protocol={self.configuration.b1_type}, device={self.configuration.DEVICE}, "
            f"n_jobs={self.configuration.n_jobs}, output_mode={self.configuration.output_mode}, "
            f"custom_defaults={bool(self.configuration.custom_defaults)}"
        )
        return

    def _log_parameters(self, params: B1MapParameters) -> None:
        for d in params.diagnostics:
            if d.level == 'warning':
                logging.warning(d.message)
            else:
                logging.info(d.message)

        if params.custom_defaults:
            logging.warning(
                "Parameter settings for B1 mapping loaded from customized defaults. "
                "Check them carefully before use."
            )

        if not self.configuration.verbose_flag or not params.b1_available:
            return
        acq = {k: v for k, v in to_jsonable(params.as_dict())['acquisition'].items() if v not in (None, [])}
        log_table('Acquisition Parameters', acq.items(), level=VERBOSE)
        log_table('Processing Parameters', to_jsonable(params.as_dict())['processing'].items(), level=VERBOSE)

    def resolve(self) -> B1MapParameters:
        start = time.time()
        log_banner('Resolving B1 Mapping Parameters')
        params = resolve_b1map_params(
            self.configuration.b1_type,
            self.configuration.b1_files,
            self.configuration.b0_files,
            self.collaborators.metadata,
            self.configuration.defaults,
            custom_defaults=self.configuration.custom_defaults,
            scafac=self.configuration.scafac,
        )
        self._log_parameters(params)

        params_path = os.path.join(self.save_dir, 'b1map_params.json')
        with open(params_path, 'w', encoding='utf-8') as f:
            json.dump(to_jsonable(params.as_dict()), f, indent=2, sort_keys=True)
        logging.info(f"Resolved parameters saved: {os.path.basename(params_path)}")

        self.params = params
        self._timings['resolve_s'] = float(time.time() - start)
        return params

    def calc(self) -> Optional[B1MapResult]:
        start = time.time()
        self.result = dispatch(self.params, self.collaborators)
        self._timings['calc_s'] = float(time.time() - start)
        return self.result

    def _write_output(self, volume: Volume, directory: str, role: str, *, intermediate: bool = False) -> str:
        path = os.path.join(directory, f"{volume.name}.nii")
        self.collaborators.io.write(path, volume)

        spec = get_map_spec_safe(role, intermediate=intermediate)
        input_files = list(self.params.b1_files) + list(self.params.b0_files)
        header = init_output_metadata(
            input_files,
            to_jsonable(self.params.as_dict()),
            version=__version__,
            procstep_suffix=self.result.protocol_description,
            imtype=spec['description'] or role,
            units=spec['units'] or '',
        )
        self.collaborators.metadata.write(path, header)
        self.output_specs.append({'file': os.path.basename(path), 'role': role, **spec})
        return path

    def save(self) -> List[str]:
        if self.result is None:
            logging.log(STATUS, "No B1 map computed; nothing to save.")
            return []

        logging.info(f'Saving results to: {self.save_dir}')
        result = self.result
        outputs = [
            self._write_output(result.reference, self.save_dir, 'B1ref'),
            self._write_output(result.b1map, self.save_dir, 'B1map'),
        ]

        if result.mask is not None:
            mask_path = mask_output_path(outputs[0])
            self.collaborators.io.write(mask_path, result.mask)
            self.output_specs.append({'file': os.path.basename(mask_path), 'role': 'mask', **get_map_spec_safe('mask')})

        if result.intermediates:
            sup_dir = os.path.join(self.save_dir, SUPPLEMENTARY_DIR)
            os.makedirs(sup_dir, exist_ok=True)
            for role, volume in result.intermediates.items():
                self._write_output(volume, sup_dir, role, intermediate=True)
            logging.info(f"{len(result.intermediates)} intermediate maps saved to: {sup_dir}")

        self.outputs = outputs
        for p in outputs:
            logging.log(STATUS, f"Output written: {os.path.basename(p)}")
        return outputs

    def __call__(self) -> List[str]:
        log_banner(f'Starting B1 mapping ({self.configuration.b1_type})')

        self._run_started_utc = datetime.utcnow().isoformat(timespec='seconds') + 'Z'
        start_t = time.time()

        self.resolve()
        self.calc()
        outputs = self.save()

        self._total_runtime_s = float(time.time() - start_t)
        self._run_finished_utc = datetime.utcnow().isoformat(timespec='seconds') + 'Z'
        self._write_run_manifest()
        return outputs


def run(cfg_dct):
    from b1mappy.core.runner import run as _run

    return _run(cfg_dct)
