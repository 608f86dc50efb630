"""Command-line interface for B1mapPy.

Computes a B1+ (transmit field) bias map from the images listed in a
configuration file, for one of the supported protocols (AFI, DAM, SE/STE
EPI, vendor flip-angle maps or a pre-processed map).

Example:
    B1mapPy run --cfg_path path/to/config.ini
"""

import argparse
import os

from b1mappy.core import runner


OUTPUT_MODES = ("quiet", "standard", "verbose", "debug")


class CLI:
    def __init__(self, subparsers) -> None:
        """
        :param subparsers: Sub-command registry of the master parser
        :type subparsers: argparse._SubParsersAction
        """
        self.subparsers = subparsers

    def validate_args(self, args):
        """Check that the configuration file exists.

        :param args: Parsed user inputs, as a dict (from master_cli) or an argparse.Namespace
        :return: ``args`` with ``cfg_path`` normalised to a string
        :raises FileNotFoundError: when no configuration file is given or it does not exist
        """
        as_dict = isinstance(args, dict)
        cfg_path = args.get('cfg_path') if as_dict else getattr(args, 'cfg_path', None)

        if cfg_path is None:
            raise FileNotFoundError("No configuration file given. Use --cfg_path path/to/config.ini")
        cfg_path = str(cfg_path)
        if not os.path.exists(cfg_path):
            raise FileNotFoundError(f"Configuration file not found: {cfg_path}")

        if as_dict:
            args['cfg_path'] = cfg_path
        else:
            args.cfg_path = cfg_path
        return args

    def run(self, args):
        runner.run(args if isinstance(args, dict) else vars(args))

    def add_subparser_args(self) -> argparse.ArgumentParser:
        subparser = self.subparsers.add_parser("run", description="compute a B1+ map")
        subparser.add_argument(
            "--cfg_path",
            type=str,
            dest='cfg_path',
            required=True,
            help="The path to the configuration file",
        )
        subparser.add_argument(
            "--output_mode",
            type=str,
            default=None,
            choices=OUTPUT_MODES,
            help="Terminal output mode (overrides config): " + " | ".join(OUTPUT_MODES),
        )
        return subparser
