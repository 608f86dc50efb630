"""Console entry point of B1mapPy (``B1mapPy <command> ...``)."""

from __future__ import annotations

import argparse
import sys
from typing import Dict, Optional, Sequence, Tuple

from b1mappy import __version__
from b1mappy.cli import CLI as MapCLI
from b1mappy.core.parameters import PROTOCOL_TAGS


COMMANDS = {'run': MapCLI}


def build_parser() -> Tuple[argparse.ArgumentParser, Dict[str, MapCLI]]:
    """Top-level parser plus the sub-command handlers registered on it."""
    parser = argparse.ArgumentParser(
        prog='B1mapPy',
        description='B1mapPy command line interface',
        epilog='Supported b1_type values: ' + ', '.join(PROTOCOL_TAGS),
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    subparsers = parser.add_subparsers(dest='command', metavar='command')

    handlers = {}
    for name, factory in COMMANDS.items():
        handler = factory(subparsers)
        handler.add_subparser_args()
        handlers[name] = handler
    return parser, handlers


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser, handlers = build_parser()
    argv = list(sys.argv[1:] if argv is None else argv)

    ns = parser.parse_args(argv) if argv else None
    if ns is None or ns.command is None:
        parser.print_help()
        return

    handler = handlers[ns.command]
    handler.run(handler.validate_args(vars(ns)))


if __name__ == "__main__":
    main()
