"""Output modes and the banner/table helpers shared by the B1 engines."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional, Tuple


# STATUS: run milestones, the only messages printed in quiet mode.
# VERBOSE: parameter tables and runtime details.
STATUS = 25
VERBOSE = 12

OUTPUT_MODE_LEVELS = {
    'quiet': STATUS,
    'standard': logging.INFO,
    'verbose': VERBOSE,
    'debug': logging.DEBUG,
}

BANNER_WIDTH = 79


def ensure_custom_levels_registered() -> None:
    """Give the custom levels readable names in log records (idempotent)."""
    if logging.getLevelName(STATUS) != "STATUS":
        logging.addLevelName(STATUS, "STATUS")
    if logging.getLevelName(VERBOSE) != "VERBOSE":
        logging.addLevelName(VERBOSE, "VERBOSE")


def log_banner(
    title: str,
    *,
    logger: Optional[logging.Logger] = None,
    level: int = logging.INFO,
) -> None:
    lg = logger or logging.getLogger()
    rule = f"# {'-' * BANNER_WIDTH} #"
    for line in (rule, f"# {str(title).center(BANNER_WIDTH)} #", rule):
        lg.log(level, line)


def log_table(
    title: str,
    rows: Iterable[Tuple[str, Any]],
    *,
    logger: Optional[logging.Logger] = None,
    level: int = logging.INFO,
) -> None:
    """Log ``rows`` as aligned ``name : value`` lines under a centred title."""
    lg = logger or logging.getLogger()
    rows = [(str(name), value) for name, value in rows]
    width = max((len(name) for name, _ in rows), default=0)
    rule = f" {'-' * 29} "
    lg.log(level, rule)
    lg.log(level, str(title).center(31))
    lg.log(level, rule)
    for name, value in rows:
        lg.log(level, f"  {name.ljust(width)} : {value}")
