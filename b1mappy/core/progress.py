"""Progress reporting for the plane-by-plane B1 computations."""

from __future__ import annotations

import os
import sys
from typing import Optional

from tqdm import tqdm


PLANE_BAR_FORMAT = "|{bar:60}|{percentage:3.0f}% ({n_fmt}/{total_fmt} planes) [{desc}: {elapsed} < {remaining}]"

_TRUE_WORDS = {"1", "true", "yes", "on"}
_FALSE_WORDS = {"0", "false", "no", "off"}

_forced_state: Optional[bool] = None


def set_progress_enabled(enabled: Optional[bool]) -> None:
    """Force progress bars on/off for the whole process; None restores auto-detection.

    Quiet output mode switches bars off through this call.
    """
    global _forced_state
    _forced_state = enabled


def is_progress_enabled(explicit: Optional[bool] = None) -> bool:
    """Resolve whether bars are drawn.

    An explicit argument wins, then the process-wide override, then
    B1MAPPY_PROGRESS, and finally whether stderr is a terminal.
    """
    if explicit is not None:
        return bool(explicit)
    if _forced_state is not None:
        return bool(_forced_state)

    env = os.environ.get("B1MAPPY_PROGRESS", "").strip().lower()
    if env in _TRUE_WORDS:
        return True
    if env in _FALSE_WORDS:
        return False

    try:
        return bool(sys.stderr.isatty())
    except Exception:
        return False


def make_progress_bar(
    *,
    total: int,
    desc: str,
    enabled: Optional[bool] = None,
    bar_format: str = PLANE_BAR_FORMAT,
) -> tqdm:
    """Create the tqdm bar used for plane loops (planes completed out of ``total``)."""
    return tqdm(
        total=int(total),
        desc=str(desc),
        ascii=True,
        bar_format=bar_format,
        disable=not is_progress_enabled(enabled),
        leave=False,
    )
