from __future__ import annotations

from pathlib import Path
from typing import Optional


STANDARD_DEFAULTS_NAME = "b1_standard_defaults.ini"


def get_configs_dir() -> Path:
    """Return the on-disk directory containing shipped config files.

    Works for editable installs and installed wheels.
    """

    try:
        import importlib.resources as resources

        return Path(resources.files("b1mappy.configs"))
    except (AttributeError, ModuleNotFoundError, TypeError):
        # importlib.resources.files is missing on Python 3.8.
        return Path(__file__).resolve().parent


def standard_defaults_path() -> Path:
    return get_configs_dir() / STANDARD_DEFAULTS_NAME


def resolve_config_path(raw: str, *, cfg_source: Optional[str] = None) -> str:
    """Resolve a user-supplied path from a configuration file.

    Tried in order: the path as given, relative to the folder of the
    configuration file (``cfg_source``), and a bare file name inside the
    shipped configs folder. The raw value is returned when nothing exists.
    """

    if not raw:
        return raw

    raw = str(raw).strip()
    if Path(raw).exists():
        return raw

    if cfg_source and not Path(raw).is_absolute():
        candidate = (Path(cfg_source).resolve().parent / raw).resolve()
        if candidate.exists():
            return str(candidate)

    candidate = get_configs_dir() / Path(raw).name
    if candidate.exists():
        return str(candidate)

    return raw
