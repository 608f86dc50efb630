"""Packaged B1 defaults and configuration templates.

This package ships:
- `b1_standard_defaults.ini`: standard per-protocol defaults
- `Configuration_B1_Template.ini`: run configuration template

Use `get_configs_dir()` to locate these resources on disk.
"""

from __future__ import annotations

from .paths import STANDARD_DEFAULTS_NAME, get_configs_dir, resolve_config_path, standard_defaults_path

__all__ = [
    "STANDARD_DEFAULTS_NAME",
    "get_configs_dir",
    "resolve_config_path",
    "standard_defaults_path",
]
