"""Run manifest (``run_manifest.json``) written next to the outputs of a run.

Writing the manifest never aborts a computation: failures are logged.
"""

from __future__ import annotations

import json
import logging
import platform
import sys
from datetime import datetime
from importlib import metadata
from pathlib import Path
from typing import Any, Dict

import torch


MANIFEST_NAME = "run_manifest.json"
SCHEMA_VERSION = 1

# distribution names as installed
_RUNTIME_PACKAGES = ("numpy", "scipy", "torch", "nibabel", "dipy", "joblib")


def _installed_version(dist: str) -> str:
    try:
        return metadata.version(dist)
    except metadata.PackageNotFoundError:
        return "unavailable"


def _cuda_info() -> Dict[str, Any]:
    available = bool(torch.cuda.is_available())
    return {
        "available": available,
        "device_name": torch.cuda.get_device_name(torch.cuda.current_device()) if available else None,
    }


def build_run_manifest(mapper: Any, *, b1mappy_version: str) -> Dict[str, Any]:
    """Collect the provenance of a finished (or failed) `B1Mapper` run."""
    configuration = mapper.configuration
    params = mapper.params
    save_dir = Path(mapper.save_dir)
    cfg = configuration.cfg_file

    return {
        "schema_version": SCHEMA_VERSION,
        "created_utc": datetime.utcnow().isoformat(timespec="seconds") + "Z",
        "run_started_utc": mapper._run_started_utc,
        "run_finished_utc": mapper._run_finished_utc,
        "total_runtime_s": mapper._total_runtime_s,
        "save_dir": str(save_dir),
        "protocol": configuration.b1_type,
        "resolved_protocol": None if params is None else params.protocol,
        "b1_available": bool(params is not None and params.b1_available),
        "custom_defaults": bool(configuration.custom_defaults),
        "defaults_file": configuration.b1_defaults_path,
        "device": configuration.DEVICE,
        "n_jobs": configuration.n_jobs,
        "output_mode": configuration.output_mode,
        "cfg_source": cfg.get("DEBUG", "cfg_source", fallback=None),
        "inputs": {
            "b1_files": list(configuration.b1_files),
            "b0_files": list(configuration.b0_files),
            "scafac": configuration.scafac,
        },
        "diagnostics": [] if params is None else [
            {"level": d.level, "code": d.code, "message": d.message} for d in params.diagnostics
        ],
        "timings_s": dict(mapper._timings),
        "runtime": {
            "b1mappy_version": str(b1mappy_version),
            "python": sys.version.split()[0],
            "platform": platform.platform(),
            **{name: _installed_version(name) for name in _RUNTIME_PACKAGES},
        },
        "cuda": _cuda_info(),
        "provenance": {"argv": mapper._argv_str},
        "artifacts": {
            "config_final_ini": str(save_dir / "config_final.ini"),
            "params_json": str(save_dir / "b1map_params.json"),
            "log": str(save_dir / "log"),
            "outputs": list(mapper.output_specs),
        },
    }


def write_run_manifest(mapper: Any, *, b1mappy_version: str) -> None:
    """Write the manifest of ``mapper`` into its results folder.

    ``b1mappy_version`` is passed in to avoid a circular import of the package.
    """
    try:
        manifest = build_run_manifest(mapper, b1mappy_version=b1mappy_version)
        out_path = Path(mapper.save_dir) / MANIFEST_NAME
        out_path.write_text(json.dumps(manifest, indent=2, sort_keys=True, default=str), encoding="utf-8")
        logging.info(f"Run manifest saved to: {out_path}")
    except Exception:
        logging.exception(f"Failed to write {MANIFEST_NAME}")
