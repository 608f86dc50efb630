from __future__ import annotations

from pathlib import Path

import pytest

from b1mappy.cli import CLI


def test_run_cli_validate_args_accepts_existing_cfg(tmp_path: Path) -> None:
    cfg = tmp_path / "cfg.ini"
    cfg.write_text("[INPUT]\nb1_type = no_B1_correction\n", encoding="utf-8")

    cli = CLI(subparsers=None)  # subparsers unused for validate_args
    args = cli.validate_args({"cfg_path": str(cfg)})
    assert args["cfg_path"] == str(cfg)


def test_run_cli_validate_args_rejects_missing_cfg(tmp_path: Path) -> None:
    missing = tmp_path / "missing.ini"
    cli = CLI(subparsers=None)
    with pytest.raises(FileNotFoundError):
        cli.validate_args({"cfg_path": str(missing)})
    with pytest.raises(FileNotFoundError):
        cli.validate_args({"cfg_path": None})


def test_run_cli_forwards_args_to_runner(monkeypatch, tmp_path: Path) -> None:
    seen = {}
    monkeypatch.setattr("b1mappy.core.runner.run", lambda args: seen.update(args))

    CLI(subparsers=None).run({"cfg_path": str(tmp_path / "cfg.ini"), "output_mode": "quiet"})

    assert seen == {"cfg_path": str(tmp_path / "cfg.ini"), "output_mode": "quiet"}
