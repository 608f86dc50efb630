from __future__ import annotations

import sys

import pytest

from b1mappy import master_cli


def test_master_cli_prints_help_when_no_args(monkeypatch, capsys) -> None:
    monkeypatch.setattr(sys, "argv", ["B1mapPy"])
    master_cli.main()
    out = capsys.readouterr().out
    assert "B1mapPy command line interface" in out
    assert "run" in out


def test_master_cli_help_flag(monkeypatch, capsys) -> None:
    monkeypatch.setattr(sys, "argv", ["B1mapPy", "--help"])
    with pytest.raises(SystemExit) as e:
        master_cli.main()
    assert e.value.code == 0
    out = capsys.readouterr().out
    assert "B1mapPy command line interface" in out


def test_master_cli_run_requires_cfg_path(monkeypatch) -> None:
    monkeypatch.setattr(sys, "argv", ["B1mapPy", "run"])
    with pytest.raises(SystemExit) as e:
        master_cli.main()
    assert e.value.code == 2


def test_master_cli_lists_protocols_and_version(capsys) -> None:
    parser, handlers = master_cli.build_parser()
    assert list(handlers) == ["run"]
    assert "i3D_AFI" in parser.format_help()

    with pytest.raises(SystemExit) as e:
        master_cli.main(["--version"])
    assert e.value.code == 0
    assert capsys.readouterr().out.strip() == f"B1mapPy {master_cli.__version__}"


def test_master_cli_forwards_run_to_the_runner(monkeypatch, tmp_path) -> None:
    cfg = tmp_path / "run.ini"
    cfg.write_text("[INPUT]\nb1_type = no_B1_correction\n", encoding="utf-8")
    seen = []
    monkeypatch.setattr("b1mappy.cli.runner.run", lambda args: seen.append(args))

    master_cli.main(["run", "--cfg_path", str(cfg), "--output_mode", "quiet"])

    assert len(seen) == 1
    assert seen[0]["cfg_path"] == str(cfg)
    assert seen[0]["output_mode"] == "quiet"


def test_master_cli_missing_config_file(tmp_path) -> None:
    with pytest.raises(FileNotFoundError):
        master_cli.main(["run", "--cfg_path", str(tmp_path / "absent.ini")])
