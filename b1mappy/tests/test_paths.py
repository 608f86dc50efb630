from __future__ import annotations

from pathlib import Path

from b1mappy.configs.paths import get_configs_dir, resolve_config_path, standard_defaults_path


def test_get_configs_dir_exists() -> None:
    p = get_configs_dir()
    assert isinstance(p, Path)
    assert p.exists()


def test_standard_defaults_are_shipped() -> None:
    p = standard_defaults_path()
    assert p.exists()
    assert "[i3D_EPI]" in p.read_text(encoding="utf-8")


def test_resolve_config_path_filename_only() -> None:
    resolved = resolve_config_path("Configuration_B1_Template.ini")
    assert Path(resolved).exists()
    assert Path(resolved).name == "Configuration_B1_Template.ini"


def test_resolve_config_path_relative_to_cfg(tmp_path: Path) -> None:
    (tmp_path / "data").mkdir()
    target = tmp_path / "data" / "b1.nii"
    target.write_bytes(b"")

    resolved = resolve_config_path("data/b1.nii", cfg_source=str(tmp_path / "run.ini"))
    assert Path(resolved) == target.resolve()


def test_resolve_config_path_keeps_unknown_paths() -> None:
    assert resolve_config_path("does/not/exist.nii") == "does/not/exist.nii"
    assert resolve_config_path("") == ""
