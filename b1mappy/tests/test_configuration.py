from __future__ import annotations

import configparser
from pathlib import Path

import pytest

from b1mappy.core.configuration import configuration, load_protocol_defaults, split_file_list
from b1mappy.core.runner import load_run_config
from b1mappy.core.validation import ConfigurationError


def _touch(path: Path) -> Path:
    path.write_bytes(b"")
    return path


def _cfg(text: str) -> configparser.ConfigParser:
    cfg = configparser.ConfigParser()
    cfg.read_string(text)
    return cfg


def test_split_file_list_accepts_lines_and_commas() -> None:
    assert split_file_list("a.nii\n b.nii ,c.nii\n") == ["a.nii", "b.nii", "c.nii"]
    assert split_file_list("") == []
    assert split_file_list(None) == []


def test_configuration_reads_inputs_and_defaults(tmp_path: Path) -> None:
    a = _touch(tmp_path / "tr1.nii")
    b = _touch(tmp_path / "tr2.nii")
    cfg = _cfg(
        f"[INPUT]\nb1_type = i3D_AFI\nb1_files = {a}\n    {b}\n"
        "[GLOBAL]\noutput_mode = verbose\n"
        "[OUTPUT]\nrun_tag = test run!\n"
        "[DEVICE]\nDEVICE = cpu\nn_jobs = 2\n"
    )

    c = configuration(cfg)

    assert c.b1_type == "i3D_AFI"
    assert c.b1_files == [str(a), str(b)]
    assert c.b0_files == []
    assert c.output_mode == "verbose"
    assert c.verbose_flag
    assert c.run_tag == "test_run"
    assert c.n_jobs == 2
    assert c.DEVICE == "cpu"
    assert c.custom_defaults is False
    assert c.defaults.acquisition.tr2tr1_ratio == pytest.approx(5.0)
    assert not hasattr(c, "apply_correction")


def test_relative_inputs_resolve_against_config_folder(tmp_path: Path) -> None:
    _touch(tmp_path / "anat.nii")
    _touch(tmp_path / "b1.nii")
    cfg_path = tmp_path / "run.ini"
    cfg_path.write_text("[INPUT]\nb1_type = pre_processed_B1\nb1_files = anat.nii, b1.nii\nscafac = 0.1\n", encoding="utf-8")

    c = configuration(load_run_config(str(cfg_path), "quiet"))

    assert [Path(p).name for p in c.b1_files] == ["anat.nii", "b1.nii"]
    assert c.scafac == pytest.approx(0.1)
    assert c.output_mode == "quiet"


def test_missing_section_and_type_are_rejected() -> None:
    with pytest.raises(ConfigurationError):
        configuration(_cfg("[GLOBAL]\noutput_mode = standard\n"))
    with pytest.raises(ConfigurationError):
        configuration(_cfg("[INPUT]\nb1_files =\n"))


def test_missing_files_and_wrong_counts_are_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError):
        configuration(_cfg(f"[INPUT]\nb1_type = DAM\nb1_files = {tmp_path / 'nope.nii'}\n"))

    a = _touch(tmp_path / "a.nii")
    with pytest.raises(ConfigurationError):
        configuration(_cfg(f"[INPUT]\nb1_type = DAM\nb1_files = {a}\n"))


@pytest.mark.parametrize(
    "section",
    [
        "[DEVICE]\nDEVICE = tpu\n",
        "[DEVICE]\nn_jobs = 0\n",
        "[GLOBAL]\noutput_mode = loud\n",
        "[INPUT]\nb1_type = no_B1_correction\nscafac = big\n",
    ],
)
def test_invalid_values_are_rejected(section: str) -> None:
    text = section if section.startswith("[INPUT]") else "[INPUT]\nb1_type = no_B1_correction\n" + section
    with pytest.raises(ConfigurationError):
        configuration(_cfg(text))


def test_legacy_verbose_flag_maps_to_output_mode() -> None:
    c = configuration(_cfg("[INPUT]\nb1_type = no_B1_correction\n[DEBUG]\nverbose = True\n"))
    assert c.output_mode == "verbose"
    assert c.b1_type == "no_B1_correction"
    assert not hasattr(c, "diagnostics_enabled")


def test_custom_defaults_override_standard_values(tmp_path: Path) -> None:
    custom = tmp_path / "my_defaults.ini"
    custom.write_text("[i3D_EPI]\nb1fwhm = 4, 4, 6\nnonominalvalues = 3\nt1 = 1633\n", encoding="utf-8")

    defaults, is_custom = load_protocol_defaults("i3D_EPI", str(custom))

    assert is_custom
    assert defaults.processing.b1_fwhm == (4.0, 4.0, 6.0)
    assert defaults.processing.n_trusted == 3
    assert defaults.processing.t1 == pytest.approx(1633.0)
    # untouched keys keep the standard values
    assert defaults.acquisition.tm == pytest.approx(31.2)
    assert len(defaults.acquisition.beta) == 11
    assert defaults.mask.median_radius == 4


def test_invalid_default_values_are_rejected(tmp_path: Path) -> None:
    custom = tmp_path / "bad.ini"
    custom.write_text("[i3D_EPI]\npe_axis = 3\n", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_protocol_defaults("i3D_EPI", str(custom))

    custom.write_text("[i3D_AFI]\nalphanom = sixty\n", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_protocol_defaults("i3D_AFI", str(custom))
