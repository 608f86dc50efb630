from __future__ import annotations

import json
from pathlib import Path

import nibabel as nb
import numpy as np
import pytest

from b1mappy.core.io import Volume, VolumeIO, load_volume, nifti_basename, output_scale_factor
from b1mappy.core.metadata import SidecarMetadata, init_output_metadata, sidecar_path
from b1mappy.core.validation import GeometryMismatch


def _affine(vox=(2.0, 2.0, 3.0)) -> np.ndarray:
    return np.diag([vox[0], vox[1], vox[2], 1.0])


def test_nifti_basename_strips_extensions() -> None:
    assert nifti_basename("/data/sub-01_TB1AFI.nii.gz") == "sub-01_TB1AFI"
    assert nifti_basename("b1.nii") == "b1"


def test_volume_is_read_only_and_reports_voxel_sizes() -> None:
    vol = Volume(np.ones((3, 4, 5)), _affine(), name="x")
    assert vol.shape == (3, 4, 5)
    assert np.allclose(vol.voxel_sizes, [2.0, 2.0, 3.0])
    with pytest.raises(ValueError):
        vol.data[0, 0, 0] = 2.0


def test_derive_requires_same_grid() -> None:
    vol = Volume(np.ones((3, 4, 5)), _affine())
    with pytest.raises(GeometryMismatch):
        vol.derive(np.ones((3, 4, 6)), name="bad")


def test_output_scale_factor() -> None:
    data = np.array([0.0, 50.0, 327.67])
    assert output_scale_factor(data, np.int16) == pytest.approx(327.67 / 32767.0)
    assert output_scale_factor(data, np.float32) == 1.0
    assert output_scale_factor(np.zeros(3), np.uint8) == 1.0


def test_integer_output_uses_scale_factor(tmp_path: Path) -> None:
    data = np.linspace(0.0, 180.5, 4 * 4 * 2).reshape(4, 4, 2)
    vol = Volume(data, _affine(), dtype=np.int16, name="b1", descrip="B1+ map")
    path = VolumeIO().write(str(tmp_path / "b1.nii"), vol)

    img = nb.load(path)
    # nibabel moves the scaling from the header onto the array proxy on load
    slope, inter = float(img.dataobj.slope), float(img.dataobj.inter)
    assert img.get_data_dtype() == np.dtype(np.int16)
    assert slope == pytest.approx(180.5 / 32767.0, rel=1e-6)
    assert inter == 0.0
    assert np.allclose(img.get_fdata(), data, atol=slope)
    assert np.allclose(img.affine, vol.affine)


def test_float_output_round_trip(tmp_path: Path) -> None:
    data = np.arange(24, dtype=np.float64).reshape(2, 3, 4)
    data[0, 0, 0] = np.nan
    vol = Volume(data, _affine(), dtype=np.float64, name="m", descrip="map")
    path = VolumeIO().write(str(tmp_path / "m.nii"), vol)

    back = load_volume(path)
    assert back.name == "m"
    assert back.descrip == "map"
    assert back.data[0, 0, 0] == 0.0
    assert np.allclose(back.data.ravel()[1:], data.ravel()[1:])


def test_load_volume_squeezes_single_volume_4d(tmp_path: Path) -> None:
    path = tmp_path / "v.nii.gz"
    nb.save(nb.Nifti1Image(np.ones((2, 2, 2, 1), dtype=np.float32), np.eye(4)), str(path))
    assert load_volume(str(path)).shape == (2, 2, 2)


def test_sidecar_lookup_prefers_acqpar_and_converts_bids_seconds(tmp_path: Path) -> None:
    img = tmp_path / "afi.nii"
    sidecar_path(str(img)).write_text(
        json.dumps({"RepetitionTime": 0.02, "EchoTime": [0.003, 0.004], "FlipAngle": 60, "acqpar": {"FlipAngle": 8}}),
        encoding="utf-8",
    )
    md = SidecarMetadata()

    assert md.get(str(img), "RepetitionTime") == pytest.approx(20.0)
    assert md.get(str(img), "EchoTime") == pytest.approx([3.0, 4.0])
    assert md.get(str(img), "FlipAngle") == 8
    assert md.get(str(img), "MagneticFieldStrength") is None
    assert md.get(str(tmp_path / "missing.nii"), "FlipAngle") is None


def test_output_metadata_history(tmp_path: Path) -> None:
    header = init_output_metadata(["a.nii", "b.nii"], {"protocol": "DAM"}, version="1.0.0", imtype="B1+ map")
    history = header["history"]
    assert [i["filename"] for i in history["input"]] == ["a.nii", "b.nii"]
    assert history["output"] == {"imtype": "B1+ map", "units": "p.u."}
    assert history["procstep"]["version"] == "1.0.0"

    out = SidecarMetadata().write(str(tmp_path / "x_B1map.nii"), header)
    assert json.loads(Path(out).read_text(encoding="utf-8"))["history"]["output"]["units"] == "p.u."
