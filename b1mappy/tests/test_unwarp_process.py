from __future__ import annotations

import math

import numpy as np
import pytest

from b1mappy.core.io import Volume
from b1mappy.core.parameters import (
    AcquisitionParameters,
    B1MapParameters,
    MaskOptions,
    ProcessingParameters,
    ValidationOptions,
)
from b1mappy.core.protocol import B1Inputs, Collaborators
from b1mappy.core.validation import InvalidAcquisition, InvalidInputCount
from b1mappy.seste.engine import SESTEProtocol
from b1mappy.seste.process import pad_map, process_b1, reliability_mask
from b1mappy.seste.unwarp import FieldMapUnwarper


def _unwarper(**kw) -> FieldMapUnwarper:
    opts = dict(short_te=10.0, long_te=12.46, tert=10.0, blip_dir=1.0, mask_brain=False, fmap_fwhm=0.0)
    opts.update(kw)
    return FieldMapUnwarper(**opts)


def _vol(data: np.ndarray, name: str = "v", affine: np.ndarray | None = None) -> Volume:
    return Volume(data, np.eye(4) if affine is None else affine, name=name)


@pytest.mark.parametrize(
    "kw",
    [{"short_te": None}, {"long_te": 10.0}, {"long_te": 9.0}, {"pe_axis": 3}],
)
def test_invalid_unwarper_settings(kw: dict) -> None:
    with pytest.raises(InvalidAcquisition):
        _unwarper(**kw)


def test_scale_phase_spans_minus_pi_to_pi() -> None:
    phase = _vol(np.linspace(-4096.0, 4094.0, 4 * 5 * 6).reshape(4, 5, 6), name="phase")

    scaled = _unwarper().scale_phase(phase)

    assert scaled.name == "scphase"
    assert scaled.data.min() == pytest.approx(-math.pi)
    assert scaled.data.max() == pytest.approx(math.pi, rel=1e-6)


def test_constant_phase_scales_to_zero() -> None:
    scaled = _unwarper().scale_phase(_vol(np.full((3, 3, 3), 7.0)))
    assert np.all(scaled.data == 0.0)


def test_fieldmap_hz_from_phase_difference() -> None:
    phase = _vol(np.full((4, 4, 4), math.pi), name="scphase")
    fpm = _unwarper().fieldmap_hz(phase, _vol(np.ones((4, 4, 4))))

    assert fpm.name == "fpm_scphase"
    assert np.allclose(fpm.data, 1.0 / (2.0 * 0.00246), rtol=1e-5)


def test_voxel_displacement_uses_readout_time_and_blip() -> None:
    vdm = _unwarper(blip_dir=-1.0).voxel_displacement(np.full((2, 2, 2), 100.0))
    assert np.allclose(vdm, -1.0)


def test_resample_follows_world_coordinates() -> None:
    data = np.arange(6 * 4 * 3, dtype=np.float64).reshape(6, 4, 3)
    source = _vol(data)
    shifted = np.eye(4)
    shifted[0, 3] = 1.0
    target = _vol(np.zeros((6, 4, 3)), affine=shifted)

    out = FieldMapUnwarper.resample(source, target)

    assert np.allclose(out[:-1], data[1:])
    assert np.allclose(FieldMapUnwarper.resample(source, source), data)


def test_apply_shifts_along_phase_encode_axis() -> None:
    data = np.tile(np.arange(5, dtype=np.float64)[None, :, None], (3, 1, 2))
    uw = _unwarper(pe_axis=1)

    assert np.allclose(uw.apply(data, np.zeros(data.shape)), data)
    out = uw.apply(data, np.ones(data.shape))
    assert np.allclose(out[:, :-1], data[:, 1:])


def test_unwarp_needs_three_fieldmap_images() -> None:
    vol = _vol(np.ones((3, 3, 3)))
    with pytest.raises(InvalidInputCount):
        _unwarper().unwarp((vol, vol), vol)


def test_reliability_mask_thresholds() -> None:
    shape = (5, 5, 5)
    b1 = np.full(shape, 100.0)
    sd = np.full(shape, 1.0)
    fmap = np.zeros(shape)
    b1[0, 0, 0] = np.nan
    sd[1, 1, 1] = 10.0
    fmap[2, 2, 2] = -200.0
    b1[3, 3, 3] = -5.0

    mask = reliability_mask(b1, sd, fmap, sd_thresh=5.0, hz_thresh=110.0, erode_iterations=0)

    assert mask.sum() == 125 - 4
    assert not mask[0, 0, 0] and not mask[1, 1, 1] and not mask[2, 2, 2] and not mask[3, 3, 3]


def test_reliability_mask_erodes_the_border() -> None:
    shape = (5, 5, 5)
    mask = reliability_mask(
        np.full(shape, 100.0), np.zeros(shape), np.zeros(shape), sd_thresh=5.0, hz_thresh=110.0, erode_iterations=1
    )
    assert mask.sum() == 27
    assert mask[1:4, 1:4, 1:4].all()


def test_pad_map_grows_by_neighbour_average() -> None:
    values = np.zeros((5, 5, 5))
    mask = np.zeros((5, 5, 5), dtype=bool)
    values[2, 2, 2] = 10.0
    mask[2, 2, 2] = True

    padded, grown = pad_map(values, mask, 1)
    assert grown.sum() == 27
    assert np.allclose(padded[1:4, 1:4, 1:4], 10.0)
    assert padded[0, 0, 0] == 0.0

    same, same_mask = pad_map(values, mask, 0)
    assert same_mask.sum() == 1
    assert np.array_equal(same, values)


def test_process_b1_keeps_uniform_map() -> None:
    shape = (6, 6, 6)
    out = process_b1(
        np.full(shape, 95.0), np.zeros(shape), np.zeros(shape), (2.0, 2.0, 2.0),
        sd_thresh=5.0, hz_thresh=110.0, erode_iterations=1, pad_iterations=3, fwhm=8.0,
    )
    assert out.reliable.sum() == 64
    assert out.padded_mask.all()
    assert np.allclose(out.smoothed, 95.0)


def test_seste_protocol_end_to_end_with_flat_fieldmap() -> None:
    shape = (6, 6, 6)
    beta = (120.0, 100.0, 80.0)
    tm, t1 = 30.0, 1192.0
    k = math.exp(tm / t1)
    se = [_vol(np.full(shape, 1000.0), name=f"se{i}") for i in range(3)]
    ste = [_vol(np.full(shape, 1000.0 * math.cos(math.radians(b)) / k), name=f"ste{i}") for i, b in enumerate(beta)]
    b0 = (_vol(np.full(shape, 500.0), "mag1"), _vol(np.full(shape, 480.0), "mag2"), _vol(np.full(shape, 12.0), "phase"))

    params = B1MapParameters(
        protocol="i3D_EPI",
        acquisition=AcquisitionParameters(beta=beta, tm=tm, tert=30.0, blip_dir=1.0, short_te=10.0, long_te=12.46),
        processing=ProcessingParameters(b1_fwhm=(8.0,), n_trusted=3, n_ambiguous=2, t1=t1, b0_mask_brain=False),
        mask=MaskOptions(),
        validation=ValidationOptions(),
    )
    collaborators = Collaborators(show_progress=False)

    result = SESTEProtocol().compute(params, B1Inputs(b0=b0, se=tuple(se), ste=tuple(ste)), collaborators)

    assert result.b1map.name == "se0_B1map"
    assert result.reference.name == "se0_B1ref"
    assert np.allclose(result.intermediates["B1map"].data, 100.0, rtol=1e-4)
    assert np.allclose(result.error_map.data, 0.0, atol=1e-3)
    assert np.allclose(result.intermediates["vdm5"].data, 0.0)
    assert np.allclose(result.b1map.data, 100.0, rtol=1e-4)
    assert np.allclose(result.sum_of_squares.data, math.sqrt(3.0) * 1000.0, rtol=1e-5)
    assert set(result.intermediates) == {
        "B1map", "SDmap", "SumOfSq", "sc_phase", "fpm", "vdm5",
        "uSumOfSq", "uB1map", "uSDmap", "muB1map", "smuB1map",
    }
    assert result.intermediates["smuB1map"].name == "smuB1map_se0"
