from __future__ import annotations

import numpy as np
import pytest

from b1mappy.core.smoothing import FWHM_TO_SIGMA, fwhm_to_sigma_voxels, smooth_b1
from b1mappy.core.validation import GeometryMismatch, InvalidKernel


def _half_mask(shape=(8, 8, 8)) -> np.ndarray:
    mask = np.zeros(shape, dtype=bool)
    mask[:, :4, :] = True
    return mask


def test_zero_kernel_returns_masked_map() -> None:
    data = np.full((8, 8, 8), 5.0)
    mask = _half_mask()

    out = smooth_b1(data, mask, (2.0, 2.0, 2.0), 0.0)

    assert np.all(out[mask] == 5.0)
    assert np.all(out[~mask] == 0.0)


def test_no_mask_equals_all_true_mask() -> None:
    rng = np.random.default_rng(1)
    data = rng.uniform(80.0, 120.0, size=(6, 7, 5))

    a = smooth_b1(data, None, (2.0, 2.0, 3.0), 8.0)
    b = smooth_b1(data, np.ones(data.shape, dtype=bool), (2.0, 2.0, 3.0), 8.0)

    assert np.allclose(a, b)


def test_uniform_map_survives_masked_smoothing() -> None:
    mask = _half_mask()
    data = np.where(mask, 7.0, 1000.0)

    out = smooth_b1(data, mask, (2.0, 2.0, 2.0), 8.0)

    assert np.allclose(out[mask], 7.0)


def test_anisotropic_kernel_leaves_unsmoothed_axis_alone() -> None:
    data = np.tile(np.arange(6, dtype=np.float64)[None, :, None], (5, 1, 4))

    out = smooth_b1(data, None, (1.0, 1.0, 1.0), (6.0, 0.0, 6.0))

    assert np.allclose(out, data)


def test_fwhm_to_sigma_per_axis() -> None:
    sigma = fwhm_to_sigma_voxels((8.0, 0.0, 4.0), (2.0, 2.0, 2.0))
    assert np.allclose(sigma, np.array([4.0, 0.0, 2.0]) * FWHM_TO_SIGMA)


def test_non_finite_voxels_do_not_spread() -> None:
    data = np.full((6, 6, 6), 50.0)
    data[3, 3, 3] = np.nan

    out = smooth_b1(data, None, (1.0, 1.0, 1.0), 3.0)

    assert np.all(np.isfinite(out))
    assert np.allclose(out, 50.0)


@pytest.mark.parametrize("fwhm", [(8.0, 8.0), (-1.0,), (8.0, -2.0, 8.0)])
def test_invalid_kernels_are_rejected(fwhm) -> None:
    with pytest.raises(InvalidKernel):
        smooth_b1(np.ones((4, 4, 4)), None, (1.0, 1.0, 1.0), fwhm)


def test_mask_shape_must_match_map() -> None:
    with pytest.raises(GeometryMismatch):
        smooth_b1(np.ones((4, 4, 4)), np.ones((4, 4, 3), dtype=bool), (1.0, 1.0, 1.0), 4.0)


def test_single_foreground_voxel_keeps_its_value() -> None:
    data = np.zeros((7, 7, 7))
    data[3, 3, 3] = 42.0
    mask = np.zeros(data.shape, dtype=bool)
    mask[3, 3, 3] = True

    out = smooth_b1(data, mask, (2.0, 2.0, 2.0), 8.0)

    assert out[3, 3, 3] == pytest.approx(42.0)
