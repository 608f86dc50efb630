"""Masked, renormalized Gaussian smoothing of B1 maps.

Smoothing only the masked map would pull values near the mask border
toward zero. The smoothed map is therefore divided by the smoothed mask,
which restores the local average of the valid voxels.
"""

from __future__ import annotations

from typing import Optional, Sequence, Union

import numpy as np
from scipy.ndimage import gaussian_filter

from b1mappy.core.validation import GeometryMismatch, validate_kernel


FWHM_TO_SIGMA = 1.0 / np.sqrt(8.0 * np.log(2.0))
KERNEL_TRUNCATE = 6.0


def fwhm_to_sigma_voxels(fwhm_mm: Union[float, Sequence[float]], voxel_sizes: Sequence[float]) -> np.ndarray:
    """Per-axis Gaussian sigma in voxels for a FWHM given in mm."""
    fwhm3 = validate_kernel(fwhm_mm)
    vox = np.asarray(voxel_sizes, dtype=np.float64).ravel()[:3]
    return fwhm3 / vox * FWHM_TO_SIGMA


def smooth_b1(
    b1map: np.ndarray,
    mask: Optional[np.ndarray],
    voxel_sizes: Sequence[float],
    fwhm: Union[float, Sequence[float]],
) -> np.ndarray:
    """Smooth ``b1map`` inside ``mask`` with a (possibly anisotropic) Gaussian.

    Parameters
    ----------
    b1map:
        3D map to smooth.
    mask:
        Boolean validity mask of the same shape, or None for no masking
        (equivalent to an all-true mask).
    voxel_sizes:
        Voxel spacing (mm) along the three axes.
    fwhm:
        One isotropic or three per-axis FWHM values (mm), each >= 0.

    Returns
    -------
    np.ndarray
        The masked map when every FWHM is zero, otherwise the smoothed map
        renormalized by the smoothed mask wherever that is non-zero.

    Notes
    -----
    Non-finite voxels are excluded from the mask.
    """

    fwhm3 = validate_kernel(fwhm)
    data = np.asarray(b1map, dtype=np.float64)
    if data.ndim != 3:
        raise GeometryMismatch(f"B1 smoothing expects a 3D map, got shape {data.shape}.")

    if mask is None:
        weights = np.ones(data.shape, dtype=np.float64)
    else:
        mask = np.asarray(mask)
        if mask.shape != data.shape:
            raise GeometryMismatch(
                f"B1 mask shape {mask.shape} does not match the B1 map shape {data.shape}."
            )
        weights = (mask > 0).astype(np.float64)

    finite = np.isfinite(data)
    weights = weights * finite
    masked = np.where(finite, data, 0.0) * weights

    if not np.any(fwhm3 > 0):
        return masked

    sigma = fwhm_to_sigma_voxels(fwhm3, voxel_sizes)
    smoothed = gaussian_filter(masked, sigma=sigma, mode='constant', cval=0.0, truncate=KERNEL_TRUNCATE)
    norm = gaussian_filter(weights, sigma=sigma, mode='constant', cval=0.0, truncate=KERNEL_TRUNCATE)

    valid = norm != 0
    smoothed[valid] = smoothed[valid] / norm[valid]
    return smoothed
