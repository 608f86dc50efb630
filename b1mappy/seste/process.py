"""Masking, padding and smoothing of the unwarped SE/STE B1 map."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence, Tuple, Union

import numpy as np
from scipy import ndimage

from b1mappy.core.smoothing import smooth_b1


@dataclass(frozen=True)
class ProcessedB1:
    masked: np.ndarray        # reliable voxels plus padded border, 0 elsewhere
    smoothed: np.ndarray
    reliable: np.ndarray      # bool, after erosion
    padded_mask: np.ndarray   # bool, reliable voxels plus padding


def reliability_mask(
    b1: np.ndarray,
    sd: np.ndarray,
    fmap_hz: np.ndarray,
    *,
    sd_thresh: float,
    hz_thresh: float,
    erode_iterations: int = 1,
) -> np.ndarray:
    """Voxels with a positive B1, an SD below ``sd_thresh`` and an off-resonance below ``hz_thresh``."""
    b1 = np.asarray(b1, dtype=np.float64)
    sd = np.asarray(sd, dtype=np.float64)
    fmap_hz = np.asarray(fmap_hz, dtype=np.float64)
    with np.errstate(invalid='ignore'):
        mask = np.isfinite(b1) & (b1 > 0) & (sd < float(sd_thresh)) & (np.abs(fmap_hz) < float(hz_thresh))
    if erode_iterations > 0 and np.any(mask):
        mask = ndimage.binary_erosion(mask, iterations=int(erode_iterations))
    return mask


def pad_map(values: np.ndarray, mask: np.ndarray, iterations: int) -> Tuple[np.ndarray, np.ndarray]:
    """Grow ``values`` outward from ``mask`` by neighbour averaging.

    Each pass fills every unmasked voxel touching the current mask (3x3x3
    neighbourhood) with the mean of its masked neighbours.
    """
    mask = np.asarray(mask, dtype=bool).copy()
    vals = np.where(mask, np.asarray(values, dtype=np.float64), 0.0)
    kernel = np.ones((3, 3, 3), dtype=np.float64)
    for _ in range(max(0, int(iterations))):
        total = ndimage.convolve(vals, kernel, mode='constant', cval=0.0)
        count = ndimage.convolve(mask.astype(np.float64), kernel, mode='constant', cval=0.0)
        grow = ~mask & (count > 0)
        if not np.any(grow):
            break
        vals[grow] = total[grow] / count[grow]
        mask |= grow
    return vals, mask


def process_b1(
    b1: np.ndarray,
    sd: np.ndarray,
    fmap_hz: np.ndarray,
    voxel_sizes: Sequence[float],
    *,
    sd_thresh: float,
    hz_thresh: float,
    erode_iterations: int,
    pad_iterations: int,
    fwhm: Union[float, Sequence[float]],
) -> ProcessedB1:
    reliable = reliability_mask(
        b1, sd, fmap_hz,
        sd_thresh=sd_thresh, hz_thresh=hz_thresh, erode_iterations=erode_iterations,
    )
    padded, padded_mask = pad_map(b1, reliable, pad_iterations)
    smoothed = smooth_b1(padded, padded_mask, voxel_sizes, fwhm)
    return ProcessedB1(masked=padded, smoothed=smoothed, reliable=reliable, padded_mask=padded_mask)
