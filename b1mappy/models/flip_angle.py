"""Closed-form flip-angle signal models.

All functions are pure and return maps in percent of the nominal flip
angle on the voxel grid of their inputs.

The inverse cosine is evaluated on real input. Arguments outside [-1, 1]
have complex inverse cosines; only the real part is kept, which equals
``degrees(arccos(clip(x, -1, 1)))``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from b1mappy.core.validation import validate_same_geometry


def real_acosd(x: np.ndarray) -> np.ndarray:
    """Real part of the inverse cosine in degrees; NaN stays NaN."""
    x = np.asarray(x, dtype=np.float64)
    return np.degrees(np.arccos(np.clip(x, -1.0, 1.0)))


def count_non_real(x: np.ndarray) -> int:
    """Number of arguments whose inverse cosine is complex (``|x| > 1``)."""
    with np.errstate(invalid='ignore'):
        return int(np.count_nonzero(np.abs(np.asarray(x, dtype=np.float64)) > 1.0))


def afi_cosine(r: np.ndarray, n: float) -> np.ndarray:
    """cos(alpha) of the dual-TR steady state: (r n - 1) / (n - r), Yarnykh MRM 2007 Eq. 6."""
    with np.errstate(divide='ignore', invalid='ignore'):
        return (r * n - 1.0) / (n - r)


@dataclass(frozen=True)
class AFIEstimate:
    percent: np.ndarray
    non_real_forward: int
    non_real_reversed: int

    @property
    def order_suspicious(self) -> bool:
        """True when swapping the two TR images would give fewer non-real angles."""
        return self.non_real_forward > self.non_real_reversed


def afi_b1(y_tr1: np.ndarray, y_tr2: np.ndarray, tr_ratio: float, alphanom: float) -> AFIEstimate:
    """AFI flip angle map in percent of ``alphanom``.

    ``y_tr1`` is the short-TR image, ``y_tr2`` the long-TR image and
    ``tr_ratio`` = TR2/TR1.
    """
    validate_same_geometry(np.asarray(y_tr1), np.asarray(y_tr2), context="AFI TR1/TR2 images")
    y1 = np.asarray(y_tr1, dtype=np.float64)
    y2 = np.asarray(y_tr2, dtype=np.float64)
    n = float(tr_ratio)

    with np.errstate(divide='ignore', invalid='ignore'):
        r = y2 / y1
        cos_forward = afi_cosine(r, n)
        cos_reversed = afi_cosine(1.0 / r, n)

    angle = real_acosd(cos_forward)
    return AFIEstimate(
        percent=angle * 100.0 / float(alphanom),
        non_real_forward=count_non_real(cos_forward),
        non_real_reversed=count_non_real(cos_reversed),
    )


def dam_b1(y_alpha: np.ndarray, y_2alpha: np.ndarray, alphanom: float) -> np.ndarray:
    """Double-angle map: arccos(Y(2a) / (2 Y(a))) / alphanom, in percent."""
    validate_same_geometry(np.asarray(y_alpha), np.asarray(y_2alpha), context="DAM alpha/2-alpha images")
    y1 = np.asarray(y_alpha, dtype=np.float64)
    y2 = np.asarray(y_2alpha, dtype=np.float64)
    with np.errstate(divide='ignore', invalid='ignore'):
        ratio = y2 / (2.0 * y1)
    return real_acosd(ratio) / float(alphanom) * 100.0


def linear_scaling(data: np.ndarray, offset: float, scaling: float) -> np.ndarray:
    """(|data| + offset) * scaling."""
    return (np.abs(np.asarray(data, dtype=np.float64)) + float(offset)) * float(scaling)


def scaling_coefficients(protocol: str, *, alphanom: Optional[float] = None, scafac: Optional[float] = None) -> Tuple[float, float, str]:
    """(offset, scaling, description) of the vendor/pre-processed map conversions to percent."""
    if protocol == 'tfl_b1_map':
        # map stores the flip angle x10
        return 0.0, 10.0 / float(alphanom), 'SIEMENS tfl_b1map protocol'
    if protocol == 'rf_map':
        # (|map| - 2048) * 180 / 2048 is the absolute flip angle
        return -2048.0, 180.0 * 100.0 / (float(alphanom) * 2048.0), 'SIEMENS rf_map protocol'
    if protocol == 'pre_processed_B1':
        factor = 1.0 if scafac is None else float(scafac)
        return 0.0, factor, f'Pre-processed B1 map rescaled with factor {factor:f}'
    raise ValueError(f"No linear scaling defined for protocol '{protocol}'.")
