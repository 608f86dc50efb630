"""Validation helpers and shared exceptions."""

from __future__ import annotations

from typing import Sequence

import numpy as np


class B1MapError(Exception):
    """Base class for every error raised while computing a B1 map."""


class ConfigurationError(B1MapError):
    """Custom exception for configuration validation errors."""


class InvalidAcquisition(B1MapError):
    """Raised when acquisition metadata makes the signal model undefined (e.g. equal AFI TRs)."""


class InvalidInputCount(B1MapError):
    """Raised when the number of input volumes does not fit the protocol."""


class FlipAngleMismatch(B1MapError):
    """Raised when the SE and STE nominal flip-angle sets differ."""


class GeometryMismatch(B1MapError):
    """Raised when volumes combined voxel-wise do not share the same grid."""


class InvalidKernel(B1MapError):
    """Raised for a malformed smoothing kernel specification."""


class UnsupportedProtocol(B1MapError):
    """Raised when a protocol tag has no registered computation."""


def validate_same_geometry(*volumes, context: str = "input volumes") -> None:
    """Ensure all volumes share one voxel grid shape."""
    shapes = [tuple(v.shape) for v in volumes]
    if len(set(shapes)) > 1:
        raise GeometryMismatch(
            f"Dimension mismatch between {context}: {', '.join(str(s) for s in shapes)}.\n"
            f"All volumes combined voxel-wise must be acquired on the same grid."
        )


def validate_kernel(fwhm: float | Sequence[float]) -> np.ndarray:
    """Return the FWHM specification as a 3-vector (mm), checking its shape and sign."""
    arr = np.atleast_1d(np.asarray(fwhm, dtype=np.float64)).ravel()
    if arr.size not in (1, 3):
        raise InvalidKernel(
            "FWHM of the B1 smoothing kernel must have either one element "
            "(isotropic smoothing) or three elements (3D anisotropic smoothing).\n"
            f"Current value: {arr.tolist()}"
        )
    if np.any(~np.isfinite(arr)) or np.any(arr < 0):
        raise InvalidKernel(
            "FWHM of the B1 smoothing kernel cannot be negative.\n"
            f"Current value: {arr.tolist()}\n"
            "Check the b1fwhm entry of the B1 defaults file."
        )
    if arr.size == 1:
        arr = np.repeat(arr, 3)
    return arr
