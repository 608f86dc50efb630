from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import numpy as np
import nibabel as nb

from b1mappy.core.validation import GeometryMismatch


def nifti_basename(path: str) -> str:
    """Return the file name without its NIfTI extension (``.nii`` or ``.nii.gz``)."""

    name = Path(path).name
    if name.lower().endswith(".nii.gz"):
        return name[:-7]
    if name.lower().endswith(".nii"):
        return name[:-4]
    return Path(path).stem


@dataclass(frozen=True, eq=False)
class Volume:
    """Immutable image volume: voxel data, voxel-to-world affine and output datatype.

    The voxel array is stored as a read-only float64 copy; derived maps are
    new Volumes created through `derive`.
    """

    data: np.ndarray
    affine: np.ndarray
    dtype: Any = np.float32
    name: str = ""
    descrip: str = ""
    source: Optional[str] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        data = np.array(self.data, dtype=np.float64, copy=True)
        data.setflags(write=False)
        affine = np.array(self.affine, dtype=np.float64, copy=True)
        if affine.shape != (4, 4):
            raise GeometryMismatch(f"Volume affine must be 4x4, got shape {affine.shape}.")
        affine.setflags(write=False)
        object.__setattr__(self, "data", data)
        object.__setattr__(self, "affine", affine)
        object.__setattr__(self, "dtype", np.dtype(self.dtype))

    @property
    def shape(self) -> tuple[int, ...]:
        return tuple(self.data.shape)

    @property
    def voxel_sizes(self) -> np.ndarray:
        """Voxel spacing (mm): column norms of the 3x3 linear part of the affine."""
        return np.sqrt(np.sum(self.affine[:3, :3] ** 2, axis=0))

    def derive(self, data: np.ndarray, *, name: str, descrip: str = "", dtype: Any = None) -> "Volume":
        """New Volume on the same grid holding ``data``."""
        data = np.asarray(data)
        if tuple(data.shape[:3]) != self.shape[:3]:
            raise GeometryMismatch(
                f"Derived map shape {tuple(data.shape)} does not match the grid of '{self.name}' {self.shape}."
            )
        return Volume(
            data=data,
            affine=self.affine,
            dtype=self.dtype if dtype is None else dtype,
            name=name,
            descrip=descrip,
        )


def output_scale_factor(data: np.ndarray, dtype: Any) -> float:
    """Intensity slope used when storing ``data`` with ``dtype``.

    Integer types use max(data) / max-representable value so the largest
    output uses the full range; float types are stored unscaled.
    """

    dt = np.dtype(dtype)
    if not np.issubdtype(dt, np.integer):
        return 1.0
    finite = np.asarray(data, dtype=np.float64)
    finite = finite[np.isfinite(finite)]
    if finite.size == 0:
        return 1.0
    peak = float(finite.max())
    if peak <= 0:
        return 1.0
    return peak / float(np.iinfo(dt).max)


def load_volume(path: str) -> Volume:
    """Load a NIfTI file into a `Volume`.

    A trailing singleton 4th dimension is dropped so single-volume 4D files
    behave like 3D images.
    """

    img = nb.load(str(path))
    data = np.asarray(img.get_fdata(), dtype=np.float64)
    if data.ndim == 4 and data.shape[3] == 1:
        data = data[..., 0]

    descrip = ""
    try:
        descrip = img.header["descrip"].item().decode("utf-8", errors="ignore").strip("\x00 ")
    except Exception:
        descrip = ""

    return Volume(
        data=data,
        affine=img.affine,
        dtype=img.get_data_dtype(),
        name=nifti_basename(str(path)),
        descrip=descrip,
        source=str(path),
    )


def save_volume(volume: Volume, path: str) -> str:
    """Write ``volume`` as NIfTI and return the written path.

    Non-finite voxels are stored as zero. Integer datatypes are written
    pre-scaled with the slope from `output_scale_factor`.
    """

    data = np.nan_to_num(np.asarray(volume.data, dtype=np.float64), nan=0.0, posinf=0.0, neginf=0.0)
    dt = np.dtype(volume.dtype)

    if np.issubdtype(dt, np.integer):
        slope = output_scale_factor(data, dt)
        info = np.iinfo(dt)
        stored = np.clip(np.rint(data / slope), info.min, info.max).astype(dt)
        img = nb.Nifti1Image(stored, volume.affine)
        img.set_data_dtype(dt)
        img.header.set_slope_inter(slope, 0.0)
    else:
        img = nb.Nifti1Image(data.astype(np.float32), volume.affine)
        img.set_data_dtype(np.float32)
        img.header.set_slope_inter(1.0, 0.0)

    if volume.descrip:
        img.header["descrip"] = volume.descrip[:79].encode("utf-8", errors="ignore")
    img.set_qform(volume.affine, code=1)
    img.set_sform(volume.affine, code=1)

    Path(path).parent.mkdir(parents=True, exist_ok=True)
    nb.save(img, str(path))
    return str(path)


class VolumeIO:
    """NIfTI reader/writer handed to the protocol computations."""

    def read(self, path: str) -> Volume:
        return load_volume(path)

    def write(self, path: str, volume: Volume) -> str:
        return save_volume(volume, path)
