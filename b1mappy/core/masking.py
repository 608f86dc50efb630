from __future__ import annotations

from pathlib import Path

import numpy as np
from dipy.segment.mask import median_otsu

from b1mappy.core.io import Volume
from b1mappy.core.parameters import MaskOptions


def mask_output_path(reference_path: str) -> str:
    """Mask file written beside the anatomical reference (``x_B1ref.nii`` -> ``x_B1ref_mask.nii``)."""
    p = Path(reference_path)
    name = p.name
    if name.lower().endswith(".nii.gz"):
        stem = name[:-7]
    elif name.lower().endswith(".nii"):
        stem = name[:-4]
    else:
        stem = p.stem
    return str(p.with_name(f"{stem}_mask.nii"))


class BrainMasker:
    """Brain mask of an anatomical volume via dipy's median_otsu."""

    def __init__(self, options: MaskOptions = MaskOptions()) -> None:
        self.options = options

    def segment(self, anatomical: Volume) -> Volume:
        data = np.nan_to_num(np.asarray(anatomical.data, dtype=np.float64), nan=0.0, posinf=0.0, neginf=0.0)
        _, mask = median_otsu(
            data,
            median_radius=int(self.options.median_radius),
            numpass=int(self.options.numpass),
            dilate=int(self.options.dilate) if self.options.dilate else None,
        )
        return anatomical.derive(
            mask.astype(np.uint8),
            name=f"{anatomical.name}_mask",
            descrip="B1 brain mask (median_otsu)",
            dtype=np.uint8,
        )
