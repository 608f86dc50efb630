"""Field-map based correction of EPI geometric distortion.

The B0 field map is a pair of magnitude images and one phase-difference
image acquired at two echo times. The phase difference is rescaled to
[-pi, pi], converted to an off-resonance map in Hz, regularised with a
masked Gaussian and resampled on the EPI grid. The voxel displacement
along the phase-encode axis is

    vdm = fmap_hz * total_readout_time[s] * blip_direction

and every EPI-space map is resampled at ``x + vdm`` along that axis.
Phase unwrapping is not performed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np
from scipy import ndimage

from b1mappy.core.io import Volume
from b1mappy.core.masking import BrainMasker
from b1mappy.core.parameters import B1MapParameters, MaskOptions
from b1mappy.core.smoothing import smooth_b1
from b1mappy.core.validation import InvalidAcquisition, InvalidInputCount, validate_same_geometry


@dataclass(frozen=True)
class UnwarpResult:
    scaled_phase: Volume
    fieldmap: Volume   # Hz, on the EPI grid
    vdm: Volume        # voxels along the phase-encode axis
    anatomical: Volume
    others: Tuple[Volume, ...] = ()


class FieldMapUnwarper:
    """Computes a voxel displacement map from a dual-echo B0 field map and applies it.

    Parameters
    ----------
    short_te, long_te:
        Echo times (ms) of the two field-map echoes.
    tert:
        Total EPI readout time (ms).
    blip_dir:
        Sign (+1/-1) of the phase-encode blips.
    pe_axis:
        Voxel axis of the phase-encode direction.
    fmap_fwhm:
        FWHM (mm) of the field-map regularisation.
    mask_brain:
        Restrict the field-map regularisation to a median_otsu brain mask of
        the first magnitude image.
    """

    def __init__(
        self,
        *,
        short_te: float,
        long_te: float,
        tert: float,
        blip_dir: float,
        pe_axis: int = 1,
        fmap_fwhm: float = 10.0,
        mask_brain: bool = True,
        mask_options: MaskOptions = MaskOptions(),
    ) -> None:
        if short_te is None or long_te is None:
            raise InvalidAcquisition("Both field-map echo times are required for unwarping.")
        if float(long_te) <= float(short_te):
            raise InvalidAcquisition(
                f"Long field-map echo time ({long_te} ms) must exceed the short one ({short_te} ms)."
            )
        if pe_axis not in (0, 1, 2):
            raise InvalidAcquisition(f"Phase-encode axis must be 0, 1 or 2, got {pe_axis}.")
        self.short_te = float(short_te)
        self.long_te = float(long_te)
        self.tert = float(tert)
        self.blip_dir = float(blip_dir)
        self.pe_axis = int(pe_axis)
        self.fmap_fwhm = float(fmap_fwhm)
        self.mask_brain = bool(mask_brain)
        self.mask_options = mask_options

    @classmethod
    def from_parameters(cls, params: B1MapParameters) -> "FieldMapUnwarper":
        acq = params.acquisition
        proc = params.processing
        return cls(
            short_te=acq.short_te,
            long_te=acq.long_te,
            tert=acq.tert,
            blip_dir=acq.blip_dir,
            pe_axis=proc.pe_axis,
            fmap_fwhm=proc.fmap_fwhm,
            mask_brain=proc.b0_mask_brain,
            mask_options=params.mask,
        )

    @property
    def delta_te_s(self) -> float:
        return (self.long_te - self.short_te) / 1000.0

    def scale_phase(self, phase: Volume) -> Volume:
        """Linearly map the phase image range onto [-pi, pi]."""
        data = np.nan_to_num(phase.data, nan=0.0)
        lo, hi = float(np.min(data)), float(np.max(data))
        if hi > lo:
            scaled = (data - lo) * (2.0 * np.pi / (hi - lo)) - np.pi
        else:
            scaled = np.zeros_like(data)
        return phase.derive(scaled, name=f"sc{phase.name}", descrip="Phase scaled to [-pi, pi]", dtype=np.float32)

    def fieldmap_hz(self, scaled_phase: Volume, magnitude: Volume) -> Volume:
        """Regularised off-resonance map (Hz) on the field-map grid."""
        validate_same_geometry(scaled_phase, magnitude, context="field-map phase/magnitude images")
        hz = scaled_phase.data / (2.0 * np.pi * self.delta_te_s)

        mask: Optional[np.ndarray] = None
        if self.mask_brain:
            mask = BrainMasker(self.mask_options).segment(magnitude).data > 0
            if not np.any(mask):
                logging.warning("Field-map brain mask is empty; regularising the whole field map.")
                mask = None

        smoothed = smooth_b1(hz, mask, scaled_phase.voxel_sizes, self.fmap_fwhm)
        return scaled_phase.derive(
            smoothed,
            name=f"fpm_{scaled_phase.name}",
            descrip=f"Field map (Hz) - smoothed ({self.fmap_fwhm:g} mm)",
            dtype=np.float32,
        )

    @staticmethod
    def resample(source: Volume, target: Volume, order: int = 1) -> np.ndarray:
        """Sample ``source`` on the voxel grid of ``target`` through the world coordinates."""
        if source.shape[:3] == target.shape[:3] and np.allclose(source.affine, target.affine):
            return np.array(source.data, copy=True)

        vox2vox = np.linalg.inv(source.affine) @ target.affine
        grid = np.indices(target.shape[:3], dtype=np.float64).reshape(3, -1)
        coords = vox2vox[:3, :3] @ grid + vox2vox[:3, 3:4]
        out = ndimage.map_coordinates(source.data, coords, order=order, mode='constant', cval=0.0, prefilter=False)
        return out.reshape(target.shape[:3])

    def voxel_displacement(self, fmap_hz: np.ndarray) -> np.ndarray:
        return np.asarray(fmap_hz, dtype=np.float64) * (self.tert / 1000.0) * self.blip_dir

    def apply(self, data: np.ndarray, vdm: np.ndarray) -> np.ndarray:
        """Resample ``data`` at ``x + vdm`` along the phase-encode axis (trilinear)."""
        data = np.asarray(data, dtype=np.float64)
        coords = np.indices(data.shape, dtype=np.float64)
        coords[self.pe_axis] += vdm
        return ndimage.map_coordinates(
            np.nan_to_num(data, nan=0.0), coords, order=1, mode='constant', cval=0.0, prefilter=False
        )

    def unwarp(self, fieldmap: Sequence[Volume], anatomical: Volume, others: Sequence[Volume] = ()) -> UnwarpResult:
        """Unwarp ``anatomical`` and every volume of ``others`` (all on the EPI grid).

        ``fieldmap`` is (magnitude echo 1, magnitude echo 2, phase difference).
        """
        if len(fieldmap) != 3:
            raise InvalidInputCount(f"Field-map unwarping needs 3 B0 images, got {len(fieldmap)}.")
        magnitude, _, phase = fieldmap
        validate_same_geometry(anatomical, *others, context="EPI-space maps")

        scaled = self.scale_phase(phase)
        fpm = self.fieldmap_hz(scaled, magnitude)
        fmap_epi = self.resample(fpm, anatomical)
        vdm = self.voxel_displacement(fmap_epi)
        logging.debug(
            "Voxel displacement along axis %d: min %.3f, max %.3f voxels.",
            self.pe_axis, float(np.min(vdm)), float(np.max(vdm)),
        )

        fpm_epi = anatomical.derive(fmap_epi, name=fpm.name, descrip=fpm.descrip, dtype=np.float32)
        vdm_vol = anatomical.derive(
            vdm, name=f"vdm5_{scaled.name}", descrip="Voxel displacement map", dtype=np.float32
        )
        u_anat = anatomical.derive(
            self.apply(anatomical.data, vdm), name=f"u{anatomical.name}", descrip=anatomical.descrip, dtype=np.float32
        )
        u_others = tuple(
            v.derive(self.apply(v.data, vdm), name=f"u{v.name}", descrip=v.descrip, dtype=np.float32)
            for v in others
        )
        return UnwarpResult(scaled_phase=scaled, fieldmap=fpm_epi, vdm=vdm_vol, anatomical=u_anat, others=u_others)
