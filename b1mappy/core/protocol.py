"""Common contract of the B1 mapping protocols.

Each computing protocol turns the resolved `B1MapParameters` and its input
volumes into a `B1MapResult` holding the anatomical reference and the
smoothed B1+ map in percent units (p.u.), plus protocol-specific error
maps and intermediates.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, ClassVar, Dict, Optional, Sequence, Tuple

import numpy as np

from b1mappy.core.io import Volume, VolumeIO
from b1mappy.core.masking import BrainMasker
from b1mappy.core.metadata import SidecarMetadata
from b1mappy.core.parameters import B1MapParameters, MaskOptions
from b1mappy.core.smoothing import smooth_b1
from b1mappy.core.validation import validate_same_geometry


@dataclass(frozen=True)
class B1Inputs:
    """Volumes read for one run, in the order of the parameter record's file lists."""

    b1: Tuple[Volume, ...] = ()
    b0: Tuple[Volume, ...] = ()
    se: Tuple[Volume, ...] = ()
    ste: Tuple[Volume, ...] = ()


@dataclass(frozen=True)
class B1MapResult:
    reference: Volume
    b1map: Volume
    error_map: Optional[Volume] = None
    sum_of_squares: Optional[Volume] = None
    mask: Optional[Volume] = None
    intermediates: Dict[str, Volume] = field(default_factory=dict)
    protocol_description: str = ""

    @property
    def primary(self) -> Tuple[Volume, Volume]:
        return self.reference, self.b1map


@dataclass
class Collaborators:
    """Replaceable services used by the protocols (I/O, metadata, masking, unwarping)."""

    io: VolumeIO = field(default_factory=VolumeIO)
    metadata: SidecarMetadata = field(default_factory=SidecarMetadata)
    masker: Callable[[MaskOptions], BrainMasker] = BrainMasker
    unwarper: Optional[Callable[[B1MapParameters], object]] = None
    device: str = 'cpu'
    n_jobs: int = 1
    show_progress: Optional[bool] = None


def format_fwhm(fwhm: Sequence[float]) -> str:
    return ' '.join(f"{float(f):g}" for f in fwhm)


def smoothed_map_descrip(fwhm: Sequence[float], protocol_description: str) -> str:
    return (
        f"B1+ map - smoothed ({format_fwhm(fwhm)} mm) and normalised (p.u.) - {protocol_description}"
    )


class B1Protocol:
    """Base class of the computing protocols.

    Subclasses set ``tag`` (a protocol tag) and ``description`` and
    implement `compute`.
    """

    tag: ClassVar[str] = ""
    description: ClassVar[str] = ""

    def compute(self, params: B1MapParameters, volumes: B1Inputs, collaborators: Collaborators) -> B1MapResult:
        raise NotImplementedError

    def brain_mask(
        self, params: B1MapParameters, reference: Volume, collaborators: Collaborators
    ) -> Optional[Volume]:
        if not params.processing.domask:
            return None
        mask = collaborators.masker(params.mask).segment(reference)
        logging.info(f"Brain mask: {int(np.count_nonzero(mask.data)):,} voxels in mask.")
        return mask

    def finish(
        self,
        params: B1MapParameters,
        raw_b1: np.ndarray,
        map_template: Volume,
        reference: Volume,
        collaborators: Collaborators,
        description: Optional[str] = None,
    ) -> B1MapResult:
        """Mask and smooth ``raw_b1`` and package it with the anatomical reference.

        The smoothed map takes the grid, datatype and name of
        ``map_template``; the reference keeps the voxels of ``reference``.
        """
        description = description or self.description
        validate_same_geometry(map_template, reference, context="B1 map and anatomical reference")
        mask = self.brain_mask(params, reference, collaborators)
        smoothed = smooth_b1(
            raw_b1,
            None if mask is None else mask.data > 0,
            map_template.voxel_sizes,
            params.processing.b1_fwhm,
        )
        b1map = map_template.derive(
            smoothed,
            name=f"{map_template.name}_B1map",
            descrip=smoothed_map_descrip(params.processing.b1_fwhm, description),
        )
        ref = reference.derive(reference.data, name=f"{reference.name}_B1ref", descrip=reference.descrip)
        return B1MapResult(reference=ref, b1map=b1map, mask=mask, protocol_description=description)
