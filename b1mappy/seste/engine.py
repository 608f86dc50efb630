"""SE/STE 3D EPI engine.

Jiru & Klose, MRM 56:1375-1379 (2006); Lutti et al., MRM 64:229-238 (2010).

The ambiguity search runs slab by slab along the third axis so that the
K^M candidate buffers fit in memory. The resulting map is unwarped with the
B0 field map, masked by reliability, padded and smoothed.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
from joblib import Parallel, cpu_count, delayed

from b1mappy.core.logfmt import log_banner
from b1mappy.core.memory import planes_per_slab
from b1mappy.core.parameters import B1MapParameters
from b1mappy.core.progress import make_progress_bar
from b1mappy.core.protocol import B1Inputs, B1MapResult, B1Protocol, Collaborators, smoothed_map_descrip
from b1mappy.core.validation import InvalidInputCount, validate_same_geometry
from b1mappy.seste.ambiguity import effective_branch_count, resolve_ambiguity
from b1mappy.seste.process import process_b1
from b1mappy.seste.unwarp import FieldMapUnwarper


@dataclass(frozen=True)
class SESTEMaps:
    b1: np.ndarray   # relative flip angle, percent
    sd: np.ndarray   # percent
    ssq: np.ndarray  # root sum of squares of the SE volumes


def slab_bounds(n_planes: int, planes: int) -> List[Tuple[int, int]]:
    planes = max(1, int(planes))
    return [(z0, min(z0 + planes, n_planes)) for z0 in range(0, n_planes, planes)]


def resolve_n_jobs(n_jobs: int) -> int:
    """Number of concurrent slabs; negative values count back from the CPU count, as in joblib."""
    n = int(n_jobs)
    if n < 0:
        n = cpu_count() + 1 + n
    return max(1, n)


def compute_seste_b1(
    se: np.ndarray,
    ste: np.ndarray,
    beta: Sequence[float],
    *,
    tm: float,
    t1: float,
    eps: float,
    n_trusted: int,
    n_ambiguous: int,
    device: str = 'cpu',
    n_jobs: int = 1,
    show_progress: Optional[bool] = None,
    available_bytes: Optional[int] = None,
) -> SESTEMaps:
    """Relative flip-angle, SD and SE root-sum-of-squares maps in native (distorted) geometry.

    ``se`` and ``ste`` are ``(X, Y, Z, N)`` stacks, pair ``i`` acquired at
    nominal angle ``beta[i]``.
    """
    se = np.asarray(se, dtype=np.float64)
    ste = np.asarray(ste, dtype=np.float64)
    if se.ndim != 4 or se.shape != ste.shape:
        raise InvalidInputCount(
            f"SE and STE stacks must be 4D with equal shapes, got {se.shape} and {ste.shape}."
        )
    n_pairs = se.shape[3]
    if not 1 <= int(n_trusted) <= n_pairs:
        raise InvalidInputCount(
            f"Number of trusted pairs ({n_trusted}) must be between 1 and the number of SE/STE pairs ({n_pairs})."
        )

    k = effective_branch_count(n_ambiguous)
    if k != int(n_ambiguous):
        logging.warning(f"Number of ambiguous angles ({n_ambiguous}) is below 2; using {k}.")
    n_comb = k ** int(n_trusted)
    logging.info(f"SE/STE: {n_pairs} pairs, {n_trusted} trusted, {k} branches -> {n_comb:,} combinations per voxel.")

    corr_fact = math.exp(float(tm) / float(t1))
    n_workers = resolve_n_jobs(n_jobs)
    nx, ny, nz = se.shape[:3]
    planes = planes_per_slab(
        nx * ny, nz, n_pairs, int(n_trusted), k, n_jobs=n_workers, available_bytes=available_bytes
    )
    bounds = slab_bounds(nz, planes)
    logging.debug(f"SE/STE: {len(bounds)} slab(s) of up to {planes} plane(s).")

    b1 = np.zeros((nx, ny, nz), dtype=np.float64)
    sd = np.zeros((nx, ny, nz), dtype=np.float64)

    with make_progress_bar(total=nz, desc='SE/STE', enabled=show_progress) as bar:

        def _run(z0: int, z1: int) -> Tuple[int, int, np.ndarray, np.ndarray]:
            mean, err = resolve_ambiguity(
                se[:, :, z0:z1, :],
                ste[:, :, z0:z1, :],
                beta,
                corr_fact=corr_fact,
                eps=eps,
                n_trusted=n_trusted,
                n_ambiguous=k,
                device=device,
            )
            bar.update(z1 - z0)
            return z0, z1, mean, err

        if n_workers == 1 or len(bounds) == 1:
            results = [_run(z0, z1) for z0, z1 in bounds]
        else:
            results = Parallel(n_jobs=n_workers, prefer='threads')(delayed(_run)(z0, z1) for z0, z1 in bounds)

    for z0, z1, mean, err in results:
        b1[:, :, z0:z1] = mean
        sd[:, :, z0:z1] = err

    ssq = np.sqrt(np.sum(se ** 2, axis=3))
    return SESTEMaps(b1=b1, sd=sd, ssq=ssq)


class SESTEProtocol(B1Protocol):
    """3D EPI spin-echo / stimulated-echo protocol with B0 field-map unwarping."""

    tag = 'i3D_EPI'
    description = 'SE/STE EPI protocol'

    def compute(self, params: B1MapParameters, volumes: B1Inputs, collaborators: Collaborators) -> B1MapResult:
        start = time.time()
        log_banner('Computing B1 map from SE/STE EPI data')

        se, ste = tuple(volumes.se), tuple(volumes.ste)
        if not se or len(se) != len(ste):
            raise InvalidInputCount(f"Need matching SE/STE volumes, got {len(se)} SE and {len(ste)} STE.")
        validate_same_geometry(*se, *ste, context="SE/STE EPI volumes")

        acq, proc = params.acquisition, params.processing
        maps = compute_seste_b1(
            np.stack([v.data for v in se], axis=-1),
            np.stack([v.data for v in ste], axis=-1),
            acq.beta,
            tm=acq.tm,
            t1=proc.t1,
            eps=proc.eps,
            n_trusted=proc.n_trusted,
            n_ambiguous=proc.n_ambiguous,
            device=collaborators.device,
            n_jobs=collaborators.n_jobs,
            show_progress=collaborators.show_progress,
        )

        template = se[0]
        outname = template.name
        b1_raw = template.derive(maps.b1, name=f"B1map_{outname}", descrip='B1 map [%]', dtype=np.float32)
        sd_raw = template.derive(maps.sd, name=f"SDmap_{outname}", descrip='SD [%]', dtype=np.float32)
        ssq = template.derive(maps.ssq, name=f"SumOfSq{outname}", descrip='SE SSQ matrix', dtype=np.float32)

        log_banner('Unwarping B1 map')
        factory = collaborators.unwarper or FieldMapUnwarper.from_parameters
        unwarper = factory(params)
        uw = unwarper.unwarp(tuple(volumes.b0), ssq, (b1_raw, sd_raw))
        ub1, usd = uw.others

        processed = process_b1(
            ub1.data,
            usd.data,
            uw.fieldmap.data,
            template.voxel_sizes,
            sd_thresh=proc.sd_thresh,
            hz_thresh=proc.hz_thresh,
            erode_iterations=proc.erode_iterations,
            pad_iterations=proc.pad_iterations,
            fwhm=proc.b1_fwhm,
        )
        logging.info(f"SE/STE: {int(np.count_nonzero(processed.reliable)):,} reliable voxels after erosion.")

        mu = template.derive(
            processed.masked, name=f"mu{b1_raw.name}", descrip='Masked and padded B1 map [%]', dtype=np.float32
        )
        descrip = smoothed_map_descrip(proc.b1_fwhm, self.description)
        smu = template.derive(processed.smoothed, name=f"smu{b1_raw.name}", descrip=descrip, dtype=np.float32)

        b1map = smu.derive(smu.data, name=f"{outname}_B1map", descrip=descrip, dtype=np.float32)
        reference = uw.anatomical.derive(
            uw.anatomical.data, name=f"{outname}_B1ref", descrip='Unwarped SE SSQ image', dtype=np.float32
        )

        intermediates = {
            'B1map': b1_raw,
            'SDmap': sd_raw,
            'SumOfSq': ssq,
            'sc_phase': uw.scaled_phase,
            'fpm': uw.fieldmap,
            'vdm5': uw.vdm,
            'uSumOfSq': uw.anatomical,
            'uB1map': ub1,
            'uSDmap': usd,
            'muB1map': mu,
            'smuB1map': smu,
        }
        logging.info(f"SE/STE B1 map complete in {time.time() - start:.4f} seconds")
        return B1MapResult(
            reference=reference,
            b1map=b1map,
            error_map=usd,
            sum_of_squares=ssq,
            intermediates=intermediates,
            protocol_description=self.description,
        )
