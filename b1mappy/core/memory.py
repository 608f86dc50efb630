"""Memory budgeting for slab-wise processing of the SE/STE combination search."""

from __future__ import annotations

import os
import re
from pathlib import Path

import psutil


# Fraction of the available memory the combination buffers may claim.
MEMORY_FRACTION = 0.25

_BYTES_PER_FLOAT64 = 8

_SCHEDULER_MEMORY_VARS = ("SLURM_MEM_PER_NODE", "SLURM_MEM_PER_CPU", "PBS_VMEM", "PBS_RESC_MEM", "LSB_MAX_MEM")
_CGROUP_LIMIT_FILES = ("/sys/fs/cgroup/memory.max", "/sys/fs/cgroup/memory/memory.limit_in_bytes")

_UNIT_FACTORS = {'': 1024**2, 'K': 1024, 'M': 1024**2, 'G': 1024**3}
_MEMORY_STRING = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([KMG]?)B?\s*$", re.IGNORECASE)


def _parse_mem_env_to_bytes(raw: str) -> int | None:
    """Bytes for a scheduler memory string such as ``4000``, ``16G`` or ``512MB``.

    Bare numbers are megabytes, as SLURM and PBS report them.
    """
    match = _MEMORY_STRING.match(str(raw))
    if match is None:
        return None
    number, unit = match.groups()
    if not unit and '.' in number:
        return None
    return int(float(number) * _UNIT_FACTORS[unit.upper()])


def _read_cgroup_limit(path: str) -> int | None:
    try:
        raw = Path(path).read_text(encoding="utf-8").strip()
    except OSError:
        return None
    # "max" or an absurdly large number means no limit.
    if not raw.isdigit() or not 0 < int(raw) < 1 << 60:
        return None
    return int(raw)


def effective_memory_limit_bytes() -> int | None:
    """Smallest memory limit set by a batch scheduler or a cgroup, if any."""
    limits = [_parse_mem_env_to_bytes(os.environ[k]) for k in _SCHEDULER_MEMORY_VARS if os.environ.get(k)]
    limits += [_read_cgroup_limit(p) for p in _CGROUP_LIMIT_FILES]
    limits = [b for b in limits if b]
    return min(limits) if limits else None


def get_effective_available_memory_bytes() -> int:
    available = int(psutil.virtual_memory().available)
    limit = effective_memory_limit_bytes()
    return available if limit is None else min(available, limit)


def bytes_per_plane(plane_voxels: int, n_pairs: int, n_trusted: int, n_ambiguous: int) -> int:
    """Peak working memory of one plane of the ambiguity search.

    Covers the branch table (pairs x branches), the trusted subset, the
    gathered candidate values of every combination (K^M x M) and the
    per-combination mean/SD buffers.
    """
    n_comb = int(n_ambiguous) ** int(n_trusted)
    per_voxel = (
        n_pairs * (n_ambiguous + 2)
        + n_trusted * n_ambiguous
        + n_comb * n_trusted
        + 2 * n_comb
    )
    return int(plane_voxels) * int(per_voxel) * _BYTES_PER_FLOAT64


def planes_per_slab(
    plane_voxels: int,
    n_planes: int,
    n_pairs: int,
    n_trusted: int,
    n_ambiguous: int,
    *,
    n_jobs: int = 1,
    available_bytes: int | None = None,
) -> int:
    """Number of planes processed together so concurrent slabs fit the memory budget (>= 1)."""

    if available_bytes is None:
        available_bytes = get_effective_available_memory_bytes()
    budget = MEMORY_FRACTION * float(available_bytes) / max(1, int(n_jobs))
    per_plane = max(1, bytes_per_plane(plane_voxels, n_pairs, n_trusted, n_ambiguous))
    fit = int(budget // per_plane)
    return max(1, min(int(n_planes), fit))
