"""Per-voxel resolution of the SE/STE inverse-cosine ambiguity.

For each SE/STE pair i the stimulated-to-spin echo ratio gives the
relative flip angle only up to the symmetries of the cosine:

    theta(1) = arccos(k STE / (SE + eps)) / beta_i          (primary)
    theta(2) = 180 / beta_i - theta(1)                      (reflection)
    theta(j) = 180 / beta_i + theta(j - 2),  j = 3..K       (period)

with k = exp(TM / T1). The pairs with the highest SE intensity are
trusted; among the K^M ways to pick one branch per trusted pair, the
combination with the smallest sample standard deviation wins and its
mean is the relative flip angle.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence, Tuple, Union

import numpy as np
import torch

from b1mappy.core.validation import InvalidInputCount
from b1mappy.seste.odometer import MixedRadixCounter


MIN_BRANCHES = 2


@dataclass(frozen=True)
class AmbiguityBranch:
    index: int
    kind: str  # 'primary' | 'reflection' | 'period'
    value: torch.Tensor


def _as_float64(x: Union[np.ndarray, torch.Tensor], device: Union[str, torch.device]) -> torch.Tensor:
    if torch.is_tensor(x):
        return x.to(device=device, dtype=torch.float64)
    return torch.as_tensor(np.asarray(x, dtype=np.float64), dtype=torch.float64, device=device)


def effective_branch_count(n_ambiguous: int) -> int:
    return max(MIN_BRANCHES, int(n_ambiguous))


def primary_estimate(
    se: torch.Tensor,
    ste: torch.Tensor,
    beta: torch.Tensor,
    corr_fact: float,
    eps: float,
) -> torch.Tensor:
    """Relative flip angle from the principal inverse cosine (real part)."""
    ratio = corr_fact * ste / (se + eps)
    return torch.rad2deg(torch.arccos(torch.clamp(ratio, -1.0, 1.0))) / beta


def ambiguity_branches(primary: torch.Tensor, beta: torch.Tensor, n_branches: int) -> List[AmbiguityBranch]:
    """Candidate relative flip angles ``theta(1..n_branches)`` for one primary estimate."""
    half_turn = 180.0 / beta
    branches = [AmbiguityBranch(1, 'primary', primary)]
    if n_branches >= 2:
        branches.append(AmbiguityBranch(2, 'reflection', half_turn - primary))
    for j in range(3, n_branches + 1):
        branches.append(AmbiguityBranch(j, 'period', half_turn + branches[j - 3].value))
    return branches


def combination_table(n_trusted: int, n_branches: int, device: Union[str, torch.device] = 'cpu') -> torch.Tensor:
    """``(K^M, M)`` branch index per trusted pair, in odometer order."""
    table = MixedRadixCounter([n_branches] * n_trusted).table()
    return torch.from_numpy(table).to(device)


def select_min_sd(mean: torch.Tensor, sd: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """Pick, per voxel, the combination of minimum SD.

    Among exactly equal minima the lowest combination index wins. NaN SDs
    never win unless every SD of the voxel is NaN.
    """
    n_comb = sd.shape[-1]
    key = torch.nan_to_num(sd, nan=float('inf'))
    is_min = key == key.min(dim=-1, keepdim=True).values
    positions = torch.arange(n_comb, device=sd.device).expand_as(key)
    first = torch.where(is_min, positions, torch.full_like(positions, n_comb)).min(dim=-1).values
    first = torch.clamp(first, max=n_comb - 1)
    chosen_mean = mean.gather(-1, first.unsqueeze(-1)).squeeze(-1)
    chosen_sd = sd.gather(-1, first.unsqueeze(-1)).squeeze(-1)
    return chosen_mean, chosen_sd, first


def resolve_ambiguity(
    se: Union[np.ndarray, torch.Tensor],
    ste: Union[np.ndarray, torch.Tensor],
    beta: Sequence[float],
    *,
    corr_fact: float,
    eps: float,
    n_trusted: int,
    n_ambiguous: int,
    device: Union[str, torch.device] = 'cpu',
) -> Tuple[np.ndarray, np.ndarray]:
    """Relative flip angle and its SD, both in percent, for a block of voxels.

    Parameters
    ----------
    se, ste:
        ``(..., N)`` spin-echo and stimulated-echo intensities, pair ``i``
        acquired with nominal angle ``beta[i]`` (degrees, descending).
    corr_fact:
        T1 decay correction exp(TM / T1).
    n_trusted:
        Number M of highest-SE pairs used, 1 <= M <= N.
    n_ambiguous:
        Number K of branches per pair; values below 2 are raised to 2.
    """
    se_t = _as_float64(se, device)
    ste_t = _as_float64(ste, device)
    if se_t.shape != ste_t.shape:
        raise InvalidInputCount(f"SE block {tuple(se_t.shape)} and STE block {tuple(ste_t.shape)} differ.")

    lead_shape = tuple(se_t.shape[:-1])
    n_pairs = int(se_t.shape[-1])
    if len(beta) != n_pairs:
        raise InvalidInputCount(f"{n_pairs} SE/STE pairs but {len(beta)} nominal flip angles.")
    m = int(n_trusted)
    if m < 1 or m > n_pairs:
        raise InvalidInputCount(
            f"Number of trusted pairs ({m}) must be between 1 and the number of SE/STE pairs ({n_pairs})."
        )
    k = effective_branch_count(n_ambiguous)

    se_t = se_t.reshape(-1, n_pairs)
    ste_t = ste_t.reshape(-1, n_pairs)
    beta_t = torch.as_tensor(list(beta), dtype=torch.float64, device=device)

    primary = primary_estimate(se_t, ste_t, beta_t, float(corr_fact), float(eps))
    candidates = torch.stack([b.value for b in ambiguity_branches(primary, beta_t, k)], dim=-1)  # (V, N, K)

    # Trust the pairs with the highest SE signal; stable so ties keep acquisition order.
    order = torch.sort(se_t, dim=1, descending=True, stable=True).indices[:, :m]
    trusted = torch.gather(candidates, 1, order.unsqueeze(-1).expand(-1, -1, k))  # (V, M, K)

    combos = combination_table(m, k, device=device)  # (C, M)
    pair_idx = torch.arange(m, device=device).expand_as(combos)
    values = trusted[:, pair_idx, combos]  # (V, C, M)

    mean = values.mean(dim=-1)
    if m > 1:
        sd = values.std(dim=-1)
    else:
        sd = torch.zeros_like(mean)

    chosen_mean, chosen_sd, _ = select_min_sd(mean, sd)
    out_mean = (chosen_mean * 100.0).reshape(lead_shape).cpu().numpy()
    out_sd = (chosen_sd * 100.0).reshape(lead_shape).cpu().numpy()
    return out_mean, out_sd
