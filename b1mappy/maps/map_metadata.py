"""Output map metadata schema.

Single source of truth for the description, units and expected range of
every volume written by a B1 mapping run. Used for the JSON sidecars of
the outputs and for the run manifest.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Tuple


@dataclass(frozen=True)
class MapSpec:
    description: str
    units: str
    valid_range: Optional[Tuple[float, float]] = None
    notes: Optional[str] = None
    primary: bool = False

    def as_dict(self) -> Dict:
        d = {
            'description': self.description,
            'units': self.units,
            'primary': self.primary,
        }
        if self.valid_range is not None:
            d['range'] = [float(self.valid_range[0]), float(self.valid_range[1])]
        if self.notes:
            d['notes'] = str(self.notes)
        return d


# Broad QC range for relative flip angles in vivo.
_PU_RANGE = (0.0, 200.0)


PRIMARY_MAP_SPECS: Dict[str, MapSpec] = {
    'B1ref': MapSpec(
        'Anatomical reference for B1 map',
        'a.u.',
        None,
        'Image on the grid of the B1 map; unwarped SE root-sum-of-squares for SE/STE data.',
        primary=True,
    ),
    'B1map': MapSpec(
        'B1+ map',
        'p.u.',
        _PU_RANGE,
        'Smoothed relative flip angle in percent of the nominal flip angle.',
        primary=True,
    ),
}

SESTE_MAP_SPECS: Dict[str, MapSpec] = {
    'B1map': MapSpec('Distorted B1+ map', 'p.u.', _PU_RANGE, 'Minimum-SD branch combination, native EPI geometry.'),
    'SDmap': MapSpec('Distorted B1+ uncertainty map', 'p.u.', None, 'Sample SD of the selected branch combination.'),
    'SumOfSq': MapSpec('SE root-sum-of-squares', 'a.u.', None, 'sqrt(sum SE_i^2), native EPI geometry.'),
    'sc_phase': MapSpec('Scaled field-map phase difference', 'rad', (-3.141592653589793, 3.141592653589793)),
    'fpm': MapSpec('Regularised B0 field map', 'Hz', None, 'Resampled on the EPI grid.'),
    'vdm5': MapSpec('Voxel displacement map', 'voxels', None, 'Displacement along the phase-encode axis.'),
    'uSumOfSq': MapSpec('Unwarped SE root-sum-of-squares', 'a.u.'),
    'uB1map': MapSpec('Unwarped B1+ map', 'p.u.', _PU_RANGE),
    'uSDmap': MapSpec('Unwarped B1+ uncertainty map', 'p.u.'),
    'muB1map': MapSpec('Masked and padded B1+ map', 'p.u.', _PU_RANGE, 'Reliable voxels after erosion, padded.'),
    'smuB1map': MapSpec('Smoothed, masked and padded B1+ map', 'p.u.', _PU_RANGE),
}

COMMON_MAP_SPECS: Dict[str, MapSpec] = {
    'mask': MapSpec('B1 brain mask', 'binary', (0.0, 1.0), 'dipy median_otsu of the anatomical reference.'),
}


def get_map_spec(role: str, *, intermediate: bool = False) -> Optional[Dict]:
    """Metadata dict for an output role (``'B1map'``, ``'fpm'``, ...); None if unknown.

    ``B1map`` names both the primary smoothed map and the distorted SE/STE
    intermediate; pass ``intermediate=True`` for the latter.
    """
    if not isinstance(role, str) or not role:
        return None
    if not intermediate and role in PRIMARY_MAP_SPECS:
        return PRIMARY_MAP_SPECS[role].as_dict()
    if role in SESTE_MAP_SPECS:
        return SESTE_MAP_SPECS[role].as_dict()
    if role in COMMON_MAP_SPECS:
        return COMMON_MAP_SPECS[role].as_dict()
    return None


def get_map_spec_safe(role: str, *, intermediate: bool = False) -> Dict:
    """Like get_map_spec(), but never returns None."""
    spec = get_map_spec(role, intermediate=intermediate)
    if spec is None:
        return {
            'description': None,
            'units': None,
            'primary': False,
        }
    return spec
