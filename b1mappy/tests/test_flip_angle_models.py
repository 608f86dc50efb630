from __future__ import annotations

import numpy as np
import pytest

from b1mappy.core.validation import GeometryMismatch
from b1mappy.models.flip_angle import (
    afi_b1,
    count_non_real,
    dam_b1,
    linear_scaling,
    real_acosd,
    scaling_coefficients,
)


def test_real_acosd_keeps_real_part_outside_unit_interval() -> None:
    out = real_acosd(np.array([1.5, 1.0, 0.0, -1.0, -2.0]))
    assert np.allclose(out, [0.0, 0.0, 90.0, 180.0, 180.0])
    assert count_non_real(np.array([1.5, 1.0, -2.0, np.nan])) == 2


def test_afi_recovers_analytic_angle() -> None:
    n, alphanom, r = 5.25, 20.0, 0.87
    y1 = np.full((3, 3, 2), 100.0)
    y2 = y1 * r

    est = afi_b1(y1, y2, n, alphanom)

    expected = np.degrees(np.arccos((r * n - 1.0) / (n - r))) * 100.0 / alphanom
    assert np.allclose(est.percent, expected)
    assert np.isclose(est.percent[0, 0, 0], 177.311362445609)
    assert est.non_real_forward == 0
    assert not est.order_suspicious


def test_afi_flags_swapped_inputs() -> None:
    y_short = np.full((2, 2, 2), 100.0)
    y_long = y_short * 0.87

    est = afi_b1(y_long, y_short, 5.25, 20.0)

    assert est.non_real_forward == 8
    assert est.non_real_reversed == 0
    assert est.order_suspicious


def test_afi_rejects_mismatched_shapes() -> None:
    with pytest.raises(GeometryMismatch):
        afi_b1(np.ones((2, 2, 2)), np.ones((2, 2, 3)), 5.0, 60.0)


def test_dam_recovers_relative_angle() -> None:
    alphanom = 60.0
    actual = 66.0
    y_alpha = np.full((2, 2, 2), 100.0)
    y_2alpha = 2.0 * y_alpha * np.cos(np.radians(actual))

    out = dam_b1(y_alpha, y_2alpha, alphanom)

    assert np.allclose(out, 110.0)


def test_linear_scaling_protocols() -> None:
    offset, scaling, descrip = scaling_coefficients('tfl_b1_map', alphanom=60.0)
    assert np.allclose(linear_scaling(np.array([600.0, -600.0]), offset, scaling), 100.0)
    assert 'tfl_b1map' in descrip
    assert linear_scaling(np.array([0.0]), offset, scaling)[0] == 0.0

    offset, scaling, _ = scaling_coefficients('rf_map', alphanom=60.0)
    raw = 2048.0 + 2048.0 * 60.0 / 180.0
    assert np.allclose(linear_scaling(np.array([raw]), offset, scaling), 100.0)
    assert linear_scaling(np.array([0.0]), offset, scaling)[0] == pytest.approx(-300.0)

    offset, scaling, descrip = scaling_coefficients('pre_processed_B1', scafac=2.0)
    assert np.allclose(linear_scaling(np.array([50.0]), offset, scaling), 100.0)
    assert '2.000000' in descrip


def test_scaling_coefficients_rejects_other_protocols() -> None:
    with pytest.raises(ValueError):
        scaling_coefficients('i3D_AFI', alphanom=60.0)


def test_afi_reversed_order_never_wins_below_ninety_degrees() -> None:
    n = 5.0
    angles = np.radians(np.linspace(5.0, 85.0, 81))
    # steady-state AFI signal ratio r = S2/S1 for each true angle
    cos_a = np.cos(angles)
    r = (1.0 + n * cos_a) / (n + cos_a)
    y_short = np.full((81, 1, 1), 100.0)
    y_long = y_short * r[:, None, None]

    est = afi_b1(y_short, y_long, n, 60.0)

    assert est.non_real_reversed >= est.non_real_forward
    assert not est.order_suspicious
    assert np.allclose(est.percent[:, 0, 0], np.linspace(5.0, 85.0, 81) * 100.0 / 60.0)
