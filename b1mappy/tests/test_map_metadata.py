from __future__ import annotations

from b1mappy.maps.map_metadata import SESTE_MAP_SPECS, get_map_spec, get_map_spec_safe


def test_primary_and_intermediate_b1map_are_distinct() -> None:
    primary = get_map_spec("B1map")
    raw = get_map_spec("B1map", intermediate=True)

    assert primary["primary"] is True
    assert primary["units"] == "p.u."
    assert primary["range"] == [0.0, 200.0]
    assert raw["primary"] is False
    assert raw["description"] == "Distorted B1+ map"


def test_every_seste_intermediate_has_units() -> None:
    for role in SESTE_MAP_SPECS:
        spec = get_map_spec(role, intermediate=True)
        assert spec["units"]
        assert spec["description"]
    assert get_map_spec("vdm5")["units"] == "voxels"
    assert get_map_spec("mask")["units"] == "binary"


def test_unknown_roles() -> None:
    assert get_map_spec("T1map") is None
    assert get_map_spec("") is None
    assert get_map_spec_safe("T1map") == {"description": None, "units": None, "primary": False}
