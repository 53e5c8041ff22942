from parcel_locator.core.types import (
    CadastreData, Coordinates, PropertyCandidate, SearchZone, ZoneConstraints,
)
from parcel_locator.geo.exclusions import (
    REASON_COORDINATES, REASON_PARCEL, ExcludedCandidate, exclusion_reason, exclusions_from_result,
    expanded_zone, expansion_level, filter_excluded, is_excluded_point,
)

ZONE = SearchZone(
    center=Coordinates(44.8378, -0.5792), radius_meters=300,
    constraints=ZoneConstraints(postal_codes=("33000",)),
)


def candidate(cid, lat, lng, parcel_ids=()):
    return PropertyCandidate(
        id=cid, address=f"Parcelle {cid}", postal_code="33000", city="Bordeaux",
        coordinates=Coordinates(lat, lng), cadastre=CadastreData(parcel_ids=tuple(parcel_ids)),
    )


def test_exclusions_are_read_from_a_stored_result():
    stored = {
        "candidates": [
            {"candidate": {"coordinates": {"lat": 44.838, "lng": -0.579},
                           "cadastre": {"parcel_ids": ["330630000AB0001"]}}},
            {"candidate": {"coordinates": {"lat": 44.839, "lng": -0.580}, "cadastre": {}}},
            {"candidate": {"coordinates": {}}},
        ]
    }

    excluded = exclusions_from_result(stored)

    assert excluded == [
        ExcludedCandidate(Coordinates(44.838, -0.579), ("330630000AB0001",)),
        ExcludedCandidate(Coordinates(44.839, -0.580)),
    ]
    assert exclusions_from_result({}) == []
    assert exclusions_from_result(None) == []


def test_nearby_coordinates_are_the_same_candidate():
    previous = [ExcludedCandidate(Coordinates(44.8380, -0.5790))]

    assert exclusion_reason(candidate("a", 44.83805, -0.57993), previous) == REASON_COORDINATES
    assert exclusion_reason(candidate("b", 44.8382, -0.5790), previous) is None
    assert is_excluded_point(Coordinates(44.83809, -0.57991), previous)
    assert not is_excluded_point(Coordinates(44.8385, -0.5790), previous)


def test_same_parcel_is_excluded_wherever_it_was_placed():
    previous = [ExcludedCandidate(Coordinates(44.8420, -0.5700), ("330630000AB0001",))]

    assert exclusion_reason(candidate("a", 44.8380, -0.5790, ["330630000AB0001"]), previous) == REASON_PARCEL
    assert exclusion_reason(candidate("b", 44.8380, -0.5790, ["330630000AB0002"]), previous) is None


def test_filter_excluded_counts_the_dropped_candidates():
    candidates = [
        candidate("a", 44.8380, -0.5790),
        candidate("b", 44.8390, -0.5800, ["330630000AB0002"]),
        candidate("c", 44.8400, -0.5810),
    ]
    previous = [
        ExcludedCandidate(Coordinates(44.8380, -0.5790)),
        ExcludedCandidate(Coordinates(44.8500, -0.5900), ("330630000AB0002",)),
    ]

    kept, dropped = filter_excluded(candidates, previous)

    assert [c.id for c in kept] == ["c"]
    assert dropped == 2
    assert filter_excluded(candidates, []) == (candidates, 0)


def test_expansion_level_grows_with_each_run():
    assert [expansion_level(n) for n in (0, 1, 2, 3, 7)] == [1, 1, 2, 3, 3]


def test_expanded_zone_widens_the_radius_and_keeps_constraints():
    local = expanded_zone(ZONE, 1)
    commune = expanded_zone(ZONE, 2)
    postal = expanded_zone(ZONE, 3)

    assert local.radius_meters == 450
    assert commune.radius_meters == 2000
    assert postal.radius_meters == 5000
    assert {z.center for z in (local, commune, postal)} == {ZONE.center}
    assert postal.constraints == ZONE.constraints


def test_expanded_zone_never_shrinks_a_large_zone():
    wide = SearchZone(center=ZONE.center, radius_meters=8000)
    assert expanded_zone(wide, 2).radius_meters == 8000
    assert expanded_zone(wide, 3).radius_meters == 8000
