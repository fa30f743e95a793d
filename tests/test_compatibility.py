import itertools
from datetime import datetime, timezone

import pytest

from carpool.services.compatibility import are_compatible, evaluate
from carpool.services.search_registry import ActiveSearch, build_search

from conftest import A_DROP, A_PICKUP, B_DROP, B_PICKUP, FAR_DROP

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make(owner_id, pickup, drop, kind) -> ActiveSearch:
    return build_search(owner_id, pickup, drop, kind, "", "", NOW, 180)


def test_reference_scenario_is_compatible():
    a = make(1, A_PICKUP, A_DROP, "findCar")
    b = make(2, B_PICKUP, B_DROP, "poolCar")
    assert are_compatible(a, b)
    report = evaluate(a, b)
    assert report.pickup_distance_m < 200
    assert report.drop_distance_m < 200


def test_far_drop_is_not_compatible():
    a = make(1, A_PICKUP, A_DROP, "request")
    b = make(2, B_PICKUP, FAR_DROP, "offer")
    report = evaluate(a, b)
    assert report.pickup_distance_m < 5000
    assert report.drop_distance_m > 5000
    assert not are_compatible(a, b)


def test_same_kind_never_pairs():
    a = make(1, A_PICKUP, A_DROP, "offer")
    b = make(2, B_PICKUP, B_DROP, "offer")
    assert not are_compatible(a, b)
    assert not evaluate(a, b).compatible


def test_both_radii_are_required():
    a = make(1, A_PICKUP, A_DROP, "request")
    b = make(2, B_PICKUP, B_DROP, "offer")
    assert not are_compatible(a, b, pickup_radius_m=50)
    assert not are_compatible(a, b, drop_radius_m=50)
    assert are_compatible(a, b, pickup_radius_m=500, drop_radius_m=500)


def test_compatibility_is_symmetric():
    points = [A_PICKUP, B_PICKUP, A_DROP, FAR_DROP]
    searches = [
        make(i, pickup, drop, kind)
        for i, (pickup, drop, kind) in enumerate(
            itertools.product(points[:2], [A_DROP, B_DROP, FAR_DROP], ["offer", "request"])
        )
    ]
    for a, b in itertools.combinations(searches, 2):
        assert are_compatible(a, b) == are_compatible(b, a)


@pytest.mark.parametrize("kind", ["findCar", "request", "REQUEST"])
def test_request_aliases(kind):
    assert make(1, A_PICKUP, A_DROP, kind).kind.value == "request"
