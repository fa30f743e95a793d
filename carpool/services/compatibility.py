"""Decide whether two active searches should be paired. Pure functions, no I/O."""
from dataclasses import dataclass

from carpool.config import settings
from carpool.services.geo import distance_m
from carpool.services.search_registry import ActiveSearch, SearchKind


@dataclass(frozen=True)
class CompatibilityReport:
    pickup_distance_m: float
    drop_distance_m: float
    opposite_kinds: bool
    within_radii: bool

    @property
    def compatible(self) -> bool:
        return self.opposite_kinds and self.within_radii


def is_opposite(kind_a: SearchKind, kind_b: SearchKind) -> bool:
    return kind_a.opposite is kind_b


def evaluate(
    a: ActiveSearch,
    b: ActiveSearch,
    pickup_radius_m: float | None = None,
    drop_radius_m: float | None = None,
) -> CompatibilityReport:
    """Distances plus verdict. Pickup AND drop must both be within their radius."""
    pickup_radius = settings.PICKUP_RADIUS_M if pickup_radius_m is None else pickup_radius_m
    drop_radius = settings.DROP_RADIUS_M if drop_radius_m is None else drop_radius_m
    pickup_d = distance_m(a.pickup_point, b.pickup_point)
    drop_d = distance_m(a.drop_point, b.drop_point)
    return CompatibilityReport(
        pickup_distance_m=pickup_d,
        drop_distance_m=drop_d,
        opposite_kinds=is_opposite(a.kind, b.kind),
        within_radii=pickup_d <= pickup_radius and drop_d <= drop_radius,
    )


def are_compatible(
    a: ActiveSearch,
    b: ActiveSearch,
    pickup_radius_m: float | None = None,
    drop_radius_m: float | None = None,
) -> bool:
    if not is_opposite(a.kind, b.kind):
        return False
    return evaluate(a, b, pickup_radius_m, drop_radius_m).compatible
