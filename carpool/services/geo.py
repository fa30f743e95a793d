"""Great-circle distance and radius filtering over WGS84 points."""
import math
from dataclasses import dataclass
from typing import Any, Callable, Iterable, TypeVar

from carpool.errors import InvalidCoordinates

EARTH_RADIUS_M = 6371000.0

# Below this difference (degrees, both axes) haversine loses precision; use a flat plane instead.
NEAR_POINT_DEG = 0.0001
METERS_PER_DEGREE = 111000.0


@dataclass(frozen=True)
class GeoPoint:
    """A validated (lat, lng) pair. Construction fails with InvalidCoordinates if out of range."""
    lat: float
    lng: float

    def __post_init__(self) -> None:
        try:
            lat = float(self.lat)
            lng = float(self.lng)
        except (TypeError, ValueError):
            raise InvalidCoordinates() from None
        if not (math.isfinite(lat) and math.isfinite(lng)):
            raise InvalidCoordinates()
        if not -90.0 <= lat <= 90.0:
            raise InvalidCoordinates(f"Latitude {lat} out of range [-90, 90]")
        if not -180.0 <= lng <= 180.0:
            raise InvalidCoordinates(f"Longitude {lng} out of range [-180, 180]")
        object.__setattr__(self, "lat", lat)
        object.__setattr__(self, "lng", lng)

    def to_dict(self) -> dict[str, float]:
        return {"lat": self.lat, "lng": self.lng}


def coerce_point(value: Any) -> GeoPoint:
    """Accept a GeoPoint, a {lat, lng} mapping or a (lat, lng) pair."""
    if isinstance(value, GeoPoint):
        return value
    if value is None:
        raise InvalidCoordinates("Coordinates are required")
    if isinstance(value, dict):
        if "lat" not in value or "lng" not in value:
            raise InvalidCoordinates("Coordinates need lat and lng")
        return GeoPoint(value["lat"], value["lng"])
    if isinstance(value, (tuple, list)) and len(value) == 2:
        return GeoPoint(value[0], value[1])
    lat = getattr(value, "lat", None)
    lng = getattr(value, "lng", None)
    if lat is None or lng is None:
        raise InvalidCoordinates()
    return GeoPoint(lat, lng)


def distance_m(a: GeoPoint, b: GeoPoint) -> float:
    """Distance in meters between two points on a spherical Earth."""
    if a.lat == b.lat and a.lng == b.lng:
        return 0.0
    dlat_abs = abs(a.lat - b.lat)
    dlng_abs = abs(a.lng - b.lng)
    if dlat_abs < NEAR_POINT_DEG and dlng_abs < NEAR_POINT_DEG:
        return math.sqrt(dlat_abs * dlat_abs + dlng_abs * dlng_abs) * METERS_PER_DEGREE
    phi1, phi2 = math.radians(a.lat), math.radians(b.lat)
    dphi = math.radians(b.lat - a.lat)
    dlam = math.radians(b.lng - a.lng)
    h = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlam / 2) ** 2
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))
    return EARTH_RADIUS_M * c


T = TypeVar("T")


def within_radius(
    items: Iterable[T],
    point: GeoPoint,
    radius_m: float,
    locate: Callable[[T], GeoPoint],
    predicate: Callable[[T], bool] | None = None,
) -> list[T]:
    """Linear-scan fallback for stores without a geo index. Nearest first."""
    hits: list[tuple[float, int, T]] = []
    for i, item in enumerate(items):
        if predicate is not None and not predicate(item):
            continue
        d = distance_m(point, locate(item))
        if d <= radius_m:
            hits.append((d, i, item))
    hits.sort(key=lambda h: (h[0], h[1]))
    return [h[2] for h in hits]
