"""Active searches: one live record per user, time-boxed, indexed by pickup point.

Two backends share the same async interface:
- RedisSearchRegistry: JSON value per owner written with SETEX, pickup points in a GEO set.
- MemorySearchRegistry: in-process dict with a linear haversine scan (dev/tests).
Expiry is passive in both: a record past expires_at stops showing up in reads.
"""
import enum
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Protocol

from carpool.config import settings
from carpool.errors import InvalidPayload
from carpool.services.geo import GeoPoint, coerce_point, within_radius as _scan_within_radius

logger = logging.getLogger(__name__)


class SearchKind(str, enum.Enum):
    OFFER = "offer"
    REQUEST = "request"

    @classmethod
    def parse(cls, value: Any) -> "SearchKind":
        """Accept 'offer'/'request' and the legacy 'poolCar'/'findCar'."""
        if isinstance(value, cls):
            return value
        legacy = {"poolCar": cls.OFFER, "findCar": cls.REQUEST}
        if value in legacy:
            return legacy[value]
        try:
            return cls(str(value).lower())
        except ValueError:
            raise InvalidPayload("Kind must be 'offer' or 'request'") from None

    @property
    def opposite(self) -> "SearchKind":
        return SearchKind.REQUEST if self is SearchKind.OFFER else SearchKind.OFFER


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ActiveSearch:
    id: str
    owner_id: int
    pickup: str
    drop: str
    pickup_point: GeoPoint
    drop_point: GeoPoint
    kind: SearchKind
    created_at: datetime
    expires_at: datetime

    @property
    def route(self) -> str:
        return f"{self.pickup} → {self.drop}"

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "pickup": self.pickup,
            "drop": self.drop,
            "pickup_point": self.pickup_point.to_dict(),
            "drop_point": self.drop_point.to_dict(),
            "kind": self.kind.value,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ActiveSearch":
        return cls(
            id=data["id"],
            owner_id=int(data["owner_id"]),
            pickup=data.get("pickup", ""),
            drop=data.get("drop", ""),
            pickup_point=coerce_point(data["pickup_point"]),
            drop_point=coerce_point(data["drop_point"]),
            kind=SearchKind(data["kind"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
        )


SearchPredicate = Callable[[ActiveSearch], bool]


class SearchRegistry(Protocol):
    async def upsert_search(
        self,
        owner_id: int,
        pickup_coords: Any,
        drop_coords: Any,
        kind: Any,
        pickup: str = "",
        drop: str = "",
    ) -> ActiveSearch: ...

    async def remove_search(self, owner_id: int) -> bool: ...

    async def get_search(self, owner_id: int) -> ActiveSearch | None: ...

    async def list_all(self) -> list[ActiveSearch]: ...

    async def within_radius(
        self, point: GeoPoint, radius_m: float, predicate: SearchPredicate | None = None
    ) -> list[ActiveSearch]: ...

    async def purge_expired(self) -> int: ...


def build_search(
    owner_id: int,
    pickup_coords: Any,
    drop_coords: Any,
    kind: Any,
    pickup: str,
    drop: str,
    now: datetime,
    ttl_seconds: int,
) -> ActiveSearch:
    """Validate inputs before any store mutation. Raises InvalidCoordinates."""
    pickup_point = coerce_point(pickup_coords)
    drop_point = coerce_point(drop_coords)
    return ActiveSearch(
        id=uuid.uuid4().hex,
        owner_id=int(owner_id),
        pickup=(pickup or "").strip(),
        drop=(drop or "").strip(),
        pickup_point=pickup_point,
        drop_point=drop_point,
        kind=SearchKind.parse(kind),
        created_at=now,
        expires_at=now + timedelta(seconds=ttl_seconds),
    )


def _scan_order(search: ActiveSearch) -> tuple[datetime, str]:
    return (search.created_at, search.id)


class MemorySearchRegistry:
    """Dict of owner_id -> ActiveSearch. Radius queries fall back to a linear scan."""

    def __init__(
        self,
        ttl_seconds: int | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.SEARCH_TTL_SECONDS
        self._clock = clock
        self._searches: dict[int, ActiveSearch] = {}

    async def upsert_search(self, owner_id, pickup_coords, drop_coords, kind, pickup="", drop=""):
        search = build_search(
            owner_id, pickup_coords, drop_coords, kind, pickup, drop, self._clock(), self.ttl_seconds
        )
        self._searches.pop(search.owner_id, None)
        self._searches[search.owner_id] = search
        return search

    async def remove_search(self, owner_id: int) -> bool:
        return self._searches.pop(int(owner_id), None) is not None

    async def get_search(self, owner_id: int) -> ActiveSearch | None:
        search = self._searches.get(int(owner_id))
        if search is None or search.is_expired(self._clock()):
            return None
        return search

    async def list_all(self) -> list[ActiveSearch]:
        now = self._clock()
        live = [s for s in self._searches.values() if not s.is_expired(now)]
        return sorted(live, key=_scan_order)

    async def within_radius(self, point, radius_m, predicate=None):
        live = await self.list_all()
        return _scan_within_radius(live, point, radius_m, lambda s: s.pickup_point, predicate)

    async def purge_expired(self) -> int:
        now = self._clock()
        expired = [owner for owner, s in self._searches.items() if s.is_expired(now)]
        for owner in expired:
            del self._searches[owner]
        return len(expired)


GEO_KEY = "searches:pickup"


def _key(owner_id: int) -> str:
    return f"search:{owner_id}"


class RedisSearchRegistry:
    """Searches in Redis: SETEX'd JSON per owner plus a GEO set of pickup points.

    The GEO set has no per-member TTL, so members whose record has expired are pruned
    whenever a read notices them.
    """

    def __init__(
        self,
        redis: Any,
        ttl_seconds: int | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.redis = redis
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.SEARCH_TTL_SECONDS
        self._clock = clock

    async def upsert_search(self, owner_id, pickup_coords, drop_coords, kind, pickup="", drop=""):
        search = build_search(
            owner_id, pickup_coords, drop_coords, kind, pickup, drop, self._clock(), self.ttl_seconds
        )
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.delete(_key(search.owner_id))
            pipe.setex(_key(search.owner_id), self.ttl_seconds, json.dumps(search.to_dict()))
            # GEOADD takes lng, lat, member
            pipe.geoadd(GEO_KEY, [search.pickup_point.lng, search.pickup_point.lat, str(search.owner_id)])
            await pipe.execute()
        return search

    async def remove_search(self, owner_id: int) -> bool:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.delete(_key(owner_id))
            pipe.zrem(GEO_KEY, str(owner_id))
            deleted, _ = await pipe.execute()
        return bool(deleted)

    async def get_search(self, owner_id: int) -> ActiveSearch | None:
        raw = await self.redis.get(_key(owner_id))
        if not raw:
            return None
        search = ActiveSearch.from_dict(json.loads(raw))
        if search.is_expired(self._clock()):
            return None
        return search

    async def _load(self, members: list[Any]) -> list[ActiveSearch]:
        """Fetch records for GEO members in order, pruning members whose record is gone or expired."""
        if not members:
            return []
        owner_ids = [int(m) for m in members]
        raws = await self.redis.mget([_key(o) for o in owner_ids])
        now = self._clock()
        found: list[ActiveSearch] = []
        stale: list[str] = []
        for owner_id, raw in zip(owner_ids, raws):
            if not raw:
                stale.append(str(owner_id))
                continue
            search = ActiveSearch.from_dict(json.loads(raw))
            if search.is_expired(now):
                stale.append(str(owner_id))
                continue
            found.append(search)
        if stale:
            await self.redis.zrem(GEO_KEY, *stale)
            logger.debug("search_index_pruned count=%s", len(stale))
        return found

    async def list_all(self) -> list[ActiveSearch]:
        members = await self.redis.zrange(GEO_KEY, 0, -1)
        return sorted(await self._load(members), key=_scan_order)

    async def within_radius(self, point, radius_m, predicate=None):
        members = await self.redis.geosearch(
            GEO_KEY,
            longitude=point.lng,
            latitude=point.lat,
            radius=radius_m,
            unit="m",
            sort="ASC",
        )
        searches = await self._load(members)
        if predicate is not None:
            searches = [s for s in searches if predicate(s)]
        return searches

    async def purge_expired(self) -> int:
        members = await self.redis.zrange(GEO_KEY, 0, -1)
        live = await self._load(members)
        return len(members) - len(live)
