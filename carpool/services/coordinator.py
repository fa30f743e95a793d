"""Matching coordinator: proposes pairings between compatible searches and drives approval.

Per-user states: idle -> searching -> match_proposed -> connected | idle.

All mutations of the pending-match working set (propose, approve, deny, expire, release) run under
one asyncio.Lock, so "does this user already have a pending match" and "create the match" are a
single step. Notifications go out after the lock is released; a failed notification never undoes
the state change that caused it.
"""
import asyncio
import enum
import logging
import time
import uuid
from collections import OrderedDict
from typing import Any

from carpool.config import settings
from carpool.errors import (
    AlreadyApproved,
    MatchNoLongerAvailable,
    MatchNotFound,
    NotPartOfMatch,
)
from carpool.schemas.events import (
    ApprovalSent,
    InstantMatchFound,
    MatchCancelled,
    PartnerApproved,
    PartnerSummary,
    RouteSide,
    SearchEcho,
    SearchStarted,
)
from carpool.services.compatibility import evaluate, is_opposite
from carpool.services.connection_store import Connection, ConnectionStore
from carpool.services.establishment import ConnectionEstablisher, load_profile
from carpool.services.gateway import Gateway
from carpool.services.pending_match import (
    CANCEL_MESSAGES,
    CancelReason,
    MatchStatus,
    PendingMatch,
)
from carpool.services.search_registry import ActiveSearch, SearchKind, SearchRegistry
from carpool.services.user_directory import UserDirectory

logger = logging.getLogger(__name__)

# Recently closed matches kept to answer late approve/deny calls precisely
CLOSED_MATCH_MEMORY = 1024


class ScanReason(str, enum.Enum):
    TIMER = "timer"
    NEW_SEARCH = "new_search"


def search_started_event(search: ActiveSearch) -> dict[str, Any]:
    return SearchStarted(
        search_id=search.id,
        search_type=search.kind.value,
        route=search.route,
        search=SearchEcho(
            id=search.id,
            pickup=search.pickup,
            drop=search.drop,
            pickup_coords=search.pickup_point.to_dict(),
            drop_coords=search.drop_point.to_dict(),
            kind=search.kind.value,
            created_at=search.created_at,
            expires_at=search.expires_at,
        ),
    ).dump()


class MatchingCoordinator:
    def __init__(
        self,
        registry: SearchRegistry,
        connections: ConnectionStore,
        users: UserDirectory,
        gateway: Gateway,
        approval_timeout: float | None = None,
        pickup_radius_m: float | None = None,
        drop_radius_m: float | None = None,
        denial_cooldown: float | None = None,
    ) -> None:
        self.registry = registry
        self.connections = connections
        self.users = users
        self.gateway = gateway
        self.approval_timeout = (
            settings.MATCH_APPROVAL_TIMEOUT_SECONDS if approval_timeout is None else approval_timeout
        )
        self.pickup_radius_m = settings.PICKUP_RADIUS_M if pickup_radius_m is None else pickup_radius_m
        self.drop_radius_m = settings.DROP_RADIUS_M if drop_radius_m is None else drop_radius_m
        self.denial_cooldown = settings.DENIAL_COOLDOWN_SECONDS if denial_cooldown is None else denial_cooldown
        self.establisher = ConnectionEstablisher(registry, connections, users, gateway)

        self._lock = asyncio.Lock()
        self._scan_lock = asyncio.Lock()
        self._matches: dict[str, PendingMatch] = {}
        self._by_user: dict[int, str] = {}
        self._timers: dict[str, asyncio.Task] = {}
        self._closed: OrderedDict[str, PendingMatch] = OrderedDict()
        self._cooldowns: dict[frozenset[int], float] = {}

    # ---- read-only views ----

    def pending_matches(self) -> list[PendingMatch]:
        return list(self._matches.values())

    def pending_match_for(self, user_id: int) -> PendingMatch | None:
        match_id = self._by_user.get(user_id)
        return self._matches.get(match_id) if match_id else None

    def has_pending_match(self, user_id: int) -> bool:
        return user_id in self._by_user

    # ---- searches ----

    async def submit_search(
        self,
        user_id: int,
        pickup_coords: Any,
        drop_coords: Any,
        kind: Any,
        pickup: str = "",
        drop: str = "",
    ) -> ActiveSearch:
        """Replace the user's search, acknowledge it, then try to match it right away."""
        async with self._lock:
            search = await self.registry.upsert_search(user_id, pickup_coords, drop_coords, kind, pickup, drop)
        logger.info("search_started user=%s kind=%s search=%s", user_id, search.kind.value, search.id)
        await self._notify(user_id, "search_started", search_started_event(search))
        await self.scan(ScanReason.NEW_SEARCH, focus=search)
        return search

    async def release_user(self, user_id: int, reason: CancelReason = CancelReason.DISCONNECTED) -> bool:
        """Stop-search / disconnect cleanup: cancel the user's pending match and drop their search.

        Returns True if a search was removed.
        """
        cancelled: PendingMatch | None = None
        removed = False
        async with self._lock:
            match = self.pending_match_for(user_id)
            if match is not None and match.status is MatchStatus.PENDING_APPROVAL:
                self._cancel_locked(match, reason)
                cancelled = match
            try:
                removed = await self.registry.remove_search(user_id)
            except Exception:
                # TTL expiry still removes it
                logger.exception("search_remove_failed user=%s", user_id)
        if cancelled is not None:
            await self._notify_cancelled(cancelled)
        logger.info("user_released user=%s reason=%s search_removed=%s", user_id, reason.value, removed)
        return removed

    # ---- scanning ----

    async def scan(self, reason: ScanReason = ScanReason.TIMER, focus: ActiveSearch | None = None) -> list[PendingMatch]:
        """Propose matches. Timer ticks are skipped while another scan runs; new-search scans wait."""
        if reason is ScanReason.TIMER and self._scan_lock.locked():
            logger.debug("scan_skipped reason=%s previous scan still running", reason.value)
            return []
        async with self._scan_lock:
            async with self._lock:
                if focus is not None:
                    proposed = await self._scan_focus_locked(focus)
                else:
                    proposed = await self._scan_all_locked()
            for match in proposed:
                await self._announce_match(match)
        if proposed:
            logger.info("scan_done reason=%s proposed=%s", reason.value, len(proposed))
        return proposed

    async def tick(self) -> list[PendingMatch]:
        """One periodic pass: purge expired searches and denial cooldowns, then scan everything."""
        try:
            purged = await self.registry.purge_expired()
            if purged:
                logger.info("searches_expired count=%s", purged)
        except Exception:
            logger.exception("search_purge_failed")
        async with self._lock:
            self._prune_cooldowns_locked()
        return await self.scan(ScanReason.TIMER)

    def _prune_cooldowns_locked(self) -> None:
        now = time.monotonic()
        for key in [k for k, deadline in self._cooldowns.items() if now >= deadline]:
            del self._cooldowns[key]

    def _cooling_down(self, user_a: int, user_b: int) -> bool:
        key = frozenset((user_a, user_b))
        deadline = self._cooldowns.get(key)
        if deadline is None:
            return False
        if time.monotonic() >= deadline:
            del self._cooldowns[key]
            return False
        return True

    def _pairable(self, a: ActiveSearch, b: ActiveSearch) -> float | None:
        """Pickup distance if a and b may be proposed to each other now, else None."""
        if a.owner_id == b.owner_id or not is_opposite(a.kind, b.kind):
            return None
        if self.has_pending_match(a.owner_id) or self.has_pending_match(b.owner_id):
            return None
        if self._cooling_down(a.owner_id, b.owner_id):
            return None
        report = evaluate(a, b, self.pickup_radius_m, self.drop_radius_m)
        logger.debug(
            "compatibility users=%s,%s pickup_m=%.0f drop_m=%.0f compatible=%s",
            a.owner_id, b.owner_id, report.pickup_distance_m, report.drop_distance_m, report.compatible,
        )
        return report.pickup_distance_m if report.compatible else None

    async def _scan_focus_locked(self, focus: ActiveSearch) -> list[PendingMatch]:
        current = await self.registry.get_search(focus.owner_id)
        if current is None or current.id != focus.id or self.has_pending_match(focus.owner_id):
            return []
        opposite = focus.kind.opposite
        candidates = await self.registry.within_radius(
            focus.pickup_point,
            self.pickup_radius_m,
            lambda s: s.kind is opposite and s.owner_id != focus.owner_id,
        )
        for candidate in candidates:
            distance = self._pairable(focus, candidate)
            if distance is not None:
                return [self._propose_locked(focus, candidate, distance)]
        return []

    async def _scan_all_locked(self) -> list[PendingMatch]:
        """Greedy: each request takes the first compatible offer in scan order."""
        searches = await self.registry.list_all()
        if len(searches) < 2:
            return []
        requests = [s for s in searches if s.kind is SearchKind.REQUEST]
        offers = [s for s in searches if s.kind is SearchKind.OFFER]
        proposed: list[PendingMatch] = []
        for request in requests:
            if self.has_pending_match(request.owner_id):
                continue
            for offer in offers:
                distance = self._pairable(request, offer)
                if distance is not None:
                    proposed.append(self._propose_locked(request, offer, distance))
                    break
        return proposed

    def _propose_locked(self, a: ActiveSearch, b: ActiveSearch, distance: float) -> PendingMatch:
        if self.has_pending_match(a.owner_id) or self.has_pending_match(b.owner_id):
            raise RuntimeError("user already has a pending match")
        match = PendingMatch(
            match_id=f"match_{uuid.uuid4().hex}",
            user_a=a.owner_id,
            user_b=b.owner_id,
            search_a=a,
            search_b=b,
            pickup_distance_m=distance,
        )
        self._matches[match.match_id] = match
        self._by_user[match.user_a] = match.match_id
        self._by_user[match.user_b] = match.match_id
        self._timers[match.match_id] = asyncio.create_task(self._expire_after(match.match_id))
        logger.info(
            "match_proposed match=%s users=%s,%s pickup_m=%.0f",
            match.match_id, match.user_a, match.user_b, distance,
        )
        return match

    # ---- approval ----

    def _lookup_locked(self, match_id: str, user_id: int, approving: bool = False) -> PendingMatch:
        """Validation shared by approve/deny; raises before any mutation."""
        match = self._matches.get(match_id)
        if match is None:
            closed = self._closed.get(match_id)
            if closed is None:
                raise MatchNotFound()
            if not closed.has_member(user_id):
                raise NotPartOfMatch()
            if approving and user_id in closed.approvals:
                raise AlreadyApproved()
            raise MatchNoLongerAvailable()
        if not match.has_member(user_id):
            raise NotPartOfMatch()
        if match.status is not MatchStatus.PENDING_APPROVAL:
            raise MatchNoLongerAvailable()
        return match

    async def approve(self, match_id: str, user_id: int) -> Connection | None:
        """Record an approval. Returns the Connection when this approval completed the match."""
        connection: Connection | None = None
        async with self._lock:
            match = self._lookup_locked(match_id, user_id, approving=True)
            if user_id in match.approvals:
                raise AlreadyApproved()
            match.approvals.add(user_id)
            logger.info("match_approved match=%s user=%s approvals=%s/2", match_id, user_id, len(match.approvals))
            if match.fully_approved:
                connection = self.establisher.claim(match)
                self._discard_locked(match)
                await self.establisher.release_searches(match)
        if connection is not None:
            return await self.establisher.announce(connection, match)
        partner_id = match.partner_of(user_id)
        await self._notify(
            user_id, "approval_sent", ApprovalSent(match_id=match_id, partner_id=partner_id).dump()
        )
        await self._notify(
            partner_id, "partner_approved", PartnerApproved(match_id=match_id, partner_id=user_id).dump()
        )
        return None

    async def deny(self, match_id: str, user_id: int) -> PendingMatch:
        """Cancel the match for both users. Their searches stay so they can be matched again."""
        async with self._lock:
            match = self._lookup_locked(match_id, user_id)
            self._cancel_locked(match, CancelReason.DENIED)
            if self.denial_cooldown > 0:
                self._prune_cooldowns_locked()
                self._cooldowns[frozenset(match.users)] = time.monotonic() + self.denial_cooldown
        await self._notify_cancelled(match)
        return match

    async def expire(self, match_id: str) -> bool:
        """Cancel a still-pending match with reason expired. No-op for anything already settled."""
        async with self._lock:
            match = self._matches.get(match_id)
            if match is None or match.status is not MatchStatus.PENDING_APPROVAL:
                return False
            self._cancel_locked(match, CancelReason.EXPIRED)
        await self._notify_cancelled(match)
        return True

    async def _expire_after(self, match_id: str) -> None:
        await asyncio.sleep(self.approval_timeout)
        try:
            await self.expire(match_id)
        except Exception:
            logger.exception("match_expire_failed match=%s", match_id)

    # ---- working-set bookkeeping ----

    def _cancel_locked(self, match: PendingMatch, reason: CancelReason) -> None:
        match.status = MatchStatus.CANCELLED
        match.cancel_reason = reason
        self._discard_locked(match)
        logger.info("match_cancelled match=%s reason=%s", match.match_id, reason.value)

    def _discard_locked(self, match: PendingMatch) -> None:
        self._matches.pop(match.match_id, None)
        for user_id in match.users:
            if self._by_user.get(user_id) == match.match_id:
                del self._by_user[user_id]
        timer = self._timers.pop(match.match_id, None)
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()
        self._closed[match.match_id] = match
        while len(self._closed) > CLOSED_MATCH_MEMORY:
            self._closed.popitem(last=False)

    async def shutdown(self) -> None:
        """Cancel pending expiry timers."""
        timers = list(self._timers.values())
        self._timers.clear()
        for timer in timers:
            timer.cancel()
        await asyncio.gather(*timers, return_exceptions=True)

    # ---- notifications ----

    async def _notify(self, user_id: int, event: str, data: dict[str, Any]) -> None:
        try:
            await self.gateway.send_to_user(user_id, event, data)
        except Exception:
            logger.exception("notify_failed user=%s event=%s", user_id, event)

    async def _announce_match(self, match: PendingMatch) -> None:
        if match.status is not MatchStatus.PENDING_APPROVAL:
            return
        profile_a = await load_profile(self.users, match.user_a)
        profile_b = await load_profile(self.users, match.user_b)
        distance = round(match.pickup_distance_m)
        for user_id, partner in ((match.user_a, profile_b), (match.user_b, profile_a)):
            own = match.search_of(user_id)
            theirs = match.search_of(partner.id)
            payload = InstantMatchFound(
                match_id=match.match_id,
                partner=PartnerSummary(
                    id=partner.id,
                    name=partner.name,
                    pickup=theirs.pickup,
                    drop=theirs.drop,
                    kind=theirs.kind.value,
                ),
                your_search=RouteSide(pickup=own.pickup, drop=own.drop, kind=own.kind.value),
                distance=distance,
                expires_in_seconds=self.approval_timeout,
            ).dump()
            await self._notify(user_id, "instant_match_found", payload)

    async def _notify_cancelled(self, match: PendingMatch) -> None:
        reason = match.cancel_reason or CancelReason.EXPIRED
        payload = MatchCancelled(
            message=CANCEL_MESSAGES[reason], reason=reason.value, match_id=match.match_id
        ).dump()
        try:
            await self.gateway.send_to_users(list(match.users), "match_cancelled", payload)
        except Exception:
            logger.exception("notify_failed match=%s event=match_cancelled", match.match_id)
