import asyncio

import pytest

from carpool.errors import (
    AlreadyApproved,
    InvalidCoordinates,
    MatchNoLongerAvailable,
    MatchNotFound,
    NotPartOfMatch,
)
from carpool.services.coordinator import MatchingCoordinator, ScanReason
from carpool.services.pending_match import CancelReason, MatchStatus

from conftest import (
    A_DROP,
    A_PICKUP,
    B_DROP,
    B_PICKUP,
    FAR_DROP,
    BrokenSocket,
    assert_single_membership,
)


async def propose_pair(coordinator):
    await coordinator.submit_search(1, A_PICKUP, A_DROP, "request", "MG Road", "Hebbal")
    await coordinator.submit_search(2, B_PICKUP, B_DROP, "offer", "Brigade Rd", "Hebbal Flyover")
    match = coordinator.pending_match_for(1)
    assert match is not None
    return match


async def test_submit_search_acknowledges(coordinator, sockets):
    search = await coordinator.submit_search(1, A_PICKUP, A_DROP, "findCar", "MG Road", "Hebbal")
    [started] = sockets[1].payloads("search_started")
    assert started["searchId"] == search.id
    assert started["searchType"] == "request"
    assert started["route"] == "MG Road → Hebbal"
    assert started["search"]["pickupCoords"] == {"lat": 12.97, "lng": 77.59}
    assert not coordinator.has_pending_match(1)


async def test_invalid_search_is_rejected_without_notification(coordinator, sockets, registry):
    with pytest.raises(InvalidCoordinates):
        await coordinator.submit_search(1, {"lat": 91, "lng": 0}, A_DROP, "request")
    assert sockets[1].events() == []
    assert await registry.get_search(1) is None


async def test_compatible_searches_are_proposed_to_both(coordinator, sockets):
    match = await propose_pair(coordinator)

    assert match.status is MatchStatus.PENDING_APPROVAL
    assert set(match.users) == {1, 2}
    [to_asha] = sockets[1].payloads("instant_match_found")
    [to_ravi] = sockets[2].payloads("instant_match_found")
    assert to_asha["matchId"] == to_ravi["matchId"] == match.match_id
    assert to_asha["partner"]["name"] == "Ravi"
    assert to_asha["partner"]["kind"] == "offer"
    assert to_asha["yourSearch"] == {"pickup": "MG Road", "drop": "Hebbal", "kind": "request"}
    assert to_ravi["partner"]["name"] == "Asha"
    assert 100 < to_asha["distance"] < 200
    assert to_asha["expiresInSeconds"] == 120


async def test_far_drop_never_matches(coordinator, sockets):
    await coordinator.submit_search(1, A_PICKUP, A_DROP, "request")
    await coordinator.submit_search(2, B_PICKUP, FAR_DROP, "offer")
    for _ in range(3):
        assert await coordinator.tick() == []
    assert coordinator.pending_matches() == []
    assert "instant_match_found" not in sockets[1].events()


async def test_same_kind_never_matches(coordinator):
    await coordinator.submit_search(1, A_PICKUP, A_DROP, "offer")
    await coordinator.submit_search(2, B_PICKUP, B_DROP, "offer")
    assert await coordinator.tick() == []
    assert coordinator.pending_matches() == []


async def test_user_is_in_at_most_one_pending_match(coordinator, sockets):
    await coordinator.submit_search(1, A_PICKUP, A_DROP, "request")
    await coordinator.submit_search(2, B_PICKUP, B_DROP, "offer")
    await coordinator.submit_search(3, B_PICKUP, A_DROP, "offer")
    await coordinator.tick()

    assert len(coordinator.pending_matches()) == 1
    assert not coordinator.has_pending_match(3)
    assert "instant_match_found" not in sockets[3].events()
    assert_single_membership(coordinator)


async def test_one_sided_approval_notifies_both(coordinator, sockets):
    match = await propose_pair(coordinator)

    assert await coordinator.approve(match.match_id, 1) is None
    assert sockets[1].payloads("approval_sent") == [
        {"message": "Waiting for partner approval...", "matchId": match.match_id, "partnerId": 2}
    ]
    [partner_approved] = sockets[2].payloads("partner_approved")
    assert partner_approved["partnerId"] == 1
    assert match.status is MatchStatus.PENDING_APPROVAL

    with pytest.raises(AlreadyApproved):
        await coordinator.approve(match.match_id, 1)


async def test_mutual_approval_establishes_one_connection(coordinator, sockets, registry, connections):
    match = await propose_pair(coordinator)

    assert await coordinator.approve(match.match_id, 2) is None
    connection = await coordinator.approve(match.match_id, 1)

    assert connection.chat_room_id == "chat_1_2"
    assert match.status is MatchStatus.CONNECTED
    assert coordinator.pending_matches() == []
    assert await registry.get_search(1) is None
    assert await registry.get_search(2) is None
    assert await connections.get_connection("chat_1_2") is not None

    [established] = sockets[1].payloads("connection_established")
    assert established["chatRoomId"] == "chat_1_2"
    assert established["partner"]["name"] == "Ravi"
    assert established["partner"]["contactInfo"]["phone"] == "+91 90000 00002"
    assert established["route"] == {"from": "MG Road", "to": "Hebbal"}
    assert sockets[2].payloads("connection_established")[0]["partner"]["name"] == "Asha"

    [welcome] = await connections.list_messages("chat_1_2")
    assert welcome.kind == "system"
    assert welcome.sender_id is None
    for uid in (1, 2):
        [chat] = sockets[uid].payloads("chat_message")
        assert chat["type"] == "system"

    with pytest.raises(AlreadyApproved):
        await coordinator.approve(match.match_id, 1)
    with pytest.raises(NotPartOfMatch):
        await coordinator.approve(match.match_id, 3)


async def test_concurrent_approvals_connect_exactly_once(coordinator, sockets):
    match = await propose_pair(coordinator)

    results = await asyncio.gather(
        coordinator.approve(match.match_id, 1),
        coordinator.approve(match.match_id, 2),
    )

    assert sum(1 for r in results if r is not None) == 1
    assert len(sockets[1].payloads("connection_established")) == 1
    assert len(sockets[2].payloads("connection_established")) == 1


async def test_deny_cancels_for_both_and_keeps_searches(coordinator, sockets, registry):
    match = await propose_pair(coordinator)

    await coordinator.deny(match.match_id, 2)

    for uid in (1, 2):
        [cancelled] = sockets[uid].payloads("match_cancelled")
        assert cancelled["reason"] == "denied"
        assert cancelled["matchId"] == match.match_id
    assert match.cancel_reason is CancelReason.DENIED
    assert await registry.get_search(1) is not None
    assert await registry.get_search(2) is not None

    # cooldown keeps the same pair from being proposed again right away
    assert await coordinator.tick() == []

    with pytest.raises(MatchNoLongerAvailable):
        await coordinator.approve(match.match_id, 1)


async def test_denied_pair_can_rematch_without_cooldown(registry, connections, users, gateway, sockets):
    coordinator = MatchingCoordinator(registry, connections, users, gateway, approval_timeout=120, denial_cooldown=0)
    try:
        first = await propose_pair(coordinator)
        await coordinator.deny(first.match_id, 1)
        [second] = await coordinator.tick()
        assert second.match_id != first.match_id
        assert set(second.users) == {1, 2}
    finally:
        await coordinator.shutdown()


async def test_lookup_errors(coordinator):
    match = await propose_pair(coordinator)
    with pytest.raises(MatchNotFound):
        await coordinator.approve("match_nope", 1)
    with pytest.raises(MatchNotFound):
        await coordinator.deny("match_nope", 1)
    with pytest.raises(NotPartOfMatch):
        await coordinator.approve(match.match_id, 3)
    with pytest.raises(NotPartOfMatch):
        await coordinator.deny(match.match_id, 3)
    assert match.status is MatchStatus.PENDING_APPROVAL


async def test_unapproved_match_expires_once(registry, connections, users, gateway, sockets):
    coordinator = MatchingCoordinator(registry, connections, users, gateway, approval_timeout=0.05)
    try:
        match = await propose_pair(coordinator)
        await asyncio.sleep(0.3)

        assert match.status is MatchStatus.CANCELLED
        assert match.cancel_reason is CancelReason.EXPIRED
        for uid in (1, 2):
            [cancelled] = sockets[uid].payloads("match_cancelled")
            assert cancelled["reason"] == "expired"
        assert await registry.get_search(1) is not None
        assert await coordinator.expire(match.match_id) is False
        assert len(sockets[1].payloads("match_cancelled")) == 1
    finally:
        await coordinator.shutdown()


async def test_connected_match_does_not_expire(registry, connections, users, gateway, sockets):
    coordinator = MatchingCoordinator(registry, connections, users, gateway, approval_timeout=0.1)
    try:
        match = await propose_pair(coordinator)
        await coordinator.approve(match.match_id, 1)
        await coordinator.approve(match.match_id, 2)
        await asyncio.sleep(0.3)
        assert match.status is MatchStatus.CONNECTED
        assert sockets[1].payloads("match_cancelled") == []
    finally:
        await coordinator.shutdown()


async def test_release_user_cancels_match_and_removes_only_their_search(coordinator, sockets, registry):
    match = await propose_pair(coordinator)

    assert await coordinator.release_user(1) is True

    [cancelled] = sockets[2].payloads("match_cancelled")
    assert cancelled["reason"] == "disconnected"
    assert match.cancel_reason is CancelReason.DISCONNECTED
    assert await registry.get_search(1) is None
    assert await registry.get_search(2) is not None
    assert not coordinator.has_pending_match(2)
    assert await coordinator.release_user(1) is False


async def test_broken_socket_does_not_block_matching(coordinator, gateway, sockets, connections):
    gateway.connect(4, BrokenSocket())
    await coordinator.submit_search(4, A_PICKUP, A_DROP, "request")
    await coordinator.submit_search(2, B_PICKUP, B_DROP, "offer")
    match = coordinator.pending_match_for(4)
    assert match is not None
    assert sockets[2].payloads("instant_match_found")[0]["partner"]["name"] == "User"

    await coordinator.approve(match.match_id, 4)
    connection = await coordinator.approve(match.match_id, 2)
    assert connection.chat_room_id == "chat_2_4"
    assert await connections.get_connection("chat_2_4") is not None


async def test_timer_scan_is_skipped_while_a_scan_runs(coordinator, registry):
    await registry.upsert_search(1, A_PICKUP, A_DROP, "request")
    await registry.upsert_search(2, B_PICKUP, B_DROP, "offer")

    async with coordinator._scan_lock:
        assert await coordinator.scan(ScanReason.TIMER) == []

    [match] = await coordinator.scan(ScanReason.TIMER)
    assert set(match.users) == {1, 2}


async def test_greedy_scan_prefers_older_request(coordinator, registry, clock):
    await registry.upsert_search(2, B_PICKUP, B_DROP, "offer")
    clock.advance(1)
    await registry.upsert_search(3, A_PICKUP, A_DROP, "request")
    clock.advance(1)
    await registry.upsert_search(1, A_PICKUP, A_DROP, "request")

    [match] = await coordinator.tick()

    assert (match.user_a, match.user_b) == (3, 2)
    assert not coordinator.has_pending_match(1)
    assert_single_membership(coordinator)


async def test_expired_searches_are_not_matched(coordinator, registry, clock):
    await registry.upsert_search(1, A_PICKUP, A_DROP, "request")
    clock.advance(181)
    await registry.upsert_search(2, B_PICKUP, B_DROP, "offer")

    assert await coordinator.tick() == []
    assert [s.owner_id for s in await registry.list_all()] == [2]


async def test_lapsed_cooldowns_are_forgotten(registry, connections, users, gateway, sockets):
    coordinator = MatchingCoordinator(registry, connections, users, gateway, approval_timeout=120, denial_cooldown=0.05)
    try:
        match = await propose_pair(coordinator)
        await coordinator.deny(match.match_id, 1)
        await coordinator.release_user(1)
        await coordinator.release_user(2)
        assert len(coordinator._cooldowns) == 1

        await asyncio.sleep(0.1)
        await coordinator.tick()

        assert coordinator._cooldowns == {}
    finally:
        await coordinator.shutdown()
