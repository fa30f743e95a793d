import asyncio
import json
import os
from datetime import datetime, timedelta, timezone

os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("SECRET_KEY", "test-secret")

import pytest

from carpool.services.connection_store import MemoryConnectionStore
from carpool.services.coordinator import MatchingCoordinator
from carpool.services.gateway import Gateway
from carpool.services.search_registry import MemorySearchRegistry
from carpool.services.user_directory import MemoryUserDirectory, UserProfile

# Reference scenario: two nearby routes in Bangalore
A_PICKUP = {"lat": 12.97, "lng": 77.59}
A_DROP = {"lat": 13.0, "lng": 77.6}
B_PICKUP = {"lat": 12.971, "lng": 77.591}
B_DROP = {"lat": 13.001, "lng": 77.601}
FAR_DROP = {"lat": 13.45, "lng": 77.6}  # ~50 km north of A_DROP


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeSocket:
    """Collects frames sent by the gateway."""

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.close_code: int | None = None

    async def send_text(self, text: str) -> None:
        self.sent.append(json.loads(text))

    async def close(self, code: int = 1000) -> None:
        self.close_code = code

    def events(self) -> list[str]:
        return [m["event"] for m in self.sent]

    def payloads(self, event: str) -> list[dict]:
        return [m["data"] for m in self.sent if m["event"] == event]


class BrokenSocket(FakeSocket):
    async def send_text(self, text: str) -> None:
        raise RuntimeError("connection reset")


class SlowSocket(FakeSocket):
    async def send_text(self, text: str) -> None:
        await asyncio.sleep(5)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(clock):
    return MemorySearchRegistry(ttl_seconds=180, clock=clock)


@pytest.fixture
def connections():
    return MemoryConnectionStore()


@pytest.fixture
def users():
    return MemoryUserDirectory(
        {
            1: UserProfile(id=1, name="Asha", email="asha@example.com", phone="+91 90000 00001"),
            2: UserProfile(id=2, name="Ravi", email="ravi@example.com", phone="+91 90000 00002"),
            3: UserProfile(id=3, name="Meera", email="meera@example.com"),
        }
    )


@pytest.fixture
def gateway():
    return Gateway(send_timeout=0.5)


@pytest.fixture
def sockets(gateway):
    socks = {uid: FakeSocket() for uid in (1, 2, 3)}
    for uid, sock in socks.items():
        gateway.connect(uid, sock)
    return socks


@pytest.fixture
async def coordinator(registry, connections, users, gateway):
    coord = MatchingCoordinator(
        registry,
        connections,
        users,
        gateway,
        approval_timeout=120,
        denial_cooldown=60,
    )
    yield coord
    await coord.shutdown()


def assert_single_membership(coord: MatchingCoordinator) -> None:
    seen: dict[int, str] = {}
    for match in coord.pending_matches():
        for uid in match.users:
            assert uid not in seen, f"user {uid} in {seen[uid]} and {match.match_id}"
            seen[uid] = match.match_id
