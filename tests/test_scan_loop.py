import asyncio

from carpool.tasks.scan_loop import run_scan_loop

from conftest import A_DROP, A_PICKUP, B_DROP, B_PICKUP


class FlakyCoordinator:
    def __init__(self) -> None:
        self.ticks = 0

    async def tick(self):
        self.ticks += 1
        if self.ticks == 1:
            raise RuntimeError("redis unavailable")
        return []


async def test_loop_survives_a_failed_tick(caplog):
    coordinator = FlakyCoordinator()
    task = asyncio.create_task(run_scan_loop(coordinator, interval=0.01))
    await asyncio.sleep(0.1)
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)

    assert coordinator.ticks >= 3
    assert "scan_tick_failed" in caplog.text


async def test_tick_proposes_matches_from_the_registry(coordinator, registry, sockets):
    await registry.upsert_search(1, A_PICKUP, A_DROP, "request")
    await registry.upsert_search(2, B_PICKUP, B_DROP, "offer")

    task = asyncio.create_task(run_scan_loop(coordinator, interval=0.01))
    await asyncio.sleep(0.05)
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)

    assert coordinator.has_pending_match(1)
    assert len(sockets[1].payloads("instant_match_found")) == 1
