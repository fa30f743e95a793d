"""Periodic matching scan: purge expired searches and propose pairings every SCAN_INTERVAL_SECONDS."""
import asyncio
import logging

from carpool.config import settings
from carpool.services.coordinator import MatchingCoordinator

logger = logging.getLogger(__name__)


async def run_scan_loop(coordinator: MatchingCoordinator, interval: float | None = None) -> None:
    interval = settings.SCAN_INTERVAL_SECONDS if interval is None else interval
    logger.info("scan_loop_started interval=%ss", interval)
    while True:
        try:
            await coordinator.tick()
        except Exception:
            logger.exception("scan_tick_failed")
        await asyncio.sleep(interval)
