"""Background scheduling of edge sync cycles."""

from __future__ import annotations

import asyncio
import contextlib
import logging

from racelog_sync.sync.sync_engine import CycleReport, CycleStatus, SyncEngine

logger = logging.getLogger(__name__)


class SyncScheduler:
    """
    Runs sync cycles on a timer and whenever the hub comes back online.

    Usage:
        scheduler = SyncScheduler(engine, interval_seconds=60)
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        engine: SyncEngine,
        interval_seconds: float = 60.0,
        health_interval_seconds: float = 10.0,
    ) -> None:
        if interval_seconds <= 0 or health_interval_seconds <= 0:
            raise ValueError("Intervals must be positive")
        self._engine = engine
        self._interval = interval_seconds
        self._health_interval = health_interval_seconds
        self._tasks: list[asyncio.Task[None]] = []
        self._online: bool | None = None
        self._last_report: CycleReport | None = None

    @property
    def is_running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    @property
    def online(self) -> bool | None:
        """Last observed hub reachability, ``None`` before the first probe."""
        return self._online

    @property
    def last_report(self) -> CycleReport | None:
        return self._last_report

    async def start(self) -> None:
        if self.is_running:
            return
        await self._engine.start()
        self._tasks = [
            asyncio.create_task(self._timer_loop(), name="racelog-sync-timer"),
            asyncio.create_task(self._health_loop(), name="racelog-sync-health"),
        ]
        logger.info(
            "Sync scheduler started (every %.0fs, health every %.0fs)",
            self._interval,
            self._health_interval,
        )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []
        logger.info("Sync scheduler stopped")

    async def trigger(self, reason: str = "manual") -> CycleReport:
        """Run a cycle now, or coalesce into the one in flight."""
        report = await self._engine.run_cycle(trigger=reason)
        if report.status != CycleStatus.COALESCED:
            self._last_report = report
        return report

    async def _timer_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            await self._safe_trigger("timer")

    async def _health_loop(self) -> None:
        while True:
            online = await self._engine.is_hub_reachable()
            if online and self._online is False:
                logger.info("Hub reachable again, starting sync")
                await self._safe_trigger("reconnect")
            elif not online and self._online:
                logger.warning("Hub unreachable, working offline")
            self._online = online
            await asyncio.sleep(self._health_interval)

    async def _safe_trigger(self, reason: str) -> None:
        try:
            await self.trigger(reason)
        except Exception:
            logger.error("Scheduled sync cycle (%s) failed", reason, exc_info=True)
