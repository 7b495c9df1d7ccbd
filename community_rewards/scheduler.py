"""Scheduler module: periodic background tasks.

Two loops: the accrual-state sweep (cron-driven, hourly by default) and the
voice presence tick.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import TYPE_CHECKING

from croniter import croniter

from .utils import now_utc

if TYPE_CHECKING:
    from .accrual import AccrualPolicy
    from .config import RewardsConfig
    from .voice_tracker import VoiceTracker


class Scheduler:
    """Central module for all periodic and scheduled tasks."""

    def __init__(
        self,
        config: RewardsConfig,
        accrual: AccrualPolicy,
        voice_tracker: VoiceTracker | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._accrual = accrual
        self._voice_tracker = voice_tracker
        self._logger = logger or logging.getLogger("rewards.scheduler")
        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        """Start all scheduled tasks."""
        self._tasks.append(asyncio.create_task(self._sweep_loop()))
        self._logger.info("Accrual sweep task started (cron: %s)", self._config.scheduler.sweep_cron)

        if self._voice_tracker is not None and self._config.voice.enabled:
            self._tasks.append(asyncio.create_task(self._voice_tick_loop()))
            self._logger.info("Voice tick task started (interval: %ds)", self._config.voice.tick_seconds)

    async def stop(self) -> None:
        """Cancel all tasks."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    # ══════════════════════════════════════════════════════════
    #  Accrual Sweep
    # ══════════════════════════════════════════════════════════

    def seconds_until_next_sweep(self, now: datetime | None = None) -> float:
        now = now or now_utc()
        next_fire = croniter(self._config.scheduler.sweep_cron, now).get_next(datetime)
        return max((next_fire - now).total_seconds(), 0.0)

    def run_sweep(self, now: datetime | None = None) -> int:
        removed = self._accrual.sweep(now)
        self._logger.debug("Accrual sweep: %d entries evicted", removed)
        return removed

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(max(self.seconds_until_next_sweep(), 1))
            try:
                self.run_sweep()
            except Exception:
                self._logger.exception("Accrual sweep failed")

    # ══════════════════════════════════════════════════════════
    #  Voice Tick
    # ══════════════════════════════════════════════════════════

    async def _voice_tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.voice.tick_seconds)
            try:
                await self._voice_tracker.tick()
            except Exception:
                self._logger.exception("Voice tick failed")
