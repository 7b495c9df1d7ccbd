"""Service orchestrator: RewardsApp.

config → DB init → catalog sync → scheduler → metrics → run until stopped.
Platform adapters hold a reference to ``app.service`` and feed it events.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from . import __version__
from .config import RewardsConfig, load_config
from .metrics_server import RewardsMetricsServer
from .scheduler import Scheduler
from .service import RewardsService


class RewardsApp:
    """Top-level application orchestrator."""

    def __init__(self, config_path: str) -> None:
        self.config_path = Path(config_path)
        self.logger = logging.getLogger("rewards")

        # Components (initialized in start())
        self.config: RewardsConfig | None = None
        self.service: RewardsService | None = None
        self.scheduler: Scheduler | None = None
        self.metrics_server: RewardsMetricsServer | None = None

        self._running = False
        self._stopped = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Initialize every component and block until ``stop`` is called."""
        self.logger.info("Starting community-rewards %s...", __version__)

        self.config = load_config(str(self.config_path))
        self.logger.info(
            "Config loaded: %d achievement(s), %d shop item(s)",
            len(self.config.achievements), len(self.config.shop.items),
        )

        self.service = RewardsService(self.config, self.logger)
        await self.service.initialize()
        self.logger.info("Database initialized: %s", self.config.database.path)

        self.scheduler = Scheduler(
            self.config,
            self.service.accrual,
            self.service.voice,
            logger=self.logger.getChild("scheduler"),
        )
        await self.scheduler.start()

        if self.config.metrics.enabled:
            self.metrics_server = RewardsMetricsServer(
                self.service, self.config.metrics, logger=self.logger.getChild("metrics"),
            )
            await self.metrics_server.start()

        self._running = True
        self.logger.info("community-rewards started")
        await self._stopped.wait()

    async def stop(self) -> None:
        """Graceful shutdown. Safe to call more than once."""
        if not self._running and self._stopped.is_set():
            return
        self.logger.info("Stopping community-rewards...")
        self._running = False

        if self.scheduler is not None:
            await self.scheduler.stop()
        if self.metrics_server is not None:
            await self.metrics_server.stop()
            self.metrics_server = None

        self._stopped.set()
        self.logger.info("community-rewards stopped")

    def reload_config(self) -> bool:
        """Re-read the config file and hot-swap it into running components.

        An invalid file is logged and the running config is kept.
        """
        try:
            new_config = load_config(str(self.config_path))
        except Exception:
            self.logger.exception("Config reload failed; keeping current config")
            return False
        self.config = new_config
        if self.service is not None:
            self.service.update_config(new_config)
        self.logger.info("Config reloaded from %s", self.config_path)
        return True
