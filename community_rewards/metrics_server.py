"""Prometheus metrics and health endpoint for community-rewards.

Serves Prometheus text exposition on ``/metrics`` and a JSON health
document on ``/health`` using aiohttp.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from aiohttp import web

from . import __version__

if TYPE_CHECKING:
    from .config import MetricsConfig
    from .service import RewardsService


class RewardsMetricsServer:
    """Rewards-specific Prometheus metrics endpoint."""

    def __init__(
        self,
        service: RewardsService,
        config: MetricsConfig,
        logger: logging.Logger | None = None,
    ) -> None:
        self._service = service
        self._config = config
        self._logger = logger or logging.getLogger("rewards.metrics")
        self._runner: web.AppRunner | None = None
        self._started_at = time.monotonic()

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get(self._config.metrics_path, self.handle_metrics)
        app.router.add_get(self._config.health_path, self.handle_health)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._config.host, self._config.port)
        await site.start()
        self._started_at = time.monotonic()
        self._logger.info(
            "Metrics server listening on %s:%d", self._config.host, self._config.port,
        )

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    # ══════════════════════════════════════════════════════════
    #  Handlers
    # ══════════════════════════════════════════════════════════

    async def handle_metrics(self, request: web.Request) -> web.Response:
        lines = await self.collect_metrics()
        return web.Response(text="\n".join(lines) + "\n", content_type="text/plain")

    async def handle_health(self, request: web.Request) -> web.Response:
        return web.json_response(await self.health_details())

    # ══════════════════════════════════════════════════════════
    #  Collection
    # ══════════════════════════════════════════════════════════

    async def collect_metrics(self) -> list[str]:
        svc = self._service
        lines: list[str] = []

        # ── Counters ─────────────────────────────────────────
        lines.append("# TYPE rewards_events_processed_total counter")
        lines.append(f"rewards_events_processed_total {svc.events_processed}")
        lines.append("# TYPE rewards_accruals_denied_total counter")
        lines.append(f"rewards_accruals_denied_total {svc.accruals_denied}")
        lines.append("# TYPE rewards_achievements_unlocked_total counter")
        lines.append(f"rewards_achievements_unlocked_total {svc.achievements_unlocked_total}")
        lines.append("# TYPE rewards_level_ups_total counter")
        lines.append(f"rewards_level_ups_total {svc.level_ups_total}")
        lines.append("# TYPE rewards_redemptions_total counter")
        lines.append(f"rewards_redemptions_total {svc.redemptions_total}")
        lines.append("# TYPE rewards_refunds_total counter")
        lines.append(f"rewards_refunds_total {svc.refunds_total}")
        lines.append("# TYPE rewards_account_merges_total counter")
        lines.append(f"rewards_account_merges_total {svc.merges_total}")

        # ── Gauges ───────────────────────────────────────────
        circulation = await svc.db.get_total_circulation()
        lines.append("# TYPE rewards_users gauge")
        lines.append(f"rewards_users {await svc.db.get_user_count()}")
        lines.append("# TYPE rewards_circulation gauge")
        lines.append(f'rewards_circulation{{currency="regular"}} {circulation["currency"]}')
        lines.append(f'rewards_circulation{{currency="premium"}} {circulation["premium"]}')
        lines.append("# TYPE rewards_pending_redemptions gauge")
        lines.append(f"rewards_pending_redemptions {await svc.db.count_pending_redemptions()}")
        lines.append("# TYPE rewards_voice_sessions gauge")
        lines.append(f"rewards_voice_sessions {svc.voice.active_sessions}")
        lines.append("# TYPE rewards_rate_limiter_entries gauge")
        lines.append(f"rewards_rate_limiter_entries {len(svc.limiter_state.last_reward)}")

        return lines

    async def health_details(self) -> dict:
        return {
            "status": "ok",
            "service": "community-rewards",
            "version": __version__,
            "uptime_seconds": int(time.monotonic() - self._started_at),
            "database": self._service.config.database.path,
            "voice_sessions": self._service.voice.active_sessions,
        }
