"""Tests for the Prometheus metrics and health endpoints."""

from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest
from aiohttp.test_utils import make_mocked_request

from community_rewards.config import MetricsConfig
from community_rewards.metrics_server import RewardsMetricsServer
from community_rewards.service import RewardsService

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def metrics_server(service: RewardsService, logger) -> RewardsMetricsServer:
    return RewardsMetricsServer(service, MetricsConfig(), logger=logger)


@pytest.mark.asyncio
async def test_counters_and_gauges(metrics_server: RewardsMetricsServer, service: RewardsService):
    await service.handle_chat_message("discord", "d-1", "Alice", now=NOW)
    await service.handle_chat_message("discord", "d-1", "Alice", now=NOW)

    body = "\n".join(await metrics_server.collect_metrics())
    assert "# TYPE rewards_events_processed_total counter" in body
    assert "rewards_events_processed_total 2" in body
    assert "rewards_accruals_denied_total 1" in body
    assert "rewards_achievements_unlocked_total 1" in body
    assert "rewards_users 1" in body
    assert 'rewards_circulation{currency="regular"} 11' in body
    assert 'rewards_circulation{currency="premium"} 0' in body
    assert "rewards_pending_redemptions 0" in body
    assert "rewards_rate_limiter_entries 1" in body


@pytest.mark.asyncio
async def test_handle_metrics(metrics_server: RewardsMetricsServer):
    resp = await metrics_server.handle_metrics(make_mocked_request("GET", "/metrics"))
    assert resp.status == 200
    assert resp.content_type == "text/plain"
    assert "rewards_voice_sessions 0" in resp.text


@pytest.mark.asyncio
async def test_handle_health(metrics_server: RewardsMetricsServer):
    resp = await metrics_server.handle_health(make_mocked_request("GET", "/health"))
    assert resp.status == 200
    payload = json.loads(resp.text)
    assert payload["status"] == "ok"
    assert payload["service"] == "community-rewards"
    assert payload["voice_sessions"] == 0


def test_routes_registered(metrics_server: RewardsMetricsServer):
    app = metrics_server.build_app()
    paths = {r.resource.canonical for r in app.router.routes()}
    assert {"/metrics", "/health"} <= paths
