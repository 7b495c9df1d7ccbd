"""Tests for voice session tracking and per-minute accrual."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import pytest

from community_rewards.accrual import AccrualPolicy, RateLimiterState
from community_rewards.achievement_engine import AchievementEngine
from community_rewards.activity import ActivityPipeline
from community_rewards.award_service import AwardService
from community_rewards.config import RewardsConfig
from community_rewards.database import RewardsDatabase
from community_rewards.outcomes import RewardResult
from community_rewards.voice_tracker import VoiceTracker

from conftest import make_config_dict

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def voice_tracker(sample_config: RewardsConfig, database: RewardsDatabase, pipeline: ActivityPipeline) -> VoiceTracker:
    return VoiceTracker(sample_config, database, pipeline, logging.getLogger("test"))


@pytest.mark.asyncio
async def test_join_creates_user_and_session(voice_tracker: VoiceTracker, database: RewardsDatabase):
    session = await voice_tracker.handle_join("d-1", "Alice", "Lounge", now=NOW)
    assert session is not None
    assert voice_tracker.active_sessions == 1
    assert (await database.get_user_by_platform("discord", "d-1"))["id"] == session.user_id


@pytest.mark.asyncio
async def test_bots_afk_and_ignored_not_tracked(voice_tracker: VoiceTracker):
    assert await voice_tracker.handle_join("b", "Bot", "Lounge", is_bot=True) is None
    assert await voice_tracker.handle_join("a", "Alice", "AFK", is_afk_channel=True) is None
    assert await voice_tracker.handle_join("i", "ignoredbot", "Lounge") is None
    assert voice_tracker.active_sessions == 0


@pytest.mark.asyncio
async def test_tick_before_a_minute_does_nothing(voice_tracker: VoiceTracker):
    await voice_tracker.handle_join("d-1", "Alice", "Lounge", now=NOW)
    assert await voice_tracker.tick(NOW + timedelta(seconds=59)) == []


@pytest.mark.asyncio
async def test_tick_awards_voice(voice_tracker: VoiceTracker, database: RewardsDatabase):
    session = await voice_tracker.handle_join("d-1", "Alice", "Lounge", now=NOW)
    results = await voice_tracker.tick(NOW + timedelta(minutes=1))
    assert len(results) == 1
    user_id, outcome = results[0]
    assert user_id == session.user_id
    assert outcome.success
    row = await database.get_user(session.user_id)
    assert (row["currency"], row["xp"]) == (2, 3)
    txs = await database.get_recent_transactions(session.user_id)
    assert any(t["description"] == "Voice chat: Lounge" for t in txs)


@pytest.mark.asyncio
async def test_consecutive_ticks(voice_tracker: VoiceTracker, database: RewardsDatabase):
    session = await voice_tracker.handle_join("d-1", "Alice", "Lounge", now=NOW)
    for minute in range(1, 4):
        await voice_tracker.tick(NOW + timedelta(minutes=minute))
    assert (await database.get_user(session.user_id))["currency"] == 6


@pytest.mark.asyncio
async def test_voice_cap_applies(database: RewardsDatabase):
    config = RewardsConfig(**make_config_dict(accrual={"sources": {
        "voice": {"cooldown_seconds": 60, "hourly_cap": 4, "currency": 2, "xp": 3},
    }}))
    logger = logging.getLogger("test")
    pipeline = ActivityPipeline(
        config, database, AwardService(config, database, logger),
        AccrualPolicy(config, RateLimiterState(), logger),
        AchievementEngine(config, database, logger), logger,
    )
    tracker = VoiceTracker(config, database, pipeline, logger)
    session = await tracker.handle_join("d-1", "Alice", "Lounge", now=NOW)
    outcomes = [
        (await tracker.tick(NOW + timedelta(minutes=minute)))[0][1]
        for minute in range(1, 5)
    ]
    assert [o.success for o in outcomes] == [True, True, False, False]
    assert outcomes[-1].result is RewardResult.RATE_LIMITED
    assert (await database.get_user(session.user_id))["currency"] == 4
