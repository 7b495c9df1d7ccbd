"""Tests for the achievement engine: snapshot, predicates, grants, outbox."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

import pytest

from community_rewards.achievement_engine import (
    AchievementEngine,
    UserStatsSnapshot,
    evaluate_condition,
)
from community_rewards.config import RewardsConfig
from community_rewards.database import RewardsDatabase

from conftest import make_config_dict

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _names(unlocked) -> set[str]:
    return {a.name for a in unlocked}


# ═══════════════════════════════════════════════════════════
#  Predicates
# ═══════════════════════════════════════════════════════════

@pytest.mark.parametrize("op,threshold,value,expected", [
    ("gte", 5, 5, True),
    ("gte", 5, 4, False),
    ("gt", 5, 5, False),
    ("eq", 3, 3, True),
    ("lte", 3, 4, False),
])
def test_evaluate_condition_ops(op, threshold, value, expected):
    snapshot = UserStatsSnapshot(level=value)
    assert evaluate_condition(snapshot, {"field": "level", "op": op, "threshold": threshold}) is expected


def test_truthy_condition():
    cond = {"field": "has_linked_secondary_account", "op": "truthy", "threshold": None}
    assert evaluate_condition(UserStatsSnapshot(has_linked_secondary_account=True), cond)
    assert not evaluate_condition(UserStatsSnapshot(), cond)


# ═══════════════════════════════════════════════════════════
#  Definitions & snapshot
# ═══════════════════════════════════════════════════════════

@pytest.mark.asyncio
async def test_sync_definitions_idempotent(achievement_engine: AchievementEngine):
    await achievement_engine.sync_definitions()
    definitions = await achievement_engine.get_all_achievements()
    assert len(definitions) == 16
    assert "First Steps" in {d["name"] for d in definitions}


@pytest.mark.asyncio
async def test_snapshot_counts_only_chat_currency_rows(
    achievement_engine: AchievementEngine, database: RewardsDatabase, make_user,
):
    user = await make_user("1")
    await database.credit(user["id"], 1, "chat", now=NOW)
    await database.credit(user["id"], 1, "twitch_chat", now=NOW)
    await database.add_xp(user["id"], 2, "chat", now=NOW)
    await database.credit(user["id"], 100, "daily", now=NOW)
    snapshot = await achievement_engine.build_snapshot(user["id"])
    assert snapshot.message_count == 2
    assert snapshot.currency == 102


@pytest.mark.asyncio
async def test_snapshot_spend_and_gifts(
    achievement_engine: AchievementEngine, database: RewardsDatabase, make_user,
):
    user = await make_user("1", currency=500, premium=5)
    await database.debit(user["id"], 100, "shop", now=NOW)
    await database.debit(user["id"], 20, "gift", now=NOW)
    await database.debit(user["id"], 3, "shop", unit="premium", now=NOW)
    await database.debit(user["id"], 50, "admin_take", now=NOW)
    snapshot = await achievement_engine.build_snapshot(user["id"])
    assert snapshot.total_spent == 120
    assert snapshot.gifts_sent == 1


@pytest.mark.asyncio
async def test_snapshot_unknown_user(achievement_engine: AchievementEngine):
    assert await achievement_engine.build_snapshot(999) is None
    assert await achievement_engine.auto_check(999) == []


# ═══════════════════════════════════════════════════════════
#  auto_check
# ═══════════════════════════════════════════════════════════

@pytest.mark.asyncio
async def test_first_message_unlocks_first_steps(
    achievement_engine: AchievementEngine, database: RewardsDatabase, make_user,
):
    user = await make_user("1")
    await database.credit(user["id"], 1, "chat", now=NOW)
    unlocked = await achievement_engine.auto_check(user["id"], now=NOW)
    assert _names(unlocked) == {"First Steps"}
    row = await database.get_user(user["id"])
    assert row["currency"] == 1 + 10
    assert row["xp"] == 25


@pytest.mark.asyncio
async def test_auto_check_is_idempotent(
    achievement_engine: AchievementEngine, database: RewardsDatabase, make_user,
):
    user = await make_user("1")
    await database.credit(user["id"], 1, "chat", now=NOW)
    await achievement_engine.auto_check(user["id"], now=NOW)
    before = await database.get_user(user["id"])
    assert await achievement_engine.auto_check(user["id"], now=NOW) == []
    after = await database.get_user(user["id"])
    assert before["currency"] == after["currency"]
    assert before["xp"] == after["xp"]


@pytest.mark.asyncio
async def test_concurrent_checks_grant_once(
    achievement_engine: AchievementEngine, database: RewardsDatabase, make_user,
):
    user = await make_user("1")
    await database.credit(user["id"], 1, "chat", now=NOW)
    results = await asyncio.gather(*[achievement_engine.auto_check(user["id"]) for _ in range(5)])
    assert sum(len(r) for r in results) == 1
    assert (await database.get_user(user["id"]))["currency"] == 11


@pytest.mark.asyncio
async def test_premium_reward_disbursed(
    achievement_engine: AchievementEngine, database: RewardsDatabase, make_user,
):
    # Level 10 → Rising Star (100) + Dedicated Member (250, 1 premium)
    user = await make_user("1", xp=8100)
    unlocked = await achievement_engine.auto_check(user["id"])
    assert {"Rising Star", "Dedicated Member"} <= _names(unlocked)
    row = await database.get_user(user["id"])
    assert row["premium_currency"] == 1
    assert row["currency"] == 350


@pytest.mark.asyncio
async def test_deferred_writes_pending(
    achievement_engine: AchievementEngine, database: RewardsDatabase, make_user,
):
    user = await make_user("1")
    await database.credit(user["id"], 1, "chat", now=NOW)
    unlocked = await achievement_engine.auto_check(user["id"], deferred=True, now=NOW)
    assert _names(unlocked) == {"First Steps"}

    pending = await achievement_engine.get_pending_notifications(user["id"])
    assert [p.name for p in pending] == ["First Steps"]
    # Drained as one batch
    assert await achievement_engine.get_pending_notifications(user["id"]) == []


@pytest.mark.asyncio
async def test_store_pending_notification(
    achievement_engine: AchievementEngine, make_user,
):
    user = await make_user("1")
    definitions = await achievement_engine.get_all_achievements()
    await achievement_engine.store_pending_notification(user["id"], definitions[0]["id"], now=NOW)
    pending = await achievement_engine.get_pending_notifications(user["id"])
    assert [p.achievement_id for p in pending] == [definitions[0]["id"]]


@pytest.mark.asyncio
async def test_user_achievements_progress(
    achievement_engine: AchievementEngine, database: RewardsDatabase, make_user,
):
    user = await make_user("1")
    for _ in range(40):
        await database.credit(user["id"], 1, "chat", now=NOW)
    await achievement_engine.auto_check(user["id"], now=NOW)
    rows = {r["name"]: r for r in await achievement_engine.get_user_achievements(user["id"])}
    assert rows["First Steps"]["unlocked"] is True
    assert rows["Chatterbox"]["unlocked"] is False
    assert rows["Chatterbox"]["progress"] == 40
    assert rows["Chatterbox"]["required"] == 100
    assert await achievement_engine.completed_count(user["id"]) == 1


@pytest.mark.asyncio
async def test_custom_catalog(database: RewardsDatabase, make_user):
    config = RewardsConfig(**make_config_dict(achievements=[
        {"name": "Rich", "reward_currency": 1,
         "condition": {"field": "currency", "op": "gt", "threshold": 10}},
    ]))
    engine = AchievementEngine(config, database, logging.getLogger("test"))
    await engine.sync_definitions()
    user = await make_user("1", currency=10)
    assert await engine.auto_check(user["id"]) == []
    await database.credit(user["id"], 1, "test")
    assert _names(await engine.auto_check(user["id"])) == {"Rich"}
