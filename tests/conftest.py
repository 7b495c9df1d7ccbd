"""Shared test fixtures for community-rewards."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncGenerator

import pytest
import pytest_asyncio

from community_rewards.accrual import AccrualPolicy, RateLimiterState
from community_rewards.account_linker import AccountLinker
from community_rewards.achievement_engine import AchievementEngine
from community_rewards.activity import ActivityPipeline
from community_rewards.award_service import AwardService
from community_rewards.config import RewardsConfig
from community_rewards.database import RewardsDatabase
from community_rewards.service import RewardsService
from community_rewards.shop_engine import ShopEngine

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


# ── Minimal config dict matching RewardsConfig schema ────────

def make_config_dict(**overrides) -> dict:
    """Build a valid config dict with sensible test defaults."""
    base = {
        "database": {"path": ":memory:"},
        "currency": {"name": "Coins", "premium_name": "Gems"},
        "ignored_users": ["IgnoredBot"],
        "accrual": {
            "sources": {
                "chat": {"cooldown_seconds": 60, "hourly_cap": 60, "currency": 1, "xp": 2},
                "twitch_chat": {"cooldown_seconds": 60, "hourly_cap": 60, "currency": 1, "xp": 2},
                "voice": {"cooldown_seconds": 60, "hourly_cap": 120, "currency": 2, "xp": 3},
            },
        },
        "shop": {
            "items": [
                {"name": "Shoutout", "cost": 100, "category": "perks", "auto_fulfill": True},
                {"name": "Custom Role", "cost": 500, "category": "perks",
                 "requires_input": True, "input_prompt": "Which role colour?"},
                {"name": "Golden Ticket", "cost": 50, "stock": 1, "category": "limited"},
                {"name": "Sticker", "cost": 10, "category": "cosmetic",
                 "cooldown_minutes": 30, "global_cooldown_minutes": 5},
                {"name": "Gem Badge", "cost": 2, "currency_type": "premium", "category": "cosmetic"},
                {"name": "Retired Item", "cost": 1, "enabled": False},
            ],
        },
        "metrics": {"enabled": False},
    }
    base.update(overrides)
    return base


@pytest.fixture
def sample_config_dict() -> dict:
    """Return a config dict suitable for tests."""
    return make_config_dict()


@pytest.fixture
def sample_config(sample_config_dict: dict) -> RewardsConfig:
    """Return a parsed RewardsConfig."""
    return RewardsConfig(**sample_config_dict)


@pytest.fixture
def logger() -> logging.Logger:
    return logging.getLogger("test")


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> str:
    """Return a temporary SQLite database path."""
    return str(tmp_path / "test_rewards.db")


@pytest_asyncio.fixture
async def database(tmp_db_path: str, logger: logging.Logger) -> AsyncGenerator[RewardsDatabase, None]:
    """Provide an initialized database with temp file."""
    db = RewardsDatabase(tmp_db_path, logger)
    await db.initialize()
    yield db


@pytest_asyncio.fixture
async def make_user(database: RewardsDatabase):
    """Factory: create a Discord (default) or Twitch user, optionally funded."""

    async def _make(
        external_id: str,
        name: str | None = None,
        platform: str = "discord",
        currency: int = 0,
        premium: int = 0,
        xp: int = 0,
    ) -> dict:
        user, _ = await database.get_or_create_user(platform, external_id, name or external_id)
        if currency:
            await database.credit(user["id"], currency, "seed", now=NOW)
        if premium:
            await database.credit(user["id"], premium, "seed", unit="premium", now=NOW)
        if xp:
            await database.add_xp(user["id"], xp, "seed", now=NOW)
        return await database.get_user(user["id"])

    return _make


# ── Engines ─────────────────────────────────────────────────

@pytest.fixture
def award_service(sample_config: RewardsConfig, database: RewardsDatabase, logger) -> AwardService:
    return AwardService(sample_config, database, logger)


@pytest.fixture
def limiter_state() -> RateLimiterState:
    return RateLimiterState()


@pytest.fixture
def accrual_policy(sample_config: RewardsConfig, limiter_state: RateLimiterState, logger) -> AccrualPolicy:
    return AccrualPolicy(sample_config, limiter_state, logger)


@pytest_asyncio.fixture
async def achievement_engine(
    sample_config: RewardsConfig, database: RewardsDatabase, logger,
) -> AchievementEngine:
    """AchievementEngine with definitions synced into the database."""
    engine = AchievementEngine(sample_config, database, logger)
    await engine.sync_definitions()
    return engine


@pytest_asyncio.fixture
async def shop_engine(sample_config: RewardsConfig, database: RewardsDatabase, logger) -> ShopEngine:
    """ShopEngine with the test catalog seeded."""
    engine = ShopEngine(sample_config, database, logger)
    await engine.seed_catalog()
    return engine


@pytest.fixture
def account_linker(database: RewardsDatabase, pipeline: ActivityPipeline, logger) -> AccountLinker:
    return AccountLinker(database, pipeline, logger)


@pytest.fixture
def pipeline(
    sample_config: RewardsConfig,
    database: RewardsDatabase,
    award_service: AwardService,
    accrual_policy: AccrualPolicy,
    achievement_engine: AchievementEngine,
    logger,
) -> ActivityPipeline:
    return ActivityPipeline(
        sample_config, database, award_service, accrual_policy, achievement_engine, logger,
    )


@pytest_asyncio.fixture
async def service(sample_config: RewardsConfig, tmp_db_path: str, logger) -> RewardsService:
    """Fully initialized RewardsService on a temp database."""
    svc = RewardsService(sample_config, logger, database=RewardsDatabase(tmp_db_path, logger))
    await svc.initialize()
    return svc


@pytest_asyncio.fixture
async def item_ids(shop_engine: ShopEngine, sample_config: RewardsConfig, database: RewardsDatabase) -> dict[str, int]:
    """Catalog name → id (upsert is idempotent, so this just reads ids back)."""
    return {
        item.name: await database.upsert_shop_item(item.model_dump())
        for item in sample_config.shop.items
    }
