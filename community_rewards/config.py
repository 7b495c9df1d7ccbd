"""Configuration system for community-rewards.

All Pydantic models live here with sensible defaults, so a config file only
needs to override what differs from the stock economy.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator


# Snapshot fields an achievement condition may reference
SNAPSHOT_FIELDS: frozenset[str] = frozenset({
    "level",
    "currency",
    "xp",
    "message_count",
    "daily_streak",
    "has_linked_secondary_account",
    "total_spent",
    "gifts_sent",
    "unique_items",
    "total_items",
})

CONDITION_OPS: frozenset[str] = frozenset({"gte", "gt", "eq", "lte", "truthy"})


# ═══════════════════════════════════════════════════════════════
#  Core
# ═══════════════════════════════════════════════════════════════

class DatabaseConfig(BaseModel):
    path: str = "rewards.db"


class CurrencyConfig(BaseModel):
    name: str = "Coins"
    emoji: str = "🪙"
    premium_name: str = "Gems"
    premium_emoji: str = "💎"


class LevelingConfig(BaseModel):
    """Level-up reward schedule. The XP → level curve itself is fixed."""
    currency_per_level: int = 50
    premium_every_levels: int = 5
    milestone_levels: list[int] = Field(default=[5, 10, 25, 50, 100])
    milestone_bonus_per_level: int = 100


# ═══════════════════════════════════════════════════════════════
#  Accrual (passive earning)
# ═══════════════════════════════════════════════════════════════

class AccrualSourceConfig(BaseModel):
    cooldown_seconds: int = 60
    hourly_cap: int = 60
    currency: int = 1
    xp: int = 2


def _default_sources() -> dict[str, AccrualSourceConfig]:
    return {
        "chat": AccrualSourceConfig(),
        "twitch_chat": AccrualSourceConfig(),
        "voice": AccrualSourceConfig(currency=2, xp=3, hourly_cap=120),
    }


class AccrualConfig(BaseModel):
    enabled: bool = True
    sources: dict[str, AccrualSourceConfig] = Field(default_factory=_default_sources)
    # Message-type categories counted as "messages" for achievements
    message_categories: list[str] = Field(default=["chat", "twitch_chat"])

    def for_source(self, source: str) -> AccrualSourceConfig:
        """Source config, falling back to stock defaults for unknown sources."""
        return self.sources.get(source) or AccrualSourceConfig()


class DailyConfig(BaseModel):
    currency: int = 100
    xp: int = 50
    cooldown_hours: int = 24
    streak_grace_hours: int = 48


class VoiceConfig(BaseModel):
    enabled: bool = True
    tick_seconds: int = 60
    min_minutes_between_rewards: int = 1


class SchedulerConfig(BaseModel):
    sweep_cron: str = "0 * * * *"


# ═══════════════════════════════════════════════════════════════
#  Achievements
# ═══════════════════════════════════════════════════════════════

class AchievementConditionConfig(BaseModel):
    field: str
    op: str = "gte"
    threshold: int | None = None

    @field_validator("field")
    @classmethod
    def _known_field(cls, v: str) -> str:
        if v not in SNAPSHOT_FIELDS:
            raise ValueError(f"Unknown snapshot field: {v}")
        return v

    @field_validator("op")
    @classmethod
    def _known_op(cls, v: str) -> str:
        if v not in CONDITION_OPS:
            raise ValueError(f"Unknown condition op: {v}")
        return v

    @model_validator(mode="after")
    def _threshold_required(self) -> AchievementConditionConfig:
        if self.op != "truthy" and self.threshold is None:
            raise ValueError(f"Condition on '{self.field}' needs a threshold")
        return self


class AchievementConfig(BaseModel):
    name: str
    description: str = ""
    category: str = "general"
    rarity: str = "common"
    reward_currency: int = Field(default=0, ge=0)
    reward_premium_currency: int = Field(default=0, ge=0)
    reward_xp: int = Field(default=0, ge=0)
    condition: AchievementConditionConfig


def _ach(
    name: str, description: str, category: str, rarity: str,
    field: str, threshold: int | None = None, *,
    currency: int = 0, premium: int = 0, xp: int = 0, op: str = "gte",
) -> AchievementConfig:
    return AchievementConfig(
        name=name,
        description=description,
        category=category,
        rarity=rarity,
        reward_currency=currency,
        reward_premium_currency=premium,
        reward_xp=xp,
        condition=AchievementConditionConfig(field=field, op=op, threshold=threshold),
    )


def _default_achievements() -> list[AchievementConfig]:
    return [
        # Starter / engagement
        _ach("First Steps", "Send your first message", "starter", "common",
             "message_count", 1, currency=10, xp=25),
        _ach("Chatterbox", "Send 100 messages", "engagement", "common",
             "message_count", 100, currency=50, xp=100),
        _ach("Social Butterfly", "Send 500 messages", "engagement", "uncommon",
             "message_count", 500, currency=200, xp=300),
        _ach("Conversation Master", "Send 1000 messages", "engagement", "rare",
             "message_count", 1000, currency=500, xp=750),
        # Level milestones
        _ach("Rising Star", "Reach level 5", "milestone", "uncommon",
             "level", 5, currency=100),
        _ach("Dedicated Member", "Reach level 10", "milestone", "uncommon",
             "level", 10, currency=250, premium=1),
        _ach("Community Pillar", "Reach level 25", "milestone", "rare",
             "level", 25, currency=500, premium=3),
        _ach("Legend", "Reach level 50", "milestone", "epic",
             "level", 50, currency=1000, premium=10),
        # Account
        _ach("Link Up", "Connect Discord and Twitch accounts", "account", "rare",
             "has_linked_secondary_account", op="truthy", currency=200, premium=2, xp=200),
        # Daily
        _ach("Early Bird", "Claim daily bonus 7 days in a row", "special", "uncommon",
             "daily_streak", 7, currency=150, xp=150),
        _ach("Dedicated", "Claim daily bonus 30 days in a row", "special", "epic",
             "daily_streak", 30, currency=500, premium=5, xp=500),
        # Economy
        _ach("Wealthy", "Accumulate 5,000 currency", "economy", "uncommon",
             "currency", 5000, currency=250, xp=200),
        _ach("Big Spender", "Spend 1,000 currency", "economy", "uncommon",
             "total_spent", 1000, currency=150, xp=150),
        _ach("Generous Soul", "Gift an item to another user", "social", "common",
             "gifts_sent", 1, currency=50, xp=75),
        # Collector
        _ach("Collector", "Own 10 different items", "inventory", "rare",
             "unique_items", 10, currency=200, xp=200),
        _ach("Hoarder", "Own 50 items total", "inventory", "epic",
             "total_items", 50, currency=400, premium=2, xp=300),
    ]


# ═══════════════════════════════════════════════════════════════
#  Shop
# ═══════════════════════════════════════════════════════════════

class ShopItemConfig(BaseModel):
    name: str
    description: str = ""
    cost: int = Field(ge=0)
    currency_type: str = "regular"
    category: str = "general"
    stock: int = -1
    enabled: bool = True
    cooldown_minutes: int = 0
    global_cooldown_minutes: int = 0
    requires_input: bool = False
    input_prompt: str | None = None
    auto_fulfill: bool = False

    @field_validator("currency_type")
    @classmethod
    def _known_currency(cls, v: str) -> str:
        if v not in ("regular", "premium"):
            raise ValueError("currency_type must be 'regular' or 'premium'")
        return v

    @field_validator("stock")
    @classmethod
    def _valid_stock(cls, v: int) -> int:
        if v < -1:
            raise ValueError("stock must be -1 (unlimited) or >= 0")
        return v


class ShopConfig(BaseModel):
    items: list[ShopItemConfig] = Field(default_factory=list)


# ═══════════════════════════════════════════════════════════════
#  Ops
# ═══════════════════════════════════════════════════════════════

class MetricsConfig(BaseModel):
    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 28290
    health_path: str = "/health"
    metrics_path: str = "/metrics"


class AdminConfig(BaseModel):
    admin_ids: list[str] = Field(default_factory=list)


# ═══════════════════════════════════════════════════════════════
#  Top-Level Config
# ═══════════════════════════════════════════════════════════════

class RewardsConfig(BaseModel):
    """Full rewards config."""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    currency: CurrencyConfig = Field(default_factory=CurrencyConfig)
    leveling: LevelingConfig = Field(default_factory=LevelingConfig)
    ignored_users: list[str] = Field(default_factory=list)

    accrual: AccrualConfig = Field(default_factory=AccrualConfig)
    daily: DailyConfig = Field(default_factory=DailyConfig)
    voice: VoiceConfig = Field(default_factory=VoiceConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)

    achievements: list[AchievementConfig] = Field(default_factory=_default_achievements)
    shop: ShopConfig = Field(default_factory=ShopConfig)

    admin: AdminConfig = Field(default_factory=AdminConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)

    @model_validator(mode="after")
    def _unique_names(self) -> RewardsConfig:
        names = [a.name for a in self.achievements]
        if len(names) != len(set(names)):
            raise ValueError("Achievement names must be unique")
        items = [i.name for i in self.shop.items]
        if len(items) != len(set(items)):
            raise ValueError("Shop item names must be unique")
        return self


# ═══════════════════════════════════════════════════════════════
#  Config Loading
# ═══════════════════════════════════════════════════════════════

def _expand_env_vars(obj: Any) -> Any:
    """Recursively expand ${VAR} and ${VAR:-default} in string values."""
    if isinstance(obj, str):
        return re.sub(
            r"\$\{([^}:]+)(?::-(.*?))?\}",
            lambda m: os.environ.get(m.group(1), m.group(2) or ""),
            obj,
        )
    elif isinstance(obj, dict):
        return {k: _expand_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(v) for v in obj]
    return obj


def load_config(config_path: str) -> RewardsConfig:
    """Load and validate YAML config file into RewardsConfig."""
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValueError("Config file must contain a YAML mapping at the top level.")

    raw = _expand_env_vars(raw)
    return RewardsConfig(**raw)
