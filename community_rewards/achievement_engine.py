"""Achievement engine: evaluates data-driven conditions and grants one-time unlocks.

Definitions live in config as ``(field, op, threshold)`` predicates over a
``UserStatsSnapshot``. ``auto_check`` takes one snapshot, evaluates every
predicate, and grants each newly satisfied achievement in its own storage
transaction, so an achievement is rewarded at most once per user however
many checks race.
"""

from __future__ import annotations

import json
import logging
import operator
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable

if TYPE_CHECKING:
    from .config import RewardsConfig
    from .database import RewardsDatabase


@dataclass(frozen=True)
class UserStatsSnapshot:
    level: int = 1
    currency: int = 0
    xp: int = 0
    message_count: int = 0
    daily_streak: int = 0
    has_linked_secondary_account: bool = False
    total_spent: int = 0
    gifts_sent: int = 0
    unique_items: int = 0
    total_items: int = 0


@dataclass(frozen=True)
class UnlockedAchievement:
    """An achievement granted by ``auto_check`` (or drained from pending)."""

    achievement_id: int
    name: str
    description: str
    category: str
    rarity: str
    reward_currency: int = 0
    reward_premium_currency: int = 0
    reward_xp: int = 0
    old_level: int = 1
    new_level: int = 1

    @classmethod
    def from_row(cls, row: dict, old_level: int = 1, new_level: int = 1) -> UnlockedAchievement:
        return cls(
            achievement_id=row["id"],
            name=row["name"],
            description=row.get("description") or "",
            category=row.get("category") or "general",
            rarity=row.get("rarity") or "common",
            reward_currency=row.get("reward_currency") or 0,
            reward_premium_currency=row.get("reward_premium_currency") or 0,
            reward_xp=row.get("reward_xp") or 0,
            old_level=old_level,
            new_level=new_level,
        )


_OPS: dict[str, Callable[[Any, Any], bool]] = {
    "gte": operator.ge,
    "gt": operator.gt,
    "eq": operator.eq,
    "lte": operator.le,
}


def evaluate_condition(snapshot: UserStatsSnapshot, condition: dict) -> bool:
    """Evaluate a stored ``{"field", "op", "threshold"}`` predicate."""
    value = getattr(snapshot, condition["field"])
    op = condition.get("op", "gte")
    if op == "truthy":
        return bool(value)
    return _OPS[op](value, condition["threshold"])


class AchievementEngine:
    """Evaluates achievement conditions and grants one-time unlocks."""

    def __init__(
        self,
        config: RewardsConfig,
        database: RewardsDatabase,
        logger: logging.Logger,
    ) -> None:
        self._config = config
        self._db = database
        self._logger = logger

    def update_config(self, new_config: RewardsConfig) -> None:
        """Hot-swap the config reference. Call ``sync_definitions`` afterwards."""
        self._config = new_config

    # ══════════════════════════════════════════════════════════
    #  Definitions
    # ══════════════════════════════════════════════════════════

    async def sync_definitions(self) -> int:
        """Upsert configured achievements into storage. Returns count synced."""
        for ach in self._config.achievements:
            await self._db.upsert_achievement(
                name=ach.name,
                description=ach.description,
                category=ach.category,
                rarity=ach.rarity,
                reward_currency=ach.reward_currency,
                reward_premium_currency=ach.reward_premium_currency,
                reward_xp=ach.reward_xp,
                condition=ach.condition.model_dump(),
            )
        self._logger.info("Synced %d achievement definitions", len(self._config.achievements))
        return len(self._config.achievements)

    async def get_all_achievements(self) -> list[dict]:
        return await self._db.get_achievements()

    # ══════════════════════════════════════════════════════════
    #  Snapshot
    # ══════════════════════════════════════════════════════════

    async def build_snapshot(self, user_id: int) -> UserStatsSnapshot | None:
        stats = await self._db.get_user_stats(user_id, self._config.accrual.message_categories)
        if stats is None:
            return None
        return UserStatsSnapshot(**stats)

    # ══════════════════════════════════════════════════════════
    #  Auto-check
    # ══════════════════════════════════════════════════════════

    async def auto_check(
        self,
        user_id: int,
        deferred: bool = False,
        now: datetime | None = None,
    ) -> list[UnlockedAchievement]:
        """Grant every achievement whose predicate holds and is not yet held.

        With ``deferred`` the unlocks are also written to the pending outbox
        in the same transaction, for delivery on the user's next activity.
        """
        snapshot = await self.build_snapshot(user_id)
        if snapshot is None:
            return []

        completed = await self._db.get_completed_achievement_ids(user_id)
        unlocked: list[UnlockedAchievement] = []

        for definition in await self._db.get_achievements():
            if definition["id"] in completed:
                continue
            condition = json.loads(definition["condition"] or "{}")
            if not condition or condition.get("field") not in asdict(snapshot):
                self._logger.warning("Achievement %s has an unusable condition", definition["name"])
                continue
            if not evaluate_condition(snapshot, condition):
                continue

            required = condition.get("threshold") or 1
            granted = await self._db.grant_achievement(
                user_id, definition["id"], required,
                defer_notification=deferred, now=now,
            )
            if granted is None:
                # Lost a race with a concurrent check; already rewarded there
                continue
            unlocked.append(UnlockedAchievement.from_row(
                granted["achievement"], granted["old_level"], granted["new_level"],
            ))
            self._logger.info(
                "Achievement unlocked: user %d → %s (+%d currency, +%d premium, +%d xp)",
                user_id,
                definition["name"],
                definition["reward_currency"],
                definition["reward_premium_currency"],
                definition["reward_xp"],
            )

        return unlocked

    # ══════════════════════════════════════════════════════════
    #  Pending notifications (outbox)
    # ══════════════════════════════════════════════════════════

    async def store_pending_notification(
        self, user_id: int, achievement_id: int, now: datetime | None = None,
    ) -> None:
        await self._db.add_pending_notification(user_id, achievement_id, now=now)

    async def get_pending_notifications(self, user_id: int) -> list[UnlockedAchievement]:
        """Read and clear the user's pending unlock notifications."""
        rows = await self._db.pop_pending_notifications(user_id)
        return [UnlockedAchievement.from_row(r) for r in rows]

    # ══════════════════════════════════════════════════════════
    #  Queries
    # ══════════════════════════════════════════════════════════

    async def get_user_achievements(self, user_id: int) -> list[dict]:
        """All definitions with the user's progress; locked ones show live progress."""
        rows = await self._db.get_user_achievements(user_id)
        snapshot = await self.build_snapshot(user_id)
        result = []
        for row in rows:
            condition = json.loads(row.get("condition") or "{}")
            row["unlocked"] = row.get("completed_at") is not None
            if not row["unlocked"]:
                required = condition.get("threshold") or 1
                value = getattr(snapshot, condition.get("field", ""), 0) if snapshot else 0
                row["required"] = required
                row["progress"] = min(int(value), required)
            result.append(row)
        return result

    async def completed_count(self, user_id: int) -> int:
        return len(await self._db.get_completed_achievement_ids(user_id))
