"""Activity pipeline: one path from an activity event to a notification batch.

Every observable activity runs the same steps in the same order:

1. drain pending achievement notifications for the user;
2. for passive sources, consult the accrual policy (a denial stops here);
3. apply the ledger delta through the award service;
4. issue level-up rewards for the levels the award transaction reports crossing;
5. run the achievement check, repeating 4–5 while achievement XP keeps
   raising the level;
6. hand the caller a single ``NotificationBatch`` to announce.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from .leveling import LevelUpReward, level_up_rewards
from .outcomes import DailyClaim, RewardResult
from .utils import now_utc

if TYPE_CHECKING:
    from .accrual import AccrualDecision, AccrualPolicy
    from .achievement_engine import AchievementEngine, UnlockedAchievement
    from .award_service import AwardService
    from .config import RewardsConfig
    from .database import RewardsDatabase

PASSIVE_SOURCES = frozenset({"chat", "voice", "twitch_chat"})
EVENT_KINDS = PASSIVE_SOURCES | {"daily", "admin_grant"}


@dataclass(frozen=True)
class ActivityEvent:
    user_id: int
    kind: str
    currency: int = 0
    premium: int = 0
    xp: int = 0
    description: str | None = None
    now: datetime | None = None


@dataclass(frozen=True)
class LevelUpEvent:
    old_level: int
    new_level: int
    rewards: list[LevelUpReward] = field(default_factory=list)

    @property
    def currency(self) -> int:
        return sum(r.currency for r in self.rewards)

    @property
    def premium(self) -> int:
        return sum(r.premium for r in self.rewards)

    @property
    def milestones(self) -> list[int]:
        return [r.level for r in self.rewards if r.milestone]


@dataclass
class NotificationBatch:
    """Everything the adapter should announce for one activity."""

    delivered_pending: list[UnlockedAchievement] = field(default_factory=list)
    unlocked: list[UnlockedAchievement] = field(default_factory=list)
    level_ups: list[LevelUpEvent] = field(default_factory=list)

    @property
    def achievements(self) -> list[UnlockedAchievement]:
        return self.delivered_pending + self.unlocked

    @property
    def is_empty(self) -> bool:
        return not (self.delivered_pending or self.unlocked or self.level_ups)


@dataclass
class ActivityOutcome:
    result: RewardResult
    message: str = ""
    accrual_denied: AccrualDecision | None = None
    currency_awarded: int = 0
    premium_awarded: int = 0
    xp_awarded: int = 0
    daily: DailyClaim | None = None
    notifications: NotificationBatch = field(default_factory=NotificationBatch)

    @property
    def success(self) -> bool:
        return self.result is RewardResult.SUCCESS


class ActivityPipeline:
    """Runs activity events through accrual, awards, level-ups and achievements."""

    def __init__(
        self,
        config: RewardsConfig,
        database: RewardsDatabase,
        awards: AwardService,
        accrual: AccrualPolicy,
        achievements: AchievementEngine,
        logger: logging.Logger,
    ) -> None:
        self._config = config
        self._db = database
        self._awards = awards
        self._accrual = accrual
        self._achievements = achievements
        self._logger = logger

    def update_config(self, new_config: RewardsConfig) -> None:
        self._config = new_config

    # ══════════════════════════════════════════════════════════
    #  Activity
    # ══════════════════════════════════════════════════════════

    async def apply_activity(self, event: ActivityEvent) -> ActivityOutcome:
        if event.kind not in EVENT_KINDS:
            return ActivityOutcome(RewardResult.INVALID_ARGS, f"Unknown activity kind: {event.kind}")
        if event.kind == "daily":
            return await self.claim_daily(event.user_id, now=event.now)

        now = event.now or now_utc()
        user = await self._db.get_user(event.user_id)
        if user is None:
            return ActivityOutcome(RewardResult.NOT_FOUND, "User not found.")

        batch = NotificationBatch(
            delivered_pending=await self._achievements.get_pending_notifications(event.user_id),
        )

        currency, premium, xp = event.currency, event.premium, event.xp
        if event.kind in PASSIVE_SOURCES:
            decision = self._accrual.try_accrue(
                event.user_id, event.kind, now=now, amount=currency or None,
            )
            if not decision.allowed:
                return ActivityOutcome(
                    RewardResult.RATE_LIMITED,
                    decision.reason or "rate limited",
                    accrual_denied=decision,
                    notifications=batch,
                )
            currency = decision.currency
            xp = xp or decision.xp

        category = event.kind
        if currency > 0:
            await self._awards.award_currency(event.user_id, currency, category, event.description, now=now)
        if premium > 0:
            await self._awards.award_premium_currency(
                event.user_id, premium, category, event.description, now=now,
            )
        level_changes: list[tuple[int, int]] = []
        if xp > 0:
            change = await self._awards.award_xp(event.user_id, xp, category, event.description, now=now)
            level_changes.append((change.old_level, change.new_level))

        await self.settle(event.user_id, level_changes, now=now, batch=batch)
        return ActivityOutcome(
            RewardResult.SUCCESS,
            currency_awarded=currency,
            premium_awarded=premium,
            xp_awarded=xp,
            notifications=batch,
        )

    # ══════════════════════════════════════════════════════════
    #  Daily
    # ══════════════════════════════════════════════════════════

    async def claim_daily(self, user_id: int, now: datetime | None = None) -> ActivityOutcome:
        """Claim the daily bonus. The 24h window check and grant are one transaction."""
        now = now or now_utc()
        daily_cfg = self._config.daily

        user = await self._db.get_user(user_id)
        if user is None:
            return ActivityOutcome(RewardResult.NOT_FOUND, "User not found.")

        batch = NotificationBatch(
            delivered_pending=await self._achievements.get_pending_notifications(user_id),
        )

        result = await self._db.claim_daily(
            user_id,
            currency=daily_cfg.currency,
            xp=daily_cfg.xp,
            cooldown_hours=daily_cfg.cooldown_hours,
            streak_grace_hours=daily_cfg.streak_grace_hours,
            now=now,
        )
        if result is None:
            return ActivityOutcome(RewardResult.NOT_FOUND, "User not found.", notifications=batch)

        if not result["granted"]:
            hours = result["hours_remaining"]
            claim = DailyClaim(
                RewardResult.ALREADY_CLAIMED,
                f"You already claimed your daily bonus. Come back in {hours} hour(s).",
                hours_remaining=hours,
            )
            self._logger.debug("Daily already claimed: user %d (%dh left)", user_id, hours)
            return ActivityOutcome(claim.result, claim.message, daily=claim, notifications=batch)

        claim = DailyClaim(
            RewardResult.SUCCESS,
            f"Daily bonus claimed! +{result['currency']} {self._config.currency.name}, +{result['xp']} XP.",
            currency=result["currency"],
            xp=result["xp"],
            streak_days=result["streak_days"],
            old_level=result["old_level"],
            new_level=result["new_level"],
        )
        self._logger.info("Daily claimed: user %d (streak %d)", user_id, result["streak_days"])
        await self.settle(user_id, [(result["old_level"], result["new_level"])], now=now, batch=batch)
        return ActivityOutcome(
            RewardResult.SUCCESS,
            claim.message,
            currency_awarded=result["currency"],
            xp_awarded=result["xp"],
            daily=claim,
            notifications=batch,
        )

    # ══════════════════════════════════════════════════════════
    #  Level-ups & achievements
    # ══════════════════════════════════════════════════════════

    async def settle(
        self,
        user_id: int,
        level_changes: list[tuple[int, int]],
        now: datetime | None = None,
        deferred: bool = False,
        batch: NotificationBatch | None = None,
    ) -> NotificationBatch:
        """Issue level-up rewards and run achievement checks until nothing changes.

        ``level_changes`` are ``(old_level, new_level)`` pairs as reported by
        the storage transactions that raised the level. Those transactions
        serialise per user, so concurrent events never report the same level
        and each level's reward is paid once.
        """
        now = now or now_utc()
        batch = batch if batch is not None else NotificationBatch()
        while True:
            for old_level, new_level in _coalesce(level_changes):
                batch.level_ups.append(await self._issue_level_up(user_id, old_level, new_level, now))

            unlocked = await self._achievements.auto_check(user_id, deferred=deferred, now=now)
            if not unlocked:
                return batch
            batch.unlocked.extend(unlocked)
            level_changes = [(a.old_level, a.new_level) for a in unlocked]

    async def _issue_level_up(
        self, user_id: int, old_level: int, new_level: int, now: datetime,
    ) -> LevelUpEvent:
        rewards = level_up_rewards(old_level, new_level, self._config.leveling)
        for reward in rewards:
            description = f"Level {reward.level} reward"
            if reward.currency > 0:
                await self._awards.award_currency(user_id, reward.currency, "level_up", description, now=now)
            if reward.premium > 0:
                await self._awards.award_premium_currency(
                    user_id, reward.premium, "level_up", description, now=now,
                )
        self._logger.info("User %d reached level %d (from %d)", user_id, new_level, old_level)
        return LevelUpEvent(old_level=old_level, new_level=new_level, rewards=rewards)


def _coalesce(level_changes: list[tuple[int, int]]) -> list[tuple[int, int]]:
    """Drop non-raises and join back-to-back ranges: (1, 2), (2, 4) → (1, 4)."""
    merged: list[tuple[int, int]] = []
    for old_level, new_level in sorted(c for c in level_changes if c[1] > c[0]):
        if merged and merged[-1][1] == old_level:
            merged[-1] = (merged[-1][0], new_level)
        else:
            merged.append((old_level, new_level))
    return merged
