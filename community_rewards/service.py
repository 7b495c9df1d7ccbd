"""RewardsService: the surface platform adapters call.

Builds and wires every engine around one database and one rate-limiter
state. Expected business failures come back as outcome objects; only
storage faults raise.
"""

from __future__ import annotations

import logging
from datetime import datetime

from .accrual import AccrualDecision, AccrualPolicy, RateLimiterState
from .account_linker import AccountLinker
from .achievement_engine import AchievementEngine, UnlockedAchievement
from .activity import ActivityEvent, ActivityOutcome, ActivityPipeline
from .award_service import AwardService
from .config import RewardsConfig
from .database import PLATFORM_COLUMNS, RewardsDatabase
from .leveling import LevelProgress, level_progress, progress_bar
from .outcomes import (
    AdminActionOutcome,
    BalanceChange,
    LinkOutcome,
    RedeemCheck,
    RedemptionOutcome,
    RewardResult,
    XpChange,
)
from .shop_engine import ShopEngine
from .voice_tracker import VoiceTracker

# Platform → passive source its chat messages accrue under
CHAT_SOURCES: dict[str, str] = {
    "discord": "chat",
    "twitch": "twitch_chat",
}


class RewardsService:
    """Facade over the reward engines."""

    def __init__(
        self,
        config: RewardsConfig,
        logger: logging.Logger | None = None,
        database: RewardsDatabase | None = None,
        limiter_state: RateLimiterState | None = None,
    ) -> None:
        self.config = config
        self.logger = logger or logging.getLogger("rewards")
        self.db = database or RewardsDatabase(config.database.path, self.logger)
        self.limiter_state = limiter_state or RateLimiterState()

        self.awards = AwardService(config, self.db, self.logger)
        self.accrual = AccrualPolicy(config, self.limiter_state, self.logger)
        self.achievements = AchievementEngine(config, self.db, self.logger)
        self.shop = ShopEngine(config, self.db, self.logger)
        self.pipeline = ActivityPipeline(
            config, self.db, self.awards, self.accrual, self.achievements, self.logger,
        )
        self.linker = AccountLinker(self.db, self.pipeline, self.logger)
        self.voice = VoiceTracker(config, self.db, self.pipeline, self.logger)

        self._ignored_users: set[str] = {u.lower() for u in config.ignored_users}

        # Counters (for metrics)
        self.events_processed: int = 0
        self.accruals_denied: int = 0
        self.achievements_unlocked_total: int = 0
        self.level_ups_total: int = 0
        self.redemptions_total: int = 0
        self.refunds_total: int = 0
        self.merges_total: int = 0

    async def initialize(self) -> None:
        """Create tables, sync achievement definitions and seed the shop catalog."""
        await self.db.initialize()
        await self.achievements.sync_definitions()
        await self.shop.seed_catalog()

    def update_config(self, new_config: RewardsConfig) -> None:
        """Hot-swap config on every component. Re-run ``initialize`` to resync catalogs."""
        self.config = new_config
        self._ignored_users = {u.lower() for u in new_config.ignored_users}
        for component in (
            self.awards, self.accrual, self.achievements, self.shop, self.pipeline, self.voice,
        ):
            component.update_config(new_config)

    def is_admin(self, admin_id: str) -> bool:
        """An empty admin list leaves authorisation to the adapter."""
        admins = self.config.admin.admin_ids
        return not admins or admin_id in admins

    # ══════════════════════════════════════════════════════════
    #  Users
    # ══════════════════════════════════════════════════════════

    async def get_or_create_user(
        self, platform: str, external_id: str, display_name: str,
    ) -> dict:
        """Return the user for a platform id, creating it on first sight.

        Raises ``ValueError`` for an unknown platform or an empty display name.
        """
        if platform not in PLATFORM_COLUMNS:
            raise ValueError(f"Unknown platform: {platform}")
        user, created = await self.db.get_or_create_user(platform, external_id, display_name)
        if created:
            self.logger.info("New %s user: %s (id %d)", platform, display_name, user["id"])
        return user

    async def get_level_progress(self, user_id: int) -> LevelProgress | None:
        user = await self.db.get_user(user_id)
        if user is None:
            return None
        return level_progress(user["xp"])

    async def get_profile(self, user_id: int) -> dict | None:
        """Balances, level progress, streak, rank and achievement count."""
        user = await self.db.get_user(user_id)
        if user is None:
            return None
        profile = await self.db.get_profile(user_id) or {}
        progress = level_progress(user["xp"])
        return {
            "user": user,
            "currency": user["currency"],
            "premium_currency": user["premium_currency"],
            "xp": user["xp"],
            "level": progress.level,
            "progress": progress,
            "progress_bar": progress_bar(progress.percent),
            "streak_days": profile.get("streak_days") or 0,
            "rank": await self.awards.get_rank_position(user_id),
            "achievements_completed": await self.achievements.completed_count(user_id),
            "linked_twitch": user["twitch_username"],
        }

    async def get_leaderboard(self, order_by: str = "xp", limit: int = 10) -> list[dict]:
        return await self.awards.get_leaderboard(order_by=order_by, limit=limit)

    # ══════════════════════════════════════════════════════════
    #  Ledger
    # ══════════════════════════════════════════════════════════

    async def award_currency(
        self, user_id: int, amount: int, category: str, description: str | None = None,
    ) -> BalanceChange:
        return await self.awards.award_currency(user_id, amount, category, description)

    async def spend_currency(
        self, user_id: int, amount: int, category: str, description: str | None = None,
        currency_type: str = "regular",
    ) -> BalanceChange:
        return await self.awards.spend_currency(
            user_id, amount, category, description, currency_type=currency_type,
        )

    async def award_xp(
        self, user_id: int, amount: int, category: str, description: str | None = None,
    ) -> XpChange:
        return await self.awards.award_xp(user_id, amount, category, description)

    async def admin_grant(
        self, admin_id: str, user_id: int, unit: str, amount: int, reason: str | None = None,
    ) -> BalanceChange | XpChange | ActivityOutcome:
        """Grant through the pipeline so level-ups and achievements follow."""
        if not self.is_admin(admin_id):
            return BalanceChange(RewardResult.PERMISSION_DENIED, "Admins only.")
        if unit not in ("currency", "premium", "xp") or amount <= 0:
            return BalanceChange(RewardResult.INVALID_ARGS, "Invalid grant.")
        event = ActivityEvent(
            user_id=user_id,
            kind="admin_grant",
            currency=amount if unit == "currency" else 0,
            premium=amount if unit == "premium" else 0,
            xp=amount if unit == "xp" else 0,
            description=f"Granted by {admin_id}" + (f": {reason}" if reason else ""),
        )
        outcome = await self._run(event)
        if outcome.success:
            self.logger.info("Admin %s granted %d %s to user %d", admin_id, amount, unit, user_id)
        return outcome

    async def admin_take(
        self, admin_id: str, user_id: int, unit: str, amount: int, reason: str | None = None,
    ) -> BalanceChange | XpChange:
        if not self.is_admin(admin_id):
            return BalanceChange(RewardResult.PERMISSION_DENIED, "Admins only.")
        return await self.awards.admin_take(user_id, unit, amount, admin_id, reason)

    async def reset_all(
        self, admin_id: str, unlink_secondary: bool = False, delete_users: bool = False,
    ) -> RewardResult:
        if not self.is_admin(admin_id):
            return RewardResult.PERMISSION_DENIED
        await self.awards.reset_all(unlink_secondary=unlink_secondary, delete_users=delete_users)
        self.limiter_state.clear()
        return RewardResult.SUCCESS

    # ══════════════════════════════════════════════════════════
    #  Activity
    # ══════════════════════════════════════════════════════════

    def try_accrue(
        self, user_id: int, source: str, now: datetime | None = None,
    ) -> AccrualDecision:
        return self.accrual.try_accrue(user_id, source, now=now)

    async def handle_chat_message(
        self,
        platform: str,
        external_id: str,
        display_name: str,
        now: datetime | None = None,
    ) -> ActivityOutcome | None:
        """Resolve the author and run a chat accrual. None for ignored users."""
        if display_name and display_name.lower() in self._ignored_users:
            return None
        source = CHAT_SOURCES.get(platform)
        if source is None:
            raise ValueError(f"Unknown platform: {platform}")
        user = await self.get_or_create_user(platform, external_id, display_name)
        return await self._run(ActivityEvent(user_id=user["id"], kind=source, now=now))

    async def claim_daily(self, user_id: int, now: datetime | None = None) -> ActivityOutcome:
        return await self._run(ActivityEvent(user_id=user_id, kind="daily", now=now))

    async def handle_voice_join(
        self, platform_id: str, username: str, channel_name: str,
        is_bot: bool = False, is_afk_channel: bool = False,
    ) -> None:
        await self.voice.handle_join(
            platform_id, username, channel_name, is_bot=is_bot, is_afk_channel=is_afk_channel,
        )

    def handle_voice_leave(self, platform_id: str) -> None:
        self.voice.handle_leave(platform_id)

    async def _run(self, event: ActivityEvent) -> ActivityOutcome:
        outcome = await self.pipeline.apply_activity(event)
        self.events_processed += 1
        if outcome.accrual_denied is not None:
            self.accruals_denied += 1
        self.achievements_unlocked_total += len(outcome.notifications.unlocked)
        self.level_ups_total += len(outcome.notifications.level_ups)
        return outcome

    # ══════════════════════════════════════════════════════════
    #  Achievements
    # ══════════════════════════════════════════════════════════

    async def auto_check_achievements(
        self, user_id: int, deferred: bool = False,
    ) -> list[UnlockedAchievement]:
        unlocked = await self.achievements.auto_check(user_id, deferred=deferred)
        self.achievements_unlocked_total += len(unlocked)
        return unlocked

    async def get_pending_notifications(self, user_id: int) -> list[UnlockedAchievement]:
        return await self.achievements.get_pending_notifications(user_id)

    async def get_user_achievements(self, user_id: int) -> list[dict]:
        return await self.achievements.get_user_achievements(user_id)

    # ══════════════════════════════════════════════════════════
    #  Shop
    # ══════════════════════════════════════════════════════════

    async def get_shop_items(self, category: str | None = None) -> list[dict]:
        return await self.shop.get_shop_items(category)

    async def can_redeem(self, user_id: int, item_id: int) -> RedeemCheck:
        return await self.shop.can_redeem(user_id, item_id)

    async def redeem_item(
        self, user_id: int, item_id: int, user_input: str | None = None,
    ) -> RedemptionOutcome:
        outcome = await self.shop.redeem_item(user_id, item_id, user_input)
        if outcome.success:
            self.redemptions_total += 1
        return outcome

    async def get_user_redemptions(self, user_id: int, limit: int = 50) -> list[dict]:
        return await self.shop.get_user_redemptions(user_id, limit)

    async def get_pending_redemptions(self) -> list[dict]:
        return await self.shop.get_pending_redemptions()

    async def fulfill_redemption(
        self, redemption_id: int, admin_id: str, notes: str | None = None,
    ) -> AdminActionOutcome:
        if not self.is_admin(admin_id):
            return AdminActionOutcome(RewardResult.PERMISSION_DENIED, "Admins only.")
        return await self.shop.fulfill_redemption(redemption_id, admin_id, notes)

    async def refund_redemption(
        self, redemption_id: int, admin_id: str, reason: str | None = None,
        allow_fulfilled: bool = True,
    ) -> AdminActionOutcome:
        if not self.is_admin(admin_id):
            return AdminActionOutcome(RewardResult.PERMISSION_DENIED, "Admins only.")
        outcome = await self.shop.refund_redemption(
            redemption_id, admin_id, reason, allow_fulfilled=allow_fulfilled,
        )
        if outcome.success:
            self.refunds_total += 1
        return outcome

    # ══════════════════════════════════════════════════════════
    #  Linking
    # ══════════════════════════════════════════════════════════

    async def link_secondary_account(
        self, primary_user_id: int, secondary_id: str, secondary_name: str,
    ) -> LinkOutcome:
        outcome = await self.linker.link_secondary_account(primary_user_id, secondary_id, secondary_name)
        if outcome.merged:
            self.merges_total += 1
        self.achievements_unlocked_total += len(outcome.queued_achievements)
        self.level_ups_total += len(outcome.level_ups)
        return outcome
