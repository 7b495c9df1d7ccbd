"""Shop & redemption engine.

``check_redeem`` is the single eligibility predicate: the pre-flight
``can_redeem`` and the in-transaction re-validation inside ``redeem_item``
both run it, so the two can never disagree about the rules.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import TYPE_CHECKING

from .outcomes import AdminActionOutcome, RedeemCheck, RedemptionOutcome, RewardResult
from .utils import now_utc

if TYPE_CHECKING:
    from .config import RewardsConfig, ShopItemConfig
    from .database import RewardsDatabase


def _minutes_left(until: datetime, now: datetime) -> int:
    return max(1, math.ceil((until - now).total_seconds() / 60))


def check_redeem(ctx: dict, now: datetime) -> RedeemCheck:
    """Eligibility in fixed order: exists/enabled → stock → balance →
    per-user cooldown → global cooldown. First failure wins."""
    item = ctx.get("item")
    user = ctx.get("user")
    if item is None:
        return RedeemCheck(False, RewardResult.NOT_FOUND, "Item not found.")
    if user is None:
        return RedeemCheck(False, RewardResult.NOT_FOUND, "User not found.")
    if not item["enabled"]:
        return RedeemCheck(False, RewardResult.DISABLED, "This item is currently unavailable.")

    if item["stock"] == 0:
        return RedeemCheck(False, RewardResult.OUT_OF_STOCK, "This item is out of stock.")

    if item["currency_type"] == "premium":
        balance, label = user["premium_currency"], "premium currency"
    else:
        balance, label = user["currency"], "currency"
    if balance < item["cost"]:
        return RedeemCheck(
            False, RewardResult.INSUFFICIENT_FUNDS,
            f"Insufficient {label}. Need {item['cost']}, have {balance}.",
        )

    user_cd = ctx.get("user_cooldown_until")
    if user_cd is not None and user_cd > now:
        return RedeemCheck(
            False, RewardResult.COOLDOWN,
            f"You can redeem this again in {_minutes_left(user_cd, now)} minute(s).",
        )

    global_cd = ctx.get("global_cooldown_until")
    if global_cd is not None and global_cd > now:
        return RedeemCheck(
            False, RewardResult.COOLDOWN,
            f"This item is on global cooldown for {_minutes_left(global_cd, now)} more minute(s).",
        )

    return RedeemCheck(True)


class ShopEngine:
    """Catalog, race-safe redemption and admin fulfilment/refund."""

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
        self._config = new_config

    # ══════════════════════════════════════════════════════════
    #  Catalog
    # ══════════════════════════════════════════════════════════

    async def seed_catalog(self, items: list[ShopItemConfig] | None = None) -> int:
        """Upsert configured items. Existing stock counts are left alone."""
        items = self._config.shop.items if items is None else items
        for item in items:
            await self._db.upsert_shop_item(item.model_dump())
        if items:
            self._logger.info("Seeded %d shop items", len(items))
        return len(items)

    async def get_shop_items(self, category: str | None = None) -> list[dict]:
        return await self._db.get_shop_items(category)

    async def get_shop_item(self, item_id: int) -> dict | None:
        return await self._db.get_shop_item(item_id)

    # ══════════════════════════════════════════════════════════
    #  Redemption
    # ══════════════════════════════════════════════════════════

    async def can_redeem(
        self, user_id: int, item_id: int, now: datetime | None = None,
    ) -> RedeemCheck:
        ctx = await self._db.get_redeem_context(user_id, item_id)
        return check_redeem(ctx, now or now_utc())

    async def redeem_item(
        self,
        user_id: int,
        item_id: int,
        user_input: str | None = None,
        now: datetime | None = None,
    ) -> RedemptionOutcome:
        """Re-validate, debit, reserve stock, record and set cooldowns atomically."""
        now = now or now_utc()

        item = await self._db.get_shop_item(item_id)
        if item is not None and item["requires_input"]:
            user_input = (user_input or "").strip()
            if not user_input:
                prompt = item["input_prompt"] or "This item requires input."
                return RedemptionOutcome(RewardResult.INVALID_ARGS, prompt)

        result = await self._db.redeem_item(
            user_id, item_id, user_input or None, check=check_redeem, now=now,
        )
        verdict: RedeemCheck = result["check"]
        if not verdict.allowed:
            self._logger.debug(
                "Redemption denied: user %d item %d (%s)", user_id, item_id, verdict.result.value,
            )
            return RedemptionOutcome(verdict.result, verdict.reason or "Redemption not allowed.")

        failed = result.get("failed")
        if failed == "insufficient_funds":
            return RedemptionOutcome(RewardResult.INSUFFICIENT_FUNDS, "Insufficient funds.")
        if failed == "out_of_stock":
            return RedemptionOutcome(RewardResult.OUT_OF_STOCK, "This item is out of stock.")

        status = result["status"]
        self._logger.info(
            "Redemption %d: user %d bought %s for %d %s (%s)",
            result["redemption_id"], user_id, item["name"], item["cost"],
            item["currency_type"], status,
        )
        if status == "fulfilled":
            message = f"Redeemed {item['name']}!"
        else:
            message = f"Redeemed {item['name']}! An admin will fulfil it soon."
        return RedemptionOutcome(
            RewardResult.SUCCESS, message,
            redemption_id=result["redemption_id"], status=status,
        )

    # ══════════════════════════════════════════════════════════
    #  Admin
    # ══════════════════════════════════════════════════════════

    async def fulfill_redemption(
        self, redemption_id: int, admin_id: str, notes: str | None = None,
        now: datetime | None = None,
    ) -> AdminActionOutcome:
        status, row = await self._db.fulfill_redemption(redemption_id, admin_id, notes, now=now)
        if status == "not_found":
            return AdminActionOutcome(RewardResult.NOT_FOUND, "Redemption not found.")
        if status == "invalid_state":
            return AdminActionOutcome(
                RewardResult.INVALID_STATE,
                f"Redemption is already {row['status']}.",
                redemption=row,
            )
        self._logger.info("Redemption %d fulfilled by %s", redemption_id, admin_id)
        return AdminActionOutcome(RewardResult.SUCCESS, "Redemption fulfilled.", redemption=row)

    async def refund_redemption(
        self,
        redemption_id: int,
        admin_id: str,
        reason: str | None = None,
        allow_fulfilled: bool = True,
        now: datetime | None = None,
    ) -> AdminActionOutcome:
        """Refund the cost in its original currency and restore finite stock."""
        status, row = await self._db.refund_redemption(
            redemption_id, admin_id, reason, allow_fulfilled=allow_fulfilled, now=now,
        )
        if status == "not_found":
            return AdminActionOutcome(RewardResult.NOT_FOUND, "Redemption not found.")
        if status == "invalid_state":
            if row["status"] == "refunded":
                message = "Redemption has already been refunded."
            else:
                message = f"Cannot refund a {row['status']} redemption."
            return AdminActionOutcome(RewardResult.INVALID_STATE, message, redemption=row)
        self._logger.info(
            "Redemption %d refunded by %s (%d %s)",
            redemption_id, admin_id, row["cost"], row["currency_type"],
        )
        return AdminActionOutcome(RewardResult.SUCCESS, "Redemption refunded.", redemption=row)

    async def get_user_redemptions(self, user_id: int, limit: int = 50) -> list[dict]:
        return await self._db.get_user_redemptions(user_id, limit)

    async def get_pending_redemptions(self) -> list[dict]:
        return await self._db.get_pending_redemptions()
