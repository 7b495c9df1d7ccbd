"""Currency / XP award service.

Thin, validated entry points over the ledger. Each successful call appends
exactly one transaction row. Level-up rewards and achievement checks are the
activity pipeline's business, not this module's.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from .outcomes import BalanceChange, RewardResult, XpChange

if TYPE_CHECKING:
    from .config import RewardsConfig
    from .database import RewardsDatabase

# currency_type as stored on shop items → ledger unit
CURRENCY_UNITS: dict[str, str] = {
    "regular": "currency",
    "premium": "premium",
}

ADMIN_UNITS = ("currency", "premium", "xp")


class AwardService:
    """Validated credit / debit / XP mutations."""

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
        """Hot-swap the config reference."""
        self._config = new_config

    # ══════════════════════════════════════════════════════════
    #  Credits
    # ══════════════════════════════════════════════════════════

    async def award_currency(
        self,
        user_id: int,
        amount: int,
        category: str,
        description: str | None = None,
        now: datetime | None = None,
    ) -> BalanceChange:
        return await self._credit(user_id, amount, category, description, "currency", now)

    async def award_premium_currency(
        self,
        user_id: int,
        amount: int,
        category: str,
        description: str | None = None,
        now: datetime | None = None,
    ) -> BalanceChange:
        return await self._credit(user_id, amount, category, description, "premium", now)

    async def _credit(
        self, user_id: int, amount: int, category: str,
        description: str | None, unit: str, now: datetime | None,
    ) -> BalanceChange:
        if amount <= 0:
            return BalanceChange(RewardResult.INVALID_ARGS, "Amount must be positive.")
        balance = await self._db.credit(user_id, amount, category, description, unit=unit, now=now)
        if balance is None:
            return BalanceChange(RewardResult.NOT_FOUND, "User not found.")
        self._logger.debug("Credited %d %s to user %d (%s)", amount, unit, user_id, category)
        return BalanceChange(RewardResult.SUCCESS, "", new_balance=balance, amount=amount)

    # ══════════════════════════════════════════════════════════
    #  Debits
    # ══════════════════════════════════════════════════════════

    async def spend_currency(
        self,
        user_id: int,
        amount: int,
        category: str,
        description: str | None = None,
        currency_type: str = "regular",
        now: datetime | None = None,
    ) -> BalanceChange:
        """Conditional debit. Never drives a balance negative."""
        unit = CURRENCY_UNITS.get(currency_type)
        if unit is None:
            return BalanceChange(RewardResult.INVALID_ARGS, f"Unknown currency type: {currency_type}")
        if amount <= 0:
            return BalanceChange(RewardResult.INVALID_ARGS, "Amount must be positive.")

        balance = await self._db.debit(user_id, amount, category, description, unit=unit, now=now)
        if balance is not None:
            self._logger.debug("Debited %d %s from user %d (%s)", amount, unit, user_id, category)
            return BalanceChange(RewardResult.SUCCESS, "", new_balance=balance, amount=amount)

        # Debit refused: tell unknown user apart from an empty wallet
        user = await self._db.get_user(user_id)
        if user is None:
            return BalanceChange(RewardResult.NOT_FOUND, "User not found.")
        column = "premium_currency" if unit == "premium" else "currency"
        name = self._currency_name(currency_type)
        return BalanceChange(
            RewardResult.INSUFFICIENT_FUNDS,
            f"Insufficient {name}. Need {amount}, have {user[column]}.",
            new_balance=user[column],
        )

    # ══════════════════════════════════════════════════════════
    #  Experience
    # ══════════════════════════════════════════════════════════

    async def award_xp(
        self,
        user_id: int,
        amount: int,
        category: str,
        description: str | None = None,
        now: datetime | None = None,
    ) -> XpChange:
        """Add XP; the cached level is only ever raised here."""
        if amount <= 0:
            return XpChange(RewardResult.INVALID_ARGS, "Amount must be positive.")
        result = await self._db.add_xp(user_id, amount, category, description, now=now)
        if result is None:
            return XpChange(RewardResult.NOT_FOUND, "User not found.")
        if result["new_level"] > result["old_level"]:
            self._logger.info(
                "User %d leveled up: %d → %d", user_id, result["old_level"], result["new_level"],
            )
        return XpChange(
            RewardResult.SUCCESS,
            "",
            new_xp=result["xp"],
            old_level=result["old_level"],
            new_level=result["new_level"],
        )

    # ══════════════════════════════════════════════════════════
    #  Admin
    # ══════════════════════════════════════════════════════════

    async def admin_grant(
        self, user_id: int, unit: str, amount: int, admin_id: str, reason: str | None = None,
    ) -> BalanceChange | XpChange:
        """Grant currency, premium or XP on behalf of an admin."""
        if unit not in ADMIN_UNITS:
            return BalanceChange(RewardResult.INVALID_ARGS, f"Unknown unit: {unit}")
        description = f"Granted by {admin_id}" + (f": {reason}" if reason else "")
        if unit == "xp":
            outcome = await self.award_xp(user_id, amount, "admin_grant", description)
        else:
            outcome = await self._credit(user_id, amount, "admin_grant", description, unit, None)
        if outcome.result is RewardResult.SUCCESS:
            self._logger.info("Admin %s granted %d %s to user %d", admin_id, amount, unit, user_id)
        return outcome

    async def admin_take(
        self, user_id: int, unit: str, amount: int, admin_id: str, reason: str | None = None,
    ) -> BalanceChange | XpChange:
        """Remove currency, premium or XP. XP removal may lower the level."""
        if unit not in ADMIN_UNITS:
            return BalanceChange(RewardResult.INVALID_ARGS, f"Unknown unit: {unit}")
        if amount <= 0:
            return BalanceChange(RewardResult.INVALID_ARGS, "Amount must be positive.")
        description = f"Removed by {admin_id}" + (f": {reason}" if reason else "")

        if unit == "xp":
            result = await self._db.remove_xp(user_id, amount, "admin_take", description)
            if result is None:
                return XpChange(RewardResult.NOT_FOUND, "User not found.")
            self._logger.info("Admin %s removed %d xp from user %d", admin_id, amount, user_id)
            return XpChange(
                RewardResult.SUCCESS,
                "",
                new_xp=result["xp"],
                old_level=result["old_level"],
                new_level=result["new_level"],
            )

        currency_type = "premium" if unit == "premium" else "regular"
        outcome = await self.spend_currency(
            user_id, amount, "admin_take", description, currency_type=currency_type,
        )
        if outcome.success:
            self._logger.info("Admin %s removed %d %s from user %d", admin_id, amount, unit, user_id)
        return outcome

    async def reset_all(self, unlink_secondary: bool = False, delete_users: bool = False) -> None:
        await self._db.reset_all(unlink_secondary=unlink_secondary, delete_users=delete_users)

    # ══════════════════════════════════════════════════════════
    #  Reads
    # ══════════════════════════════════════════════════════════

    async def get_balance(self, user_id: int) -> dict | None:
        """``{"currency", "premium_currency", "xp", "level"}`` or None."""
        user = await self._db.get_user(user_id)
        if user is None:
            return None
        return {k: user[k] for k in ("currency", "premium_currency", "xp", "level")}

    async def get_leaderboard(self, order_by: str = "xp", limit: int = 10) -> list[dict]:
        return await self._db.get_leaderboard(order_by=order_by, limit=limit)

    async def get_rank_position(self, user_id: int, order_by: str = "xp") -> int | None:
        return await self._db.get_rank_position(user_id, order_by=order_by)

    def _currency_name(self, currency_type: str) -> str:
        c = self._config.currency
        return c.premium_name if currency_type == "premium" else c.name
