"""Account linking: attach a Twitch identity to a Discord-keyed user.

When the Twitch id already belongs to a Twitch-only user, that user's whole
history is folded into the primary in one storage transaction. The activity
pipeline's settle stage then pays rewards for any levels the merge crossed and
runs achievements in deferred mode, so unlocks reach the user on their next
activity.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from .outcomes import LinkOutcome, RewardResult

if TYPE_CHECKING:
    from .activity import ActivityPipeline
    from .database import RewardsDatabase


class AccountLinker:
    """Links and merges secondary-platform accounts."""

    def __init__(
        self,
        database: RewardsDatabase,
        pipeline: ActivityPipeline,
        logger: logging.Logger,
    ) -> None:
        self._db = database
        self._pipeline = pipeline
        self._logger = logger

    async def link_secondary_account(
        self,
        primary_user_id: int,
        secondary_id: str,
        secondary_name: str,
        now: datetime | None = None,
    ) -> LinkOutcome:
        if not secondary_id:
            return LinkOutcome(RewardResult.INVALID_ARGS, "A Twitch id is required.")

        result = await self._db.link_secondary(
            primary_user_id, secondary_id, secondary_name, now=now,
        )
        status = result["status"]

        if status == "not_found":
            return LinkOutcome(RewardResult.NOT_FOUND, "User not found.")
        if status == "already_linked":
            return LinkOutcome(RewardResult.ALREADY_LINKED, "This Twitch account is already linked.")
        if status == "linked_other":
            return LinkOutcome(
                RewardResult.ALREADY_LINKED,
                "A different Twitch account is already linked. Unlink it first.",
            )
        if status == "conflict":
            self._logger.warning(
                "Link refused: twitch %s already belongs to another Discord user (primary %d)",
                secondary_id, primary_user_id,
            )
            return LinkOutcome(
                RewardResult.ACCOUNT_CONFLICT,
                "That Twitch account is linked to a different Discord user.",
            )

        if status == "attached":
            level_changes: list[tuple[int, int]] = []
        else:
            level_changes = [(result["old_level"], result["level"])]
        batch = await self._pipeline.settle(primary_user_id, level_changes, now=now, deferred=True)
        queued = [a.name for a in batch.unlocked]
        user = await self._db.get_user(primary_user_id)
        final_level = user["level"] if user else result["level"]

        if status == "attached":
            self._logger.info("Linked twitch %s to user %d", secondary_id, primary_user_id)
            return LinkOutcome(
                RewardResult.SUCCESS,
                "Twitch account linked.",
                new_level=final_level,
                queued_achievements=queued,
                level_ups=batch.level_ups,
            )

        self._logger.info(
            "Merged twitch user %d into user %d (+%d currency, +%d premium, +%d xp)",
            result["secondary_user_id"], primary_user_id,
            result["currency_added"], result["premium_added"], result["xp_added"],
        )
        return LinkOutcome(
            RewardResult.SUCCESS,
            "Twitch account linked and progress merged.",
            merged=True,
            currency_added=result["currency_added"],
            premium_added=result["premium_added"],
            xp_added=result["xp_added"],
            new_level=final_level,
            queued_achievements=queued,
            level_ups=batch.level_ups,
        )
