"""Voice presence tracker: per-minute earning for users sitting in voice.

Join/leave events open and close sessions; the scheduler calls ``tick``
periodically and every session whose last reward is old enough runs a
``voice`` activity through the pipeline (which still applies the voice
accrual cooldown and hourly cap).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from .activity import ActivityEvent, ActivityOutcome
from .utils import now_utc

if TYPE_CHECKING:
    from .activity import ActivityPipeline
    from .config import RewardsConfig
    from .database import RewardsDatabase


@dataclass
class VoiceSession:
    """A single user's current voice connection."""

    user_id: int
    platform_id: str
    username: str
    channel_name: str
    joined_at: datetime
    last_reward_at: datetime


class VoiceTracker:
    """Tracks voice sessions and rewards time spent in them."""

    def __init__(
        self,
        config: RewardsConfig,
        database: RewardsDatabase,
        pipeline: ActivityPipeline,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._db = database
        self._pipeline = pipeline
        self._logger = logger or logging.getLogger("rewards.voice")

        # Active sessions: {platform_id: VoiceSession}
        self._sessions: dict[str, VoiceSession] = {}
        self._ignored_users: set[str] = {u.lower() for u in config.ignored_users}

    def update_config(self, new_config: RewardsConfig) -> None:
        self._config = new_config
        self._ignored_users = {u.lower() for u in new_config.ignored_users}

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)

    def get_session(self, platform_id: str) -> VoiceSession | None:
        return self._sessions.get(platform_id)

    # ══════════════════════════════════════════════════════════
    #  Join / Leave
    # ══════════════════════════════════════════════════════════

    async def handle_join(
        self,
        platform_id: str,
        username: str,
        channel_name: str,
        is_bot: bool = False,
        is_afk_channel: bool = False,
        now: datetime | None = None,
    ) -> VoiceSession | None:
        """Open a session. Bots, ignored users and AFK channels are not tracked."""
        if is_bot or is_afk_channel or username.lower() in self._ignored_users:
            return None
        if not self._config.voice.enabled:
            return None

        now = now or now_utc()
        user, _ = await self._db.get_or_create_user("discord", platform_id, username)
        session = VoiceSession(
            user_id=user["id"],
            platform_id=platform_id,
            username=username,
            channel_name=channel_name,
            joined_at=now,
            last_reward_at=now,
        )
        self._sessions[platform_id] = session
        self._logger.info("%s joined voice channel: %s", username, channel_name)
        return session

    def handle_leave(self, platform_id: str, now: datetime | None = None) -> int | None:
        """Close a session. Returns minutes spent, or None if not tracked."""
        session = self._sessions.pop(platform_id, None)
        if session is None:
            return None
        minutes = int(((now or now_utc()) - session.joined_at).total_seconds() // 60)
        self._logger.info("%s left voice after %d minutes", session.username, minutes)
        return minutes

    # ══════════════════════════════════════════════════════════
    #  Tick
    # ══════════════════════════════════════════════════════════

    async def tick(self, now: datetime | None = None) -> list[tuple[int, ActivityOutcome]]:
        """Reward every session due a per-minute payout."""
        now = now or now_utc()
        interval = self._config.voice.min_minutes_between_rewards * 60
        results: list[tuple[int, ActivityOutcome]] = []

        for session in list(self._sessions.values()):
            if (now - session.last_reward_at).total_seconds() < interval:
                continue
            outcome = await self._pipeline.apply_activity(ActivityEvent(
                user_id=session.user_id,
                kind="voice",
                description=f"Voice chat: {session.channel_name}",
                now=now,
            ))
            session.last_reward_at = now
            results.append((session.user_id, outcome))
            for level_up in outcome.notifications.level_ups:
                self._logger.info(
                    "%s leveled up to %d from voice chat", session.username, level_up.new_level,
                )

        return results
