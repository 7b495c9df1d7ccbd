"""Passive-earning rate limiter.

``RateLimiterState`` is created once per process and injected wherever
accrual decisions are made. It is only touched from the event loop thread,
so check-and-record needs no lock. State is in-memory: restarts reset the
windows and separate processes do not share them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from .utils import hour_bucket, now_utc

if TYPE_CHECKING:
    from .config import RewardsConfig


@dataclass
class RateLimiterState:
    """Cooldown and hourly-cap trackers keyed by user and source."""

    last_reward: dict[tuple[int, str], datetime] = field(default_factory=dict)
    hour_totals: dict[tuple[int, str, str], int] = field(default_factory=dict)

    def clear(self) -> None:
        self.last_reward.clear()
        self.hour_totals.clear()


@dataclass(frozen=True)
class AccrualDecision:
    allowed: bool
    reason: str | None = None
    retry_after_seconds: int = 0
    currency: int = 0
    xp: int = 0


class AccrualPolicy:
    """Decides whether a passive activity earns anything right now."""

    def __init__(
        self,
        config: RewardsConfig,
        state: RateLimiterState,
        logger: logging.Logger,
    ) -> None:
        self._config = config
        self._state = state
        self._logger = logger

    def update_config(self, new_config: RewardsConfig) -> None:
        self._config = new_config

    @property
    def state(self) -> RateLimiterState:
        return self._state

    def try_accrue(
        self,
        user_id: int,
        source: str,
        now: datetime | None = None,
        amount: int | None = None,
    ) -> AccrualDecision:
        """Check cooldown and hourly cap; on success record both immediately.

        ``amount`` is the currency counted against the hourly cap and
        defaults to the source's configured per-accrual currency.
        """
        if not self._config.accrual.enabled:
            return AccrualDecision(allowed=False, reason="disabled")

        now = now or now_utc()
        src = self._config.accrual.for_source(source)
        amount = src.currency if amount is None else amount

        key = (user_id, source)
        last = self._state.last_reward.get(key)
        if last is not None:
            elapsed = (now - last).total_seconds()
            if elapsed < src.cooldown_seconds:
                retry = int(src.cooldown_seconds - elapsed) + 1
                self._logger.debug(
                    "Accrual cooldown: user %d source %s retry in %ds", user_id, source, retry,
                )
                return AccrualDecision(allowed=False, reason="cooldown", retry_after_seconds=retry)

        bucket_key = (user_id, source, hour_bucket(now))
        earned = self._state.hour_totals.get(bucket_key, 0)
        if earned >= src.hourly_cap:
            next_hour = 3600 - (now.minute * 60 + now.second)
            self._logger.debug("Accrual hourly cap hit: user %d source %s", user_id, source)
            return AccrualDecision(allowed=False, reason="hourly_cap", retry_after_seconds=next_hour)

        self._state.last_reward[key] = now
        self._state.hour_totals[bucket_key] = earned + amount
        return AccrualDecision(allowed=True, currency=amount, xp=src.xp)

    def sweep(self, now: datetime | None = None) -> int:
        """Evict stale hour buckets and expired cooldown entries. Returns count removed."""
        now = now or now_utc()
        current = hour_bucket(now)
        stale_buckets = [k for k in self._state.hour_totals if k[2] != current]
        for k in stale_buckets:
            del self._state.hour_totals[k]

        longest = max(
            (s.cooldown_seconds for s in self._config.accrual.sources.values()),
            default=60,
        )
        stale_rewards = [
            k for k, ts in self._state.last_reward.items()
            if (now - ts).total_seconds() >= longest
        ]
        for k in stale_rewards:
            del self._state.last_reward[k]

        removed = len(stale_buckets) + len(stale_rewards)
        if removed:
            self._logger.debug("Accrual sweep removed %d entries", removed)
        return removed
