"""Result types shared by every engine.

Expected business failures (insufficient funds, cooldowns, already claimed)
are returned as values, never raised. Storage faults propagate as exceptions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .activity import LevelUpEvent


class FailureKind(Enum):
    NONE = "none"
    VALIDATION = "validation"
    DENIAL = "denial"
    CONFLICT = "conflict"


class RewardResult(Enum):
    SUCCESS = "success"
    # Validation
    NOT_FOUND = "not_found"
    INVALID_ARGS = "invalid_args"
    # Business-rule denials
    INSUFFICIENT_FUNDS = "insufficient_funds"
    COOLDOWN = "cooldown"
    OUT_OF_STOCK = "out_of_stock"
    DISABLED = "disabled"
    ALREADY_CLAIMED = "already_claimed"
    RATE_LIMITED = "rate_limited"
    ALREADY_LINKED = "already_linked"
    PERMISSION_DENIED = "permission_denied"
    # Concurrency / integrity
    INVALID_STATE = "invalid_state"
    ACCOUNT_CONFLICT = "account_conflict"

    @property
    def kind(self) -> FailureKind:
        return _KINDS[self]


_KINDS: dict[RewardResult, FailureKind] = {
    RewardResult.SUCCESS: FailureKind.NONE,
    RewardResult.NOT_FOUND: FailureKind.VALIDATION,
    RewardResult.INVALID_ARGS: FailureKind.VALIDATION,
    RewardResult.INSUFFICIENT_FUNDS: FailureKind.DENIAL,
    RewardResult.COOLDOWN: FailureKind.DENIAL,
    RewardResult.OUT_OF_STOCK: FailureKind.DENIAL,
    RewardResult.DISABLED: FailureKind.DENIAL,
    RewardResult.ALREADY_CLAIMED: FailureKind.DENIAL,
    RewardResult.RATE_LIMITED: FailureKind.DENIAL,
    RewardResult.ALREADY_LINKED: FailureKind.DENIAL,
    RewardResult.PERMISSION_DENIED: FailureKind.DENIAL,
    RewardResult.INVALID_STATE: FailureKind.CONFLICT,
    RewardResult.ACCOUNT_CONFLICT: FailureKind.CONFLICT,
}


@dataclass(frozen=True)
class BalanceChange:
    """Outcome of a currency credit or debit."""

    result: RewardResult
    message: str = ""
    new_balance: int = 0
    amount: int = 0

    @property
    def success(self) -> bool:
        return self.result is RewardResult.SUCCESS


@dataclass(frozen=True)
class XpChange:
    """Outcome of an XP award or adjustment."""

    result: RewardResult
    message: str = ""
    new_xp: int = 0
    old_level: int = 1
    new_level: int = 1

    @property
    def success(self) -> bool:
        return self.result is RewardResult.SUCCESS

    @property
    def leveled_up(self) -> bool:
        return self.new_level > self.old_level


@dataclass(frozen=True)
class DailyClaim:
    """Outcome of a daily bonus claim."""

    result: RewardResult
    message: str
    currency: int = 0
    xp: int = 0
    hours_remaining: int = 0
    streak_days: int = 0
    old_level: int = 1
    new_level: int = 1

    @property
    def granted(self) -> bool:
        return self.result is RewardResult.SUCCESS

    @property
    def leveled_up(self) -> bool:
        return self.new_level > self.old_level


@dataclass(frozen=True)
class RedeemCheck:
    """Pre-flight answer for a shop redemption."""

    allowed: bool
    result: RewardResult = RewardResult.SUCCESS
    reason: str | None = None


@dataclass(frozen=True)
class RedemptionOutcome:
    result: RewardResult
    message: str
    redemption_id: int | None = None
    status: str | None = None

    @property
    def success(self) -> bool:
        return self.result is RewardResult.SUCCESS


@dataclass(frozen=True)
class AdminActionOutcome:
    """Outcome of fulfil / refund on an existing redemption."""

    result: RewardResult
    message: str
    redemption: dict | None = None

    @property
    def success(self) -> bool:
        return self.result is RewardResult.SUCCESS


@dataclass(frozen=True)
class LinkOutcome:
    """Outcome of linking a secondary-platform account."""

    result: RewardResult
    message: str
    merged: bool = False
    currency_added: int = 0
    premium_added: int = 0
    xp_added: int = 0
    new_level: int | None = None
    queued_achievements: list[str] = field(default_factory=list)
    level_ups: list[LevelUpEvent] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.result is RewardResult.SUCCESS
