"""SQLite database module for community-rewards.

Each public method is async and wraps a synchronous inner function via
asyncio.run_in_executor(None, _sync). A new connection is created per call
(WAL mode, 30s busy timeout, Row factory, foreign keys on).

Multi-statement mutations open with BEGIN IMMEDIATE so they take the write
lock up front: the checks they make cannot be invalidated by another writer
before they commit. Closing a connection without commit rolls back, so any
exception inside a ``_sync`` leaves the store untouched.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Callable

from .leveling import level_for_xp
from .utils import now_utc, parse_timestamp, to_db_timestamp

# Balance column per transaction unit
_BALANCE_COLUMNS: dict[str, str] = {
    "currency": "currency",
    "premium": "premium_currency",
}

# Platform name → users column holding that platform's id
PLATFORM_COLUMNS: dict[str, str] = {
    "discord": "discord_id",
    "twitch": "twitch_id",
}


class RewardsDatabase:
    """SQLite-backed ledger, achievement and shop persistence."""

    def __init__(self, db_path: str, logger: logging.Logger) -> None:
        self._db_path = db_path
        self._logger = logger

    def _get_connection(self) -> sqlite3.Connection:
        """Create a new SQLite connection with standard settings."""
        conn = sqlite3.connect(self._db_path, timeout=30)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=30000")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.row_factory = sqlite3.Row
        return conn

    async def _run(self, fn: Callable[[], Any]) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn)

    # ══════════════════════════════════════════════════════════
    #  Initialization
    # ══════════════════════════════════════════════════════════

    async def initialize(self) -> None:
        """Create all tables and indexes. Idempotent."""
        await self._run(self._create_tables)

    def _create_tables(self) -> None:
        conn = self._get_connection()
        try:
            # ── Ledger ───────────────────────────────────────
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    discord_id TEXT UNIQUE,
                    twitch_id TEXT UNIQUE,
                    username TEXT NOT NULL,
                    twitch_username TEXT,
                    currency INTEGER NOT NULL DEFAULT 0 CHECK (currency >= 0),
                    premium_currency INTEGER NOT NULL DEFAULT 0 CHECK (premium_currency >= 0),
                    xp INTEGER NOT NULL DEFAULT 0 CHECK (xp >= 0),
                    level INTEGER NOT NULL DEFAULT 1,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS user_profiles (
                    user_id INTEGER NOT NULL UNIQUE REFERENCES users(id),
                    streak_days INTEGER DEFAULT 0,
                    last_daily_at TIMESTAMP
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS transactions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL REFERENCES users(id),
                    type TEXT NOT NULL,
                    category TEXT NOT NULL,
                    unit TEXT NOT NULL DEFAULT 'currency',
                    amount INTEGER NOT NULL,
                    description TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_transactions_user_category "
                "ON transactions(user_id, category, created_at)"
            )

            # ── Achievements ─────────────────────────────────
            conn.execute("""
                CREATE TABLE IF NOT EXISTS achievements (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL UNIQUE,
                    description TEXT,
                    category TEXT,
                    rarity TEXT,
                    reward_currency INTEGER DEFAULT 0,
                    reward_premium_currency INTEGER DEFAULT 0,
                    reward_xp INTEGER DEFAULT 0,
                    condition TEXT
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS user_achievements (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL REFERENCES users(id),
                    achievement_id INTEGER NOT NULL REFERENCES achievements(id),
                    progress INTEGER DEFAULT 0,
                    required INTEGER DEFAULT 1,
                    completed_at TIMESTAMP,
                    UNIQUE(user_id, achievement_id)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS pending_achievement_notifications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL REFERENCES users(id),
                    achievement_id INTEGER NOT NULL REFERENCES achievements(id),
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_pending_notifications_user "
                "ON pending_achievement_notifications(user_id)"
            )

            # ── Shop ─────────────────────────────────────────
            conn.execute("""
                CREATE TABLE IF NOT EXISTS shop_items (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL UNIQUE,
                    description TEXT,
                    cost INTEGER NOT NULL,
                    currency_type TEXT NOT NULL DEFAULT 'regular',
                    category TEXT DEFAULT 'general',
                    stock INTEGER NOT NULL DEFAULT -1 CHECK (stock >= -1),
                    enabled BOOLEAN DEFAULT 1,
                    cooldown_minutes INTEGER DEFAULT 0,
                    global_cooldown_minutes INTEGER DEFAULT 0,
                    requires_input BOOLEAN DEFAULT 0,
                    input_prompt TEXT,
                    auto_fulfill BOOLEAN DEFAULT 0
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS redemptions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL REFERENCES users(id),
                    shop_item_id INTEGER REFERENCES shop_items(id),
                    cost INTEGER NOT NULL,
                    currency_type TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    user_input TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    fulfilled_at TIMESTAMP,
                    fulfilled_by TEXT,
                    notes TEXT,
                    refunded BOOLEAN DEFAULT 0,
                    refunded_at TIMESTAMP,
                    refunded_by TEXT,
                    refund_reason TEXT
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_redemptions_user ON redemptions(user_id, created_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_redemptions_status ON redemptions(status)"
            )

            conn.execute("""
                CREATE TABLE IF NOT EXISTS user_item_cooldowns (
                    user_id INTEGER NOT NULL REFERENCES users(id),
                    shop_item_id INTEGER NOT NULL REFERENCES shop_items(id),
                    can_redeem_at TIMESTAMP NOT NULL,
                    UNIQUE(user_id, shop_item_id)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS global_item_cooldowns (
                    shop_item_id INTEGER NOT NULL UNIQUE REFERENCES shop_items(id),
                    can_redeem_at TIMESTAMP NOT NULL
                )
            """)

            conn.commit()
            self._logger.info("Database tables created/verified")
        finally:
            conn.close()

    # ══════════════════════════════════════════════════════════
    #  In-transaction helpers (caller owns the connection)
    # ══════════════════════════════════════════════════════════

    @staticmethod
    def _log_tx(
        conn: sqlite3.Connection, user_id: int, tx_type: str, category: str,
        unit: str, amount: int, description: str | None, ts: str,
    ) -> None:
        conn.execute(
            "INSERT INTO transactions (user_id, type, category, unit, amount, description, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (user_id, tx_type, category, unit, amount, description, ts),
        )

    @classmethod
    def _credit_in_tx(
        cls, conn: sqlite3.Connection, user_id: int, amount: int, category: str,
        description: str | None, unit: str, ts: str,
    ) -> int | None:
        """Credit balance and log. Returns new balance, None if no such user."""
        column = _BALANCE_COLUMNS[unit]
        cursor = conn.execute(
            f"UPDATE users SET {column} = {column} + ?, updated_at = ? WHERE id = ?",
            (amount, ts, user_id),
        )
        if cursor.rowcount == 0:
            return None
        cls._log_tx(conn, user_id, "earn", category, unit, amount, description, ts)
        row = conn.execute(f"SELECT {column} AS balance FROM users WHERE id = ?", (user_id,)).fetchone()
        return row["balance"]

    @classmethod
    def _debit_in_tx(
        cls, conn: sqlite3.Connection, user_id: int, amount: int, category: str,
        description: str | None, unit: str, ts: str,
    ) -> int | None:
        """Conditional debit. Returns new balance, None on insufficient funds / no user."""
        column = _BALANCE_COLUMNS[unit]
        cursor = conn.execute(
            f"UPDATE users SET {column} = {column} - ?, updated_at = ? "
            f"WHERE id = ? AND {column} >= ?",
            (amount, ts, user_id, amount),
        )
        if cursor.rowcount == 0:
            return None
        cls._log_tx(conn, user_id, "spend", category, unit, amount, description, ts)
        row = conn.execute(f"SELECT {column} AS balance FROM users WHERE id = ?", (user_id,)).fetchone()
        return row["balance"]

    @classmethod
    def _add_xp_in_tx(
        cls, conn: sqlite3.Connection, user_id: int, amount: int, category: str,
        description: str | None, ts: str,
    ) -> dict | None:
        """Add XP, raise cached level if the new total crosses a threshold."""
        row = conn.execute("SELECT xp, level FROM users WHERE id = ?", (user_id,)).fetchone()
        if row is None:
            return None
        new_xp = row["xp"] + amount
        old_level = row["level"]
        computed = level_for_xp(new_xp)
        new_level = computed if computed > old_level else old_level
        conn.execute(
            "UPDATE users SET xp = ?, level = ?, updated_at = ? WHERE id = ?",
            (new_xp, new_level, ts, user_id),
        )
        cls._log_tx(conn, user_id, "earn", category, "xp", amount, description, ts)
        return {"xp": new_xp, "old_level": old_level, "new_level": new_level}

    # ══════════════════════════════════════════════════════════
    #  User Operations
    # ══════════════════════════════════════════════════════════

    async def get_or_create_user(
        self, platform: str, external_id: str, display_name: str,
    ) -> tuple[dict, bool]:
        """Return ``(user_row, created)``. Idempotent upsert keyed by platform id."""
        if not display_name or not display_name.strip():
            raise ValueError("display_name must be a non-empty string")
        column = PLATFORM_COLUMNS[platform]
        name_column = "twitch_username" if platform == "twitch" else None
        ts = to_db_timestamp()

        def _sync() -> tuple[dict, bool]:
            conn = self._get_connection()
            try:
                if name_column:
                    cursor = conn.execute(
                        f"INSERT INTO users ({column}, username, {name_column}, created_at, updated_at) "
                        f"VALUES (?, ?, ?, ?, ?) ON CONFLICT({column}) DO NOTHING",
                        (external_id, display_name, display_name, ts, ts),
                    )
                else:
                    cursor = conn.execute(
                        f"INSERT INTO users ({column}, username, created_at, updated_at) "
                        f"VALUES (?, ?, ?, ?) ON CONFLICT({column}) DO NOTHING",
                        (external_id, display_name, ts, ts),
                    )
                created = cursor.rowcount == 1
                row = conn.execute(
                    f"SELECT * FROM users WHERE {column} = ?", (external_id,),
                ).fetchone()
                conn.execute(
                    "INSERT OR IGNORE INTO user_profiles (user_id) VALUES (?)", (row["id"],),
                )
                conn.commit()
                return dict(row), created
            finally:
                conn.close()

        return await self._run(_sync)

    async def get_user(self, user_id: int) -> dict | None:
        """Return user row as dict, or None if not exists."""

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
                return dict(row) if row else None
            finally:
                conn.close()

        return await self._run(_sync)

    async def get_user_by_platform(self, platform: str, external_id: str) -> dict | None:
        column = PLATFORM_COLUMNS[platform]

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    f"SELECT * FROM users WHERE {column} = ?", (external_id,),
                ).fetchone()
                return dict(row) if row else None
            finally:
                conn.close()

        return await self._run(_sync)

    async def get_profile(self, user_id: int) -> dict | None:

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM user_profiles WHERE user_id = ?", (user_id,),
                ).fetchone()
                return dict(row) if row else None
            finally:
                conn.close()

        return await self._run(_sync)

    # ══════════════════════════════════════════════════════════
    #  Balance Operations
    # ══════════════════════════════════════════════════════════

    async def credit(
        self,
        user_id: int,
        amount: int,
        category: str,
        description: str | None = None,
        unit: str = "currency",
        now: datetime | None = None,
    ) -> int | None:
        """Atomically credit a balance and log the transaction.
        Returns new balance, or None if the user does not exist."""
        ts = to_db_timestamp(now)

        def _sync() -> int | None:
            conn = self._get_connection()
            try:
                balance = self._credit_in_tx(conn, user_id, amount, category, description, unit, ts)
                if balance is None:
                    conn.rollback()
                    return None
                conn.commit()
                return balance
            finally:
                conn.close()

        return await self._run(_sync)

    async def debit(
        self,
        user_id: int,
        amount: int,
        category: str,
        description: str | None = None,
        unit: str = "currency",
        now: datetime | None = None,
    ) -> int | None:
        """Atomically debit a balance and log the transaction.
        Returns new balance on success, None on insufficient funds."""
        ts = to_db_timestamp(now)

        def _sync() -> int | None:
            conn = self._get_connection()
            try:
                balance = self._debit_in_tx(conn, user_id, amount, category, description, unit, ts)
                if balance is None:
                    conn.rollback()
                    return None
                conn.commit()
                return balance
            finally:
                conn.close()

        return await self._run(_sync)

    async def add_xp(
        self,
        user_id: int,
        amount: int,
        category: str,
        description: str | None = None,
        now: datetime | None = None,
    ) -> dict | None:
        """Add XP. Returns ``{"xp", "old_level", "new_level"}`` or None if no user."""
        ts = to_db_timestamp(now)

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                result = self._add_xp_in_tx(conn, user_id, amount, category, description, ts)
                if result is None:
                    conn.rollback()
                    return None
                conn.commit()
                return result
            finally:
                conn.close()

        return await self._run(_sync)

    async def remove_xp(
        self,
        user_id: int,
        amount: int,
        category: str,
        description: str | None = None,
        now: datetime | None = None,
    ) -> dict | None:
        """Admin XP removal (floored at 0). Level is recomputed and may drop."""
        ts = to_db_timestamp(now)

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute("SELECT xp, level FROM users WHERE id = ?", (user_id,)).fetchone()
                if row is None:
                    conn.rollback()
                    return None
                removed = min(amount, row["xp"])
                new_xp = row["xp"] - removed
                new_level = level_for_xp(new_xp)
                conn.execute(
                    "UPDATE users SET xp = ?, level = ?, updated_at = ? WHERE id = ?",
                    (new_xp, new_level, ts, user_id),
                )
                self._log_tx(conn, user_id, "spend", category, "xp", removed, description, ts)
                conn.commit()
                return {"xp": new_xp, "old_level": row["level"], "new_level": new_level}
            finally:
                conn.close()

        return await self._run(_sync)

    # ══════════════════════════════════════════════════════════
    #  Daily Bonus
    # ══════════════════════════════════════════════════════════

    async def claim_daily(
        self,
        user_id: int,
        currency: int,
        xp: int,
        cooldown_hours: int,
        streak_grace_hours: int,
        now: datetime | None = None,
    ) -> dict | None:
        """Atomically check the daily window and grant the bonus.

        The window is keyed off the most recent ``daily`` currency transaction.
        Returns None for an unknown user, else a dict with ``granted`` and
        either ``hours_remaining`` or the grant details.
        """
        now = now or now_utc()
        ts = to_db_timestamp(now)

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                user = conn.execute("SELECT id FROM users WHERE id = ?", (user_id,)).fetchone()
                if user is None:
                    conn.rollback()
                    return None

                last = conn.execute(
                    "SELECT created_at FROM transactions "
                    "WHERE user_id = ? AND category = 'daily' AND unit = 'currency' "
                    "ORDER BY created_at DESC, id DESC LIMIT 1",
                    (user_id,),
                ).fetchone()
                last_claim = parse_timestamp(last["created_at"]) if last else None
                if last_claim is not None:
                    hours_since = (now - last_claim).total_seconds() / 3600
                    if hours_since < cooldown_hours:
                        conn.rollback()
                        return {
                            "granted": False,
                            "hours_remaining": math.ceil(cooldown_hours - hours_since),
                        }

                self._credit_in_tx(conn, user_id, currency, "daily", "Daily bonus", "currency", ts)
                xp_result = {"xp": 0, "old_level": 1, "new_level": 1}
                if xp > 0:
                    xp_result = self._add_xp_in_tx(conn, user_id, xp, "daily", "Daily bonus", ts)
                else:
                    lvl = conn.execute("SELECT level FROM users WHERE id = ?", (user_id,)).fetchone()
                    xp_result["old_level"] = xp_result["new_level"] = lvl["level"]

                conn.execute("INSERT OR IGNORE INTO user_profiles (user_id) VALUES (?)", (user_id,))
                profile = conn.execute(
                    "SELECT streak_days, last_daily_at FROM user_profiles WHERE user_id = ?",
                    (user_id,),
                ).fetchone()
                prev = parse_timestamp(profile["last_daily_at"])
                if prev is not None and now - prev < timedelta(hours=streak_grace_hours):
                    streak = (profile["streak_days"] or 0) + 1
                else:
                    streak = 1
                conn.execute(
                    "UPDATE user_profiles SET streak_days = ?, last_daily_at = ? WHERE user_id = ?",
                    (streak, ts, user_id),
                )
                conn.commit()
                return {
                    "granted": True,
                    "currency": currency,
                    "xp": xp,
                    "streak_days": streak,
                    "old_level": xp_result["old_level"],
                    "new_level": xp_result["new_level"],
                }
            finally:
                conn.close()

        return await self._run(_sync)

    # ══════════════════════════════════════════════════════════
    #  Transaction History & Leaderboards
    # ══════════════════════════════════════════════════════════

    async def get_recent_transactions(self, user_id: int, limit: int = 20) -> list[dict]:

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT * FROM transactions WHERE user_id = ? "
                    "ORDER BY created_at DESC, id DESC LIMIT ?",
                    (user_id, limit),
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await self._run(_sync)

    async def get_leaderboard(self, order_by: str = "xp", limit: int = 10) -> list[dict]:
        """Top users by ``xp`` or ``currency``."""
        if order_by not in ("xp", "currency"):
            raise ValueError(f"Unsupported leaderboard order: {order_by}")

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    f"SELECT id, username, currency, premium_currency, xp, level FROM users "
                    f"ORDER BY {order_by} DESC, id ASC LIMIT ?",
                    (limit,),
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await self._run(_sync)

    async def get_rank_position(self, user_id: int, order_by: str = "xp") -> int | None:
        """1-based leaderboard position, ties share a position."""
        if order_by not in ("xp", "currency"):
            raise ValueError(f"Unsupported leaderboard order: {order_by}")

        def _sync() -> int | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    f"SELECT {order_by} AS score FROM users WHERE id = ?", (user_id,),
                ).fetchone()
                if row is None:
                    return None
                ahead = conn.execute(
                    f"SELECT COUNT(*) AS n FROM users WHERE {order_by} > ?", (row["score"],),
                ).fetchone()
                return ahead["n"] + 1
            finally:
                conn.close()

        return await self._run(_sync)

    async def get_user_count(self) -> int:

        def _sync() -> int:
            conn = self._get_connection()
            try:
                return conn.execute("SELECT COUNT(*) AS n FROM users").fetchone()["n"]
            finally:
                conn.close()

        return await self._run(_sync)

    async def get_total_circulation(self) -> dict[str, int]:
        """Sum of regular and premium balances across all users."""

        def _sync() -> dict[str, int]:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT COALESCE(SUM(currency), 0) AS currency, "
                    "COALESCE(SUM(premium_currency), 0) AS premium FROM users"
                ).fetchone()
                return {"currency": row["currency"], "premium": row["premium"]}
            finally:
                conn.close()

        return await self._run(_sync)

    # ══════════════════════════════════════════════════════════
    #  Admin Reset
    # ══════════════════════════════════════════════════════════

    async def reset_all(self, unlink_secondary: bool = False, delete_users: bool = False) -> None:
        """Bulk admin reset. The only path that clears completed achievements."""

        def _sync() -> None:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                conn.execute("DELETE FROM pending_achievement_notifications")
                conn.execute("DELETE FROM user_achievements")
                conn.execute("DELETE FROM transactions")
                if delete_users:
                    conn.execute("DELETE FROM user_item_cooldowns")
                    conn.execute("DELETE FROM redemptions")
                    conn.execute("DELETE FROM user_profiles")
                    conn.execute("DELETE FROM users")
                else:
                    unlink = ", twitch_id = NULL, twitch_username = NULL" if unlink_secondary else ""
                    conn.execute(
                        "UPDATE users SET currency = 0, premium_currency = 0, xp = 0, level = 1" + unlink
                    )
                    conn.execute("UPDATE user_profiles SET streak_days = 0, last_daily_at = NULL")
                conn.commit()
            finally:
                conn.close()

        await self._run(_sync)
        self._logger.warning(
            "Admin reset executed (unlink_secondary=%s, delete_users=%s)",
            unlink_secondary, delete_users,
        )

    # ══════════════════════════════════════════════════════════
    #  Achievements
    # ══════════════════════════════════════════════════════════

    async def upsert_achievement(
        self,
        name: str,
        description: str,
        category: str,
        rarity: str,
        reward_currency: int,
        reward_premium_currency: int,
        reward_xp: int,
        condition: dict,
    ) -> int:
        """Insert or refresh an achievement definition. Returns its id."""
        condition_json = json.dumps(condition, sort_keys=True)

        def _sync() -> int:
            conn = self._get_connection()
            try:
                conn.execute(
                    "INSERT INTO achievements (name, description, category, rarity, reward_currency, "
                    "reward_premium_currency, reward_xp, condition) VALUES (?, ?, ?, ?, ?, ?, ?, ?) "
                    "ON CONFLICT(name) DO UPDATE SET description = excluded.description, "
                    "category = excluded.category, rarity = excluded.rarity, "
                    "reward_currency = excluded.reward_currency, "
                    "reward_premium_currency = excluded.reward_premium_currency, "
                    "reward_xp = excluded.reward_xp, condition = excluded.condition",
                    (name, description, category, rarity, reward_currency,
                     reward_premium_currency, reward_xp, condition_json),
                )
                conn.commit()
                row = conn.execute("SELECT id FROM achievements WHERE name = ?", (name,)).fetchone()
                return row["id"]
            finally:
                conn.close()

        return await self._run(_sync)

    async def get_achievements(self) -> list[dict]:
        """All achievement definitions ordered by category then name."""

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT * FROM achievements ORDER BY category, name"
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await self._run(_sync)

    async def get_user_stats(self, user_id: int, message_categories: list[str]) -> dict | None:
        """Raw statistics backing the achievement snapshot."""

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                base = conn.execute(
                    "SELECT u.level, u.currency, u.xp, "
                    "u.twitch_id IS NOT NULL AS has_linked_secondary_account, "
                    "COALESCE(p.streak_days, 0) AS daily_streak "
                    "FROM users u LEFT JOIN user_profiles p ON p.user_id = u.id "
                    "WHERE u.id = ?",
                    (user_id,),
                ).fetchone()
                if base is None:
                    return None
                stats = dict(base)

                placeholders = ",".join("?" for _ in message_categories) or "''"
                stats["message_count"] = conn.execute(
                    "SELECT COUNT(*) AS n FROM transactions "
                    "WHERE user_id = ? AND type = 'earn' AND unit = 'currency' "
                    f"AND category IN ({placeholders})",
                    (user_id, *message_categories),
                ).fetchone()["n"]
                stats["total_spent"] = conn.execute(
                    "SELECT COALESCE(SUM(amount), 0) AS n FROM transactions "
                    "WHERE user_id = ? AND type = 'spend' AND unit = 'currency' "
                    "AND category != 'admin_take'",
                    (user_id,),
                ).fetchone()["n"]
                stats["gifts_sent"] = conn.execute(
                    "SELECT COUNT(*) AS n FROM transactions "
                    "WHERE user_id = ? AND type = 'spend' AND category = 'gift'",
                    (user_id,),
                ).fetchone()["n"]
                items = conn.execute(
                    "SELECT COUNT(DISTINCT shop_item_id) AS unique_items, COUNT(*) AS total_items "
                    "FROM redemptions WHERE user_id = ? AND status != 'refunded'",
                    (user_id,),
                ).fetchone()
                stats["unique_items"] = items["unique_items"]
                stats["total_items"] = items["total_items"]
                stats["has_linked_secondary_account"] = bool(stats["has_linked_secondary_account"])
                return stats
            finally:
                conn.close()

        return await self._run(_sync)

    async def get_completed_achievement_ids(self, user_id: int) -> set[int]:

        def _sync() -> set[int]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT achievement_id FROM user_achievements "
                    "WHERE user_id = ? AND completed_at IS NOT NULL",
                    (user_id,),
                ).fetchall()
                return {r["achievement_id"] for r in rows}
            finally:
                conn.close()

        return await self._run(_sync)

    async def grant_achievement(
        self,
        user_id: int,
        achievement_id: int,
        required: int,
        defer_notification: bool = False,
        now: datetime | None = None,
    ) -> dict | None:
        """Disburse rewards and mark an achievement completed in one transaction.

        Returns None if the user already holds it (or it does not exist).
        With ``defer_notification`` a pending notification is written in the
        same transaction.
        """
        ts = to_db_timestamp(now)

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                held = conn.execute(
                    "SELECT completed_at FROM user_achievements WHERE user_id = ? AND achievement_id = ?",
                    (user_id, achievement_id),
                ).fetchone()
                if held is not None and held["completed_at"] is not None:
                    conn.rollback()
                    return None
                ach = conn.execute(
                    "SELECT * FROM achievements WHERE id = ?", (achievement_id,),
                ).fetchone()
                user = conn.execute("SELECT level FROM users WHERE id = ?", (user_id,)).fetchone()
                if ach is None or user is None:
                    conn.rollback()
                    return None

                reason = f"Achievement: {ach['name']}"
                if ach["reward_currency"] > 0:
                    self._credit_in_tx(conn, user_id, ach["reward_currency"], "achievement", reason, "currency", ts)
                if ach["reward_premium_currency"] > 0:
                    self._credit_in_tx(
                        conn, user_id, ach["reward_premium_currency"], "achievement", reason, "premium", ts,
                    )
                levels = {"old_level": user["level"], "new_level": user["level"]}
                if ach["reward_xp"] > 0:
                    xp_result = self._add_xp_in_tx(conn, user_id, ach["reward_xp"], "achievement", reason, ts)
                    levels = {"old_level": xp_result["old_level"], "new_level": xp_result["new_level"]}

                conn.execute(
                    "INSERT INTO user_achievements (user_id, achievement_id, progress, required, completed_at) "
                    "VALUES (?, ?, ?, ?, ?) "
                    "ON CONFLICT(user_id, achievement_id) DO UPDATE SET "
                    "progress = excluded.progress, required = excluded.required, "
                    "completed_at = excluded.completed_at",
                    (user_id, achievement_id, required, required, ts),
                )
                if defer_notification:
                    conn.execute(
                        "INSERT INTO pending_achievement_notifications (user_id, achievement_id, created_at) "
                        "VALUES (?, ?, ?)",
                        (user_id, achievement_id, ts),
                    )
                conn.commit()
                return {"achievement": dict(ach), **levels}
            finally:
                conn.close()

        return await self._run(_sync)

    async def add_pending_notification(
        self, user_id: int, achievement_id: int, now: datetime | None = None,
    ) -> None:
        ts = to_db_timestamp(now)

        def _sync() -> None:
            conn = self._get_connection()
            try:
                conn.execute(
                    "INSERT INTO pending_achievement_notifications (user_id, achievement_id, created_at) "
                    "VALUES (?, ?, ?)",
                    (user_id, achievement_id, ts),
                )
                conn.commit()
            finally:
                conn.close()

        await self._run(_sync)

    async def pop_pending_notifications(self, user_id: int) -> list[dict]:
        """Read and delete all pending notifications for a user as one batch."""

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                rows = conn.execute(
                    "SELECT a.* FROM pending_achievement_notifications pan "
                    "JOIN achievements a ON pan.achievement_id = a.id "
                    "WHERE pan.user_id = ? ORDER BY pan.created_at ASC, pan.id ASC",
                    (user_id,),
                ).fetchall()
                if rows:
                    conn.execute(
                        "DELETE FROM pending_achievement_notifications WHERE user_id = ?",
                        (user_id,),
                    )
                conn.commit()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await self._run(_sync)

    async def get_user_achievements(self, user_id: int) -> list[dict]:
        """Every definition joined with the user's progress (completed first)."""

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT a.*, ua.progress, ua.required, ua.completed_at "
                    "FROM achievements a "
                    "LEFT JOIN user_achievements ua ON a.id = ua.achievement_id AND ua.user_id = ? "
                    "ORDER BY ua.completed_at IS NULL, ua.completed_at DESC, a.category, a.name",
                    (user_id,),
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await self._run(_sync)

    # ══════════════════════════════════════════════════════════
    #  Shop Catalog
    # ══════════════════════════════════════════════════════════

    async def upsert_shop_item(self, item: dict) -> int:
        """Insert a catalog item or refresh its settings. Stock is only set on insert."""
        columns = (
            "name", "description", "cost", "currency_type", "category", "stock", "enabled",
            "cooldown_minutes", "global_cooldown_minutes", "requires_input", "input_prompt",
            "auto_fulfill",
        )
        values = tuple(item.get(c) for c in columns)
        updates = ", ".join(f"{c} = excluded.{c}" for c in columns if c not in ("name", "stock"))

        def _sync() -> int:
            conn = self._get_connection()
            try:
                conn.execute(
                    f"INSERT INTO shop_items ({', '.join(columns)}) "
                    f"VALUES ({', '.join('?' for _ in columns)}) "
                    f"ON CONFLICT(name) DO UPDATE SET {updates}",
                    values,
                )
                conn.commit()
                row = conn.execute("SELECT id FROM shop_items WHERE name = ?", (item["name"],)).fetchone()
                return row["id"]
            finally:
                conn.close()

        return await self._run(_sync)

    async def get_shop_items(self, category: str | None = None) -> list[dict]:
        """Enabled items, optionally filtered by category."""

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                if category:
                    rows = conn.execute(
                        "SELECT * FROM shop_items WHERE enabled = 1 AND category = ? "
                        "ORDER BY category, cost ASC",
                        (category,),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        "SELECT * FROM shop_items WHERE enabled = 1 ORDER BY category, cost ASC"
                    ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await self._run(_sync)

    async def get_shop_item(self, item_id: int) -> dict | None:

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute("SELECT * FROM shop_items WHERE id = ?", (item_id,)).fetchone()
                return dict(row) if row else None
            finally:
                conn.close()

        return await self._run(_sync)

    @staticmethod
    def _load_redeem_context(conn: sqlite3.Connection, user_id: int, item_id: int) -> dict:
        """Everything a redemption check needs, read on one connection."""
        item = conn.execute("SELECT * FROM shop_items WHERE id = ?", (item_id,)).fetchone()
        user = conn.execute(
            "SELECT id, currency, premium_currency FROM users WHERE id = ?", (user_id,),
        ).fetchone()
        user_cd = conn.execute(
            "SELECT can_redeem_at FROM user_item_cooldowns WHERE user_id = ? AND shop_item_id = ?",
            (user_id, item_id),
        ).fetchone()
        global_cd = conn.execute(
            "SELECT can_redeem_at FROM global_item_cooldowns WHERE shop_item_id = ?", (item_id,),
        ).fetchone()
        return {
            "item": dict(item) if item else None,
            "user": dict(user) if user else None,
            "user_cooldown_until": parse_timestamp(user_cd["can_redeem_at"]) if user_cd else None,
            "global_cooldown_until": parse_timestamp(global_cd["can_redeem_at"]) if global_cd else None,
        }

    async def get_redeem_context(self, user_id: int, item_id: int) -> dict:

        def _sync() -> dict:
            conn = self._get_connection()
            try:
                return self._load_redeem_context(conn, user_id, item_id)
            finally:
                conn.close()

        return await self._run(_sync)

    # ══════════════════════════════════════════════════════════
    #  Redemptions
    # ══════════════════════════════════════════════════════════

    async def redeem_item(
        self,
        user_id: int,
        item_id: int,
        user_input: str | None,
        check: Callable[[dict, datetime], Any],
        now: datetime | None = None,
    ) -> dict:
        """Validate-debit-reserve-record as one transaction.

        ``check`` is the same predicate used for pre-flight; it runs here under
        the write lock. Returns ``{"check": <check result>}`` when it denies,
        else adds ``redemption_id`` and ``status``.
        """
        now = now or now_utc()
        ts = to_db_timestamp(now)

        def _sync() -> dict:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                ctx = self._load_redeem_context(conn, user_id, item_id)
                verdict = check(ctx, now)
                if not verdict.allowed:
                    conn.rollback()
                    return {"check": verdict}

                item = ctx["item"]
                unit = "premium" if item["currency_type"] == "premium" else "currency"
                balance = self._debit_in_tx(
                    conn, user_id, item["cost"], "shop", f"Redeemed: {item['name']}", unit, ts,
                )
                if balance is None:
                    conn.rollback()
                    return {"check": verdict, "failed": "insufficient_funds"}

                if item["stock"] != -1:
                    cursor = conn.execute(
                        "UPDATE shop_items SET stock = stock - 1 WHERE id = ? AND stock > 0",
                        (item_id,),
                    )
                    if cursor.rowcount == 0:
                        conn.rollback()
                        return {"check": verdict, "failed": "out_of_stock"}

                status = "fulfilled" if item["auto_fulfill"] else "pending"
                cursor = conn.execute(
                    "INSERT INTO redemptions (user_id, shop_item_id, cost, currency_type, status, "
                    "user_input, created_at, fulfilled_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (user_id, item_id, item["cost"], item["currency_type"], status, user_input, ts,
                     ts if status == "fulfilled" else None),
                )
                redemption_id = cursor.lastrowid

                if item["cooldown_minutes"] > 0:
                    until = to_db_timestamp(now + timedelta(minutes=item["cooldown_minutes"]))
                    conn.execute(
                        "INSERT INTO user_item_cooldowns (user_id, shop_item_id, can_redeem_at) "
                        "VALUES (?, ?, ?) ON CONFLICT(user_id, shop_item_id) "
                        "DO UPDATE SET can_redeem_at = excluded.can_redeem_at",
                        (user_id, item_id, until),
                    )
                if item["global_cooldown_minutes"] > 0:
                    until = to_db_timestamp(now + timedelta(minutes=item["global_cooldown_minutes"]))
                    conn.execute(
                        "INSERT INTO global_item_cooldowns (shop_item_id, can_redeem_at) "
                        "VALUES (?, ?) ON CONFLICT(shop_item_id) "
                        "DO UPDATE SET can_redeem_at = excluded.can_redeem_at",
                        (item_id, until),
                    )

                conn.commit()
                return {
                    "check": verdict,
                    "redemption_id": redemption_id,
                    "status": status,
                    "balance": balance,
                }
            finally:
                conn.close()

        return await self._run(_sync)

    async def get_redemption(self, redemption_id: int) -> dict | None:

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM redemptions WHERE id = ?", (redemption_id,),
                ).fetchone()
                return dict(row) if row else None
            finally:
                conn.close()

        return await self._run(_sync)

    async def fulfill_redemption(
        self, redemption_id: int, admin_id: str, notes: str | None = None,
        now: datetime | None = None,
    ) -> tuple[str, dict | None]:
        """pending → fulfilled. Returns ``(status, row)`` with status
        ``ok`` | ``not_found`` | ``invalid_state``."""
        ts = to_db_timestamp(now)

        def _sync() -> tuple[str, dict | None]:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    "SELECT * FROM redemptions WHERE id = ?", (redemption_id,),
                ).fetchone()
                if row is None:
                    conn.rollback()
                    return "not_found", None
                if row["status"] != "pending":
                    conn.rollback()
                    return "invalid_state", dict(row)
                conn.execute(
                    "UPDATE redemptions SET status = 'fulfilled', fulfilled_by = ?, "
                    "fulfilled_at = ?, notes = ? WHERE id = ?",
                    (admin_id, ts, notes, redemption_id),
                )
                conn.commit()
                updated = conn.execute(
                    "SELECT * FROM redemptions WHERE id = ?", (redemption_id,),
                ).fetchone()
                return "ok", dict(updated)
            finally:
                conn.close()

        return await self._run(_sync)

    async def refund_redemption(
        self,
        redemption_id: int,
        admin_id: str,
        reason: str | None = None,
        allow_fulfilled: bool = True,
        now: datetime | None = None,
    ) -> tuple[str, dict | None]:
        """Move a redemption to refunded, credit the cost back and restore
        finite stock. Returns ``(status, row)`` like ``fulfill_redemption``."""
        ts = to_db_timestamp(now)
        refundable = ("pending", "fulfilled") if allow_fulfilled else ("pending",)

        def _sync() -> tuple[str, dict | None]:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    "SELECT * FROM redemptions WHERE id = ?", (redemption_id,),
                ).fetchone()
                if row is None:
                    conn.rollback()
                    return "not_found", None
                if row["refunded"] or row["status"] not in refundable:
                    conn.rollback()
                    return "invalid_state", dict(row)

                placeholders = ",".join("?" for _ in refundable)
                cursor = conn.execute(
                    "UPDATE redemptions SET status = 'refunded', refunded = 1, refunded_by = ?, "
                    f"refunded_at = ?, refund_reason = ? WHERE id = ? AND status IN ({placeholders})",
                    (admin_id, ts, reason, redemption_id, *refundable),
                )
                if cursor.rowcount == 0:
                    conn.rollback()
                    return "invalid_state", dict(row)

                unit = "premium" if row["currency_type"] == "premium" else "currency"
                self._credit_in_tx(
                    conn, row["user_id"], row["cost"], "refund",
                    f"Refund: {reason or 'Redemption cancelled'}", unit, ts,
                )
                if row["shop_item_id"] is not None:
                    conn.execute(
                        "UPDATE shop_items SET stock = stock + 1 WHERE id = ? AND stock != -1",
                        (row["shop_item_id"],),
                    )
                conn.commit()
                updated = conn.execute(
                    "SELECT * FROM redemptions WHERE id = ?", (redemption_id,),
                ).fetchone()
                return "ok", dict(updated)
            finally:
                conn.close()

        return await self._run(_sync)

    async def get_user_redemptions(self, user_id: int, limit: int = 50) -> list[dict]:

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT r.id, r.cost, r.currency_type, r.status, r.user_input, r.created_at, "
                    "r.fulfilled_at, r.notes, r.refunded_at, r.refund_reason, "
                    "si.name AS item_name, si.description AS item_description "
                    "FROM redemptions r LEFT JOIN shop_items si ON r.shop_item_id = si.id "
                    "WHERE r.user_id = ? ORDER BY r.created_at DESC, r.id DESC LIMIT ?",
                    (user_id, limit),
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await self._run(_sync)

    async def get_pending_redemptions(self) -> list[dict]:
        """Pending redemptions, oldest first, for the admin queue."""

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT r.id, r.user_id, r.cost, r.currency_type, r.user_input, r.created_at, "
                    "u.discord_id, u.twitch_id, u.username, si.name AS item_name, "
                    "si.description AS item_description, si.requires_input "
                    "FROM redemptions r JOIN users u ON r.user_id = u.id "
                    "LEFT JOIN shop_items si ON r.shop_item_id = si.id "
                    "WHERE r.status = 'pending' ORDER BY r.created_at ASC, r.id ASC"
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await self._run(_sync)

    async def count_pending_redemptions(self) -> int:

        def _sync() -> int:
            conn = self._get_connection()
            try:
                return conn.execute(
                    "SELECT COUNT(*) AS n FROM redemptions WHERE status = 'pending'"
                ).fetchone()["n"]
            finally:
                conn.close()

        return await self._run(_sync)

    # ══════════════════════════════════════════════════════════
    #  Account Linking / Merge
    # ══════════════════════════════════════════════════════════

    async def link_secondary(
        self,
        primary_id: int,
        twitch_id: str,
        twitch_username: str,
        now: datetime | None = None,
    ) -> dict:
        """Attach a Twitch id to a primary user, merging an existing
        Twitch-only user into it. All-or-nothing.

        Returns a dict whose ``status`` is one of ``attached``, ``merged``,
        ``not_found``, ``already_linked``, ``linked_other``, ``conflict``.
        """
        ts = to_db_timestamp(now)

        def _sync() -> dict:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                primary = conn.execute("SELECT * FROM users WHERE id = ?", (primary_id,)).fetchone()
                if primary is None:
                    conn.rollback()
                    return {"status": "not_found"}
                if primary["twitch_id"] is not None:
                    conn.rollback()
                    same = primary["twitch_id"] == twitch_id
                    return {"status": "already_linked" if same else "linked_other"}

                secondary = conn.execute(
                    "SELECT * FROM users WHERE twitch_id = ?", (twitch_id,),
                ).fetchone()

                if secondary is None:
                    conn.execute(
                        "UPDATE users SET twitch_id = ?, twitch_username = ?, updated_at = ? WHERE id = ?",
                        (twitch_id, twitch_username, ts, primary_id),
                    )
                    conn.commit()
                    return {"status": "attached", "level": primary["level"]}

                if secondary["discord_id"] is not None:
                    conn.rollback()
                    return {"status": "conflict"}

                s_id = secondary["id"]
                params = {"p": primary_id, "s": s_id}

                conn.execute("UPDATE transactions SET user_id = :p WHERE user_id = :s", params)

                # Primary's completed row wins; otherwise the secondary's row moves over
                conn.execute(
                    "DELETE FROM user_achievements WHERE user_id = :s AND achievement_id IN "
                    "(SELECT achievement_id FROM user_achievements "
                    "WHERE user_id = :p AND completed_at IS NOT NULL)",
                    params,
                )
                conn.execute(
                    "DELETE FROM user_achievements WHERE user_id = :p AND completed_at IS NULL "
                    "AND achievement_id IN (SELECT achievement_id FROM user_achievements WHERE user_id = :s)",
                    params,
                )
                conn.execute("UPDATE user_achievements SET user_id = :p WHERE user_id = :s", params)
                conn.execute(
                    "UPDATE pending_achievement_notifications SET user_id = :p WHERE user_id = :s", params,
                )
                conn.execute("UPDATE redemptions SET user_id = :p WHERE user_id = :s", params)

                # Later cooldown wins
                conn.execute(
                    "UPDATE user_item_cooldowns SET can_redeem_at = MAX(can_redeem_at, "
                    "(SELECT s.can_redeem_at FROM user_item_cooldowns s WHERE s.user_id = :s "
                    "AND s.shop_item_id = user_item_cooldowns.shop_item_id)) "
                    "WHERE user_id = :p AND shop_item_id IN "
                    "(SELECT shop_item_id FROM user_item_cooldowns WHERE user_id = :s)",
                    params,
                )
                conn.execute(
                    "DELETE FROM user_item_cooldowns WHERE user_id = :s AND shop_item_id IN "
                    "(SELECT shop_item_id FROM user_item_cooldowns WHERE user_id = :p)",
                    params,
                )
                conn.execute("UPDATE user_item_cooldowns SET user_id = :p WHERE user_id = :s", params)

                conn.execute("DELETE FROM user_profiles WHERE user_id = :s", params)
                conn.execute("DELETE FROM users WHERE id = :s", params)

                new_xp = primary["xp"] + secondary["xp"]
                new_level = level_for_xp(new_xp)
                conn.execute(
                    "UPDATE users SET currency = currency + ?, premium_currency = premium_currency + ?, "
                    "xp = ?, level = ?, twitch_id = ?, twitch_username = ?, updated_at = ? WHERE id = ?",
                    (secondary["currency"], secondary["premium_currency"], new_xp, new_level,
                     twitch_id, twitch_username, ts, primary_id),
                )
                conn.commit()
                return {
                    "status": "merged",
                    "secondary_user_id": s_id,
                    "currency_added": secondary["currency"],
                    "premium_added": secondary["premium_currency"],
                    "xp_added": secondary["xp"],
                    "old_level": primary["level"],
                    "level": new_level,
                }
            finally:
                conn.close()

        return await self._run(_sync)
