"""
Database helper module for the English learning bot.

This module encapsulates all interactions with the underlying SQLite
database. It defines the schema for users, their subscriptions, the
generated sentences and a small key/value table for bot state, and
provides the high-level operations used by the handlers, the payment
reconciler and the daily scheduler.

All methods are synchronous because SQLite is local and fast. Any
``sqlite3.Error`` raised here is propagated to the caller unchanged.
"""

from __future__ import annotations

import json
import os
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from config import DATABASE_PATH, DEFAULT_DIFFICULTY_LEVEL


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Database:
    """Wrapper around a SQLite database used by the bot."""

    def __init__(
        self,
        db_path: str = DATABASE_PATH,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.db_path = db_path
        self.clock = clock
        # Ensure parent directory exists
        directory = os.path.dirname(db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._create_tables()

    def _now(self) -> str:
        return self.clock().isoformat(timespec="seconds")

    def _create_tables(self) -> None:
        """Create the required tables if they do not already exist."""
        cur = self.conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
                telegram_user_id TEXT PRIMARY KEY,
                display_name TEXT,
                difficulty_level INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL
            )
            """
        )
        # One row per confirmed payment; the reference makes activation idempotent
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS subscriptions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                telegram_user_id TEXT NOT NULL,
                payment_reference TEXT NOT NULL UNIQUE,
                status TEXT NOT NULL DEFAULT 'active',
                expires_at TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS sentences (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                english_text TEXT NOT NULL,
                japanese_translation TEXT NOT NULL,
                difficulty_level INTEGER NOT NULL,
                word_breakdown TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS bot_state (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
            """
        )
        self.conn.commit()

    def close(self) -> None:
        self.conn.close()

    # ------------------------------------------------------------------
    # User management
    # ------------------------------------------------------------------
    def create_user(self, user_id: int | str, display_name: str) -> None:
        """Insert a new user with the default difficulty level.

        If the user already exists, this call has no effect.
        """
        self.conn.execute(
            """
            INSERT OR IGNORE INTO users (telegram_user_id, display_name, difficulty_level, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (str(user_id), display_name, DEFAULT_DIFFICULTY_LEVEL, self._now()),
        )
        self.conn.commit()

    def get_user(self, user_id: int | str) -> Optional[sqlite3.Row]:
        """Retrieve a user's record by their Telegram user ID."""
        cur = self.conn.execute(
            "SELECT * FROM users WHERE telegram_user_id = ?", (str(user_id),)
        )
        return cur.fetchone()

    def update_user_level(self, user_id: int | str, level: int) -> int:
        """Set the user's difficulty level and return the number of rows changed."""
        cur = self.conn.execute(
            "UPDATE users SET difficulty_level = ? WHERE telegram_user_id = ?",
            (level, str(user_id)),
        )
        self.conn.commit()
        return cur.rowcount

    # ------------------------------------------------------------------
    # Subscription management
    # ------------------------------------------------------------------
    def create_subscription(self, user_id: int | str, reference: str, days: int) -> sqlite3.Row:
        """Activate a subscription paid with ``reference`` for ``days`` days.

        Activation is keyed on the payment reference: confirming the same
        reference again returns the existing row instead of inserting a
        second subscription.
        """
        now = self.clock()
        expires_at = now + timedelta(days=days)
        with self.conn:
            self.conn.execute(
                """
                INSERT OR IGNORE INTO subscriptions
                    (telegram_user_id, payment_reference, status, expires_at, created_at)
                VALUES (?, ?, 'active', ?, ?)
                """,
                (
                    str(user_id),
                    reference,
                    expires_at.isoformat(timespec="seconds"),
                    now.isoformat(timespec="seconds"),
                ),
            )
        cur = self.conn.execute(
            "SELECT * FROM subscriptions WHERE payment_reference = ?", (reference,)
        )
        return cur.fetchone()

    def get_active_subscription(self, user_id: int | str) -> Optional[sqlite3.Row]:
        """Return the latest active, unexpired subscription of a user, if any."""
        cur = self.conn.execute(
            """
            SELECT * FROM subscriptions
            WHERE telegram_user_id = ? AND status = 'active' AND expires_at > ?
            ORDER BY expires_at DESC
            LIMIT 1
            """,
            (str(user_id), self._now()),
        )
        return cur.fetchone()

    def cancel_subscription(self, user_id: int | str) -> int:
        """Cancel every active subscription of a user."""
        cur = self.conn.execute(
            "UPDATE subscriptions SET status = 'cancelled' WHERE telegram_user_id = ? AND status = 'active'",
            (str(user_id),),
        )
        self.conn.commit()
        return cur.rowcount

    def get_eligible_users(self) -> List[sqlite3.Row]:
        """Return every user with an active, unexpired subscription.

        Each row carries ``telegram_user_id`` and ``difficulty_level``. A
        user holding several active subscriptions is returned once.
        """
        cur = self.conn.execute(
            """
            SELECT DISTINCT u.telegram_user_id, u.display_name, u.difficulty_level
            FROM users u
            JOIN subscriptions s ON u.telegram_user_id = s.telegram_user_id
            WHERE s.status = 'active' AND s.expires_at > ?
            ORDER BY u.telegram_user_id
            """,
            (self._now(),),
        )
        return cur.fetchall()

    # ------------------------------------------------------------------
    # Sentences
    # ------------------------------------------------------------------
    def save_sentence(self, lesson: Any, difficulty_level: int) -> int:
        """Store a generated sentence and return its row id."""
        cur = self.conn.execute(
            """
            INSERT INTO sentences (english_text, japanese_translation, difficulty_level, word_breakdown, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                lesson.english_text,
                lesson.japanese_translation,
                difficulty_level,
                json.dumps(lesson.word_breakdown or [], ensure_ascii=False),
                self._now(),
            ),
        )
        self.conn.commit()
        return cur.lastrowid

    def get_sentences(self, difficulty_level: int) -> List[Dict[str, Any]]:
        """Return stored sentences for a level, oldest first."""
        cur = self.conn.execute(
            "SELECT * FROM sentences WHERE difficulty_level = ? ORDER BY id",
            (difficulty_level,),
        )
        rows = []
        for row in cur.fetchall():
            record = dict(row)
            record["word_breakdown"] = json.loads(record["word_breakdown"])
            rows.append(record)
        return rows

    # ------------------------------------------------------------------
    # Bot state
    # ------------------------------------------------------------------
    def get_state(self, key: str) -> Optional[str]:
        cur = self.conn.execute("SELECT value FROM bot_state WHERE key = ?", (key,))
        row = cur.fetchone()
        return row["value"] if row else None

    def set_state(self, key: str, value: str) -> None:
        self.conn.execute(
            "INSERT OR REPLACE INTO bot_state (key, value) VALUES (?, ?)",
            (key, value),
        )
        self.conn.commit()
