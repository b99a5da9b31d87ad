"""
Database module for persistent storage.
Uses SQLite for users, wallets, the transaction ledger, matchmaking, game
sessions and multiplayer rounds.

Every multi-step mutation runs inside ``Database.transaction()``, which opens
a ``BEGIN IMMEDIATE`` transaction: writers are serialized on the database
write lock, so conditional ``UPDATE ... WHERE status = ?`` statements are the
single arbiter of every race (queue claim, flip, round completion).
"""

import re
import secrets
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional

import bcrypt

from coinclash.config import settings
from coinclash.core.exceptions import ValidationError
from coinclash.core.logger import get_logger

logger = get_logger("database")

# Database path from config (resolved relative to project root)
DB_PATH = settings.paths.get_db_path()

RESERVED_USERNAMES = {
    "admin",
    "administrator",
    "system",
    "root",
    "moderator",
    "platform",
    settings.wallet.platform_username.lower(),
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT UNIQUE NOT NULL,
        password_hash TEXT,
        user_type TEXT NOT NULL DEFAULT 'user',
        referral_code TEXT UNIQUE,
        referred_by INTEGER,
        created_at TEXT NOT NULL,
        last_active TEXT,
        FOREIGN KEY (referred_by) REFERENCES users(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS wallets (
        user_id INTEGER PRIMARY KEY,
        balance REAL NOT NULL DEFAULT 0 CHECK (balance >= 0),
        locked_balance REAL NOT NULL DEFAULT 0 CHECK (locked_balance >= 0),
        bonus_balance REAL NOT NULL DEFAULT 0 CHECK (bonus_balance >= 0),
        total_deposits REAL NOT NULL DEFAULT 0,
        total_withdrawals REAL NOT NULL DEFAULT 0,
        currency TEXT NOT NULL DEFAULT 'INR',
        last_updated TEXT,
        FOREIGN KEY (user_id) REFERENCES users(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS transactions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL,
        type TEXT NOT NULL,
        amount REAL NOT NULL,
        status TEXT NOT NULL DEFAULT 'completed',
        balance_after REAL NOT NULL,
        payment_method TEXT,
        order_id TEXT,
        payment_id TEXT,
        payment_details TEXT,
        game_ref TEXT,
        game_details TEXT,
        created_at TEXT NOT NULL,
        processed_at TEXT,
        FOREIGN KEY (user_id) REFERENCES users(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_stats (
        user_id INTEGER PRIMARY KEY,
        total_games INTEGER NOT NULL DEFAULT 0,
        games_won INTEGER NOT NULL DEFAULT 0,
        games_lost INTEGER NOT NULL DEFAULT 0,
        total_wagered REAL NOT NULL DEFAULT 0,
        total_winnings REAL NOT NULL DEFAULT 0,
        net_profit REAL NOT NULL DEFAULT 0,
        win_rate REAL NOT NULL DEFAULT 0,
        updated_at TEXT,
        FOREIGN KEY (user_id) REFERENCES users(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS matchmaking_queue (
        id TEXT PRIMARY KEY,
        user_id INTEGER NOT NULL,
        username TEXT NOT NULL,
        choice TEXT NOT NULL,
        amount INTEGER NOT NULL,
        status TEXT NOT NULL DEFAULT 'waiting',
        matched_with INTEGER,
        game_session_id TEXT,
        created_at TEXT NOT NULL,
        matched_at TEXT,
        updated_at TEXT,
        FOREIGN KEY (user_id) REFERENCES users(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS game_sessions (
        id TEXT PRIMARY KEY,
        player1_id INTEGER NOT NULL,
        player1_username TEXT NOT NULL,
        player1_choice TEXT NOT NULL,
        player2_id INTEGER NOT NULL,
        player2_username TEXT NOT NULL,
        player2_choice TEXT NOT NULL,
        amount INTEGER NOT NULL,
        status TEXT NOT NULL DEFAULT 'waiting',
        flip_result TEXT,
        winner_id INTEGER,
        created_at TEXT NOT NULL,
        flipped_at TEXT,
        completed_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS multiplayer_rounds (
        id TEXT PRIMARY KEY,
        round_number INTEGER UNIQUE NOT NULL,
        status TEXT NOT NULL DEFAULT 'betting',
        king_total REAL NOT NULL DEFAULT 0,
        tail_total REAL NOT NULL DEFAULT 0,
        winner TEXT,
        platform_fee REAL NOT NULL DEFAULT 0,
        started_at TEXT NOT NULL,
        ends_at TEXT NOT NULL,
        flipped_at TEXT,
        completed_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS multiplayer_bets (
        id TEXT PRIMARY KEY,
        round_id TEXT NOT NULL,
        user_id INTEGER NOT NULL,
        username TEXT NOT NULL,
        side TEXT NOT NULL,
        amount REAL NOT NULL,
        payout REAL,
        status TEXT NOT NULL DEFAULT 'active',
        created_at TEXT NOT NULL,
        updated_at TEXT,
        UNIQUE (round_id, user_id),
        FOREIGN KEY (round_id) REFERENCES multiplayer_rounds(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS withdrawal_requests (
        id TEXT PRIMARY KEY,
        user_id INTEGER NOT NULL,
        amount REAL NOT NULL,
        method TEXT NOT NULL,
        payout_identifier TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        transaction_id INTEGER,
        failure_reason TEXT,
        payout_ref TEXT,
        created_at TEXT NOT NULL,
        processed_at TEXT,
        FOREIGN KEY (user_id) REFERENCES users(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS daily_bonuses (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL,
        bonus_amount REAL NOT NULL,
        streak_days INTEGER NOT NULL DEFAULT 1,
        claimed_at TEXT NOT NULL,
        FOREIGN KEY (user_id) REFERENCES users(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS idempotency_keys (
        user_id INTEGER NOT NULL,
        key TEXT NOT NULL,
        created_at TEXT NOT NULL,
        PRIMARY KEY (user_id, key)
    )
    """,
]

INDEXES = [
    # One waiting entry per user
    """CREATE UNIQUE INDEX IF NOT EXISTS idx_queue_one_waiting
       ON matchmaking_queue(user_id) WHERE status = 'waiting'""",
    """CREATE INDEX IF NOT EXISTS idx_queue_lookup
       ON matchmaking_queue(status, choice, amount, created_at)""",
    # Idempotency key for gateway payments
    """CREATE UNIQUE INDEX IF NOT EXISTS idx_tx_payment_id
       ON transactions(payment_id) WHERE type = 'deposit' AND status = 'completed'""",
    # One settlement per participant per game
    """CREATE UNIQUE INDEX IF NOT EXISTS idx_tx_game_settlement
       ON transactions(user_id, game_ref) WHERE type IN ('win', 'loss') AND game_ref IS NOT NULL""",
    """CREATE INDEX IF NOT EXISTS idx_tx_user ON transactions(user_id, created_at)""",
    """CREATE INDEX IF NOT EXISTS idx_tx_order ON transactions(order_id)""",
    """CREATE INDEX IF NOT EXISTS idx_sessions_status ON game_sessions(status)""",
    # Only one round accepts bets at a time
    """CREATE UNIQUE INDEX IF NOT EXISTS idx_rounds_one_betting
       ON multiplayer_rounds(status) WHERE status = 'betting'""",
    """CREATE INDEX IF NOT EXISTS idx_bets_round ON multiplayer_bets(round_id, side)""",
    """CREATE INDEX IF NOT EXISTS idx_bonus_user ON daily_bonuses(user_id, claimed_at)""",
]


class Database:
    """Thread-safe SQLite database wrapper."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else DB_PATH
        self._local = threading.local()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initializing database at {self.path}")
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        if getattr(self._local, "connection", None) is None:
            conn = sqlite3.connect(
                str(self.path), check_same_thread=False, timeout=30, isolation_level=None
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute("PRAGMA journal_mode = WAL")
            self._local.connection = conn
        return self._local.connection

    def close(self):
        conn = getattr(self._local, "connection", None)
        if conn is not None:
            conn.close()
            self._local.connection = None

    def _init_db(self):
        with self.transaction() as cursor:
            for statement in SCHEMA:
                cursor.execute(statement)
            for statement in INDEXES:
                cursor.execute(statement)
            self._ensure_platform_user(cursor)

    def _ensure_platform_user(self, cursor):
        """Ensure the platform account that collects pool fees exists."""
        username = settings.wallet.platform_username
        cursor.execute("SELECT id FROM users WHERE username = ?", (username,))
        if cursor.fetchone():
            return
        logger.info("Creating platform account")
        now = to_iso(utc_now())
        cursor.execute(
            "INSERT INTO users (username, user_type, created_at) VALUES (?, 'platform', ?)",
            (username, now),
        )
        self._create_wallet_rows(cursor, cursor.lastrowid, 0.0, now)

    @staticmethod
    def _create_wallet_rows(cursor, user_id: int, balance: float, now: str):
        cursor.execute(
            "INSERT INTO wallets (user_id, balance, last_updated) VALUES (?, ?, ?)",
            (user_id, balance, now),
        )
        cursor.execute(
            "INSERT INTO user_stats (user_id, updated_at) VALUES (?, ?)", (user_id, now)
        )

    # ==================== Transactions ====================

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        """
        Run a block atomically. Nested use joins the outer transaction.
        Any exception rolls back every statement issued inside the block.
        """
        conn = self._get_connection()
        if conn.in_transaction:
            yield conn.cursor()
            return

        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn.cursor()
        except BaseException:
            conn.rollback()
            raise
        else:
            conn.commit()

    def fetchone(self, sql: str, params: tuple = ()) -> Optional[Dict]:
        row = self._get_connection().execute(sql, params).fetchone()
        return dict(row) if row else None

    def fetchall(self, sql: str, params: tuple = ()) -> List[Dict]:
        return [dict(row) for row in self._get_connection().execute(sql, params).fetchall()]

    # ==================== Users ====================

    @staticmethod
    def _sanitize_username(username: str) -> str:
        """Sanitize username - alphanumeric and underscore only, 3-20 chars."""
        if not username:
            return ""
        username = username.strip()
        if not re.match(r"^[a-zA-Z0-9_]{3,20}$", username):
            return ""
        return username

    def create_user(
        self, username: str, password: str = None, referral_code: str = None
    ) -> Dict:
        """
        Create a user together with its wallet and stats rows.
        An optional referral code links the new user to its referrer.
        """
        clean = self._sanitize_username(username)
        if not clean:
            raise ValidationError("Username must be 3-20 letters, numbers or underscores")
        if clean.lower() in RESERVED_USERNAMES:
            raise ValidationError("That username is reserved")

        password_hash = None
        if password:
            password_hash = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode(
                "utf-8"
            )

        now = to_iso(utc_now())
        with self.transaction() as cursor:
            cursor.execute("SELECT id FROM users WHERE username = ?", (clean,))
            if cursor.fetchone():
                raise ValidationError("Username already taken")

            referred_by = None
            if referral_code:
                cursor.execute(
                    "SELECT id FROM users WHERE referral_code = ?", (referral_code.strip(),)
                )
                referrer = cursor.fetchone()
                if not referrer:
                    raise ValidationError("Unknown referral code")
                referred_by = referrer["id"]

            cursor.execute(
                """
                INSERT INTO users (username, password_hash, referral_code, referred_by, created_at, last_active)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (clean, password_hash, secrets.token_hex(4).upper(), referred_by, now, now),
            )
            user_id = cursor.lastrowid
            self._create_wallet_rows(cursor, user_id, settings.wallet.starting_balance, now)

        logger.info(f"Created new user: {clean}", extra={"user_id": user_id})
        return self.get_user_by_id(user_id)

    def login_user(self, username: str, password: str = None) -> Optional[Dict]:
        """Return the user when the credentials match, else None."""
        user = self.get_user_by_username(username)
        if not user or user["user_type"] != "user":
            return None

        if user.get("password_hash"):
            if not password:
                return None
            if not bcrypt.checkpw(password.encode("utf-8"), user["password_hash"].encode("utf-8")):
                return None

        with self.transaction() as cursor:
            cursor.execute(
                "UPDATE users SET last_active = ? WHERE id = ?", (to_iso(utc_now()), user["id"])
            )
        return user

    def get_user_by_id(self, user_id: int) -> Optional[Dict]:
        return self.fetchone("SELECT * FROM users WHERE id = ?", (user_id,))

    def get_user_by_username(self, username: str) -> Optional[Dict]:
        return self.fetchone("SELECT * FROM users WHERE username = ?", (username,))

    def get_platform_user(self) -> Dict:
        return self.fetchone(
            "SELECT * FROM users WHERE username = ?", (settings.wallet.platform_username,)
        )

    # ==================== Idempotency Keys ====================

    def mark_key_as_used(self, user_id: int, key: str) -> bool:
        """Record a client idempotency key. Returns False if it was already used."""
        with self.transaction() as cursor:
            cursor.execute(
                "INSERT OR IGNORE INTO idempotency_keys (user_id, key, created_at) VALUES (?, ?, ?)",
                (user_id, key, to_iso(utc_now())),
            )
            return cursor.rowcount == 1

    def release_key(self, user_id: int, key: str):
        """Forget a claimed idempotency key so the request can be retried."""
        with self.transaction() as cursor:
            cursor.execute("DELETE FROM idempotency_keys WHERE user_id = ? AND key = ?", (user_id, key))


# Singleton instance
db = Database()
