"""
Matchmaking queue for 1v1 coin flips.

A join either claims the oldest compatible waiting entry (opposite choice,
same stake, different user) and creates the game session, or parks a new
waiting entry. The stake moves from the balance to locked_balance on join and
stays there until the entry is cancelled or expired (released) or the
session is settled (consumed). Reservation, claim, session insert and the
caller's own entry are written in one transaction, so each pair gets exactly
one session and every live stake is backed by funds.
"""

import uuid
from datetime import timedelta
from typing import Dict, List

from coinclash.config import settings
from coinclash.core.database import Database, to_iso, utc_now, db
from coinclash.core.exceptions import (
    AlreadyMatchedError,
    InsufficientFundsError,
    NotFoundError,
    ValidationError,
)
from coinclash.core.logger import get_logger
from coinclash.core.rng import TrueRNG
from coinclash.core.wallet import WalletLedger, whole_units

logger = get_logger("matchmaking")

QUEUE_STATUSES = ("waiting", "matched", "cancelled", "expired")

# Candidates examined per join; one claim normally succeeds on the first
CANDIDATE_LIMIT = 5


def opposite(choice: str) -> str:
    return "tails" if choice == "heads" else "heads"


def normalize_choice(choice: str) -> str:
    choice = (choice or "").lower().strip()
    if choice not in TrueRNG.COIN_SIDES:
        raise ValidationError(f"Invalid choice: {choice}. Must be 'heads' or 'tails'.")
    return choice


def validate_stake(stake) -> int:
    """Stakes are positive integers inside the configured range."""
    config = settings.matchmaking
    stake = whole_units(stake, "Stake")
    if stake <= 0:
        raise ValidationError("Stake must be positive")
    if not config.min_stake <= stake <= config.max_stake:
        raise ValidationError(
            f"Stake must be between {config.min_stake} and {config.max_stake}"
        )
    if config.allowed_stakes and stake not in config.allowed_stakes:
        raise ValidationError(
            "Stake must be one of the available entry fees",
            allowed=config.allowed_stakes,
        )
    return stake


class Matchmaker:
    def __init__(self, database: Database, ledger: WalletLedger = None):
        self.db = database
        self.wallet = ledger or WalletLedger(database)

    def submit_choice(self, user_id: int, username: str, choice: str, stake) -> Dict:
        """
        Join the queue with a side and a stake.

        Returns ``matched``, ``queue_entry_id`` and, when a pairing was found,
        ``session_id``, ``opponent`` and ``opponent_entry_id``.
        """
        choice = normalize_choice(choice)
        stake = validate_stake(stake)
        now = to_iso(utc_now())
        entry_id = str(uuid.uuid4())

        with self.db.transaction() as cursor:
            cursor.execute("SELECT balance FROM wallets WHERE user_id = ?", (user_id,))
            wallet = cursor.fetchone()
            if wallet is None:
                raise NotFoundError("Wallet not found", user_id=user_id)
            if wallet["balance"] < stake:
                raise InsufficientFundsError(balance=wallet["balance"], required=stake)

            cursor.execute(
                "SELECT id FROM matchmaking_queue WHERE user_id = ? AND status = 'waiting'",
                (user_id,),
            )
            existing = cursor.fetchone()
            if existing:
                raise ValidationError(
                    "You are already waiting for a match", queue_entry_id=existing["id"]
                )

            self.wallet.post(
                cursor,
                user_id,
                "bet",
                stake,
                -stake,
                also={"locked_balance": stake},
                game_ref=entry_id,
                game_details={"mode": "1v1", "queue_entry_id": entry_id, "choice": choice},
            )

            cursor.execute(
                """
                SELECT * FROM matchmaking_queue
                WHERE status = 'waiting' AND choice = ? AND amount = ? AND user_id != ?
                ORDER BY created_at ASC, rowid ASC
                LIMIT ?
                """,
                (opposite(choice), stake, user_id, CANDIDATE_LIMIT),
            )
            candidates = [dict(row) for row in cursor.fetchall()]

            session_id = str(uuid.uuid4())
            opponent = None
            for candidate in candidates:
                cursor.execute(
                    """
                    UPDATE matchmaking_queue
                    SET status = 'matched', matched_with = ?, game_session_id = ?,
                        matched_at = ?, updated_at = ?
                    WHERE id = ? AND status = 'waiting'
                    """,
                    (user_id, session_id, now, now, candidate["id"]),
                )
                if cursor.rowcount == 1:
                    opponent = candidate
                    break

            if opponent is None:
                cursor.execute(
                    """
                    INSERT INTO matchmaking_queue (id, user_id, username, choice, amount, status, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, 'waiting', ?, ?)
                    """,
                    (entry_id, user_id, username, choice, stake, now, now),
                )
            else:
                cursor.execute(
                    """
                    INSERT INTO game_sessions (
                        id, player1_id, player1_username, player1_choice,
                        player2_id, player2_username, player2_choice,
                        amount, status, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'waiting', ?)
                    """,
                    (
                        session_id,
                        opponent["user_id"],
                        opponent["username"],
                        opponent["choice"],
                        user_id,
                        username,
                        choice,
                        stake,
                        now,
                    ),
                )
                cursor.execute(
                    """
                    INSERT INTO matchmaking_queue (
                        id, user_id, username, choice, amount, status,
                        matched_with, game_session_id, created_at, matched_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, 'matched', ?, ?, ?, ?, ?)
                    """,
                    (entry_id, user_id, username, choice, stake, opponent["user_id"], session_id, now, now, now),
                )

        if opponent is None:
            logger.info(
                f"{username} waiting for {opposite(choice)} at stake {stake}",
                extra={"user_id": user_id, "queue_entry_id": entry_id},
            )
            return {"matched": False, "queue_entry_id": entry_id, "status": "waiting"}

        logger.info(
            f"Matched {opponent['username']} ({opponent['choice']}) with {username} ({choice}) at stake {stake}",
            extra={"user_id": user_id, "session_id": session_id},
        )
        return {
            "matched": True,
            "queue_entry_id": entry_id,
            "status": "matched",
            "session_id": session_id,
            "opponent_entry_id": opponent["id"],
            "opponent": {
                "user_id": opponent["user_id"],
                "username": opponent["username"],
                "choice": opponent["choice"],
            },
        }

    def cancel(self, entry_id: str, user_id: int) -> Dict:
        """Cancel a waiting entry. Entries that already matched cannot be cancelled."""
        now = to_iso(utc_now())
        with self.db.transaction() as cursor:
            cursor.execute("SELECT * FROM matchmaking_queue WHERE id = ?", (entry_id,))
            entry = cursor.fetchone()
            if entry is None or entry["user_id"] != user_id:
                raise NotFoundError("Queue entry not found")

            cursor.execute(
                """
                UPDATE matchmaking_queue SET status = 'cancelled', updated_at = ?
                WHERE id = ? AND status = 'waiting'
                """,
                (now, entry_id),
            )
            if cursor.rowcount == 0:
                logger.info(
                    f"Cancel lost to status {entry['status']}",
                    extra={"user_id": user_id, "queue_entry_id": entry_id},
                )
                raise AlreadyMatchedError(
                    status=entry["status"], session_id=entry["game_session_id"]
                )
            self._release_stake(cursor, entry, "cancelled")

        logger.info("Queue entry cancelled", extra={"user_id": user_id, "queue_entry_id": entry_id})
        return self.get_entry(entry_id, user_id)

    def _release_stake(self, cursor, entry, reason: str):
        """Return the stake reserved by a queue entry that never matched."""
        self.wallet.post(
            cursor,
            entry["user_id"],
            "refund",
            entry["amount"],
            entry["amount"],
            also={"locked_balance": -entry["amount"]},
            game_ref=entry["id"],
            game_details={"mode": "1v1", "queue_entry_id": entry["id"], "reason": reason},
        )

    def get_entry(self, entry_id: str, user_id: int) -> Dict:
        entry = self.db.fetchone("SELECT * FROM matchmaking_queue WHERE id = ?", (entry_id,))
        if entry is None or entry["user_id"] != user_id:
            raise NotFoundError("Queue entry not found")
        return entry

    def get_entry_owner(self, entry_id: str):
        entry = self.db.fetchone("SELECT user_id FROM matchmaking_queue WHERE id = ?", (entry_id,))
        return entry["user_id"] if entry else None

    def expire_stale_entries(self, max_age_seconds: int = None, now=None) -> List[str]:
        """
        Mark waiting entries older than ``max_age_seconds`` as expired and
        release their stakes. A limit of 0 disables expiry, leaving entries
        live for a late match.
        """
        if max_age_seconds is None:
            max_age_seconds = settings.matchmaking.hard_expiry_seconds
        if max_age_seconds <= 0:
            return []

        now = now or utc_now()
        cutoff = to_iso(now - timedelta(seconds=max_age_seconds))
        expired = []
        with self.db.transaction() as cursor:
            cursor.execute(
                "SELECT * FROM matchmaking_queue WHERE status = 'waiting' AND created_at < ?",
                (cutoff,),
            )
            for entry in [dict(row) for row in cursor.fetchall()]:
                cursor.execute(
                    """
                    UPDATE matchmaking_queue SET status = 'expired', updated_at = ?
                    WHERE id = ? AND status = 'waiting'
                    """,
                    (to_iso(now), entry["id"]),
                )
                if cursor.rowcount == 1:
                    self._release_stake(cursor, entry, "expired")
                    expired.append(entry["id"])

        if expired:
            logger.info(f"Expired {len(expired)} stale queue entries")
        return expired


# Singleton instance
matchmaker = Matchmaker(db)
