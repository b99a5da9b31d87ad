"""
Game sessions and the coin-flip executor.

The flip is decided server-side from one unbiased bit. The transition
``waiting -> completed`` is a single conditional UPDATE: the first caller to
match ``status = 'waiting'`` writes the result and winner, every later caller
gets AlreadyFlippedError together with the stored session.
"""

import uuid
from typing import Dict, Optional

from coinclash.core.database import Database, to_iso, utc_now, db
from coinclash.core.exceptions import (
    AlreadyFlippedError,
    NotAParticipantError,
    NotFoundError,
    ValidationError,
)
from coinclash.core.logger import get_logger
from coinclash.core.rng import TrueRNG, rng

logger = get_logger("sessions")

SESSION_STATUSES = ("waiting", "flipping", "completed")


def validate_session_id(session_id: str) -> str:
    try:
        return str(uuid.UUID(str(session_id)))
    except ValueError:
        raise ValidationError("Invalid session ID format")


def is_participant(session: Dict, user_id: int) -> bool:
    return user_id in (session["player1_id"], session["player2_id"])


class GameSessions:
    def __init__(self, database: Database, random_source: TrueRNG = rng):
        self.db = database
        self.rng = random_source

    def _read(self, session_id: str) -> Optional[Dict]:
        return self.db.fetchone("SELECT * FROM game_sessions WHERE id = ?", (session_id,))

    def get(self, session_id: str, user_id: int) -> Dict:
        """Return a session to one of its two players."""
        session = self._read(validate_session_id(session_id))
        if session is None:
            raise NotFoundError("Game session not found")
        if not is_participant(session, user_id):
            raise NotAParticipantError()
        return session

    def get_participants(self, session_id: str) -> tuple:
        session = self._read(session_id)
        if session is None:
            return ()
        return session["player1_id"], session["player2_id"]

    def execute_flip(self, session_id: str, user_id: int) -> Dict:
        """
        Resolve the session exactly once.

        Raises:
            NotFoundError: unknown session
            NotAParticipantError: caller is not one of the two players
            AlreadyFlippedError: another flip already resolved the session;
                the error carries the authoritative session row
        """
        session = self.get(session_id, user_id)
        session_id = session["id"]

        if session["status"] != "waiting":
            logger.info("Flip rejected, already resolved", extra={"session_id": session_id, "user_id": user_id})
            raise AlreadyFlippedError(session=session)

        flip_result = self.rng.coin_flip()
        if flip_result == session["player1_choice"]:
            winner_id = session["player1_id"]
        else:
            winner_id = session["player2_id"]

        now = to_iso(utc_now())
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                UPDATE game_sessions
                SET status = 'completed', flip_result = ?, winner_id = ?, flipped_at = ?, completed_at = ?
                WHERE id = ? AND status = 'waiting'
                """,
                (flip_result, winner_id, now, now, session_id),
            )
            won_race = cursor.rowcount == 1

        if not won_race:
            logger.info("Flip lost the race", extra={"session_id": session_id, "user_id": user_id})
            raise AlreadyFlippedError(session=self._read(session_id))

        logger.info(
            f"Coin landed {flip_result}, winner {winner_id}",
            extra={"session_id": session_id, "user_id": user_id},
        )
        return {
            "success": True,
            "flip_result": flip_result,
            "winner_id": winner_id,
            "session": self._read(session_id),
        }


# Singleton instance
game_sessions = GameSessions(db)
