"""
Settlement engine.

Turns a resolved game into one wallet mutation, one win/loss transaction and
one stats update, all in a single transaction. Settlements are keyed on
(user_id, game_ref) so a retried call never applies twice. A 1v1 stake was
reserved in locked_balance at join, so settling a session only consumes that
reservation and can never fail for lack of funds.
"""

import sqlite3
from typing import Dict, List

from coinclash.config import settings
from coinclash.core.database import Database, to_iso, utc_now, db
from coinclash.core.exceptions import (
    AlreadySettledError,
    CoinClashError,
    NotAParticipantError,
    NotFoundError,
    ValidationError,
)
from coinclash.core.logger import get_logger
from coinclash.core.sessions import is_participant, validate_session_id
from coinclash.core.wallet import WalletLedger, to_money

logger = get_logger("settlement")

RESULTS = ("win", "loss")


def record_game_stats(cursor, user_id: int, won: bool, stake: float, won_amount: float, delta: float):
    """Fold one settled game into the player's running stats."""
    now = to_iso(utc_now())
    cursor.execute(
        "INSERT OR IGNORE INTO user_stats (user_id, updated_at) VALUES (?, ?)", (user_id, now)
    )
    # Right-hand sides read the pre-update row
    cursor.execute(
        """
        UPDATE user_stats SET
            total_games = total_games + 1,
            games_won = games_won + ?,
            games_lost = games_lost + ?,
            total_wagered = ROUND(total_wagered + ?, 2),
            total_winnings = ROUND(total_winnings + ?, 2),
            net_profit = ROUND(net_profit + ?, 2),
            win_rate = ROUND((games_won + ?) * 100.0 / (total_games + 1), 2),
            updated_at = ?
        WHERE user_id = ?
        """,
        (int(won), int(not won), stake, won_amount, delta, int(won), now, user_id),
    )


class SettlementEngine:
    def __init__(self, database: Database, ledger: WalletLedger = None):
        self.db = database
        self.wallet = ledger or WalletLedger(database)

    def settle_game(
        self,
        user_id: int,
        context: str,
        result: str,
        stake: float,
        won_amount: float = None,
        game_ref: str = None,
        game_details: Dict = None,
        reserved: bool = False,
    ) -> Dict:
        """
        Apply a game outcome to the player's wallet and stats.

        A win moves the balance by ``won_amount - stake`` (``won_amount``
        defaults to twice the stake), a loss by ``-stake``. With ``reserved``
        the stake is taken from locked_balance instead of the balance.

        Returns:
            Dict with the new ``balance`` and the ``transaction_id``
        """
        if result not in RESULTS:
            raise ValidationError(f"Invalid result: {result}")
        stake = to_money(stake)
        if stake <= 0:
            raise ValidationError("Stake must be positive")

        won = result == "win"
        if won:
            if won_amount is None:
                won_amount = stake * settings.matchmaking.win_multiplier
            won_amount = to_money(won_amount)
            delta = won_amount - stake
            amount = won_amount
        else:
            won_amount = 0.0
            delta = -stake
            amount = stake

        balance_delta, also = delta, None
        if reserved:
            balance_delta, also = won_amount, {"locked_balance": -stake}

        details = {"mode": context, "entry_fee": stake, "result": result}
        details.update(game_details or {})

        try:
            with self.db.transaction() as cursor:
                if game_ref is not None:
                    cursor.execute(
                        """
                        SELECT 1 FROM transactions
                        WHERE user_id = ? AND game_ref = ? AND type IN ('win', 'loss')
                        """,
                        (user_id, game_ref),
                    )
                    if cursor.fetchone():
                        raise AlreadySettledError(game_ref=game_ref)

                wallet = self.wallet.post(
                    cursor,
                    user_id,
                    result,
                    amount,
                    balance_delta,
                    also=also,
                    game_ref=game_ref,
                    game_details=details,
                )
                record_game_stats(cursor, user_id, won, stake, won_amount, delta)
        except sqlite3.IntegrityError as e:
            if game_ref is not None and "UNIQUE" in str(e):
                raise AlreadySettledError(game_ref=game_ref) from e
            raise

        logger.info(
            f"Settled {result} of {amount} ({context}), balance {wallet['balance']}",
            extra={"user_id": user_id, "game_ref": game_ref},
        )
        return {
            "success": True,
            "result": result,
            "balance": wallet["balance"],
            "transaction_id": wallet["transaction_id"],
        }

    def settle_session(self, session_id: str, user_id: int) -> Dict:
        """
        Settle the caller's side of a completed 1v1 session.
        Result and stake come from the session row, never from the client.
        """
        session_id = validate_session_id(session_id)
        session = self.db.fetchone("SELECT * FROM game_sessions WHERE id = ?", (session_id,))
        if session is None:
            raise NotFoundError("Game session not found")
        if not is_participant(session, user_id):
            raise NotAParticipantError()
        if session["status"] != "completed":
            raise ValidationError("Game has not been flipped yet", status=session["status"])

        return self._settle_participant(session, user_id)

    def _settle_participant(self, session: Dict, user_id: int) -> Dict:
        if user_id == session["player1_id"]:
            choice, opponent = session["player1_choice"], session["player2_username"]
        else:
            choice, opponent = session["player2_choice"], session["player1_username"]

        return self.settle_game(
            user_id,
            "1v1",
            "win" if session["winner_id"] == user_id else "loss",
            session["amount"],
            game_ref=session["id"],
            reserved=True,
            game_details={
                "session_id": session["id"],
                "flip_result": session["flip_result"],
                "choice": choice,
                "opponent": opponent,
            },
        )

    def settle_pending_sessions(self, limit: int = 100) -> List[Dict]:
        """
        Settle every participant of a completed session that has no
        settlement record yet. Safe to run alongside client settlements.
        """
        rows = self.db.fetchall(
            """
            SELECT s.*, p.user_id AS pending_user_id
            FROM game_sessions s
            JOIN (
                SELECT id, player1_id AS user_id FROM game_sessions WHERE status = 'completed'
                UNION ALL
                SELECT id, player2_id AS user_id FROM game_sessions WHERE status = 'completed'
            ) p ON p.id = s.id
            WHERE NOT EXISTS (
                SELECT 1 FROM transactions t
                WHERE t.user_id = p.user_id AND t.game_ref = s.id AND t.type IN ('win', 'loss')
            )
            ORDER BY s.completed_at ASC
            LIMIT ?
            """,
            (limit,),
        )

        settled = []
        for row in rows:
            user_id = row.pop("pending_user_id")
            try:
                outcome = self._settle_participant(row, user_id)
            except AlreadySettledError:
                continue
            except CoinClashError as e:
                logger.warning(
                    f"Could not settle session: {e.message}",
                    extra={"session_id": row["id"], "user_id": user_id},
                )
                continue
            settled.append({"session_id": row["id"], "user_id": user_id, **outcome})

        if settled:
            logger.info(f"Settlement sweep applied {len(settled)} outcomes")
        return settled


# Singleton instance
settlement_engine = SettlementEngine(db)
