"""
Multiplayer pool rounds.

Players bet on ``king`` or ``tail`` during a fixed betting window. When the
window closes one driver completes the round through conditional status
transitions:

    betting -> cancelled               one side has no bettors, all stakes refunded
    betting -> flipping -> completed   winners split the losing pool minus the fee

Payouts are computed in integer cents and floored; the platform account
receives the fee plus whatever the flooring left over.
"""

import uuid
from datetime import timedelta
from typing import Dict, List, Optional, Tuple

from coinclash.config import settings
from coinclash.core.database import Database, parse_iso, to_iso, utc_now, db
from coinclash.core.exceptions import NotFoundError, RoundClosedError, ValidationError
from coinclash.core.logger import get_logger
from coinclash.core.rng import TrueRNG, rng
from coinclash.core.settlement import record_game_stats
from coinclash.core.wallet import WalletLedger, to_money, whole_units

logger = get_logger("multiplayer")

POOL_SIDES = ("king", "tail")
ROUND_STATUSES = ("betting", "flipping", "completed", "cancelled")
TERMINAL_STATUSES = ("completed", "cancelled")


def _cents(amount: float) -> int:
    return int(round(amount * 100))


def split_pool(bets: List[Dict], winner: str, fee_percent: float) -> Tuple[Dict[str, float], float]:
    """
    Work out payouts for a two-sided round.

    Each winning bet gets its stake back plus a stake-proportional share of
    the losing pool after the fee. Returns (payouts by bet id, platform cut),
    where the platform cut is the fee plus the rounding remainder.
    """
    winning = [bet for bet in bets if bet["side"] == winner]
    winning_cents = sum(_cents(bet["amount"]) for bet in winning)
    losing_cents = sum(_cents(bet["amount"]) for bet in bets if bet["side"] != winner)

    fee_cents = int(round(losing_cents * fee_percent / 100))
    distributable = losing_cents - fee_cents

    payouts = {}
    paid_shares = 0
    for bet in winning:
        stake_cents = _cents(bet["amount"])
        share = stake_cents * distributable // winning_cents
        paid_shares += share
        payouts[bet["id"]] = (stake_cents + share) / 100

    platform_cut = (fee_cents + distributable - paid_shares) / 100
    return payouts, platform_cut


class MultiplayerRounds:
    def __init__(self, database: Database, ledger: WalletLedger = None, random_source: TrueRNG = rng):
        self.db = database
        self.wallet = ledger or WalletLedger(database)
        self.rng = random_source

    # ==================== Reads ====================

    def get_round(self, round_id: str) -> Dict:
        round_ = self.db.fetchone("SELECT * FROM multiplayer_rounds WHERE id = ?", (round_id,))
        if round_ is None:
            raise NotFoundError("Round not found")
        return round_

    def get_round_bets(self, round_id: str) -> List[Dict]:
        self.get_round(round_id)
        return self.db.fetchall(
            """
            SELECT id, round_id, user_id, username, side, amount, payout, status, created_at
            FROM multiplayer_bets WHERE round_id = ?
            ORDER BY created_at ASC
            """,
            (round_id,),
        )

    def get_current_round(self, now=None) -> Dict:
        """The open round, the last finished round during its cooldown, or a fresh round."""
        round_, _ = self.open_round_if_due(now)
        return round_

    def open_round_if_due(self, now=None) -> Tuple[Dict, bool]:
        """Returns (current round, whether it was opened by this call)."""
        now = now or utc_now()
        config = settings.multiplayer

        with self.db.transaction() as cursor:
            cursor.execute("SELECT * FROM multiplayer_rounds WHERE status = 'betting'")
            open_round = cursor.fetchone()
            if open_round:
                return dict(open_round), False

            cursor.execute("SELECT * FROM multiplayer_rounds ORDER BY round_number DESC LIMIT 1")
            latest = cursor.fetchone()
            if latest:
                latest = dict(latest)
                if latest["status"] == "flipping":
                    return latest, False
                cooldown = (
                    config.cancelled_cooldown_seconds
                    if latest["status"] == "cancelled"
                    else config.completed_cooldown_seconds
                )
                next_round_at = parse_iso(latest["completed_at"]) + timedelta(seconds=cooldown)
                if now < next_round_at:
                    latest["next_round_at"] = to_iso(next_round_at)
                    return latest, False

            round_id = str(uuid.uuid4())
            round_number = latest["round_number"] + 1 if latest else 1
            cursor.execute(
                """
                INSERT INTO multiplayer_rounds (id, round_number, status, started_at, ends_at)
                VALUES (?, ?, 'betting', ?, ?)
                """,
                (
                    round_id,
                    round_number,
                    to_iso(now),
                    to_iso(now + timedelta(seconds=config.round_duration_seconds)),
                ),
            )
            cursor.execute("SELECT * FROM multiplayer_rounds WHERE id = ?", (round_id,))
            created = dict(cursor.fetchone())

        logger.info(f"Round #{round_number} open for bets", extra={"round_id": round_id})
        return created, True

    # ==================== Betting ====================

    def place_bet(self, round_id: str, user_id: int, username: str, side: str, amount, now=None) -> Dict:
        """
        Debit the stake and add it to the side total.
        Repeat bets in the same round add to the player's existing bet and
        must stay on the same side.
        """
        side = (side or "").lower().strip()
        if side not in POOL_SIDES:
            raise ValidationError("Side must be 'king' or 'tail'")
        amount = whole_units(amount, "Bet")
        if amount < settings.multiplayer.min_bet:
            raise ValidationError(f"Minimum bet is {settings.multiplayer.min_bet}")

        now = now or utc_now()
        now_iso = to_iso(now)

        with self.db.transaction() as cursor:
            cursor.execute("SELECT * FROM multiplayer_rounds WHERE id = ?", (round_id,))
            round_ = cursor.fetchone()
            if round_ is None:
                raise NotFoundError("Round not found")
            if round_["status"] != "betting" or now >= parse_iso(round_["ends_at"]):
                raise RoundClosedError(status=round_["status"], round_id=round_id)

            cursor.execute(
                "SELECT * FROM multiplayer_bets WHERE round_id = ? AND user_id = ?",
                (round_id, user_id),
            )
            existing = cursor.fetchone()
            if existing and existing["side"] != side:
                raise ValidationError(f"You already bet on {existing['side']} this round")

            wallet = self.wallet.post(
                cursor,
                user_id,
                "bet",
                amount,
                -amount,
                game_ref=round_id,
                game_details={"mode": "multiplayer", "round_number": round_["round_number"], "side": side},
            )

            if existing:
                bet_id = existing["id"]
                cursor.execute(
                    "UPDATE multiplayer_bets SET amount = ROUND(amount + ?, 2), updated_at = ? WHERE id = ?",
                    (amount, now_iso, bet_id),
                )
            else:
                bet_id = str(uuid.uuid4())
                cursor.execute(
                    """
                    INSERT INTO multiplayer_bets (id, round_id, user_id, username, side, amount, status, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, 'active', ?, ?)
                    """,
                    (bet_id, round_id, user_id, username, side, amount, now_iso, now_iso),
                )

            cursor.execute(
                f"""
                UPDATE multiplayer_rounds SET {side}_total = ROUND({side}_total + ?, 2)
                WHERE id = ? AND status = 'betting'
                """,
                (amount, round_id),
            )
            if cursor.rowcount == 0:
                raise RoundClosedError(round_id=round_id)

            cursor.execute("SELECT * FROM multiplayer_bets WHERE id = ?", (bet_id,))
            bet = dict(cursor.fetchone())
            cursor.execute("SELECT * FROM multiplayer_rounds WHERE id = ?", (round_id,))
            updated_round = dict(cursor.fetchone())

        logger.info(
            f"{username} bet {amount} on {side} in round #{updated_round['round_number']}",
            extra={"user_id": user_id, "round_id": round_id},
        )
        return {"success": True, "bet": bet, "round": updated_round, "balance": wallet["balance"]}

    # ==================== Completion ====================

    def complete_round(self, round_id: str, now=None) -> Dict:
        """
        Close an expired round. Already terminal rounds are returned unchanged,
        so any number of drivers may call this.
        """
        now = now or utc_now()
        round_ = self.get_round(round_id)
        if round_["status"] in TERMINAL_STATUSES:
            return round_
        if round_["status"] == "betting":
            if now < parse_iso(round_["ends_at"]):
                raise ValidationError("Round is still accepting bets", ends_at=round_["ends_at"])
            if self._close_betting(round_id, now) == "cancelled":
                return self.get_round(round_id)

        self._finish_flipping(round_id, now)
        return self.get_round(round_id)

    def _close_betting(self, round_id: str, now) -> Optional[str]:
        """betting -> cancelled (with refunds) or betting -> flipping. None if another driver won."""
        now_iso = to_iso(now)
        with self.db.transaction() as cursor:
            cursor.execute(
                "SELECT side, COUNT(*) AS bettors FROM multiplayer_bets WHERE round_id = ? GROUP BY side",
                (round_id,),
            )
            bettors = {row["side"]: row["bettors"] for row in cursor.fetchall()}

            if all(bettors.get(side) for side in POOL_SIDES):
                winner = self.rng.random_choice(POOL_SIDES)
                cursor.execute(
                    """
                    UPDATE multiplayer_rounds SET status = 'flipping', winner = ?, flipped_at = ?
                    WHERE id = ? AND status = 'betting'
                    """,
                    (winner, now_iso, round_id),
                )
                if cursor.rowcount == 0:
                    return None
                logger.info(f"Round landed on {winner}", extra={"round_id": round_id})
                return "flipping"

            cursor.execute(
                """
                UPDATE multiplayer_rounds SET status = 'cancelled', completed_at = ?
                WHERE id = ? AND status = 'betting'
                """,
                (now_iso, round_id),
            )
            if cursor.rowcount == 0:
                return None

            cursor.execute("SELECT * FROM multiplayer_bets WHERE round_id = ?", (round_id,))
            bets = [dict(row) for row in cursor.fetchall()]
            for bet in bets:
                self.wallet.post(
                    cursor,
                    bet["user_id"],
                    "refund",
                    bet["amount"],
                    bet["amount"],
                    game_ref=round_id,
                    game_details={"mode": "multiplayer", "side": bet["side"], "reason": "one_sided_round"},
                )
                cursor.execute(
                    "UPDATE multiplayer_bets SET status = 'refunded', payout = ?, updated_at = ? WHERE id = ?",
                    (bet["amount"], now_iso, bet["id"]),
                )

        logger.info(
            f"Round cancelled, refunded {len(bets)} bets totalling {to_money(sum(b['amount'] for b in bets))}",
            extra={"round_id": round_id},
        )
        return "cancelled"

    def _finish_flipping(self, round_id: str, now) -> bool:
        """flipping -> completed with payouts. False if the round was not flipping."""
        now_iso = to_iso(now)
        fee_percent = settings.multiplayer.platform_fee_percent

        with self.db.transaction() as cursor:
            cursor.execute("SELECT * FROM multiplayer_rounds WHERE id = ?", (round_id,))
            round_ = dict(cursor.fetchone())
            if round_["status"] != "flipping":
                return False

            cursor.execute(
                "SELECT * FROM multiplayer_bets WHERE round_id = ? ORDER BY created_at ASC", (round_id,)
            )
            bets = [dict(row) for row in cursor.fetchall()]
            winner = round_["winner"]
            payouts, platform_cut = split_pool(bets, winner, fee_percent)
            losing_pool = sum(bet["amount"] for bet in bets if bet["side"] != winner)
            fee = to_money(losing_pool * fee_percent / 100)

            cursor.execute(
                """
                UPDATE multiplayer_rounds SET status = 'completed', platform_fee = ?, completed_at = ?
                WHERE id = ? AND status = 'flipping'
                """,
                (fee, now_iso, round_id),
            )
            if cursor.rowcount == 0:
                return False

            details = {"mode": "multiplayer", "round_number": round_["round_number"], "winner": winner}
            for bet in bets:
                payout = payouts.get(bet["id"], 0.0)
                won = bet["side"] == winner
                if won:
                    self.wallet.post(
                        cursor,
                        bet["user_id"],
                        "win",
                        payout,
                        payout,
                        game_ref=round_id,
                        game_details={**details, "side": bet["side"], "entry_fee": bet["amount"]},
                    )
                cursor.execute(
                    "UPDATE multiplayer_bets SET status = ?, payout = ?, updated_at = ? WHERE id = ?",
                    ("won" if won else "lost", payout, now_iso, bet["id"]),
                )
                record_game_stats(cursor, bet["user_id"], won, bet["amount"], payout, payout - bet["amount"])

            if platform_cut > 0:
                cursor.execute(
                    "SELECT id FROM users WHERE username = ?", (settings.wallet.platform_username,)
                )
                platform = cursor.fetchone()
                self.wallet.post(
                    cursor,
                    platform["id"],
                    "fee",
                    platform_cut,
                    platform_cut,
                    game_ref=round_id,
                    game_details=details,
                )

        logger.info(
            f"Round #{round_['round_number']} completed: {len(payouts)} winners, platform cut {platform_cut}",
            extra={"round_id": round_id},
        )
        return True

    def complete_expired_rounds(self, now=None) -> List[Dict]:
        """Drive every round whose window has closed, including rounds left in flipping."""
        now = now or utc_now()
        rows = self.db.fetchall(
            """
            SELECT id FROM multiplayer_rounds
            WHERE (status = 'betting' AND ends_at <= ?) OR status = 'flipping'
            ORDER BY round_number ASC
            """,
            (to_iso(now),),
        )
        return [self.complete_round(row["id"], now) for row in rows]


# Singleton instance
multiplayer_rounds = MultiplayerRounds(db)
