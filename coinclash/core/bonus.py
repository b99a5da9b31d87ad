"""
Daily bonus with streaks.

One claim per cooldown window, credited to the non-withdrawable
``bonus_balance``. The cooldown check and the credit share one write
transaction, so concurrent claims collapse into a single payout.
"""

from datetime import timedelta
from typing import Dict

from coinclash.config import settings
from coinclash.core.database import Database, parse_iso, to_iso, utc_now, db
from coinclash.core.exceptions import CooldownError
from coinclash.core.logger import get_logger
from coinclash.core.wallet import WalletLedger

logger = get_logger("bonus")


class DailyBonus:
    def __init__(self, database: Database, ledger: WalletLedger = None):
        self.db = database
        self.wallet = ledger or WalletLedger(database)

    def claim(self, user_id: int, now=None) -> Dict:
        """
        Claim the daily bonus. The streak continues when the previous claim is
        within the grace window and resets to 1 otherwise.
        """
        config = settings.bonus
        now = now or utc_now()
        amount = config.daily_amount

        with self.db.transaction() as cursor:
            cursor.execute(
                "SELECT * FROM daily_bonuses WHERE user_id = ? ORDER BY claimed_at DESC LIMIT 1",
                (user_id,),
            )
            last = cursor.fetchone()

            streak = 1
            if last:
                elapsed = now - parse_iso(last["claimed_at"])
                cooldown = timedelta(hours=config.cooldown_hours)
                if elapsed < cooldown:
                    remaining = cooldown - elapsed
                    hours = int(remaining.total_seconds() // 3600)
                    minutes = int((remaining.total_seconds() % 3600) // 60)
                    raise CooldownError(
                        f"Daily bonus already claimed. Come back in {hours}h {minutes}m",
                        remaining_seconds=int(remaining.total_seconds()),
                    )
                if elapsed <= timedelta(hours=config.streak_grace_hours):
                    streak = last["streak_days"] + 1

            wallet = self.wallet.post(
                cursor,
                user_id,
                "bonus",
                amount,
                amount,
                column="bonus_balance",
                game_details={"kind": "daily", "streak_days": streak},
            )
            cursor.execute(
                "INSERT INTO daily_bonuses (user_id, bonus_amount, streak_days, claimed_at) VALUES (?, ?, ?, ?)",
                (user_id, amount, streak, to_iso(now)),
            )

        logger.info(f"Daily bonus of {amount} claimed, streak {streak}", extra={"user_id": user_id})
        return {
            "success": True,
            "amount": amount,
            "streak_days": streak,
            "bonus_balance": wallet["bonus_balance"],
            "next_claim_hours": config.cooldown_hours,
        }


# Singleton instance
daily_bonus = DailyBonus(db)
