"""
Withdrawal requests.

Requesting a withdrawal moves funds from ``balance`` into ``locked_balance``
and records a pending withdrawal transaction. The request then leaves
``pending`` exactly once: cancelled or rejected (funds unlocked) or
completed (locked funds paid out).
"""

import uuid
from typing import Dict, List

from coinclash.config import settings
from coinclash.core.database import Database, to_iso, utc_now, db
from coinclash.core.exceptions import NotFoundError, RaceLostError, ValidationError
from coinclash.core.logger import get_logger
from coinclash.core.wallet import WalletLedger, to_money

logger = get_logger("withdrawals")

WITHDRAWAL_STATUSES = ("pending", "completed", "cancelled", "rejected")


class Withdrawals:
    def __init__(self, database: Database, ledger: WalletLedger = None):
        self.db = database
        self.wallet = ledger or WalletLedger(database)

    def request(self, user_id: int, amount, method: str, payout_identifier: str) -> Dict:
        config = settings.withdrawals
        amount = to_money(amount)
        if amount < config.min_amount:
            raise ValidationError(f"Minimum withdrawal is {config.min_amount:g}")
        method = (method or "").lower().strip()
        if method not in config.methods:
            raise ValidationError("Unsupported payout method", methods=config.methods)
        payout_identifier = (payout_identifier or "").strip()
        if not payout_identifier or len(payout_identifier) > 100:
            raise ValidationError("Invalid payout details")

        request_id = str(uuid.uuid4())
        with self.db.transaction() as cursor:
            wallet = self.wallet.adjust(cursor, user_id, balance=-amount, locked_balance=amount)
            transaction_id = self.wallet.record_transaction(
                cursor,
                user_id,
                "withdrawal",
                amount,
                wallet["balance"],
                status="pending",
                payment_method=method,
                payment_details={"withdrawal_id": request_id},
            )
            cursor.execute(
                """
                INSERT INTO withdrawal_requests (id, user_id, amount, method, payout_identifier, status, transaction_id, created_at)
                VALUES (?, ?, ?, ?, ?, 'pending', ?, ?)
                """,
                (request_id, user_id, amount, method, payout_identifier, transaction_id, to_iso(utc_now())),
            )

        logger.info(f"Withdrawal of {amount} requested via {method}", extra={"user_id": user_id, "withdrawal_id": request_id})
        return {"success": True, "request": self.get(request_id), "wallet": self.wallet.get_wallet(user_id)}

    def get(self, request_id: str) -> Dict:
        request = self.db.fetchone("SELECT * FROM withdrawal_requests WHERE id = ?", (request_id,))
        if request is None:
            raise NotFoundError("Withdrawal request not found")
        return request

    def list_for_user(self, user_id: int, limit: int = 20) -> List[Dict]:
        return self.db.fetchall(
            "SELECT * FROM withdrawal_requests WHERE user_id = ? ORDER BY created_at DESC LIMIT ?",
            (user_id, limit),
        )

    def cancel(self, request_id: str, user_id: int) -> Dict:
        request = self.get(request_id)
        if request["user_id"] != user_id:
            raise NotFoundError("Withdrawal request not found")
        return self._close(request_id, "cancelled")

    def reject(self, request_id: str, reason: str) -> Dict:
        return self._close(request_id, "rejected", failure_reason=reason)

    def complete(self, request_id: str, payout_ref: str) -> Dict:
        return self._close(request_id, "completed", payout_ref=payout_ref)

    def _close(self, request_id: str, status: str, failure_reason: str = None, payout_ref: str = None) -> Dict:
        now = to_iso(utc_now())
        with self.db.transaction() as cursor:
            cursor.execute("SELECT * FROM withdrawal_requests WHERE id = ?", (request_id,))
            request = cursor.fetchone()
            if request is None:
                raise NotFoundError("Withdrawal request not found")

            cursor.execute(
                """
                UPDATE withdrawal_requests
                SET status = ?, failure_reason = ?, payout_ref = ?, processed_at = ?
                WHERE id = ? AND status = 'pending'
                """,
                (status, failure_reason, payout_ref, now, request_id),
            )
            if cursor.rowcount == 0:
                raise RaceLostError("Withdrawal already processed", status=request["status"])

            amount = request["amount"]
            if status == "completed":
                wallet = self.wallet.adjust(
                    cursor, request["user_id"], locked_balance=-amount, total_withdrawals=amount
                )
                tx_status = "completed"
            else:
                wallet = self.wallet.adjust(cursor, request["user_id"], locked_balance=-amount, balance=amount)
                tx_status = "failed"

            cursor.execute(
                "UPDATE transactions SET status = ?, balance_after = ?, processed_at = ? WHERE id = ?",
                (tx_status, wallet["balance"], now, request["transaction_id"]),
            )

        logger.info(
            f"Withdrawal {status}",
            extra={"user_id": request["user_id"], "withdrawal_id": request_id},
        )
        return self.get(request_id)


# Singleton instance
withdrawals = Withdrawals(db)
