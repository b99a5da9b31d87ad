"""
Wallet ledger.

Balances live in the ``wallets`` table and are only ever changed through
``WalletLedger.post``: one guarded UPDATE plus one ``transactions`` row that
records the resulting balance. Both run on the caller's cursor so they commit
or roll back together with the rest of the caller's transaction.
"""

from typing import Dict, List, Optional

import orjson

from coinclash.core.database import Database, to_iso, utc_now, db
from coinclash.core.exceptions import InsufficientFundsError, NotFoundError, ValidationError

TRANSACTION_TYPES = ("deposit", "withdrawal", "win", "loss", "bonus", "bet", "refund", "fee")
TRANSACTION_STATUSES = ("pending", "completed", "failed")

# Columns that may never go negative
BALANCE_COLUMNS = ("balance", "locked_balance", "bonus_balance")
TOTAL_COLUMNS = ("total_deposits", "total_withdrawals")


def to_money(value) -> float:
    """Round to currency precision (2 decimals)."""
    return round(float(value), 2)


def whole_units(value, label: str = "Amount") -> int:
    """Stakes and bets are whole units of the user-facing currency."""
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not float(value).is_integer():
        raise ValidationError(f"{label} must be a whole number")
    return int(value)


def _dump(value) -> Optional[str]:
    if value is None:
        return None
    return orjson.dumps(value).decode("utf-8")


def _load_transaction(row: Dict) -> Dict:
    for key in ("payment_details", "game_details"):
        if row.get(key):
            row[key] = orjson.loads(row[key])
    return row


class WalletLedger:
    """Atomic debit/credit primitives and wallet reads."""

    def __init__(self, database: Database):
        self.db = database

    def adjust(self, cursor, user_id: int, **deltas: float) -> Dict:
        """
        Apply column deltas to one wallet row in a single conditional UPDATE.

        Any balance column that would drop below zero makes the UPDATE match
        nothing and raises InsufficientFundsError; nothing is written.
        """
        unknown = set(deltas) - set(BALANCE_COLUMNS + TOTAL_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown wallet columns: {sorted(unknown)}")

        assignments, set_params, guards, guard_params = [], [], [], []
        for column, delta in deltas.items():
            delta = to_money(delta)
            assignments.append(f"{column} = ROUND({column} + ?, 2)")
            set_params.append(delta)
            if column in BALANCE_COLUMNS and delta < 0:
                guards.append(f"ROUND({column} + ?, 2) >= 0")
                guard_params.append(delta)

        assignments.append("last_updated = ?")
        set_params.append(to_iso(utc_now()))
        sql = f"UPDATE wallets SET {', '.join(assignments)} WHERE user_id = ?"
        if guards:
            sql += " AND " + " AND ".join(guards)

        cursor.execute(sql, (*set_params, user_id, *guard_params))
        if cursor.rowcount == 0:
            cursor.execute("SELECT 1 FROM wallets WHERE user_id = ?", (user_id,))
            if cursor.fetchone() is None:
                raise NotFoundError("Wallet not found", user_id=user_id)
            raise InsufficientFundsError()

        cursor.execute("SELECT * FROM wallets WHERE user_id = ?", (user_id,))
        return dict(cursor.fetchone())

    def record_transaction(
        self,
        cursor,
        user_id: int,
        tx_type: str,
        amount: float,
        balance_after: float,
        status: str = "completed",
        payment_method: str = None,
        order_id: str = None,
        payment_id: str = None,
        payment_details: dict = None,
        game_ref: str = None,
        game_details: dict = None,
    ) -> int:
        if tx_type not in TRANSACTION_TYPES:
            raise ValueError(f"Unknown transaction type: {tx_type}")
        if status not in TRANSACTION_STATUSES:
            raise ValueError(f"Unknown transaction status: {status}")

        now = to_iso(utc_now())
        cursor.execute(
            """
            INSERT INTO transactions (
                user_id, type, amount, status, balance_after, payment_method,
                order_id, payment_id, payment_details, game_ref, game_details,
                created_at, processed_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                user_id,
                tx_type,
                to_money(amount),
                status,
                to_money(balance_after),
                payment_method,
                order_id,
                payment_id,
                _dump(payment_details),
                game_ref,
                _dump(game_details),
                now,
                now if status != "pending" else None,
            ),
        )
        return cursor.lastrowid

    def post(
        self,
        cursor,
        user_id: int,
        tx_type: str,
        amount: float,
        delta: float,
        column: str = "balance",
        also: Dict[str, float] = None,
        status: str = "completed",
        **fields,
    ) -> Dict:
        """
        Move ``delta`` on ``column`` (plus any ``also`` deltas, such as a
        locked stake or a running total) and record a transaction of
        ``amount`` whose balance_after is the new value of ``column``.
        Returns the updated wallet row with ``transaction_id`` set.
        """
        deltas = {column: delta}
        deltas.update(also or {})
        wallet = self.adjust(cursor, user_id, **deltas)
        wallet["transaction_id"] = self.record_transaction(
            cursor, user_id, tx_type, amount, wallet[column], status=status, **fields
        )
        return wallet

    # ==================== Reads ====================

    def get_wallet(self, user_id: int) -> Dict:
        wallet = self.db.fetchone(
            """
            SELECT user_id, balance, locked_balance, bonus_balance,
                   total_deposits, total_withdrawals, currency, last_updated
            FROM wallets WHERE user_id = ?
            """,
            (user_id,),
        )
        if not wallet:
            raise NotFoundError("Wallet not found", user_id=user_id)
        return wallet

    def get_transactions(self, user_id: int, limit: int = 50) -> List[Dict]:
        rows = self.db.fetchall(
            """
            SELECT * FROM transactions
            WHERE user_id = ?
            ORDER BY id DESC
            LIMIT ?
            """,
            (user_id, max(1, min(limit, 200))),
        )
        return [_load_transaction(row) for row in rows]

    def get_stats(self, user_id: int) -> Dict:
        stats = self.db.fetchone("SELECT * FROM user_stats WHERE user_id = ?", (user_id,))
        if not stats:
            raise NotFoundError("Stats not found", user_id=user_id)
        return stats


# Singleton instance
wallet_ledger = WalletLedger(db)
