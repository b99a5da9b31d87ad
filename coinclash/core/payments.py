"""
Deposits through a Razorpay-compatible payment gateway.

Order creation goes over HTTP; verification is local: the gateway signs
``order_id|payment_id`` with HMAC-SHA256 using the shared key secret.
A ``payment_id`` credits the wallet at most once. The explicit duplicate
check is backed by a partial unique index on completed deposits.
"""

import hashlib
import hmac
import sqlite3
from typing import Dict, Optional

import httpx
import orjson

from coinclash.config import settings
from coinclash.core.database import Database, to_iso, utc_now, db
from coinclash.core.exceptions import (
    DuplicatePaymentError,
    GatewayUnavailableError,
    PaymentError,
    SignatureMismatchError,
    ValidationError,
)
from coinclash.core.logger import get_logger
from coinclash.core.wallet import WalletLedger, to_money

logger = get_logger("payments")

MAX_ID_LENGTH = 100
MAX_SIGNATURE_LENGTH = 200


class PaymentGateway:
    """Thin async client for the gateway's orders API plus signature checks."""

    def __init__(
        self,
        key_id: str = None,
        key_secret: str = None,
        base_url: str = None,
        timeout: float = None,
        transport: httpx.AsyncBaseTransport = None,
    ):
        config = settings.payments
        self.key_id = key_id if key_id is not None else config.key_id
        self.key_secret = key_secret if key_secret is not None else config.key_secret
        self.base_url = base_url or config.gateway_url
        self.timeout = timeout or config.request_timeout_seconds
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    async def create_order(self, amount_minor: int, currency: str, receipt: str, notes: dict = None) -> Dict:
        if not self.configured:
            raise GatewayUnavailableError("Payment gateway not configured")

        payload = {"amount": amount_minor, "currency": currency, "receipt": receipt, "notes": notes or {}}
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                auth=(self.key_id, self.key_secret),
                timeout=self.timeout,
                transport=self.transport,
            ) as client:
                response = await client.post("/orders", json=payload)
                response.raise_for_status()
                order = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Gateway rejected order: {e.response.status_code} {e.response.text[:200]}")
            raise GatewayUnavailableError() from e
        except httpx.HTTPError as e:
            logger.error(f"Gateway unreachable: {e}")
            raise GatewayUnavailableError() from e

        if not order.get("id"):
            raise GatewayUnavailableError("Gateway returned no order id")
        return order

    def sign(self, order_id: str, payment_id: str) -> str:
        body = f"{order_id}|{payment_id}".encode("utf-8")
        return hmac.new(self.key_secret.encode("utf-8"), body, hashlib.sha256).hexdigest()

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        if not self.key_secret:
            return False
        return hmac.compare_digest(self.sign(order_id, payment_id), signature)


def _validate_token(value: str, name: str, max_length: int) -> str:
    if not value or not isinstance(value, str) or len(value) > max_length:
        raise ValidationError(f"Invalid {name}")
    return value


class Payments:
    def __init__(self, database: Database, gateway: PaymentGateway = None, ledger: WalletLedger = None):
        self.db = database
        self.gateway = gateway or PaymentGateway()
        self.wallet = ledger or WalletLedger(database)

    def validate_amount(self, amount) -> float:
        config = settings.payments
        if isinstance(amount, bool) or not isinstance(amount, (int, float)):
            raise ValidationError("Invalid amount")
        amount = to_money(amount)
        if not config.min_amount <= amount <= config.max_amount:
            raise ValidationError(
                f"Amount must be between {config.min_amount:g} and {config.max_amount:g}"
            )
        return amount

    async def create_order(self, user_id: int, amount, currency: str = "INR") -> Dict:
        """Open a gateway order and record it as a pending deposit."""
        amount = self.validate_amount(amount)
        currency = (currency or "").upper()
        if currency not in settings.payments.currencies:
            raise ValidationError("Unsupported currency", currencies=settings.payments.currencies)

        receipt = f"rcpt_{user_id}_{int(utc_now().timestamp())}"
        order = await self.gateway.create_order(
            int(round(amount * 100)), currency, receipt, notes={"user_id": str(user_id)}
        )

        with self.db.transaction() as cursor:
            cursor.execute("SELECT balance FROM wallets WHERE user_id = ?", (user_id,))
            wallet = cursor.fetchone()
            self.wallet.record_transaction(
                cursor,
                user_id,
                "deposit",
                amount,
                wallet["balance"],
                status="pending",
                payment_method="razorpay",
                order_id=order["id"],
                payment_details={"order_id": order["id"], "currency": currency, "receipt": receipt},
            )

        logger.info(f"Created payment order for {amount} {currency}", extra={"user_id": user_id, "order_id": order["id"]})
        return {
            "order_id": order["id"],
            "amount": order.get("amount", int(round(amount * 100))),
            "currency": currency,
            "key_id": self.gateway.key_id,
        }

    def verify_payment(
        self,
        user_id: int,
        order_id: str,
        payment_id: str,
        signature: str,
        amount: Optional[float] = None,
    ) -> Dict:
        """
        Credit a gateway payment exactly once.

        Raises:
            SignatureMismatchError: HMAC does not match
            DuplicatePaymentError: payment or order already credited
            PaymentError: unknown order, foreign order or amount mismatch
        """
        order_id = _validate_token(order_id, "order ID", MAX_ID_LENGTH)
        payment_id = _validate_token(payment_id, "payment ID", MAX_ID_LENGTH)
        signature = _validate_token(signature, "signature", MAX_SIGNATURE_LENGTH)
        if amount is not None:
            amount = self.validate_amount(amount)

        if not self.gateway.verify_signature(order_id, payment_id, signature):
            logger.warning(
                "Payment signature verification failed",
                extra={"user_id": user_id, "order_id": order_id, "payment_id": payment_id},
            )
            raise SignatureMismatchError()

        now = to_iso(utc_now())
        try:
            with self.db.transaction() as cursor:
                cursor.execute(
                    "SELECT id FROM transactions WHERE payment_id = ? AND type = 'deposit' AND status = 'completed'",
                    (payment_id,),
                )
                if cursor.fetchone():
                    raise DuplicatePaymentError(payment_id=payment_id)

                cursor.execute(
                    "SELECT * FROM transactions WHERE order_id = ? AND type = 'deposit' ORDER BY id LIMIT 1",
                    (order_id,),
                )
                order = cursor.fetchone()
                if order is None or order["user_id"] != user_id:
                    raise PaymentError("Unknown payment order")
                if order["status"] != "pending":
                    raise DuplicatePaymentError("Order already processed", order_id=order_id)
                if amount is not None and amount != order["amount"]:
                    raise PaymentError("Amount does not match the order")

                credit = order["amount"]
                cursor.execute(
                    "SELECT COUNT(*) AS n FROM transactions WHERE user_id = ? AND type = 'deposit' AND status = 'completed'",
                    (user_id,),
                )
                first_deposit = cursor.fetchone()["n"] == 0

                wallet = self.wallet.adjust(cursor, user_id, balance=credit, total_deposits=credit)
                details = orjson.loads(order["payment_details"]) if order["payment_details"] else {}
                details.update({"order_id": order_id, "payment_id": payment_id})
                cursor.execute(
                    """
                    UPDATE transactions
                    SET status = 'completed', payment_id = ?, balance_after = ?,
                        payment_details = ?, processed_at = ?
                    WHERE id = ? AND status = 'pending'
                    """,
                    (payment_id, wallet["balance"], orjson.dumps(details).decode("utf-8"), now, order["id"]),
                )
                if cursor.rowcount == 0:
                    raise DuplicatePaymentError("Order already processed", order_id=order_id)

                referral = None
                if first_deposit:
                    referral = self._apply_referral_bonus(cursor, user_id)
        except sqlite3.IntegrityError as e:
            raise DuplicatePaymentError(payment_id=payment_id) from e

        logger.info(
            f"Deposit of {credit} credited",
            extra={"user_id": user_id, "payment_id": payment_id, "order_id": order_id},
        )
        return {
            "success": True,
            "amount": credit,
            "balance": wallet["balance"],
            "referral_bonus": referral,
        }

    def _apply_referral_bonus(self, cursor, user_id: int) -> Optional[float]:
        """On a first deposit, credit both the new player and the referrer."""
        bonus = settings.payments.referral_bonus
        cursor.execute("SELECT referred_by FROM users WHERE id = ?", (user_id,))
        row = cursor.fetchone()
        if not row or row["referred_by"] is None or bonus <= 0:
            return None

        referrer_id = row["referred_by"]
        for beneficiary, counterpart in ((user_id, referrer_id), (referrer_id, user_id)):
            self.wallet.post(
                cursor,
                beneficiary,
                "bonus",
                bonus,
                bonus,
                column="bonus_balance",
                game_details={"kind": "referral", "counterpart_user_id": counterpart},
            )
        logger.info(f"Referral bonus of {bonus} paid", extra={"user_id": user_id, "referrer_id": referrer_id})
        return bonus


# Singleton instance
payments = Payments(db)
