from typing import Optional, Union

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field
from slowapi import Limiter
from slowapi.util import get_remote_address

from coinclash.config import settings
from coinclash.core.bonus import daily_bonus
from coinclash.core.idempotency import idempotent_request
from coinclash.core.logger import get_logger
from coinclash.core.matchmaking import matchmaker
from coinclash.core.multiplayer import multiplayer_rounds
from coinclash.core.payments import payments
from coinclash.core.security import get_current_user
from coinclash.core.sessions import game_sessions
from coinclash.core.settlement import settlement_engine
from coinclash.core.wallet import wallet_ledger
from coinclash.core.websocket import ws_manager
from coinclash.core.withdrawals import withdrawals

# Rate limiting setup
limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit.enabled)

logger = get_logger("api")

router = APIRouter()

# ==================== Request Models ====================


class JoinQueueRequest(BaseModel):
    choice: str
    stake: Union[int, float]  # whole units, checked by validate_stake


class PlaceBetRequest(BaseModel):
    side: str
    amount: Union[int, float] = Field(gt=0)  # whole units, checked by place_bet


class CreateOrderRequest(BaseModel):
    amount: float
    currency: str = "INR"


class VerifyPaymentRequest(BaseModel):
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str
    amount: Optional[float] = None


class WithdrawalRequest(BaseModel):
    amount: float = Field(gt=0)
    method: str
    payout_identifier: str


# ==================== Helpers ====================


def get_user(request: Request) -> tuple:
    """Get (user_id, username) of the logged-in player."""
    session = get_current_user(request)
    return session["user_id"], session["username"]


def get_rate_limit():
    """Get rate limit string from config."""
    return settings.rate_limit.game_requests if settings.rate_limit.enabled else "1000/minute"


# ==================== Wallet Endpoints ====================


@router.get("/wallet")
async def get_wallet(request: Request):
    user_id, _ = get_user(request)
    return wallet_ledger.get_wallet(user_id)


@router.get("/wallet/transactions")
async def get_transactions(request: Request, limit: int = 50):
    user_id, _ = get_user(request)
    return {"transactions": wallet_ledger.get_transactions(user_id, limit)}


@router.get("/stats")
async def get_stats(request: Request):
    user_id, _ = get_user(request)
    return wallet_ledger.get_stats(user_id)


@router.post("/wallet/daily-bonus")
@limiter.limit(get_rate_limit())
@idempotent_request
async def claim_daily_bonus(request: Request):
    user_id, _ = get_user(request)
    return daily_bonus.claim(user_id)


# ==================== Matchmaking Endpoints ====================


@router.post("/matchmaking/join")
@limiter.limit(get_rate_limit())
@idempotent_request
async def join_queue(request: Request, body: JoinQueueRequest):
    user_id, username = get_user(request)
    result = matchmaker.submit_choice(user_id, username, body.choice, body.stake)

    if result["matched"]:
        await ws_manager.publish_row_change("matchmaking_queue", result["opponent_entry_id"], "matched")
        await ws_manager.publish_row_change("matchmaking_queue", result["queue_entry_id"], "matched")
    return {"success": True, **result}


@router.get("/matchmaking/{entry_id}")
async def get_queue_entry(request: Request, entry_id: str):
    user_id, _ = get_user(request)
    return matchmaker.get_entry(entry_id, user_id)


@router.post("/matchmaking/{entry_id}/cancel")
async def cancel_queue_entry(request: Request, entry_id: str):
    user_id, _ = get_user(request)
    entry = matchmaker.cancel(entry_id, user_id)
    await ws_manager.publish_row_change("matchmaking_queue", entry_id, entry["status"])
    return {"success": True, "entry": entry}


# ==================== Session Endpoints ====================


@router.get("/sessions/{session_id}")
async def get_session(request: Request, session_id: str):
    user_id, _ = get_user(request)
    return game_sessions.get(session_id, user_id)


@router.post("/sessions/{session_id}/flip")
@limiter.limit(get_rate_limit())
async def flip_coin(request: Request, session_id: str):
    user_id, _ = get_user(request)
    result = game_sessions.execute_flip(session_id, user_id)
    await ws_manager.publish_row_change("game_sessions", result["session"]["id"], "completed")
    return result


@router.post("/sessions/{session_id}/settle")
@idempotent_request
async def settle_session(request: Request, session_id: str):
    user_id, _ = get_user(request)
    return settlement_engine.settle_session(session_id, user_id)


# ==================== Multiplayer Endpoints ====================


@router.get("/multiplayer/current")
async def get_current_round(request: Request):
    get_user(request)
    round_, opened = multiplayer_rounds.open_round_if_due()
    if opened:
        await ws_manager.publish_row_change("multiplayer_rounds", round_["id"], round_["status"])
    return round_


@router.get("/multiplayer/rounds/{round_id}/bets")
async def get_round_bets(request: Request, round_id: str):
    get_user(request)
    return {"bets": multiplayer_rounds.get_round_bets(round_id)}


@router.post("/multiplayer/rounds/{round_id}/bet")
@limiter.limit(get_rate_limit())
@idempotent_request
async def place_bet(request: Request, round_id: str, body: PlaceBetRequest):
    user_id, username = get_user(request)
    result = multiplayer_rounds.place_bet(round_id, user_id, username, body.side, body.amount)
    await ws_manager.publish_row_change("multiplayer_rounds", round_id, result["round"]["status"])
    return result


@router.post("/multiplayer/rounds/{round_id}/complete")
async def complete_round(request: Request, round_id: str):
    get_user(request)
    before = multiplayer_rounds.get_round(round_id)
    round_ = multiplayer_rounds.complete_round(round_id)
    if round_["status"] != before["status"]:
        await ws_manager.publish_row_change("multiplayer_rounds", round_id, round_["status"])
    return round_


# ==================== Payment Endpoints ====================


@router.post("/payments/order")
@limiter.limit(get_rate_limit())
async def create_payment_order(request: Request, body: CreateOrderRequest):
    user_id, _ = get_user(request)
    return await payments.create_order(user_id, body.amount, body.currency)


@router.post("/payments/verify")
@limiter.limit(get_rate_limit())
async def verify_payment(request: Request, body: VerifyPaymentRequest):
    user_id, _ = get_user(request)
    return payments.verify_payment(
        user_id,
        body.razorpay_order_id,
        body.razorpay_payment_id,
        body.razorpay_signature,
        body.amount,
    )


# ==================== Withdrawal Endpoints ====================


@router.get("/withdrawals")
async def list_withdrawals(request: Request):
    user_id, _ = get_user(request)
    return {"withdrawals": withdrawals.list_for_user(user_id)}


@router.post("/withdrawals")
@limiter.limit(get_rate_limit())
@idempotent_request
async def request_withdrawal(request: Request, body: WithdrawalRequest):
    user_id, _ = get_user(request)
    return withdrawals.request(user_id, body.amount, body.method, body.payout_identifier)


@router.post("/withdrawals/{request_id}/cancel")
async def cancel_withdrawal(request: Request, request_id: str):
    user_id, _ = get_user(request)
    return {"success": True, "request": withdrawals.cancel(request_id, user_id)}
