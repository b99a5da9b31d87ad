from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from coinclash.config import settings
from coinclash.core.database import db
from coinclash.core.exceptions import ValidationError
from coinclash.core.logger import get_logger
from coinclash.core.security import delete_session_cookie, get_current_user, set_session_cookie
from coinclash.core.wallet import wallet_ledger
from coinclash.routers.api import limiter

logger = get_logger("auth")

router = APIRouter()


class RegisterRequest(BaseModel):
    username: str
    password: Optional[str] = None
    password_confirm: Optional[str] = None
    referral_code: Optional[str] = None


class LoginRequest(BaseModel):
    username: str
    password: Optional[str] = None


def public_user(user: dict) -> dict:
    return {
        "id": user["id"],
        "username": user["username"],
        "referral_code": user["referral_code"],
        "created_at": user["created_at"],
    }


def get_auth_limit():
    return settings.rate_limit.auth_requests if settings.rate_limit.enabled else "1000/minute"


@router.post("/auth/register")
@limiter.limit(get_auth_limit())
async def user_register(request: Request, body: RegisterRequest):
    """Create a new account with its wallet and log it in."""
    if body.password is not None:
        if len(body.password) < 4:
            raise ValidationError("Password must be at least 4 characters")
        if body.password_confirm is not None and body.password != body.password_confirm:
            raise ValidationError("Passwords do not match")

    user = db.create_user(body.username, body.password, body.referral_code)
    logger.info(f"User registered: {user['username']}", extra={"user_id": user["id"]})

    response = JSONResponse({"success": True, "user": public_user(user)})
    set_session_cookie(response, user)
    return response


@router.post("/auth/login")
@limiter.limit(get_auth_limit())
async def user_login(request: Request, body: LoginRequest):
    user = db.login_user(body.username.strip(), body.password)
    if not user:
        return JSONResponse(
            {"success": False, "error": "Invalid username or password", "code": "invalid_credentials"},
            status_code=401,
        )

    logger.info(f"User logged in: {user['username']}", extra={"user_id": user["id"]})
    response = JSONResponse({"success": True, "user": public_user(user)})
    set_session_cookie(response, user)
    return response


@router.post("/auth/logout")
async def logout(request: Request):
    response = JSONResponse({"success": True})
    delete_session_cookie(response)
    return response


@router.get("/auth/me")
async def whoami(request: Request):
    session = get_current_user(request)
    user = db.get_user_by_id(session["user_id"])
    if not user:
        return JSONResponse({"success": False, "error": "Not logged in"}, status_code=401)
    return {"user": public_user(user), "wallet": wallet_ledger.get_wallet(user["id"])}
