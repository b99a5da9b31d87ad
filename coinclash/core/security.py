from datetime import timedelta
from typing import Dict, Optional

import orjson
from fastapi import HTTPException, Request, Response
from itsdangerous import BadSignature, SignatureExpired, TimestampSigner

from coinclash.config import settings

SESSION_COOKIE = "session"

# Signs the player session cookie
signer = TimestampSigner(settings.security.secret_key)


def _max_age() -> int:
    return int(timedelta(days=settings.security.session_max_age_days).total_seconds())


def set_session_cookie(response: Response, user: Dict):
    session_data = {"user_id": user["id"], "username": user["username"]}
    token = signer.sign(orjson.dumps(session_data)).decode("utf-8")
    response.set_cookie(
        SESSION_COOKIE,
        token,
        max_age=_max_age(),
        httponly=True,
        samesite="lax",
        secure=not settings.server.debug,
    )


def delete_session_cookie(response: Response):
    response.delete_cookie(SESSION_COOKIE)


def read_session(token: Optional[str]) -> Optional[Dict]:
    """Return the session payload of a signed cookie, or None if missing, forged or expired."""
    if not token:
        return None
    try:
        payload = signer.unsign(token, max_age=_max_age())
    except (SignatureExpired, BadSignature):
        return None
    return orjson.loads(payload)


def get_current_user(request: Request) -> Dict:
    session = read_session(request.cookies.get(SESSION_COOKIE))
    if not session:
        raise HTTPException(status_code=401, detail="Not logged in")
    return session
