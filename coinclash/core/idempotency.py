"""
Idempotency decorator to prevent duplicate requests.
"""

from functools import wraps

from fastapi import Request

from coinclash.core.database import db
from coinclash.core.exceptions import CoinClashError, RaceLostError
from coinclash.core.security import get_current_user


def idempotent_request(func):
    """
    Decorator to process a request at most once per 'Idempotency-Key'.

    The header is optional. Keys are scoped to the logged-in player and are
    claimed before the endpoint runs, so a retry with the same key gets 409
    even while the first request is still in flight. A request the endpoint
    rejects with a domain error gives its key back.
    """

    @wraps(func)
    async def wrapper(request: Request, *args, **kwargs):
        idempotency_key = request.headers.get("Idempotency-Key")
        if not idempotency_key:
            return await func(request, *args, **kwargs)

        user_id = get_current_user(request)["user_id"]
        key = idempotency_key[:128]
        if not db.mark_key_as_used(user_id, key):
            raise RaceLostError("This request has already been processed.")

        try:
            return await func(request, *args, **kwargs)
        except CoinClashError as e:
            # Rejected requests roll back, so nothing was processed under this key
            if not isinstance(e, RaceLostError):
                db.release_key(user_id, key)
            raise

    return wrapper
