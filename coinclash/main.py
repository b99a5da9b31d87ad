"""
CoinClash Main Application Entry Point
FastAPI backend for 1v1 coin flips and multiplayer pool rounds, with
WebSocket change notifications.
"""

import time
from collections import deque

import orjson as json
import uvicorn
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.middleware.base import BaseHTTPMiddleware

from coinclash.config import settings
from coinclash.core.exceptions import CoinClashError, NotFoundError
from coinclash.core.logger import get_logger, init_logging
from coinclash.core.matchmaking import matchmaker
from coinclash.core.multiplayer import multiplayer_rounds
from coinclash.core.scheduler import game_scheduler
from coinclash.core.security import SESSION_COOKIE, read_session
from coinclash.core.sessions import game_sessions
from coinclash.core.websocket import ROUNDS_TOPIC, ws_manager
from coinclash.routers import api
from coinclash.routers.auth import router as auth_router

# Initialize logging first
init_logging(
    level=settings.logging.level,
    log_to_file=settings.logging.log_to_file,
    formatter=settings.logging.formatter,
    log_file_path=settings.paths.get_log_path(),
)
logger = get_logger("main")
ws_logger = get_logger("websocket")


# WebSocket Rate Limiting
WS_MAX_MESSAGES = 10  # Max messages per user
WS_RATE_LIMIT_SECONDS = 2  # In this time window
ws_rate_limiter = {}  # user_id -> deque of timestamps


# ==================== Security Headers Middleware ====================


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = (
            "default-src 'self'; connect-src 'self' ws: wss:; frame-ancestors 'none'"
        )
        return response


# ==================== UVLoop Integration =====================

try:
    import uvloop

    uvloop.install()
    logger.info("uvloop installed and enabled.")
except ImportError:
    logger.info("uvloop not found, using default asyncio event loop.")


# ==================== Error Handlers ====================


async def coinclash_error_handler(request: Request, exc: CoinClashError):
    """Expected domain errors: validation, race lost, funds, payments."""
    logger.info(f"{exc.code}: {exc.message}", extra={"path": request.url.path})
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def global_exception_handler(request: Request, exc: Exception):
    """Handle unhandled exceptions gracefully."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal server error",
            "code": "internal_error",
            "detail": str(exc) if settings.server.debug else None,
        },
    )


# ==================== Application Setup ====================


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.server.name,
        docs_url="/docs" if settings.server.debug else None,
        redoc_url=None,
    )

    # Add slowapi rate limiter
    app.state.limiter = api.limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(CoinClashError, coinclash_error_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    app.add_middleware(SecurityHeadersMiddleware)

    # CORS middleware (for development)
    if settings.server.debug:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(auth_router)
    app.include_router(api.router, prefix="/api")

    return app


app = create_app()


@app.on_event("startup")
async def startup_event():
    if settings.scheduler.enabled:
        game_scheduler.start()


@app.on_event("shutdown")
def shutdown_event():
    game_scheduler.shutdown()


logger.info(f"Application '{settings.server.name}' initialized")
logger.info(f"Debug mode: {settings.server.debug}")


# ==================== WebSocket Endpoint ====================


def topic_allowed(topic: str, user_id: int) -> bool:
    """Queue topics are private to the entry owner, session topics to the two players."""
    if topic == ROUNDS_TOPIC:
        return True

    prefix, _, row_id = topic.partition(":")
    if not row_id:
        return False
    if prefix == "queue":
        return matchmaker.get_entry_owner(row_id) == user_id
    if prefix == "session":
        return user_id in game_sessions.get_participants(row_id)
    if prefix == "round":
        try:
            multiplayer_rounds.get_round(row_id)
        except NotFoundError:
            return False
        return True
    return False


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """
    WebSocket endpoint for row change notifications.
    Commands: ping, subscribe, unsubscribe.
    """
    user = read_session(websocket.cookies.get(SESSION_COOKIE))
    client_ip = websocket.client.host if websocket.client else None

    if not user:
        ws_logger.warning(
            "WebSocket connection denied due to invalid auth",
            extra={"client_ip": client_ip},
        )
        await websocket.accept()
        await websocket.send_bytes(json.dumps({"type": "error", "message": "Authentication failed"}))
        await websocket.close()
        return

    user_id = user["user_id"]
    await ws_manager.connect(websocket, user_id)
    user_timestamps = ws_rate_limiter.setdefault(user_id, deque())

    try:
        while True:
            data = await websocket.receive_text()

            current_time = time.time()
            while user_timestamps and user_timestamps[0] < current_time - WS_RATE_LIMIT_SECONDS:
                user_timestamps.popleft()

            if len(user_timestamps) >= WS_MAX_MESSAGES:
                ws_logger.warning(
                    "WebSocket rate limit exceeded",
                    extra={"user_id": user_id, "client_ip": client_ip},
                )
                continue
            user_timestamps.append(current_time)

            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                await websocket.send_bytes(json.dumps({"type": "error", "message": "Invalid JSON"}))
                continue

            msg_type = message.get("type") if isinstance(message, dict) else None
            topic = message.get("topic") if isinstance(message, dict) else None

            if msg_type == "ping":
                await websocket.send_bytes(json.dumps({"type": "pong"}))

            elif msg_type == "subscribe" and topic:
                if topic_allowed(topic, user_id):
                    await ws_manager.subscribe(websocket, topic)
                else:
                    await websocket.send_bytes(
                        json.dumps({"type": "error", "message": "Topic not found"})
                    )

            elif msg_type == "unsubscribe" and topic:
                await ws_manager.unsubscribe(websocket, topic)

    except WebSocketDisconnect as e:
        ws_logger.info(
            "WebSocket disconnected",
            extra={"user_id": user_id, "client_ip": client_ip, "ws_disconnect_code": e.code},
        )
    except Exception as e:
        ws_logger.error(
            f"WebSocket error: {e}",
            extra={"user_id": user_id, "client_ip": client_ip},
            exc_info=True,
        )
    finally:
        ws_manager.disconnect(websocket, user_id)
        if user_id not in ws_manager.active_connections:
            ws_rate_limiter.pop(user_id, None)


# ==================== Main Entry Point ====================

if __name__ == "__main__":
    logger.info(f"Starting server on {settings.server.host}:{settings.server.port}")
    uvicorn.run(
        "coinclash.main:app",
        host=settings.server.host,
        port=settings.server.port,
        reload=settings.server.debug,
    )
