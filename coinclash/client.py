"""
Async client for the CoinClash HTTP API.

Implements the player side of a 1v1 game: join the queue, wait for a match
by re-reading the authoritative queue entry whenever the server pushes a
change notification for it, flip, then settle. Races are expected outcomes:
a lost flip falls back to reading the session, a repeated settlement falls
back to reading the wallet.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Dict, Optional

import httpx
import orjson
from websockets.asyncio.client import connect

from coinclash.config import settings
from coinclash.core.flow import PlayerFlow
from coinclash.core.logger import get_logger
from coinclash.core.security import SESSION_COOKIE

logger = get_logger("client")


class ApiError(Exception):
    def __init__(self, status_code: int, payload: dict):
        self.status_code = status_code
        self.payload = payload
        self.code = payload.get("code")
        super().__init__(payload.get("error") or payload.get("detail") or f"HTTP {status_code}")


def websocket_url(base_url: str) -> str:
    """The /ws endpoint of the server behind ``base_url``."""
    scheme, _, rest = base_url.partition("://")
    return f"{'wss' if scheme == 'https' else 'ws'}://{rest.rstrip('/')}/ws"


class CoinClashClient:
    def __init__(
        self,
        base_url: str = None,
        transport: httpx.AsyncBaseTransport = None,
        soft_timeout: float = None,
        ws_url: str = None,
    ):
        if base_url is None:
            base_url = f"http://{settings.server.host}:{settings.server.port}"
        self.http = httpx.AsyncClient(base_url=base_url, transport=transport)
        self.ws_url = ws_url or websocket_url(base_url)
        self.soft_timeout = soft_timeout if soft_timeout is not None else settings.matchmaking.soft_timeout_seconds
        self.flow = PlayerFlow()
        self.user: Optional[Dict] = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def aclose(self):
        await self.http.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> Dict:
        response = await self.http.request(method, path, **kwargs)
        payload = response.json() if response.content else {}
        if response.status_code >= 400:
            raise ApiError(response.status_code, payload)
        return payload

    @property
    def user_id(self) -> Optional[int]:
        return self.user["id"] if self.user else None

    # ==================== Account ====================

    async def register(self, username: str, password: str = None, referral_code: str = None) -> Dict:
        payload = await self._request(
            "POST",
            "/auth/register",
            json={"username": username, "password": password, "referral_code": referral_code},
        )
        self.user = payload["user"]
        return self.user

    async def login(self, username: str, password: str = None) -> Dict:
        payload = await self._request("POST", "/auth/login", json={"username": username, "password": password})
        self.user = payload["user"]
        return self.user

    async def wallet(self) -> Dict:
        return await self._request("GET", "/api/wallet")

    # ==================== 1v1 ====================

    async def join(self, choice: str, stake: int) -> Dict:
        return await self._request("POST", "/api/matchmaking/join", json={"choice": choice, "stake": stake})

    async def queue_entry(self, entry_id: str) -> Dict:
        return await self._request("GET", f"/api/matchmaking/{entry_id}")

    async def cancel(self, entry_id: str) -> Dict:
        return await self._request("POST", f"/api/matchmaking/{entry_id}/cancel")

    async def session(self, session_id: str) -> Dict:
        return await self._request("GET", f"/api/sessions/{session_id}")

    @asynccontextmanager
    async def subscribe(self, topic: str):
        """Open a /ws connection subscribed to ``topic`` and yield it once the server confirms."""
        headers = {}
        token = self.http.cookies.get(SESSION_COOKIE)
        if token:
            headers["Cookie"] = f"{SESSION_COOKIE}={token}"

        async with connect(self.ws_url, additional_headers=headers) as socket:
            await socket.send(orjson.dumps({"type": "subscribe", "topic": topic}).decode("utf-8"))
            while True:
                message = orjson.loads(await socket.recv())
                if message.get("type") == "error":
                    raise ApiError(403, {"error": message.get("message"), "code": "forbidden"})
                if message.get("type") == "status" and message.get("message") == f"Subscribed to {topic}":
                    break
            logger.debug(f"Subscribed to {topic}", extra={"user_id": self.user_id})
            yield socket

    async def _matched_entry(self, entry_id: str) -> Optional[Dict]:
        entry = await self.queue_entry(entry_id)
        if entry["status"] == "matched":
            return entry
        if entry["status"] != "waiting":
            raise ApiError(409, {"error": f"Queue entry {entry['status']}", "code": "already_matched"})
        return None

    async def _next_match(self, socket, entry_id: str) -> Dict:
        async for raw in socket:
            message = orjson.loads(raw)
            if message.get("type") != "row_changed" or message.get("id") != entry_id:
                continue
            entry = await self._matched_entry(entry_id)
            if entry is not None:
                return entry
        raise ApiError(503, {"error": "Notification connection closed", "code": "disconnected"})

    async def wait_for_match(self, entry_id: str, timeout: float = None) -> Optional[Dict]:
        """
        Wait for the queue entry to match. The entry is re-read once after
        subscribing to ``queue:<entry_id>`` and again on every change
        notification for it. Returns None after the soft timeout; the entry
        stays live server-side and may still match later.
        """
        timeout = self.soft_timeout if timeout is None else timeout
        async with self.subscribe(f"queue:{entry_id}") as socket:
            entry = await self._matched_entry(entry_id)
            if entry is not None:
                return entry
            try:
                return await asyncio.wait_for(self._next_match(socket, entry_id), timeout)
            except asyncio.TimeoutError:
                return None

    async def flip(self, session_id: str) -> Dict:
        """Flip the coin, or read the result if the opponent flipped first."""
        try:
            result = await self._request("POST", f"/api/sessions/{session_id}/flip")
        except ApiError as e:
            if e.code != "already_flipped":
                raise
            logger.debug("Opponent flipped first", extra={"session_id": session_id})
            return await self.session(session_id)
        return result["session"]

    async def settle(self, session_id: str) -> Dict:
        """Settle our side of the session, or read the wallet if already settled."""
        try:
            return await self._request("POST", f"/api/sessions/{session_id}/settle")
        except ApiError as e:
            if e.code != "already_settled":
                raise
            wallet = await self.wallet()
            return {"success": True, "balance": wallet["balance"], "already_settled": True}

    async def _finish_game(self, session_id: str) -> Dict:
        session = await self.flip(session_id)
        settlement = await self.settle(session_id)
        result = "win" if session["winner_id"] == self.user_id else "loss"
        won_amount = session["amount"] * settings.matchmaking.win_multiplier if result == "win" else None
        self.flow.game_complete(result, won_amount)
        return {
            "matched": True,
            "session_id": session_id,
            "result": result,
            "flip_result": session["flip_result"],
            "balance": settlement["balance"],
        }

    def _opponent_from_entry(self, entry: Dict) -> Dict:
        return {"user_id": entry["matched_with"]}

    async def play_1v1(self, choice: str, stake: int) -> Dict:
        """Run one full game from mode selection to the result screen."""
        if self.flow.stage == "mode":
            self.flow.select_mode("1v1")
        if self.flow.stage == "amount":
            self.flow.select_amount(stake)
        if self.flow.stage == "choice":
            self.flow.choose(choice)

        joined = await self.join(choice, stake)
        if joined["matched"]:
            self.flow.match_found(joined["session_id"], joined["opponent"])
            return await self._finish_game(joined["session_id"])

        entry = await self.wait_for_match(joined["queue_entry_id"])
        if entry is None:
            self.flow.soft_timeout()
            return {"matched": False, "queue_entry_id": joined["queue_entry_id"]}

        self.flow.match_found(entry["game_session_id"], self._opponent_from_entry(entry))
        return await self._finish_game(entry["game_session_id"])

    async def check_late_match(self, entry_id: str) -> Optional[Dict]:
        """After a soft timeout, pick up a match that arrived late."""
        entry = await self.queue_entry(entry_id)
        if entry["status"] != "matched":
            return None
        self.flow.match_found(entry["game_session_id"], self._opponent_from_entry(entry))
        return await self._finish_game(entry["game_session_id"])

    # ==================== Multiplayer ====================

    async def current_round(self) -> Dict:
        return await self._request("GET", "/api/multiplayer/current")

    async def place_bet(self, round_id: str, side: str, amount: int) -> Dict:
        return await self._request(
            "POST", f"/api/multiplayer/rounds/{round_id}/bet", json={"side": side, "amount": amount}
        )
