"""
WebSocket manager for row change notifications.

Clients subscribe to per-entity topics (``queue:<id>``, ``session:<id>``,
``round:<id>``) and the global ``rounds`` topic. Delivery is at-least-once
and carries only the row id and status; clients re-read the row.
"""

import asyncio
from typing import Dict, Set

import orjson
from fastapi import WebSocket

from coinclash.core.logger import get_logger

logger = get_logger("websocket")

TOPIC_PREFIXES = {
    "matchmaking_queue": "queue",
    "game_sessions": "session",
    "multiplayer_rounds": "round",
}
ROUNDS_TOPIC = "rounds"


def topic_for(table: str, row_id: str) -> str:
    return f"{TOPIC_PREFIXES[table]}:{row_id}"


class ConnectionManager:
    """Tracks connections per user and topic subscriptions."""

    def __init__(self):
        # user_id -> that user's sockets (one per open tab)
        self.active_connections: Dict[int, Set[WebSocket]] = {}
        self.all_connections: Set[WebSocket] = set()
        self.topics: Dict[str, Set[WebSocket]] = {}

    async def _send_json(self, websocket: WebSocket, data: dict):
        await websocket.send_bytes(orjson.dumps(data))

    async def connect(self, websocket: WebSocket, user_id: int):
        await websocket.accept()
        self.all_connections.add(websocket)
        self.active_connections.setdefault(user_id, set()).add(websocket)
        self.topics.setdefault(ROUNDS_TOPIC, set()).add(websocket)
        logger.info(
            f"WebSocket connected, total={len(self.all_connections)}", extra={"user_id": user_id}
        )

    def disconnect(self, websocket: WebSocket, user_id: int = None):
        self.all_connections.discard(websocket)

        if user_id in self.active_connections:
            self.active_connections[user_id].discard(websocket)
            if not self.active_connections[user_id]:
                del self.active_connections[user_id]

        for topic in list(self.topics):
            self.topics[topic].discard(websocket)
            if not self.topics[topic] and topic != ROUNDS_TOPIC:
                del self.topics[topic]

        logger.info(f"WebSocket disconnected, total={len(self.all_connections)}")

    async def subscribe(self, websocket: WebSocket, topic: str):
        self.topics.setdefault(topic, set()).add(websocket)
        await self._send_json(websocket, {"type": "status", "message": f"Subscribed to {topic}"})

    async def unsubscribe(self, websocket: WebSocket, topic: str):
        if topic in self.topics:
            self.topics[topic].discard(websocket)
        await self._send_json(websocket, {"type": "status", "message": f"Unsubscribed from {topic}"})

    async def publish(self, topic: str, message: dict, batch_size: int = 100, delay: float = 0.01):
        """
        Send a message to every subscriber of a topic, in batches so a large
        audience does not starve the event loop. Dead sockets are dropped.
        """
        subscribers = list(self.topics.get(topic, ()))
        if not subscribers:
            return

        disconnected = []
        for i in range(0, len(subscribers), batch_size):
            batch = subscribers[i : i + batch_size]
            results = await asyncio.gather(
                *(self._send_json(ws, message) for ws in batch), return_exceptions=True
            )
            for ws, result in zip(batch, results):
                if isinstance(result, Exception):
                    disconnected.append(ws)

            if delay > 0 and i + batch_size < len(subscribers):
                await asyncio.sleep(delay)

        if disconnected:
            logger.info(f"Dropping {len(disconnected)} dead sockets from {topic}")
            for ws in disconnected:
                for user_id, sockets in list(self.active_connections.items()):
                    if ws in sockets:
                        self.disconnect(ws, user_id)
                        break
                else:
                    self.disconnect(ws)

    async def publish_row_change(self, table: str, row_id: str, status: str):
        message = {"type": "row_changed", "table": table, "id": row_id, "status": status}
        await self.publish(topic_for(table, row_id), message)
        if table == "multiplayer_rounds":
            await self.publish(ROUNDS_TOPIC, message)

    def get_connection_count(self) -> int:
        return len(self.all_connections)


# Global WebSocket manager instance
ws_manager = ConnectionManager()
