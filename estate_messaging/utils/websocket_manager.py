import asyncio
from typing import Dict, List

from fastapi import WebSocket

from estate_messaging.schemas.messaging import MessagingSnapshot


class ConnectionManager:

    def __init__(self) -> None:
        self.active_connections: Dict[str, List[asyncio.Queue]] = {}

    async def connect(self, user_id: str, websocket: WebSocket) -> asyncio.Queue:
        await websocket.accept()
        queue: asyncio.Queue = asyncio.Queue()
        if user_id not in self.active_connections:
            self.active_connections[user_id] = []
        self.active_connections[user_id].append(queue)
        return queue

    def disconnect(self, user_id: str, queue: asyncio.Queue) -> None:
        if user_id in self.active_connections:
            try:
                self.active_connections[user_id].remove(queue)
            except ValueError:
                pass
            if not self.active_connections[user_id]:
                del self.active_connections[user_id]

    def connection_count(self, user_id: str) -> int:
        return len(self.active_connections.get(user_id, []))


def snapshot_payload(snapshot: MessagingSnapshot) -> dict:
    return {"type": "snapshot", "data": snapshot.model_dump(mode="json")}
