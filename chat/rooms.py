import logging
from collections import defaultdict
from typing import Dict, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Keeps the live WebSocket listeners of each chat room."""

    def __init__(self):
        self.rooms: Dict[str, Set[WebSocket]] = defaultdict(set)

    async def join(self, room_id: str, websocket: WebSocket):
        await websocket.accept()
        self.rooms[room_id].add(websocket)
        logger.info(f"Listener joined room {room_id} ({len(self.rooms[room_id])} connected)")

    def leave(self, room_id: str, websocket: WebSocket):
        listeners = self.rooms.get(room_id)
        if not listeners:
            return
        listeners.discard(websocket)
        if not listeners:
            del self.rooms[room_id]
        logger.info(f"Listener left room {room_id}")

    async def broadcast(self, room_id: str, payload: dict, sender: WebSocket = None):
        # Best effort: a listener that fails to receive is dropped from the room.
        for listener in list(self.rooms.get(room_id, ())):
            if listener is sender:
                continue
            try:
                await listener.send_json(payload)
            except Exception as e:
                logger.warning(f"Dropping listener from room {room_id}: {e}")
                self.leave(room_id, listener)


manager = ConnectionManager()
