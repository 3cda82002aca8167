"""
Progress Broadcaster
Streams session snapshots to WebSocket clients subscribed to a session
"""
import asyncio
import logging
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import WebSocket

from backend.models.session import SessionResponse
from cart_copilot.control_panel.session_manager import Session

logger = logging.getLogger(__name__)


class ProgressBroadcaster:
    """Fan-out of session updates, keyed by session id"""

    def __init__(self):
        self.websockets: Dict[str, List[WebSocket]] = {}
        self.latest: Dict[str, dict] = {}

    async def connect(self, session_id: str, websocket: WebSocket):
        """Accept a client and send it the latest snapshot, if any"""
        await websocket.accept()
        self.websockets.setdefault(session_id, []).append(websocket)

        snapshot = self.latest.get(session_id)
        if snapshot is not None:
            await self._send(session_id, websocket, snapshot)

    def disconnect(self, session_id: str, websocket: WebSocket):
        clients = self.websockets.get(session_id, [])
        if websocket in clients:
            clients.remove(websocket)
        if not clients:
            self.websockets.pop(session_id, None)

    def publish(self, session: Session):
        """SessionManager listener; schedules delivery on the running loop"""
        message = {
            "type": "session",
            "session": SessionResponse.from_session(session).model_dump(mode="json"),
            "timestamp": datetime.now().isoformat(),
        }
        self.latest[session.session_id] = message
        if not self.websockets.get(session.session_id):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("BROADCAST: No running loop, update kept as latest snapshot only")
            return
        loop.create_task(self.broadcast(session.session_id, message))

    async def broadcast(self, session_id: str, message: dict):
        for ws in list(self.websockets.get(session_id, [])):
            await self._send(session_id, ws, message)

    async def _send(self, session_id: str, websocket: WebSocket, message: dict):
        try:
            await websocket.send_json(message)
        except Exception as e:
            logger.info(f"BROADCAST: Dropping client of {session_id}: {e}")
            self.disconnect(session_id, websocket)

    def snapshot(self, session_id: str) -> Optional[dict]:
        return self.latest.get(session_id)

    def forget(self, session_id: str):
        self.latest.pop(session_id, None)


progress_broadcaster = ProgressBroadcaster()
