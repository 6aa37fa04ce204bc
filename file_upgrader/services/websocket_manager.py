import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import WebSocket

MAX_QUEUED_NOTIFICATIONS = 1000


class WebSocketManager:
    """
    Progress sink backed by the clients connected to /api/ws/live.

    publish() never blocks: notifications are queued and a sender task fans
    them out, so a slow browser cannot stall the scheduler or the publisher.
    """

    def __init__(self, max_queued: int = MAX_QUEUED_NOTIFICATIONS):
        self._clients: List[WebSocket] = []
        self._outbox: asyncio.Queue = asyncio.Queue(maxsize=max_queued)
        self._dropped = 0
        self._sender: Optional[asyncio.Task] = None

    @property
    def connection_count(self) -> int:
        return len(self._clients)

    def start_sender_task(self) -> None:
        if self._sender is None:
            self._sender = asyncio.create_task(self._send_loop())
            logging.debug("Notification sender started")

    def stop_sender_task(self) -> None:
        if self._sender is not None:
            self._sender.cancel()
            self._sender = None
            logging.debug("Notification sender stopped")

    @property
    def dropped(self) -> int:
        return self._dropped

    def publish(self, topic: str, snapshot: Dict[str, Any]) -> None:
        """Queues a notification. When the outbox is full the notification is dropped."""
        try:
            self._outbox.put_nowait({"topic": topic, "data": snapshot})
        except asyncio.QueueFull:
            self._dropped += 1
            if self._dropped == 1 or self._dropped % 100 == 0:
                logging.warning(f"Notification outbox full, {self._dropped} {topic} message(s) dropped so far")

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self._clients.append(websocket)
        logging.info(f"Progress client forbundet ({len(self._clients)} i alt)")

    def disconnect(self, websocket: WebSocket) -> None:
        if websocket in self._clients:
            self._clients.remove(websocket)
            logging.info(f"Progress client afbrudt ({len(self._clients)} tilbage)")

    async def _send_loop(self) -> None:
        while True:
            notification = await self._outbox.get()
            try:
                await self._broadcast_to_connections(notification)
            except Exception as e:
                logging.error(f"Broadcast of {notification.get('topic')} failed: {e}")
            finally:
                self._outbox.task_done()

    async def _broadcast_to_connections(self, notification: Dict[str, Any]) -> None:
        if not self._clients:
            return

        payload = json.dumps(notification, default=str)
        for websocket in list(self._clients):
            try:
                await websocket.send_text(payload)
            except Exception as e:
                logging.warning(f"Dropping progress client after send error: {e}")
                self.disconnect(websocket)
