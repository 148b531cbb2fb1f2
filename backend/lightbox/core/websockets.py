import asyncio
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional, Tuple

from fastapi import WebSocket, WebSocketDisconnect

from lightbox.core.uid import new_uid

logger = logging.getLogger(__name__)


@dataclass
class EventRecord:
    id: int
    event: str
    data: Any
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event": self.event,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


class WSClient:
    def __init__(self, websocket: Optional[WebSocket], buffer_size: int):
        self.id = new_uid()
        self.websocket = websocket
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=buffer_size)
        self.connected_at = datetime.now(timezone.utc)
        self.dropped = 0
        self.closed = False


class EventBroker:
    """Process-wide event log with best-effort live fanout to WebSocket clients.

    Every broadcast gets the next id from a single counter and lands in a
    bounded history ring. Delivery to a client never blocks: when its buffer
    is full the message is dropped for that client only.
    """

    def __init__(self, history_size: int = 512, client_buffer: int = 256):
        self._lock = threading.Lock()
        self._history: Deque[EventRecord] = deque(maxlen=history_size)
        self._last_id = 0
        self._clients: Dict[str, WSClient] = {}
        self.client_buffer = client_buffer
        self.loop: Optional[asyncio.AbstractEventLoop] = None

    def register(self, websocket: Optional[WebSocket] = None) -> WSClient:
        client = WSClient(websocket, self.client_buffer)
        with self._lock:
            self._clients[client.id] = client
        logger.info("Event client connected", extra={"client_id": client.id})
        return client

    def unregister(self, client_id: str) -> None:
        with self._lock:
            client = self._clients.pop(client_id, None)
        if client is not None:
            client.closed = True
            logger.info(
                "Event client disconnected",
                extra={"client_id": client_id, "dropped": client.dropped},
            )

    def _record(self, event: str, data: Any) -> EventRecord:
        # Caller holds self._lock
        self._last_id += 1
        record = EventRecord(id=self._last_id, event=event, data=data)
        self._history.append(record)
        return record

    def broadcast(self, event: str, data: Any = None) -> EventRecord:
        # Hand-off under the id lock keeps each client queue in id order
        with self._lock:
            record = self._record(event, data)
            message = record.to_dict()
            for client in self._clients.values():
                self._deliver(client, message)
        return record

    def send_to(self, client_id: str, event: str, data: Any = None) -> bool:
        with self._lock:
            client = self._clients.get(client_id)
            if client is None:
                return False
            record = self._record(event, data)
            self._deliver(client, record.to_dict())
        return True

    def get_recent(self, limit: int = 50) -> List[EventRecord]:
        with self._lock:
            if limit <= 0:
                return []
            return list(self._history)[-limit:]

    def since(self, cursor: int, limit: int = 100) -> Tuple[List[EventRecord], int]:
        """Events with id greater than ``cursor`` (oldest first) and the cursor to resume from."""
        with self._lock:
            records = [r for r in self._history if r.id > cursor][: max(limit, 0)]
            last_id = self._last_id
        if records:
            return records, records[-1].id
        return records, min(cursor, last_id) if cursor >= 0 else 0

    def clients(self) -> List[dict]:
        with self._lock:
            return [
                {
                    "id": c.id,
                    "connected_at": c.connected_at.isoformat(),
                    "dropped": c.dropped,
                }
                for c in self._clients.values()
            ]

    def stats(self) -> dict:
        with self._lock:
            return {
                "clients": len(self._clients),
                "last_id": self._last_id,
                "history_size": len(self._history),
                "history_capacity": self._history.maxlen,
            }

    def _deliver(self, client: WSClient, message: dict) -> None:
        loop = self.loop
        if loop is not None and loop.is_running() and not _running_on(loop):
            loop.call_soon_threadsafe(self._offer, client, message)
        else:
            self._offer(client, message)

    def _offer(self, client: WSClient, message: dict) -> None:
        if client.closed:
            return
        try:
            client.queue.put_nowait(message)
        except asyncio.QueueFull:
            client.dropped += 1
            logger.warning(
                "Event client buffer full, dropping message",
                extra={"client_id": client.id, "event_id": message.get("id")},
            )

    async def serve(self, websocket: WebSocket, ping_interval: float) -> None:
        """Pump events to one WebSocket until it disconnects."""
        await websocket.accept()
        if self.loop is None:
            # Broadcasts from worker threads must hop onto the serving loop
            self.loop = asyncio.get_running_loop()
        client = self.register(websocket)
        self.send_to(client.id, "connected", {"clientId": client.id})

        async def writer():
            while True:
                try:
                    message = await asyncio.wait_for(client.queue.get(), timeout=ping_interval)
                except asyncio.TimeoutError:
                    message = {"event": "ping", "timestamp": datetime.now(timezone.utc).isoformat()}
                await websocket.send_json(message)

        async def reader():
            # Incoming frames are ignored; this only notices the disconnect
            while True:
                await websocket.receive_text()

        tasks = [asyncio.create_task(writer()), asyncio.create_task(reader())]
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                exc = task.exception()
                if exc is not None and not isinstance(exc, (WebSocketDisconnect, RuntimeError)):
                    logger.warning("Event stream closed with error", extra={"client_id": client.id, "error": str(exc)})
        finally:
            for task in tasks:
                task.cancel()
            self.unregister(client.id)


def _running_on(loop: asyncio.AbstractEventLoop) -> bool:
    try:
        return asyncio.get_running_loop() is loop
    except RuntimeError:
        return False
