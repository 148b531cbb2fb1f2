import queue
import threading
from dataclasses import dataclass, field
from typing import Dict, Optional


@dataclass
class Message:
    uuid: str
    payload: bytes
    metadata: Dict[str, str] = field(default_factory=dict)


class PublishError(Exception):
    pass


class InProcessBroker:
    """Topic-partitioned FIFO queues shared by publishers and dispatchers."""

    def __init__(self, max_pending: int = 0):
        self._topics: Dict[str, queue.Queue] = {}
        self._lock = threading.Lock()
        self._max_pending = max_pending
        self._closed = False

    def _queue(self, topic: str) -> queue.Queue:
        with self._lock:
            q = self._topics.get(topic)
            if q is None:
                q = self._topics[topic] = queue.Queue(maxsize=self._max_pending)
            return q

    def publish(self, topic: str, message: Message) -> None:
        if self._closed:
            raise PublishError("broker is closed")
        try:
            self._queue(topic).put_nowait(message)
        except queue.Full:
            raise PublishError(f"topic {topic} is full") from None

    def next(self, topic: str, timeout: float) -> Optional[Message]:
        try:
            return self._queue(topic).get(timeout=timeout)
        except queue.Empty:
            return None

    def pending(self, topic: str) -> int:
        return self._queue(topic).qsize()

    def close(self) -> None:
        self._closed = True
