import asyncio
import logging
from typing import Any, Dict, List, Optional

from .db import utc_now


logger = logging.getLogger("uvicorn.error")


class EventBus:
    """In-memory fan-out of per-session notifications for SSE clients."""

    def __init__(self, max_queue_size: int = 1000):
        self.subscribers: Dict[str, List[asyncio.Queue]] = {}
        self.global_subscribers: List[asyncio.Queue] = []
        self.lock = asyncio.Lock()
        self.max_queue_size = max_queue_size
        self._seq = 0

    async def publish(self, session_id: Optional[str], event_type: str, payload: Optional[dict] = None) -> Optional[dict]:
        """Best-effort delivery; never raises into the caller."""
        if not session_id:
            return None
        try:
            self._seq += 1
            event = {
                "seq": self._seq,
                "session_id": session_id,
                "event_type": event_type,
                "payload": dict(payload or {}),
                "created_at": utc_now(),
            }
            async with self.lock:
                queues = list(self.subscribers.get(session_id, []))
                global_queues = list(self.global_subscribers)
            for q in queues + global_queues:
                self._offer(q, event)
            return event
        except Exception as exc:
            logger.warning("Publish %s to %s failed: %s", event_type, session_id, exc)
            return None

    def _offer(self, queue: asyncio.Queue, event: Dict[str, Any]) -> None:
        if queue.full():
            # Slow consumer: drop the oldest event instead of blocking the turn.
            try:
                queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
        queue.put_nowait(event)

    async def subscribe(self, session_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        async with self.lock:
            self.subscribers.setdefault(session_id, []).append(queue)
        return queue

    async def subscribe_global(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        async with self.lock:
            self.global_subscribers.append(queue)
        return queue

    async def unsubscribe(self, session_id: str, queue: asyncio.Queue) -> None:
        async with self.lock:
            queues = self.subscribers.get(session_id, [])
            if queue in queues:
                queues.remove(queue)
            if not queues:
                self.subscribers.pop(session_id, None)

    async def unsubscribe_global(self, queue: asyncio.Queue) -> None:
        async with self.lock:
            if queue in self.global_subscribers:
                self.global_subscribers.remove(queue)
