import asyncio
from typing import Dict, List

from .db import utc_now


class EventBus:
    """In-memory fan-out for SSE subscribers."""

    def __init__(self) -> None:
        self.subscribers: Dict[str, List[asyncio.Queue]] = {}
        self.global_subscribers: List[asyncio.Queue] = []
        self.lock = asyncio.Lock()
        self.seq = 0

    async def emit(self, topic: str, event_type: str, payload: dict) -> dict:
        async with self.lock:
            self.seq += 1
            event = {
                "seq": self.seq,
                "topic": topic,
                "event_type": event_type,
                "payload": dict(payload or {}),
                "created_at": utc_now(),
            }
            queues = list(self.subscribers.get(topic, []))
            global_queues = list(self.global_subscribers)
        for q in queues:
            await q.put(event)
        for q in global_queues:
            await q.put(event)
        return event

    async def subscribe(self, topic: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        async with self.lock:
            self.subscribers.setdefault(topic, []).append(queue)
        return queue

    async def subscribe_global(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        async with self.lock:
            self.global_subscribers.append(queue)
        return queue

    async def unsubscribe(self, topic: str, queue: asyncio.Queue) -> None:
        async with self.lock:
            queues = self.subscribers.get(topic, [])
            if queue in queues:
                queues.remove(queue)
            if not queues:
                self.subscribers.pop(topic, None)

    async def unsubscribe_global(self, queue: asyncio.Queue) -> None:
        async with self.lock:
            if queue in self.global_subscribers:
                self.global_subscribers.remove(queue)
