from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any, AsyncIterator, DefaultDict

HEALTH_TOPIC = "api.health"


class EventBus:
    """In-process topic pub/sub.

    Subscribers get a bounded queue per topic. Publishing never blocks; events
    for a full queue are dropped for that subscriber only.
    """

    def __init__(self) -> None:
        self._topic_to_queues: DefaultDict[str, list[asyncio.Queue[dict[str, Any]]]] = defaultdict(list)

    def open(self, topic: str, max_queue_size: int = 100) -> asyncio.Queue[dict[str, Any]]:
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=max_queue_size)
        self._topic_to_queues[topic].append(queue)
        return queue

    def close(self, topic: str, queue: asyncio.Queue[dict[str, Any]]) -> None:
        queues = self._topic_to_queues.get(topic, [])
        if queue in queues:
            queues.remove(queue)
        if not queues:
            self._topic_to_queues.pop(topic, None)

    def subscriber_count(self, topic: str) -> int:
        return len(self._topic_to_queues.get(topic, []))

    def publish_nowait(self, topic: str, event: dict[str, Any]) -> None:
        for queue in list(self._topic_to_queues.get(topic, [])):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                pass

    async def subscribe(self, topic: str, max_queue_size: int = 100) -> AsyncIterator[dict[str, Any]]:
        queue = self.open(topic, max_queue_size)
        try:
            while True:
                event = await queue.get()
                yield event
        finally:
            self.close(topic, queue)
