import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field

from services.database import AnalysisStatus

log = logging.getLogger(__name__)

BATCH_PROCESSING_TOPIC = "batch_processing"


@dataclass
class AnalysisUpdate:
    entry_id: int | str
    status: AnalysisStatus
    data: dict = field(default_factory=dict)


class Subscription:
    def __init__(self, pubsub: "PubSub", topic: str):
        self.pubsub = pubsub
        self.topic = topic
        self.queue: asyncio.Queue = asyncio.Queue()

    async def get(self):
        return await self.queue.get()

    def close(self):
        self.pubsub.unsubscribe(self)

    def __aiter__(self):
        return self

    async def __anext__(self):
        return await self.queue.get()


class PubSub:
    """In-process topic fan-out. Each subscriber gets its own unbounded queue."""

    def __init__(self):
        self._subscribers: dict[str, list[Subscription]] = defaultdict(list)

    def subscribe(self, topic: str) -> Subscription:
        sub = Subscription(self, topic)
        self._subscribers[topic].append(sub)
        return sub

    def unsubscribe(self, sub: Subscription):
        subs = self._subscribers.get(sub.topic, [])
        if sub in subs:
            subs.remove(sub)

    def broadcast(self, topic: str, message) -> int:
        subs = list(self._subscribers.get(topic, []))
        for sub in subs:
            sub.queue.put_nowait(message)
        log.debug(f"Broadcast on {topic} to {len(subs)} subscriber(s): {message}")
        return len(subs)

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, []))


# Singleton instance
pubsub = PubSub()
