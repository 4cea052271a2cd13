"""In-process fan-out of live notifications to stream subscribers.

Each subscriber gets its own bounded queue. Publishing never blocks: when a
slow subscriber's queue is full the oldest notification is dropped.
"""

import logging
import threading
import time
from collections import deque

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 1000


class Subscription:
    def __init__(self, broadcaster: "Broadcaster", maxlen: int):
        self._broadcaster = broadcaster
        self._queue: deque[dict] = deque(maxlen=maxlen)
        self._lock = threading.Lock()
        self.dropped = 0

    def put(self, item: dict):
        with self._lock:
            if len(self._queue) == self._queue.maxlen:
                self.dropped += 1
            self._queue.append(item)

    def drain(self) -> list[dict]:
        """Take everything queued so far."""
        with self._lock:
            items = list(self._queue)
            self._queue.clear()
        return items

    def close(self):
        self._broadcaster.unsubscribe(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class Broadcaster:
    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscribers: list[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self) -> Subscription:
        sub = Subscription(self, self.queue_size)
        with self._lock:
            self._subscribers.append(sub)
        logger.debug("Subscriber added (%d total)", len(self._subscribers))
        return sub

    def unsubscribe(self, sub: Subscription):
        with self._lock:
            if sub in self._subscribers:
                self._subscribers.remove(sub)
                if sub.dropped:
                    logger.info("Subscriber closed after dropping %d notifications", sub.dropped)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, event_type: str, data: dict):
        item = {"type": event_type, "data": data, "timestamp": time.time()}
        with self._lock:
            subscribers = list(self._subscribers)
        for sub in subscribers:
            sub.put(item)
