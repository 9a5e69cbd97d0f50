from __future__ import annotations
import logging
from collections import deque
from typing import Callable, Deque, Generic, List, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BoundedChannel(Generic[T]):
    """
    Outbound fan-out with a fixed-size replay buffer.

    publish() delivers synchronously to every subscriber and keeps the item in a
    deque of `capacity` entries; when full the oldest item is evicted and
    counted. A failing subscriber is logged and skipped.
    """

    def __init__(self, name: str, capacity: int = 1024):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.name = name
        self.capacity = capacity
        self._buf: Deque[T] = deque()
        self._subs: List[Callable[[T], None]] = []
        self.published = 0
        self.evicted = 0

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        self._subs.append(callback)

        def unsubscribe() -> None:
            if callback in self._subs:
                self._subs.remove(callback)

        return unsubscribe

    def publish(self, item: T) -> None:
        self.published += 1
        self._buf.append(item)
        if len(self._buf) > self.capacity:
            self._buf.popleft()
            self.evicted += 1
        for cb in list(self._subs):
            try:
                cb(item)
            except Exception:
                logger.exception("subscriber on channel %r failed", self.name)

    def drain(self) -> List[T]:
        out = list(self._buf)
        self._buf.clear()
        return out

    def __len__(self) -> int:
        return len(self._buf)
