from __future__ import annotations
import asyncio
import logging
from typing import Any, AsyncIterator, Callable, Dict, List, Tuple

logger = logging.getLogger(__name__)

READING = "reading"
STATUS_CHANGED = "status_changed"
KINDS = (READING, STATUS_CHANGED)

Callback = Callable[[Any], None]


class Subscription:
    def __init__(self, bus: "EventBus", kind: str, fn: Callback) -> None:
        self.bus = bus
        self.kind = kind
        self.fn = fn

    def unsubscribe(self) -> None:
        self.bus.unsubscribe(self)


class EventBus:
    """
    Publish/subscribe hub between the connection manager and its consumers.

    Callbacks run inline, in subscription order, on the publishing thread
    (the event loop). A subscriber that raises is logged and skipped. Late
    subscribers get nothing that was published before they joined.
    """

    def __init__(self) -> None:
        self._subs: Dict[str, List[Subscription]] = {kind: [] for kind in KINDS}

    def subscribe(self, kind: str, fn: Callback) -> Subscription:
        if kind not in self._subs:
            raise ValueError(f"Unknown event kind {kind!r}")
        sub = Subscription(self, kind, fn)
        self._subs[kind].append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        subs = self._subs.get(sub.kind, [])
        if sub in subs:
            subs.remove(sub)

    def subscriber_count(self, kind: str) -> int:
        return len(self._subs.get(kind, []))

    def publish(self, kind: str, payload: Any = None) -> None:
        # copy: a callback may unsubscribe itself
        for sub in list(self._subs.get(kind, [])):
            try:
                sub.fn(payload)
            except Exception:
                logger.exception(f"Subscriber {sub.fn!r} failed on {kind}")

    async def stream(self, *kinds: str, maxsize: int = 100) -> AsyncIterator[Tuple[str, Any]]:
        """
        Yield (kind, payload) pairs as they are published, through a private
        queue. When the consumer falls behind by `maxsize` events the oldest
        one is dropped.
        """
        queue: "asyncio.Queue[Tuple[str, Any]]" = asyncio.Queue(maxsize=maxsize)

        def _enqueue(kind: str) -> Callback:
            def _put(payload: Any) -> None:
                if queue.full():
                    queue.get_nowait()
                    logger.warning("Event stream consumer too slow, dropping oldest event")
                queue.put_nowait((kind, payload))
            return _put

        subs = [self.subscribe(kind, _enqueue(kind)) for kind in (kinds or KINDS)]
        try:
            while True:
                yield await queue.get()
        finally:
            for sub in subs:
                sub.unsubscribe()
