"""
In-process fan-out of courier positions to live-tracking viewers.

Each viewer owns a bounded asyncio queue bound to the event loop it
subscribed from. Publishers may run on any thread (sync endpoints execute
in the threadpool), so delivery always goes through
``loop.call_soon_threadsafe``. A ``None`` on the queue ends the stream.
"""
import asyncio
import json
import logging
import threading
from typing import Any, AsyncGenerator, Optional

from fastapi import Request

from .metrics import TRACKING_SUBSCRIBERS

logger = logging.getLogger(__name__)

QUEUE_SIZE = 64


class Subscription:
    def __init__(self, order_number: str, loop: asyncio.AbstractEventLoop, maxsize: int = QUEUE_SIZE):
        self.order_number = order_number
        self.loop = loop
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def _put(self, event: Optional[dict[str, Any]]) -> None:
        # Runs on the subscriber's loop. A slow viewer loses its oldest positions, never the end marker.
        if self.queue.full():
            try:
                self.queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
        self.queue.put_nowait(event)

    def deliver(self, event: Optional[dict[str, Any]]) -> None:
        if self.loop.is_closed():
            return
        try:
            self.loop.call_soon_threadsafe(self._put, event)
        except RuntimeError:
            logger.debug("Tracking loop gone for order %s", self.order_number)

    async def get(self, timeout: float | None = None) -> Optional[dict[str, Any]]:
        return await asyncio.wait_for(self.queue.get(), timeout=timeout)


class TrackingHub:
    def __init__(self):
        self._subs: dict[str, set[Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, order_number: str) -> Subscription:
        sub = Subscription(order_number, asyncio.get_running_loop())
        with self._lock:
            self._subs.setdefault(order_number, set()).add(sub)
        TRACKING_SUBSCRIBERS.inc()
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subs.get(sub.order_number)
            if subs is None or sub not in subs:
                return
            subs.discard(sub)
            if not subs:
                del self._subs[sub.order_number]
        sub.closed = True
        TRACKING_SUBSCRIBERS.dec()

    def subscriber_count(self, order_number: str) -> int:
        with self._lock:
            return len(self._subs.get(order_number, ()))

    def publish(self, order_number: str, event: dict[str, Any]) -> int:
        with self._lock:
            subs = list(self._subs.get(order_number, ()))
        for sub in subs:
            sub.deliver(event)
        return len(subs)

    def close(self, order_number: str) -> None:
        """End every open stream for an order; the viewers unsubscribe themselves."""
        with self._lock:
            subs = list(self._subs.get(order_number, ()))
        for sub in subs:
            sub.deliver(None)


hub = TrackingHub()


def sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


async def event_stream(
    hub: TrackingHub,
    order_number: str,
    request: Request,
    keepalive: float,
    initial: Optional[dict[str, Any]] = None,
    sub: Optional[Subscription] = None,
) -> AsyncGenerator[str, None]:
    """Relay an order's positions as SSE.

    Pass ``sub`` when the caller subscribed before reading the order, so a
    close published in between still ends the stream.
    """
    if sub is None:
        sub = hub.subscribe(order_number)
    try:
        yield f": connected to order {sub.order_number}\n\n"
        if initial is not None:
            yield sse("position", initial)
        while True:
            if await request.is_disconnected():
                break
            try:
                event = await sub.get(timeout=keepalive)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            if event is None:
                yield sse("end", {"order_number": sub.order_number})
                break
            yield sse("position", event)
    finally:
        hub.unsubscribe(sub)
