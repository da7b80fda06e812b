# backoffice/events.py
"""
Order event fan-out to dashboard sessions over server-sent events.

Delivery is best-effort and at-most-once: a subscriber whose queue is full,
or that is not connected when an event is published, simply misses it and
resynchronizes on its next full list refresh.
"""
from __future__ import annotations

import asyncio
import json
import logging
import threading
from typing import AsyncIterator, Optional, Set

from starlette.requests import Request

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 100
DEFAULT_HEARTBEAT_S = 15.0
CLIENT_RETRY_MS = 3000


class Subscription:
    """One connected dashboard. Owns a bounded queue on its event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop, maxsize: int = DEFAULT_QUEUE_SIZE):
        self.loop = loop
        self.queue: "asyncio.Queue[str]" = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def offer(self, payload: str) -> None:
        """Schedule delivery; safe to call from any thread, never blocks."""
        if self.loop.is_closed():
            return
        try:
            self.loop.call_soon_threadsafe(self._put, payload)
        except RuntimeError:
            # loop shut down between the check and the call
            pass

    def _put(self, payload: str) -> None:
        try:
            self.queue.put_nowait(payload)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("subscriber queue full, dropped event (total dropped=%d)", self.dropped)

    async def next(self, timeout: Optional[float] = None) -> Optional[str]:
        """Wait for the next payload; None on timeout."""
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None


class EventBroadcaster:
    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE, heartbeat_s: float = DEFAULT_HEARTBEAT_S):
        self.queue_size = queue_size
        self.heartbeat_s = heartbeat_s
        self._subs: Set[Subscription] = set()
        self._lock = threading.Lock()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subs)

    def subscribe(self) -> Subscription:
        """Register a subscriber on the running event loop."""
        sub = Subscription(asyncio.get_running_loop(), maxsize=self.queue_size)
        with self._lock:
            self._subs.add(sub)
        logger.info("order stream subscribed (subscribers=%d)", self.subscriber_count)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            self._subs.discard(sub)
        logger.info("order stream closed (subscribers=%d)", self.subscriber_count)

    def publish(self, event: dict) -> int:
        """Fan ``event`` out to every current subscriber. Returns how many were offered it."""
        payload = json.dumps(event, default=str, separators=(",", ":"))
        with self._lock:
            subs = list(self._subs)
        for sub in subs:
            sub.offer(payload)
        logger.debug("published %s to %d subscriber(s)", event.get("event"), len(subs))
        return len(subs)

    async def stream(self, request: Request) -> AsyncIterator[bytes]:
        """SSE body: retry hint, one ``data:`` frame per event, keep-alive comments when idle."""
        sub = self.subscribe()
        try:
            yield f"retry: {CLIENT_RETRY_MS}\n\n".encode()
            while True:
                if await request.is_disconnected():
                    break
                payload = await sub.next(timeout=self.heartbeat_s)
                if payload is None:
                    yield b": keep-alive\n\n"
                else:
                    yield f"data: {payload}\n\n".encode()
        finally:
            self.unsubscribe(sub)


def order_event(kind: str, order) -> dict:
    """Payload carrying enough to refetch the one affected order."""
    return {
        "event": kind,
        "orderId": order.order_id,
        "type": order.type,
        "status": order.status,
        "userId": order.user_id,
        "amount": float(order.amount),
        "time": order.time.isoformat() if order.time else None,
    }
