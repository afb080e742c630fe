"""Change notifications for the host roster.

The store publishes a signal (no payload) after every successful mutation.
Subscribers hold a :class:`Subscription`; signals coalesce, so a subscriber
that falls behind sees one pending signal rather than a backlog, and
publishing never waits on a subscriber.

Subscriptions are held weakly: dropping the last reference unsubscribes.

Usage::

    sub = store.updates()
    async for _ in sub:          # from a coroutine
        render(store.get_all())

    if sub.wait(timeout=1.0):    # from a thread
        ...
"""

from __future__ import annotations

import asyncio
import logging
import threading
import weakref

logger = logging.getLogger(__name__)


class Subscription:
    """One consumer's view of the change feed."""

    def __init__(self, feed: ChangeFeed, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._feed = feed
        self._loop = loop
        self._pending = threading.Event()
        self._async_pending = asyncio.Event() if loop is not None else None
        self.closed = False

    def _signal(self) -> None:
        self._pending.set()
        if self._loop is not None and self._async_pending is not None:
            try:
                self._loop.call_soon_threadsafe(self._async_pending.set)
            except RuntimeError:
                # Loop already closed; the subscriber is gone.
                self.closed = True

    @property
    def pending(self) -> bool:
        return self._pending.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until a change is signalled. Returns ``False`` on timeout."""
        if not self._pending.wait(timeout):
            return False
        self._pending.clear()
        if self._async_pending is not None:
            self._async_pending.clear()
        return True

    async def next(self) -> None:
        """Wait for the next change from inside the subscriber's event loop."""
        if self._async_pending is None:
            raise RuntimeError("subscription was created outside an event loop")
        await self._async_pending.wait()
        self._async_pending.clear()
        self._pending.clear()

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> None:
        if self.closed:
            raise StopAsyncIteration
        await self.next()
        return None

    def close(self) -> None:
        self.closed = True
        self._feed.unsubscribe(self)


class ChangeFeed:
    """Fan-out of "roster changed" signals to any number of subscribers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: weakref.WeakSet[Subscription] = weakref.WeakSet()

    def subscribe(self) -> Subscription:
        """Register a subscriber, bound to the running event loop if there is one."""
        try:
            loop: asyncio.AbstractEventLoop | None = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        sub = Subscription(self, loop)
        with self._lock:
            self._subscribers.add(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            self._subscribers.discard(sub)

    def publish(self) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for sub in subscribers:
            sub._signal()
            if sub.closed:
                self.unsubscribe(sub)

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscribers)
