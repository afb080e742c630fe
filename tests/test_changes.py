"""Tests for the roster change feed."""

from __future__ import annotations

import asyncio
import gc
import threading

import pytest

from nsm.hosts.changes import ChangeFeed


class TestChangeFeed:
    def test_signals_coalesce(self):
        feed = ChangeFeed()
        sub = feed.subscribe()
        for _ in range(10):
            feed.publish()
        assert sub.wait(timeout=0.1)
        assert not sub.wait(timeout=0.05)

    def test_wait_times_out_without_publish(self):
        sub = ChangeFeed().subscribe()
        assert sub.wait(timeout=0.05) is False

    def test_closed_subscription_is_dropped(self):
        feed = ChangeFeed()
        sub = feed.subscribe()
        assert len(feed) == 1
        sub.close()
        assert len(feed) == 0
        feed.publish()
        assert not sub.pending

    def test_unreferenced_subscription_is_dropped(self):
        feed = ChangeFeed()
        feed.subscribe()
        gc.collect()
        assert len(feed) == 0

    def test_wakes_thread_waiter(self):
        feed = ChangeFeed()
        sub = feed.subscribe()
        woke = threading.Event()

        def waiter():
            if sub.wait(timeout=2.0):
                woke.set()

        t = threading.Thread(target=waiter)
        t.start()
        feed.publish()
        t.join(timeout=2.0)
        assert woke.is_set()

    async def test_async_iteration(self):
        feed = ChangeFeed()
        sub = feed.subscribe()
        seen = 0

        async def consume():
            nonlocal seen
            async for _ in sub:
                seen += 1
                if seen == 2:
                    break

        task = asyncio.create_task(consume())
        feed.publish()
        await asyncio.sleep(0.01)
        feed.publish()
        await asyncio.wait_for(task, timeout=1.0)
        assert seen == 2

    async def test_publish_from_another_thread(self):
        feed = ChangeFeed()
        sub = feed.subscribe()
        threading.Thread(target=feed.publish).start()
        await asyncio.wait_for(sub.next(), timeout=1.0)

    def test_next_requires_event_loop_binding(self):
        sub = ChangeFeed().subscribe()
        with pytest.raises(RuntimeError):
            asyncio.run(sub.next())
