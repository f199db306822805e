"""Tests for read events and the subscription queue."""

import asyncio

import pytest

from confsource.errors import SubscriptionClosedError, TransportError
from confsource.events import ReadEvent, Subscription


class TestReadEvent:
    """Test the ReadEvent value type."""

    def test_valid_event(self):
        """An event with data and no error is valid."""
        event = ReadEvent.of("file:///app.json", b"{}")

        assert event.is_valid
        assert event.data == b"{}"
        assert event.timestamp.tzinfo is not None

    def test_error_event_is_invalid(self):
        """An error makes the event invalid even when bytes are present."""
        event = ReadEvent.of("file:///app.json", b"{}", TransportError("boom"))

        assert not event.is_valid

    def test_empty_payload_is_invalid(self):
        """A missing payload is normalized to empty bytes and is invalid."""
        event = ReadEvent.of("file:///app.json", None)

        assert event.data == b""
        assert not event.is_valid

    def test_to_dict(self):
        """Test dictionary conversion."""
        event = ReadEvent.of("redis://h/k", b"v", TransportError("down"))

        result = event.to_dict()

        assert result["source_uri"] == "redis://h/k"
        assert result["data"] == "v"
        assert result["error"] == "down"
        assert "timestamp" in result


class TestSubscription:
    """Test the depth-one delivery queue."""

    @pytest.mark.asyncio
    async def test_put_and_get(self):
        """Events are delivered in order."""
        subscription = Subscription("test://")

        await subscription.put("first")
        assert await subscription.get() == "first"

        await subscription.put("second")
        assert await subscription.get() == "second"

    @pytest.mark.asyncio
    async def test_queue_depth_is_one(self):
        """A second event waits until the first one is consumed."""
        subscription = Subscription("test://")
        await subscription.put("first")

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(subscription.put("second"), timeout=0.05)

    @pytest.mark.asyncio
    async def test_producer_exit_closes_after_drain(self):
        """Queued events survive the producer; then the queue reports closed."""
        subscription = Subscription("test://")

        async def producer():
            await subscription.put("last")

        task = asyncio.create_task(producer())
        subscription.attach(task)
        await asyncio.wait({task})
        await subscription.wait_closed()

        assert subscription.closed
        assert await subscription.get() == "last"
        with pytest.raises(SubscriptionClosedError):
            await subscription.get()

    @pytest.mark.asyncio
    async def test_pending_get_wakes_on_close(self):
        """A consumer waiting on an empty queue is released by close."""
        subscription = Subscription("test://")
        task = asyncio.create_task(asyncio.sleep(10))
        subscription.attach(task)

        getter = asyncio.create_task(subscription.get())
        await asyncio.sleep(0)
        await subscription.aclose()

        with pytest.raises(SubscriptionClosedError):
            await asyncio.wait_for(getter, timeout=1)

    @pytest.mark.asyncio
    async def test_cancel_stops_producer(self):
        """Cancelling the subscription cancels its producer task."""
        subscription = Subscription("test://")
        task = asyncio.create_task(asyncio.sleep(10))
        subscription.attach(task)

        await subscription.aclose()

        assert task.cancelled()
        assert subscription.closed

    @pytest.mark.asyncio
    async def test_put_after_close_fails(self):
        """Test that a closed subscription rejects new events."""
        subscription = Subscription("test://")
        subscription.cancel()

        with pytest.raises(SubscriptionClosedError):
            await subscription.put("late")

    @pytest.mark.asyncio
    async def test_async_iteration_and_context(self):
        """Iteration ends when the producer finishes; the context closes it."""
        received = []

        async with Subscription("test://") as subscription:

            async def producer():
                for item in ("a", "b", "c"):
                    await subscription.put(item)

            subscription.attach(asyncio.create_task(producer()))
            async for item in subscription:
                received.append(item)

        assert received == ["a", "b", "c"]
        assert subscription.closed

    @pytest.mark.asyncio
    async def test_on_close_callbacks(self):
        """Close callbacks run once; late registrations run immediately."""
        calls = []
        subscription = Subscription("test://")
        subscription.on_close(lambda: calls.append("early"))

        subscription.cancel()
        subscription.cancel()
        subscription.on_close(lambda: calls.append("late"))

        assert calls == ["early", "late"]

    @pytest.mark.asyncio
    async def test_attach_twice_fails(self):
        """Test that a subscription accepts only one producer."""
        subscription = Subscription("test://")
        first = asyncio.create_task(asyncio.sleep(10))
        second = asyncio.create_task(asyncio.sleep(10))
        subscription.attach(first)

        try:
            with pytest.raises(RuntimeError):
                subscription.attach(second)
        finally:
            second.cancel()
            await subscription.aclose()
