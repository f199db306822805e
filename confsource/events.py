"""Change events and the delivery queue shared by every reader."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Generic, Optional, TypeVar

from .errors import SubscriptionClosedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ReadEvent:
    """A single normalized update produced by a reader.

    An event carries either a payload or an error. Consumers must check
    ``is_valid`` before touching ``data``: an error event has no usable
    payload even if bytes happen to be present.
    """

    source_uri: str
    data: bytes = b""
    error: Optional[BaseException] = None
    timestamp: datetime = field(default_factory=_utcnow)

    @property
    def is_valid(self) -> bool:
        """True if the event carries decodable content."""
        return self.error is None and len(self.data) > 0

    @classmethod
    def of(
        cls, source_uri: str, data: Optional[bytes], error: Optional[BaseException] = None
    ) -> "ReadEvent":
        """Build an event, normalizing a missing payload to empty bytes."""
        return cls(source_uri=source_uri, data=data or b"", error=error)

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_uri": self.source_uri,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data.decode("utf-8", errors="replace"),
            "error": str(self.error) if self.error is not None else None,
        }


class Subscription(Generic[T]):
    """Single-producer, single-consumer delivery queue of depth one.

    The producer task attached with ``attach`` is the only writer. When that
    task finishes, for whatever reason, the subscription is closed: events
    already queued can still be drained, after which ``get`` raises
    ``SubscriptionClosedError`` and async iteration stops.

    Cancelling the subscription (``cancel``, ``aclose`` or leaving an
    ``async with`` block) cancels the producer task.
    """

    def __init__(self, source_uri: str, maxsize: int = 1):
        self.source_uri = source_uri
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._close_callbacks: list[Callable[[], None]] = []

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def attach(self, task: asyncio.Task) -> None:
        """Bind the producer task; its completion closes the subscription."""
        if self._task is not None:
            raise RuntimeError("subscription already has a producer")
        self._task = task
        task.add_done_callback(self._on_task_done)

    def on_close(self, callback: Callable[[], None]) -> None:
        """Register a callback run once when the subscription closes."""
        if self.closed:
            callback()
        else:
            self._close_callbacks.append(callback)

    async def put(self, event: T) -> None:
        """Deliver an event, waiting until the consumer has room for it."""
        if self.closed:
            raise SubscriptionClosedError()
        await self._queue.put(event)

    async def get(self) -> T:
        """Return the next event.

        Raises:
            SubscriptionClosedError: If the subscription is closed and drained
        """
        if not self._queue.empty():
            return self._queue.get_nowait()
        if self.closed:
            raise SubscriptionClosedError()

        getter = asyncio.ensure_future(self._queue.get())
        closer = asyncio.ensure_future(self._closed.wait())
        try:
            await asyncio.wait({getter, closer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closer.cancel()
            if not getter.done():
                getter.cancel()

        if getter.done() and not getter.cancelled():
            return getter.result()
        if not self._queue.empty():
            return self._queue.get_nowait()
        raise SubscriptionClosedError()

    def cancel(self) -> None:
        """Stop the producer; the subscription closes once it has exited."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
        elif self._task is None:
            self._mark_closed()

    async def aclose(self) -> None:
        """Cancel the producer and wait until it has released its resources."""
        self.cancel()
        if self._task is not None and not self._task.done():
            await asyncio.wait({self._task})

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def _on_task_done(self, task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                f"Producer for {self.source_uri} failed: {task.exception()!r}"
            )
        self._mark_closed()

    def _mark_closed(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.error(f"Subscription close callback failed: {e}")

    def __aiter__(self) -> "Subscription[T]":
        return self

    async def __anext__(self) -> T:
        try:
            return await self.get()
        except SubscriptionClosedError:
            raise StopAsyncIteration

    async def __aenter__(self) -> "Subscription[T]":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
