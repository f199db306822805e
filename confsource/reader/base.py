"""Reader contract shared by every transport.

A reader offers three operations:

- ``read()``: one-shot fetch of the raw configuration bytes
- ``subscribe()``: start watching the source; returns a ``Subscription``
  immediately and delivers ``ReadEvent`` objects from a background task
- ``close()``: idempotent teardown

The base class owns the lifecycle: the ``closed`` flag, the single active
subscription marker and the producer task. Subclasses implement the
transport-specific ``_read``, ``_start_subscription`` and ``_release``
hooks. The instance lock only guards short critical sections (flag checks
and handle swaps) and is never held across network or filesystem I/O.
"""

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from typing import Any, Coroutine, Optional

from ..errors import AlreadySubscribedError, ReaderClosedError
from ..events import ReadEvent, Subscription

logger = logging.getLogger(__name__)

Producer = Coroutine[Any, Any, None]


class ConfReader(ABC):
    """Abstract configuration reader."""

    def __init__(self, uri: str):
        self.uri = uri
        self._lock = asyncio.Lock()
        self._closed = False
        self._subscription: Optional[Subscription[ReadEvent]] = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def subscribed(self) -> bool:
        """True while a subscription is active on this reader."""
        return self._subscription is not None

    async def read(self) -> bytes:
        """Read the configuration once.

        Raises:
            ReaderClosedError: If the reader has been closed
            ConfigurationError: On transport, not-found or ambiguity errors
        """
        async with self._lock:
            self._ensure_open()
        return await self._read()

    async def subscribe(self) -> Subscription[ReadEvent]:
        """Start watching the source for changes.

        Setup happens before this returns, so an unreachable source or a
        source that cannot be configured for notifications fails here rather
        than yielding a subscription that never fires.

        Raises:
            ReaderClosedError: If the reader has been closed
            AlreadySubscribedError: If a subscription is already active
            SubscriptionSetupError: If the watch cannot be established
        """
        async with self._lock:
            self._ensure_open()
            if self._subscription is not None:
                raise AlreadySubscribedError()
            subscription: Subscription[ReadEvent] = Subscription(self.uri)
            self._subscription = subscription

        try:
            producer = await self._start_subscription(subscription)
        except BaseException:
            self._clear_subscription(subscription)
            raise

        async with self._lock:
            closed = self._closed
            if closed:
                producer.close()
                self._clear_subscription(subscription)
            else:
                task = asyncio.create_task(
                    self._run_producer(producer, subscription),
                    name=f"{type(self).__name__}:{self.uri}",
                )
                subscription.attach(task)
                subscription.on_close(
                    lambda: self._finish_subscription(subscription, producer)
                )
                # Let the producer enter its body so its cleanup runs on cancel
                await asyncio.sleep(0)

        if closed:
            # close() may have released before this watch was registered
            await self._release()
            raise ReaderClosedError()

        logger.info(f"Subscribed to {self.uri}")
        return subscription

    async def close(self) -> None:
        """Close the reader, stopping any active subscription.

        Safe to call several times and while a subscription is running.
        """
        async with self._lock:
            if self._closed:
                return
            self._closed = True
            subscription = self._subscription

        if subscription is not None:
            await subscription.aclose()

        await self._release()
        logger.info(f"Closed reader for {self.uri}")

    async def emit(
        self,
        subscription: Subscription[ReadEvent],
        data: Optional[bytes] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        """Deliver one event to a subscription."""
        event = ReadEvent.of(self.uri, data, error)
        if error is not None:
            logger.warning(f"Error event from {self.uri}: {error}")
        else:
            logger.debug(f"Update from {self.uri}: {len(event.data)} bytes")
        await subscription.put(event)

    @abstractmethod
    async def _read(self) -> bytes:
        """Fetch the raw configuration once."""

    @abstractmethod
    async def _start_subscription(
        self, subscription: Subscription[ReadEvent]
    ) -> Producer:
        """Establish the watch and return the producer coroutine.

        Raise on setup failure; the returned coroutine runs as the
        subscription's only producer task.
        """

    async def _release(self) -> None:
        """Release transport resources once the reader is closed."""

    def _ensure_open(self) -> None:
        if self._closed:
            raise ReaderClosedError()

    def _clear_subscription(self, subscription: Subscription[ReadEvent]) -> None:
        if self._subscription is subscription:
            self._subscription = None

    def _finish_subscription(
        self, subscription: Subscription[ReadEvent], producer: Producer
    ) -> None:
        if inspect.getcoroutinestate(producer) == inspect.CORO_CREATED:
            # Cancelled before its first step
            producer.close()
        self._clear_subscription(subscription)

    async def _run_producer(
        self, producer: Producer, subscription: Subscription[ReadEvent]
    ) -> None:
        try:
            await producer
        except asyncio.CancelledError:
            logger.debug(f"Subscription to {self.uri} cancelled")
            raise
        finally:
            logger.info(f"Subscription to {self.uri} ended")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<{type(self).__name__} {self.uri} ({state})>"
