"""Retry and reconnect helpers shared by the network readers.

Two policies live here:

- ``retry_with_fixed_delay``: the bounded retry used by one-shot reads. The
  delay between attempts is constant, not exponential.
- ``ReconnectingDriver``: the unbounded "connect, stream, on failure wait and
  reconnect" loop used by long-lived subscriptions. It is parameterized by a
  connect function and a per-connection message decoder so the HTTP
  event-stream and WebSocket readers share one implementation.
"""

import asyncio
import logging
from typing import (
    TYPE_CHECKING,
    AsyncContextManager,
    AsyncIterator,
    Awaitable,
    Callable,
    Generic,
    Optional,
    TypeVar,
)

from ..errors import RetryExhaustedError, is_retryable
from ..events import ReadEvent, Subscription

if TYPE_CHECKING:
    from .base import ConfReader

logger = logging.getLogger(__name__)

T = TypeVar("T")
M = TypeVar("M")

MessageDecoder = Callable[[M], Optional[bytes]]


async def retry_with_fixed_delay(
    operation: Callable[[], Awaitable[T]],
    attempts: int,
    delay: float,
    description: str = "operation",
) -> T:
    """Run ``operation`` up to ``attempts`` times.

    Only retryable errors are retried; not-found, ambiguity and state errors
    propagate immediately.

    Raises:
        RetryExhaustedError: When every attempt failed, chaining the last error
    """
    last_error: Optional[Exception] = None

    for attempt in range(attempts):
        if attempt > 0:
            await asyncio.sleep(delay)

        try:
            return await operation()
        except Exception as e:
            if not is_retryable(e):
                raise
            last_error = e
            logger.warning(
                f"{description} attempt {attempt + 1}/{attempts} failed: {e}"
            )

    raise RetryExhaustedError(attempts, last_error) from last_error


class ReconnectingDriver(Generic[M]):
    """Keeps a streaming subscription alive until it is cancelled.

    Each cycle opens a connection with ``connect`` (an async context manager
    yielding an async iterator of raw messages), runs every message through a
    fresh decoder from ``decoder_factory`` and emits the non-``None`` results.
    When the connection fails, an error event is emitted unless
    ``is_clean_close`` says the failure was an orderly shutdown; when the
    stream simply ends, ``end_of_stream`` (if given) supplies the error to
    report. Either way the driver sleeps ``retry_delay`` and reconnects.
    """

    def __init__(
        self,
        reader: "ConfReader",
        connect: Callable[[], AsyncContextManager[AsyncIterator[M]]],
        decoder_factory: Callable[[], MessageDecoder],
        retry_delay: float,
        is_clean_close: Optional[Callable[[BaseException], bool]] = None,
        end_of_stream: Optional[Callable[[], Exception]] = None,
    ):
        self.reader = reader
        self._connect = connect
        self._decoder_factory = decoder_factory
        self._retry_delay = retry_delay
        self._is_clean_close = is_clean_close or (lambda error: False)
        self._end_of_stream = end_of_stream
        self.connections = 0

    async def run(self, subscription: Subscription[ReadEvent]) -> None:
        while True:
            await self._run_once(subscription)
            logger.debug(
                f"Reconnecting to {self.reader.uri} in {self._retry_delay}s"
            )
            await asyncio.sleep(self._retry_delay)

    async def _run_once(self, subscription: Subscription[ReadEvent]) -> None:
        try:
            async with self._connect() as messages:
                self.connections += 1
                if self.connections > 1:
                    logger.info(f"Reconnected to {self.reader.uri}")
                await self._pump(messages, subscription)

            if self._end_of_stream is not None:
                await self.reader.emit(subscription, error=self._end_of_stream())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self._is_clean_close(e):
                logger.info(f"Connection to {self.reader.uri} closed cleanly")
                return
            await self.reader.emit(subscription, error=e)

    async def _pump(
        self, messages: AsyncIterator[M], subscription: Subscription[ReadEvent]
    ) -> None:
        decode = self._decoder_factory()
        async for message in messages:
            try:
                payload = decode(message)
            except Exception as e:
                await self.reader.emit(subscription, error=e)
                continue
            if payload is not None:
                await self.reader.emit(subscription, payload)
