"""WebSocket reader.

A one-shot read dials, takes the first message and hangs up. A subscription
keeps the connection open, emits one event per message and redials after
failures. Keepalive pings run on their own task; the read side expects a
pong within ``pong_wait`` and treats a missed deadline as a dead peer.

URI options (query parameters):

- ``timeout``: handshake timeout and one-shot read deadline (default 30s)
- ``retry_attempts`` / ``retry_delay``: as for HTTP
- ``ping_interval``: keepalive ping period (default 30s)
- ``pong_wait``: how long the connection may stay without a pong (default 60s)
- ``write_wait``: bound on sending a ping (default 10s)
- ``header_<Name>=<Value>``, ``tls_insecure=true``
"""

import asyncio
import logging
import ssl
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Union

import websockets
from websockets.exceptions import ConnectionClosedOK, WebSocketException

from ..errors import (
    ProtocolError,
    ReaderClosedError,
    TransportError,
    UnsupportedSchemeError,
)
from ..events import ReadEvent, Subscription
from .base import ConfReader, Producer
from .driver import ReconnectingDriver, retry_with_fixed_delay
from .registry import parse_uri
from .settings import WSSettings

logger = logging.getLogger(__name__)

SCHEME_WS = "ws"
SCHEME_WSS = "wss"

MAX_MESSAGE_SIZE = 10 * 1024 * 1024


def message_bytes(message: Union[str, bytes]) -> bytes:
    if isinstance(message, str):
        return message.encode("utf-8")
    return bytes(message)


def is_clean_close(error: BaseException) -> bool:
    return isinstance(error, ConnectionClosedOK)


class KeepAlive:
    """Ping loop and pong deadline for one connection.

    ``run`` is the ping task. ``messages`` is the read loop; it shares the
    connection and stops with an error once no pong arrived for
    ``pong_wait`` or the ping task failed.
    """

    def __init__(self, connection, settings: WSSettings):
        self._connection = connection
        self._settings = settings
        self._loop = asyncio.get_running_loop()
        self.deadline = self._loop.time() + settings.pong_wait
        self.failure: Optional[BaseException] = None

    async def run(self) -> None:
        while True:
            await asyncio.sleep(self._settings.ping_interval)
            try:
                pong_waiter = await asyncio.wait_for(
                    self._connection.ping(), timeout=self._settings.write_wait
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"WebSocket ping failed: {e}")
                self.failure = e
                self._abort()
                return
            pong_waiter.add_done_callback(self._on_pong)

    def _on_pong(self, future: asyncio.Future) -> None:
        if future.cancelled() or future.exception() is not None:
            return
        self.deadline = self._loop.time() + self._settings.pong_wait

    def _abort(self) -> None:
        transport = getattr(self._connection, "transport", None)
        if transport is not None:
            transport.abort()

    async def messages(self) -> AsyncIterator[Union[str, bytes]]:
        while True:
            remaining = self.deadline - self._loop.time()
            if remaining <= 0:
                self._abort()
                raise ProtocolError(
                    f"no pong received within {self._settings.pong_wait}s"
                )

            try:
                message = await asyncio.wait_for(
                    self._connection.recv(), timeout=remaining
                )
            except asyncio.TimeoutError:
                continue
            except ConnectionClosedOK:
                return
            except WebSocketException as e:
                if self.failure is not None:
                    raise ProtocolError(f"WebSocket ping failed: {self.failure}") from e
                raise TransportError(f"WebSocket read error: {e}") from e

            yield message


class WSReader(ConfReader):
    """Reads configuration messages from a WebSocket endpoint."""

    def __init__(self, uri: str):
        super().__init__(uri)

        parsed = parse_uri(uri)
        scheme = parsed.scheme.lower()
        if scheme not in (SCHEME_WS, SCHEME_WSS):
            raise UnsupportedSchemeError(
                scheme,
                f"unsupported scheme: {scheme}, expected: {SCHEME_WS} or {SCHEME_WSS}",
            )

        self.settings = WSSettings.from_query(parsed.query)
        self.url = uri.split("#", 1)[0]
        self.headers = dict(self.settings.headers)
        self._ssl_context = self._build_ssl_context(scheme)

    def _build_ssl_context(self, scheme: str) -> Optional[ssl.SSLContext]:
        if scheme != SCHEME_WSS:
            return None
        context = ssl.create_default_context()
        if self.settings.tls_insecure:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    def _dial(self):
        options = {
            "additional_headers": self.headers or None,
            "open_timeout": self.settings.timeout,
            "ping_interval": None,  # keepalive is handled by KeepAlive
            "max_size": MAX_MESSAGE_SIZE,
        }
        if self._ssl_context is not None:
            options["ssl"] = self._ssl_context
        return websockets.connect(self.url, **options)

    async def _read(self) -> bytes:
        return await retry_with_fixed_delay(
            self._read_once,
            self.settings.retry_attempts,
            self.settings.retry_delay,
            f"WebSocket read from {self.url}",
        )

    async def _read_once(self) -> bytes:
        if self._closed:
            raise ReaderClosedError()

        try:
            async with self._dial() as connection:
                message = await asyncio.wait_for(
                    connection.recv(), timeout=self.settings.timeout
                )
        except asyncio.TimeoutError as e:
            raise TransportError(
                f"timed out after {self.settings.timeout}s reading WebSocket message"
            ) from e
        except (OSError, WebSocketException) as e:
            raise TransportError(f"failed to read WebSocket message: {e}") from e

        return message_bytes(message)

    async def _start_subscription(
        self, subscription: Subscription[ReadEvent]
    ) -> Producer:
        driver = ReconnectingDriver(
            self,
            connect=self._session,
            decoder_factory=lambda: message_bytes,
            retry_delay=self.settings.retry_delay,
            is_clean_close=is_clean_close,
        )
        return driver.run(subscription)

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncIterator[Union[str, bytes]]]:
        try:
            connection = await self._dial()
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            raise TransportError(f"failed to connect to WebSocket: {e}") from e

        logger.info(f"Connected to WebSocket {self.url}")
        keepalive = KeepAlive(connection, self.settings)
        ping_task = asyncio.create_task(keepalive.run(), name=f"ping:{self.url}")
        try:
            yield keepalive.messages()
        finally:
            ping_task.cancel()
            await asyncio.wait({ping_task})
            await connection.close()
