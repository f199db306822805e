"""HTTP(S) reader.

One-shot reads are plain GET requests retried with a fixed delay.
Subscriptions hold a long-lived GET open and parse it as a Server-Sent
Events stream, reconnecting for as long as the subscription lives.

URI options (query parameters):

- ``timeout``: request timeout (default 30s)
- ``retry_attempts``: attempts for one-shot reads, at least 1 (default 3)
- ``retry_delay``: delay between attempts and reconnects (default 1s)
- ``header_<Name>=<Value>``: extra request header, repeatable
- ``tls_insecure=true``: skip TLS certificate verification

User-info in the URI becomes an HTTP Basic ``Authorization`` header.
"""

import base64
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional
from urllib.parse import unquote, urlsplit, urlunsplit

import httpx

from ..errors import (
    HTTPStatusError,
    ReaderClosedError,
    StreamClosedError,
    TransportError,
    UnsupportedSchemeError,
)
from ..events import ReadEvent, Subscription
from .base import ConfReader, Producer
from .driver import ReconnectingDriver, retry_with_fixed_delay
from .registry import parse_uri
from .settings import HTTPSettings

logger = logging.getLogger(__name__)

SCHEME_HTTP = "http"
SCHEME_HTTPS = "https"

SSE_HEADERS = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}


def basic_auth_header(username: str, password: str) -> str:
    credentials = f"{username}:{password}".encode("utf-8")
    return "Basic " + base64.b64encode(credentials).decode("ascii")


def strip_userinfo(uri: str) -> str:
    """Return ``uri`` without credentials or fragment."""
    parts = urlsplit(uri)
    netloc = parts.netloc.rpartition("@")[2]
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, ""))


class SSEParser:
    """Incremental Server-Sent Events parser.

    Fed one line at a time (without line terminator). ``data:`` lines are
    joined with newlines and returned when a blank line ends the event;
    comment lines and other fields are ignored.
    """

    def __init__(self):
        self._data: list[str] = []

    def __call__(self, line: str) -> Optional[bytes]:
        if line == "":
            if not self._data:
                return None
            payload = "\n".join(self._data)
            self._data = []
            return payload.encode("utf-8")

        if line.startswith(":"):
            return None

        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "data":
            self._data.append(value)
        return None


class HTTPReader(ConfReader):
    """Reads configuration over HTTP(S) and follows it as an event stream."""

    def __init__(
        self, uri: str, transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        super().__init__(uri)

        parsed = parse_uri(uri)
        scheme = parsed.scheme.lower()
        if scheme not in (SCHEME_HTTP, SCHEME_HTTPS):
            raise UnsupportedSchemeError(
                scheme,
                f"unsupported scheme: {scheme}, expected: {SCHEME_HTTP} or {SCHEME_HTTPS}",
            )

        self.settings = HTTPSettings.from_query(parsed.query)
        self.url = strip_userinfo(uri)

        headers = dict(self.settings.headers)
        if parsed.username:
            headers["Authorization"] = basic_auth_header(
                unquote(parsed.username), unquote(parsed.password or "")
            )
        self.headers = headers

        self._client = httpx.AsyncClient(
            timeout=self.settings.timeout,
            verify=not self.settings.tls_insecure,
            headers=headers,
            transport=transport,
        )

    async def _read(self) -> bytes:
        return await retry_with_fixed_delay(
            self._fetch,
            self.settings.retry_attempts,
            self.settings.retry_delay,
            f"GET {self.url}",
        )

    async def _fetch(self) -> bytes:
        if self._closed:
            raise ReaderClosedError()

        try:
            response = await self._client.get(self.url)
        except httpx.HTTPError as e:
            raise TransportError(f"failed to execute request: {e}") from e

        if not response.is_success:
            raise HTTPStatusError(response.status_code, response.reason_phrase)

        return response.content

    async def _start_subscription(
        self, subscription: Subscription[ReadEvent]
    ) -> Producer:
        driver = ReconnectingDriver(
            self,
            connect=self._open_event_stream,
            decoder_factory=SSEParser,
            retry_delay=self.settings.retry_delay,
            end_of_stream=lambda: StreamClosedError(
                f"SSE stream from {self.url} ended"
            ),
        )
        return driver.run(subscription)

    @asynccontextmanager
    async def _open_event_stream(self) -> AsyncIterator[AsyncIterator[str]]:
        # The stream stays open indefinitely, so only connecting is bounded
        request = self._client.build_request(
            "GET",
            self.url,
            headers=SSE_HEADERS,
            timeout=httpx.Timeout(self.settings.timeout, read=None),
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise TransportError(f"SSE connection failed: {e}") from e

        try:
            if not response.is_success:
                raise HTTPStatusError(response.status_code, response.reason_phrase)
            logger.info(f"Connected to event stream {self.url}")
            yield self._iter_lines(response)
        finally:
            await response.aclose()

    async def _iter_lines(self, response: httpx.Response) -> AsyncIterator[str]:
        try:
            async for line in response.aiter_lines():
                yield line
        except httpx.HTTPError as e:
            raise TransportError(f"SSE stream error: {e}") from e

    async def _release(self) -> None:
        await self._client.aclose()
