"""Redis reader.

URI format: ``redis[s]://[user:password@]host[:port]/<key>[?db=N][#field]``

Without a fragment the key holds the configuration as a string value; with
``#field`` the key is a hash and the field holds the configuration.

Changes are observed through keyspace notifications. The notification only
says "something happened to the key"; the reader re-fetches the value for
every notification, so two quick changes may be observed as one.
"""

import asyncio
import logging
import re
from typing import Any, Optional, Union
from urllib.parse import unquote

import redis.asyncio as redis
from redis.exceptions import RedisError

from ..errors import (
    ConfigurationError,
    InvalidURIError,
    KeyNotFoundError,
    ReaderClosedError,
    StreamClosedError,
    SubscriptionSetupError,
    TransportError,
    UnsupportedSchemeError,
)
from ..events import ReadEvent, Subscription
from .base import ConfReader, Producer
from .driver import retry_with_fixed_delay
from .registry import parse_uri
from .settings import RedisSettings

logger = logging.getLogger(__name__)

SCHEME_REDIS = "redis"
SCHEME_REDISS = "rediss"

DEFAULT_HOST = "localhost"
DEFAULT_PORT = 6379

NOTIFY_CONFIG = "notify-keyspace-events"

# Keyspace channel flag and the event classes the "A" alias stands for
KEYSPACE_FLAG = "K"
ALIAS_ALL = "A"
ALIAS_ALL_CLASSES = "g$lshzxet"

_PATTERN_SPECIAL = re.compile(r"([*?\[\]\\])")


def _text(value: Union[str, bytes, None]) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def escape_pattern(key: str) -> str:
    """Escape glob metacharacters so a key matches only itself."""
    return _PATTERN_SPECIAL.sub(r"\\\1", key)


def missing_notification_flags(current: str, event_classes: str) -> str:
    """Return the flags to append to ``notify-keyspace-events``.

    Only flags that are absent are returned; existing flags are never removed
    or reordered because other clients may depend on them.
    """
    missing = ""
    if KEYSPACE_FLAG not in current:
        missing += KEYSPACE_FLAG
    for flag in event_classes:
        if flag in current or flag in missing:
            continue
        if ALIAS_ALL in current and flag in ALIAS_ALL_CLASSES:
            continue
        missing += flag
    return missing


class RedisReader(ConfReader):
    """Reads configuration from a Redis string key or hash field."""

    def __init__(self, uri: str, client: Optional[Any] = None):
        super().__init__(uri)

        parsed = parse_uri(uri)
        scheme = parsed.scheme.lower()
        if scheme not in (SCHEME_REDIS, SCHEME_REDISS):
            raise UnsupportedSchemeError(
                scheme,
                f"unsupported scheme: {scheme}, expected: {SCHEME_REDIS} or {SCHEME_REDISS}",
            )

        self.settings = RedisSettings.from_query(parsed.query)

        path = parsed.path[1:] if parsed.path.startswith("/") else parsed.path
        self.key = unquote(path)
        if not self.key:
            raise InvalidURIError("Redis key must be specified in path")
        self.field = unquote(parsed.fragment) or None

        self.host = parsed.hostname or DEFAULT_HOST
        self.port = parsed.port or DEFAULT_PORT

        username = unquote(parsed.username) if parsed.username else None
        password = unquote(parsed.password) if parsed.password else None
        if password is None and username:
            # redis://secret@host carries a bare password
            username, password = None, username

        if client is None:
            options: dict[str, Any] = {}
            if scheme == SCHEME_REDISS:
                options["ssl"] = True
                if self.settings.tls_insecure:
                    options["ssl_cert_reqs"] = "none"
                    options["ssl_check_hostname"] = False
            client = redis.Redis(
                host=self.host,
                port=self.port,
                db=self.settings.db,
                username=username,
                password=password,
                socket_timeout=self.settings.timeout,
                socket_connect_timeout=self.settings.timeout,
                max_connections=self.settings.pool_size,
                **options,
            )
        self._client = client
        self._pubsub = None

    @property
    def channel_pattern(self) -> str:
        return f"__keyspace@{self.settings.db}__:{escape_pattern(self.key)}"

    @property
    def _location(self) -> str:
        if self.field:
            return f"hash {self.key!r}"
        return f"redis db {self.settings.db}"

    async def _read(self) -> bytes:
        return await retry_with_fixed_delay(
            self._fetch,
            self.settings.retry_attempts,
            self.settings.retry_delay,
            f"Redis read of {self.key!r}",
        )

    async def _fetch(self) -> bytes:
        if self._closed:
            raise ReaderClosedError()

        try:
            if self.field:
                value = await self._client.hget(self.key, self.field)
            else:
                value = await self._client.get(self.key)
        except RedisError as e:
            raise TransportError(f"failed to get key {self.key!r}: {e}") from e

        if value is None:
            raise KeyNotFoundError(self.field or self.key, self._location)

        if isinstance(value, str):
            return value.encode("utf-8")
        return bytes(value)

    async def ensure_keyspace_notifications(self) -> None:
        """Make sure the server publishes notifications for this key.

        Raises:
            SubscriptionSetupError: If the setting cannot be read or updated
        """
        try:
            config = await self._client.config_get(NOTIFY_CONFIG)
        except RedisError as e:
            raise SubscriptionSetupError(
                f"failed to check keyspace notifications config: {e}"
            ) from e

        current = ""
        for name, value in (config or {}).items():
            if _text(name) == NOTIFY_CONFIG:
                current = _text(value)

        # generic commands (DEL, RENAME, EXPIRE) plus the value's own type
        event_classes = "gh" if self.field else "g$"
        missing = missing_notification_flags(current, event_classes)
        if not missing:
            return

        try:
            await self._client.config_set(NOTIFY_CONFIG, current + missing)
        except RedisError as e:
            raise SubscriptionSetupError(
                f"failed to enable keyspace notifications: {e}"
            ) from e
        logger.info(f"Enabled keyspace notification flags {missing!r} on {self.host}")

    async def _start_subscription(
        self, subscription: Subscription[ReadEvent]
    ) -> Producer:
        await self.ensure_keyspace_notifications()

        pubsub = self._client.pubsub()
        try:
            await pubsub.psubscribe(self.channel_pattern)
        except RedisError as e:
            await pubsub.aclose()
            raise SubscriptionSetupError(
                f"failed to subscribe to {self.channel_pattern}: {e}"
            ) from e

        async with self._lock:
            self._pubsub = pubsub

        logger.info(f"Listening for keyspace notifications on {self.channel_pattern}")
        return self._listen(subscription, pubsub)

    async def _listen(self, subscription: Subscription[ReadEvent], pubsub) -> None:
        try:
            await self._emit_current(subscription)

            while True:
                try:
                    async for message in pubsub.listen():
                        if message.get("type") != "pmessage":
                            continue
                        logger.debug(
                            f"Keyspace notification for {self.key!r}: {_text(message.get('data'))}"
                        )
                        await self._emit_current(subscription)
                except RedisError as e:
                    await self.emit(
                        subscription,
                        error=TransportError(f"keyspace notification error: {e}"),
                    )
                    await asyncio.sleep(self.settings.retry_delay)
                    # Changes may have been missed while disconnected
                    await self._emit_current(subscription)
                    continue

                await self.emit(
                    subscription,
                    error=StreamClosedError(
                        f"keyspace notifications for {self.key!r} stopped"
                    ),
                )
                return
        finally:
            async with self._lock:
                if self._pubsub is pubsub:
                    self._pubsub = None
            await pubsub.aclose()

    async def _emit_current(self, subscription: Subscription[ReadEvent]) -> None:
        try:
            data = await self._fetch()
        except ConfigurationError as e:
            await self.emit(subscription, error=e)
        else:
            await self.emit(subscription, data)

    async def _release(self) -> None:
        async with self._lock:
            pubsub, self._pubsub = self._pubsub, None
        if pubsub is not None:
            await pubsub.aclose()
        await self._client.aclose()
