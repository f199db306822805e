"""Tests for the Redis reader with a mocked client."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from confsource.errors import (
    InvalidURIError,
    KeyNotFoundError,
    RetryExhaustedError,
    StreamClosedError,
    SubscriptionSetupError,
    TransportError,
    UnsupportedSchemeError,
)
from confsource.reader.redis import (
    RedisReader,
    escape_pattern,
    missing_notification_flags,
)

from .conftest import next_event


class FakePubSub:
    """PubSub stand-in fed from a queue; ``None`` ends the listen loop."""

    def __init__(self):
        self.messages = asyncio.Queue()
        self.psubscribe = AsyncMock()
        self.aclose = AsyncMock()

    async def listen(self):
        while True:
            message = await self.messages.get()
            if message is None:
                return
            if isinstance(message, Exception):
                raise message
            yield message


def notification(key="app-config", event="set"):
    return {
        "type": "pmessage",
        "pattern": f"__keyspace@0__:{key}",
        "channel": f"__keyspace@0__:{key}",
        "data": event,
    }


@pytest.fixture()
def store():
    return {"app-config": b"V1"}


@pytest.fixture()
def redis_client(store):
    """Mocked asyncio Redis client backed by a dictionary."""
    client = MagicMock()
    client.get = AsyncMock(side_effect=lambda key: store.get(key))
    client.hget = AsyncMock(side_effect=lambda key, field: store.get(f"{key}#{field}"))
    client.config_get = AsyncMock(return_value={"notify-keyspace-events": ""})
    client.config_set = AsyncMock(return_value=True)
    client.aclose = AsyncMock()
    client.pubsub = MagicMock(return_value=FakePubSub())
    return client


class TestNotificationFlags:
    """Test keyspace notification flag handling."""

    @pytest.mark.parametrize(
        "current,classes,expected",
        [
            ("", "g$", "Kg$"),
            ("Ex", "g$", "Kg$"),
            ("Kg", "gh", "h"),
            ("KEA", "g$", ""),
            ("AK", "gh", ""),
            ("K$g", "g$", ""),
        ],
    )
    def test_missing_flags(self, current, classes, expected):
        assert missing_notification_flags(current, classes) == expected

    def test_escape_pattern(self):
        assert escape_pattern("app:config") == "app:config"
        assert escape_pattern("app*[1]?") == "app\\*\\[1\\]\\?"


class TestRedisReaderConstruction:
    """Test URI handling."""

    def test_key_and_field(self, redis_client):
        reader = RedisReader("redis://localhost:6379/app-config?db=3#json", client=redis_client)

        assert reader.key == "app-config"
        assert reader.field == "json"
        assert reader.settings.db == 3
        assert reader.channel_pattern == "__keyspace@3__:app-config"

    def test_missing_key(self, redis_client):
        with pytest.raises(InvalidURIError):
            RedisReader("redis://localhost:6379/", client=redis_client)

    def test_wrong_scheme(self, redis_client):
        with pytest.raises(UnsupportedSchemeError):
            RedisReader("http://localhost/app", client=redis_client)

    def test_client_options(self):
        """A real client is configured from the URI without connecting."""
        reader = RedisReader("redis://secret@redis.local:6380/app?db=2&pool_size=4")

        kwargs = reader._client.connection_pool.connection_kwargs
        assert kwargs["host"] == "redis.local"
        assert kwargs["port"] == 6380
        assert kwargs["db"] == 2
        assert kwargs["password"] == "secret"
        assert kwargs.get("username") is None
        assert reader._client.connection_pool.max_connections == 4


class TestRedisReaderRead:
    """Test one-shot reads."""

    @pytest.mark.asyncio
    async def test_read_string_key(self, redis_client):
        reader = RedisReader("redis://localhost/app-config", client=redis_client)

        assert await reader.read() == b"V1"
        redis_client.get.assert_awaited_once_with("app-config")

    @pytest.mark.asyncio
    async def test_read_hash_field(self, redis_client, store):
        store["app-config#json"] = '{"a": 1}'
        reader = RedisReader("redis://localhost/app-config#json", client=redis_client)

        assert await reader.read() == b'{"a": 1}'
        redis_client.hget.assert_awaited_once_with("app-config", "json")

    @pytest.mark.asyncio
    async def test_missing_key_is_not_retried(self, redis_client):
        reader = RedisReader("redis://localhost/absent?retry_delay=0", client=redis_client)

        with pytest.raises(KeyNotFoundError):
            await reader.read()

        assert redis_client.get.await_count == 1

    @pytest.mark.asyncio
    async def test_connection_errors_are_retried(self, redis_client):
        redis_client.get.side_effect = RedisConnectionError("connection refused")
        reader = RedisReader(
            "redis://localhost/app-config?retry_attempts=3&retry_delay=0", client=redis_client
        )

        with pytest.raises(RetryExhaustedError) as exc_info:
            await reader.read()

        assert redis_client.get.await_count == 3
        assert isinstance(exc_info.value.last_error, TransportError)

    @pytest.mark.asyncio
    async def test_close_releases_client(self, redis_client):
        reader = RedisReader("redis://localhost/app-config", client=redis_client)

        await reader.close()
        await reader.close()

        redis_client.aclose.assert_awaited_once()


class TestRedisReaderSubscribe:
    """Test keyspace notification subscriptions."""

    @pytest.mark.asyncio
    async def test_enables_missing_notification_flags(self, redis_client):
        reader = RedisReader("redis://localhost/app-config", client=redis_client)

        await reader.ensure_keyspace_notifications()

        redis_client.config_set.assert_awaited_once_with("notify-keyspace-events", "Kg$")

    @pytest.mark.asyncio
    async def test_keeps_existing_flags(self, redis_client):
        redis_client.config_get.return_value = {"notify-keyspace-events": "Ex"}
        reader = RedisReader("redis://localhost/app-config#json", client=redis_client)

        await reader.ensure_keyspace_notifications()

        redis_client.config_set.assert_awaited_once_with("notify-keyspace-events", "ExKgh")

    @pytest.mark.asyncio
    async def test_leaves_sufficient_flags_alone(self, redis_client):
        redis_client.config_get.return_value = {"notify-keyspace-events": "AKE"}
        reader = RedisReader("redis://localhost/app-config", client=redis_client)

        await reader.ensure_keyspace_notifications()

        redis_client.config_set.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_initial_value_then_updates(self, redis_client, store):
        """The current value comes first, then one event per notification."""
        pubsub = redis_client.pubsub.return_value
        reader = RedisReader("redis://localhost/app-config", client=redis_client)

        subscription = await reader.subscribe()
        try:
            pubsub.psubscribe.assert_awaited_once_with("__keyspace@0__:app-config")
            assert (await next_event(subscription)).data == b"V1"

            store["app-config"] = b"V2"
            await pubsub.messages.put({"type": "psubscribe", "data": 1})
            await pubsub.messages.put(notification())
            assert (await next_event(subscription)).data == b"V2"

            del store["app-config"]
            await pubsub.messages.put(notification(event="del"))
            event = await next_event(subscription)
            assert isinstance(event.error, KeyNotFoundError)
        finally:
            await reader.close()

        assert subscription.closed
        pubsub.aclose.assert_awaited()

    @pytest.mark.asyncio
    async def test_listen_error_then_refresh(self, redis_client, store):
        """A broken notification stream is reported and the value re-read."""
        pubsub = redis_client.pubsub.return_value
        reader = RedisReader("redis://localhost/app-config?retry_delay=10ms", client=redis_client)

        subscription = await reader.subscribe()
        try:
            assert (await next_event(subscription)).data == b"V1"

            store["app-config"] = b"V3"
            await pubsub.messages.put(RedisConnectionError("connection lost"))
            assert isinstance((await next_event(subscription)).error, TransportError)
            assert (await next_event(subscription)).data == b"V3"
        finally:
            await reader.close()

    @pytest.mark.asyncio
    async def test_stream_end_closes_subscription(self, redis_client):
        pubsub = redis_client.pubsub.return_value
        reader = RedisReader("redis://localhost/app-config", client=redis_client)

        subscription = await reader.subscribe()
        try:
            await next_event(subscription)
            await pubsub.messages.put(None)

            assert isinstance((await next_event(subscription)).error, StreamClosedError)
            await asyncio.wait_for(subscription.wait_closed(), timeout=1)
        finally:
            await reader.close()

    @pytest.mark.asyncio
    async def test_setup_failure(self, redis_client):
        """A server refusing CONFIG fails subscribe and leaves no subscription."""
        redis_client.config_get.side_effect = RedisConnectionError("refused")
        reader = RedisReader("redis://localhost/app-config", client=redis_client)

        with pytest.raises(SubscriptionSetupError):
            await reader.subscribe()

        assert not reader.subscribed
        await reader.close()

    @pytest.mark.asyncio
    async def test_psubscribe_failure(self, redis_client):
        pubsub = redis_client.pubsub.return_value
        pubsub.psubscribe.side_effect = RedisConnectionError("refused")
        reader = RedisReader("redis://localhost/app-config", client=redis_client)

        with pytest.raises(SubscriptionSetupError):
            await reader.subscribe()

        pubsub.aclose.assert_awaited_once()
        await reader.close()
