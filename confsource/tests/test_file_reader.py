"""Tests for the local file reader."""

import asyncio

import pytest

from confsource.errors import (
    AlreadySubscribedError,
    ConstructionError,
    FileReadError,
    ProtocolError,
    ReaderClosedError,
    SubscriptionSetupError,
    UnsupportedSchemeError,
)
from confsource.reader import file as file_module
from confsource.reader.file import FileReader

from .conftest import EVENT_TIMEOUT, next_event


async def wait_for_data(subscription, expected: bytes, timeout: float = EVENT_TIMEOUT):
    """Skip intermediate events until one carries ``expected``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        event = await next_event(subscription, max(deadline - loop.time(), 0.01))
        if event.is_valid and event.data == expected:
            return event


async def collect_events(subscription, quiet: float = 0.5, timeout: float = EVENT_TIMEOUT):
    """Wait for a first event, then gather everything until the source goes quiet."""
    events = [await next_event(subscription, timeout)]
    while True:
        try:
            events.append(await next_event(subscription, quiet))
        except asyncio.TimeoutError:
            return events


class DeadObserver:
    """Observer stand-in whose thread is never alive."""

    def __init__(self):
        self.stopped = False

    def schedule(self, handler, path, recursive=False):
        self.handler = handler

    def start(self):
        pass

    def stop(self):
        self.stopped = True

    def join(self, timeout=None):
        pass

    def is_alive(self):
        return False


class BrokenObserver(DeadObserver):
    def schedule(self, handler, path, recursive=False):
        raise OSError("inotify watch limit reached")


class TestFileReaderConstruction:
    """Test URI handling."""

    def test_bare_path(self, config_file):
        reader = FileReader(str(config_file))

        assert reader.path == config_file

    def test_file_uri(self, config_file):
        reader = FileReader(f"file://{config_file}")

        assert reader.path == config_file

    def test_missing_file(self, temp_dir):
        """A file that cannot be stat'ed fails construction."""
        with pytest.raises(ConstructionError) as exc_info:
            FileReader(str(temp_dir / "missing.json"))

        assert "file access error" in str(exc_info.value)

    def test_wrong_scheme(self):
        with pytest.raises(UnsupportedSchemeError):
            FileReader("http://example.com/config.json")


class TestFileReaderRead:
    """Test one-shot reads."""

    @pytest.mark.asyncio
    async def test_read(self, config_file):
        reader = FileReader(str(config_file))

        assert await reader.read() == b'{"a": 1}'

    @pytest.mark.asyncio
    async def test_read_removed_file(self, config_file):
        reader = FileReader(str(config_file))
        config_file.unlink()

        with pytest.raises(FileReadError):
            await reader.read()

    @pytest.mark.asyncio
    async def test_read_after_close(self, config_file):
        reader = FileReader(str(config_file))
        await reader.close()

        with pytest.raises(ReaderClosedError):
            await reader.read()


class TestFileReaderSubscribe:
    """Test watching a real file."""

    @pytest.mark.asyncio
    async def test_write_produces_event(self, config_file):
        """Writing new content delivers it on the subscription."""
        reader = FileReader(f"{config_file}?settle_delay=20ms")
        assert await reader.read() == b'{"a": 1}'

        subscription = await reader.subscribe()
        try:
            await asyncio.sleep(0.1)
            config_file.write_text('{"a": 2}')

            event = await wait_for_data(subscription, b'{"a": 2}')
            assert event.source_uri == reader.uri
        finally:
            await reader.close()

        assert subscription.closed

    @pytest.mark.asyncio
    async def test_each_write_produces_one_event(self, config_file):
        """Two settled writes give exactly two events, in write order."""
        reader = FileReader(f"{config_file}?settle_delay=50ms")
        subscription = await reader.subscribe()
        try:
            await asyncio.sleep(0.1)

            config_file.write_text('{"a":1}')
            first = await collect_events(subscription)

            config_file.write_text('{"a":2}')
            second = await collect_events(subscription)
        finally:
            await reader.close()

        assert [(e.data, e.error) for e in first] == [(b'{"a":1}', None)]
        assert [(e.data, e.error) for e in second] == [(b'{"a":2}', None)]

    @pytest.mark.asyncio
    async def test_atomic_replace_produces_event(self, config_file):
        """Renaming a new file over the watched one is seen as a change."""
        reader = FileReader(str(config_file))
        subscription = await reader.subscribe()
        try:
            await asyncio.sleep(0.1)
            replacement = config_file.with_suffix(".tmp")
            replacement.write_text('{"a": 3}')
            replacement.replace(config_file)

            await wait_for_data(subscription, b'{"a": 3}')
        finally:
            await reader.close()

    @pytest.mark.asyncio
    async def test_other_files_are_ignored(self, config_file, temp_dir):
        reader = FileReader(str(config_file))
        subscription = await reader.subscribe()
        try:
            await asyncio.sleep(0.1)
            (temp_dir / "other.json").write_text("{}")

            with pytest.raises(asyncio.TimeoutError):
                await next_event(subscription, timeout=0.5)
        finally:
            await reader.close()

    @pytest.mark.asyncio
    async def test_second_subscribe_fails(self, config_file):
        """Only one subscription may be active per reader."""
        reader = FileReader(str(config_file))
        await reader.subscribe()
        try:
            with pytest.raises(AlreadySubscribedError):
                await reader.subscribe()
        finally:
            await reader.close()

    @pytest.mark.asyncio
    async def test_resubscribe_after_cancel(self, config_file):
        reader = FileReader(str(config_file))
        try:
            first = await reader.subscribe()
            await first.aclose()
            assert not reader.subscribed

            second = await reader.subscribe()
            assert not second.closed
        finally:
            await reader.close()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, config_file):
        reader = FileReader(str(config_file))
        subscription = await reader.subscribe()

        await asyncio.gather(reader.close(), reader.close())
        await reader.close()

        assert reader.closed
        assert subscription.closed
        with pytest.raises(ReaderClosedError):
            await reader.subscribe()

    @pytest.mark.asyncio
    async def test_setup_failure(self, config_file):
        """A watch that cannot be established fails subscribe."""
        reader = FileReader(str(config_file), observer_factory=BrokenObserver)

        with pytest.raises(SubscriptionSetupError):
            await reader.subscribe()

        assert not reader.subscribed
        await reader.close()

    @pytest.mark.asyncio
    async def test_dead_observer_ends_subscription(self, config_file, monkeypatch):
        """Losing the watcher reports an error and closes the queue."""
        monkeypatch.setattr(file_module, "OBSERVER_CHECK_INTERVAL", 0.05)
        observer = DeadObserver()
        reader = FileReader(str(config_file), observer_factory=lambda: observer)

        subscription = await reader.subscribe()
        try:
            event = await next_event(subscription)
            assert isinstance(event.error, ProtocolError)

            await asyncio.wait_for(subscription.wait_closed(), timeout=EVENT_TIMEOUT)
            assert observer.stopped
        finally:
            await reader.close()
