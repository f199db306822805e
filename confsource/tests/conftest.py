"""Shared test configuration and fixtures for confsource."""

import asyncio
import tempfile
from pathlib import Path
from typing import Optional

import pytest

from confsource.events import ReadEvent, Subscription
from confsource.reader.base import ConfReader

EVENT_TIMEOUT = 5.0


class MemoryReader(ConfReader):
    """In-memory reader whose updates are pushed by the test."""

    def __init__(self, uri: str, data: bytes = b""):
        super().__init__(uri)
        self.data = data
        self.updates: asyncio.Queue = asyncio.Queue()
        self.released = False

    async def push(self, data: Optional[bytes] = None, error: Optional[BaseException] = None):
        await self.updates.put((data, error))

    async def _read(self) -> bytes:
        return self.data

    async def _start_subscription(self, subscription: Subscription[ReadEvent]):
        return self._pump(subscription)

    async def _pump(self, subscription: Subscription[ReadEvent]) -> None:
        while True:
            data, error = await self.updates.get()
            if data is None and error is None:
                return
            await self.emit(subscription, data, error)

    async def _release(self) -> None:
        self.released = True


async def next_event(subscription, timeout: float = EVENT_TIMEOUT):
    """Wait for the next event, failing the test instead of hanging."""
    return await asyncio.wait_for(subscription.get(), timeout=timeout)


@pytest.fixture()
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture()
def config_file(temp_dir):
    """A JSON configuration file with a single key."""
    path = temp_dir / "config.json"
    path.write_text('{"a": 1}')
    return path


@pytest.fixture()
def memory_reader():
    """Reader for a JSON document held in memory."""
    return MemoryReader("file:///etc/app/config.json", b'{"a": 1}')
