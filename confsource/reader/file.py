"""Local file reader with OS change notifications.

URIs: ``file:///etc/app/config.yaml``, ``file://relative/config.json`` (host
and path are joined) or a bare path such as ``/etc/app/config.yaml``.

Watching uses watchdog. The observer watches the parent directory so that
editors replacing the file atomically are still seen; events for other
files in that directory are ignored.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Callable, Optional, Union
from urllib.parse import unquote

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..errors import (
    ConstructionError,
    FileReadError,
    InvalidURIError,
    ProtocolError,
    SubscriptionSetupError,
    UnsupportedSchemeError,
)
from ..events import ReadEvent, Subscription
from .base import ConfReader, Producer
from .registry import SCHEME_DEFAULT, parse_uri
from .settings import FileSettings

logger = logging.getLogger(__name__)

SCHEME_FILE = "file"

# How often the watch loop checks that the observer thread is still alive
OBSERVER_CHECK_INTERVAL = 1.0


class _ChangeMarker:
    """Notification that the watched file changed."""

    def __init__(self, event_type: str):
        self.event_type = event_type


class WatchedFileHandler(FileSystemEventHandler):
    """Forwards events for one file from the observer thread to the event loop."""

    def __init__(
        self,
        file_path: Path,
        loop: asyncio.AbstractEventLoop,
        notifications: asyncio.Queue,
    ):
        self.file_path = str(file_path)
        self._loop = loop
        self._notifications = notifications

    def on_created(self, event: FileSystemEvent) -> None:
        self._forward(event, event.src_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._forward(event, event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        # Atomic saves rename a temporary file over the watched one
        self._forward(event, event.dest_path)

    def _forward(self, event: FileSystemEvent, path: Union[str, bytes]) -> None:
        if event.is_directory:
            return
        if isinstance(path, bytes):
            path = os.fsdecode(path)
        if os.path.abspath(path) != self.file_path:
            return

        try:
            self._loop.call_soon_threadsafe(
                self._notifications.put_nowait, _ChangeMarker(event.event_type)
            )
        except RuntimeError:
            # Event loop already closed; the subscription is gone
            logger.debug(f"Dropping {event.event_type} event for {self.file_path}")


class FileReader(ConfReader):
    """Reads configuration from a local file and watches it for writes.

    The subscription has no synthetic initial event: call ``read`` first to
    get the current content.
    """

    def __init__(self, uri: str, observer_factory: Callable[[], Observer] = Observer):
        super().__init__(uri)

        parsed = parse_uri(uri)
        scheme = parsed.scheme.lower()
        if scheme not in (SCHEME_FILE, SCHEME_DEFAULT):
            raise UnsupportedSchemeError(
                scheme, f"unsupported scheme: {scheme}, expected: {SCHEME_FILE} or empty"
            )

        self.path = self._resolve_path(parsed.netloc, unquote(parsed.path))
        self.settings = FileSettings.from_query(parsed.query)

        try:
            self.path.stat()
        except OSError as e:
            raise ConstructionError(f"file access error: {self.path}: {e}") from e

        self._observer_factory = observer_factory
        self._observer: Optional[Observer] = None

    @staticmethod
    def _resolve_path(host: str, path: str) -> Path:
        if host and host != "localhost":
            path = os.path.join(host, path.lstrip("/"))
        if not path:
            raise InvalidURIError("empty file path")
        return Path(os.path.abspath(path))

    async def _read(self) -> bytes:
        return await asyncio.to_thread(self._read_file)

    def _read_file(self) -> bytes:
        try:
            with open(self.path, "rb") as f:
                return f.read()
        except OSError as e:
            raise FileReadError(f"failed to read file {self.path}: {e}") from e

    async def _start_subscription(
        self, subscription: Subscription[ReadEvent]
    ) -> Producer:
        loop = asyncio.get_running_loop()
        notifications: asyncio.Queue = asyncio.Queue()
        handler = WatchedFileHandler(self.path, loop, notifications)

        observer = self._observer_factory()
        try:
            observer.schedule(handler, str(self.path.parent), recursive=False)
            observer.start()
        except Exception as e:
            raise SubscriptionSetupError(
                f"failed to watch file {self.path}: {e}"
            ) from e

        async with self._lock:
            self._observer = observer

        logger.info(f"Watching file {self.path}")
        return self._watch(subscription, observer, notifications)

    async def _watch(
        self,
        subscription: Subscription[ReadEvent],
        observer: Observer,
        notifications: asyncio.Queue,
    ) -> None:
        try:
            while True:
                try:
                    marker = await asyncio.wait_for(
                        notifications.get(), timeout=OBSERVER_CHECK_INTERVAL
                    )
                except asyncio.TimeoutError:
                    if not observer.is_alive():
                        await self.emit(
                            subscription,
                            error=ProtocolError(
                                f"file watcher for {self.path} stopped unexpectedly"
                            ),
                        )
                        return
                    continue

                logger.debug(f"File {self.path} {marker.event_type}")

                # Let the writer finish, then fold any further notifications
                # for the same write into this one
                await asyncio.sleep(self.settings.settle_delay)
                while not notifications.empty():
                    notifications.get_nowait()

                try:
                    data = await asyncio.to_thread(self._read_file)
                except FileReadError as e:
                    await self.emit(subscription, error=e)
                else:
                    await self.emit(subscription, data)
        finally:
            await self._stop_observer(observer)

    async def _stop_observer(self, observer: Observer) -> None:
        async with self._lock:
            if self._observer is observer:
                self._observer = None
        observer.stop()
        await asyncio.to_thread(observer.join, 5.0)
        logger.info(f"Stopped watching file {self.path}")

    async def _release(self) -> None:
        async with self._lock:
            observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            await asyncio.to_thread(observer.join, 5.0)
