"""Typed configuration loader.

Ties a reader to a decoder and, optionally, a pydantic model::

    loader = ConfigLoader("redis://localhost:6379/app?content-type=application/json", AppConfig)
    config = await loader.load()

    async with await loader.subscribe() as events:
        async for event in events:
            if event.is_valid:
                apply(event.config)

The format comes from the URI path extension, or from a ``content-type``
query parameter when the path has no recognised extension.
"""

import argparse
import asyncio
import logging
import os
import types
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Generic, Optional, Sequence, TypeVar, Union, get_args, get_origin
from urllib.parse import SplitResult

from pydantic import BaseModel, ValidationError

from .decoder import format_from_extension, format_from_mime, get_decoder
from .env import render_env_tree
from .errors import ConfigurationError, DecodeError, UnsupportedFormatError
from .events import ReadEvent, Subscription
from .reader import ConfReader, new_reader, parse_uri
from .reader.settings import parse_query

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FLAG = "config"
CONTENT_TYPE_PARAM = "content-type"
USAGE_KEY = "usage"

FLAG_TYPES = (str, int, float, bool)

T = TypeVar("T", bound=BaseModel)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ConfigEvent(Generic[T]):
    """A decoded configuration update, or the error that prevented one."""

    source_uri: str
    config: Optional[Union[T, dict[str, Any]]] = None
    error: Optional[BaseException] = None
    timestamp: datetime = field(default_factory=_utcnow)

    @property
    def is_valid(self) -> bool:
        return self.error is None and self.config is not None


def resolve_format(parsed: SplitResult) -> str:
    """Determine the configuration format named by a parsed URI.

    Raises:
        UnsupportedFormatError: If neither the extension nor a content-type
            parameter identifies a registered format
    """
    content_type = parse_query(parsed.query).get(CONTENT_TYPE_PARAM)

    ext = os.path.splitext(parsed.path)[1]
    if ext:
        try:
            return format_from_extension(ext)
        except UnsupportedFormatError:
            if not content_type:
                raise

    if content_type:
        return format_from_mime(content_type)

    raise UnsupportedFormatError(
        f"cannot determine format from URI: {parsed.geturl()}"
    )


def _flag_type(annotation: Any) -> Optional[type]:
    if get_origin(annotation) in (Union, types.UnionType):
        args = [arg for arg in get_args(annotation) if arg is not type(None)]
        if len(args) != 1:
            return None
        annotation = args[0]
    return annotation if annotation in FLAG_TYPES else None


def field_flags(model: type[BaseModel]) -> dict[str, tuple[type, str]]:
    """Collect the model fields exposed as command-line flags.

    A field is exposed when its ``json_schema_extra`` carries a ``usage``
    string, e.g. ``port: int = Field(8080, json_schema_extra={"usage": "listen port"})``.
    The flag is named after the field alias, or the field name, and only
    scalar types (str, int, float, bool and their optionals) are supported.

    Returns:
        Mapping of configuration key to (flag type, help text)
    """
    flags = {}
    for name, info in model.model_fields.items():
        extra = info.json_schema_extra
        usage = extra.get(USAGE_KEY) if isinstance(extra, dict) else None
        if not usage:
            continue

        flag_type = _flag_type(info.annotation)
        if flag_type is None:
            logger.warning(
                f"Field {model.__name__}.{name} has usage text but no flag type for {info.annotation}"
            )
            continue
        flags[info.alias or name] = (flag_type, str(usage))
    return flags


class ConfigLoader(Generic[T]):
    """Loads configuration from any registered source and keeps it current."""

    def __init__(
        self,
        uri: str,
        model: Optional[type[T]] = None,
        reader: Optional[ConfReader] = None,
        overrides: Optional[dict[str, Any]] = None,
    ):
        self.uri = uri
        self.model = model
        self.overrides: dict[str, Any] = dict(overrides or {})
        self._reader = reader
        self._decoder = None
        self.format: Optional[str] = None
        self.raw_data: bytes = b""
        self.data: dict[str, Any] = {}

    @classmethod
    def from_args(
        cls,
        default_uri: str,
        model: Optional[type[T]] = None,
        flag: str = DEFAULT_CONFIG_FLAG,
        argv: Optional[Sequence[str]] = None,
    ) -> "ConfigLoader[T]":
        """Build a loader whose URI comes from a ``--<flag>`` argument.

        Unrelated arguments are left alone; an absent or empty flag falls
        back to ``default_uri``. Model fields marked with a ``usage`` text
        (see ``field_flags``) also become flags, and the ones given on the
        command line override the decoded configuration.
        """
        parser = argparse.ArgumentParser(add_help=False, allow_abbrev=False)
        parser.add_argument(f"--{flag}", dest="uri", default=None)

        keys = {}
        if model is not None:
            for key, (flag_type, usage) in field_flags(model).items():
                if key == flag:
                    logger.warning(f"Field flag --{key} clashes with the URI flag, skipped")
                    continue
                dest = f"field_{len(keys)}"
                keys[dest] = key
                if flag_type is bool:
                    parser.add_argument(
                        f"--{key}",
                        dest=dest,
                        action=argparse.BooleanOptionalAction,
                        default=argparse.SUPPRESS,
                        help=usage,
                    )
                else:
                    parser.add_argument(
                        f"--{key}",
                        dest=dest,
                        type=flag_type,
                        default=argparse.SUPPRESS,
                        help=usage,
                    )

        try:
            args, _ = parser.parse_known_args(argv)
        except SystemExit as e:
            raise ConfigurationError(f"invalid command-line flags: {e}") from e

        values = vars(args)
        overrides = {key: values[dest] for dest, key in keys.items() if dest in values}
        return cls(args.uri or default_uri, model, overrides=overrides)

    @property
    def reader(self) -> Optional[ConfReader]:
        return self._reader

    def _prepare(self) -> None:
        if self._decoder is not None:
            return

        parsed = parse_uri(self.uri)
        self.format = resolve_format(parsed)
        decoder = get_decoder(self.format)
        if self._reader is None:
            self._reader = new_reader(self.uri)
        self._decoder = decoder
        logger.debug(f"Using {self.format} decoder for {self.uri}")

    def decode(self, data: bytes) -> Union[T, dict[str, Any]]:
        """Decode raw bytes and map them onto the model, if any.

        ``${VAR}`` references in string values are rendered from the
        environment, then command-line overrides replace top-level keys.

        Raises:
            DecodeError: If the content is empty, malformed or does not fit
                the model
        """
        self._prepare()
        if not data:
            raise DecodeError("empty configuration data")

        tree = render_env_tree(self._decoder(data))
        tree.update(self.overrides)
        if self.model is None:
            return tree

        try:
            return self.model.model_validate(tree)
        except ValidationError as e:
            raise DecodeError(
                f"failed to decode to {self.model.__name__}: {e}"
            ) from e

    async def load(self) -> Union[T, dict[str, Any]]:
        """Read and decode the configuration once."""
        self._prepare()
        data = await self._reader.read()
        config = self.decode(data)
        self.raw_data = data
        self.data = config if isinstance(config, dict) else config.model_dump()
        logger.info(f"Loaded configuration from {self.uri} ({self.format})")
        return config

    async def subscribe(self) -> Subscription[ConfigEvent[T]]:
        """Load the configuration, then follow its changes.

        The returned subscription starts with the freshly loaded
        configuration, followed by one event per source update.
        """
        initial = await self.load()
        source = await self._reader.subscribe()

        subscription: Subscription[ConfigEvent[T]] = Subscription(self.uri)
        await subscription.put(ConfigEvent(source_uri=self.uri, config=initial))

        task = asyncio.create_task(
            self._forward(source, subscription), name=f"ConfigLoader:{self.uri}"
        )
        subscription.attach(task)
        return subscription

    async def _forward(
        self,
        source: Subscription[ReadEvent],
        subscription: Subscription[ConfigEvent[T]],
    ) -> None:
        try:
            async for event in source:
                await subscription.put(self._to_config_event(event))
        finally:
            await source.aclose()

    def _to_config_event(self, event: ReadEvent) -> ConfigEvent[T]:
        if not event.is_valid:
            error = event.error or DecodeError("empty configuration data")
            return ConfigEvent(
                source_uri=event.source_uri, error=error, timestamp=event.timestamp
            )

        try:
            config = self.decode(event.data)
        except ConfigurationError as e:
            logger.warning(f"Discarding undecodable update from {event.source_uri}: {e}")
            return ConfigEvent(
                source_uri=event.source_uri, error=e, timestamp=event.timestamp
            )

        return ConfigEvent(
            source_uri=event.source_uri, config=config, timestamp=event.timestamp
        )

    async def close(self) -> None:
        if self._reader is not None:
            await self._reader.close()

    async def __aenter__(self) -> "ConfigLoader[T]":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
