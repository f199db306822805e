"""Scheme to reader constructor registry.

Readers register themselves when ``confsource.reader`` is imported; after that
the table is only read. Resolving a URI validates it completely before any
network or filesystem action is taken.
"""

import logging
from typing import TYPE_CHECKING, Callable
from urllib.parse import SplitResult, urlsplit

from ..errors import InvalidURIError, UnsupportedSchemeError

if TYPE_CHECKING:
    from .base import ConfReader

logger = logging.getLogger(__name__)

ReaderFactory = Callable[[str], "ConfReader"]

# Scheme used for bare filesystem paths
SCHEME_DEFAULT = ""

_readers: dict[str, ReaderFactory] = {}


def register_reader(scheme: str, factory: ReaderFactory) -> None:
    """Register a reader constructor for a scheme.

    The empty scheme may only be registered through ``register_default_reader``.

    Raises:
        ValueError: If the scheme is empty or the factory is not callable
    """
    if not scheme:
        raise ValueError("empty scheme")
    _register(scheme.lower(), factory)


def register_default_reader(factory: ReaderFactory) -> None:
    """Register the reader used for URIs that are plain filesystem paths."""
    _register(SCHEME_DEFAULT, factory)


def _register(scheme: str, factory: ReaderFactory) -> None:
    if not callable(factory):
        raise ValueError(f"reader factory for scheme {scheme!r} is not callable")
    if scheme in _readers and _readers[scheme] is not factory:
        logger.debug(f"Replacing reader registered for scheme {scheme!r}")
    _readers[scheme] = factory


def registered_schemes() -> list[str]:
    """Return the registered schemes, sorted."""
    return sorted(_readers)


def parse_uri(uri: str) -> SplitResult:
    """Parse and validate a configuration URI.

    A URI without a scheme is accepted only when it names a path and a
    default (filesystem) reader is registered.

    Raises:
        InvalidURIError: If the URI is blank or malformed
        UnsupportedSchemeError: If no reader handles the scheme
    """
    if not isinstance(uri, str) or not uri.strip():
        raise InvalidURIError("empty URI")

    try:
        parsed = urlsplit(uri.strip())
        # Accessing the port validates it
        parsed.port
    except ValueError as e:
        raise InvalidURIError(f"invalid URI format: {uri}: {e}") from e

    scheme = parsed.scheme.lower()
    if not scheme:
        if not parsed.path or SCHEME_DEFAULT not in _readers:
            raise InvalidURIError(f"missing scheme in URI: {uri}")
        return parsed

    if scheme not in _readers:
        raise UnsupportedSchemeError(scheme, f"unsupported URI scheme: {scheme}")

    return parsed


def get_reader(scheme: str, uri: str) -> "ConfReader":
    """Construct the reader registered for ``scheme``.

    Raises:
        UnsupportedSchemeError: If no reader is registered for the scheme
    """
    factory = _readers.get(scheme.lower())
    if factory is None:
        raise UnsupportedSchemeError(scheme)
    return factory(uri)


def new_reader(uri: str) -> "ConfReader":
    """Construct a reader for ``uri`` by detecting its scheme."""
    parsed = parse_uri(uri)
    return get_reader(parsed.scheme, uri)
