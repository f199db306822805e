"""Format to decoder registry with extension and MIME type lookups."""

import logging
from typing import Any, Callable, Iterable, Union

from ..errors import UnsupportedFormatError

logger = logging.getLogger(__name__)

Decoder = Callable[[bytes], dict[str, Any]]

_decoders: dict[str, Decoder] = {}
_extensions: dict[str, str] = {}
_mimes: dict[str, str] = {}


def _format_name(format: Union[str, Any]) -> str:
    return str(getattr(format, "value", format)).lower()


def _normalize_extension(ext: str) -> str:
    ext = ext.strip().lower()
    if not ext.startswith("."):
        ext = "." + ext
    return ext


def register_decoder(
    format: Union[str, Any],
    decoder: Decoder,
    extensions: Iterable[str] = (),
    mimes: Iterable[str] = (),
) -> None:
    """Register a decoder and the extensions and MIME types mapping to it.

    Raises:
        ValueError: If the format is empty or the decoder is not callable
    """
    name = _format_name(format)
    if not name:
        raise ValueError("format cannot be empty")
    if not callable(decoder):
        raise ValueError(f"decoder for {name} is not callable")

    _decoders[name] = decoder
    for ext in extensions:
        _extensions[_normalize_extension(ext)] = name
    for mime in mimes:
        mime = mime.strip().lower()
        if mime:
            _mimes[mime] = name


def format_from_extension(ext: str) -> str:
    """Return the format registered for a file extension (``.yaml`` or ``yaml``).

    Raises:
        UnsupportedFormatError: If the extension is empty or unknown
    """
    if not ext or not ext.strip():
        raise UnsupportedFormatError("empty extension")
    ext = _normalize_extension(ext)
    try:
        return _extensions[ext]
    except KeyError:
        raise UnsupportedFormatError(f"unsupported file extension: {ext}") from None


def format_from_mime(mime: str) -> str:
    """Return the format registered for a MIME type.

    Parameters such as ``; charset=utf-8`` are ignored.

    Raises:
        UnsupportedFormatError: If the MIME type is empty or unknown
    """
    if not mime or not mime.strip():
        raise UnsupportedFormatError("empty MIME type")
    mime = mime.split(";", 1)[0].strip().lower()
    try:
        return _mimes[mime]
    except KeyError:
        raise UnsupportedFormatError(f"unsupported MIME type: {mime}") from None


def get_decoder(format: Union[str, Any]) -> Decoder:
    """Return the decoder registered for a format.

    Raises:
        UnsupportedFormatError: If no decoder is registered
    """
    name = _format_name(format)
    if not name:
        raise UnsupportedFormatError("empty format")
    try:
        return _decoders[name]
    except KeyError:
        raise UnsupportedFormatError(f"no decoder registered for format: {name}") from None


def registered_formats() -> list[str]:
    return sorted(_decoders)
