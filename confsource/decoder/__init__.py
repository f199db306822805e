"""Configuration format decoders.

Decoders for JSON, YAML, TOML, INI and XML are registered on import.
"""

from .formats import (
    ConfigFormat,
    decode_ini,
    decode_json,
    decode_toml,
    decode_xml,
    decode_yaml,
    register_builtin_decoders,
)
from .registry import (
    Decoder,
    format_from_extension,
    format_from_mime,
    get_decoder,
    register_decoder,
    registered_formats,
)

register_builtin_decoders()

__all__ = [
    "ConfigFormat",
    "Decoder",
    "decode_ini",
    "decode_json",
    "decode_toml",
    "decode_xml",
    "decode_yaml",
    "format_from_extension",
    "format_from_mime",
    "get_decoder",
    "register_decoder",
    "registered_formats",
]
