"""Built-in configuration format decoders.

Each decoder turns raw bytes into a plain dictionary tree and raises
``DecodeError`` when the content is malformed or is not a mapping.
"""

import configparser
import json
import tomllib
import xml.etree.ElementTree as ElementTree
from enum import Enum
from typing import Any

import yaml

from ..errors import DecodeError
from .registry import register_decoder


class ConfigFormat(str, Enum):
    """Supported configuration formats."""

    JSON = "json"
    YAML = "yaml"
    TOML = "toml"
    INI = "ini"
    XML = "xml"


def _text(data: bytes, format: ConfigFormat) -> str:
    if not data:
        raise DecodeError(f"empty {format.value} data")
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise DecodeError(f"{format.value} data is not valid UTF-8: {e}") from e


def _require_mapping(value: Any, format: ConfigFormat) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise DecodeError(
            f"{format.value} document must be a mapping, got {type(value).__name__}"
        )
    return value


def decode_json(data: bytes) -> dict[str, Any]:
    try:
        value = json.loads(_text(data, ConfigFormat.JSON))
    except json.JSONDecodeError as e:
        raise DecodeError(f"failed to unmarshal JSON: {e}") from e
    return _require_mapping(value, ConfigFormat.JSON)


def decode_yaml(data: bytes) -> dict[str, Any]:
    try:
        value = yaml.safe_load(_text(data, ConfigFormat.YAML))
    except yaml.YAMLError as e:
        raise DecodeError(f"failed to unmarshal YAML: {e}") from e
    return _require_mapping(value, ConfigFormat.YAML)


def decode_toml(data: bytes) -> dict[str, Any]:
    try:
        return tomllib.loads(_text(data, ConfigFormat.TOML))
    except tomllib.TOMLDecodeError as e:
        raise DecodeError(f"failed to unmarshal TOML: {e}") from e


def decode_ini(data: bytes) -> dict[str, Any]:
    """Decode INI content.

    Keys outside any section (the ``DEFAULT`` section) are placed at the top
    level; every other section becomes a nested mapping. Key case is kept
    and no interpolation is performed.
    """
    parser = configparser.ConfigParser(interpolation=None)
    parser.optionxform = str
    try:
        parser.read_string(_text(data, ConfigFormat.INI))
    except configparser.Error as e:
        raise DecodeError(f"failed to parse INI: {e}") from e

    config: dict[str, Any] = dict(parser.defaults())
    for section_name in parser.sections():
        config[section_name] = dict(parser[section_name])
    return config


def _element_to_value(element: ElementTree.Element) -> Any:
    children = list(element)
    attributes = {f"@{name}": value for name, value in element.attrib.items()}
    text = (element.text or "").strip()

    if not children and not attributes:
        return text

    result: dict[str, Any] = dict(attributes)
    for child in children:
        value = _element_to_value(child)
        if child.tag in result:
            existing = result[child.tag]
            if isinstance(existing, list):
                existing.append(value)
            else:
                result[child.tag] = [existing, value]
        else:
            result[child.tag] = value

    if text:
        result["#text"] = text
    return result


def decode_xml(data: bytes) -> dict[str, Any]:
    """Decode XML content into the mapping of the root element's children.

    Repeated child elements become lists, attributes are stored under
    ``@name`` and text mixed with child elements under ``#text``.
    """
    try:
        root = ElementTree.fromstring(_text(data, ConfigFormat.XML))
    except ElementTree.ParseError as e:
        raise DecodeError(f"failed to unmarshal XML: {e}") from e

    value = _element_to_value(root)
    if isinstance(value, str):
        return {root.tag: value} if value else {}
    return value


def register_builtin_decoders() -> None:
    register_decoder(
        ConfigFormat.JSON, decode_json, [".json"], ["application/json", "text/json"]
    )
    register_decoder(
        ConfigFormat.YAML,
        decode_yaml,
        [".yaml", ".yml"],
        ["application/yaml", "application/x-yaml", "text/yaml", "text/x-yaml"],
    )
    register_decoder(
        ConfigFormat.TOML, decode_toml, [".toml"], ["application/toml", "text/toml"]
    )
    register_decoder(
        ConfigFormat.INI,
        decode_ini,
        [".ini", ".cfg", ".conf"],
        ["text/ini", "application/ini"],
    )
    register_decoder(
        ConfigFormat.XML, decode_xml, [".xml"], ["application/xml", "text/xml"]
    )
