"""Configuration source readers.

Importing this package registers every built-in reader:

- ``file://`` and bare paths: ``FileReader``
- ``http://``, ``https://``: ``HTTPReader``
- ``ws://``, ``wss://``: ``WSReader``
- ``redis://``, ``rediss://``: ``RedisReader``
- ``k8s://``: ``K8SReader``
"""

from .base import ConfReader
from .file import SCHEME_FILE, FileReader
from .http import SCHEME_HTTP, SCHEME_HTTPS, HTTPReader
from .k8s import SCHEME_K8S, K8SReader
from .redis import SCHEME_REDIS, SCHEME_REDISS, RedisReader
from .registry import (
    get_reader,
    new_reader,
    parse_uri,
    register_default_reader,
    register_reader,
    registered_schemes,
)
from .ws import SCHEME_WS, SCHEME_WSS, WSReader

register_default_reader(FileReader)
register_reader(SCHEME_FILE, FileReader)
register_reader(SCHEME_HTTP, HTTPReader)
register_reader(SCHEME_HTTPS, HTTPReader)
register_reader(SCHEME_WS, WSReader)
register_reader(SCHEME_WSS, WSReader)
register_reader(SCHEME_REDIS, RedisReader)
register_reader(SCHEME_REDISS, RedisReader)
register_reader(SCHEME_K8S, K8SReader)

__all__ = [
    "ConfReader",
    "FileReader",
    "HTTPReader",
    "WSReader",
    "RedisReader",
    "K8SReader",
    "get_reader",
    "new_reader",
    "parse_uri",
    "register_reader",
    "register_default_reader",
    "registered_schemes",
]
