"""confsource: configuration sources with change notification.

Read configuration from files, HTTP endpoints, WebSocket feeds, Redis keys
and Kubernetes ConfigMaps or Secrets through one URI-addressed interface,
and decode it into dictionaries or pydantic models.
"""

from . import decoder, reader
from .errors import ConfigurationError
from .events import ReadEvent, Subscription
from .loader import ConfigEvent, ConfigLoader
from .reader import ConfReader, new_reader, register_reader

__version__ = "0.1.0"

__all__ = [
    "ConfReader",
    "ConfigEvent",
    "ConfigLoader",
    "ConfigurationError",
    "ReadEvent",
    "Subscription",
    "decoder",
    "new_reader",
    "reader",
    "register_reader",
]
