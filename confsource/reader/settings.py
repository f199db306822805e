"""Per-reader settings parsed from URI query parameters.

Settings are immutable pydantic models built once, when a reader is
constructed. Any invalid value is reported as ``InvalidSettingError`` at that
point, never when the reader is later used.

Durations follow the Go grammar used by the URIs in the wild (``250ms``,
``5s``, ``1m30s``, ``2h``); a bare number is taken as seconds.
"""

import re
from typing import Any, Optional, Union
from urllib.parse import parse_qs

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..errors import InvalidSettingError

# Defaults shared by the network readers
DEFAULT_TIMEOUT = 30.0
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_DELAY = 1.0

# WebSocket keepalive
DEFAULT_PING_INTERVAL = 30.0
DEFAULT_PONG_WAIT = 60.0
DEFAULT_WRITE_WAIT = 10.0

# Redis
DEFAULT_DB = 0
DEFAULT_POOL_SIZE = 10
DEFAULT_MIN_IDLE_CONNS = 1

# Settle delays before re-reading a changed source
DEFAULT_FILE_SETTLE_DELAY = 0.05
DEFAULT_K8S_SETTLE_DELAY = 0.1

HEADER_PREFIX = "header_"

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(value: Union[str, int, float]) -> float:
    """Parse a duration into seconds.

    Args:
        value: Duration string such as ``"1m30s"``, or a number of seconds

    Returns:
        Duration in seconds

    Raises:
        ValueError: If the value cannot be parsed
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)

    text = value.strip()
    if not text:
        raise ValueError("empty duration")

    try:
        return float(text)
    except ValueError:
        pass

    sign = 1.0
    if text[0] in "+-":
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]

    total = 0.0
    position = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            raise ValueError(f"invalid duration: {value!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()

    if position == 0 or position != len(text):
        raise ValueError(f"invalid duration: {value!r}")

    return sign * total


def parse_query(query: str) -> dict[str, str]:
    """Flatten a query string, keeping the first value of each parameter."""
    parsed = parse_qs(query, keep_blank_values=True)
    return {key: values[0] for key, values in parsed.items() if values}


def extract_headers(query: dict[str, str]) -> dict[str, str]:
    """Collect ``header_<Name>=<Value>`` parameters into a header mapping."""
    return {
        key[len(HEADER_PREFIX) :]: value
        for key, value in query.items()
        if key.startswith(HEADER_PREFIX) and len(key) > len(HEADER_PREFIX)
    }


class ReaderSettings(BaseModel):
    """Settings common to every reader."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    timeout: float = Field(default=DEFAULT_TIMEOUT, gt=0)
    retry_attempts: int = Field(default=DEFAULT_RETRY_ATTEMPTS, ge=1)
    retry_delay: float = Field(default=DEFAULT_RETRY_DELAY, ge=0)

    @field_validator("timeout", "retry_delay", mode="before")
    @classmethod
    def _parse_durations(cls, value: Any) -> Any:
        if isinstance(value, str):
            return parse_duration(value)
        return value

    @classmethod
    def from_query(cls, query: Union[str, dict[str, str]], **overrides: Any):
        """Build settings from a raw or pre-parsed query string.

        Raises:
            InvalidSettingError: If any value is invalid
        """
        params = parse_query(query) if isinstance(query, str) else dict(query)
        values = {
            name: params[name] for name in cls.model_fields if name in params
        }
        values.update(cls._extra_values(params))
        values.update(overrides)

        try:
            return cls(**values)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}"
                for err in e.errors()
            )
            raise InvalidSettingError(f"invalid query configuration: {problems}") from e

    @classmethod
    def _extra_values(cls, params: dict[str, str]) -> dict[str, Any]:
        """Hook for subclasses deriving values from non-field parameters."""
        return {}


class FileSettings(ReaderSettings):
    settle_delay: float = Field(default=DEFAULT_FILE_SETTLE_DELAY, ge=0)

    @field_validator("settle_delay", mode="before")
    @classmethod
    def _parse_settle(cls, value: Any) -> Any:
        return parse_duration(value) if isinstance(value, str) else value


class HTTPSettings(ReaderSettings):
    """HTTP client settings.

    ``headers`` come from ``header_<Name>`` parameters; Basic credentials from
    the URI user-info are added by the reader.
    """

    headers: dict[str, str] = Field(default_factory=dict)
    tls_insecure: bool = False

    @classmethod
    def _extra_values(cls, params: dict[str, str]) -> dict[str, Any]:
        return {"headers": extract_headers(params)}


class WSSettings(HTTPSettings):
    ping_interval: float = Field(default=DEFAULT_PING_INTERVAL, gt=0)
    pong_wait: float = Field(default=DEFAULT_PONG_WAIT, gt=0)
    write_wait: float = Field(default=DEFAULT_WRITE_WAIT, gt=0)

    @field_validator("ping_interval", "pong_wait", "write_wait", mode="before")
    @classmethod
    def _parse_keepalive(cls, value: Any) -> Any:
        return parse_duration(value) if isinstance(value, str) else value


class RedisSettings(ReaderSettings):
    """Redis client settings.

    ``max_retries`` is accepted as an alias of ``retry_attempts``.
    """

    db: int = Field(default=DEFAULT_DB, ge=0)
    pool_size: int = Field(default=DEFAULT_POOL_SIZE, gt=0)
    min_idle_conns: int = Field(default=DEFAULT_MIN_IDLE_CONNS, ge=0)
    tls_insecure: bool = False

    @classmethod
    def _extra_values(cls, params: dict[str, str]) -> dict[str, Any]:
        if "max_retries" in params and "retry_attempts" not in params:
            return {"retry_attempts": params["max_retries"]}
        return {}


class K8SSettings(ReaderSettings):
    settle_delay: float = Field(default=DEFAULT_K8S_SETTLE_DELAY, ge=0)
    sync_timeout: Optional[float] = Field(default=None, gt=0)

    @field_validator("settle_delay", "sync_timeout", mode="before")
    @classmethod
    def _parse_k8s_durations(cls, value: Any) -> Any:
        return parse_duration(value) if isinstance(value, str) else value

    @property
    def cache_sync_timeout(self) -> float:
        return self.sync_timeout if self.sync_timeout is not None else self.timeout
