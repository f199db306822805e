"""Exception hierarchy for configuration sources.

Every error raised by a reader, decoder or loader derives from
``ConfigurationError`` so callers can catch the whole family at once, while
the intermediate classes let them tell transient faults from data errors.
"""

from typing import Iterable, Optional


class ConfigurationError(Exception):
    """Base exception for configuration source errors."""

    pass


# Construction errors


class ConstructionError(ConfigurationError):
    """Raised when a reader cannot be built from its URI."""

    pass


class InvalidURIError(ConstructionError):
    """Raised when a URI is blank or malformed."""

    pass


class UnsupportedSchemeError(ConstructionError):
    """Raised when no reader is registered for a URI scheme."""

    def __init__(self, scheme: str, message: Optional[str] = None):
        self.scheme = scheme
        super().__init__(message or f"unsupported scheme: {scheme!r}")


class InvalidSettingError(ConstructionError):
    """Raised when a query parameter holds an invalid value."""

    pass


# Transport errors


class TransportError(ConfigurationError):
    """Raised when the underlying transport fails (retryable)."""

    pass


class FileReadError(TransportError):
    """Raised when a local file cannot be opened or read."""

    pass


class HTTPStatusError(TransportError):
    """Raised when an HTTP endpoint answers with a non-success status."""

    def __init__(self, status_code: int, reason: str = ""):
        self.status_code = status_code
        self.reason = reason
        super().__init__(f"HTTP request failed with status: {status_code} {reason}".rstrip())


class RetryExhaustedError(TransportError):
    """Raised when every retry attempt of a one-shot read failed."""

    def __init__(self, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"failed after {attempts} attempts: {last_error}")


# Not-found and ambiguity errors


class NotFoundError(ConfigurationError):
    """Raised when the addressed value does not exist."""

    pass


class KeyNotFoundError(NotFoundError):
    """Raised when a key, hash field or resource key is missing."""

    def __init__(self, key: str, where: str = ""):
        self.key = key
        location = f" in {where}" if where else ""
        super().__init__(f"key {key!r} not found{location}")


class ResourceDeletedError(NotFoundError):
    """Raised (as an event error) when a watched resource was deleted."""

    pass


class AmbiguousKeyError(ConfigurationError):
    """Raised when a resource holds several values and none was selected."""

    def __init__(self, resource: str, keys: Iterable[str]):
        self.resource = resource
        self.keys = sorted(keys)
        super().__init__(
            f"{resource} contains multiple keys, please specify one: {self.keys}"
        )


class EmptyResourceError(ConfigurationError):
    """Raised when a resource holds no values at all."""

    pass


# Protocol errors


class ProtocolError(ConfigurationError):
    """Raised when a change feed misbehaves."""

    pass


class StreamClosedError(ProtocolError):
    """Raised when a long-lived stream ends unexpectedly."""

    pass


# State errors


class ReaderStateError(ConfigurationError):
    """Raised when an operation is not allowed in the reader's current state."""

    pass


class ReaderClosedError(ReaderStateError):
    """Raised when a closed reader is used."""

    def __init__(self, message: str = "reader is closed"):
        super().__init__(message)


class AlreadySubscribedError(ReaderStateError):
    """Raised when a second concurrent subscription is requested."""

    def __init__(self, message: str = "already subscribed"):
        super().__init__(message)


class SubscriptionClosedError(ReaderStateError):
    """Raised when reading from a subscription that has been closed and drained."""

    def __init__(self, message: str = "subscription is closed"):
        super().__init__(message)


class SubscriptionSetupError(ConfigurationError):
    """Raised when a subscription cannot be established."""

    pass


# Decoder errors


class UnsupportedFormatError(ConfigurationError):
    """Raised when a configuration format cannot be determined or is unknown."""

    pass


class DecodeError(ConfigurationError):
    """Raised when configuration content cannot be decoded."""

    pass


def is_retryable(error: BaseException) -> bool:
    """Return True if a one-shot read may retry after ``error``.

    Not-found, ambiguity and state errors are data or programming errors and
    are never retried.
    """
    if isinstance(
        error,
        (NotFoundError, AmbiguousKeyError, EmptyResourceError, ReaderStateError),
    ):
        return False
    return isinstance(error, Exception)
