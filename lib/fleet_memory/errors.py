"""Error taxonomy for the memory subsystem.

Validation problems raise before any I/O. Storage problems are logged by the
component that saw them and re-raised as StorageFailure. A knowledge write
dropped for low confidence is not an error and raises nothing.
"""

from typing import Optional

from .security import SanitizedException


class FleetMemoryError(Exception):
    """Base exception for memory operations."""
    pass


class InvalidInput(FleetMemoryError, ValueError):
    """A required identifier, text or value was missing or out of range."""
    pass


class NotFound(FleetMemoryError, LookupError):
    """An operation that requires an existing context or knowledge row found none."""
    pass


class OperationCancelled(FleetMemoryError):
    """The caller's cancellation signal was set mid-operation."""
    pass


class StorageFailure(SanitizedException, FleetMemoryError):
    """The cache, durable store or index call failed."""

    def __init__(self, operation: str, message: str, key: Optional[str] = None):
        self.operation = operation
        self.key = key
        detail = f"{operation} failed"
        if key:
            detail += f" for {key}"
        super().__init__(f"{detail}: {message}")


class RedisStartupError(FleetMemoryError):
    """Failed to connect to Redis after all retries."""
    pass


def require(value: Optional[str], name: str) -> str:
    """Return value, or raise InvalidInput when it is None or blank."""
    if value is None or not str(value).strip():
        raise InvalidInput(f"{name} cannot be null or empty")
    return value


def require_confidence(confidence: float, name: str = "confidence") -> float:
    if confidence is None or not 0.0 <= float(confidence) <= 1.0:
        raise InvalidInput(f"{name} must be between 0.0 and 1.0, got {confidence}")
    return float(confidence)
