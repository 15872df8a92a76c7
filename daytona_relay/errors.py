"""Error taxonomy shared by the runner and the HTTP surface."""

from __future__ import annotations

__all__ = [
    "ChannelClosedError",
    "ConfigurationError",
    "FrameParseError",
    "RelayError",
    "RequestError",
    "SpawnError",
    "ValidationError",
    "WorkerTimeoutError",
]


class RelayError(RuntimeError):
    """Base class for relay failures."""


class RequestError(RelayError):
    """Raised before streaming starts; rendered as a JSON error body."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(RequestError):
    """Raised when the inbound request is missing required fields."""

    status_code = 400


class ConfigurationError(RequestError):
    """Raised when worker credentials are not configured."""

    status_code = 500


class SpawnError(RelayError):
    """Raised when the worker executable cannot be launched."""


class WorkerTimeoutError(RelayError):
    """Raised when the worker outlives the configured timeout."""


class ChannelClosedError(RelayError):
    """Raised when writing to a client channel that has gone away."""


class FrameParseError(ValueError):
    """Raised for a malformed marker payload; never escapes the parser."""
