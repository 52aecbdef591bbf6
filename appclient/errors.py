"""Error types raised by the app client connection manager."""

from __future__ import annotations

from typing import Any, Sequence


class AppClientError(RuntimeError):
    """Base error for app client failures."""


class InvalidConfiguration(AppClientError, ValueError):
    """Raised when a client configuration fails validation."""

    def __init__(self, message: str, errors: Sequence[dict[str, Any]] = ()) -> None:
        super().__init__(message)
        self.errors = tuple(errors)


class TransportUnavailable(AppClientError):
    """Raised when a shared or dedicated transport cannot be opened."""

    def __init__(self, identifier: str, message: str) -> None:
        super().__init__(f"Transport for app '{identifier}' unavailable: {message}")
        self.identifier = identifier


class ClientClosed(AppClientError):
    """Raised when an operation is attempted on a closed client or session."""

    def __init__(self, identifier: str, what: str = "client") -> None:
        super().__init__(f"App {what} for '{identifier}' is closed")
        self.identifier = identifier


__all__ = [
    "AppClientError",
    "ClientClosed",
    "InvalidConfiguration",
    "TransportUnavailable",
]
