"""Client connection manager for a backend service gateway."""

from __future__ import annotations

__version__ = "0.1.0"

from .client import AppClient
from .config import ClientConfig, load_config, make_config
from .errors import AppClientError, ClientClosed, InvalidConfiguration, TransportUnavailable
from .pool import ConnectionEvent, ConnectionPool, ConnectionState, PoolStats
from .registry import AppClientRegistry
from .session import SessionHandle
from .timers import TimerService
from .transports import HttpxTransportFactory, InMemoryTransportFactory

__all__ = [
    "AppClient",
    "AppClientError",
    "AppClientRegistry",
    "ClientClosed",
    "ClientConfig",
    "ConnectionEvent",
    "ConnectionPool",
    "ConnectionState",
    "HttpxTransportFactory",
    "InMemoryTransportFactory",
    "InvalidConfiguration",
    "PoolStats",
    "SessionHandle",
    "TimerService",
    "TransportUnavailable",
    "load_config",
    "make_config",
    "__version__",
]
