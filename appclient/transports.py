"""Network transports that carry sessions to the backend gateway."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Any, Callable, Coroutine, Protocol, TypeVar, runtime_checkable

import httpx

from .config import ClientConfig
from .errors import ClientClosed, TransportUnavailable

LOG = logging.getLogger(__name__)

T = TypeVar("T")


@runtime_checkable
class Transport(Protocol):
    """An open connection to the gateway for one app."""

    identifier: str

    @property
    def closed(self) -> bool: ...

    def request(self, method: str, path: str, **kwargs: Any) -> Any:
        """Issue a request over this transport."""

    def close(self) -> None:
        """Tear the transport down; calling it again is a no-op."""


@runtime_checkable
class TransportFactory(Protocol):
    """Opens transports; raises TransportUnavailable when it cannot."""

    def open(self, config: ClientConfig) -> Transport: ...


class HttpxTransport:
    """Transport wrapping an ``httpx.AsyncClient`` driven from the factory loop."""

    def __init__(
        self,
        config: ClientConfig,
        client: httpx.AsyncClient,
        factory: HttpxTransportFactory,
        *,
        location: dict[str, Any] | None = None,
    ) -> None:
        self.identifier = config.app_id
        self.base_url = config.base_url
        self.location = location or {}
        self._auth_header_name = config.auth_header_name
        self._client = client
        self._factory = factory
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def request(
        self,
        method: str,
        path: str,
        *,
        access_token: str | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request and return the raw response."""

        if self._closed:
            raise ClientClosed(self.identifier, "transport")
        if access_token is not None:
            headers = dict(kwargs.pop("headers", None) or {})
            headers[self._auth_header_name] = f"Bearer {access_token}"
            kwargs["headers"] = headers
        try:
            return self._factory._run(self._client.request(method, path, **kwargs))
        except httpx.TransportError as exc:
            raise TransportUnavailable(self.identifier, str(exc)) from exc

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._factory._run(self._client.aclose())
        LOG.debug("Closed HTTP transport", extra={"app_id": self.identifier})


class HttpxTransportFactory:
    """Opens HTTP transports, probing the app location endpoint first."""

    LOCATION_PATH = "/api/client/v2.0/app/{app_id}/location"

    def __init__(
        self,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        probe: bool = True,
    ) -> None:
        self._transport = transport
        self._probe = probe
        self._loop = asyncio.new_event_loop()
        self._loop_thread = threading.Thread(
            target=self._loop.run_forever,
            name="appclient-http",
            daemon=True,
        )
        self._loop_thread.start()

    def open(self, config: ClientConfig) -> HttpxTransport:
        return self._run(self._open(config))

    def shutdown(self) -> None:
        """Stop the background event loop."""

        if not self._loop.is_running():
            return
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._loop_thread.join(timeout=1)

    def __del__(self) -> None:  # pragma: no cover - best effort cleanup
        try:
            self.shutdown()
        except Exception:
            pass

    def _run(self, coro: Coroutine[Any, Any, T]) -> T:
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        return future.result()

    async def _open(self, config: ClientConfig) -> HttpxTransport:
        client = httpx.AsyncClient(
            base_url=config.base_url,
            headers=config.request_headers(),
            timeout=httpx.Timeout(config.request_timeout, connect=config.connect_timeout),
            transport=self._transport,
        )
        location: dict[str, Any] = {}
        if self._probe:
            try:
                response = await client.get(self.LOCATION_PATH.format(app_id=config.app_id))
                response.raise_for_status()
            except httpx.HTTPError as exc:
                await client.aclose()
                raise TransportUnavailable(config.app_id, str(exc)) from exc
            try:
                payload = response.json()
            except ValueError:
                payload = None
            if isinstance(payload, dict):
                location = payload
        LOG.info("Opened HTTP transport", extra={"app_id": config.app_id, "base_url": config.base_url})
        return HttpxTransport(config, client, self, location=location)


class InMemoryTransport:
    """Transport that records requests instead of touching the network."""

    def __init__(
        self,
        config: ClientConfig,
        responder: Callable[[str, str, dict[str, Any]], Any] | None = None,
    ) -> None:
        self.identifier = config.app_id
        self.base_url = config.base_url
        self.headers = config.request_headers()
        self.requests: list[tuple[str, str, dict[str, Any]]] = []
        self.close_calls = 0
        self._responder = responder
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def request(self, method: str, path: str, **kwargs: Any) -> Any:
        if self._closed:
            raise ClientClosed(self.identifier, "transport")
        self.requests.append((method, path, kwargs))
        if self._responder is None:
            return None
        return self._responder(method, path, kwargs)

    def close(self) -> None:
        self.close_calls += 1
        self._closed = True


class InMemoryTransportFactory:
    """Factory producing in-memory transports; can simulate open failures."""

    def __init__(
        self,
        *,
        responder: Callable[[str, str, dict[str, Any]], Any] | None = None,
        open_delay: float = 0.0,
    ) -> None:
        self._responder = responder
        self._open_delay = open_delay
        self._lock = threading.Lock()
        self._failures: list[str] = []
        self.opened: list[InMemoryTransport] = []

    def fail_next(self, count: int = 1, message: str = "connection refused") -> None:
        """Make the next ``count`` opens raise TransportUnavailable."""

        with self._lock:
            self._failures.extend([message] * count)

    def open(self, config: ClientConfig) -> InMemoryTransport:
        if self._open_delay:
            time.sleep(self._open_delay)
        with self._lock:
            if self._failures:
                raise TransportUnavailable(config.app_id, self._failures.pop(0))
            transport = InMemoryTransport(config, self._responder)
            self.opened.append(transport)
        return transport

    def open_count(self, identifier: str | None = None) -> int:
        with self._lock:
            return sum(1 for t in self.opened if identifier is None or t.identifier == identifier)


__all__ = [
    "HttpxTransport",
    "HttpxTransportFactory",
    "InMemoryTransport",
    "InMemoryTransportFactory",
    "Transport",
    "TransportFactory",
]
