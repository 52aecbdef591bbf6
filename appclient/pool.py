"""Shared transport pool with reference counting and linger timers."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

from .config import ClientConfig
from .errors import ClientClosed, TransportUnavailable
from .session import ReleaseCallback, SessionHandle
from .timers import Timer, TimerFacility, TimerService
from .transports import HttpxTransportFactory, Transport, TransportFactory

LOG = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    """Lifecycle transitions reported to pool listeners."""

    OPENED = "opened"
    REUSED = "reused"
    LINGERING = "lingering"
    CLOSED = "closed"


@dataclass(frozen=True, slots=True)
class ConnectionEvent:
    """Emitted whenever a pooled transport changes state."""

    identifier: str
    state: ConnectionState
    shared: bool
    at: datetime


ConnectionListener = Callable[[ConnectionEvent], None]


@dataclass(frozen=True, slots=True)
class PoolStats:
    """Point-in-time view of one identifier's pool usage."""

    identifier: str
    active_sessions: int
    dedicated_transports: int
    shared_open: bool
    lingering: bool
    linger_deadline: float | None = None


@dataclass(slots=True)
class _SharedEntry:
    identifier: str
    transport: Transport
    linger: float
    sessions: set[SessionHandle] = field(default_factory=set)
    timer: Timer | None = None
    linger_deadline: float | None = None
    generation: int = 0


class ConnectionPool:
    """Hands out sessions over shared or dedicated transports per app id."""

    def __init__(
        self,
        transport_factory: TransportFactory | None = None,
        *,
        timers: TimerFacility | None = None,
    ) -> None:
        self._owns_factory = transport_factory is None
        self._owns_timers = timers is None
        self._factory = transport_factory or HttpxTransportFactory()
        self._timers = timers or TimerService()
        self._lock = threading.Lock()
        self._entries: dict[str, _SharedEntry] = {}
        self._dedicated: dict[str, set[SessionHandle]] = {}
        self._open_locks: dict[str, threading.Lock] = {}
        self._listeners: set[ConnectionListener] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def acquire_session(
        self,
        config: ClientConfig,
        *,
        owner: object | None = None,
        on_release: ReleaseCallback | None = None,
    ) -> SessionHandle:
        """Open a session for ``config.app_id``, reusing a shared transport if allowed.

        ``owner`` tags the handle so :meth:`close_owner` can later tear down
        only the sessions that one client opened.
        """

        if not config.multiplexing:
            return self._acquire_dedicated(config, owner, on_release)

        identifier = config.app_id
        with self._lock:
            self._ensure_open(identifier)
            handle = self._reuse_shared(config, owner, on_release)
            open_lock = self._open_locks.setdefault(identifier, threading.Lock())
        if handle is not None:
            self._emit(identifier, ConnectionState.REUSED, shared=True)
            return handle

        with open_lock:
            # Another caller may have opened the transport while we waited.
            with self._lock:
                self._ensure_open(identifier)
                handle = self._reuse_shared(config, owner, on_release)
            if handle is not None:
                self._emit(identifier, ConnectionState.REUSED, shared=True)
                return handle

            transport = self._open_transport(config)
            with self._lock:
                if not self._closed:
                    entry = _SharedEntry(identifier=identifier, transport=transport, linger=config.linger)
                    handle = SessionHandle(
                        self, identifier, transport, shared=True, owner=owner, on_release=on_release
                    )
                    entry.sessions.add(handle)
                    self._entries[identifier] = entry
        if handle is None:
            self._close_transport(transport)
            raise ClientClosed(identifier, "connection pool")
        LOG.info("Opened shared transport", extra={"app_id": identifier})
        self._emit(identifier, ConnectionState.OPENED, shared=True)
        return handle

    def release_session(self, handle: SessionHandle) -> None:
        """Return a session; tears down or arms the linger timer as needed."""

        to_close: Transport | None = None
        state: ConnectionState | None = None
        identifier = handle.identifier
        with self._lock:
            if not handle._mark_released():
                return
            if not handle.shared:
                handles = self._dedicated.get(identifier)
                if handles is not None:
                    handles.discard(handle)
                    if not handles:
                        del self._dedicated[identifier]
                to_close = handle.transport
                state = ConnectionState.CLOSED
            else:
                entry = self._entries.get(identifier)
                if entry is not None and handle in entry.sessions:
                    entry.sessions.discard(handle)
                    if not entry.sessions:
                        if entry.linger <= 0 or self._closed:
                            del self._entries[identifier]
                            to_close = entry.transport
                            state = ConnectionState.CLOSED
                        else:
                            self._arm_linger(entry)
                            state = ConnectionState.LINGERING
        if to_close is not None:
            self._close_transport(to_close)
        if state is not None:
            self._emit(identifier, state, shared=handle.shared)
        if handle.on_release is not None:
            handle.on_release(handle)

    def close_identifier(self, identifier: str) -> None:
        """Tear down every transport for ``identifier`` and cancel its linger timer."""

        with self._lock:
            closing = self._detach(identifier)
        self._finish_teardown(identifier, closing)

    def close_owner(self, identifier: str, owner: object) -> None:
        """Tear down the sessions ``owner`` opened for ``identifier``.

        Sessions opened by anyone else are left alone. The shared transport
        closes straight away, without lingering, once no session holds it.
        """

        closing: list[tuple[Transport, bool]] = []
        with self._lock:
            entry = self._entries.get(identifier)
            if entry is not None:
                for handle in [h for h in entry.sessions if h.owner is owner]:
                    handle._mark_released()
                    entry.sessions.discard(handle)
                if not entry.sessions:
                    closing.extend(self._detach_shared(identifier))
            handles = self._dedicated.get(identifier)
            if handles:
                for handle in [h for h in handles if h.owner is owner]:
                    handle._mark_released()
                    handles.discard(handle)
                    closing.append((handle.transport, False))
                if not handles:
                    del self._dedicated[identifier]
        self._finish_teardown(identifier, closing)

    def close(self) -> None:
        """Tear down every transport; further acquisitions raise ClientClosed."""

        with self._lock:
            if self._closed:
                return
            self._closed = True
            identifiers = set(self._entries) | set(self._dedicated)
            closing = {identifier: self._detach(identifier) for identifier in identifiers}
        for identifier, transports in closing.items():
            self._finish_teardown(identifier, transports)
        if self._owns_timers and isinstance(self._timers, TimerService):
            self._timers.shutdown()
        if self._owns_factory and isinstance(self._factory, HttpxTransportFactory):
            self._factory.shutdown()

    def stats(self, identifier: str) -> PoolStats | None:
        """Return usage numbers for ``identifier``, or None when nothing is open."""

        with self._lock:
            entry = self._entries.get(identifier)
            dedicated = len(self._dedicated.get(identifier, ()))
            if entry is None and not dedicated:
                return None
            return PoolStats(
                identifier=identifier,
                active_sessions=(len(entry.sessions) if entry else 0) + dedicated,
                dedicated_transports=dedicated,
                shared_open=entry is not None,
                lingering=entry is not None and entry.timer is not None,
                linger_deadline=entry.linger_deadline if entry else None,
            )

    def identifiers(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(sorted(set(self._entries) | set(self._dedicated)))

    def subscribe(self, listener: ConnectionListener) -> Callable[[], None]:
        """Subscribe to connection events; returns an unsubscribe handle."""

        self._listeners.add(listener)

        def _unsubscribe() -> None:
            self._listeners.discard(listener)

        return _unsubscribe

    def __enter__(self) -> ConnectionPool:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        self.close()

    def _acquire_dedicated(
        self, config: ClientConfig, owner: object | None, on_release: ReleaseCallback | None
    ) -> SessionHandle:
        identifier = config.app_id
        with self._lock:
            self._ensure_open(identifier)
        transport = self._open_transport(config)
        handle: SessionHandle | None = None
        with self._lock:
            if not self._closed:
                handle = SessionHandle(
                    self, identifier, transport, shared=False, owner=owner, on_release=on_release
                )
                self._dedicated.setdefault(identifier, set()).add(handle)
        if handle is None:
            self._close_transport(transport)
            raise ClientClosed(identifier, "connection pool")
        LOG.info("Opened dedicated transport", extra={"app_id": identifier})
        self._emit(identifier, ConnectionState.OPENED, shared=False)
        return handle

    def _reuse_shared(
        self, config: ClientConfig, owner: object | None, on_release: ReleaseCallback | None
    ) -> SessionHandle | None:
        entry = self._entries.get(config.app_id)
        if entry is None:
            return None
        if entry.timer is not None:
            entry.timer.cancel()
            entry.timer = None
            entry.linger_deadline = None
            entry.generation += 1
            LOG.debug("Cancelled linger timer", extra={"app_id": entry.identifier})
        entry.linger = config.linger
        handle = SessionHandle(
            self, entry.identifier, entry.transport, shared=True, owner=owner, on_release=on_release
        )
        entry.sessions.add(handle)
        return handle

    def _arm_linger(self, entry: _SharedEntry) -> None:
        entry.generation += 1
        generation = entry.generation
        entry.linger_deadline = time.monotonic() + entry.linger
        entry.timer = self._timers.call_later(entry.linger, lambda: self._expire(entry, generation))
        LOG.debug("Armed linger timer", extra={"app_id": entry.identifier, "linger": entry.linger})

    def _expire(self, entry: _SharedEntry, generation: int) -> None:
        with self._lock:
            current = self._entries.get(entry.identifier)
            if current is not entry or entry.generation != generation or entry.sessions:
                return
            del self._entries[entry.identifier]
            entry.timer = None
            entry.linger_deadline = None
        self._close_transport(entry.transport)
        self._emit(entry.identifier, ConnectionState.CLOSED, shared=True)

    def _detach(self, identifier: str) -> list[tuple[Transport, bool]]:
        # Caller holds the pool lock.
        closing = self._detach_shared(identifier)
        for handle in self._dedicated.pop(identifier, set()):
            handle._mark_released()
            closing.append((handle.transport, False))
        return closing

    def _detach_shared(self, identifier: str) -> list[tuple[Transport, bool]]:
        # Caller holds the pool lock.
        entry = self._entries.pop(identifier, None)
        if entry is None:
            return []
        if entry.timer is not None:
            entry.timer.cancel()
            entry.timer = None
        entry.linger_deadline = None
        entry.generation += 1
        for handle in entry.sessions:
            handle._mark_released()
        entry.sessions.clear()
        return [(entry.transport, True)]

    def _finish_teardown(self, identifier: str, closing: list[tuple[Transport, bool]]) -> None:
        for transport, shared in closing:
            self._close_transport(transport)
            self._emit(identifier, ConnectionState.CLOSED, shared=shared)

    def _ensure_open(self, identifier: str) -> None:
        if self._closed:
            raise ClientClosed(identifier, "connection pool")

    def _open_transport(self, config: ClientConfig) -> Transport:
        try:
            return self._factory.open(config)
        except TransportUnavailable:
            LOG.warning("Transport open failed", extra={"app_id": config.app_id})
            raise
        except Exception as exc:
            LOG.warning("Transport open failed", extra={"app_id": config.app_id})
            raise TransportUnavailable(config.app_id, str(exc)) from exc

    def _close_transport(self, transport: Transport) -> None:
        try:
            transport.close()
        except Exception as exc:
            LOG.warning(
                "Transport close failed",
                extra={"app_id": transport.identifier, "error": str(exc)},
            )
        else:
            LOG.info("Closed transport", extra={"app_id": transport.identifier})

    def _emit(self, identifier: str, state: ConnectionState, *, shared: bool) -> None:
        event = ConnectionEvent(
            identifier=identifier,
            state=state,
            shared=shared,
            at=datetime.now(tz=timezone.utc),
        )
        for listener in tuple(self._listeners):
            try:
                listener(event)
            except Exception:
                LOG.exception("Connection listener failed", extra={"app_id": identifier})


__all__ = [
    "ConnectionEvent",
    "ConnectionListener",
    "ConnectionPool",
    "ConnectionState",
    "PoolStats",
]
