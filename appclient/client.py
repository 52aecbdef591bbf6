"""The per-app client object handed out by the registry."""

from __future__ import annotations

import logging
import threading
from typing import Callable

from .config import ClientConfig
from .errors import ClientClosed
from .pool import ConnectionPool
from .session import SessionHandle

LOG = logging.getLogger(__name__)

CloseCallback = Callable[["AppClient"], None]


class AppClient:
    """Entry point for one app id; owns its config and the sessions it opened.

    Construction never touches the network. Transports are opened lazily by
    :meth:`open_session`. A client that is never closed keeps its transports
    open until the pool itself is closed or the process exits.
    """

    def __init__(
        self,
        config: ClientConfig,
        pool: ConnectionPool,
        *,
        on_close: CloseCallback | None = None,
    ) -> None:
        self._config = config
        self._pool = pool
        self._on_close = on_close
        self._lock = threading.Lock()
        self._sessions: set[SessionHandle] = set()
        self._closed = False

    @property
    def identifier(self) -> str:
        return self._config.app_id

    @property
    def config(self) -> ClientConfig:
        """Current configuration snapshot."""

        return self._config

    @property
    def base_url(self) -> str:
        return self._config.base_url

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def session_count(self) -> int:
        """Number of sessions opened by this client and not yet released."""

        with self._lock:
            return len(self._sessions)

    def open_session(self) -> SessionHandle:
        """Acquire a sync session slot from the pool."""

        with self._lock:
            self._ensure_open()
            config = self._config
        handle = self._pool.acquire_session(config, owner=self, on_release=self._forget)
        with self._lock:
            if not self._closed:
                self._sessions.add(handle)
                return handle
        # Lost a race with close(); tear the new slot down with the rest.
        self._pool.close_owner(self.identifier, self)
        raise ClientClosed(self.identifier)

    def update_base_url(self, base_url: str) -> None:
        """Point transports opened from now on at a new endpoint."""

        with self._lock:
            self._ensure_open()
            if base_url.rstrip("/") == self._config.base_url:
                return
            self._config = self._config.with_base_url(base_url)
        LOG.info("Updated endpoint", extra={"app_id": self.identifier, "base_url": self._config.base_url})

    def close(self) -> None:
        """Tear down the sessions and transports this client opened; idempotent.

        The registry forgets the client before anything is torn down, so a
        replacement built meanwhile keeps its own sessions.
        """

        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._sessions.clear()
        if self._on_close is not None:
            self._on_close(self)
        self._pool.close_owner(self.identifier, self)
        LOG.info("Closed app client", extra={"app_id": self.identifier})

    def __enter__(self) -> AppClient:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<AppClient app={self.identifier!r} base_url={self.base_url!r} {state}>"

    def _forget(self, handle: SessionHandle) -> None:
        with self._lock:
            self._sessions.discard(handle)

    def _ensure_open(self) -> None:
        if self._closed:
            raise ClientClosed(self.identifier)


__all__ = ["AppClient", "CloseCallback"]
