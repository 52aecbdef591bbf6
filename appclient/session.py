"""Session handles issued by the connection pool."""

from __future__ import annotations

import itertools
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable

from .errors import ClientClosed

if TYPE_CHECKING:
    from .pool import ConnectionPool
    from .transports import Transport

ReleaseCallback = Callable[["SessionHandle"], None]

_SESSION_IDS = itertools.count(1)


class SessionHandle:
    """One logical sync session holding a slot on a pooled transport."""

    def __init__(
        self,
        pool: ConnectionPool,
        identifier: str,
        transport: Transport,
        *,
        shared: bool,
        owner: object | None = None,
        on_release: ReleaseCallback | None = None,
    ) -> None:
        self.session_id = next(_SESSION_IDS)
        self.identifier = identifier
        self.transport = transport
        self.shared = shared
        self.owner = owner
        self.acquired_at = datetime.now(tz=timezone.utc)
        self.on_release = on_release
        self._pool = pool
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        """Give the slot back to the pool; repeated calls are ignored."""

        self._pool.release_session(self)

    def request(self, method: str, path: str, **kwargs: Any) -> Any:
        """Issue a request over the session's transport."""

        if self._released:
            raise ClientClosed(self.identifier, "session")
        return self.transport.request(method, path, **kwargs)

    def __enter__(self) -> SessionHandle:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        self.release()

    def __repr__(self) -> str:
        state = "released" if self._released else "active"
        kind = "shared" if self.shared else "dedicated"
        return f"<SessionHandle #{self.session_id} app={self.identifier!r} {kind} {state}>"

    def _mark_released(self) -> bool:
        # Caller holds the pool lock.
        if self._released:
            return False
        self._released = True
        return True


__all__ = ["ReleaseCallback", "SessionHandle"]
