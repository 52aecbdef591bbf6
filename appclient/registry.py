"""Per-process cache of app clients keyed by app id."""

from __future__ import annotations

import logging
import threading
from typing import Any, Mapping

from .client import AppClient
from .config import ClientConfig, make_config
from .errors import ClientClosed, InvalidConfiguration
from .pool import ConnectionPool

LOG = logging.getLogger(__name__)


class AppClientRegistry:
    """Hands out one live AppClient per app id; the first config wins.

    On a cache hit only the endpoint URL of the requested config is applied
    to the cached client; every other field keeps its original value until
    the client is closed.
    """

    def __init__(self, pool: ConnectionPool | None = None) -> None:
        self._owns_pool = pool is None
        self._pool = pool or ConnectionPool()
        self._lock = threading.Lock()
        self._clients: dict[str, AppClient] = {}

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    def get_or_create(
        self,
        identifier: str,
        config: ClientConfig | Mapping[str, Any] | None = None,
    ) -> AppClient:
        """Return the cached client for ``identifier`` or build one from ``config``."""

        snapshot = self._coerce(identifier, config)
        with self._lock:
            client = self._clients.get(identifier)
            if client is not None and not client.closed:
                changed = client.config.changed_fields(snapshot)
                try:
                    if "base_url" in changed:
                        client.update_base_url(snapshot.base_url)
                except ClientClosed:
                    # Closed directly by its holder since the check above.
                    LOG.debug("Replacing client closed during lookup", extra={"app_id": identifier})
                else:
                    self._log_ignored(identifier, changed)
                    return client
            client = AppClient(snapshot, self._pool, on_close=self._evict)
            self._clients[identifier] = client
            LOG.info("Created app client", extra={"app_id": identifier})
            return client

    def get(self, identifier: str) -> AppClient | None:
        with self._lock:
            return self._clients.get(identifier)

    def identifiers(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(sorted(self._clients))

    def close(self, identifier: str) -> None:
        """Drop and close the cached client; the next request rebuilds it."""

        with self._lock:
            client = self._clients.pop(identifier, None)
        if client is not None:
            client.close()
        else:
            self._pool.close_identifier(identifier)

    def close_all(self) -> None:
        """Close every cached client, and the pool when the registry created it."""

        with self._lock:
            clients = tuple(self._clients.values())
            self._clients.clear()
        for client in clients:
            client.close()
        if self._owns_pool:
            self._pool.close()

    def __contains__(self, identifier: object) -> bool:
        with self._lock:
            return identifier in self._clients

    def __len__(self) -> int:
        with self._lock:
            return len(self._clients)

    def __enter__(self) -> AppClientRegistry:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        self.close_all()

    def _evict(self, client: AppClient) -> None:
        with self._lock:
            if self._clients.get(client.identifier) is client:
                del self._clients[client.identifier]

    def _log_ignored(self, identifier: str, changed: set[str]) -> None:
        ignored = changed - {"base_url"}
        if ignored:
            LOG.debug(
                "Ignoring config changes for cached client",
                extra={"app_id": identifier, "fields": sorted(ignored)},
            )

    @staticmethod
    def _coerce(identifier: str, config: ClientConfig | Mapping[str, Any] | None) -> ClientConfig:
        if config is None:
            snapshot = make_config(identifier)
        elif isinstance(config, ClientConfig):
            snapshot = config
        else:
            fields = dict(config)
            app_id = fields.pop("app_id", identifier)
            snapshot = make_config(app_id, **fields)
        if snapshot.app_id != identifier:
            raise InvalidConfiguration(
                f"Config is for app '{snapshot.app_id}' but was requested as '{identifier}'"
            )
        return snapshot


__all__ = ["AppClientRegistry"]
