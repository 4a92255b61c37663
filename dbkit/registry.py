"""Registry guaranteeing a single connection object per database endpoint."""

from __future__ import annotations

import logging
import threading
from typing import Any, Iterator, Mapping

from .backends import BackendFactory, create_backend
from .config import DatabaseConfig, parse_config
from .connection import EventDispatch
from .database import Database

LOG = logging.getLogger(__name__)


class ConnectionRegistry:
    """Maps ``host:port/database`` keys to their :class:`Database` instance.

    Build one per application and hand it to whatever needs connections.
    Entries are never evicted: a disconnected instance stays registered and
    can be connected again.
    """

    def __init__(
        self,
        *,
        backend_factory: BackendFactory = create_backend,
        connection_class: type[Database] = Database,
        dispatch: EventDispatch = EventDispatch.SYNC,
    ) -> None:
        self._backend_factory = backend_factory
        self._connection_class = connection_class
        self._dispatch = dispatch
        self._connections: dict[str, Database] = {}
        self._lock = threading.Lock()

    def resolve_or_create(
        self,
        config: DatabaseConfig | Mapping[str, Any] | None = None,
        **values: Any,
    ) -> Database:
        """Return the connection for the configured endpoint, creating it once.

        Only host, port and database pick the entry. When the endpoint is
        already registered every other option of ``config`` (credentials,
        tables, synchronize) is ignored and the existing instance is returned.
        """

        if config is None:
            resolved = parse_config(values)
        elif values:
            base = config.model_dump() if isinstance(config, DatabaseConfig) else dict(config)
            resolved = parse_config({**base, **values})
        else:
            resolved = parse_config(config)
        key = resolved.endpoint_key
        with self._lock:
            existing = self._connections.get(key)
            if existing is not None:
                LOG.debug("Reusing registered connection", extra={"endpoint": key})
                return existing
            connection = self._connection_class(
                resolved,
                backend_factory=self._backend_factory,
                dispatch=self._dispatch,
            )
            self._connections[key] = connection
        LOG.debug("Registered new connection", extra={"endpoint": key})
        return connection

    def get(self, key: str) -> Database | None:
        with self._lock:
            return self._connections.get(key)

    def list_all(self) -> tuple[Database, ...]:
        """Every registered connection, whatever its state."""

        with self._lock:
            return tuple(self._connections.values())

    async def disconnect_all(self) -> None:
        """Disconnect every connected entry; entries stay registered."""

        for connection in self.list_all():
            if not connection.is_connected:
                continue
            try:
                await connection.disconnect()
            except Exception:
                LOG.exception("Disconnect failed", extra={"endpoint": connection.endpoint_key})

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._connections

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)

    def __iter__(self) -> Iterator[Database]:
        return iter(self.list_all())


__all__ = ["ConnectionRegistry"]
