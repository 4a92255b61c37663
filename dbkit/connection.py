"""Connection lifecycle: connect/disconnect, health probing and event listeners."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from .backends import BackendFactory, RepositoryBackend, create_backend
from .config import DatabaseConfig
from .models import ConnectionState

LOG = logging.getLogger(__name__)

ConnectionListener = Callable[[], "Awaitable[None] | None"]

EVENTS = ("connect", "disconnect")


class LifecycleError(RuntimeError):
    """Raised when a lifecycle operation is invalid for the current state."""


class AlreadyConnectedError(LifecycleError):
    """Raised by ``connect()`` on a connection that is already connected."""


class ConnectInProgressError(LifecycleError):
    """Raised while another ``connect()`` on the same connection is running."""


class NotConnectedError(LifecycleError):
    """Raised when an operation needs a connected connection."""


class EventDispatch(str, Enum):
    """How listeners are invoked when a transition happens."""

    SYNC = "sync"
    QUEUED = "queued"


@dataclass(slots=True, eq=False)
class _Registration:
    listener: ConnectionListener
    once: bool = False


class Connection:
    """Owns one repository backend and its lifecycle state."""

    def __init__(
        self,
        config: DatabaseConfig,
        *,
        backend: RepositoryBackend | None = None,
        backend_factory: BackendFactory = create_backend,
        dispatch: EventDispatch = EventDispatch.SYNC,
    ) -> None:
        self._config = config
        self._backend = backend if backend is not None else backend_factory(config)
        self._state = ConnectionState.IDLE
        self._session = 0
        self._dispatch = dispatch
        self._listeners: dict[str, list[_Registration]] = {event: [] for event in EVENTS}
        self._probe_lock = asyncio.Lock()
        self._pending: set[asyncio.Future[Any]] = set()

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.endpoint_key} state={self._state.value}>"

    @property
    def config(self) -> DatabaseConfig:
        return self._config

    @property
    def backend(self) -> RepositoryBackend:
        return self._backend

    @property
    def endpoint_key(self) -> str:
        """Registry key, ``host:port/database``."""

        return self._config.endpoint_key

    @property
    def name(self) -> str:
        return self.endpoint_key

    @property
    def host(self) -> str:
        return self._config.host

    @property
    def port(self) -> int:
        return self._config.port

    @property
    def user(self) -> str:
        return self._config.user

    @property
    def database(self) -> str:
        return self._config.database

    @property
    def synchronize(self) -> bool:
        return self._config.synchronize

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def session(self) -> int:
        """Number of successful connects; identifies the current backend session."""

        return self._session

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    async def connect(self) -> None:
        """Open the backend session and notify ``connect`` listeners."""

        await self._open()
        await self._emit("connect")

    async def disconnect(self) -> None:
        """Release the backend session and notify ``disconnect`` listeners.

        Listeners are notified even when releasing the backend fails; the
        connection has left the connected state either way and the release
        error is raised afterwards.
        """

        if self._state is not ConnectionState.CONNECTED:
            raise NotConnectedError(f"Not connected to database '{self.endpoint_key}'")
        try:
            await self._close()
        finally:
            await self._emit("disconnect")

    async def check_connection(self) -> bool:
        """Probe the session, reconnecting if needed; report the resulting state.

        A failed liveness query is treated as a dropped connection. Errors from
        the probe, the disconnect and the reconnect attempt are logged and never
        raised: the return value is the only outcome. Concurrent probes on the
        same connection run one at a time; listeners fire after the probe has
        finished, so they may call ``check_connection()`` themselves.
        """

        events: list[str] = []
        async with self._probe_lock:
            if self.is_connected:
                try:
                    await self._backend.ping()
                except Exception:
                    LOG.warning(
                        "Liveness probe failed; treating connection as dropped",
                        extra={"endpoint": self.endpoint_key},
                        exc_info=True,
                    )
                    if await self._release_session():
                        events.append("disconnect")
            if not self.is_connected:
                try:
                    await self._open()
                except Exception:
                    LOG.warning(
                        "Reconnect attempt failed",
                        extra={"endpoint": self.endpoint_key},
                        exc_info=True,
                    )
                else:
                    events.append("connect")
        for event in events:
            await self._emit(event)
        return self.is_connected

    def on(self, event: str, listener: ConnectionListener) -> Callable[[], None]:
        """Register a listener; returns an unsubscribe handle."""

        return self._register(event, _Registration(listener))

    def once(self, event: str, listener: ConnectionListener) -> Callable[[], None]:
        """Register a listener that is removed after its first invocation."""

        return self._register(event, _Registration(listener, once=True))

    def off(self, event: str, listener: ConnectionListener) -> None:
        """Remove the most recent registration of ``listener`` for ``event``."""

        registrations = self._registrations(event)
        for index in range(len(registrations) - 1, -1, -1):
            if registrations[index].listener == listener:
                del registrations[index]
                return

    def listener_count(self, event: str) -> int:
        return len(self._registrations(event))

    def _ensure_connected(self) -> None:
        if self._state is ConnectionState.CONNECTING:
            raise ConnectInProgressError(f"Connection to '{self.endpoint_key}' is still in progress")
        if self._state is not ConnectionState.CONNECTED:
            raise NotConnectedError(f"Not connected to database '{self.endpoint_key}'")

    async def _open(self) -> None:
        # The state check and the switch to CONNECTING must not be split by an await.
        if self._state is ConnectionState.CONNECTED:
            raise AlreadyConnectedError(f"Already connected to database '{self.endpoint_key}'")
        if self._state is ConnectionState.CONNECTING:
            raise ConnectInProgressError(f"Connection to '{self.endpoint_key}' is already in progress")
        self._state = ConnectionState.CONNECTING
        try:
            try:
                await self._backend.initialize()
                if self._config.synchronize:
                    await self._backend.synchronize()
            except Exception:
                await self._release_partial()
                raise
            self._state = ConnectionState.CONNECTED
            self._session += 1
        finally:
            if self._state is ConnectionState.CONNECTING:
                self._state = ConnectionState.IDLE
        LOG.info("Connected to database", extra={"endpoint": self.endpoint_key, "session": self._session})

    async def _close(self) -> None:
        # IDLE first so concurrent callers stop using the session right away.
        self._state = ConnectionState.IDLE
        try:
            await self._backend.destroy()
        finally:
            LOG.info("Disconnected from database", extra={"endpoint": self.endpoint_key, "session": self._session})

    async def _release_session(self) -> bool:
        """Leave the connected state after the session was found dead.

        Returns whether a transition happened. Release failures are logged.
        """

        if not self.is_connected:
            return False
        try:
            await self._close()
        except Exception:
            LOG.warning(
                "Error while releasing dropped connection",
                extra={"endpoint": self.endpoint_key},
                exc_info=True,
            )
        return True

    async def _drop_connection(self) -> None:
        """Internal disconnect used after the session was found dead."""

        if await self._release_session():
            await self._emit("disconnect")

    async def _release_partial(self) -> None:
        if not self._backend.is_initialized:
            return
        try:
            await self._backend.destroy()
        except Exception:
            LOG.warning(
                "Failed to release backend after unsuccessful connect",
                extra={"endpoint": self.endpoint_key},
                exc_info=True,
            )

    def _registrations(self, event: str) -> list[_Registration]:
        try:
            return self._listeners[event]
        except KeyError:
            raise ValueError(f"Unknown event '{event}'; expected one of {', '.join(EVENTS)}") from None

    def _register(self, event: str, registration: _Registration) -> Callable[[], None]:
        registrations = self._registrations(event)
        registrations.append(registration)

        def _unsubscribe() -> None:
            if registration in registrations:
                registrations.remove(registration)

        return _unsubscribe

    async def _emit(self, event: str) -> None:
        registrations = self._listeners[event]
        for registration in tuple(registrations):
            if registration.once and registration in registrations:
                registrations.remove(registration)
            if self._dispatch is EventDispatch.QUEUED:
                self._schedule(event, registration.listener)
            else:
                await self._invoke(event, registration.listener)

    async def _invoke(self, event: str, listener: ConnectionListener) -> None:
        try:
            result = listener()
            if inspect.isawaitable(result):
                await result
        except Exception:
            LOG.exception("Listener failed", extra={"event": event, "endpoint": self.endpoint_key})

    def _schedule(self, event: str, listener: ConnectionListener) -> None:
        task = asyncio.ensure_future(self._invoke(event, listener))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)


__all__ = [
    "AlreadyConnectedError",
    "ConnectInProgressError",
    "Connection",
    "ConnectionListener",
    "EVENTS",
    "EventDispatch",
    "LifecycleError",
    "NotConnectedError",
]
