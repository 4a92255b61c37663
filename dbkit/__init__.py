"""Async connection registry and repository helpers for relational databases."""

from __future__ import annotations

from .backends import (
    BackendConnectionError,
    BackendError,
    MemoryBackend,
    RepositoryBackend,
    SqlAlchemyBackend,
    TableRepository,
    create_backend,
)
from .config import ConfigurationError, DatabaseConfig, load_config, parse_config
from .connection import (
    AlreadyConnectedError,
    ConnectInProgressError,
    Connection,
    EventDispatch,
    LifecycleError,
    NotConnectedError,
)
from .database import Database, paginate
from .models import ConnectionState, FindOptions, In, InsertResult
from .registry import ConnectionRegistry

__version__ = "0.1.0"

__all__ = [
    "AlreadyConnectedError",
    "BackendConnectionError",
    "BackendError",
    "ConfigurationError",
    "ConnectInProgressError",
    "Connection",
    "ConnectionRegistry",
    "ConnectionState",
    "Database",
    "DatabaseConfig",
    "EventDispatch",
    "FindOptions",
    "In",
    "InsertResult",
    "LifecycleError",
    "MemoryBackend",
    "NotConnectedError",
    "RepositoryBackend",
    "SqlAlchemyBackend",
    "TableRepository",
    "__version__",
    "create_backend",
    "load_config",
    "paginate",
    "parse_config",
]
