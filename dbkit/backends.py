"""Repository backends that perform the actual database work for a connection."""

from __future__ import annotations

import copy
import logging
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Mapping, Protocol, Sequence, runtime_checkable

import asyncpg
from sqlalchemy import Table, asc, desc, func, select, text
from sqlalchemy import delete as sql_delete
from sqlalchemy import insert as sql_insert
from sqlalchemy import update as sql_update
from sqlalchemy.engine import URL
from sqlalchemy.exc import DBAPIError, DisconnectionError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from .config import ConfigurationError, DatabaseConfig
from .models import FindOptions, In, InsertResult, Record

LOG = logging.getLogger(__name__)

DRIVERS: Mapping[str, str] = {
    "postgres": "postgresql+asyncpg",
    "postgresql": "postgresql+asyncpg",
    "mysql": "mysql+aiomysql",
    "mariadb": "mysql+aiomysql",
    "sqlite": "sqlite+aiosqlite",
}

_CONNECTION_ERRORS: tuple[type[BaseException], ...] = (
    ConnectionError,
    DisconnectionError,
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.CannotConnectNowError,
)


class BackendError(RuntimeError):
    """Raised when a repository backend fails to complete an operation."""


class BackendConnectionError(BackendError):
    """Raised when the backend lost (or never reached) its database session."""


@runtime_checkable
class TableRepository(Protocol):
    """Primitive operations against a single table."""

    async def find(self, options: FindOptions | None = None) -> list[Record]:
        """Return every record matching the options."""

    async def find_one(self, options: FindOptions | None = None) -> Record | None:
        """Return the first matching record, or ``None``."""

    async def insert(self, records: Record | Sequence[Record]) -> InsertResult:
        """Insert one or more records and report their primary keys."""

    async def update(self, criteria: Any, patch: Mapping[str, Any]) -> int:
        """Apply ``patch`` to the matching records; return the affected count."""

    async def delete(self, criteria: Any) -> int:
        """Delete the matching records; return the affected count."""

    async def count(self, where: Mapping[str, Any] | None = None) -> int:
        """Count the matching records."""

    async def increment(self, where: Mapping[str, Any], field: str, amount: int | float) -> int:
        """Add ``amount`` to ``field`` on matching records."""

    async def decrement(self, where: Mapping[str, Any], field: str, amount: int | float) -> int:
        """Subtract ``amount`` from ``field`` on matching records."""


@runtime_checkable
class RepositoryBackend(Protocol):
    """Owns the database session and hands out table repositories."""

    @property
    def is_initialized(self) -> bool:
        """Whether a session is currently established."""

    async def initialize(self) -> None:
        """Establish the database session."""

    async def destroy(self) -> None:
        """Release the database session."""

    async def synchronize(self) -> None:
        """Create tables that exist in the definitions but not in the database."""

    async def ping(self) -> None:
        """Run a trivial query; raise if the session is unusable."""

    def repository(self, table: str) -> TableRepository:
        """Return the repository for the named table."""


BackendFactory = Callable[[DatabaseConfig], RepositoryBackend]


def is_connection_error(exc: BaseException) -> bool:
    """Whether ``exc`` (or anything it wraps) means the session is gone."""

    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, _CONNECTION_ERRORS):
            return True
        if isinstance(current, DBAPIError) and current.connection_invalidated:
            return True
        current = current.__cause__ or current.__context__
    return False


def wrap_backend_error(exc: BaseException, message: str) -> BackendError:
    """Wrap a driver failure into the matching backend error type."""

    error_type = BackendConnectionError if is_connection_error(exc) else BackendError
    return error_type(f"{message}: {exc}")


def create_backend(config: DatabaseConfig) -> RepositoryBackend:
    """Default backend factory."""

    return SqlAlchemyBackend(config)


def _as_table(entry: Any) -> Table:
    table = getattr(entry, "__table__", entry)
    if not isinstance(table, Table):
        raise ConfigurationError(f"Unsupported table definition: {entry!r}")
    return table


class SqlAlchemyBackend:
    """Backend built on a SQLAlchemy asyncio engine."""

    _PING_QUERY = "SELECT 1"

    def __init__(self, config: DatabaseConfig, **engine_kwargs: Any) -> None:
        try:
            driver = DRIVERS[config.type.lower()]
        except KeyError:
            raise ConfigurationError(f"Unsupported database type '{config.type}'") from None
        self._config = config
        self._tables: dict[str, Table] = {}
        for entry in config.tables:
            table = _as_table(entry)
            self._tables[table.name] = table
        self._url = self._build_url(driver, config)
        self._engine_kwargs = engine_kwargs
        self._engine: AsyncEngine | None = None

    @property
    def url(self) -> URL:
        return self._url

    @property
    def is_initialized(self) -> bool:
        return self._engine is not None

    async def initialize(self) -> None:
        engine = create_async_engine(self._url, **self._engine_kwargs)
        try:
            async with engine.connect() as conn:
                await conn.execute(text(self._PING_QUERY))
        except (SQLAlchemyError, OSError) as exc:
            await engine.dispose()
            raise wrap_backend_error(exc, f"Failed to connect to '{self._config.endpoint_key}'") from exc
        except BaseException:
            await engine.dispose()
            raise
        self._engine = engine
        LOG.debug("Engine initialized", extra={"endpoint": self._config.endpoint_key})

    async def destroy(self) -> None:
        engine, self._engine = self._engine, None
        if engine is None:
            return
        try:
            await engine.dispose()
        except (SQLAlchemyError, OSError) as exc:
            raise wrap_backend_error(exc, f"Failed to release '{self._config.endpoint_key}'") from exc

    async def synchronize(self) -> None:
        engine = self._require_engine()
        tables = list(self._tables.values())

        def _create(sync_conn: Any) -> None:
            for metadata in {id(table.metadata): table.metadata for table in tables}.values():
                metadata.create_all(sync_conn, tables=[t for t in tables if t.metadata is metadata])

        with _translated(f"Failed to synchronize '{self._config.endpoint_key}'"):
            async with engine.begin() as conn:
                await conn.run_sync(_create)

    async def ping(self) -> None:
        engine = self._require_engine()
        with _translated(f"Liveness probe failed for '{self._config.endpoint_key}'"):
            async with engine.connect() as conn:
                await conn.execute(text(self._PING_QUERY))

    def repository(self, table: str) -> SqlAlchemyRepository:
        engine = self._require_engine()
        try:
            definition = self._tables[table]
        except KeyError:
            raise BackendError(f"No table definition found for '{table}'") from None
        return SqlAlchemyRepository(engine, definition)

    def _require_engine(self) -> AsyncEngine:
        if self._engine is None:
            raise BackendConnectionError(f"Backend for '{self._config.endpoint_key}' is not initialized")
        return self._engine

    @staticmethod
    def _build_url(driver: str, config: DatabaseConfig) -> URL:
        if driver.startswith("sqlite"):
            return URL.create(driver, database=config.database)
        return URL.create(
            driver,
            username=config.user,
            password=config.password or None,
            host=config.host,
            port=config.port,
            database=config.database,
        )


@contextmanager
def _translated(message: str) -> Iterator[None]:
    try:
        yield
    except (SQLAlchemyError, OSError) as exc:
        raise wrap_backend_error(exc, message) from exc


class SqlAlchemyRepository:
    """Table repository issuing SQLAlchemy Core statements."""

    def __init__(self, engine: AsyncEngine, table: Table) -> None:
        self._engine = engine
        self._table = table

    @property
    def table(self) -> Table:
        return self._table

    async def find(self, options: FindOptions | None = None) -> list[Record]:
        statement = self._select(options or FindOptions())
        with _translated(f"Query on '{self._table.name}' failed"):
            async with self._engine.connect() as conn:
                result = await conn.execute(statement)
                return [dict(row) for row in result.mappings()]

    async def find_one(self, options: FindOptions | None = None) -> Record | None:
        options = options or FindOptions()
        rows = await self.find(
            FindOptions(where=options.where, select=options.select, order=options.order, skip=options.skip, take=1)
        )
        return rows[0] if rows else None

    async def insert(self, records: Record | Sequence[Record]) -> InsertResult:
        batch = [records] if isinstance(records, Mapping) else list(records)
        if not batch:
            return InsertResult()
        identifiers: list[Mapping[str, Any]] = []
        keys = [column.name for column in self._table.primary_key.columns]
        with _translated(f"Insert into '{self._table.name}' failed"):
            async with self._engine.begin() as conn:
                for record in batch:
                    result = await conn.execute(sql_insert(self._table).values(**record))
                    identifiers.append(dict(zip(keys, result.inserted_primary_key or ())))
        return InsertResult(tuple(identifiers))

    async def update(self, criteria: Any, patch: Mapping[str, Any]) -> int:
        statement = sql_update(self._table).where(*self._criteria(criteria)).values(**patch)
        return await self._execute(statement, "Update")

    async def delete(self, criteria: Any) -> int:
        statement = sql_delete(self._table).where(*self._criteria(criteria))
        return await self._execute(statement, "Delete")

    async def count(self, where: Mapping[str, Any] | None = None) -> int:
        statement = select(func.count()).select_from(self._table).where(*self._conditions(where))
        with _translated(f"Count on '{self._table.name}' failed"):
            async with self._engine.connect() as conn:
                result = await conn.execute(statement)
                return int(result.scalar_one())

    async def increment(self, where: Mapping[str, Any], field: str, amount: int | float) -> int:
        column = self._column(field)
        statement = sql_update(self._table).where(*self._conditions(where)).values({column: column + amount})
        return await self._execute(statement, "Increment")

    async def decrement(self, where: Mapping[str, Any], field: str, amount: int | float) -> int:
        return await self.increment(where, field, -amount)

    async def _execute(self, statement: Any, action: str) -> int:
        with _translated(f"{action} on '{self._table.name}' failed"):
            async with self._engine.begin() as conn:
                result = await conn.execute(statement)
                return int(result.rowcount)

    def _select(self, options: FindOptions) -> Any:
        if options.select:
            statement = select(*(self._column(name) for name in options.select))
        else:
            statement = select(self._table)
        statement = statement.where(*self._conditions(options.where))
        for name, direction in (options.order or {}).items():
            column = self._column(name)
            statement = statement.order_by(desc(column) if direction.upper() == "DESC" else asc(column))
        if options.skip:
            statement = statement.offset(options.skip)
        if options.take is not None:
            statement = statement.limit(options.take)
        return statement

    def _conditions(self, where: Mapping[str, Any] | None) -> list[Any]:
        conditions: list[Any] = []
        for name, value in (where or {}).items():
            column = self._column(name)
            if isinstance(value, In):
                conditions.append(column.in_(value.values))
            elif value is None:
                conditions.append(column.is_(None))
            else:
                conditions.append(column == value)
        return conditions

    def _criteria(self, criteria: Any) -> list[Any]:
        if isinstance(criteria, Mapping):
            return self._conditions(criteria)
        key = self._primary_key()
        if isinstance(criteria, (list, tuple, set, frozenset)):
            return [key.in_(tuple(criteria))]
        return [key == criteria]

    def _primary_key(self) -> Any:
        columns = list(self._table.primary_key.columns)
        if columns:
            return columns[0]
        return self._column("id")

    def _column(self, name: str) -> Any:
        try:
            return self._table.c[name]
        except KeyError:
            raise BackendError(f"Unknown column '{name}' on table '{self._table.name}'") from None


class MemoryBackend:
    """Dict-backed backend for demos and tests; assigns incrementing ``id`` values."""

    def __init__(
        self,
        config: DatabaseConfig | None = None,
        *,
        tables: Sequence[Any] | None = None,
    ) -> None:
        entries = tables if tables is not None else (config.tables if config else ())
        self._rows: dict[str, list[Record]] = {self._table_name(entry): [] for entry in entries}
        self._sequences: dict[str, int] = {name: 0 for name in self._rows}
        self._initialized = False
        self.synchronized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        self._initialized = True

    async def destroy(self) -> None:
        self._initialized = False

    async def synchronize(self) -> None:
        self.synchronized = True

    async def ping(self) -> None:
        if not self._initialized:
            raise BackendConnectionError("Memory backend is not initialized")

    def repository(self, table: str) -> MemoryRepository:
        if table not in self._rows:
            raise BackendError(f"No table definition found for '{table}'")
        return MemoryRepository(self, table)

    def seed(self, table: str, rows: Sequence[Record]) -> None:
        """Load rows directly into a table (testing helper)."""

        for row in rows:
            self._store(table, dict(row))

    def rows(self, table: str) -> list[Record]:
        """Return a copy of the rows stored for ``table`` (testing helper)."""

        return copy.deepcopy(self._rows[table])

    def _store(self, table: str, row: Record) -> Record:
        if row.get("id") is None:
            self._sequences[table] += 1
            row["id"] = self._sequences[table]
        else:
            self._sequences[table] = max(self._sequences[table], int(row["id"]))
        self._rows[table].append(row)
        return row

    @staticmethod
    def _table_name(entry: Any) -> str:
        if isinstance(entry, str):
            return entry
        name = getattr(entry, "name", None) or getattr(entry, "__tablename__", None)
        if not name:
            raise ConfigurationError(f"Unsupported table definition: {entry!r}")
        return str(name)


class MemoryRepository:
    """Table repository over :class:`MemoryBackend` rows."""

    def __init__(self, backend: MemoryBackend, table: str) -> None:
        self._backend = backend
        self._table = table

    async def find(self, options: FindOptions | None = None) -> list[Record]:
        options = options or FindOptions()
        rows = [row for row in self._all() if _matches(row, options.where)]
        for name, direction in reversed(list((options.order or {}).items())):
            rows.sort(key=lambda row: _sort_key(row.get(name)), reverse=direction.upper() == "DESC")
        start = options.skip or 0
        stop = start + options.take if options.take is not None else None
        rows = rows[start:stop]
        if options.select:
            rows = [{name: row.get(name) for name in options.select} for row in rows]
        return copy.deepcopy(rows)

    async def find_one(self, options: FindOptions | None = None) -> Record | None:
        options = options or FindOptions()
        rows = await self.find(
            FindOptions(where=options.where, select=options.select, order=options.order, skip=options.skip, take=1)
        )
        return rows[0] if rows else None

    async def insert(self, records: Record | Sequence[Record]) -> InsertResult:
        batch = [records] if isinstance(records, Mapping) else list(records)
        identifiers = []
        for record in batch:
            stored = self._backend._store(self._table, dict(copy.deepcopy(record)))
            identifiers.append({"id": stored["id"]})
        return InsertResult(tuple(identifiers))

    async def update(self, criteria: Any, patch: Mapping[str, Any]) -> int:
        affected = 0
        for row in self._all():
            if _matches(row, _criteria_where(criteria)):
                row.update(copy.deepcopy(dict(patch)))
                affected += 1
        return affected

    async def delete(self, criteria: Any) -> int:
        rows = self._all()
        where = _criteria_where(criteria)
        kept = [row for row in rows if not _matches(row, where)]
        affected = len(rows) - len(kept)
        rows[:] = kept
        return affected

    async def count(self, where: Mapping[str, Any] | None = None) -> int:
        return sum(1 for row in self._all() if _matches(row, where))

    async def increment(self, where: Mapping[str, Any], field: str, amount: int | float) -> int:
        affected = 0
        for row in self._all():
            if _matches(row, where):
                row[field] = (row.get(field) or 0) + amount
                affected += 1
        return affected

    async def decrement(self, where: Mapping[str, Any], field: str, amount: int | float) -> int:
        return await self.increment(where, field, -amount)

    def _all(self) -> list[Record]:
        self._backend._rows.setdefault(self._table, [])
        return self._backend._rows[self._table]


def _criteria_where(criteria: Any) -> Mapping[str, Any]:
    if isinstance(criteria, Mapping):
        return criteria
    if isinstance(criteria, (list, tuple, set, frozenset)):
        return {"id": In(criteria)}
    return {"id": criteria}


def _sort_key(value: Any) -> tuple[bool, Any]:
    # NULL compares greater than every value, as in PostgreSQL.
    return value is None, value


def _matches(row: Record, where: Mapping[str, Any] | None) -> bool:
    for name, expected in (where or {}).items():
        value = row.get(name)
        if isinstance(expected, In):
            if value not in expected.values:
                return False
        elif value != expected:
            return False
    return True


__all__ = [
    "BackendConnectionError",
    "BackendError",
    "BackendFactory",
    "DRIVERS",
    "MemoryBackend",
    "MemoryRepository",
    "RepositoryBackend",
    "SqlAlchemyBackend",
    "SqlAlchemyRepository",
    "TableRepository",
    "create_backend",
    "is_connection_error",
    "wrap_backend_error",
]
