"""Repository-style CRUD helpers layered on a :class:`Connection`."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Mapping, Sequence, TypeVar

from .backends import BackendConnectionError, TableRepository
from .connection import Connection
from .models import FindOptions, In, Record

LOG = logging.getLogger(__name__)

T = TypeVar("T")


def paginate(page: int, limit: int) -> tuple[int, int]:
    """Translate a zero-based page number into ``(skip, take)``."""

    if page < 0:
        raise ValueError(f"Page must be zero or greater, got {page}")
    if limit <= 0:
        raise ValueError(f"Limit must be positive, got {limit}")
    return page * limit, limit


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    return [value]


def _or_none(rows: list[Record]) -> list[Record] | None:
    return rows or None


class Database(Connection):
    """Connection exposing find/insert/update/delete helpers keyed by table name.

    Every helper refuses to run unless the connection is connected. When the
    backend reports a lost session the connection is marked as disconnected
    before the error is re-raised, so a later ``check_connection()`` or
    ``connect()`` can recover it. Errors from calls that started before the
    latest reconnect leave the new session alone.
    """

    async def find(self, table: str, options: FindOptions | None = None) -> list[Record]:
        return await self._run(table, lambda repo: repo.find(options))

    async def find_one(self, table: str, options: FindOptions | None = None) -> Record | None:
        return await self._run(table, lambda repo: repo.find_one(options))

    async def find_paginated(
        self,
        table: str,
        page: int,
        limit: int,
        options: FindOptions | None = None,
    ) -> list[Record]:
        skip, take = paginate(page, limit)
        base = options or FindOptions()
        paged = FindOptions(where=base.where, select=base.select, order=base.order, skip=skip, take=take)
        return await self.find(table, paged)

    async def insert(self, table: str, records: Record | Sequence[Record]) -> list[Any]:
        """Insert records and return their primary keys in insertion order."""

        result = await self._run(table, lambda repo: repo.insert(records))
        return result.ids()

    async def update(self, table: str, criteria: Any, patch: Mapping[str, Any]) -> int:
        return await self._run(table, lambda repo: repo.update(criteria, patch))

    async def delete(self, table: str, criteria: Any) -> int:
        return await self._run(table, lambda repo: repo.delete(criteria))

    async def count(self, table: str, where: Mapping[str, Any] | None = None) -> int:
        return await self._run(table, lambda repo: repo.count(where))

    async def increment(self, table: str, where: Mapping[str, Any], field: str, amount: int | float = 1) -> int:
        return await self._run(table, lambda repo: repo.increment(where, field, amount))

    async def decrement(self, table: str, where: Mapping[str, Any], field: str, amount: int | float = 1) -> int:
        return await self._run(table, lambda repo: repo.decrement(where, field, amount))

    # Id-based helpers. The table name comes last and empty results are None.

    async def insert_data(self, data: Record, repo_name: str) -> Any:
        """Insert one document; return its id."""

        ids = await self.insert(repo_name, [data])
        return ids[0] if ids else None

    async def insert_datas(self, datas: Record | Sequence[Record], repo_name: str) -> list[Any] | None:
        """Insert documents; return their ids, or ``None`` when nothing was inserted."""

        batch = [datas] if isinstance(datas, Mapping) else list(datas)
        ids = await self.insert(repo_name, batch)
        return ids or None

    async def update_data_by_ids(self, ids: Any, data: Mapping[str, Any], repo_name: str) -> int:
        return await self.update(repo_name, _as_list(ids), data)

    async def delete_by_ids(self, ids: Any, repo_name: str) -> int:
        return await self.delete(repo_name, _as_list(ids))

    async def fetch_by_id(self, id: Any, repo_name: str) -> Record | None:
        rows = await self.find(repo_name, FindOptions(where={"id": id}))
        return rows[0] if rows else None

    async def fetch_by_ids(self, ids: Sequence[Any], repo_name: str) -> list[Record] | None:
        return _or_none(await self.find(repo_name, FindOptions(where={"id": In(_as_list(ids))})))

    async def fetch_all_repo(self, repo_name: str) -> list[Record] | None:
        return _or_none(await self.find(repo_name))

    async def fetch_all_repo_paginated(self, page: int, limit: int, repo_name: str) -> list[Record] | None:
        return _or_none(await self.find_paginated(repo_name, page, limit))

    async def fetch_all_by_fields(self, field_names: str | Sequence[str], repo_name: str) -> list[Record] | None:
        """Fetch every row, keeping only ``field_names``."""

        options = FindOptions(select=tuple(_as_list(field_names)))
        return _or_none(await self.find(repo_name, options))

    async def fetch_all_by_fields_paginated(
        self,
        field_names: str | Sequence[str],
        page: int,
        limit: int,
        repo_name: str,
    ) -> list[Record] | None:
        options = FindOptions(select=tuple(_as_list(field_names)))
        return _or_none(await self.find_paginated(repo_name, page, limit, options))

    async def fetch_by_value(self, field_name: str, field_value: Any, repo_name: str) -> list[Record] | None:
        return _or_none(await self.find(repo_name, FindOptions(where={field_name: field_value})))

    async def fetch_by_value_paginated(
        self,
        field_name: str,
        field_value: Any,
        page: int,
        limit: int,
        repo_name: str,
    ) -> list[Record] | None:
        options = FindOptions(where={field_name: field_value})
        return _or_none(await self.find_paginated(repo_name, page, limit, options))

    async def count_by_value(self, field_name: str, field_value: Any, repo_name: str) -> int:
        return await self.count(repo_name, {field_name: field_value})

    async def count_all_repo(self, repo_name: str) -> int:
        return await self.count(repo_name)

    async def _run(self, table: str, operation: Callable[[TableRepository], Awaitable[T]]) -> T:
        self._ensure_connected()
        session = self.session
        repository = self._backend.repository(table)
        try:
            return await operation(repository)
        except BackendConnectionError:
            # A failure from an earlier session says nothing about the current one.
            if session != self.session:
                LOG.debug(
                    "Ignoring connection error from a previous session",
                    extra={"endpoint": self.endpoint_key, "table": table, "session": session},
                )
                raise
            LOG.warning(
                "Backend connection lost; marking connection as disconnected",
                extra={"endpoint": self.endpoint_key, "table": table},
            )
            await self._drop_connection()
            raise


__all__ = ["Database", "paginate"]
