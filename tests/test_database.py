"""Tests for the CRUD helpers exposed by Database."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from dbkit.backends import BackendConnectionError, BackendError, MemoryBackend, MemoryRepository
from dbkit.config import parse_config
from dbkit.connection import ConnectInProgressError, NotConnectedError
from dbkit.database import Database, paginate
from dbkit.models import ConnectionState, FindOptions, In


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class _SpyRepository(MemoryRepository):
    def __init__(self, backend: MemoryBackend, table: str, calls: list[tuple[str, Any]]) -> None:
        super().__init__(backend, table)
        self._calls = calls

    async def find(self, options: FindOptions | None = None):  # type: ignore[no-untyped-def]
        self._calls.append(("find", options))
        return await super().find(options)

    async def update(self, criteria: Any, patch):  # type: ignore[no-untyped-def]
        self._calls.append(("update", criteria))
        return await super().update(criteria, patch)

    async def delete(self, criteria: Any) -> int:
        self._calls.append(("delete", criteria))
        return await super().delete(criteria)


class _SpyBackend(MemoryBackend):
    def __init__(self) -> None:
        super().__init__(tables=["accounts"])
        self.calls: list[tuple[str, Any]] = []
        self.repository_calls = 0

    def repository(self, table: str) -> _SpyRepository:
        self.repository_calls += 1
        super().repository(table)
        return _SpyRepository(self, table, self.calls)


def _database(backend: MemoryBackend) -> Database:
    config = parse_config(
        {"type": "mysql", "host": "localhost", "user": "root", "database": "shop", "tables": ["accounts"]}
    )
    return Database(config, backend=backend)


@pytest.fixture
async def db() -> Database:
    database = _database(_SpyBackend())
    await database.connect()
    return database


def _spy(database: Database) -> _SpyBackend:
    backend = database.backend
    assert isinstance(backend, _SpyBackend)
    return backend


def test_paginate_is_zero_based() -> None:
    assert paginate(0, 10) == (0, 10)
    assert paginate(2, 10) == (20, 10)


@pytest.mark.parametrize(("page", "limit"), [(-1, 10), (0, 0), (1, -5)])
def test_paginate_rejects_invalid_input(page: int, limit: int) -> None:
    with pytest.raises(ValueError):
        paginate(page, limit)


@pytest.mark.anyio
async def test_crud_requires_connection() -> None:
    backend = _SpyBackend()
    database = _database(backend)

    with pytest.raises(NotConnectedError):
        await database.find("accounts")
    with pytest.raises(NotConnectedError):
        await database.insert_data({"email": "a@example.com"}, "accounts")

    assert backend.repository_calls == 0


@pytest.mark.anyio
async def test_crud_rejected_while_connecting() -> None:
    class _SlowBackend(_SpyBackend):
        def __init__(self) -> None:
            super().__init__()
            self.release = asyncio.Event()

        async def initialize(self) -> None:
            await self.release.wait()
            await super().initialize()

    backend = _SlowBackend()
    database = _database(backend)
    pending = asyncio.create_task(database.connect())
    await asyncio.sleep(0)
    assert database.state is ConnectionState.CONNECTING

    with pytest.raises(ConnectInProgressError):
        await database.count_all_repo("accounts")

    assert backend.repository_calls == 0
    backend.release.set()
    await pending


@pytest.mark.anyio
async def test_fetch_all_repo_paginated_requests_skip_and_take(db: Database) -> None:
    _spy(db).seed("accounts", [{"email": f"user{i}@example.com"} for i in range(25)])

    first = await db.fetch_all_repo_paginated(0, 10, "accounts")
    third = await db.fetch_all_repo_paginated(2, 10, "accounts")
    beyond = await db.fetch_all_repo_paginated(3, 10, "accounts")

    options = [call[1] for call in _spy(db).calls if call[0] == "find"]
    assert (options[0].skip, options[0].take) == (0, 10)
    assert (options[1].skip, options[1].take) == (20, 10)
    assert first is not None and [row["id"] for row in first] == list(range(1, 11))
    assert third is not None and [row["id"] for row in third] == list(range(21, 26))
    assert beyond is None


@pytest.mark.anyio
async def test_insert_data_returns_single_id(db: Database) -> None:
    _spy(db).seed("accounts", [{"id": 6, "email": "existing@example.com"}])

    inserted = await db.insert_data({"email": "new@example.com"}, "accounts")

    assert inserted == 7


@pytest.mark.anyio
async def test_insert_datas_returns_ids_or_none(db: Database) -> None:
    assert await db.insert_datas([{"email": "a@example.com"}, {"email": "b@example.com"}], "accounts") == [1, 2]
    assert await db.insert_datas({"email": "c@example.com"}, "accounts") == [3]
    assert await db.insert_datas([], "accounts") is None


@pytest.mark.anyio
async def test_update_and_delete_normalize_scalar_ids(db: Database) -> None:
    await db.insert_datas([{"email": "a@example.com"}, {"email": "b@example.com"}], "accounts")

    updated = await db.update_data_by_ids(1, {"email": "changed@example.com"}, "accounts")
    deleted = await db.delete_by_ids((1, 2), "accounts")

    assert updated == 1
    assert deleted == 2
    assert ("update", [1]) in _spy(db).calls
    assert ("delete", [1, 2]) in _spy(db).calls


@pytest.mark.anyio
async def test_fetch_helpers_use_none_for_empty_results(db: Database) -> None:
    assert await db.fetch_all_repo("accounts") is None
    assert await db.fetch_by_id(1, "accounts") is None
    assert await db.fetch_by_ids([1, 2], "accounts") is None
    assert await db.fetch_by_value("email", "x", "accounts") is None
    assert await db.fetch_all_by_fields("email", "accounts") is None


@pytest.mark.anyio
async def test_fetch_helpers_return_records(db: Database) -> None:
    await db.insert_datas(
        [
            {"email": "a@example.com", "team": "red"},
            {"email": "b@example.com", "team": "blue"},
            {"email": "c@example.com", "team": "red"},
        ],
        "accounts",
    )

    by_id = await db.fetch_by_id(2, "accounts")
    by_ids = await db.fetch_by_ids([1, 3], "accounts")
    by_value = await db.fetch_by_value("team", "red", "accounts")
    by_value_page = await db.fetch_by_value_paginated("team", "red", 1, 1, "accounts")
    fields = await db.fetch_all_by_fields(["id", "team"], "accounts")
    fields_page = await db.fetch_all_by_fields_paginated("email", 0, 2, "accounts")

    assert by_id is not None and by_id["email"] == "b@example.com"
    assert by_ids is not None and [row["id"] for row in by_ids] == [1, 3]
    assert by_value is not None and [row["id"] for row in by_value] == [1, 3]
    assert by_value_page == [by_value[1]]
    assert fields == [{"id": 1, "team": "red"}, {"id": 2, "team": "blue"}, {"id": 3, "team": "red"}]
    assert fields_page == [{"email": "a@example.com"}, {"email": "b@example.com"}]
    assert await db.count_by_value("team", "red", "accounts") == 2
    assert await db.count_all_repo("accounts") == 3


@pytest.mark.anyio
async def test_generic_operations_delegate(db: Database) -> None:
    ids = await db.insert("accounts", [{"email": "a@example.com", "logins": 1}, {"email": "b@example.com"}])

    assert ids == [1, 2]
    assert await db.increment("accounts", {"id": 1}, "logins", 4) == 1
    assert await db.decrement("accounts", {"id": In(ids)}, "logins") == 2
    assert await db.update("accounts", {"email": "b@example.com"}, {"email": "bee@example.com"}) == 1
    first = await db.find_one("accounts", FindOptions(where={"id": 1}))
    assert first == {"id": 1, "email": "a@example.com", "logins": 4}
    assert await db.find_paginated("accounts", 1, 1, FindOptions(select=("email",))) == [{"email": "bee@example.com"}]
    assert await db.count("accounts", {"logins": -1}) == 1
    assert await db.delete("accounts", 2) == 1
    assert await db.find("accounts") == [{"id": 1, "email": "a@example.com", "logins": 4}]


@pytest.mark.anyio
async def test_connection_errors_mark_connection_as_disconnected() -> None:
    failure = BackendConnectionError("connection reset by peer")

    class _ResetRepository(MemoryRepository):
        async def find(self, options: FindOptions | None = None):  # type: ignore[no-untyped-def]
            raise failure

    class _ResetBackend(MemoryBackend):
        def __init__(self) -> None:
            super().__init__(tables=["accounts"])
            self.destroyed = 0

        def repository(self, table: str) -> MemoryRepository:
            return _ResetRepository(self, table)

        async def destroy(self) -> None:
            self.destroyed += 1
            await super().destroy()

    backend = _ResetBackend()
    database = _database(backend)
    fired: list[str] = []
    database.on("disconnect", lambda: fired.append("disconnect"))
    await database.connect()

    with pytest.raises(BackendConnectionError) as excinfo:
        await database.fetch_all_repo("accounts")

    assert excinfo.value is failure
    assert database.state is ConnectionState.IDLE
    assert backend.destroyed == 1
    assert fired == ["disconnect"]
    assert await database.check_connection() is True


@pytest.mark.anyio
async def test_other_backend_errors_leave_connection_alone() -> None:
    class _BrokenRepository(MemoryRepository):
        async def count(self, where=None):  # type: ignore[no-untyped-def]
            raise BackendError("syntax error")

    class _BrokenBackend(MemoryBackend):
        def repository(self, table: str) -> MemoryRepository:
            return _BrokenRepository(self, table)

    database = _database(_BrokenBackend(tables=["accounts"]))
    await database.connect()

    with pytest.raises(BackendError, match="syntax error"):
        await database.count_all_repo("accounts")

    assert database.is_connected is True


@pytest.mark.anyio
async def test_unknown_table_surfaces_backend_error(db: Database) -> None:
    with pytest.raises(BackendError, match="orders"):
        await db.fetch_all_repo("orders")
    assert db.is_connected is True


@pytest.mark.anyio
async def test_stale_connection_error_keeps_new_session() -> None:
    started = asyncio.Event()
    release = asyncio.Event()

    class _HangingRepository(MemoryRepository):
        async def find(self, options: FindOptions | None = None):  # type: ignore[no-untyped-def]
            started.set()
            await release.wait()
            raise BackendConnectionError("server closed the connection unexpectedly")

    class _HangingBackend(MemoryBackend):
        def __init__(self) -> None:
            super().__init__(tables=["accounts"])
            self.destroyed = 0

        def repository(self, table: str) -> MemoryRepository:
            return _HangingRepository(self, table)

        async def destroy(self) -> None:
            self.destroyed += 1
            await super().destroy()

    backend = _HangingBackend()
    database = _database(backend)
    fired: list[str] = []
    database.on("connect", lambda: fired.append("connect"))
    database.on("disconnect", lambda: fired.append("disconnect"))
    await database.connect()

    pending = asyncio.create_task(database.find("accounts"))
    await started.wait()
    await database.disconnect()
    await database.connect()
    release.set()

    with pytest.raises(BackendConnectionError):
        await pending

    assert database.is_connected is True
    assert database.session == 2
    assert backend.destroyed == 1
    assert fired == ["connect", "disconnect", "connect"]
