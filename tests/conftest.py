# [파일 설명]
# - 목적: 테스트 공통 경로 설정과 픽스처를 제공한다.
# - 제공 기능: 저장소 루트/fixtures 경로 등록, sys 카탈로그를 흉내 낸 SQLite DB, 가짜 비동기 엔진을 제공한다.
# - 입력/출력: 임시 디렉터리에 카탈로그 DB를 만들고 엔진을 반환한다.
# - 주의 사항: 실제 SQL Server에는 접속하지 않는다.
# - 연관 모듈: app.services.sproc_schema, app.services.sproc_invoker와 연동된다.
from __future__ import annotations

import asyncio
import sqlite3
import sys
from pathlib import Path
from typing import Any

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
FIXTURES_DIR = Path(__file__).resolve().parent / "fixtures"
for path in (ROOT_DIR, FIXTURES_DIR):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from sqlalchemy import event  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

CATALOG_SCHEMA = """
CREATE TABLE schemas (schema_id INTEGER PRIMARY KEY, name TEXT NOT NULL);
CREATE TABLE procedures (object_id INTEGER PRIMARY KEY, schema_id INTEGER, name TEXT NOT NULL);
CREATE TABLE types (user_type_id INTEGER PRIMARY KEY, name TEXT NOT NULL);
CREATE TABLE parameters (
    object_id INTEGER,
    name TEXT,
    parameter_id INTEGER,
    user_type_id INTEGER,
    max_length INTEGER,
    precision INTEGER,
    scale INTEGER,
    is_output INTEGER,
    is_nullable INTEGER,
    default_value TEXT
);
"""

SCHEMAS = [(1, "dbo"), (5, "sales")]
TYPES = [(56, "int"), (231, "nvarchar"), (106, "decimal"), (42, "datetime2"), (240, "geography")]
PROCEDURES = [
    (100, 1, "sp_Orders_GetById"),
    (101, 1, "sp_Orders_Search"),
    (102, 1, "sp_Ping"),
    (103, 5, "sp_Customers_Rename"),
    (104, 5, "sp_Report"),
]
# Rows are inserted out of ordinal order and sp_Orders_Search skips ordinal 2.
PARAMETERS = [
    (100, "@OrderId", 1, 56, 4, 10, 0, 0, 0, None),
    (101, "@Total", 4, 106, 9, 18, 2, 1, 1, None),
    (101, "@Status", 3, 231, 100, 0, 0, 0, 1, None),
    (101, "@CustomerId", 1, 56, 4, 10, 0, 0, 0, None),
    (103, "@NewName", 2, 231, 200, 0, 0, 0, 0, None),
    (103, "@CustomerId", 1, 56, 4, 10, 0, 0, 0, None),
    (104, "@From", 1, 42, 8, 27, 7, 0, 0, "2024-01-01"),
    (104, "@Area", 2, 240, -1, 0, 0, 0, 0, None),
]


def build_catalog(path: Path) -> Path:
    connection = sqlite3.connect(path)
    try:
        connection.executescript(CATALOG_SCHEMA)
        connection.executemany("INSERT INTO schemas VALUES (?, ?)", SCHEMAS)
        connection.executemany("INSERT INTO types VALUES (?, ?)", TYPES)
        connection.executemany("INSERT INTO procedures VALUES (?, ?, ?)", PROCEDURES)
        connection.executemany(
            "INSERT INTO parameters VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)", PARAMETERS
        )
        connection.commit()
    finally:
        connection.close()
    return path


def make_catalog_engine(catalog_path: Path, main_path: Path, **kwargs: Any) -> AsyncEngine:
    """SQLite engine where the catalog file is attached as schema ``sys``."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{main_path}", **kwargs)

    @event.listens_for(engine.sync_engine, "connect")
    def attach_catalog(dbapi_connection: Any, _: Any) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute(f"ATTACH DATABASE '{catalog_path}' AS sys")
        cursor.close()

    return engine


@pytest.fixture
def catalog_path(tmp_path: Path) -> Path:
    return build_catalog(tmp_path / "catalog.db")


@pytest.fixture
async def catalog_engine(catalog_path: Path, tmp_path: Path):
    engine = make_catalog_engine(catalog_path, tmp_path / "main.db")
    yield engine
    await engine.dispose()


@pytest.fixture
def api_catalog_engine(catalog_path: Path, tmp_path: Path) -> AsyncEngine:
    # TestClient may run each request on its own event loop, so nothing is pooled.
    return make_catalog_engine(catalog_path, tmp_path / "main.db", poolclass=NullPool)


class FakeCursor:
    def __init__(self, result_sets: list[tuple[list[str], list[tuple[Any, ...]]]]) -> None:
        self._result_sets = result_sets
        self._index = 0

    @property
    def description(self) -> list[tuple[str]] | None:
        if self._index >= len(self._result_sets):
            return None
        columns, _ = self._result_sets[self._index]
        return [(column,) for column in columns]

    def fetchall(self) -> list[tuple[Any, ...]]:
        return list(self._result_sets[self._index][1])

    def nextset(self) -> bool:
        self._index += 1
        return self._index < len(self._result_sets)


class FakeResult:
    def __init__(self, result_sets: list[tuple[list[str], list[tuple[Any, ...]]]]) -> None:
        self.cursor = FakeCursor(result_sets)
        self.returns_rows = bool(result_sets)
        self.closed = False

    def close(self) -> None:
        self.closed = True


class FakeSyncConnection:
    def __init__(self, engine: FakeEngine) -> None:
        self._engine = engine

    def execute(self, statement: Any, params: dict[str, Any] | None = None) -> FakeResult:
        sql = str(statement)
        self._engine.executed.append((sql, dict(params or {})))
        for marker, error in self._engine.failures.items():
            if marker in sql:
                raise error
        return FakeResult(self._engine.result_sets)


class FakeAsyncConnection:
    def __init__(self, engine: FakeEngine) -> None:
        self._engine = engine

    async def __aenter__(self) -> FakeAsyncConnection:
        if self._engine.connect_delay:
            await asyncio.sleep(self._engine.connect_delay)
        if self._engine.connect_error is not None:
            raise self._engine.connect_error
        self._engine.open_connections += 1
        return self

    async def __aexit__(self, *exc_info: object) -> bool:
        self._engine.open_connections -= 1
        self._engine.released += 1
        return False

    async def run_sync(self, fn: Any, *args: Any) -> Any:
        if self._engine.delay:
            await asyncio.sleep(self._engine.delay)
        return fn(FakeSyncConnection(self._engine), *args)


class FakeEngine:
    """Stands in for ``AsyncEngine`` when a batch only has to be captured, not run."""

    def __init__(
        self,
        result_sets: list[tuple[list[str], list[tuple[Any, ...]]]] | None = None,
        *,
        delay: float = 0.0,
        connect_delay: float = 0.0,
        connect_error: BaseException | None = None,
        failures: dict[str, BaseException] | None = None,
    ) -> None:
        self.result_sets = result_sets or []
        self.delay = delay
        self.connect_delay = connect_delay
        self.connect_error = connect_error
        self.failures = failures or {}
        self.executed: list[tuple[str, dict[str, Any]]] = []
        self.open_connections = 0
        self.released = 0
        self.connect_attempts = 0

    def connect(self) -> FakeAsyncConnection:
        self.connect_attempts += 1
        return FakeAsyncConnection(self)


@pytest.fixture
def fake_engine_factory():
    return FakeEngine
