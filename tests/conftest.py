"""
Pytest configuration and fixtures
"""

import pytest
import pytest_asyncio
from contextlib import asynccontextmanager
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool
from typing import Any, AsyncGenerator, Dict, List, Optional, Tuple
from models.base import Base
from core.config import Settings
from migration.rollback import RollbackTarget
import copy
import models.checkpoint  # noqa: F401
import models.operation  # noqa: F401


@pytest.fixture
def test_settings(tmp_path):
    """Settings with small, deterministic limits for tests"""
    return Settings(
        BATCH_SIZE=10,
        MIN_BATCH_SIZE=2,
        MAX_BATCH_SIZE=50,
        MEMORY_LIMIT="-1",
        CHECKPOINT_INTERVAL=10,
        CHECKPOINT_DIR=str(tmp_path / "checkpoints"),
        OPERATION_LOG_DIR=str(tmp_path / "operations"),
        RETRY_BASE_DELAY=0.01,
        RETRY_MAX_DELAY=0.05,
        RETRY_JITTER=False,
        PROGRESS_MIN_INTERVAL=0.0,
        PROGRESS_MIN_PERCENTAGE=0.0,
    )


@pytest.fixture
def write_file(tmp_path):
    """Write text to a file under tmp_path and return its path"""
    def _write(name: str, content: str, encoding: str = "utf-8"):
        path = tmp_path / name
        path.write_text(content, encoding=encoding)
        return path
    return _write


@pytest.fixture
def users_csv(write_file):
    """Small CSV with a header row"""
    rows = ["id,name,email,status"]
    for i in range(1, 26):
        status = "active" if i % 2 else "inactive"
        rows.append(f"{i},User {i},user{i}@example.com,{status}")
    return write_file("users.csv", "\n".join(rows) + "\n")


class FakeSleeper:
    """Records requested delays instead of sleeping"""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


@pytest.fixture
def fake_sleep():
    return FakeSleeper()


class InMemoryTarget(RollbackTarget):
    """
    Dict-backed destination: tables[target][key_tuple] = row.

    Optionally fails on chosen targets to exercise failure handling.
    """

    def __init__(self, supports_transactions: bool = False):
        self.tables: Dict[str, Dict[Tuple, Dict[str, Any]]] = {}
        self.supports_transactions = supports_transactions
        self.fail_with: Dict[str, Exception] = {}

    @staticmethod
    def _key(key: Dict[str, Any]) -> Tuple:
        return tuple(sorted(key.items()))

    def _check(self, target: str):
        if target in self.fail_with:
            raise self.fail_with[target]

    def table(self, target: str) -> Dict[Tuple, Dict[str, Any]]:
        return self.tables.setdefault(target, {})

    def put(self, target: str, key: Dict[str, Any], row: Dict[str, Any]):
        self.table(target)[self._key(key)] = dict(row)

    def get(self, target: str, key: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return self.table(target).get(self._key(key))

    async def insert_row(self, target: str, row: Dict[str, Any]):
        self._check(target)
        key = {"id": row["id"]}
        self.table(target)[self._key(key)] = dict(row)

    async def update_row(self, target: str, key: Dict[str, Any], values: Dict[str, Any]):
        self._check(target)
        self.table(target)[self._key(key)].update(values)

    async def delete_row(self, target: str, key: Dict[str, Any]):
        self._check(target)
        self.table(target).pop(self._key(key), None)

    @asynccontextmanager
    async def transaction(self):
        snapshot = copy.deepcopy(self.tables)
        try:
            yield
        except Exception:
            self.tables = snapshot
            raise


@pytest.fixture
def memory_target():
    return InMemoryTarget()


@pytest.fixture
def transactional_target():
    return InMemoryTarget(supports_transactions=True)


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """SQLite (aiosqlite) engine with the bookkeeping tables created"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        echo=False,
        poolclass=NullPool,  # Disable connection pooling for tests
    )

    # Let SQLAlchemy own transaction boundaries so SAVEPOINT works on SQLite
    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_maker(test_engine) -> async_sessionmaker:
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests"""
    async with session_maker() as session:
        yield session
        await session.rollback()
