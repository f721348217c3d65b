# tests/conftest.py
import logging
from typing import AsyncGenerator

import aiosqlite
import pytest
import pytest_asyncio

from async_criteria.base.cache import InMemoryResultCache
from async_criteria.base.filters import _MACROS
from async_criteria.db_implementations.sqlite_engine import SqliteQueryEngine
from tests.models import (
    COUNTRIES,
    ORDERS,
    PROFILES,
    SCHEMA,
    USERS,
    ActiveUserRepository,
    UserRepository,
)

logging.getLogger("aiosqlite").setLevel(logging.WARNING)


# SQLite Fixture (Function Scoped)
@pytest_asyncio.fixture(scope="function")
async def sqlite_memory_db_conn() -> AsyncGenerator[aiosqlite.Connection, None]:
    """Provides an in-memory aiosqlite database connection for testing."""
    conn = None
    try:
        conn = await aiosqlite.connect(":memory:")
        conn.row_factory = aiosqlite.Row
        yield conn
    finally:
        if conn:
            await conn.close()


@pytest_asyncio.fixture(scope="function")
async def seeded_db(sqlite_memory_db_conn):
    """Creates the users/profiles/countries/orders tables and loads fixtures."""
    conn = sqlite_memory_db_conn
    for statement in SCHEMA:
        await conn.execute(statement)
    await conn.executemany("INSERT INTO users VALUES (?, ?, ?, ?, ?, ?, ?, ?)", USERS)
    await conn.executemany("INSERT INTO countries VALUES (?, ?, ?)", COUNTRIES)
    await conn.executemany("INSERT INTO profiles VALUES (?, ?, ?, ?, ?)", PROFILES)
    await conn.executemany("INSERT INTO orders VALUES (?, ?, ?, ?)", ORDERS)
    await conn.commit()
    return conn


@pytest.fixture
def engine(seeded_db) -> SqliteQueryEngine:
    return SqliteQueryEngine(seeded_db)


@pytest.fixture
def user_repository(engine) -> UserRepository:
    return UserRepository(engine)


@pytest.fixture
def active_user_repository(engine) -> ActiveUserRepository:
    return ActiveUserRepository(engine)


@pytest.fixture
def result_cache() -> InMemoryResultCache:
    return InMemoryResultCache()


@pytest.fixture
def cached_user_repository(engine, result_cache) -> UserRepository:
    return UserRepository(engine, cache=result_cache)


@pytest.fixture(autouse=True)
def clear_macros():
    _MACROS.clear()
    yield
    _MACROS.clear()


def ids(entities) -> list:
    return [entity.id for entity in entities]


@pytest.fixture
def entity_ids():
    return ids
