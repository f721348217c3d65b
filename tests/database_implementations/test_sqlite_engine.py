# tests/database_implementations/test_sqlite_engine.py

import json
import sqlite3
from datetime import date, datetime
from enum import Enum

import pytest

from async_criteria.base.compiler import SelectMode, Selection
from async_criteria.db_implementations.sqlite_engine import SqliteQueryEngine
from tests.models import MAPPINGS


class Color(Enum):
    RED = "red"


def test_requires_aiosqlite_connection():
    with pytest.raises(TypeError):
        SqliteQueryEngine(object())


@pytest.mark.parametrize(
    "value, expected",
    [
        (datetime(2024, 1, 2, 3, 4, 5), "2024-01-02T03:04:05"),
        (date(2024, 1, 2), "2024-01-02"),
        (Color.RED, "red"),
        ((1, datetime(2024, 1, 1)), [1, "2024-01-01T00:00:00"]),
        ({"a": 1}, '{"a": 1}'),
        (5, 5),
        (None, None),
    ],
)
def test_adapt_value(engine, value, expected):
    assert engine.adapt_value(value) == expected


def test_column_values_store_collections_as_json(engine):
    assert json.loads(engine.adapt_column_value(["a", "b"])) == ["a", "b"]
    assert json.loads(engine.adapt_column_value({"k": [1]})) == {"k": [1]}
    assert engine.adapt_column_value(3) == 3


async def test_fetch_all_returns_dicts(engine):
    rows = await engine.fetch_all('SELECT "id", "name" FROM "users" WHERE "id" = ?', [2])
    assert rows == [{"id": 2, "name": "Bob"}]


async def test_fetch_value(engine):
    assert await engine.fetch_value('SELECT COUNT(*) FROM "users"', []) == 5
    assert await engine.fetch_value('SELECT "id" FROM "users" WHERE "id" = ?', [99]) is None


async def test_execute_statement_returns_rowcount(engine):
    updated = await engine.execute_statement(
        'UPDATE "users" SET "credits" = ? WHERE "role" = ?', [1, "admin"]
    )
    assert updated == 2


async def test_driver_errors_propagate(engine):
    with pytest.raises(sqlite3.OperationalError):
        await engine.fetch_all('SELECT * FROM "missing_table"', [])


async def test_prepared_query_executes(engine, user_repository):
    compiled = user_repository.build_query({"profile.city": "Berlin"}, order_by="id")
    rows = await engine.fetch_rows(compiled, MAPPINGS["users"])
    assert [row["id"] for row in rows] == [1, 3]

    compiled = user_repository.build_query(
        {"status": "active"}, selection=Selection(SelectMode.COUNT)
    )
    assert await engine.fetch_scalar(compiled, MAPPINGS["users"]) == 3


async def test_datetime_criteria_compare_as_iso_text(user_repository):
    deleted = await user_repository.fetch([["deleted_at", ">", datetime(2023, 12, 31)]])
    assert [user.id for user in deleted] == [4]
