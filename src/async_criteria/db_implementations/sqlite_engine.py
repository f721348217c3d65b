# src/async_criteria/db_implementations/sqlite_engine.py

import json
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from enum import Enum
from typing import Any, AsyncGenerator, Dict, List

# --- aiosqlite Driver Import ---
import aiosqlite

from async_criteria.db_implementations.sql_renderer import QMARK, SqlQueryEngine, SqlRenderer


class SqliteQueryEngine(SqlQueryEngine):
    """
    Query engine for SQLite using aiosqlite.

    Expects an active `aiosqlite.Connection`, typically owned by a Unit of
    Work that handles commit/rollback. Write statements run on that
    connection and are not committed here.

    Dates and datetimes are bound as ISO 8601 strings; dictionaries and
    lists written by bulk updates are stored as JSON text.
    """

    def __init__(self, db_connection: aiosqlite.Connection):
        if not isinstance(db_connection, aiosqlite.Connection):
            raise TypeError(
                "db_connection must be an instance of aiosqlite.Connection"
            )
        self._conn = db_connection
        self._conn.row_factory = aiosqlite.Row
        self.renderer = SqlRenderer(QMARK)
        self._logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    # --- Connection/Session Management (UoW Aware) ---
    @asynccontextmanager
    async def _get_session(self) -> AsyncGenerator[aiosqlite.Connection, None]:
        """
        Provides the externally managed connection within a context.
        Does NOT handle commit/rollback; the caller owns the transaction.
        """
        try:
            yield self._conn
        except Exception as e:
            self._logger.error(
                f"Error during query execution within external transaction: {e}",
                exc_info=True,
            )
            raise

    # --- Driver Calls ---
    async def fetch_all(self, sql: str, params: List[Any]) -> List[Dict[str, Any]]:
        self._logger.debug(f"Executing SQL: {sql} | Params: {params}")
        async with self._get_session() as conn:
            async with conn.execute(sql, params) as cursor:
                rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def fetch_value(self, sql: str, params: List[Any]) -> Any:
        self._logger.debug(f"Executing SQL: {sql} | Params: {params}")
        async with self._get_session() as conn:
            async with conn.execute(sql, params) as cursor:
                row = await cursor.fetchone()
        return row[0] if row is not None else None

    async def execute_statement(self, sql: str, params: List[Any]) -> int:
        self._logger.debug(f"Executing SQL: {sql} | Params: {params}")
        async with self._get_session() as conn:
            cursor = await conn.execute(sql, params)
            try:
                return cursor.rowcount
            finally:
                await cursor.close()

    # --- Value Adaptation ---
    def adapt_value(self, value: Any) -> Any:
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, (list, tuple, set, frozenset)):
            # Membership lists are expanded into one placeholder per item
            return [self.adapt_value(item) for item in value]
        if isinstance(value, dict):
            return json.dumps(value, default=str)
        return value

    def adapt_column_value(self, value: Any) -> Any:
        if isinstance(value, (list, tuple, set, frozenset, dict)):
            return json.dumps(list(value) if not isinstance(value, dict) else value, default=str)
        return self.adapt_value(value)
