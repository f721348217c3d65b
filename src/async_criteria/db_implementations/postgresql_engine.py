# src/async_criteria/db_implementations/postgresql_engine.py

import asyncio
import json
import logging
import re
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncGenerator, Dict, List, Optional, Set

# --- asyncpg Driver Import ---
import asyncpg

from async_criteria.db_implementations.sql_renderer import NUMERIC, SqlQueryEngine, SqlRenderer

DB_POOL_TYPE = asyncpg.Pool

# --- Codec Setup ---
# Server PIDs of pooled connections that already carry the JSONB codec
_codec_set_conn_ids: Set[int] = set()
_codec_lock = asyncio.Lock()


async def _ensure_postgres_codecs(conn: asyncpg.Connection, logger: logging.Logger):
    """Registers JSONB codecs on a connection if not already tracked as set."""
    conn_id = conn.get_server_pid()
    if conn_id in _codec_set_conn_ids:
        return

    async with _codec_lock:
        if conn_id in _codec_set_conn_ids:
            return

        logger.debug(f"Setting JSONB codec for connection {conn} (ID: {conn_id})")
        try:
            await conn.set_type_codec(
                "jsonb",
                encoder=lambda v: json.dumps(v),
                decoder=lambda s: json.loads(s),
                schema="pg_catalog",
                format="text",
            )
            _codec_set_conn_ids.add(conn_id)
        except Exception as e:
            logger.error(f"Failed to set JSONB codec on {conn}: {e}", exc_info=True)
            raise RuntimeError("Failed to configure necessary PostgreSQL codecs.") from e


class PostgresQueryEngine(SqlQueryEngine):
    """
    Query engine for PostgreSQL using asyncpg.

    Requires an asyncpg.Pool and acquires/releases a connection per call.
    Membership lists are bound as a single array parameter (``= ANY($n)``).
    """

    def __init__(self, db_pool: DB_POOL_TYPE):
        if not isinstance(db_pool, asyncpg.Pool):
            raise TypeError("db_pool must be an instance of asyncpg.Pool")
        self._pool = db_pool
        self.renderer = SqlRenderer(NUMERIC)
        self._logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    # --- Connection/Session Management ---
    @asynccontextmanager
    async def _get_session(self) -> AsyncGenerator[asyncpg.Connection, None]:
        """Acquire connection from the pool, ensure codecs, and release."""
        conn: Optional[asyncpg.Connection] = None
        try:
            conn = await self._pool.acquire()
            self._logger.debug(f"Acquired connection {conn} from pool.")
            await _ensure_postgres_codecs(conn, self._logger)
            yield conn
        except Exception as e:
            self._logger.error(f"Error during query execution: {e}", exc_info=True)
            raise
        finally:
            if conn:
                try:
                    await self._pool.release(conn)
                    self._logger.debug(f"Released connection {conn} back to pool.")
                except Exception as release_error:
                    self._logger.error(
                        f"Error releasing connection {conn}: {release_error}",
                        exc_info=True,
                    )

    # --- Driver Calls ---
    async def fetch_all(self, sql: str, params: List[Any]) -> List[Dict[str, Any]]:
        self._logger.debug(f"Executing SQL: {sql} | Params: {params}")
        async with self._get_session() as conn:
            records = await conn.fetch(sql, *params)
        return [dict(record) for record in records]

    async def fetch_value(self, sql: str, params: List[Any]) -> Any:
        self._logger.debug(f"Executing SQL: {sql} | Params: {params}")
        async with self._get_session() as conn:
            return await conn.fetchval(sql, *params)

    async def execute_statement(self, sql: str, params: List[Any]) -> int:
        self._logger.debug(f"Executing SQL: {sql} | Params: {params}")
        async with self._get_session() as conn:
            status = await conn.execute(sql, *params)
        # Status strings look like 'UPDATE 3' or 'DELETE 0'
        match = re.match(r"(?:UPDATE|DELETE) (\d+)", status or "")
        return int(match.group(1)) if match else 0

    def adapt_value(self, value: Any) -> Any:
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, (tuple, set, frozenset)):
            return [self.adapt_value(item) for item in value]
        return value
