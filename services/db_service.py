# services/db_service.py
"""
asyncpg pool plus the small query helpers every store uses.

All helpers go through ``_timed`` so slow statements show up in the logs with
the first line of their SQL. Pool knobs are env-driven so a worker box can be
tuned without touching Settings.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from time import monotonic
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence
from urllib.parse import urlparse

import asyncpg

from app.config import require_database_url

logger = logging.getLogger(__name__)

APPLICATION_NAME = "planpost-pipeline"
STATEMENT_TIMEOUT_MS = int(os.getenv("STATEMENT_TIMEOUT_MS", "30000"))
LOCK_TIMEOUT_MS = int(os.getenv("LOCK_TIMEOUT_MS", "5000"))
IDLE_IN_TX_TIMEOUT_MS = int(os.getenv("IDLE_IN_TX_TIMEOUT_MS", "60000"))
POOL_MIN_SIZE = int(os.getenv("DB_POOL_MIN_SIZE", "1"))
# one sequential pipeline per process; a handful of connections is plenty
POOL_MAX_SIZE = int(os.getenv("DB_POOL_MAX_SIZE", "4"))
QUERY_TIMEOUT_S = int(os.getenv("DEFAULT_QUERY_TIMEOUT_MS", "30000")) / 1000
SLOW_QUERY_MS = 1_000

_ASYNCPG_SCHEME = "postgresql+asyncpg://"

_pool: Optional[asyncpg.Pool] = None
_pool_lock = asyncio.Lock()


def _asyncpg_dsn(raw: str) -> str:
    # SQLAlchemy-style URLs uit .env accepteren
    raw = raw.strip()
    if raw.startswith(_ASYNCPG_SCHEME):
        return "postgresql://" + raw[len(_ASYNCPG_SCHEME):]
    return raw


async def ensure_pool() -> asyncpg.Pool:
    global _pool
    if _pool is not None:
        return _pool

    async with _pool_lock:
        if _pool is None:
            dsn = _asyncpg_dsn(require_database_url())
            parsed = urlparse(dsn)
            logger.info(
                "db_pool_initializing",
                extra={"dsn_host": parsed.hostname, "dsn_port": parsed.port, "max_size": POOL_MAX_SIZE},
            )
            _pool = await asyncpg.create_pool(
                dsn=dsn,
                min_size=POOL_MIN_SIZE,
                max_size=POOL_MAX_SIZE,
                command_timeout=60,
                timeout=60,
                statement_cache_size=0,
                max_inactive_connection_lifetime=30,
                server_settings={
                    "application_name": APPLICATION_NAME,
                    "statement_timeout": str(STATEMENT_TIMEOUT_MS),
                    "lock_timeout": str(LOCK_TIMEOUT_MS),
                    "idle_in_transaction_session_timeout": str(IDLE_IN_TX_TIMEOUT_MS),
                },
            )
    return _pool


async def init_db_pool() -> asyncpg.Pool:
    return await ensure_pool()


async def close_db_pool() -> None:
    global _pool
    pool, _pool = _pool, None
    if pool is not None:
        await pool.close()
        logger.info("db_pool_closed")


async def _timed(
    conn: asyncpg.Connection,
    method: str,
    query: str,
    *args: Any,
    timeout: Optional[float] = None,
) -> Any:
    started = monotonic()
    try:
        return await getattr(conn, method)(
            query, *args, timeout=QUERY_TIMEOUT_S if timeout is None else timeout
        )
    finally:
        elapsed_ms = (monotonic() - started) * 1000
        if elapsed_ms >= SLOW_QUERY_MS:
            logger.warning(
                "db_slow_query",
                extra={
                    "duration_ms": round(elapsed_ms, 2),
                    "method": method,
                    "query_snippet": query.strip().split("\n")[0][:200],
                },
            )


@asynccontextmanager
async def connection() -> AsyncIterator[asyncpg.Connection]:
    pool = await ensure_pool()
    async with pool.acquire() as conn:
        yield conn


async def fetch(query: str, *args: Any, timeout: Optional[float] = None) -> List[asyncpg.Record]:
    async with connection() as conn:
        return await _timed(conn, "fetch", query, *args, timeout=timeout)


async def fetchrow(query: str, *args: Any, timeout: Optional[float] = None) -> Optional[asyncpg.Record]:
    async with connection() as conn:
        return await _timed(conn, "fetchrow", query, *args, timeout=timeout)


async def fetchval(query: str, *args: Any, timeout: Optional[float] = None) -> Any:
    async with connection() as conn:
        return await _timed(conn, "fetchval", query, *args, timeout=timeout)


async def execute(query: str, *args: Any, timeout: Optional[float] = None) -> str:
    async with connection() as conn:
        return await _timed(conn, "execute", query, *args, timeout=timeout)


@asynccontextmanager
async def run_in_transaction() -> AsyncIterator[asyncpg.Connection]:
    """Yield a connection inside a transaction; commit on exit, roll back on error."""
    pool = await ensure_pool()
    async with pool.acquire() as conn:
        tx = conn.transaction()
        await tx.start()
        try:
            yield conn
        except Exception:
            await tx.rollback()
            raise
        else:
            await tx.commit()


async def fetchrow_with_conn(
    conn: asyncpg.Connection, query: str, *args: Any, timeout: Optional[float] = None
) -> Optional[asyncpg.Record]:
    return await _timed(conn, "fetchrow", query, *args, timeout=timeout)


async def executemany_with_conn(
    conn: asyncpg.Connection, query: str, rows: Sequence[tuple], timeout: Optional[float] = None
) -> None:
    await conn.executemany(query, list(rows), timeout=QUERY_TIMEOUT_S if timeout is None else timeout)


def _jsonb(value: Optional[Dict[str, Any]]) -> Optional[str]:
    return None if value is None else json.dumps(value, ensure_ascii=False, default=str)


async def ai_log(
    *,
    action_type: str,
    prompt: Optional[Dict[str, Any]],
    raw_response: Optional[Dict[str, Any]],
    validated_output: Optional[Dict[str, Any]],
    model_used: Optional[str],
    is_success: bool,
    error_message: Optional[str],
    ranking_snapshot_id: Optional[int] = None,
) -> None:
    """
    Audit row in ai_logs for one model call. Failures here are logged and never
    reach the classification or generation stage.
    """
    try:
        await execute(
            """
            INSERT INTO ai_logs (
                ranking_snapshot_id, action_type, prompt, raw_response,
                validated_output, model_used, is_success, error_message
            )
            VALUES ($1, $2, CAST($3 AS JSONB), CAST($4 AS JSONB), CAST($5 AS JSONB), $6, $7, $8)
            """,
            ranking_snapshot_id,
            action_type,
            _jsonb(prompt),
            _jsonb(raw_response),
            _jsonb(validated_output),
            model_used,
            is_success,
            error_message,
        )
    except Exception as e:
        logger.warning("ai_log failed", exc_info=e)
