# max_express_bot/infra/db_async.py
"""
Async database connection pool (asyncpg).
"""
from __future__ import annotations
from typing import AsyncIterator
from contextlib import asynccontextmanager

import asyncpg
from max_express_bot.config import settings
from max_express_bot.infra.logging_config import get_logger

logger = get_logger(__name__)

# Global connection pool
_pool: asyncpg.Pool | None = None


async def init_pool() -> None:
    """Initialize connection pool on startup"""
    global _pool

    if _pool is not None:
        return

    logger.info(
        f"Initializing asyncpg connection pool: "
        f"host={settings.postgres_host}:{settings.postgres_port}/{settings.postgres_db}"
    )

    _pool = await asyncpg.create_pool(
        dsn=settings.database_dsn,
        min_size=settings.pg_pool_min,
        max_size=settings.pg_pool_max,
        timeout=settings.pg_connect_timeout,
        command_timeout=settings.pg_command_timeout,
        server_settings={
            'application_name': 'max_express_bot',
        }
    )

    logger.info(f"Connection pool created: min={settings.pg_pool_min}, max={settings.pg_pool_max}")


async def close_pool() -> None:
    """Close connection pool on shutdown"""
    global _pool

    if _pool is None:
        return

    logger.info("Closing connection pool")
    await _pool.close()
    _pool = None
    logger.info("Connection pool closed")


@asynccontextmanager
async def db_conn(autocommit: bool = True) -> AsyncIterator[asyncpg.Connection]:
    """
    Get database connection from pool (async).

    Usage:
        async with db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM sessions WHERE user_id = $1", user_id)

    Args:
        autocommit: If True (default), no explicit transaction. If False, the
            block runs inside a transaction that commits on exit and rolls
            back on error.
    """
    if _pool is None:
        raise RuntimeError("Connection pool not initialized. Call init_pool() first.")

    conn = await _pool.acquire()

    try:
        if not autocommit:
            transaction = conn.transaction()
            await transaction.start()

            try:
                yield conn
                await transaction.commit()
            except Exception:
                await transaction.rollback()
                raise
        else:
            yield conn
    finally:
        await _pool.release(conn)


async def get_pool() -> asyncpg.Pool:
    """Get the connection pool directly (for advanced usage)"""
    if _pool is None:
        raise RuntimeError("Connection pool not initialized")
    return _pool
