"""Asyncpg connection pool lifecycle."""
from __future__ import annotations

from typing import Any

import asyncpg  # type: ignore[import-untyped]

pool: asyncpg.Pool | None = None


async def init_pool(database_url: str, pool_size: int) -> asyncpg.Pool:
    """Initialize the global asyncpg pool (idempotent)."""
    global pool
    if pool is None:
        pool = await asyncpg.create_pool(dsn=database_url, max_size=pool_size)
    return pool


async def close_pool(_app: Any = None) -> None:
    """Close pool on shutdown."""
    global pool
    if pool is not None:
        await pool.close()
        pool = None


def get_pool() -> asyncpg.Pool:
    if pool is None:
        raise RuntimeError("Database pool not initialized. Call init_pool() first.")
    return pool
