"""Database connection pool management and schema bootstrap.

Wraps an asyncpg pool so a query that hits a dropped connection is tried
once more, and provides ``ensure_schema()`` which creates the pipeline's
tables if they do not exist yet.
"""

import asyncio
import logging
from typing import Any

import asyncpg

from app.config import settings

logger = logging.getLogger(__name__)

# Statements run one at a time under PostgreSQL's default READ COMMITTED
# isolation.  The unique (lane, text) index turns racing exact-duplicate
# inserts into hit-count bumps via ON CONFLICT.
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS constraints (
    id                   BIGSERIAL PRIMARY KEY,
    lane                 TEXT        NOT NULL,
    text                 TEXT        NOT NULL,
    source_error_pattern TEXT        NOT NULL DEFAULT '',
    hit_count            INTEGER     NOT NULL DEFAULT 1,
    created_at           TIMESTAMPTZ NOT NULL DEFAULT now(),
    last_hit_at          TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE UNIQUE INDEX IF NOT EXISTS constraints_lane_text_uq
    ON constraints (lane, text);
CREATE INDEX IF NOT EXISTS constraints_lane_rank_idx
    ON constraints (lane, hit_count DESC, last_hit_at DESC);

CREATE TABLE IF NOT EXISTS build_records (
    id            BIGSERIAL PRIMARY KEY,
    build_id      TEXT        NOT NULL,
    name          TEXT        NOT NULL DEFAULT '',
    lane          TEXT,
    prompt        TEXT        NOT NULL,
    status        TEXT        NOT NULL,
    artifact_path TEXT,
    source_dir    TEXT,
    timings       JSONB       NOT NULL DEFAULT '{}'::jsonb,
    error         TEXT,
    events        JSONB       NOT NULL DEFAULT '[]'::jsonb,
    created_at    TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS build_records_created_idx
    ON build_records (created_at DESC);
"""

# A dropped connection is retried once; query errors propagate unchanged.
_DEAD_CONNECTION = (
    asyncpg.ConnectionDoesNotExistError,
    asyncpg.InterfaceError,
    OSError,
)
_RETRY_DELAY = 0.5


class _ResilientPool:
    """The query shorthands of an asyncpg pool, each retried once after a
    dropped connection.  A CLI run is short, so there is no backoff ladder.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def fetch(self, query: str, *args: Any) -> list:
        return await self._run(self._pool.fetch, query, *args)

    async def fetchrow(self, query: str, *args: Any):
        return await self._run(self._pool.fetchrow, query, *args)

    async def fetchval(self, query: str, *args: Any):
        return await self._run(self._pool.fetchval, query, *args)

    async def execute(self, query: str, *args: Any) -> str:
        return await self._run(self._pool.execute, query, *args)

    async def close(self) -> None:
        await self._pool.close()

    @staticmethod
    async def _run(func, query: str, *args: Any):
        try:
            return await func(query, *args)
        except _DEAD_CONNECTION as exc:
            logger.warning("Database connection dropped, retrying in %.1fs: %s", _RETRY_DELAY, exc)
            await asyncio.sleep(_RETRY_DELAY)
            return await func(query, *args)


_pool: _ResilientPool | None = None


async def get_pool() -> _ResilientPool:
    """Return the process-wide pool, connecting on first use."""
    global _pool
    if _pool is None:
        raw = await asyncio.wait_for(
            asyncpg.create_pool(
                dsn=settings.DATABASE_URL,
                min_size=1,
                max_size=2,
                command_timeout=30,
            ),
            timeout=15,
        )
        _pool = _ResilientPool(raw)
    return _pool


async def ensure_schema() -> None:
    """Create the pipeline tables and indexes if they are absent."""
    pool = await get_pool()
    await pool.execute(SCHEMA_SQL)
    logger.debug("Database schema ensured")


async def close_pool() -> None:
    """Close the pool; the next get_pool() connects again."""
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None
