"""Constraint repository -- database reads and writes for the constraints table."""

from datetime import datetime

from app.repos.db import get_pool

_COLUMNS = "id, lane, text, source_error_pattern, hit_count, created_at, last_hit_at"


def _affected(status: str) -> int:
    """Row count from an asyncpg status string such as ``'DELETE 3'``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0


class ConstraintRepo:
    """asyncpg-backed store used by ``ConstraintMemory``.

    Every method is a single statement, so each runs in its own READ
    COMMITTED transaction.
    """

    async def upsert(self, lane: str, text: str, source_error_pattern: str = "") -> dict:
        """Insert a constraint, or bump it when (lane, text) already exists."""
        pool = await get_pool()
        row = await pool.fetchrow(
            f"""
            INSERT INTO constraints (lane, text, source_error_pattern)
            VALUES ($1, $2, $3)
            ON CONFLICT (lane, text) DO UPDATE
               SET hit_count   = constraints.hit_count + 1,
                   last_hit_at = now()
            RETURNING {_COLUMNS}
            """,
            lane,
            text,
            source_error_pattern,
        )
        return dict(row)

    async def find_exact(self, lane: str, text: str) -> dict | None:
        pool = await get_pool()
        row = await pool.fetchrow(
            f"SELECT {_COLUMNS} FROM constraints WHERE lane = $1 AND text = $2",
            lane,
            text,
        )
        return dict(row) if row else None

    async def list_for_lane(self, lane: str) -> list[dict]:
        pool = await get_pool()
        rows = await pool.fetch(
            f"SELECT {_COLUMNS} FROM constraints WHERE lane = $1 ORDER BY id",
            lane,
        )
        return [dict(r) for r in rows]

    async def bump(self, constraint_id: int) -> dict | None:
        """Increment hit_count and refresh last_hit_at for one row."""
        pool = await get_pool()
        row = await pool.fetchrow(
            f"""
            UPDATE constraints
               SET hit_count = hit_count + 1, last_hit_at = now()
             WHERE id = $1
            RETURNING {_COLUMNS}
            """,
            constraint_id,
        )
        return dict(row) if row else None

    async def top(self, lane: str, limit: int) -> list[dict]:
        """Most-hit constraints for *lane*, most recent first among equals."""
        pool = await get_pool()
        rows = await pool.fetch(
            f"""
            SELECT {_COLUMNS} FROM constraints
             WHERE lane = $1
             ORDER BY hit_count DESC, last_hit_at DESC
             LIMIT $2
            """,
            lane,
            limit,
        )
        return [dict(r) for r in rows]

    async def delete_stale(self, lane: str, cutoff: datetime) -> int:
        """Delete single-hit constraints not seen since *cutoff*."""
        pool = await get_pool()
        status = await pool.execute(
            "DELETE FROM constraints WHERE lane = $1 AND hit_count = 1 AND last_hit_at < $2",
            lane,
            cutoff,
        )
        return _affected(status)

    async def enforce_cap(self, lane: str, cap: int) -> int:
        """Keep the top *cap* rows of *lane*; evict lowest hit count, then oldest."""
        pool = await get_pool()
        status = await pool.execute(
            """
            DELETE FROM constraints
             WHERE id IN (
                SELECT id FROM constraints
                 WHERE lane = $1
                 ORDER BY hit_count DESC, last_hit_at DESC, id DESC
                OFFSET $2
             )
            """,
            lane,
            cap,
        )
        return _affected(status)
