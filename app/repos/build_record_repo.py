"""Build record repository -- append-only audit rows, one per pipeline run."""

import json

from app.repos.db import get_pool


class BuildRecordRepo:
    """asyncpg-backed append-only store for ``BuildRecord`` rows."""

    async def record(self, record) -> int:
        """Insert *record* (a ``BuildRecord``) and return its row id."""
        pool = await get_pool()
        return await pool.fetchval(
            """
            INSERT INTO build_records
                (build_id, name, lane, prompt, status, artifact_path,
                 source_dir, timings, error, events)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9, $10::jsonb)
            RETURNING id
            """,
            record.build_id,
            record.name,
            record.lane,
            record.prompt,
            record.status,
            record.artifact_path,
            record.source_dir,
            json.dumps(record.timings),
            record.error,
            json.dumps([e.model_dump() for e in record.events]),
        )

    async def recent(self, limit: int = 20) -> list[dict]:
        pool = await get_pool()
        rows = await pool.fetch(
            """
            SELECT id, build_id, name, lane, status, artifact_path, error, created_at
              FROM build_records
             ORDER BY created_at DESC
             LIMIT $1
            """,
            limit,
        )
        return [dict(r) for r in rows]
