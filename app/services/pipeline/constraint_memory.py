"""Constraint memory -- lane-scoped rules learned from failed builds.

When the fix loop gives up, each remaining error is turned into a short
imperative rule and saved here.  Later builds on the same lane read the
most-hit rules back into their generation prompt.

Near-duplicates are merged by keyword overlap (Jaccard over lower-cased
tokens longer than three characters) instead of piling up as separate
rows.  Reads run maintenance first: stale single-hit rules decay and each
lane is capped.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone

from lanekit.lanes import Lane

from app.services.pipeline.models import Constraint

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[a-z0-9_]+")

PROMPT_HEADER = "LEARNED CONSTRAINTS (from earlier failed builds; follow strictly):"


def keywords(text: str) -> set[str]:
    return {t for t in _TOKEN_RE.findall(text.lower()) if len(t) > 3}


def jaccard(a: set[str], b: set[str]) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def format_for_prompt(constraints: list[Constraint]) -> str:
    """Render *constraints* as a prompt block ("" when there are none)."""
    if not constraints:
        return ""
    lines = [PROMPT_HEADER]
    lines.extend(f"- {c.text}" for c in constraints)
    return "\n".join(lines)


def _lane_key(lane: Lane | str) -> str:
    return lane.value if isinstance(lane, Lane) else str(lane)


class ConstraintMemory:
    """Save / recall lane constraints through an injected repository.

    *repo* is anything with the ``ConstraintRepo`` methods (upsert,
    find_exact, list_for_lane, bump, top, delete_stale, enforce_cap).
    """

    def __init__(
        self,
        repo,
        *,
        similarity: float = 0.6,
        decay_days: int = 90,
        lane_cap: int = 50,
    ) -> None:
        self.repo = repo
        self.similarity = similarity
        self.decay_days = decay_days
        self.lane_cap = lane_cap

    async def save(self, lane: Lane | str, text: str, error_pattern: str = "") -> Constraint:
        """Bump an identical or similar constraint, or insert a new one."""
        key = _lane_key(lane)
        text = text.strip()

        row = await self.repo.find_exact(key, text)
        if row is not None:
            bumped = await self.repo.bump(row["id"])
            if bumped is not None:
                return Constraint(**bumped)

        tokens = keywords(text)
        best: dict | None = None
        best_score = 0.0
        for candidate in await self.repo.list_for_lane(key):
            score = jaccard(tokens, keywords(candidate["text"]))
            if score > best_score:
                best, best_score = candidate, score
        if best is not None and best_score > self.similarity:
            logger.debug("Constraint %r merged into #%s (similarity %.2f)", text, best["id"], best_score)
            bumped = await self.repo.bump(best["id"])
            if bumped is not None:
                return Constraint(**bumped)

        # A concurrent exact insert turns this into a bump
        row = await self.repo.upsert(key, text, error_pattern)
        logger.info("Learned constraint for %s: %s", key, text)
        return Constraint(**row)

    async def maintain(self, lane: Lane | str, *, now: datetime | None = None) -> int:
        """Decay stale single-hit rules and enforce the lane cap.  Returns rows removed."""
        key = _lane_key(lane)
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=self.decay_days)
        removed = await self.repo.delete_stale(key, cutoff)
        removed += await self.repo.enforce_cap(key, self.lane_cap)
        if removed:
            logger.info("Constraint maintenance removed %d row(s) for %s", removed, key)
        return removed

    async def get(self, lane: Lane | str, limit: int = 10) -> list[Constraint]:
        """Top *limit* constraints by hit count, then recency."""
        await self.maintain(lane)
        rows = await self.repo.top(_lane_key(lane), limit)
        return [Constraint(**r) for r in rows]


__all__ = [
    "ConstraintMemory",
    "PROMPT_HEADER",
    "format_for_prompt",
    "jaccard",
    "keywords",
]
