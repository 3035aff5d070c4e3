"""Tests for app/services/pipeline/constraint_memory.py -- learned lane rules."""

from datetime import datetime, timedelta, timezone

import pytest

from lanekit.lanes import Lane

from app.services.pipeline.constraint_memory import (
    PROMPT_HEADER,
    ConstraintMemory,
    format_for_prompt,
    jaccard,
    keywords,
)
from tests.conftest import FakeConstraintRepo

EVAL_RULE = "Never call eval() or exec(); parse input explicitly"


# ---------------------------------------------------------------------------
# Similarity helpers
# ---------------------------------------------------------------------------


def test_keywords_drop_short_tokens():
    assert keywords("Use the if/else form, not ?? in PS") == {"else", "form"}


def test_jaccard():
    assert jaccard({"a", "b"}, {"a", "b"}) == 1.0
    assert jaccard({"a", "b"}, {"b", "c"}) == pytest.approx(1 / 3)
    assert jaccard(set(), {"a"}) == 0.0


# ---------------------------------------------------------------------------
# save
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_repeated_save_increments_hit_count():
    repo = FakeConstraintRepo()
    memory = ConstraintMemory(repo)
    for _ in range(4):
        saved = await memory.save(Lane.PYTHON_SCRIPT, EVAL_RULE, "eval")
    assert len(repo.rows) == 1
    assert saved.hit_count == 4
    assert saved.lane == "python_script"


@pytest.mark.asyncio
async def test_near_duplicate_is_merged():
    repo = FakeConstraintRepo()
    memory = ConstraintMemory(repo)
    await memory.save(Lane.PYTHON_SCRIPT, EVAL_RULE)
    merged = await memory.save(Lane.PYTHON_SCRIPT, "Never call eval() or exec(); parse user input explicitly")
    assert len(repo.rows) == 1
    assert merged.hit_count == 2
    assert merged.text == EVAL_RULE


@pytest.mark.asyncio
async def test_dissimilar_constraint_is_inserted():
    repo = FakeConstraintRepo()
    memory = ConstraintMemory(repo)
    await memory.save(Lane.RUST, EVAL_RULE)
    await memory.save(Lane.RUST, "Always include Cargo.toml with a [package] section")
    assert len(repo.rows) == 2


@pytest.mark.asyncio
async def test_lanes_do_not_share_constraints():
    repo = FakeConstraintRepo()
    memory = ConstraintMemory(repo)
    await memory.save(Lane.PYTHON_SCRIPT, EVAL_RULE)
    await memory.save(Lane.PYTHON_APP, EVAL_RULE)
    assert sorted(r["lane"] for r in repo.rows.values()) == ["python_app", "python_script"]


@pytest.mark.asyncio
async def test_save_records_source_pattern():
    repo = FakeConstraintRepo()
    saved = await ConstraintMemory(repo).save("web", "  Inline all JavaScript  ", "external script")
    assert saved.text == "Inline all JavaScript"
    assert saved.source_error_pattern == "external script"


# ---------------------------------------------------------------------------
# maintenance and recall
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_stale_single_hit_rules_decay():
    repo = FakeConstraintRepo()
    now = datetime.now(timezone.utc)
    old = now - timedelta(days=120)
    repo.add("web", "stale rule", last_hit_at=old)
    repo.add("web", "proven rule", hit_count=3, last_hit_at=old)
    repo.add("web", "fresh rule")

    removed = await ConstraintMemory(repo, decay_days=90).maintain(Lane.WEB, now=now)

    assert removed == 1
    assert sorted(r["text"] for r in repo.rows.values()) == ["fresh rule", "proven rule"]


@pytest.mark.asyncio
async def test_lane_cap_evicts_lowest_ranked():
    repo = FakeConstraintRepo()
    repo.add("rust", "one", hit_count=1)
    repo.add("rust", "five", hit_count=5)
    repo.add("rust", "three", hit_count=3)
    repo.add("web", "other lane", hit_count=1)

    await ConstraintMemory(repo, lane_cap=2).maintain("rust")

    assert sorted(r["text"] for r in repo.rows.values()) == ["five", "other lane", "three"]


@pytest.mark.asyncio
async def test_get_orders_by_hits_then_recency():
    repo = FakeConstraintRepo()
    now = datetime.now(timezone.utc)
    repo.add("powershell", "older", hit_count=2, last_hit_at=now - timedelta(days=2))
    repo.add("powershell", "top", hit_count=7, last_hit_at=now - timedelta(days=5))
    repo.add("powershell", "newer", hit_count=2, last_hit_at=now - timedelta(days=1))

    got = await ConstraintMemory(repo).get(Lane.POWERSHELL, limit=2)

    assert [c.text for c in got] == ["top", "newer"]


@pytest.mark.asyncio
async def test_get_on_empty_lane():
    assert await ConstraintMemory(FakeConstraintRepo()).get(Lane.WEB) == []


# ---------------------------------------------------------------------------
# prompt block
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_format_for_prompt():
    repo = FakeConstraintRepo()
    memory = ConstraintMemory(repo)
    await memory.save(Lane.WEB, "Inline all JavaScript")
    block = format_for_prompt(await memory.get(Lane.WEB))
    assert block == f"{PROMPT_HEADER}\n- Inline all JavaScript"


def test_format_for_prompt_empty():
    assert format_for_prompt([]) == ""
