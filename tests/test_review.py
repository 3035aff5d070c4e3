"""Tests for app/services/pipeline/review.py -- reviewer parsing and degradation."""

import pytest

from lanekit.contracts import FileMap
from lanekit.lanes import Lane

from app.errors import GenerationError
from app.services.pipeline.models import BuildSpec
from app.services.pipeline.review import ReviewAgent, defects_as_errors, parse_review
from tests.conftest import FakeLLM


SPEC = BuildSpec(app_name="Todo", lane=Lane.WEB, features=["add items", "delete items"])
FILES = FileMap(lane=Lane.WEB, files={"index.html": "<html></html>\n", "app.js": "let a;\n"})


# ---------------------------------------------------------------------------
# parse_review
# ---------------------------------------------------------------------------


def test_parse_both_sections():
    text = (
        "DEFECTS:\n"
        "- [app.js] delete button removes the wrong item\n"
        "- totals never update\n"
        "\n"
        "SCOPE_GAPS:\n"
        "- delete items\n"
    )
    result = parse_review(text)
    assert result.defects == ["[app.js] delete button removes the wrong item", "totals never update"]
    assert result.scope_gaps == ["delete items"]
    assert not result.clean


def test_parse_none_placeholders():
    result = parse_review("DEFECTS: none\nSCOPE_GAPS: None.")
    assert result.clean
    assert result.scope_gaps == []


def test_parse_sections_in_any_order_with_markdown():
    text = "## **SCOPE GAPS**\n1. export to CSV\n\n**DEFECTS:**\n* [index.html] form never submits\n"
    result = parse_review(text)
    assert result.scope_gaps == ["export to CSV"]
    assert result.defects == ["[index.html] form never submits"]


def test_text_before_first_header_is_ignored():
    result = parse_review("Looks mostly fine.\nDEFECTS:\n- broken\n")
    assert result.defects == ["broken"]


def test_parse_empty_response():
    result = parse_review("")
    assert result.defects == [] and result.scope_gaps == []


# ---------------------------------------------------------------------------
# defects_as_errors
# ---------------------------------------------------------------------------


def test_defects_become_review_errors():
    errors = defects_as_errors(
        ["[app.js] delete removes the wrong item", "[ghost.js] no such file", "totals wrong"],
        FILES,
    )
    assert [(e.file, e.message) for e in errors] == [
        ("app.js", "delete removes the wrong item"),
        ("", "[ghost.js] no such file"),
        ("", "totals wrong"),
    ]
    assert all(e.source == "review" for e in errors)


# ---------------------------------------------------------------------------
# ReviewAgent
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_agent_sends_spec_and_files():
    llm = FakeLLM(["DEFECTS: none\nSCOPE_GAPS: none"])
    result = await ReviewAgent(llm, model="review-model").review(FILES, SPEC)
    assert result.clean
    assert not result.degraded
    call = llm.calls[0]
    assert call["model"] == "review-model"
    user = call["messages"][0]["content"]
    assert "- delete items" in user
    assert "FILE app.js:" in user


@pytest.mark.asyncio
async def test_agent_failure_degrades_to_no_findings():
    llm = FakeLLM([GenerationError("upstream 503")])
    result = await ReviewAgent(llm, model="review-model").review(FILES, SPEC)
    assert result.degraded
    assert result.clean
    assert result.scope_gaps == []
