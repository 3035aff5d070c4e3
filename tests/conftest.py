"""Shared test fixtures — reduces boilerplate across test modules.

Provides:
- ``set_test_config`` — autouse fixture that patches common settings
- ``FakeLLM`` / ``completion`` — scripted stand-in for ``LLMClient``
- ``FakeConstraintRepo`` — in-memory ``ConstraintRepo``
- ``FakeRecordRepo`` — collects persisted ``BuildRecord``s
- ``fenced`` — helper to build a code-block response
"""

from datetime import datetime, timezone

import pytest

from app.clients.llm_client import Completion, Usage


def pytest_configure(config):
    """Register custom markers.

    Tests that need real external services (database, cargo, pwsh) should be
    decorated with ``@pytest.mark.integration``.  Run pytest with
    ``-m 'not integration'`` to skip them.
    """
    config.addinivalue_line(
        "markers",
        "integration: tests requiring external services (database, toolchains, etc.)",
    )


# ---------------------------------------------------------------------------
# Environment patching
# ---------------------------------------------------------------------------

_SETTINGS_PATCHES: dict[str, object] = {
    "app.config.settings.ANTHROPIC_API_KEY": "test-key",
    "app.config.settings.OPENAI_API_KEY": "",
    "app.config.settings.LLM_PROVIDER": "anthropic",
    "app.config.settings.DATABASE_URL": "postgresql://localhost/laneforge_test",
    "app.config.settings.FORCE_MODEL": "",
    "app.config.settings.LLM_CODEGEN_MODEL": "",
    "app.config.settings.LLM_FAST_MODEL": "",
    "app.config.settings.LLM_PLANNER_MODEL": "",
    "app.config.settings.LLM_REVIEW_MODEL": "",
    "app.config.settings.BUILD_MODEL_TIER": "sonnet",
    "app.config.settings.OUTPUT_BUDGET_TOKENS": 0,
    "app.config.settings.PWSH_PATH": "",
    "app.config.settings.SKIP_BUILD_BACKEND": False,
    "app.config.settings.BRANDING_ENABLED": True,
    "app.config.settings.BRANDING_TEXT": "Built with LaneForge",
    "app.config.settings.LOG_FILE": "",
}


@pytest.fixture(autouse=True)
def set_test_config(monkeypatch, tmp_path):
    """Patch common application settings for a safe test environment.

    This is ``autouse=True`` so every test automatically gets a
    deterministic, non-production configuration; file output goes under
    the test's ``tmp_path``.
    """
    for target, value in _SETTINGS_PATCHES.items():
        monkeypatch.setattr(target, value)
    monkeypatch.setattr("app.config.settings.RAW_LOG_DIR", str(tmp_path / "raw"))
    monkeypatch.setattr("app.config.settings.OUTPUT_DIR", str(tmp_path / "builds"))


# ---------------------------------------------------------------------------
# LLM helpers
# ---------------------------------------------------------------------------


def completion(text: str, stop_reason: str = "complete", *, output_tokens: int = 100) -> Completion:
    return Completion(
        text=text,
        stop_reason=stop_reason,
        usage=Usage(input_tokens=50, output_tokens=output_tokens),
        model="test-model",
    )


def fenced(files: dict[str, str], lang: str = "") -> str:
    """An LLM-style response with one fenced block per file."""
    parts = ["Here are the files."]
    for path, source in files.items():
        parts.append(f"```{lang or 'text'} {path}\n{source.rstrip()}\n```")
    return "\n\n".join(parts)


class FakeLLM:
    """Returns queued responses in order and records every call.

    Queue items are ``Completion``s, strings (complete responses) or
    exceptions (raised).  An empty queue raises ``AssertionError``.
    """

    def __init__(self, responses=None) -> None:
        self.responses = list(responses or [])
        self.calls: list[dict] = []

    def queue(self, *responses) -> None:
        self.responses.extend(responses)

    async def complete(self, *, model, system_prompt, messages, max_tokens, temperature=None):
        self.calls.append({
            "model": model,
            "system_prompt": system_prompt,
            "messages": messages,
            "max_tokens": max_tokens,
        })
        if not self.responses:
            raise AssertionError("FakeLLM: no response queued")
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, str):
            return completion(item)
        return item


# ---------------------------------------------------------------------------
# Repository fakes
# ---------------------------------------------------------------------------


class FakeConstraintRepo:
    """In-memory implementation of the ``ConstraintRepo`` interface."""

    def __init__(self) -> None:
        self.rows: dict[int, dict] = {}
        self._next_id = 1

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def add(self, lane: str, text: str, *, hit_count: int = 1, last_hit_at: datetime | None = None) -> dict:
        """Seed a row directly (bypasses merge logic)."""
        now = last_hit_at or self._now()
        row = {
            "id": self._next_id,
            "lane": lane,
            "text": text,
            "source_error_pattern": "",
            "hit_count": hit_count,
            "created_at": now,
            "last_hit_at": now,
        }
        self.rows[self._next_id] = row
        self._next_id += 1
        return dict(row)

    async def upsert(self, lane, text, source_error_pattern=""):
        existing = await self.find_exact(lane, text)
        if existing is not None:
            return await self.bump(existing["id"])
        row = self.add(lane, text)
        self.rows[row["id"]]["source_error_pattern"] = source_error_pattern
        return dict(self.rows[row["id"]])

    async def find_exact(self, lane, text):
        for row in self.rows.values():
            if row["lane"] == lane and row["text"] == text:
                return dict(row)
        return None

    async def list_for_lane(self, lane):
        return [dict(r) for r in sorted(self.rows.values(), key=lambda r: r["id"]) if r["lane"] == lane]

    async def bump(self, constraint_id):
        row = self.rows.get(constraint_id)
        if row is None:
            return None
        row["hit_count"] += 1
        row["last_hit_at"] = self._now()
        return dict(row)

    def _ranked(self, lane):
        rows = [r for r in self.rows.values() if r["lane"] == lane]
        return sorted(rows, key=lambda r: (r["hit_count"], r["last_hit_at"], r["id"]), reverse=True)

    async def top(self, lane, limit):
        return [dict(r) for r in self._ranked(lane)[:limit]]

    async def delete_stale(self, lane, cutoff):
        stale = [
            rid for rid, r in self.rows.items()
            if r["lane"] == lane and r["hit_count"] == 1 and r["last_hit_at"] < cutoff
        ]
        for rid in stale:
            del self.rows[rid]
        return len(stale)

    async def enforce_cap(self, lane, cap):
        evict = [r["id"] for r in self._ranked(lane)[cap:]]
        for rid in evict:
            del self.rows[rid]
        return len(evict)


class FakeRecordRepo:
    def __init__(self) -> None:
        self.records: list = []

    async def record(self, record):
        self.records.append(record.model_copy(deep=True))
        return len(self.records)
