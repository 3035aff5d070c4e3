"""Review agent -- compare the generated files against the refined spec.

The reviewer answers with ``DEFECTS:`` and ``SCOPE_GAPS:`` sections, in
either order.  Defects become review-sourced ``ValidationError``s that go
back through the fix loop once; scope gaps are only reported.  A failed
review call degrades to "no findings".
"""

from __future__ import annotations

import logging
import re

from lanekit.contracts import FileMap, ValidationError, split_file_prefix

from app.services.pipeline import prompts
from app.services.pipeline.models import BuildSpec, ReviewResult

logger = logging.getLogger(__name__)

_HEADER_RE = re.compile(
    r"^\s*(?:#+\s*)?\**\s*(?P<name>DEFECTS|SCOPE[ _]GAPS)\s*\**\s*(?::\s*\**\s*(?P<rest>.*))?$",
    re.IGNORECASE,
)
_BULLET_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s*")
_PLACEHOLDERS = frozenset({"none", "n/a", "na", "nothing", "none found", "no defects", "no scope gaps", "-"})


def _clean_item(line: str) -> str | None:
    text = _BULLET_RE.sub("", line).strip()
    if text.lower().rstrip(".") in _PLACEHOLDERS or not text:
        return None
    return text


def parse_review(text: str) -> ReviewResult:
    """Parse a reviewer response into defects and scope gaps."""
    buckets: dict[str, list[str]] = {"defects": [], "scope_gaps": []}
    current: str | None = None
    for line in (text or "").splitlines():
        m = _HEADER_RE.match(line)
        if m:
            current = "defects" if m.group("name").upper() == "DEFECTS" else "scope_gaps"
            rest = _clean_item(m.group("rest") or "")
            if rest:
                buckets[current].append(rest)
            continue
        if current is None:
            continue
        item = _clean_item(line)
        if item:
            buckets[current].append(item)
    return ReviewResult(defects=buckets["defects"], scope_gaps=buckets["scope_gaps"])


def defects_as_errors(defects: list[str], file_map: FileMap) -> list[ValidationError]:
    """Review defects as structural errors; unknown file prefixes are dropped."""
    errors: list[ValidationError] = []
    for defect in defects:
        file, message = split_file_prefix(defect)
        if file is not None and file not in file_map:
            file, message = None, defect
        errors.append(ValidationError(
            file=file or "",
            message=message,
            category="structural",
            source="review",
        ))
    return errors


class ReviewAgent:
    def __init__(self, llm, *, model: str, max_tokens: int = 2048) -> None:
        self.llm = llm
        self.model = model
        self.max_tokens = max_tokens

    async def review(self, file_map: FileMap, spec: BuildSpec) -> ReviewResult:
        system, user = prompts.review_prompt(file_map, spec)
        try:
            completion = await self.llm.complete(
                model=self.model,
                system_prompt=system,
                messages=[{"role": "user", "content": user}],
                max_tokens=self.max_tokens,
            )
        except Exception as exc:
            logger.warning("Review failed (non-fatal), continuing without findings: %s", exc)
            return ReviewResult(degraded=True)
        result = parse_review(completion.text)
        logger.info("Review: %d defect(s), %d scope gap(s)", len(result.defects), len(result.scope_gaps))
        return result


__all__ = ["ReviewAgent", "defects_as_errors", "parse_review"]
