"""Spec refiner -- decompose a free-text prompt into a ``BuildSpec``.

One call on the fast model tier.  The response is parsed section by
section (``SECTION: NAME`` headers); features beyond the cap move, in
order, to the front of the deferred list so nothing the user asked for is
silently dropped.  When the call fails the refiner falls back to a minimal
spec derived from the prompt itself.
"""

from __future__ import annotations

import logging
import re

from lanekit.lanes import Lane

from app.errors import PipelineError
from app.services.pipeline import prompts
from app.services.pipeline.models import BuildSpec

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_SECTION_RE = re.compile(r"^\s*(?:#+\s*)?\**\s*SECTION\s*:\s*(?P<name>[A-Z_ ]+?)\s*\**\s*$", re.IGNORECASE)
_BULLET_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(?P<item>.+?)\s*$")

_LIST_SECTIONS = frozenset({"features", "deferred"})
_TEXT_SECTIONS = frozenset({"app_name", "purpose", "data_model", "ui_layout", "styling", "edge_cases"})

_NAME_STOPWORDS = frozenset({"a", "an", "the", "me", "build", "create", "make", "write", "please", "simple"})


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _bullets(lines: list[str]) -> list[str]:
    items: list[str] = []
    for line in lines:
        m = _BULLET_RE.match(line)
        text = m.group("item") if m else line.strip()
        if text and text.lower() not in ("none", "n/a", "-"):
            items.append(text)
    return items


def split_sections(text: str) -> dict[str, list[str]]:
    """Group response lines under their lower-cased ``SECTION:`` name."""
    sections: dict[str, list[str]] = {}
    current: str | None = None
    for line in (text or "").splitlines():
        m = _SECTION_RE.match(line)
        if m:
            current = m.group("name").strip().lower().replace(" ", "_")
            sections.setdefault(current, [])
            continue
        if current is not None:
            sections[current].append(line)
    return sections


def apply_feature_cap(spec: BuildSpec, cap: int) -> BuildSpec:
    """Move features beyond *cap* to the front of ``deferred``."""
    if len(spec.features) <= cap:
        return spec
    kept = spec.features[:cap]
    overflow = spec.features[cap:]
    deferred: list[str] = []
    for item in overflow + spec.deferred:
        if item not in deferred:
            deferred.append(item)
    return spec.model_copy(update={"features": kept, "deferred": deferred})


def app_name_from_prompt(prompt: str) -> str:
    words = [w for w in re.findall(r"[A-Za-z0-9]+", prompt) if w.lower() not in _NAME_STOPWORDS]
    return " ".join(w.capitalize() for w in words[:4]) or "App"


def fallback_spec(prompt: str, lane: Lane) -> BuildSpec:
    """Minimal spec built from the prompt alone."""
    return BuildSpec(
        app_name=app_name_from_prompt(prompt),
        purpose=prompt.strip(),
        lane=lane,
        features=[prompt.strip()] if prompt.strip() else [],
    )


def parse_spec_response(text: str, lane: Lane, feature_cap: int, prompt: str) -> BuildSpec:
    """Parse a refiner response; missing sections fall back to the prompt."""
    sections = split_sections(text)
    values: dict = {}
    for name, lines in sections.items():
        if name in _LIST_SECTIONS:
            values[name] = _bullets(lines)
        elif name in _TEXT_SECTIONS:
            values[name] = "\n".join(lines).strip()
    name_lines = values.pop("app_name", "").splitlines()
    app_name = name_lines[0].strip(" *#`\"'") if name_lines else ""
    spec = BuildSpec(
        app_name=app_name or app_name_from_prompt(prompt),
        lane=lane,
        purpose=values.pop("purpose", "") or prompt.strip(),
        features=values.pop("features", []) or [prompt.strip()],
        **values,
    )
    return apply_feature_cap(spec, feature_cap)


def _keep_intent(previous: BuildSpec, spec: BuildSpec) -> BuildSpec:
    """Defer anything the re-refinement pass dropped from *previous*."""
    seen = set(spec.features) | set(spec.deferred)
    dropped = [f for f in previous.features if f not in seen]
    old_deferred = [d for d in previous.deferred if d not in seen]
    if not dropped and not old_deferred:
        return spec
    return spec.model_copy(update={"deferred": dropped + spec.deferred + old_deferred})


# ---------------------------------------------------------------------------
# Refiner
# ---------------------------------------------------------------------------


class SpecRefiner:
    """Turns a prompt into a capped ``BuildSpec`` with one LLM call."""

    def __init__(self, llm, *, model: str, max_tokens: int = 2048) -> None:
        self.llm = llm
        self.model = model
        self.max_tokens = max_tokens
        self.used_fallback = False

    async def refine(
        self,
        prompt: str,
        lane: Lane,
        feature_cap: int,
        *,
        previous: BuildSpec | None = None,
    ) -> BuildSpec:
        """Refine *prompt* for *lane*.

        With *previous* set this is the one-off re-refinement pass run after
        a budget prune; a failure then keeps *previous*, capped.
        """
        system, user = prompts.refine_prompt(prompt, lane, feature_cap, previous)
        self.used_fallback = False
        try:
            completion = await self.llm.complete(
                model=self.model,
                system_prompt=system,
                messages=[{"role": "user", "content": user}],
                max_tokens=self.max_tokens,
            )
        except PipelineError as exc:
            logger.warning("Spec refinement failed, using fallback spec: %s", exc)
            self.used_fallback = True
            base = previous if previous is not None else fallback_spec(prompt, lane)
            return apply_feature_cap(base, feature_cap)

        if completion.stop_reason == "max_tokens":
            logger.warning("Spec refinement response truncated at %d tokens", self.max_tokens)
        spec = parse_spec_response(completion.text, lane, feature_cap, prompt)
        if previous is not None:
            spec = _keep_intent(previous, spec)
        logger.info("Refined spec '%s': %d features, %d deferred", spec.app_name, len(spec.features), len(spec.deferred))
        return spec


__all__ = [
    "SpecRefiner",
    "app_name_from_prompt",
    "apply_feature_cap",
    "fallback_spec",
    "parse_spec_response",
    "split_sections",
]
