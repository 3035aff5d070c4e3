"""Planner and contract generator -- optional pre-generation stages.

Both run only for larger specs and both are best-effort: whatever goes
wrong, the stage logs a warning and returns ``None`` so generation
proceeds without it.
"""

from __future__ import annotations

import logging

from app.services.pipeline import prompts
from app.services.pipeline.models import BuildSpec

logger = logging.getLogger(__name__)


async def _ask(llm, model: str, system: str, user: str, max_tokens: int) -> str | None:
    completion = await llm.complete(
        model=model,
        system_prompt=system,
        messages=[{"role": "user", "content": user}],
        max_tokens=max_tokens,
    )
    if completion.stop_reason == "max_tokens":
        # A half plan misleads the generator more than no plan
        logger.warning("Planning response truncated at %d tokens; discarding", max_tokens)
        return None
    return completion.text.strip() or None


class Planner:
    """Implementation plan for specs above the word threshold."""

    def __init__(self, llm, *, model: str, word_threshold: int = 150, max_tokens: int = 4096) -> None:
        self.llm = llm
        self.model = model
        self.word_threshold = word_threshold
        self.max_tokens = max_tokens

    def should_plan(self, spec: BuildSpec) -> bool:
        return spec.word_count > self.word_threshold

    async def plan(self, spec: BuildSpec) -> str | None:
        if not self.should_plan(spec):
            logger.debug("Spec has %d words; skipping planner", spec.word_count)
            return None
        system, user = prompts.plan_prompt(spec)
        try:
            return await _ask(self.llm, self.model, system, user, self.max_tokens)
        except Exception as exc:
            logger.warning("Planner failed (non-fatal): %s", exc)
            return None


class ContractGenerator:
    """Per-file interface contracts derived from a plan."""

    def __init__(self, llm, *, model: str, max_tokens: int = 4096) -> None:
        self.llm = llm
        self.model = model
        self.max_tokens = max_tokens

    async def generate(self, spec: BuildSpec, plan: str | None) -> str | None:
        if not plan:
            return None
        system, user = prompts.contract_prompt(spec, plan)
        try:
            return await _ask(self.llm, self.model, system, user, self.max_tokens)
        except Exception as exc:
            logger.warning("Contract generation failed (non-fatal): %s", exc)
            return None


__all__ = ["ContractGenerator", "Planner"]
