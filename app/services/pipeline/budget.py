"""Budget planner -- keep the expected output inside the model's capacity.

The estimate is linear in the feature count: ``base + n * per_feature``,
with both figures taken from the lane table.  When the estimate crowds the
budget the planner proposes a smaller feature cap for one re-refinement
pass; if that still does not fit the build is aborted before any code is
generated.
"""

from __future__ import annotations

import logging
import math

from lanekit.lanes import Lane, get_profile

from app.config import settings
from app.errors import BudgetExceededError
from app.services.pipeline.models import BudgetPlan

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Model output capacities (max output tokens per request)
# ---------------------------------------------------------------------------

MODEL_OUTPUT_LIMITS: dict[str, int] = {
    "claude-opus-4-6": 32000,
    "claude-sonnet-4-6": 64000,
    "claude-haiku-4-5": 64000,
    "claude-opus-4": 32000,
    "claude-sonnet-4": 64000,
    "claude-3-7-sonnet": 64000,
    "claude-3-5-sonnet": 8192,
    "claude-3-5-haiku": 8192,
    "claude-3-opus": 4096,
    "claude-3-haiku": 4096,
    "gpt-4.1": 32768,
    "gpt-4o": 16384,
    "gpt-4o-mini": 16384,
    "gpt-4-turbo": 4096,
    "gpt-4": 8192,
    "gpt-3.5-turbo": 4096,
    "o3": 100000,
    "o4-mini": 100000,
}

DEFAULT_OUTPUT_LIMIT = 8192


def model_output_limit(model_id: str) -> int:
    """Output capacity for *model_id*.

    Exact id first, then the longest table key contained in the id (so
    dated snapshots such as ``claude-3-5-sonnet-20241022`` resolve), else
    the conservative default.
    """
    key = (model_id or "").strip().lower()
    if key in MODEL_OUTPUT_LIMITS:
        return MODEL_OUTPUT_LIMITS[key]
    candidates = [k for k in MODEL_OUTPUT_LIMITS if k in key]
    if candidates:
        return MODEL_OUTPUT_LIMITS[max(candidates, key=len)]
    return DEFAULT_OUTPUT_LIMIT


def output_budget(model_id: str) -> int:
    """Effective generation budget: the configured budget, capped by the model."""
    limit = model_output_limit(model_id)
    if settings.OUTPUT_BUDGET_TOKENS:
        return min(settings.OUTPUT_BUDGET_TOKENS, limit)
    return limit


# ---------------------------------------------------------------------------
# Planner
# ---------------------------------------------------------------------------


class BudgetPlanner:
    """Feature-cap arithmetic for one lane/budget pair."""

    def __init__(
        self,
        *,
        prune_ratio: float = 0.8,
        abort_ratio: float = 0.9,
        safe_ratio: float = 0.7,
        min_cap: int = 5,
        floor: int = 4096,
    ) -> None:
        self.prune_ratio = prune_ratio
        self.abort_ratio = abort_ratio
        self.safe_ratio = safe_ratio
        self.min_cap = min_cap
        self.floor = floor

    @classmethod
    def from_settings(cls) -> BudgetPlanner:
        return cls(
            prune_ratio=settings.BUDGET_PRUNE_RATIO,
            abort_ratio=settings.BUDGET_ABORT_RATIO,
            safe_ratio=settings.BUDGET_SAFE_RATIO,
            min_cap=settings.MIN_FEATURE_CAP,
            floor=settings.MIN_OUTPUT_BUDGET,
        )

    def feature_cap(self, lane: Lane) -> int:
        return get_profile(lane).hard_feature_cap

    def estimate_tokens(self, lane: Lane, feature_count: int) -> int:
        profile = get_profile(lane)
        return profile.base_cost + max(feature_count, 0) * profile.per_feature_cost

    def check_floor(self, budget: int) -> None:
        """Raise ``BudgetExceededError`` when *budget* is below the hard floor."""
        if budget < self.floor:
            raise BudgetExceededError(
                f"Output budget of {budget} tokens is below the minimum of {self.floor}",
                budget=budget,
            )

    def safe_feature_count(self, lane: Lane, budget: int) -> int:
        """Largest feature count expected to fit, clamped to [min_cap, hard cap]."""
        profile = get_profile(lane)
        raw = math.floor((budget * self.safe_ratio - profile.base_cost) / profile.per_feature_cost)
        return min(profile.hard_feature_cap, max(self.min_cap, raw))

    def plan(self, lane: Lane, feature_count: int, budget: int) -> BudgetPlan:
        """Assess *feature_count* against *budget*; propose a prune if needed."""
        self.check_floor(budget)
        estimate = self.estimate_tokens(lane, feature_count)
        prune_to = None
        if estimate > self.prune_ratio * budget:
            prune_to = self.safe_feature_count(lane, budget)
            logger.info(
                "Estimate %d exceeds %.0f%% of budget %d; pruning %s to %d features",
                estimate, self.prune_ratio * 100, budget, lane.value, prune_to,
            )
        return BudgetPlan(budget=budget, estimate=estimate, feature_count=feature_count, prune_to=prune_to)

    def check_after_prune(self, lane: Lane, feature_count: int, budget: int) -> int:
        """Abort when the pruned spec still exceeds the abort ratio.

        Returns the estimate when it fits.
        """
        estimate = self.estimate_tokens(lane, feature_count)
        if estimate > self.abort_ratio * budget:
            raise BudgetExceededError(
                f"Estimated output of {estimate} tokens for {feature_count} features "
                f"still exceeds {self.abort_ratio:.0%} of the {budget}-token budget",
                budget=budget,
                estimate=estimate,
            )
        return estimate


__all__ = [
    "BudgetPlanner",
    "DEFAULT_OUTPUT_LIMIT",
    "MODEL_OUTPUT_LIMITS",
    "model_output_limit",
    "output_budget",
]
