"""Pydantic models passed between pipeline stages.

Everything here is plain data.  ``BuildSpec``, ``RouteDecision``,
``BudgetPlan`` and ``Constraint`` are frozen; ``BuildRecord`` is mutable
because the orchestrator fills it in stage by stage and persists it once,
in a ``finally`` block, whatever the outcome.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from lanekit.contracts import FileMap, ValidationError, ValidationWarning
from lanekit.lanes import Lane

# ---------------------------------------------------------------------------
# Routing and budget
# ---------------------------------------------------------------------------


class RouteDecision(BaseModel):
    """Which lane a prompt was routed to and why."""

    model_config = ConfigDict(frozen=True)

    lane: Lane
    reason: str
    matched: list[Lane] = Field(default_factory=list, description="Every lane whose keywords matched")
    override_used: bool = False
    override_rejected: str | None = Field(default=None, description="An override that named no lane")

    @property
    def ambiguous(self) -> bool:
        return not self.override_used and len(self.matched) > 1


class BudgetPlan(BaseModel):
    """Output-budget assessment for one refined spec."""

    model_config = ConfigDict(frozen=True)

    budget: int
    estimate: int
    feature_count: int
    prune_to: int | None = Field(default=None, description="Feature cap for a re-refinement pass, if needed")

    @property
    def needs_pruning(self) -> bool:
        return self.prune_to is not None and self.prune_to < self.feature_count


# ---------------------------------------------------------------------------
# Refined spec
# ---------------------------------------------------------------------------

SPEC_SECTIONS = (
    "app_name",
    "purpose",
    "features",
    "deferred",
    "data_model",
    "ui_layout",
    "styling",
    "edge_cases",
)

# Sections a full-regeneration prompt keeps from the second iteration on
CORE_SECTIONS = ("app_name", "purpose", "features", "data_model")


class BuildSpec(BaseModel):
    """Structured decomposition of a user prompt."""

    model_config = ConfigDict(frozen=True)

    app_name: str
    purpose: str = ""
    lane: Lane
    features: list[str] = Field(default_factory=list)
    deferred: list[str] = Field(default_factory=list)
    data_model: str = ""
    ui_layout: str = ""
    styling: str = ""
    edge_cases: str = ""

    def to_text(self, sections: tuple[str, ...] | list[str] | None = None) -> str:
        """Render the spec as prompt text, optionally restricted to *sections*."""
        wanted = sections or SPEC_SECTIONS
        parts: list[str] = []
        for name in SPEC_SECTIONS:
            if name not in wanted:
                continue
            value = getattr(self, name)
            if isinstance(value, list):
                if not value:
                    continue
                body = "\n".join(f"- {item}" for item in value)
            else:
                if not value:
                    continue
                body = value
            parts.append(f"{name.upper()}:\n{body}")
        return "\n\n".join(parts)

    @property
    def word_count(self) -> int:
        return len(self.to_text().split())


# ---------------------------------------------------------------------------
# Constraint memory
# ---------------------------------------------------------------------------


class Constraint(BaseModel):
    """A learned, lane-scoped prompt rule."""

    model_config = ConfigDict(frozen=True)

    id: int
    lane: str
    text: str
    source_error_pattern: str = ""
    hit_count: int = Field(default=1, ge=1)
    created_at: datetime
    last_hit_at: datetime


# ---------------------------------------------------------------------------
# Fix loop
# ---------------------------------------------------------------------------


class Surgical(BaseModel):
    """Regenerate only the listed files; everything else is kept verbatim."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["surgical"] = "surgical"
    files: list[str]


class Full(BaseModel):
    """Regenerate the whole file map."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["full"] = "full"


RepairStrategy = Annotated[Union[Surgical, Full], Field(discriminator="kind")]


@dataclass
class FixLoopResult:
    """Outcome of one bounded repair loop."""

    success: bool
    file_map: FileMap
    errors: list[ValidationError] = field(default_factory=list)
    attempts: int = 0
    generation_failures: int = 0
    strategies: list[Surgical | Full] = field(default_factory=list)


class GenerationContext(BaseModel):
    """What every generation prompt in one build is assembled from."""

    model_config = ConfigDict(frozen=True)

    build_id: str
    lane: Lane
    spec: BuildSpec
    plan: str | None = None
    contracts: str | None = None
    constraints_text: str = ""
    max_tokens: int = 8192


# ---------------------------------------------------------------------------
# Review
# ---------------------------------------------------------------------------


class ReviewResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    defects: list[str] = Field(default_factory=list)
    scope_gaps: list[str] = Field(default_factory=list)
    degraded: bool = Field(default=False, description="Review call failed; no findings")

    @property
    def clean(self) -> bool:
        return not self.defects


# ---------------------------------------------------------------------------
# Build backend
# ---------------------------------------------------------------------------


class BackendResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    artifact_path: str | None = None
    size_bytes: int = 0
    size_label: str = ""
    build_time_seconds: float = 0.0
    diagnostic_text: str = ""


# ---------------------------------------------------------------------------
# Build record
# ---------------------------------------------------------------------------

BuildStatus = Literal["running", "success", "failure"]


class BuildEvent(BaseModel):
    """A non-fatal condition (or the final failure) noted during a build."""

    model_config = ConfigDict(frozen=True)

    kind: str
    message: str
    stage: str = ""


class BuildRecord(BaseModel):
    """Append-only audit row for one pipeline run."""

    build_id: str
    name: str = ""
    lane: str = ""
    prompt: str
    status: BuildStatus = "running"
    artifact_path: str | None = None
    source_dir: str | None = None
    timings: dict[str, float] = Field(default_factory=dict)
    error: str | None = None
    events: list[BuildEvent] = Field(default_factory=list)

    def add_event(self, kind: str, message: str, stage: str = "") -> None:
        self.events.append(BuildEvent(kind=kind, message=message, stage=stage))


# ---------------------------------------------------------------------------
# Pipeline result
# ---------------------------------------------------------------------------


class PipelineSuccess(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["success"] = "success"
    build_id: str
    app_name: str
    lane: Lane
    artifact_path: str
    source_dir: str
    build_time_seconds: float
    size_label: str = ""
    deferred_features: list[str] = Field(default_factory=list)
    scope_gaps: list[str] = Field(default_factory=list)
    unresolved_defects: list[str] = Field(default_factory=list)
    warnings: list[ValidationWarning] = Field(default_factory=list)


class PipelineFailure(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["failure"] = "failure"
    build_id: str
    kind: str
    diagnostic_text: str
    lane: Lane | None = None
    partial_errors: list[str] = Field(default_factory=list)


PipelineResult = Annotated[Union[PipelineSuccess, PipelineFailure], Field(discriminator="status")]


__all__ = [
    "BackendResult",
    "BudgetPlan",
    "BuildEvent",
    "BuildRecord",
    "BuildSpec",
    "CORE_SECTIONS",
    "Constraint",
    "FixLoopResult",
    "Full",
    "GenerationContext",
    "PipelineFailure",
    "PipelineResult",
    "PipelineSuccess",
    "RepairStrategy",
    "ReviewResult",
    "RouteDecision",
    "SPEC_SECTIONS",
    "Surgical",
]
