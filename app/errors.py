"""Pipeline exception hierarchy for LaneForge.

Stages raise these instead of bare ``ValueError`` so that the orchestrator
can map each one to a failure ``kind`` and a user-facing diagnostic without
fragile string matching.  Non-fatal conditions (routing ambiguity, review
scope gaps, smoke-test failures) are not exceptions; they are recorded as
BuildRecord events using the same ``kind`` vocabulary.
"""

from typing import Literal

ErrorKind = Literal[
    "routing_ambiguity",
    "budget_exceeded",
    "generation_truncated",
    "generation_failure",
    "parse_failure",
    "validation_failure",
    "review_defect",
    "review_scope_gap",
    "build_backend_failure",
    "smoke_test_failure",
    "internal_error",
]


class PipelineError(Exception):
    """Base for all pipeline exceptions."""

    kind: ErrorKind = "internal_error"

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        file: str | None = None,
        rule: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.file = file
        self.rule = rule

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "message": self.message,
            "file": self.file,
            "rule": self.rule,
        }


class BudgetExceededError(PipelineError):
    """Output budget too small for the request (fatal, before generation)."""

    kind = "budget_exceeded"

    def __init__(self, message: str = "Output budget exceeded", *, budget: int = 0, estimate: int = 0):
        super().__init__(message, rule="output budget")
        self.budget = budget
        self.estimate = estimate

    def to_dict(self) -> dict:
        return {**super().to_dict(), "budget": self.budget, "estimate": self.estimate}


class GenerationError(PipelineError):
    """An LLM call failed (transport error, API error, empty response)."""

    kind = "generation_failure"


class LLMTimeoutError(GenerationError):
    """An LLM call exceeded its size-scaled timeout."""

    def __init__(self, message: str = "LLM request timed out", *, timeout_s: float = 0.0):
        super().__init__(message, rule="request timeout")
        self.timeout_s = timeout_s


class GenerationTruncatedError(PipelineError):
    """The model stopped at max_tokens; partial output is never parsed."""

    kind = "generation_truncated"

    def __init__(self, message: str = "Generation truncated at the output token limit", *, max_tokens: int = 0):
        super().__init__(message, rule="max_tokens stop signal")
        self.max_tokens = max_tokens


class ParseFailureError(PipelineError):
    """The response held no usable files, or the lane primary is missing."""

    kind = "parse_failure"


class ValidationFailureError(PipelineError):
    """Validation still failing after the fix loop gave up."""

    kind = "validation_failure"

    def __init__(self, message: str = "Validation failed", *, errors: list | None = None):
        errors = errors or []
        first = errors[0] if errors else None
        super().__init__(
            message,
            file=getattr(first, "file", None) or None,
            rule=getattr(first, "message", None),
        )
        self.errors = errors

    def to_dict(self) -> dict:
        return {**super().to_dict(), "errors": [str(e) for e in self.errors]}


class BuildBackendError(PipelineError):
    """The compile/package backend exited non-zero or produced no artifact."""

    kind = "build_backend_failure"

    def __init__(self, message: str = "Build backend failed", *, diagnostic: str = ""):
        super().__init__(message, rule="build backend")
        self.diagnostic = diagnostic


def format_failure(exc: PipelineError) -> str:
    """One user-facing line: the file and rule involved, never a traceback."""
    parts = [exc.message]
    if exc.file:
        parts.insert(0, f"[{exc.file}]")
    if exc.rule and exc.rule not in exc.message:
        parts.append(f"(rule: {exc.rule})")
    return " ".join(parts)
