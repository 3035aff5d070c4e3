"""Build pipeline -- prompt in, packaged artifact (or a precise failure) out.

Stage order::

    route → budget floor → constraints → refine → budget prune (once)
          → plan / contracts (large specs) → generate → repair → validate
          → fix loop → review (+ one fix) → brand → write → backend → smoke

Every stage is timed into the ``BuildRecord``; every non-fatal condition
is appended to it as an event; the record is persisted exactly once, in
a ``finally`` block, whether the build succeeded, failed or crashed.
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator

from lanekit.contracts import FileMap
from lanekit.errors import LaneKitError, SandboxViolation
from lanekit.lanes import Lane
from lanekit.redactor import redact
from lanekit.repair import AutoRepairer
from lanekit.validator import Validator

from app.config import get_model_for_role, settings
from app.errors import BuildBackendError, PipelineError, ValidationFailureError, format_failure
from app.services.pipeline import prompts
from app.services.pipeline.backends import (
    BuildBackend,
    apply_branding,
    backend_for,
    size_label,
    slugify,
    smoke_test,
    write_file_map,
)
from app.services.pipeline.budget import BudgetPlanner, output_budget
from app.services.pipeline.codegen import CodeGenerator, RawResponseLog
from app.services.pipeline.constraint_memory import ConstraintMemory, format_for_prompt
from app.services.pipeline.fix_loop import FixLoopController
from app.services.pipeline.models import (
    BuildRecord,
    BuildSpec,
    GenerationContext,
    PipelineFailure,
    PipelineSuccess,
)
from app.services.pipeline.planner import ContractGenerator, Planner
from app.services.pipeline.refiner import SpecRefiner
from app.services.pipeline.review import ReviewAgent, defects_as_errors
from app.services.pipeline.router import explain_route

logger = logging.getLogger(__name__)


@dataclass
class PipelineDeps:
    """Collaborators injected into ``BuildPipeline``.

    ``records`` needs an async ``record(BuildRecord)``; ``memory`` is a
    ``ConstraintMemory``; ``llm`` anything with the ``LLMClient.complete``
    signature.
    """

    llm: object
    memory: ConstraintMemory
    records: object
    output_dir: Path
    raw_log: RawResponseLog | None = None
    validator: Validator | None = None
    repairer: AutoRepairer | None = None
    backend_factory: Callable[[Lane, Path], BuildBackend] | None = None


class BuildPipeline:
    def __init__(self, deps: PipelineDeps) -> None:
        self.deps = deps
        self.raw_log = deps.raw_log or RawResponseLog(settings.RAW_LOG_DIR)
        self.validator = deps.validator or Validator(
            pwsh_path=settings.PWSH_PATH or None, pwsh_timeout=settings.PWSH_TIMEOUT_S,
        )
        self.repairer = deps.repairer or AutoRepairer(max_passes=settings.AUTOREPAIR_MAX_PASSES)
        self.budget = BudgetPlanner.from_settings()

    def _backend(self, lane: Lane, dist_dir: Path) -> BuildBackend:
        if self.deps.backend_factory is not None:
            return self.deps.backend_factory(lane, dist_dir)
        return backend_for(
            lane, dist_dir, cargo_path=settings.CARGO_PATH, timeout_s=settings.BACKEND_TIMEOUT_S,
        )

    async def run(
        self,
        prompt: str,
        lane_override: str | None = None,
        model: str | None = None,
    ) -> PipelineSuccess | PipelineFailure:
        build_id = uuid.uuid4().hex[:12]
        record = BuildRecord(build_id=build_id, prompt=redact(prompt))
        started = time.monotonic()
        lane: Lane | None = None
        partial: list[str] = []

        @contextmanager
        def stage(name: str) -> Iterator[None]:
            t0 = time.monotonic()
            try:
                yield
            finally:
                record.timings[name] = round(time.monotonic() - t0, 3)

        try:
            # -- route ----------------------------------------------------
            with stage("route"):
                decision = explain_route(prompt, lane_override)
            lane = decision.lane
            record.lane = lane.value
            if decision.override_rejected:
                record.add_event("routing_ambiguity", f"unknown lane override '{decision.override_rejected}' ignored", "route")
            if decision.ambiguous:
                record.add_event("routing_ambiguity", decision.reason, "route")

            # -- budget floor (before any LLM call) ------------------------
            codegen_model = model or get_model_for_role("codegen")
            budget = output_budget(codegen_model)
            self.budget.check_floor(budget)

            # -- learned constraints --------------------------------------
            with stage("constraints"):
                constraints_text = await self._constraints_text(lane, record)

            # -- refine + prune --------------------------------------------
            refiner = SpecRefiner(self.deps.llm, model=get_model_for_role("fast"))
            with stage("refine"):
                spec = await refiner.refine(prompt, lane, self.budget.feature_cap(lane))
                if refiner.used_fallback:
                    record.add_event("generation_failure", "spec refinement failed; using a minimal spec", "refine")
                spec = await self._fit_budget(refiner, prompt, lane, spec, budget, record)
            record.name = spec.app_name

            # -- plan / contracts -------------------------------------------
            planner_model = get_model_for_role("planner")
            planner = Planner(self.deps.llm, model=planner_model, word_threshold=settings.PLANNING_WORD_THRESHOLD)
            with stage("plan"):
                plan = await planner.plan(spec)
                contracts = await ContractGenerator(self.deps.llm, model=planner_model).generate(spec, plan)

            ctx = GenerationContext(
                build_id=build_id,
                lane=lane,
                spec=spec,
                plan=plan,
                contracts=contracts,
                constraints_text=constraints_text,
                max_tokens=budget,
            )
            codegen = CodeGenerator(self.deps.llm, self.raw_log, model=codegen_model, max_tokens=budget)

            # -- generate ---------------------------------------------------
            with stage("generate"):
                file_map = await codegen.generate(
                    lane=lane,
                    system_prompt=prompts.lane_system_prompt(lane, constraints_text),
                    user_prompt=prompts.generation_prompt(ctx),
                    build_id=build_id,
                )

            # -- repair / validate / fix --------------------------------------
            fixer = FixLoopController(
                codegen, self.deps.memory, self.repairer, self.validator,
                max_retries=settings.FIX_MAX_RETRIES,
            )
            with stage("validate"):
                repairs = self.repairer.repair(file_map)
                if repairs:
                    logger.info("Auto-repaired %d issue(s) before validation", repairs)
                errors = self.validator.validate(file_map)
            if errors:
                partial = [str(e) for e in errors]
                with stage("fix_loop"):
                    result = await fixer.run(file_map, errors, ctx)
                if not result.success:
                    partial = [str(e) for e in result.errors]
                    raise ValidationFailureError(
                        f"Validation still failing after {result.attempts} repair attempt(s): "
                        f"{len(result.errors)} error(s)",
                        errors=result.errors,
                    )
                partial = []

            # -- review -----------------------------------------------------
            unresolved: list[str] = []
            scope_gaps: list[str] = []
            with stage("review"):
                review = await ReviewAgent(self.deps.llm, model=get_model_for_role("review")).review(file_map, spec)
                scope_gaps = list(review.scope_gaps)
                for gap in scope_gaps:
                    record.add_event("review_scope_gap", gap, "review")
                if review.degraded:
                    record.add_event("review_defect", "review unavailable; continuing without findings", "review")
                if review.defects:
                    unresolved = await self._fix_review_defects(fixer, file_map, review.defects, ctx, record)

            warnings = self.validator.validate_report(file_map).warnings

            # -- brand / write / package ----------------------------------------
            build_root = Path(self.deps.output_dir) / f"{slugify(spec.app_name)}-{build_id}"
            source_dir = build_root / "src"
            with stage("package"):
                self._brand(file_map, record)
                write_file_map(file_map, source_dir)
                record.source_dir = str(source_dir)
                artifact_path, label = await self._package(lane, source_dir, build_root / "dist", spec, record)

            record.status = "success"
            record.artifact_path = artifact_path
            return PipelineSuccess(
                build_id=build_id,
                app_name=spec.app_name,
                lane=lane,
                artifact_path=artifact_path,
                source_dir=str(source_dir),
                build_time_seconds=round(time.monotonic() - started, 3),
                size_label=label,
                deferred_features=list(spec.deferred),
                scope_gaps=scope_gaps,
                unresolved_defects=unresolved,
                warnings=warnings,
            )

        except PipelineError as exc:
            return self._fail(record, build_id, lane, exc.kind, format_failure(exc), partial)
        except SandboxViolation as exc:
            return self._fail(record, build_id, lane, "validation_failure", f"[{exc.path}] {exc.reason}", partial)
        except LaneKitError as exc:
            logger.exception("Build %s failed inside lanekit", build_id)
            return self._fail(record, build_id, lane, "internal_error", exc.message, partial)
        except Exception as exc:
            logger.exception("Build %s crashed", build_id)
            return self._fail(record, build_id, lane, "internal_error", f"{type(exc).__name__}: {exc}", partial)
        finally:
            record.timings["total"] = round(time.monotonic() - started, 3)
            if record.status == "running":
                record.status = "failure"
            await self._persist(record)

    # -- stages ----------------------------------------------------------------

    async def _constraints_text(self, lane: Lane, record: BuildRecord) -> str:
        try:
            constraints = await self.deps.memory.get(lane, settings.CONSTRAINT_PROMPT_LIMIT)
        except Exception as exc:
            logger.warning("Constraint memory unavailable (non-fatal): %s", exc)
            record.add_event("internal_error", f"constraint memory unavailable: {exc}", "constraints")
            return ""
        return format_for_prompt(constraints)

    async def _fit_budget(
        self,
        refiner: SpecRefiner,
        prompt: str,
        lane: Lane,
        spec: BuildSpec,
        budget: int,
        record: BuildRecord,
    ) -> BuildSpec:
        plan = self.budget.plan(lane, len(spec.features), budget)
        if plan.prune_to is None:
            return spec
        if plan.needs_pruning:
            record.add_event(
                "budget_exceeded",
                f"estimate {plan.estimate} exceeds budget share; pruning to {plan.prune_to} features",
                "refine",
            )
            spec = await refiner.refine(prompt, lane, plan.prune_to, previous=spec)
        self.budget.check_after_prune(lane, len(spec.features), budget)
        return spec

    async def _fix_review_defects(
        self,
        fixer: FixLoopController,
        file_map: FileMap,
        defects: list[str],
        ctx: GenerationContext,
        record: BuildRecord,
    ) -> list[str]:
        """One repair pass for review defects; returns those left unresolved."""
        for defect in defects:
            record.add_event("review_defect", defect, "review")
        errors = defects_as_errors(defects, file_map)
        result = await fixer.run(
            file_map, errors, ctx, max_retries=settings.REVIEW_FIX_RETRIES, learn=False,
        )
        if result.success:
            return []
        logger.warning("Review fix failed; keeping the validated pre-review files")
        return list(defects)

    def _brand(self, file_map: FileMap, record: BuildRecord) -> None:
        if not settings.BRANDING_ENABLED:
            return
        try:
            apply_branding(file_map, settings.BRANDING_TEXT)
        except Exception as exc:
            logger.warning("Branding failed (non-fatal): %s", exc)
            record.add_event("internal_error", f"branding skipped: {exc}", "package")

    async def _package(
        self,
        lane: Lane,
        source_dir: Path,
        dist_dir: Path,
        spec: BuildSpec,
        record: BuildRecord,
    ) -> tuple[str, str]:
        if settings.SKIP_BUILD_BACKEND:
            return str(source_dir), ""
        result = await self._backend(lane, dist_dir).build(source_dir, spec.app_name)
        if not result.success or not result.artifact_path:
            lines = result.diagnostic_text.splitlines()
            summary = lines[0] if lines else "no artifact produced"
            raise BuildBackendError(
                f"{lane.value} build backend failed: {summary}",
                diagnostic=result.diagnostic_text,
            )
        problem = smoke_test(result.artifact_path)
        if problem:
            logger.warning("Smoke test failed (non-fatal): %s", problem)
            record.add_event("smoke_test_failure", problem, "package")
        return result.artifact_path, result.size_label or size_label(result.size_bytes)

    # -- outcome ----------------------------------------------------------------

    def _fail(
        self,
        record: BuildRecord,
        build_id: str,
        lane: Lane | None,
        kind: str,
        diagnostic: str,
        partial: list[str],
    ) -> PipelineFailure:
        diagnostic = redact(diagnostic)
        record.status = "failure"
        record.error = diagnostic
        record.add_event(kind, diagnostic)
        logger.error("Build %s failed (%s): %s", build_id, kind, diagnostic)
        return PipelineFailure(
            build_id=build_id,
            kind=kind,
            diagnostic_text=diagnostic,
            lane=lane,
            partial_errors=partial,
        )

    async def _persist(self, record: BuildRecord) -> None:
        try:
            await self.deps.records.record(record)
        except Exception as exc:
            logger.error("Could not persist build record %s: %s", record.build_id, exc)


__all__ = ["BuildPipeline", "PipelineDeps"]
