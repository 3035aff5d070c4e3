"""Fix loop -- bounded regenerate / repair / validate cycle.

Each iteration picks a strategy from the current errors:

* ``Surgical`` when every error names a file and the broken files are a
  strict subset of the map.  Only those files are regenerated; the rest
  are kept verbatim and described to the model by their exported symbols.
* ``Full`` otherwise.  From the second iteration on the embedded spec is
  cut down to its core sections to leave room for the error list.

Regenerated output is merged into a candidate copy, auto-repaired and
validated, and only then replaces the working map.  A generation failure
(including truncation) ends the iteration without validation; it does not
count as a validation attempt but is bounded by its own counter.

When validation attempts run out, the remaining validator errors are
turned into constraints and saved to memory so later builds avoid them.
"""

from __future__ import annotations

import logging
import re

from lanekit.contracts import FileMap, ValidationError, split_file_prefix
from lanekit.lanes import Lane, get_profile
from lanekit.outline import symbol_contract

from app.errors import GenerationError, GenerationTruncatedError, ParseFailureError
from app.services.pipeline import prompts
from app.services.pipeline.models import FixLoopResult, Full, GenerationContext, Surgical

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Error → constraint classification
# ---------------------------------------------------------------------------

_PS_LANES = frozenset({Lane.POWERSHELL, Lane.POWERSHELL_MODULE})
_PY_LANES = frozenset({Lane.PYTHON_SCRIPT, Lane.PYTHON_APP})

_LANGUAGE_NAME: dict[Lane, str] = {
    Lane.WEB: "HTML and JavaScript",
    Lane.PYTHON_SCRIPT: "Python",
    Lane.PYTHON_APP: "Python",
    Lane.POWERSHELL: "PowerShell",
    Lane.POWERSHELL_MODULE: "PowerShell",
    Lane.RUST: "Rust",
}

# (lanes or None for every lane, message pattern, constraint template).
# Templates may use {lang}, {primary} and the pattern's named groups.
_CLASSIFIERS: tuple[tuple[frozenset[Lane] | None, re.Pattern, str], ...] = (
    (_PS_LANES, re.compile(r"null-coalescing assignment|null-coalescing operator"),
     "Target Windows PowerShell 5.1: never use ?? or ??=; write explicit if ($null -eq $x) checks"),
    (_PS_LANES, re.compile(r"null-conditional"),
     "Target Windows PowerShell 5.1: never use ?. or ?[ member access; test for $null first"),
    (_PS_LANES, re.compile(r"ternary"),
     "Target Windows PowerShell 5.1: use if/else instead of the ? : ternary operator"),
    (_PS_LANES, re.compile(r"pipeline chain"),
     "Target Windows PowerShell 5.1: do not chain commands with && or ||; use separate statements and $?"),
    (_PS_LANES, re.compile(r"ForEach-Object -Parallel"),
     "Target Windows PowerShell 5.1: never use ForEach-Object -Parallel"),
    (_PS_LANES, re.compile(r"'clean' block"),
     "Target Windows PowerShell 5.1: functions may not declare a clean {{}} block"),
    (_PS_LANES, re.compile(r"Variable reference '\$\w+:' is not valid"),
     "In double-quoted strings write ${{name}}: when a variable is directly followed by a colon"),
    (_PS_LANES, re.compile(r"not an approved PowerShell verb"),
     "Exported functions must use approved PowerShell verbs (see Get-Verb)"),
    (_PS_LANES, re.compile(r"Verb-Noun form"),
     "Exported function names must follow the Verb-Noun form"),
    (_PS_LANES, re.compile(r"required manifest field"),
     "Module.psd1 must define RootModule, ModuleVersion, GUID, Author, Description and FunctionsToExport"),
    (_PS_LANES, re.compile(r"FunctionsToExport must list"),
     "List every exported function explicitly in FunctionsToExport; never use '*'"),
    (_PS_LANES, re.compile(r"is not defined in the module"),
     "Define every function named in FunctionsToExport inside the module's .psm1/.ps1 files"),
    (_PS_LANES, re.compile(r"RootModule .* does not match"),
     "RootModule in Module.psd1 must name the generated Module.psm1"),
    (_PS_LANES, re.compile(r"desktop automation|native interop"),
     "PowerShell modules must not use DllImport, user32, SendKeys or UI Automation"),
    (_PS_LANES, re.compile(r"remote (?:management|query|execution|session)"),
     "PowerShell modules must not use WMI, CIM -ComputerName, Invoke-Command -ComputerName or PSSessions"),
    (_PS_LANES, re.compile(r"network listener|raw socket"),
     "PowerShell modules must not open HTTP/TCP listeners or raw sockets"),
    (_PS_LANES, re.compile(r"Invoke-Expression|\[ScriptBlock\]::Create"),
     "Never use Invoke-Expression or [ScriptBlock]::Create; call commands directly"),
    (frozenset({Lane.RUST}), re.compile(r"unresolved import '(?P<crate>\w+)'"),
     "Every crate used with `use` must be listed in Cargo.toml [dependencies] (e.g. {crate})"),
    (frozenset({Lane.RUST}), re.compile(r"Cargo manifest is missing"),
     "Always include Cargo.toml with a [package] section"),
    (frozenset({Lane.WEB}), re.compile(r"external (?:script|stylesheet)"),
     "Inline all JavaScript and CSS; never load scripts or stylesheets from remote URLs"),
    (frozenset({Lane.WEB}), re.compile(r"missing required <\w+> element"),
     "index.html must contain <html>, <head> and <body> elements"),
    (None, re.compile(r"unsanitized assignment into"),
     "Never assign variables or interpolated data to innerHTML/outerHTML; use textContent or createElement"),
    (frozenset({Lane.WEB}), re.compile(r"dynamic evaluation via (?:eval|new Function)|setTimeout/setInterval|document\.write"),
     "Never use eval(), new Function(), string timers or document.write()"),
    (_PY_LANES, re.compile(r"dynamic (?:evaluation|execution) via (?:eval|exec)"),
     "Never call eval() or exec(); parse input explicitly"),
    (None, re.compile(r"hard-coded secret"),
     "Never hard-code credentials or API keys; read them from environment variables"),
    (_PY_LANES, re.compile(r"shell=True"),
     "Never call subprocess with shell=True; pass an argument list"),
    (_PY_LANES, re.compile(r"pickle|marshal"),
     "Never deserialize with pickle or marshal; use json"),
    (_PY_LANES, re.compile(r"yaml\.load"),
     "Use yaml.safe_load, never yaml.load"),
    (None, re.compile(r"primary entry point is missing"),
     "Always include the primary file {primary}"),
    (None, re.compile(r"^syntax error"),
     "Produce syntactically valid {lang}; close every bracket, block and string"),
)

FALLBACK_PREFIX = "avoid: "


def classify_error(lane: Lane, error: ValidationError) -> tuple[str, str]:
    """Map *error* to ``(constraint text, source pattern)`` for *lane*."""
    message = error.message
    for lanes, pattern, template in _CLASSIFIERS:
        if lanes is not None and lane not in lanes:
            continue
        m = pattern.search(message)
        if m:
            text = template.format(
                lang=_LANGUAGE_NAME[lane],
                primary=get_profile(lane).primary_file,
                **m.groupdict(),
            )
            return text, pattern.pattern
    return f"{FALLBACK_PREFIX}{message[:120]}", "fallback"


def _accumulate(seen: list[ValidationError], new: list[ValidationError]) -> list[ValidationError]:
    """*seen* extended with the errors of *new* not already in it, in order."""
    keys = {str(e) for e in seen}
    merged = list(seen)
    for err in new:
        if str(err) not in keys:
            keys.add(str(err))
            merged.append(err)
    return merged


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------


class FixLoopController:
    """Drives regeneration until validation passes or attempts run out."""

    def __init__(self, codegen, memory, repairer, validator, *, max_retries: int = 3) -> None:
        self.codegen = codegen
        self.memory = memory
        self.repairer = repairer
        self.validator = validator
        self.max_retries = max_retries

    def choose_strategy(self, errors: list[ValidationError], file_map: FileMap) -> Surgical | Full:
        referenced: list[str] = []
        for err in errors:
            file, _ = split_file_prefix(str(err))
            if not file or file not in file_map:
                return Full()
            if file not in referenced:
                referenced.append(file)
        if referenced and len(referenced) < len(file_map):
            return Surgical(files=referenced)
        return Full()

    async def _regenerate(
        self,
        strategy: Surgical | Full,
        working: FileMap,
        errors: list[ValidationError],
        history: list[ValidationError],
        ctx: GenerationContext,
        iteration: int,
    ) -> FileMap:
        """Ask for a surgical or full regeneration.

        Surgical prompts carry only the current *errors*; full prompts carry
        the *history* of every distinct error seen so far in this run.
        """
        system = prompts.lane_system_prompt(ctx.lane, ctx.constraints_text)
        if isinstance(strategy, Surgical):
            contract = symbol_contract(working, exclude=set(strategy.files))
            user = prompts.surgical_prompt(working, strategy.files, contract, errors)
            return await self.codegen.generate(
                lane=ctx.lane,
                system_prompt=system,
                user_prompt=user,
                build_id=ctx.build_id,
                stage=f"fix{iteration}_surgical",
                require_primary=False,
            )
        user = prompts.full_repair_prompt(ctx, history, iteration)
        return await self.codegen.generate(
            lane=ctx.lane,
            system_prompt=system,
            user_prompt=user,
            build_id=ctx.build_id,
            stage=f"fix{iteration}_full",
        )

    async def run(
        self,
        file_map: FileMap,
        errors: list[ValidationError],
        ctx: GenerationContext,
        *,
        max_retries: int | None = None,
        learn: bool = True,
    ) -> FixLoopResult:
        """Repair *file_map* until it validates.

        *file_map* is updated in place only on success; on failure it is
        left as passed in and the last working state is in the result.
        """
        limit = self.max_retries if max_retries is None else max_retries
        working = file_map.copy()
        current = list(errors)
        history = _accumulate([], current)
        result = FixLoopResult(success=not current, file_map=working, errors=current)
        iteration = 0

        while current and result.attempts < limit and result.generation_failures < limit:
            iteration += 1
            strategy = self.choose_strategy(current, working)
            result.strategies.append(strategy)
            logger.info(
                "Fix iteration %d (%s) for %d error(s)",
                iteration, strategy.kind, len(current),
            )
            try:
                regenerated = await self._regenerate(strategy, working, current, history, ctx, iteration)
            except (GenerationError, GenerationTruncatedError, ParseFailureError) as exc:
                result.generation_failures += 1
                logger.warning("Fix iteration %d generation failed: %s", iteration, exc)
                continue

            result.attempts += 1
            candidate = working.copy()
            if isinstance(strategy, Surgical):
                dropped = [
                    p for p, src in regenerated.files.items()
                    if p in working and p not in strategy.files and working.files[p] != src
                ]
                if dropped:
                    logger.warning(
                        "Fix iteration %d ignored unrequested rewrite(s) of %s",
                        iteration, ", ".join(dropped),
                    )
                candidate.merge(regenerated, only=set(strategy.files))
            else:
                candidate.replace_with(regenerated)
            self.repairer.repair(candidate)
            current = self.validator.validate(candidate)
            history = _accumulate(history, current)
            working.replace_with(candidate)
            result.errors = current
            if not current:
                result.success = True

        if result.success:
            file_map.replace_with(working)
        elif learn:
            await self._learn(ctx.lane, current)
        return result

    async def _learn(self, lane: Lane, errors: list[ValidationError]) -> list[str]:
        """Save one constraint per distinct classification of *errors*."""
        saved: list[str] = []
        for err in errors:
            if err.source == "review":
                continue
            text, pattern = classify_error(lane, err)
            if text in saved:
                continue
            saved.append(text)
            try:
                await self.memory.save(lane, text, pattern)
            except Exception as exc:
                logger.warning("Could not save constraint %r (non-fatal): %s", text, exc)
        return saved


__all__ = ["FALLBACK_PREFIX", "FixLoopController", "classify_error"]
