"""Prompt builders for the LLM-backed pipeline stages.

Wording is free to change; the structural parts are not: the refiner's
``SECTION:`` headers, the reviewer's ``DEFECTS:`` / ``SCOPE_GAPS:``
sections and the file-declaration convention for generated code blocks
are what the parsers downstream depend on.
"""

from __future__ import annotations

from lanekit.contracts import FileMap, ValidationError
from lanekit.lanes import Lane, get_profile

from app.services.pipeline.models import CORE_SECTIONS, BuildSpec, GenerationContext

# ---------------------------------------------------------------------------
# Lane guidance
# ---------------------------------------------------------------------------

_LANE_RULES: dict[Lane, str] = {
    Lane.WEB: (
        "Produce a single self-contained index.html with <html>, <head> and <body>. "
        "Inline all CSS and JavaScript; never reference remote scripts, stylesheets or fonts. "
        "Never assign untrusted data to innerHTML; build DOM nodes or use textContent."
    ),
    Lane.PYTHON_SCRIPT: (
        "Produce one Python 3 script, main.py, using only the standard library. "
        "Guard the entry point with if __name__ == \"__main__\"."
    ),
    Lane.PYTHON_APP: (
        "Produce a Python 3 application whose entry point is main.py. Split it into "
        "modules, and list every third-party distribution in requirements.txt."
    ),
    Lane.POWERSHELL: (
        "Produce Main.ps1 for Windows PowerShell 5.1. Do not use ??, ??=, ?., ?[, the "
        "ternary operator, && / || pipeline chains or ForEach-Object -Parallel. "
        "Write ${name}: when a variable is followed by a colon inside a double-quoted string."
    ),
    Lane.POWERSHELL_MODULE: (
        "Produce a Windows PowerShell 5.1 module: Module.psm1 plus the manifest Module.psd1 "
        "with RootModule, ModuleVersion, GUID, Author, Description and an explicit "
        "FunctionsToExport list. Exported functions use approved Verb-Noun names. "
        "No remote management, network listeners or desktop automation."
    ),
    Lane.RUST: (
        "Produce a Rust binary crate: Cargo.toml and src/main.rs (plus modules under src/). "
        "Every external crate used must be listed under [dependencies]."
    ),
}

_FILE_CONVENTION = (
    "Return every file in its own fenced code block whose info string is the language "
    "followed by the relative path, for example ```python main.py. Do not omit files."
)


def lane_system_prompt(lane: Lane, constraints_text: str = "") -> str:
    """System prompt shared by generation and regeneration calls."""
    profile = get_profile(lane)
    parts = [
        f"You are an expert engineer generating a complete {profile.description.lower()}.",
        f"The primary entry point is {profile.primary_file}.",
        _LANE_RULES[lane],
        _FILE_CONVENTION,
    ]
    if constraints_text:
        parts.append(constraints_text)
    return "\n\n".join(parts)


def _error_list(errors: list[ValidationError]) -> str:
    return "\n".join(f"- {e}" for e in errors)


# ---------------------------------------------------------------------------
# Refinement / planning
# ---------------------------------------------------------------------------


def refine_prompt(prompt: str, lane: Lane, feature_cap: int, previous: BuildSpec | None = None) -> tuple[str, str]:
    """(system, user) for the spec refiner."""
    system = (
        "You turn an app request into a structured build spec. Answer with these "
        "sections, each introduced by a line 'SECTION: NAME': APP_NAME, PURPOSE, "
        "FEATURES, DEFERRED, DATA_MODEL, UI_LAYOUT, STYLING, EDGE_CASES. FEATURES and "
        "DEFERRED are bullet lists, most important first. "
        f"List at most {feature_cap} FEATURES; move anything else to DEFERRED."
    )
    user = f"Target: {get_profile(lane).description}.\n\nRequest:\n{prompt}"
    if previous is not None:
        user += (
            f"\n\nA previous decomposition was too large to build in one pass. Keep the "
            f"{feature_cap} most important features and defer the rest.\n\n{previous.to_text()}"
        )
    return system, user


def plan_prompt(spec: BuildSpec) -> tuple[str, str]:
    system = (
        "You are a software architect. Write a concise implementation plan covering "
        "components, key functions, data model, file structure, state management and "
        "error handling. No code."
    )
    return system, spec.to_text()


def contract_prompt(spec: BuildSpec, plan: str) -> tuple[str, str]:
    system = (
        "From the implementation plan, write the interface contract of every file: "
        "its path, the functions/classes it exports with signatures, and what it "
        "imports from the other files. No implementation."
    )
    return system, f"{spec.to_text(CORE_SECTIONS)}\n\nPLAN:\n{plan}"


# ---------------------------------------------------------------------------
# Generation / regeneration
# ---------------------------------------------------------------------------


def generation_prompt(ctx: GenerationContext, *, sections: tuple[str, ...] | None = None) -> str:
    """User prompt for a full generation from the refined spec."""
    parts = [f"Build this app.\n\n{ctx.spec.to_text(sections)}"]
    if ctx.plan:
        parts.append(f"IMPLEMENTATION PLAN:\n{ctx.plan}")
    if ctx.contracts:
        parts.append(f"INTERFACE CONTRACTS (hard constraints, follow exactly):\n{ctx.contracts}")
    return "\n\n".join(parts)


def full_repair_prompt(ctx: GenerationContext, errors: list[ValidationError], iteration: int) -> str:
    """User prompt for regenerating everything.

    *errors* is every distinct error seen so far in the run; the spec shrinks
    to its core sections after iteration 1.
    """
    sections = CORE_SECTIONS if iteration >= 2 else None
    base = generation_prompt(ctx, sections=sections)
    return (
        f"{base}\n\nA previous attempt failed validation with these errors. "
        f"Regenerate every file and fix all of them:\n{_error_list(errors)}"
    )


def surgical_prompt(
    file_map: FileMap,
    broken: list[str],
    contract: dict[str, list[str]],
    errors: list[ValidationError],
) -> str:
    """User prompt for regenerating only *broken* files."""
    parts = [
        "Fix the files below. Return only these files, complete, each in its own "
        "fenced block with the path in the info string."
    ]
    for path in broken:
        parts.append(f"FILE {path}:\n```\n{file_map.files[path]}\n```")
    if contract:
        lines = [
            f"- {path}: {', '.join(names) if names else '(no exported symbols)'}"
            for path, names in contract.items()
        ]
        parts.append(
            "These files are correct and will be kept as they are; keep using their "
            "exported symbols unchanged:\n" + "\n".join(lines)
        )
    parts.append(f"ERRORS:\n{_error_list(errors)}")
    return "\n\n".join(parts)


# ---------------------------------------------------------------------------
# Review
# ---------------------------------------------------------------------------


def review_prompt(file_map: FileMap, spec: BuildSpec) -> tuple[str, str]:
    system = (
        "You review generated code against its spec. Answer with two sections, "
        "'DEFECTS:' and 'SCOPE_GAPS:', each a bullet list or 'none'. A defect is a bug "
        "that breaks a listed feature; prefix it with the file as [path]. A scope gap "
        "is a listed feature that is missing entirely."
    )
    files = "\n\n".join(f"FILE {path}:\n```\n{source}\n```" for path, source in file_map.files.items())
    return system, f"SPEC:\n{spec.to_text(CORE_SECTIONS)}\n\n{files}"


__all__ = [
    "contract_prompt",
    "full_repair_prompt",
    "generation_prompt",
    "lane_system_prompt",
    "plan_prompt",
    "refine_prompt",
    "review_prompt",
    "surgical_prompt",
]
