"""Framework router -- pick exactly one lane for a free-text prompt.

Deterministic keyword cascade, no LLM involved.  Specificity order:

    powershell_module > powershell > rust > web > python > default (web)

A valid explicit override always wins.  When more than one lane's
keywords match, the highest-priority lane is chosen and the decision is
flagged ambiguous so the orchestrator can record a ``routing_ambiguity``
event.
"""

from __future__ import annotations

import logging
import re

from lanekit.lanes import Lane, parse_lane

from app.services.pipeline.models import RouteDecision

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_LANE = Lane.WEB

# A python prompt with at least this many conjunctions, or more than this
# many words, is treated as a multi-module application.
COMPLEXITY_CONJUNCTIONS = 3
COMPLEXITY_WORDS = 40


def _rx(*patterns: str) -> tuple[re.Pattern, ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


# Checked in this order; the first lane that matches wins.
_CASCADE: tuple[tuple[Lane, tuple[re.Pattern, ...]], ...] = (
    (Lane.POWERSHELL_MODULE, _rx(
        r"\b(?:powershell|pwsh|ps)\s+module\b",
        r"\bpsm1\b",
        r"\bpsd1\b",
        r"\bmodule\s+manifest\b",
        r"\bcmdlets?\b",
    )),
    (Lane.POWERSHELL, _rx(
        r"\bpowershell\b",
        r"\bpwsh\b",
        r"\bps1\b",
    )),
    (Lane.RUST, _rx(
        r"\brust\b",
        r"\bcargo\b",
        r"\bcrates?\b",
        r"\bnative\s+(?:binary|executable)\b",
    )),
    (Lane.WEB, _rx(
        r"\bweb\s*(?:page|site|app|application)\b",
        r"\bwebsite\b",
        r"\bhtml\b",
        r"\bbrowser\b",
        r"\bsingle[- ]page\b",
        r"\blanding\s+page\b",
    )),
)

_PYTHON_PATTERNS = _rx(
    r"\bpython\b",
    r"\bpy\s+script\b",
    r"\.py\b",
    r"\bpip\b",
)

_CONJUNCTION_RE = re.compile(r"\b(?:and|with|plus|also|as well as)\b|,", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _matches(patterns: tuple[re.Pattern, ...], text: str) -> bool:
    return any(p.search(text) for p in patterns)


def python_lane_for(prompt: str) -> Lane:
    """Split python prompts between the script and application lanes."""
    conjunctions = len(_CONJUNCTION_RE.findall(prompt))
    words = len(prompt.split())
    if conjunctions >= COMPLEXITY_CONJUNCTIONS or words > COMPLEXITY_WORDS:
        return Lane.PYTHON_APP
    return Lane.PYTHON_SCRIPT


def matched_lanes(prompt: str) -> list[Lane]:
    """Every lane whose keywords appear in *prompt*, in cascade order.

    ``powershell`` is not reported separately when ``powershell_module``
    matched, since a module prompt always names PowerShell too.
    """
    found: list[Lane] = []
    for lane, patterns in _CASCADE:
        if _matches(patterns, prompt):
            found.append(lane)
    if Lane.POWERSHELL_MODULE in found and Lane.POWERSHELL in found:
        found.remove(Lane.POWERSHELL)
    if _matches(_PYTHON_PATTERNS, prompt):
        found.append(python_lane_for(prompt))
    return found


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def explain_route(prompt: str, override: str | None = None) -> RouteDecision:
    """Route *prompt* and report why.

    An override that names no lane is ignored with a warning; routing then
    proceeds as if no override had been given.
    """
    rejected: str | None = None
    if override:
        lane = parse_lane(override)
        if lane is not None:
            return RouteDecision(lane=lane, reason=f"explicit override '{override}'", override_used=True)
        logger.warning("Ignoring unknown lane override %r", override)
        rejected = override

    found = matched_lanes(prompt or "")
    if not found:
        return RouteDecision(
            lane=DEFAULT_LANE,
            reason="no lane keywords matched; default lane",
            override_rejected=rejected,
        )

    lane = found[0]
    reason = f"matched {lane.value} keywords"
    if len(found) > 1:
        others = ", ".join(l.value for l in found[1:])
        reason += f" (also matched: {others})"
        logger.info("Ambiguous routing: chose %s over %s", lane.value, others)
    return RouteDecision(lane=lane, reason=reason, matched=found, override_rejected=rejected)


def route(prompt: str, override: str | None = None) -> Lane:
    """Return exactly one lane for *prompt*.  Deterministic."""
    return explain_route(prompt, override).lane


__all__ = [
    "COMPLEXITY_CONJUNCTIONS",
    "COMPLEXITY_WORDS",
    "DEFAULT_LANE",
    "explain_route",
    "matched_lanes",
    "python_lane_for",
    "route",
]
