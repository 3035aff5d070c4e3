"""JavaScript language intelligence — tree-sitter syntax, symbols, injection sinks.

All functions are **pure** (string in → model out).

Parsers
-------
- ``syntax_errors``       — tree-sitter-javascript ERROR / MISSING nodes

Extractors
----------
- ``extract_symbols``     — regex-based function/class/const outline
- ``strip_comments``      — comment nodes blanked, offsets preserved

Checks
------
- ``find_injection_risks`` — dynamic evaluation and unsafe live-markup sinks
"""

from __future__ import annotations

import re

from lanekit.lang import Symbol, SyntaxIssue
from lanekit.lang import _treesitter

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_COMMENT_NODES = frozenset({"comment", "html_comment"})

_JS_SYMBOL_RE = re.compile(
    r"^(?:export\s+)?(?:default\s+)?(?:async\s+)?"
    r"(function\*?|class|const|let|var)"
    r"\s+([A-Za-z_$][A-Za-z0-9_$]*)",
    re.MULTILINE,
)

_JS_KIND_MAP: dict[str, str] = {
    "function": "function",
    "function*": "function",
    "class": "class",
    "const": "constant",
    "let": "variable",
    "var": "variable",
}

_DYNAMIC_EVAL: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"(?<![\w$.])eval\s*\("), "dynamic evaluation via eval()"),
    (re.compile(r"\bnew\s+Function\s*\("), "dynamic evaluation via new Function()"),
    (
        re.compile(r"\bset(?:Timeout|Interval)\s*\(\s*[\"'`]"),
        "string argument to setTimeout/setInterval is evaluated as code",
    ),
    (re.compile(r"\bdocument\.write(?:ln)?\s*\("), "document.write() writes unsanitized markup"),
)

# element.innerHTML = rhs / element.outerHTML += rhs
_SINK_ASSIGN_RE = re.compile(r"\.(?P<sink>innerHTML|outerHTML)\s*\+?=(?!=)\s*(?P<rhs>[^;\n]+)")
# element.insertAdjacentHTML("beforeend", rhs)
_SINK_CALL_RE = re.compile(r"\.(?P<sink>insertAdjacentHTML)\s*\(\s*[^,]+,\s*(?P<rhs>[^\n;]+?)\)\s*;?\s*$", re.MULTILINE)
# the same sinks fed a template literal, which may span lines
_TEMPLATE_SINK_RES: tuple[re.Pattern[str], ...] = (
    re.compile(r"\.(?P<sink>innerHTML|outerHTML)\s*\+?=(?!=)\s*`"),
    re.compile(r"\.(?P<sink>insertAdjacentHTML)\s*\(\s*[^,()]+,\s*`"),
)

_BARE_IDENT_RE = re.compile(r"^[A-Za-z_$][\w$]*(?:\.[A-Za-z_$][\w$]*|\[[^\]]+\])*$")
_TEMPLATE_EXPR_RE = re.compile(r"\$\{([^}]*)\}")
_SANITIZER_RE = re.compile(r"(?i)\b(?:escape\w*|sanitiz\w*|DOMPurify|encode\w*|textContent)\b")

# Interpolations whose name suggests user / network controlled data
EXTERNAL_KEYWORDS: tuple[str, ...] = (
    "value", "query", "search", "hash", "location", "params",
    "url", "response", "data", "json", "input",
)
_EXTERNAL_RE = re.compile(r"(?i)(" + "|".join(EXTERNAL_KEYWORDS) + r")")


# ---------------------------------------------------------------------------
# Syntax
# ---------------------------------------------------------------------------


def syntax_errors(source: str, *, line_offset: int = 0) -> list[SyntaxIssue]:
    """Parse *source* with tree-sitter-javascript and report error nodes.

    *line_offset* shifts reported lines (inline ``<script>`` bodies).
    """
    if not source.strip():
        return []
    issues = _treesitter.error_issues(_treesitter.parse("javascript", source))
    if not line_offset:
        return issues
    return [i.model_copy(update={"line": i.line + line_offset}) for i in issues]


def strip_comments(source: str) -> str:
    """Return *source* with comments replaced by spaces."""
    if "//" not in source and "/*" not in source and "<!--" not in source:
        return source
    tree = _treesitter.parse("javascript", source)
    return _treesitter.blank_nodes(source, tree, _COMMENT_NODES)


# ---------------------------------------------------------------------------
# Symbol extraction
# ---------------------------------------------------------------------------


def extract_symbols(source: str) -> list[Symbol]:
    """Extract top-level functions, classes and declarations.

    Only unindented declarations are considered top-level.
    """
    if not source or not source.strip():
        return []

    symbols: list[Symbol] = []
    seen: set[str] = set()
    for match in _JS_SYMBOL_RE.finditer(strip_comments(source)):
        name = match.group(2)
        if name in seen:
            continue
        seen.add(name)
        symbols.append(Symbol(
            name=name,
            kind=_JS_KIND_MAP.get(match.group(1), "variable"),
            line=source.count("\n", 0, match.start()) + 1,
        ))
    return symbols


# ---------------------------------------------------------------------------
# Injection checks
# ---------------------------------------------------------------------------


def _unsafe_rhs(rhs: str) -> str | None:
    """Classify the right-hand side of a live-markup sink.

    Returns a reason string when unsafe, ``None`` otherwise.
    """
    rhs = rhs.strip().rstrip(";").strip()
    if not rhs or _SANITIZER_RE.search(rhs):
        return None
    if rhs[0] in "\"'" and rhs[-1] == rhs[0] and rhs.count(rhs[0]) == 2:
        return None
    if _BARE_IDENT_RE.match(rhs):
        if rhs in ("''", '""', "null", "undefined"):
            return None
        return f"from variable '{rhs}'"
    for expr in _TEMPLATE_EXPR_RE.findall(rhs):
        m = _EXTERNAL_RE.search(expr)
        if m:
            return f"from interpolation '${{{expr.strip()}}}' ({m.group(1).lower()})"
    return None


def _template_literal(code: str, start: int) -> str:
    """The template literal opening at *start*, through its closing backtick.

    Escapes and nested templates inside ${...} are skipped; an unterminated
    literal runs to the end of *code*.
    """
    i = start + 1
    depth = 0
    while i < len(code):
        ch = code[i]
        if ch == "\\":
            i += 2
            continue
        if ch == "`":
            if depth == 0:
                return code[start:i + 1]
            i += len(_template_literal(code, i))
            continue
        if depth == 0 and code.startswith("${", i):
            depth = 1
            i += 2
            continue
        if depth:
            if ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
        i += 1
    return code[start:]


def find_injection_risks(source: str, *, line_offset: int = 0) -> list[tuple[int, str]]:
    """Return ``(line, message)`` for each injection risk in *source*.

    Runs on a comment-stripped view; lines are shifted by *line_offset*.
    """
    code = strip_comments(source)
    found: list[tuple[int, str]] = []

    def _line(pos: int) -> int:
        return code.count("\n", 0, pos) + 1 + line_offset

    for pattern, message in _DYNAMIC_EVAL:
        for m in pattern.finditer(code):
            found.append((_line(m.start()), message))

    for regex in (_SINK_ASSIGN_RE, _SINK_CALL_RE):
        for m in regex.finditer(code):
            if m.group("rhs").lstrip().startswith("`"):
                continue
            reason = _unsafe_rhs(m.group("rhs"))
            if reason:
                found.append((
                    _line(m.start()),
                    f"unsanitized assignment into {m.group('sink')} {reason}",
                ))

    for regex in _TEMPLATE_SINK_RES:
        for m in regex.finditer(code):
            reason = _unsafe_rhs(_template_literal(code, m.end() - 1))
            if reason:
                found.append((
                    _line(m.start()),
                    f"unsanitized assignment into {m.group('sink')} {reason}",
                ))

    found.sort()
    return found


__all__ = [
    "EXTERNAL_KEYWORDS",
    "extract_symbols",
    "find_injection_risks",
    "strip_comments",
    "syntax_errors",
]
