"""Python language intelligence — syntax checks, symbols, imports, indentation.

All functions are **pure** (string in → model out).  No subprocess execution,
no filesystem access.

Parsers
-------
- ``syntax_errors``      — ``ast.parse`` syntax errors as ``SyntaxIssue``s

Extractors
----------
- ``extract_symbols``    — ``ast``-based top-level class/function/variable outline
- ``top_level_imports``  — absolute import roots with their line numbers
- ``strip_comments``     — ``tokenize``-based comment blanking

Repairs
-------
- ``normalise_indentation`` — re-indent the body of block-opening lines
"""

from __future__ import annotations

import ast
import io
import re
import sys
import tokenize

from lanekit.lang import Symbol, SyntaxIssue

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PYTHON_STDLIB_MODULES: frozenset[str] = frozenset(sys.stdlib_module_names)

INDENT_WIDTH = 4

# requirements.txt line: name, then optional extras / specifier / marker
_REQUIREMENT_RE = re.compile(r"^\s*([A-Za-z0-9][A-Za-z0-9._-]*)")

# Distribution name → import name, for the common mismatches
_DIST_IMPORT_ALIASES: dict[str, str] = {
    "beautifulsoup4": "bs4",
    "pillow": "PIL",
    "pyyaml": "yaml",
    "python-dateutil": "dateutil",
    "scikit-learn": "sklearn",
    "opencv-python": "cv2",
    "python-dotenv": "dotenv",
    "pyserial": "serial",
}


# ---------------------------------------------------------------------------
# Syntax
# ---------------------------------------------------------------------------


def syntax_errors(source: str) -> list[SyntaxIssue]:
    """Try ``ast.parse`` and return the syntax error, if any.

    Returns an empty list if the source parses successfully.
    """
    if not source or not source.strip():
        return []

    try:
        ast.parse(source)
    except SyntaxError as exc:
        return [SyntaxIssue(
            line=exc.lineno or 1,
            column=exc.offset or 0,
            message=exc.msg,
            code=type(exc).__name__,
        )]
    return []


def strip_comments(source: str) -> str:
    """Blank out ``#`` comments, preserving line structure and strings.

    Falls back to the unmodified source when tokenization fails.
    """
    lines = source.splitlines(keepends=True)
    try:
        tokens = list(tokenize.generate_tokens(io.StringIO(source).readline))
    except (tokenize.TokenError, SyntaxError):
        return source

    for tok in reversed(tokens):
        if tok.type != tokenize.COMMENT:
            continue
        row, col = tok.start
        line = lines[row - 1]
        end = col + len(tok.string)
        lines[row - 1] = line[:col] + " " * len(tok.string) + line[end:]
    return "".join(lines)


# ---------------------------------------------------------------------------
# Symbol extraction
# ---------------------------------------------------------------------------


def extract_symbols(source: str) -> list[Symbol]:
    """Extract the public top-level outline of Python source.

    Module-level functions, classes and non-underscore assignments.
    Returns an empty list on parse failure or empty source.
    """
    if not source or not source.strip():
        return []

    try:
        tree = ast.parse(source)
    except SyntaxError:
        return []

    symbols: list[Symbol] = []
    for node in ast.iter_child_nodes(tree):
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            if not node.name.startswith("_"):
                symbols.append(Symbol(name=node.name, kind="function", line=node.lineno))
        elif isinstance(node, ast.ClassDef):
            if not node.name.startswith("_"):
                symbols.append(Symbol(name=node.name, kind="class", line=node.lineno))
        elif isinstance(node, ast.Assign):
            for target in node.targets:
                if isinstance(target, ast.Name) and not target.id.startswith("_"):
                    kind = "constant" if target.id.isupper() else "variable"
                    symbols.append(Symbol(name=target.id, kind=kind, line=node.lineno))
        elif isinstance(node, ast.AnnAssign) and isinstance(node.target, ast.Name):
            name = node.target.id
            if not name.startswith("_"):
                kind = "constant" if name.isupper() else "variable"
                symbols.append(Symbol(name=name, kind=kind, line=node.lineno))

    return symbols


# ---------------------------------------------------------------------------
# Import resolution
# ---------------------------------------------------------------------------


def top_level_imports(source: str) -> list[tuple[str, int]]:
    """Return ``(root_module, line)`` for every absolute import in *source*.

    Relative imports are skipped.  Returns an empty list on parse failure.
    """
    try:
        tree = ast.parse(source)
    except SyntaxError:
        return []

    roots: list[tuple[str, int]] = []
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            for alias in node.names:
                roots.append((alias.name.split(".")[0], node.lineno))
        elif isinstance(node, ast.ImportFrom) and not node.level and node.module:
            roots.append((node.module.split(".")[0], node.lineno))
    return roots


def parse_requirements(text: str) -> set[str]:
    """Import names declared by a ``requirements.txt`` body (lower-cased)."""
    names: set[str] = set()
    for line in text.splitlines():
        line = line.split("#", 1)[0].strip()
        if not line or line.startswith("-"):
            continue
        m = _REQUIREMENT_RE.match(line)
        if not m:
            continue
        dist = m.group(1).lower()
        names.add(dist)
        names.add(dist.replace("-", "_"))
        alias = _DIST_IMPORT_ALIASES.get(dist)
        if alias:
            names.add(alias.lower())
    return names


def undeclared_imports(
    source: str,
    local_modules: set[str],
    declared: set[str],
) -> list[tuple[str, int]]:
    """Imports that are neither stdlib, local modules, nor declared requirements."""
    missing: list[tuple[str, int]] = []
    seen: set[str] = set()
    for root, line in top_level_imports(source):
        if root in seen:
            continue
        seen.add(root)
        if root in PYTHON_STDLIB_MODULES or root in local_modules:
            continue
        if root.lower() in declared:
            continue
        missing.append((root, line))
    return missing


# ---------------------------------------------------------------------------
# Indentation repair
# ---------------------------------------------------------------------------


def _indent_of(line: str) -> int:
    return len(line) - len(line.lstrip(" "))


def _opens_block(line: str) -> bool:
    code = strip_comments(line).rstrip()
    return code.endswith(":") and bool(code.strip())


def normalise_indentation(source: str) -> tuple[str, int]:
    """Re-indent the first body line of each block opener to parent + 4.

    Tabs in leading whitespace are expanded first.  Only applied when the
    source currently fails with an indentation error, and only kept when the
    result no longer does.  Returns ``(source, repairs)``.
    """
    try:
        ast.parse(source)
        return source, 0
    except IndentationError:
        pass
    except SyntaxError:
        return source, 0

    lines = source.split("\n")
    repairs = 0
    for i, line in enumerate(lines):
        stripped = line.lstrip(" \t")
        if "\t" in line[: len(line) - len(stripped)]:
            lines[i] = line[: len(line) - len(stripped)].expandtabs(INDENT_WIDTH) + stripped
            repairs += 1

    for i, line in enumerate(lines):
        if not _opens_block(line):
            continue
        j = i + 1
        while j < len(lines) and not lines[j].strip():
            j += 1
        if j >= len(lines):
            break
        parent = _indent_of(line)
        if _indent_of(lines[j]) <= parent:
            lines[j] = " " * (parent + INDENT_WIDTH) + lines[j].lstrip(" ")
            repairs += 1

    if not repairs:
        return source, 0
    candidate = "\n".join(lines)
    try:
        ast.parse(candidate)
    except IndentationError:
        return source, 0
    except SyntaxError:
        pass
    return candidate, repairs


__all__ = [
    "PYTHON_STDLIB_MODULES",
    "extract_symbols",
    "normalise_indentation",
    "parse_requirements",
    "strip_comments",
    "syntax_errors",
    "top_level_imports",
    "undeclared_imports",
]
