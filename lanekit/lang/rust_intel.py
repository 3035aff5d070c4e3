"""Rust language intelligence — tree-sitter syntax, module graph, Cargo manifest.

All functions are **pure** (string in → model out).

Parsers
-------
- ``syntax_errors``      — tree-sitter-rust ERROR / MISSING nodes
- ``parse_cargo``        — ``Cargo.toml`` via ``tomllib``

Extractors
----------
- ``use_roots``          — first path segment of every ``use`` / ``extern crate``
- ``module_declarations`` — ``mod x;`` and ``mod x { … }`` names
- ``extract_symbols``    — public items plus ``main``

Repairs
-------
- ``add_missing_lifetimes`` — ``'a`` on structs holding bare references
"""

from __future__ import annotations

import re
import tomllib

from pydantic import BaseModel, ConfigDict, Field

from lanekit.errors import ParseError
from lanekit.lang import Symbol, SyntaxIssue
from lanekit.lang import _treesitter

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

RUST_BUILTIN_CRATES: frozenset[str] = frozenset({
    "std", "core", "alloc", "crate", "self", "super", "proc_macro", "test",
})

_COMMENT_NODES = frozenset({"line_comment", "block_comment"})

_USE_RE = re.compile(
    r"^\s*(?:pub(?:\([^)]*\))?\s+)?use\s+(?:::)?(?P<root>[A-Za-z_][A-Za-z0-9_]*|\{)",
    re.MULTILINE,
)
_USE_GROUP_RE = re.compile(r"use\s+(?:::)?\{(?P<body>[^}]*)\}", re.DOTALL)
_EXTERN_CRATE_RE = re.compile(r"^\s*extern\s+crate\s+(?P<root>[A-Za-z_][A-Za-z0-9_]*)", re.MULTILINE)
_MOD_RE = re.compile(
    r"^\s*(?:pub(?:\([^)]*\))?\s+)?mod\s+(?P<name>[A-Za-z_][A-Za-z0-9_]*)\s*[;{]",
    re.MULTILINE,
)
_ITEM_RE = re.compile(
    r"^(?P<pub>pub(?:\([^)]*\))?\s+)?(?:async\s+)?(?:unsafe\s+)?"
    r"(?P<kind>fn|struct|enum|trait|mod|const|static)\s+(?P<name>[A-Za-z_][A-Za-z0-9_]*)",
    re.MULTILINE,
)
_LOCAL_ITEM_RE = re.compile(
    r"^\s*(?:pub(?:\([^)]*\))?\s+)?(?:enum|struct|trait|type|union)\s+(?P<name>[A-Za-z_][A-Za-z0-9_]*)",
    re.MULTILINE,
)
_KIND_MAP: dict[str, str] = {
    "fn": "function",
    "struct": "struct",
    "enum": "enum",
    "trait": "trait",
    "mod": "module",
    "const": "constant",
    "static": "variable",
}

_STRUCT_RE = re.compile(
    r"(?P<head>\bstruct\s+(?P<name>[A-Za-z_][A-Za-z0-9_]*))(?P<generics><[^>{]*>)?\s*\{(?P<body>[^{}]*)\}",
)
# a field typed `&T` / `&mut T` without an explicit lifetime
_BARE_REF_RE = re.compile(r":\s*&(?!')(?P<mut>mut\s+)?")
_IMPL_HEAD = r"\bimpl(?P<igen><[^>{]*>)?\s+(?P<trait>[\w:<>, ]+\s+for\s+)?"
_IMPL_TAIL = r"(?P<sgen><[^>{]*>)?\s*\{"

LIFETIME = "'a"


class CargoManifest(BaseModel):
    """The parts of ``Cargo.toml`` the validator needs."""

    model_config = ConfigDict(frozen=True)

    package_name: str | None = None
    dependencies: frozenset[str] = Field(default_factory=frozenset)


# ---------------------------------------------------------------------------
# Syntax
# ---------------------------------------------------------------------------


def syntax_errors(source: str) -> list[SyntaxIssue]:
    if not source.strip():
        return []
    return _treesitter.error_issues(_treesitter.parse("rust", source))


def strip_comments(source: str) -> str:
    if "//" not in source and "/*" not in source:
        return source
    tree = _treesitter.parse("rust", source)
    return _treesitter.blank_nodes(source, tree, _COMMENT_NODES)


# ---------------------------------------------------------------------------
# Manifest
# ---------------------------------------------------------------------------


def parse_cargo(text: str) -> CargoManifest:
    """Parse a ``Cargo.toml`` body.

    Dependency names are normalised to their crate (import) form:
    hyphens become underscores, and ``package = "..."`` renames are honoured
    by keeping the key, which is what ``use`` refers to.

    Raises ``ParseError`` on invalid TOML.
    """
    try:
        data = tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        raise ParseError(text, "cargo_toml", reason=str(exc)) from exc

    deps: set[str] = set()
    tables = [data]
    tables.extend(t for t in data.get("target", {}).values() if isinstance(t, dict))
    for table in tables:
        for section in ("dependencies", "dev-dependencies", "build-dependencies"):
            for name in table.get(section, {}) or {}:
                deps.add(name.replace("-", "_"))

    package = data.get("package", {})
    name = package.get("name") if isinstance(package, dict) else None
    return CargoManifest(package_name=name, dependencies=frozenset(deps))


# ---------------------------------------------------------------------------
# Extractors
# ---------------------------------------------------------------------------


def use_roots(source: str) -> list[tuple[str, int]]:
    """``(root, line)`` for every ``use`` path and ``extern crate``."""
    code = strip_comments(source)
    roots: list[tuple[str, int]] = []
    for m in _USE_RE.finditer(code):
        root = m.group("root")
        line = code.count("\n", 0, m.start()) + 1
        if root == "{":
            continue
        roots.append((root, line))
    for m in _USE_GROUP_RE.finditer(code):
        line = code.count("\n", 0, m.start()) + 1
        for part in m.group("body").split(","):
            seg = part.strip().split("::", 1)[0].strip()
            if re.match(r"^[A-Za-z_][A-Za-z0-9_]*$", seg):
                roots.append((seg, line))
    for m in _EXTERN_CRATE_RE.finditer(code):
        roots.append((m.group("root"), code.count("\n", 0, m.start()) + 1))
    return roots


def module_declarations(source: str) -> set[str]:
    return {m.group("name") for m in _MOD_RE.finditer(strip_comments(source))}


def local_names(source: str) -> set[str]:
    """Module and item names a `use` path may start from (pub or not)."""
    code = strip_comments(source)
    names = {m.group("name") for m in _MOD_RE.finditer(code)}
    names.update(m.group("name") for m in _LOCAL_ITEM_RE.finditer(code))
    return names


def extract_symbols(source: str) -> list[Symbol]:
    """Public top-level items, plus ``fn main``."""
    if not source or not source.strip():
        return []
    symbols: list[Symbol] = []
    for m in _ITEM_RE.finditer(strip_comments(source)):
        name = m.group("name")
        if not m.group("pub") and name != "main":
            continue
        symbols.append(Symbol(
            name=name,
            kind=_KIND_MAP[m.group("kind")],
            line=source.count("\n", 0, m.start()) + 1,
        ))
    return symbols


# ---------------------------------------------------------------------------
# Lifetime repair
# ---------------------------------------------------------------------------


def _with_lifetime(generics: str | None) -> str:
    if not generics:
        return f"<{LIFETIME}>"
    inner = generics[1:-1].strip()
    if LIFETIME in inner:
        return generics
    return f"<{LIFETIME}, {inner}>" if inner else f"<{LIFETIME}>"


def add_missing_lifetimes(source: str) -> tuple[str, int]:
    """Give structs with bare reference fields a consistent ``'a`` lifetime.

    The struct declaration, each ``&T`` / ``&mut T`` field and every
    ``impl`` block for that struct are rewritten.  Structs that already
    declare any lifetime are left alone.  Returns ``(source, repairs)``.
    """
    repairs = 0
    patched: list[str] = []

    def _struct(m: re.Match[str]) -> str:
        nonlocal repairs
        generics = m.group("generics") or ""
        body = m.group("body")
        if "'" in generics or not _BARE_REF_RE.search(body):
            return m.group(0)
        body = _BARE_REF_RE.sub(lambda r: f": &{LIFETIME} {r.group('mut') or ''}", body)
        repairs += 1
        patched.append(m.group("name"))
        return f"{m.group('head')}{_with_lifetime(generics)} {{{body}}}"

    result = _STRUCT_RE.sub(_struct, source)

    for name in patched:
        impl_re = re.compile(_IMPL_HEAD + re.escape(name) + _IMPL_TAIL)

        def _impl(m: re.Match[str], name: str = name) -> str:
            sgen = m.group("sgen") or ""
            if LIFETIME in sgen:
                return m.group(0)
            trait = m.group("trait") or ""
            return f"impl{_with_lifetime(m.group('igen'))} {trait}{name}{_with_lifetime(sgen)} {{"

        result = impl_re.sub(_impl, result)

    return result, repairs


__all__ = [
    "CargoManifest",
    "LIFETIME",
    "RUST_BUILTIN_CRATES",
    "add_missing_lifetimes",
    "extract_symbols",
    "local_names",
    "module_declarations",
    "parse_cargo",
    "strip_comments",
    "syntax_errors",
    "use_roots",
]
