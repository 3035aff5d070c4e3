"""PowerShell language intelligence — tokenizer, 5.1 compatibility, repairs.

Windows PowerShell 5.1 is the pinned runtime of both PowerShell lanes, so
this module knows which constructs only parse on PowerShell 7 and how to
rewrite the common ones.

Parsers
-------
- ``scan``              — built-in tokenizer: code / comment-free views,
                          expandable string segments, bracket and string errors
- ``syntax_errors``     — tokenizer issues plus ambiguous variable references
- ``parse_with_pwsh``   — the real parser via a configured ``pwsh`` binary
- ``read_data_file``    — ``.psd1`` manifest reader (data-language subset)

Checks
------
- ``find_ambiguous_references`` — ``"$name:"`` inside expandable strings
- ``compat_issues``     — PowerShell 7-only syntax
- ``naming_violation``  — approved ``Verb-Noun`` rule

Repairs
-------
- ``fix_ambiguous_references`` — escape or brace-wrap, one per pass
- ``downgrade_operators``      — ``??=``, ``??``, ``?.``, ``?[`` to if/else
"""

from __future__ import annotations

import json
import logging
import os
import re
import subprocess
import tempfile
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, Field

from lanekit.errors import ParseError
from lanekit.lang import Symbol, SyntaxIssue

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

AMBIGUOUS_REFERENCE_ID = "InvalidVariableReferenceWithDrive"

# Scope / provider prefixes: "$env:" is a real drive reference gone wrong,
# so it must be escaped rather than wrapped.
RESERVED_SCOPES: frozenset[str] = frozenset({
    "env", "global", "script", "local", "private", "using",
    "variable", "function", "alias",
})

APPROVED_VERBS: frozenset[str] = frozenset({
    # Common
    "add", "clear", "close", "copy", "enter", "exit", "find", "format", "get",
    "hide", "join", "lock", "move", "new", "open", "optimize", "pop", "push",
    "redo", "remove", "rename", "reset", "resize", "search", "select", "set",
    "show", "skip", "split", "step", "switch", "undo", "unlock", "watch",
    # Communications
    "connect", "disconnect", "read", "receive", "send", "write",
    # Data
    "backup", "checkpoint", "compare", "compress", "convert", "convertfrom",
    "convertto", "dismount", "edit", "expand", "export", "group", "import",
    "initialize", "limit", "merge", "mount", "out", "publish", "restore",
    "save", "sync", "unpublish", "update",
    # Diagnostic
    "debug", "measure", "ping", "repair", "resolve", "test", "trace",
    # Lifecycle
    "approve", "assert", "build", "complete", "confirm", "deny", "deploy",
    "disable", "enable", "install", "invoke", "register", "request",
    "restart", "resume", "start", "stop", "submit", "suspend", "uninstall",
    "unregister", "wait",
    # Security
    "block", "grant", "protect", "revoke", "unblock", "unprotect",
    # Other
    "use",
})

_OPENERS = {"(": ")", "{": "}", "[": "]"}
_CLOSERS = {v: k for k, v in _OPENERS.items()}
_COMMENT_START_PREV = frozenset(" \t\r\n;(){}|&=,")

_AMBIGUOUS_RE = re.compile(r"(?<!`)\$(?P<name>[A-Za-z_][A-Za-z0-9_]*):(?![\w?{])")
_FUNCTION_RE = re.compile(
    r"^[ \t]*function[ \t]+(?:global:|script:)?(?P<name>[A-Za-z_][\w-]*)",
    re.IGNORECASE | re.MULTILINE,
)
_VERB_NOUN_RE = re.compile(r"^(?P<verb>[A-Za-z]+)-(?P<noun>[A-Za-z][A-Za-z0-9]*)$")

_COMPAT_RULES: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("null-coalescing assignment '??='", re.compile(r"\?\?=")),
    ("null-coalescing operator '??'", re.compile(r"\?\?(?!=)")),
    ("null-conditional member access '?.'", re.compile(r"(?<=[\w})\]])\?\.(?=[A-Za-z_])")),
    ("null-conditional index '?['", re.compile(r"(?<=[\w})\]])\?\[")),
    ("ternary operator '? :'", re.compile(r"[^\s|][ \t]+\?[ \t]+[^\r\n]*?[ \t]:[ \t]")),
    ("pipeline chain operator '&&'", re.compile(r"&&")),
    ("pipeline chain operator '||'", re.compile(r"\|\|")),
    ("ForEach-Object -Parallel", re.compile(r"(?:\bForEach-Object|%)[ \t]+-Parallel\b", re.IGNORECASE)),
    ("'clean' block", re.compile(r"^[ \t]*clean[ \t]*\{", re.IGNORECASE | re.MULTILINE)),
)

_PWSH_PARSE_SCRIPT = r"""
$tokens = $null; $errors = $null
[void][System.Management.Automation.Language.Parser]::ParseFile($args[0], [ref]$tokens, [ref]$errors)
@($errors | ForEach-Object {
    [pscustomobject]@{
        Line = $_.Extent.StartLineNumber
        Column = $_.Extent.StartColumnNumber
        Offset = $_.Extent.StartOffset
        ErrorId = $_.ErrorId
        Message = $_.Message
    }
}) | ConvertTo-Json -Compress -Depth 3
"""


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class ScanResult(BaseModel):
    """Tokenizer output; both views keep every offset of the original."""

    model_config = ConfigDict(frozen=True)

    code: str = Field(..., description="Source with string contents and comments blanked")
    no_comments: str = Field(..., description="Source with only comments blanked")
    expandable: list[tuple[int, int]] = Field(
        default_factory=list,
        description="(start, end) of literal text inside double-quoted strings",
    )
    issues: list[SyntaxIssue] = Field(default_factory=list)


class VariableReference(BaseModel):
    """An ambiguous ``$name:`` reference inside an expandable string."""

    model_config = ConfigDict(frozen=True)

    name: str
    offset: int = Field(..., ge=0, description="Offset of the '$'")
    line: int = Field(..., ge=1)


# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------


def _line_at(source: str, offset: int) -> int:
    return source.count("\n", 0, offset) + 1


def _blank(buf: list[str], start: int, end: int) -> None:
    for k in range(start, end):
        if buf[k] not in "\r\n":
            buf[k] = " "


def _skip_subexpression(source: str, j: int) -> int:
    """Return the offset just past the ``)`` closing a ``$(`` at *j* - 2."""
    n = len(source)
    depth = 1
    while j < n and depth:
        ch = source[j]
        if ch in "'\"":
            close = source.find(ch, j + 1)
            j = n if close < 0 else close + 1
            continue
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        j += 1
    return j


def scan(source: str) -> ScanResult:
    """Tokenize *source* just far enough to separate code from text.

    Recognises line and block comments, single / double quoted strings
    (with ``''`` / ``""`` / backtick escapes and ``$( )`` subexpressions),
    here-strings, and bracket nesting.
    """
    n = len(source)
    code = list(source)
    no_comments = list(source)
    expandable: list[tuple[int, int]] = []
    issues: list[SyntaxIssue] = []
    stack: list[tuple[str, int]] = []

    def issue(offset: int, message: str, code_id: str) -> None:
        issues.append(SyntaxIssue(
            line=_line_at(source, offset), message=message, code=code_id, offset=offset,
        ))

    i = 0
    while i < n:
        c = source[i]

        if c == "`":
            i += 2
            continue

        if c == "<" and source.startswith("<#", i):
            end = source.find("#>", i + 2)
            if end < 0:
                issue(i, "Missing end of comment block '#>'", "MissingEndOfCommentBlock")
                end = n
            else:
                end += 2
            _blank(code, i, end)
            _blank(no_comments, i, end)
            i = end
            continue

        if c == "#" and (i == 0 or source[i - 1] in _COMMENT_START_PREV):
            end = source.find("\n", i)
            end = n if end < 0 else end
            _blank(code, i, end)
            _blank(no_comments, i, end)
            i = end
            continue

        if c == "@" and i + 1 < n and source[i + 1] in "\"'":
            quote = source[i + 1]
            m = re.match(r"[ \t]*\r?\n", source[i + 2:])
            if m:
                body_start = i + 2 + m.end()
                term = re.compile(r"^" + quote + "@", re.MULTILINE).search(source, body_start)
                if term is None:
                    issue(i, "The here-string is missing its terminator", "TerminatorExpectedAtEndOfString")
                    body_end = end = n
                else:
                    body_end = term.start()
                    end = term.end()
                if quote == '"':
                    expandable.append((body_start, body_end))
                _blank(code, i + 2, body_end)
                i = end
                continue

        if c == "'":
            j = i + 1
            while j < n:
                if source[j] == "'":
                    if j + 1 < n and source[j + 1] == "'":
                        j += 2
                        continue
                    break
                j += 1
            if j >= n:
                issue(i, "The string is missing the terminator: '.", "TerminatorExpectedAtEndOfString")
            _blank(code, i + 1, min(j, n))
            i = j + 1
            continue

        if c == '"':
            j = i + 1
            seg_start = j
            while j < n:
                ch = source[j]
                if ch == "`":
                    j += 2
                    continue
                if ch == '"':
                    if j + 1 < n and source[j + 1] == '"':
                        j += 2
                        continue
                    break
                if ch == "$" and j + 1 < n and source[j + 1] == "(":
                    expandable.append((seg_start, j))
                    j = _skip_subexpression(source, j + 2)
                    seg_start = j
                    continue
                j += 1
            if j >= n:
                issue(i, 'The string is missing the terminator: ".', "TerminatorExpectedAtEndOfString")
                j = n
            expandable.append((seg_start, j))
            _blank(code, i + 1, j)
            i = j + 1
            continue

        if c in _OPENERS:
            stack.append((c, i))
        elif c in _CLOSERS:
            if stack and stack[-1][0] == _CLOSERS[c]:
                stack.pop()
            else:
                issue(i, f"Unexpected token '{c}' in expression or statement.", "UnexpectedToken")
        i += 1

    for opener, offset in stack:
        issue(offset, f"Missing closing '{_OPENERS[opener]}' for '{opener}'.", "MissingEndCurlyBrace"
              if opener == "{" else "MissingEndParenthesis" if opener == "(" else "MissingEndSquareBracket")

    issues.sort(key=lambda s: s.offset or 0)
    return ScanResult(
        code="".join(code),
        no_comments="".join(no_comments),
        expandable=[span for span in expandable if span[1] > span[0]],
        issues=issues,
    )


def find_ambiguous_references(source: str) -> list[VariableReference]:
    """Locate ``$name:`` references that the parser rejects as drive-qualified."""
    refs: list[VariableReference] = []
    for start, end in scan(source).expandable:
        for m in _AMBIGUOUS_RE.finditer(source, start, end):
            refs.append(VariableReference(
                name=m.group("name"),
                offset=m.start(),
                line=_line_at(source, m.start()),
            ))
    refs.sort(key=lambda r: r.offset)
    return refs


def syntax_errors(source: str) -> list[SyntaxIssue]:
    """Built-in parse: tokenizer issues plus ambiguous variable references."""
    if not source.strip():
        return []
    issues = list(scan(source).issues)
    for ref in find_ambiguous_references(source):
        issues.append(SyntaxIssue(
            line=ref.line,
            offset=ref.offset,
            code=AMBIGUOUS_REFERENCE_ID,
            message=(
                f"Variable reference '${ref.name}:' is not valid. "
                "':' was not followed by a valid variable name character."
            ),
        ))
    issues.sort(key=lambda s: s.offset or 0)
    return issues


def parse_with_pwsh(source: str, pwsh_path: str, *, timeout: float = 30.0) -> list[SyntaxIssue] | None:
    """Parse *source* with the real PowerShell parser.

    Returns ``None`` when ``pwsh`` cannot be run or its output cannot be
    read, so the caller can fall back to ``syntax_errors``.
    """
    fd, path = tempfile.mkstemp(suffix=".ps1")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(source)
        proc = subprocess.run(
            [pwsh_path, "-NoProfile", "-NonInteractive", "-Command", _PWSH_PARSE_SCRIPT, path],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.warning("pwsh parser unavailable (%s); using built-in tokenizer", exc)
        return None
    finally:
        try:
            os.unlink(path)
        except OSError:
            pass

    raw = proc.stdout.strip()
    if proc.returncode != 0:
        logger.warning("pwsh parser exited %d: %s", proc.returncode, proc.stderr.strip()[:200])
        return None
    if not raw:
        return []
    try:
        entries = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("pwsh parser produced unreadable output (%d chars)", len(raw))
        return None
    if isinstance(entries, dict):
        entries = [entries]

    return [
        SyntaxIssue(
            line=max(1, int(e.get("Line") or 1)),
            column=max(0, int(e.get("Column") or 1) - 1),
            offset=max(0, int(e.get("Offset") or 0)),
            code=e.get("ErrorId"),
            message=str(e.get("Message", "")),
        )
        for e in entries
        if isinstance(e, dict)
    ]


# ---------------------------------------------------------------------------
# Compatibility and naming
# ---------------------------------------------------------------------------


def compat_issues(source: str) -> list[tuple[int, str]]:
    """``(line, construct)`` for PowerShell 7-only syntax outside strings and comments."""
    code = scan(source).code
    found: set[tuple[int, str]] = set()
    for construct, pattern in _COMPAT_RULES:
        for m in pattern.finditer(code):
            found.add((_line_at(code, m.start()), construct))
    return sorted(found)


def naming_violation(name: str) -> str | None:
    """Return the violated rule for an exported command name, or ``None``."""
    m = _VERB_NOUN_RE.match(name)
    if not m:
        return "name must follow the Verb-Noun form"
    if m.group("verb").lower() not in APPROVED_VERBS:
        return f"verb '{m.group('verb')}' is not an approved PowerShell verb"
    return None


def extract_functions(source: str) -> list[Symbol]:
    """Function definitions outside strings and comments."""
    code = scan(source).code
    return [
        Symbol(name=m.group("name"), kind="function", line=_line_at(code, m.start()))
        for m in _FUNCTION_RE.finditer(code)
    ]


# ---------------------------------------------------------------------------
# .psd1 data files
# ---------------------------------------------------------------------------


class _DataReader:
    """Recursive-descent reader for the restricted language of ``.psd1`` files."""

    def __init__(self, text: str) -> None:
        self.text = text
        self.pos = 0

    def fail(self, reason: str) -> ParseError:
        return ParseError(self.text, "psd1", reason=f"{reason} at line {_line_at(self.text, self.pos)}")

    def skip(self) -> None:
        t = self.text
        while self.pos < len(t):
            if t[self.pos] in " \t\r\n;":
                self.pos += 1
            elif t.startswith("<#", self.pos):
                end = t.find("#>", self.pos)
                self.pos = len(t) if end < 0 else end + 2
            elif t[self.pos] == "#":
                end = t.find("\n", self.pos)
                self.pos = len(t) if end < 0 else end
            else:
                break

    def peek(self, token: str) -> bool:
        return self.text.startswith(token, self.pos)

    def read_document(self) -> dict[str, Any]:
        self.skip()
        if not self.peek("@{"):
            raise self.fail("expected '@{'")
        value = self.read_hashtable()
        self.skip()
        if self.pos < len(self.text):
            raise self.fail("unexpected content after manifest")
        return value

    def read_hashtable(self) -> dict[str, Any]:
        self.pos += 2
        table: dict[str, Any] = {}
        while True:
            self.skip()
            if self.pos >= len(self.text):
                raise self.fail("missing closing '}'")
            if self.peek("}"):
                self.pos += 1
                return table
            key = self.read_key()
            self.skip()
            if not self.peek("="):
                raise self.fail(f"expected '=' after key '{key}'")
            self.pos += 1
            table[key] = self.read_list()

    def read_key(self) -> str:
        if self.peek("'") or self.peek('"'):
            return self.read_string()
        m = re.compile(r"[A-Za-z_][\w.-]*").match(self.text, self.pos)
        if not m:
            raise self.fail("expected a key")
        self.pos = m.end()
        return m.group(0)

    def read_list(self) -> Any:
        items = [self.read_value()]
        while True:
            save = self.pos
            self.skip()
            if self.peek(","):
                self.pos += 1
                items.append(self.read_value())
            else:
                self.pos = save
                break
        return items if len(items) > 1 else items[0]

    def read_value(self) -> Any:
        self.skip()
        t = self.text
        if self.peek("@{"):
            return self.read_hashtable()
        if self.peek("@("):
            self.pos += 2
            items: list[Any] = []
            while True:
                self.skip()
                if self.pos >= len(t):
                    raise self.fail("missing closing ')'")
                if self.peek(")"):
                    self.pos += 1
                    return items
                if self.peek(","):
                    self.pos += 1
                    continue
                items.append(self.read_value())
        if self.peek("'") or self.peek('"'):
            return self.read_string()
        for literal, value in (("$true", True), ("$false", False), ("$null", None)):
            if t[self.pos:self.pos + len(literal)].lower() == literal:
                self.pos += len(literal)
                return value
        m = re.compile(r"-?\d+(?:\.\d+)*").match(t, self.pos)
        if m:
            self.pos = m.end()
            text = m.group(0)
            return int(text) if text.lstrip("-").isdigit() else text
        raise self.fail("unsupported value")

    def read_string(self) -> str:
        t = self.text
        quote = t[self.pos]
        j = self.pos + 1
        out: list[str] = []
        while j < len(t):
            ch = t[j]
            if ch == quote:
                if j + 1 < len(t) and t[j + 1] == quote:
                    out.append(quote)
                    j += 2
                    continue
                self.pos = j + 1
                return "".join(out)
            if ch == "`" and quote == '"' and j + 1 < len(t):
                out.append(t[j + 1])
                j += 2
                continue
            out.append(ch)
            j += 1
        raise self.fail("unterminated string")


def read_data_file(text: str) -> dict[str, Any]:
    """Read a ``.psd1`` manifest into a dict.

    Raises ``ParseError`` on anything outside the data-language subset.
    """
    return _DataReader(text).read_document()


# ---------------------------------------------------------------------------
# Repairs
# ---------------------------------------------------------------------------


def fix_ambiguous_references(source: str, *, max_passes: int = 30) -> tuple[str, int]:
    """Repair ``"$name:"`` references one at a time, re-scanning each pass.

    Reserved scope names get a backtick before ``$``; any other name is
    wrapped as ``${name}``.  Returns ``(source, repairs)``.
    """
    repairs = 0
    for _ in range(max_passes):
        refs = find_ambiguous_references(source)
        if not refs:
            break
        ref = refs[0]
        if ref.name.lower() in RESERVED_SCOPES:
            source = source[:ref.offset] + "`" + source[ref.offset:]
        else:
            end = ref.offset + 1 + len(ref.name)
            source = source[:ref.offset] + "${" + ref.name + "}" + source[end:]
        repairs += 1
    return source, repairs


_VAR = r"\$\{?[A-Za-z_][\w]*\}?"

_NULL_COALESCE_ASSIGN_RE = re.compile(
    r"(?P<lhs>\$\{?[A-Za-z_][\w:]*\}?)[ \t]*\?\?=[ \t]*(?P<rhs>[^\r\n;]*[^\s;])",
)
_NULL_COALESCE_RE = re.compile(
    r"(?P<lhs>\$\{?[A-Za-z_][\w:]*\}?(?:\.[A-Za-z_]\w*)*)[ \t]*\?\?(?!=)[ \t]*"
    r"(?P<rhs>[^\r\n;|)}]*[^\s;|)}])",
)
_NULL_MEMBER_RE = re.compile(
    r"(?P<obj>" + _VAR + r")\?\.(?P<member>[A-Za-z_]\w*(?:\([^()\r\n]*\))?)",
)
_NULL_INDEX_RE = re.compile(r"(?P<obj>" + _VAR + r")\?\[(?P<index>[^\]\r\n]+)\]")

_DOWNGRADES: tuple[tuple[re.Pattern[str], Callable[[dict[str, str]], str]], ...] = (
    (
        _NULL_COALESCE_ASSIGN_RE,
        lambda g: f"if ($null -eq {g['lhs']}) {{ {g['lhs']} = {g['rhs']} }}",
    ),
    (
        _NULL_COALESCE_RE,
        lambda g: f"$(if ($null -ne {g['lhs']}) {{ {g['lhs']} }} else {{ {g['rhs']} }})",
    ),
    (
        _NULL_MEMBER_RE,
        lambda g: f"$(if ($null -ne {g['obj']}) {{ {g['obj']}.{g['member']} }} else {{ $null }})",
    ),
    (
        _NULL_INDEX_RE,
        lambda g: f"$(if ($null -ne {g['obj']}) {{ {g['obj']}[{g['index']}] }} else {{ $null }})",
    ),
)


def _rewrite(source: str, pattern: re.Pattern[str], build: Callable[[dict[str, str]], str]) -> tuple[str, int]:
    """Apply *build* to every match found in the code view of *source*.

    Matching runs on the view (so strings and comments never match) and the
    original text of each group is spliced back, right to left.
    """
    view = scan(source).code
    edits: list[tuple[int, int, str]] = []
    for m in pattern.finditer(view):
        groups = {
            name: source[m.start(name):m.end(name)]
            for name in m.groupdict()
            if m.start(name) >= 0
        }
        edits.append((m.start(), m.end(), build(groups)))
    for start, end, text in reversed(edits):
        source = source[:start] + text + source[end:]
    return source, len(edits)


def downgrade_operators(source: str, *, max_passes: int = 30) -> tuple[str, int]:
    """Rewrite PowerShell 7 null operators into 5.1-compatible if/else forms.

    Returns ``(source, repairs)``.
    """
    repairs = 0
    for _ in range(max_passes):
        changed = 0
        for pattern, build in _DOWNGRADES:
            source, count = _rewrite(source, pattern, build)
            changed += count
        if not changed:
            break
        repairs += changed
    return source, repairs


__all__ = [
    "AMBIGUOUS_REFERENCE_ID",
    "APPROVED_VERBS",
    "RESERVED_SCOPES",
    "ScanResult",
    "VariableReference",
    "compat_issues",
    "downgrade_operators",
    "extract_functions",
    "find_ambiguous_references",
    "fix_ambiguous_references",
    "naming_violation",
    "parse_with_pwsh",
    "read_data_file",
    "scan",
    "syntax_errors",
]
