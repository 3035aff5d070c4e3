"""LLM response parser — extract code blocks and assemble a FileMap.

Turns raw model text into an ordered list of ``CodeBlock``s, infers
filenames for blocks that do not declare one, and assembles the result
into a lane-scoped ``FileMap`` with its primary entry point in place.

All functions are pure string processors — no I/O, no side effects.
"""

from __future__ import annotations

import re
from pathlib import PurePosixPath

from lanekit.contracts import CodeBlock, FileMap
from lanekit.errors import MissingPrimaryFile, NoCodeBlocks
from lanekit.lanes import Lane, get_profile, normalise_tag

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Opening fence: ``` or ~~~ (3+), then an optional info string
_FENCE_OPEN_RE = re.compile(r"^(?P<fence>`{3,}|~{3,})\s*(?P<info>[^`]*?)\s*$")

# Heading / label line directly above a fence naming the file
_HEADING_NAME_RE = re.compile(
    r"^\s*(?:#{1,6}\s*)?(?:\*\*)?(?:(?:File(?:name)?|Path)\s*:\s*)?`?"
    r"(?P<name>[\w./\\-]+\.[A-Za-z0-9]+)`?(?:\*\*)?\s*:?\s*$",
    re.IGNORECASE,
)

# "// File: src/lib.rs", "# file: main.py", "<!-- File: index.html -->"
_FIRST_LINE_NAME_RE = re.compile(
    r"^\s*(?://|#|--|<!--|<#)\s*(?:File(?:name)?|Path)\s*:\s*(?P<name>[\w./\\-]+\.[A-Za-z0-9]+)",
    re.IGNORECASE,
)

_PATHISH_RE = re.compile(r"^[\w./\\-]+\.[A-Za-z0-9]+$")

# Extension used when a language has no lane fallback name
_TAG_EXTENSION: dict[str, str] = {
    "python": ".py",
    "javascript": ".js",
    "html": ".html",
    "css": ".css",
    "json": ".json",
    "powershell": ".ps1",
    "psd1": ".psd1",
    "rust": ".rs",
    "toml": ".toml",
    "text": ".txt",
}


# ---------------------------------------------------------------------------
# Fence helpers
# ---------------------------------------------------------------------------


def strip_fences(text: str) -> str:
    """Remove the outermost markdown code fences from *text*.

    Only the first opening fence and its matching closing fence are removed.
    Returns *text* unchanged if no fences are found.
    """
    if not text:
        return text

    lines = text.split("\n")
    open_idx: int | None = None
    for i, line in enumerate(lines):
        if _FENCE_OPEN_RE.match(line.strip()):
            open_idx = i
            break
    if open_idx is None:
        return text

    close_idx: int | None = None
    for i in range(len(lines) - 1, open_idx, -1):
        if re.match(r"^(`{3,}|~{3,})\s*$", lines[i].strip()):
            close_idx = i
            break
    if close_idx is None:
        return text

    return "\n".join(lines[:open_idx] + lines[open_idx + 1 : close_idx] + lines[close_idx + 1 :])


def normalise_filename(name: str) -> str:
    """Clean a declared filename: quotes, backslashes, leading ``./`` and ``/``."""
    cleaned = name.strip().strip("`'\"").replace("\\", "/")
    while cleaned.startswith("./"):
        cleaned = cleaned[2:]
    return cleaned.lstrip("/")


def _parse_info(info: str) -> tuple[str, str | None]:
    """Split a fence info string into (language tag, declared filename)."""
    info = info.strip()
    if not info:
        return "", None
    if ":" in info.split()[0]:
        tag, _, rest = info.partition(":")
        rest = rest.strip()
        return tag, (rest or None)
    parts = info.split(None, 1)
    tag = parts[0]
    if len(parts) > 1:
        rest = parts[1].strip()
        m = re.search(r"""(?:title|file(?:name)?)\s*=\s*["']?([^"'\s]+)""", rest, re.IGNORECASE)
        if m:
            return tag, m.group(1)
        if _PATHISH_RE.match(rest.strip("`'\"")):
            return tag, rest
    elif _PATHISH_RE.match(tag) and "." in tag and not tag.startswith("."):
        # ```main.py: filename used as the info string
        return PurePosixPath(tag).suffix.lstrip("."), tag
    return tag, None


def _sniff_language(code: str) -> str:
    """Guess a language for an untagged block from its first lines."""
    head = code.lstrip()[:400]
    low = head.lower()
    if low.startswith("<!doctype") or "<html" in low:
        return "html"
    if re.search(r"^\s*\[package\]", head, re.MULTILINE):
        return "toml"
    if re.search(r"\bfn\s+main\s*\(|^\s*use\s+\w+(::\w+)*;", head, re.MULTILINE):
        return "rust"
    if re.search(r"^\s*(def |class |import |from \w+ import )", head, re.MULTILINE):
        return "python"
    if re.search(r"^\s*(function\s+\w+-\w+|param\s*\(|\[CmdletBinding)", head, re.MULTILINE | re.IGNORECASE):
        return "powershell"
    if re.search(r"^\s*(const |let |function |document\.)", head, re.MULTILINE):
        return "javascript"
    return ""


# ---------------------------------------------------------------------------
# Block extraction
# ---------------------------------------------------------------------------


def extract_code_blocks(text: str) -> list[CodeBlock]:
    """Extract all fenced code blocks from *text*, in order.

    Filenames are taken, in priority order, from the fence info string
    (```` ```lang:path ```` / ```` ```lang path ````), a ``File: path``
    comment on the first code line, or a heading / label line directly
    above the fence.  An unterminated final block runs to the end of text.
    """
    if not text:
        return []

    lines = text.split("\n")
    blocks: list[CodeBlock] = []
    i = 0
    while i < len(lines):
        m = _FENCE_OPEN_RE.match(lines[i].strip())
        if not m:
            i += 1
            continue

        fence = m.group("fence")
        tag, filename = _parse_info(m.group("info"))

        # Heading above the fence (skip blank lines)
        if filename is None:
            j = i - 1
            while j >= 0 and not lines[j].strip():
                j -= 1
            if j >= 0 and i - j <= 2:
                hm = _HEADING_NAME_RE.match(lines[j])
                if hm:
                    filename = hm.group("name")

        close = re.compile(r"^" + re.escape(fence[0]) + "{" + str(len(fence)) + r",}\s*$")
        body: list[str] = []
        k = i + 1
        while k < len(lines) and not close.match(lines[k].strip()):
            body.append(lines[k])
            k += 1

        code = "\n".join(body)
        if filename is None and body:
            fm = _FIRST_LINE_NAME_RE.match(body[0])
            if fm:
                filename = fm.group("name")

        language = normalise_tag(tag) or _sniff_language(code)
        if code.strip():
            blocks.append(CodeBlock(
                language=language,
                filename=normalise_filename(filename) if filename else None,
                code=code.rstrip() + "\n",
                index=len(blocks),
            ))
        i = k + 1

    return blocks


# ---------------------------------------------------------------------------
# Filename inference and FileMap assembly
# ---------------------------------------------------------------------------


def infer_filename(block: CodeBlock, lane: Lane, used: set[str]) -> str | None:
    """Pick a filename for an unnamed *block*.

    Uses the lane fallback table keyed by language tag; when that name is
    taken, the block index breaks the tie (``stem_<index>.ext``).  Returns
    ``None`` for languages the lane has no use for (shell transcripts etc.).
    """
    profile = get_profile(lane)
    default = profile.fallback_names.get(block.language)
    if default is None:
        return None
    if default not in used:
        return default
    path = PurePosixPath(default)
    suffix = path.suffix or _TAG_EXTENSION.get(block.language, "")
    candidate = str(path.with_name(f"{path.stem}_{block.index}{suffix}"))
    n = block.index
    while candidate in used:
        n += 1
        candidate = str(path.with_name(f"{path.stem}_{n}{suffix}"))
    return candidate


def assemble_file_map(
    blocks: list[CodeBlock],
    lane: Lane,
    *,
    require_primary: bool = True,
    response_length: int = 0,
) -> FileMap:
    """Assemble extracted blocks into a ``FileMap`` for *lane*.

    Declared names are placed first so inferred names never shadow them.
    When the primary file is missing, the first inferred file with the
    primary's extension is promoted to the primary path.

    Raises ``NoCodeBlocks`` when nothing usable was extracted and
    ``MissingPrimaryFile`` when the primary cannot be found or promoted.
    """
    if not blocks:
        raise NoCodeBlocks(response_length)

    profile = get_profile(lane)
    fm = FileMap(lane=lane)
    used: set[str] = {b.filename for b in blocks if b.filename}

    for block in blocks:
        if block.filename:
            fm.files[block.filename] = block.code
            continue
        name = infer_filename(block, lane, used)
        if name is None:
            continue
        used.add(name)
        fm.files[name] = block.code
        fm.inferred.add(name)

    if not fm.files:
        raise NoCodeBlocks(response_length)

    if require_primary and not fm.has_primary():
        ext = profile.primary_extension
        candidates = [p for p in fm.files if p in fm.inferred and p.lower().endswith(ext)]
        if not candidates:
            # Fall back to a declared file when it is the only one of its kind
            same_ext = [p for p in fm.files if p.lower().endswith(ext)]
            candidates = same_ext if len(same_ext) == 1 else []
        if not candidates:
            raise MissingPrimaryFile(lane.value, profile.primary_file, fm.paths)
        promoted = candidates[0]
        files = {}
        for path, source in fm.files.items():
            files[profile.primary_file if path == promoted else path] = source
        fm.files = files
        fm.inferred.discard(promoted)

    return fm


__all__ = [
    "assemble_file_map",
    "extract_code_blocks",
    "infer_filename",
    "normalise_filename",
    "strip_fences",
]
