"""lanekit contracts — the data shapes shared by parser, repairer and validator.

``ValidationError`` / ``ValidationWarning`` / ``ValidationReport`` and
``CodeBlock`` are frozen pydantic models.  ``FileMap`` is deliberately
mutable: the auto-repairer, the fix loop's merge step and branding all
edit it in place.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from lanekit.lanes import Lane, get_profile

ErrorCategory = Literal["syntax", "security", "structural", "compatibility"]
ErrorSource = Literal["validator", "review"]

# "[path/to/file.ext] message"
_PREFIX_RE = re.compile(r"^\[(?P<file>[^\]\n]+)\]\s*(?P<message>.*)$", re.DOTALL)


# ---------------------------------------------------------------------------
# Validation findings
# ---------------------------------------------------------------------------


class ValidationError(BaseModel):
    """A blocking finding against one generated file."""

    model_config = ConfigDict(frozen=True)

    file: str = Field(default="", description="FileMap path ('' when unattributable)")
    message: str
    category: ErrorCategory
    line: int | None = Field(default=None, ge=1)
    source: ErrorSource = "validator"

    def __str__(self) -> str:
        where = f" (line {self.line})" if self.line else ""
        if self.file:
            return f"[{self.file}] {self.message}{where}"
        return f"{self.message}{where}"


class ValidationWarning(BaseModel):
    """A non-blocking finding; reported, never fails validation."""

    model_config = ConfigDict(frozen=True)

    file: str
    message: str
    line: int | None = Field(default=None, ge=1)

    def __str__(self) -> str:
        where = f" (line {self.line})" if self.line else ""
        return f"[{self.file}] {self.message}{where}"


class ValidationReport(BaseModel):
    """Validator output: blocking errors plus advisory warnings."""

    model_config = ConfigDict(frozen=True)

    errors: list[ValidationError] = Field(default_factory=list)
    warnings: list[ValidationWarning] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def split_file_prefix(text: str) -> tuple[str | None, str]:
    """Split the standard ``"[file] message"`` form.

    Returns ``(None, text)`` when *text* carries no file prefix.
    """
    m = _PREFIX_RE.match(text.strip())
    if not m:
        return None, text.strip()
    return m.group("file").strip(), m.group("message").strip()


# ---------------------------------------------------------------------------
# Code blocks
# ---------------------------------------------------------------------------


class CodeBlock(BaseModel):
    """One fenced code block extracted from an LLM response."""

    model_config = ConfigDict(frozen=True)

    language: str = Field(default="", description="Normalised fence language tag")
    filename: str | None = Field(default=None, description="Declared filename, if any")
    code: str
    index: int = Field(..., ge=0, description="Position among all blocks in the response")


# ---------------------------------------------------------------------------
# FileMap
# ---------------------------------------------------------------------------


@dataclass
class FileMap:
    """Ordered mapping of relative path → source text for one lane."""

    lane: Lane
    files: dict[str, str] = field(default_factory=dict)
    # Paths whose names were inferred rather than declared by the model.
    inferred: set[str] = field(default_factory=set)

    @property
    def primary_path(self) -> str:
        return get_profile(self.lane).primary_file

    @property
    def paths(self) -> list[str]:
        return list(self.files)

    def has_primary(self) -> bool:
        return self.primary_path in self.files

    def copy(self) -> FileMap:
        return FileMap(lane=self.lane, files=dict(self.files), inferred=set(self.inferred))

    def merge(self, other: FileMap, *, only: set[str] | None = None) -> list[str]:
        """Overlay *other*'s files onto this map.

        When *only* is given, files already present here are replaced only if
        listed in *only*; brand-new paths are always added.  Returns the paths
        that changed.
        """
        changed: list[str] = []
        for path, source in other.files.items():
            if path in self.files and only is not None and path not in only:
                continue
            if self.files.get(path) != source:
                changed.append(path)
            self.files[path] = source
            self.inferred.discard(path)
        return changed

    def replace_with(self, other: FileMap) -> None:
        """Adopt *other*'s contents wholesale (all-or-nothing commit)."""
        self.files = dict(other.files)
        self.inferred = set(other.inferred)

    def __len__(self) -> int:
        return len(self.files)

    def __contains__(self, path: object) -> bool:
        return path in self.files


# ---------------------------------------------------------------------------
# Language detection
# ---------------------------------------------------------------------------

_EXTENSION_LANGUAGE: dict[str, str] = {
    ".py": "python",
    ".pyw": "python",
    ".js": "javascript",
    ".mjs": "javascript",
    ".html": "html",
    ".htm": "html",
    ".css": "css",
    ".json": "json",
    ".ps1": "powershell",
    ".psm1": "powershell",
    ".psd1": "psd1",
    ".rs": "rust",
    ".toml": "toml",
    ".txt": "text",
    ".md": "markdown",
}


def detect_language(path: str) -> str:
    """Detect a file's language from its extension (``"unknown"`` otherwise)."""
    return _EXTENSION_LANGUAGE.get(PurePosixPath(path).suffix.lower(), "unknown")


__all__ = [
    "CodeBlock",
    "ErrorCategory",
    "FileMap",
    "ValidationError",
    "ValidationReport",
    "ValidationWarning",
    "detect_language",
    "split_file_prefix",
]
