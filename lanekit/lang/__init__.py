"""Language intelligence models — shared types for all language modules.

Provides ``Symbol`` and ``SyntaxIssue`` used by the language-specific
modules (python_intel, js_intel, markup_intel, rust_intel,
powershell_intel) and by the validator / fix loop.

All models are frozen (immutable after creation).
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class Symbol(BaseModel):
    """A named top-level symbol extracted from source code."""

    model_config = ConfigDict(frozen=True)

    name: str
    kind: Literal[
        "class",
        "function",
        "variable",
        "constant",
        "struct",
        "enum",
        "trait",
        "module",
    ]
    line: int = Field(default=1, ge=1, description="1-based line of the definition")


class SyntaxIssue(BaseModel):
    """A single syntax diagnostic from a language parser."""

    model_config = ConfigDict(frozen=True)

    line: int = Field(..., ge=1)
    column: int = Field(default=0, ge=0)
    message: str
    code: str | None = None
    offset: int | None = Field(default=None, ge=0, description="0-based character offset")


__all__ = [
    "Symbol",
    "SyntaxIssue",
]
