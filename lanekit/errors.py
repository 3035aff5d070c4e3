"""lanekit error hierarchy.

Every error carries typed fields (not just a message string),
supports ``to_dict()`` for serialisation into build records,
and has a readable ``__str__`` for logging.
"""

from __future__ import annotations


class LaneKitError(Exception):
    """Base error for all lanekit failures."""

    def __init__(self, message: str, *, detail: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    def to_dict(self) -> dict:
        return {"error": type(self).__name__, "message": self.message, **self.detail}

    def __str__(self) -> str:
        return self.message


class SandboxViolation(LaneKitError):
    """A generated file path resolved outside the output root."""

    def __init__(self, path: str, *, root: str | None = None, reason: str | None = None) -> None:
        self.path = path
        self.root = root or ""
        self.reason = reason or "path escapes the output directory"
        detail: dict = {"path": path, "reason": self.reason}
        if root:
            detail["root"] = root
        super().__init__(
            f"Sandbox violation: {self.reason} (path={path!r}, root={self.root!r})",
            detail=detail,
        )


class ParseError(LaneKitError):
    """Failed to parse tool or manifest output into a structured result."""

    def __init__(self, raw_output: str, parser_name: str, *, reason: str = "") -> None:
        self.raw_output = raw_output
        self.parser_name = parser_name
        self.reason = reason
        msg = f"Parser '{parser_name}' failed to parse output ({len(raw_output)} chars)"
        if reason:
            msg += f": {reason}"
        super().__init__(
            msg,
            detail={"parser_name": parser_name, "raw_output_length": len(raw_output)},
        )


class UnknownLane(LaneKitError):
    """Requested lane name is not one of the fixed lanes."""

    def __init__(self, lane: str, available: list[str]) -> None:
        self.lane = lane
        self.available = available
        super().__init__(
            f"Lane '{lane}' not found. Available: {', '.join(available)}",
            detail={"lane": lane, "available": available},
        )


class NoCodeBlocks(LaneKitError):
    """An LLM response contained no extractable code blocks."""

    def __init__(self, response_length: int) -> None:
        self.response_length = response_length
        super().__init__(
            f"No code blocks found in response ({response_length} chars)",
            detail={"response_length": response_length},
        )


class MissingPrimaryFile(LaneKitError):
    """The lane's primary entry point is absent and nothing could be promoted."""

    def __init__(self, lane: str, primary: str, available: list[str]) -> None:
        self.lane = lane
        self.primary = primary
        self.available = available
        super().__init__(
            f"Missing primary file '{primary}' for lane '{lane}' "
            f"(got: {', '.join(available) or 'nothing'})",
            detail={"lane": lane, "primary": primary, "available": available},
        )


__all__ = [
    "LaneKitError",
    "MissingPrimaryFile",
    "NoCodeBlocks",
    "ParseError",
    "SandboxViolation",
    "UnknownLane",
]
