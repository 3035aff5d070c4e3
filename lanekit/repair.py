"""AutoRepairer — deterministic source patches for common generation mistakes.

No LLM involvement.  Each file is dispatched by language to the repairs
that apply to it:

- PowerShell: ambiguous ``"$name:"`` references, and (when the lane is
  pinned to PowerShell 5.1) the PowerShell 7 null operators.
- Python: body indentation after block-opening lines.
- Rust: missing ``'a`` lifetimes on structs that hold references.

Repairs are computed on a copy of the FileMap and committed in one step,
so a failure part-way through leaves the caller's map untouched.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, ConfigDict, Field

from lanekit.contracts import FileMap, detect_language
from lanekit.lanes import get_profile
from lanekit.lang import powershell_intel, python_intel, rust_intel

logger = logging.getLogger(__name__)

DEFAULT_MAX_PASSES = 30
POWERSHELL_51 = "powershell-5.1"


class RepairRecord(BaseModel):
    """One kind of repair applied to one file."""

    model_config = ConfigDict(frozen=True)

    file: str
    kind: str
    count: int = Field(..., ge=1)


class AutoRepairer:
    """Apply deterministic repairs to a FileMap in place.

    Parameters
    ----------
    max_passes:
        Upper bound on re-scan passes for the iterative PowerShell repairs.
    pinned_runtime:
        Overrides the lane's minimum runtime (``"powershell-5.1"`` enables
        the operator downgrade).  ``None`` uses the lane profile.
    """

    def __init__(self, *, max_passes: int = DEFAULT_MAX_PASSES, pinned_runtime: str | None = None) -> None:
        self.max_passes = max_passes
        self.pinned_runtime = pinned_runtime
        self.last_records: list[RepairRecord] = []

    def _runtime_for(self, file_map: FileMap) -> str | None:
        if self.pinned_runtime is not None:
            return self.pinned_runtime
        return get_profile(file_map.lane).min_runtime

    def repair_source(self, path: str, source: str, *, runtime: str | None = None) -> tuple[str, list[RepairRecord]]:
        """Repair a single file's source.  Returns ``(source, records)``."""
        language = detect_language(path)
        records: list[RepairRecord] = []

        def _apply(kind: str, result: tuple[str, int]) -> str:
            patched, count = result
            if count:
                records.append(RepairRecord(file=path, kind=kind, count=count))
            return patched

        if language == "powershell":
            source = _apply(
                "ambiguous_reference",
                powershell_intel.fix_ambiguous_references(source, max_passes=self.max_passes),
            )
            if runtime == POWERSHELL_51:
                source = _apply(
                    "operator_downgrade",
                    powershell_intel.downgrade_operators(source, max_passes=self.max_passes),
                )
        elif language == "python":
            source = _apply("indentation", python_intel.normalise_indentation(source))
        elif language == "rust":
            source = _apply("lifetime", rust_intel.add_missing_lifetimes(source))

        return source, records

    def repair(self, file_map: FileMap) -> int:
        """Repair every file of *file_map* in place; returns the repair count."""
        runtime = self._runtime_for(file_map)
        candidate = file_map.copy()
        records: list[RepairRecord] = []

        try:
            for path, source in file_map.files.items():
                patched, file_records = self.repair_source(path, source, runtime=runtime)
                if file_records:
                    candidate.files[path] = patched
                    records.extend(file_records)
        except Exception:
            logger.exception("Auto-repair aborted; FileMap left unchanged")
            self.last_records = []
            return 0

        self.last_records = records
        total = sum(r.count for r in records)
        if total:
            file_map.replace_with(candidate)
            for r in records:
                logger.info("Auto-repair: %s x%d in %s", r.kind, r.count, r.file)
        return total


__all__ = [
    "AutoRepairer",
    "DEFAULT_MAX_PASSES",
    "RepairRecord",
]
