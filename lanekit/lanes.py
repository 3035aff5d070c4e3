"""Lane table — the fixed target platforms the pipeline can produce.

Each lane is described by a frozen ``LaneProfile``: its primary entry
point, optional manifest, pinned minimum runtime, feature/token cost
figures and the filename fallback table used when a generated code block
does not declare a filename.

All data here is static; nothing is read from the environment.
"""

from __future__ import annotations

import enum
from pathlib import PurePosixPath

from pydantic import BaseModel, ConfigDict, Field

from lanekit.errors import UnknownLane


class Lane(str, enum.Enum):
    """The fixed set of target lanes."""

    WEB = "web"
    PYTHON_SCRIPT = "python_script"
    PYTHON_APP = "python_app"
    POWERSHELL = "powershell"
    POWERSHELL_MODULE = "powershell_module"
    RUST = "rust"


class LaneProfile(BaseModel):
    """Static description of one lane."""

    model_config = ConfigDict(frozen=True)

    lane: Lane
    description: str
    primary_file: str = Field(..., description="Lane-defined entry-point path")
    manifest_file: str | None = Field(default=None, description="Package manifest path, if any")
    min_runtime: str | None = Field(default=None, description="Pinned minimum runtime, e.g. 'powershell-5.1'")
    hard_feature_cap: int = Field(..., ge=5)
    base_cost: int = Field(..., ge=0, description="Expected output tokens independent of features")
    per_feature_cost: int = Field(..., gt=0, description="Expected output tokens per feature")
    self_contained: bool = Field(default=False, description="Artifact may not reference remote assets")
    library: bool = Field(default=False, description="Library lane with an exported API surface")
    compiled: bool = Field(default=False, description="Native lane whose imports must resolve against the manifest")
    fallback_names: dict[str, str] = Field(
        default_factory=dict,
        description="Normalised language tag → default filename for unnamed blocks",
    )

    @property
    def primary_extension(self) -> str:
        return PurePosixPath(self.primary_file).suffix.lower()


# ---------------------------------------------------------------------------
# Language tag normalisation
# ---------------------------------------------------------------------------

_TAG_ALIASES: dict[str, str] = {
    "py": "python",
    "python3": "python",
    "js": "javascript",
    "mjs": "javascript",
    "jsx": "javascript",
    "htm": "html",
    "xhtml": "html",
    "ps": "powershell",
    "ps1": "powershell",
    "psm1": "powershell",
    "pwsh": "powershell",
    "posh": "powershell",
    "psd1": "psd1",
    "rs": "rust",
    "txt": "text",
    "plaintext": "text",
    "requirements": "text",
    "requirements.txt": "text",
    "md": "markdown",
    "yml": "yaml",
}


def normalise_tag(tag: str | None) -> str:
    """Map a fence language tag to its canonical name (``""`` when absent)."""
    if not tag:
        return ""
    t = tag.strip().lower()
    return _TAG_ALIASES.get(t, t)


# ---------------------------------------------------------------------------
# Lane table
# ---------------------------------------------------------------------------

LANE_PROFILES: dict[Lane, LaneProfile] = {
    Lane.WEB: LaneProfile(
        lane=Lane.WEB,
        description="Self-contained single-page HTML application",
        primary_file="index.html",
        hard_feature_cap=12,
        base_cost=2500,
        per_feature_cost=900,
        self_contained=True,
        fallback_names={
            "html": "index.html",
            "css": "styles.css",
            "javascript": "app.js",
            "json": "data.json",
        },
    ),
    Lane.PYTHON_SCRIPT: LaneProfile(
        lane=Lane.PYTHON_SCRIPT,
        description="Single-file Python script",
        primary_file="main.py",
        hard_feature_cap=8,
        base_cost=1500,
        per_feature_cost=700,
        fallback_names={
            "python": "main.py",
            "text": "requirements.txt",
        },
    ),
    Lane.PYTHON_APP: LaneProfile(
        lane=Lane.PYTHON_APP,
        description="Multi-module Python application",
        primary_file="main.py",
        manifest_file="requirements.txt",
        hard_feature_cap=15,
        base_cost=3000,
        per_feature_cost=1100,
        fallback_names={
            "python": "main.py",
            "text": "requirements.txt",
            "toml": "pyproject.toml",
            "json": "config.json",
        },
    ),
    Lane.POWERSHELL: LaneProfile(
        lane=Lane.POWERSHELL,
        description="Windows PowerShell script",
        primary_file="Main.ps1",
        min_runtime="powershell-5.1",
        hard_feature_cap=10,
        base_cost=2000,
        per_feature_cost=800,
        fallback_names={
            "powershell": "Main.ps1",
            "json": "config.json",
        },
    ),
    Lane.POWERSHELL_MODULE: LaneProfile(
        lane=Lane.POWERSHELL_MODULE,
        description="PowerShell module (library lane)",
        primary_file="Module.psm1",
        manifest_file="Module.psd1",
        min_runtime="powershell-5.1",
        hard_feature_cap=10,
        base_cost=2500,
        per_feature_cost=900,
        library=True,
        fallback_names={
            "powershell": "Module.psm1",
            "psd1": "Module.psd1",
        },
    ),
    Lane.RUST: LaneProfile(
        lane=Lane.RUST,
        description="Native Rust binary",
        primary_file="src/main.rs",
        manifest_file="Cargo.toml",
        hard_feature_cap=10,
        base_cost=2500,
        per_feature_cost=1000,
        compiled=True,
        fallback_names={
            "rust": "src/main.rs",
            "toml": "Cargo.toml",
        },
    ),
}


def get_profile(lane: Lane | str) -> LaneProfile:
    """Return the profile for *lane* (enum or value string).

    Raises ``UnknownLane`` for names outside the fixed set.
    """
    try:
        key = lane if isinstance(lane, Lane) else Lane(str(lane).strip().lower())
    except ValueError:
        raise UnknownLane(str(lane), [l.value for l in Lane]) from None
    return LANE_PROFILES[key]


def parse_lane(value: str | None) -> Lane | None:
    """Return the ``Lane`` named by *value*, or ``None`` when it is not a lane."""
    if not value:
        return None
    try:
        return Lane(value.strip().lower())
    except ValueError:
        return None


__all__ = [
    "LANE_PROFILES",
    "Lane",
    "LaneProfile",
    "get_profile",
    "normalise_tag",
    "parse_lane",
]
