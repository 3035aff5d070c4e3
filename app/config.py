"""Application configuration loaded from environment variables.

Uses ``pydantic-settings`` for automatic env-var loading, type coercion,
and ``.env`` file support.  Required variables are checked by the CLI per
command (``missing_required_vars``) so that commands which never touch the
database or the LLM, such as ``laneforge route``, run without them.
"""

VERSION = "0.1.0"

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ---------------------------------------------------------------------------
# Required var names per CLI command, checked after instantiation (not
# during), so tests that leave them blank still work.
# ---------------------------------------------------------------------------
REQUIRED_VARS: dict[str, list[str]] = {
    "build": ["DATABASE_URL"],
    "constraints": ["DATABASE_URL"],
    "route": [],
    "history": ["DATABASE_URL"],
}


class Settings(BaseSettings):
    """Application settings — sourced from environment / ``.env`` file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # -- required in production (default empty so tests don't fail) --
    DATABASE_URL: str = ""

    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""  # optional rotating plain-text log

    # -------------------------------------------------------------------------
    # LLM provider and models.
    #
    #   "haiku": cheapest, use while iterating on prompts
    #   "sonnet": balanced default
    #   "opus": highest quality code generation
    #
    # Per-role overrides below take precedence when set; FORCE_MODEL beats
    # everything (cost-safe testing).
    # -------------------------------------------------------------------------
    ANTHROPIC_API_KEY: str = ""
    OPENAI_API_KEY: str = ""
    LLM_PROVIDER: str = ""  # "openai" | "anthropic" | auto
    BUILD_MODEL_TIER: str = "sonnet"  # "haiku" | "sonnet" | "opus"
    FORCE_MODEL: str = ""

    LLM_CODEGEN_MODEL: str = ""
    LLM_FAST_MODEL: str = ""      # spec refinement (structured decomposition)
    LLM_PLANNER_MODEL: str = ""   # planner + contract generator
    LLM_REVIEW_MODEL: str = ""

    LLM_TEMPERATURE: float = Field(default=0.2, ge=0.0, le=1.0)
    LLM_MAX_RETRIES: int = Field(default=4, ge=0)
    # Timeouts scale with requested output size: base + per-1K-tokens
    LLM_TIMEOUT_BASE_S: float = 60.0
    LLM_TIMEOUT_PER_1K_TOKENS_S: float = 8.0
    # Explicit output budget for code generation (0 = model capacity)
    OUTPUT_BUDGET_TOKENS: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _apply_force_model(self) -> "Settings":
        """If FORCE_MODEL is set, overwrite every per-role model with it."""
        if self.FORCE_MODEL:
            self.LLM_CODEGEN_MODEL = self.FORCE_MODEL
            self.LLM_FAST_MODEL = self.FORCE_MODEL
            self.LLM_PLANNER_MODEL = self.FORCE_MODEL
            self.LLM_REVIEW_MODEL = self.FORCE_MODEL
        return self

    # -- filesystem --
    RAW_LOG_DIR: str = "logs/raw"
    OUTPUT_DIR: str = "builds"

    # -- external tools --
    PWSH_PATH: str = ""           # enables the real PowerShell parser
    PWSH_TIMEOUT_S: float = 30.0
    CARGO_PATH: str = "cargo"
    BACKEND_TIMEOUT_S: float = 600.0
    SKIP_BUILD_BACKEND: bool = False

    # -- post-processing --
    BRANDING_ENABLED: bool = True
    BRANDING_TEXT: str = "Built with LaneForge"

    # -------------------------------------------------------------------------
    # Pipeline heuristics.  These are part of the pipeline's contract; change
    # them only together with the tests that pin them.
    # -------------------------------------------------------------------------
    PLANNING_WORD_THRESHOLD: int = 150
    BUDGET_PRUNE_RATIO: float = 0.8
    BUDGET_ABORT_RATIO: float = 0.9
    BUDGET_SAFE_RATIO: float = 0.7
    MIN_FEATURE_CAP: int = 5
    MIN_OUTPUT_BUDGET: int = 4096
    FIX_MAX_RETRIES: int = Field(default=3, ge=1)
    REVIEW_FIX_RETRIES: int = Field(default=1, ge=0)
    AUTOREPAIR_MAX_PASSES: int = Field(default=30, ge=1)
    CONSTRAINT_SIMILARITY: float = 0.6
    CONSTRAINT_DECAY_DAYS: int = 90
    CONSTRAINT_LANE_CAP: int = 50
    CONSTRAINT_PROMPT_LIMIT: int = 10


settings = Settings()

# ---------------------------------------------------------------------------
# Model tier resolution
# ---------------------------------------------------------------------------
# Maps tier name → model ID for each pipeline role.  Spec refinement always
# runs on the cheap tier; only code generation moves up with the tier.
_TIER_MAP: dict[str, dict[str, str]] = {
    "haiku": {
        "codegen": "claude-haiku-4-5",
        "fast": "claude-haiku-4-5",
        "planner": "claude-haiku-4-5",
        "review": "claude-haiku-4-5",
    },
    "sonnet": {
        "codegen": "claude-sonnet-4-6",
        "fast": "claude-haiku-4-5",
        "planner": "claude-sonnet-4-6",
        "review": "claude-sonnet-4-6",
    },
    "opus": {
        "codegen": "claude-opus-4-6",
        "fast": "claude-haiku-4-5",
        "planner": "claude-sonnet-4-6",
        "review": "claude-sonnet-4-6",
    },
}

_ROLE_OVERRIDES: dict[str, str] = {
    "codegen": "LLM_CODEGEN_MODEL",
    "fast": "LLM_FAST_MODEL",
    "planner": "LLM_PLANNER_MODEL",
    "review": "LLM_REVIEW_MODEL",
}


def get_model_for_role(role: str) -> str:
    """Return the resolved model ID for a pipeline role.

    Resolution order:
      1. FORCE_MODEL (absolute override)
      2. Per-role env var (LLM_CODEGEN_MODEL etc.)
      3. BUILD_MODEL_TIER tier default

    Args:
        role: "codegen" | "fast" | "planner" | "review"
    """
    if settings.FORCE_MODEL:
        return settings.FORCE_MODEL

    override_attr = _ROLE_OVERRIDES.get(role)
    if override_attr:
        override = getattr(settings, override_attr, "")
        if override:
            return override
    tier_models = _TIER_MAP.get(settings.BUILD_MODEL_TIER, _TIER_MAP["sonnet"])
    return tier_models.get(role, "claude-haiku-4-5")


def resolve_provider() -> str:
    """Return ``"anthropic"`` or ``"openai"`` (explicit setting, else by key)."""
    if settings.LLM_PROVIDER in ("anthropic", "openai"):
        return settings.LLM_PROVIDER
    if not settings.ANTHROPIC_API_KEY and settings.OPENAI_API_KEY:
        return "openai"
    return "anthropic"


def missing_required_vars(command: str) -> list[str]:
    """Names of required settings that are blank for *command*."""
    needed = list(REQUIRED_VARS.get(command, []))
    if command == "build":
        needed.append("OPENAI_API_KEY" if resolve_provider() == "openai" else "ANTHROPIC_API_KEY")
    return [name for name in needed if not getattr(settings, name)]
