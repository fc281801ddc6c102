"""Application configuration loaded from environment variables.

Uses ``pydantic-settings`` for automatic env-var loading, type coercion,
and ``.env`` file support.  Validates required settings on import — fails
fast if critical vars are missing outside of tests.
"""

VERSION = "0.1.0"

import sys

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from relay_ide.contracts import PostWriteHook


# ---------------------------------------------------------------------------
# Required var names, checked after instantiation (not during), so tests
# that leave them blank still work.
# ---------------------------------------------------------------------------
_REQUIRED_VARS: list[str] = [
    "DATABASE_URL",
]


class Settings(BaseSettings):
    """Application settings — sourced from environment / ``.env`` file.

    Required vars (must be set in production, may be blank in test):
      DATABASE_URL
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # -- required in production (default empty so tests don't fail) --
    DATABASE_URL: str = ""

    # -- optional with sensible defaults --
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    # Provider tag used when a session does not name one.
    DEFAULT_PROVIDER: str = "anthropic"

    # Tool limits
    MAX_READ_FILE_BYTES: int = 50_000
    MAX_WRITE_FILE_BYTES: int = 500_000
    MAX_SEARCH_RESULTS: int = 50

    # Post-edit feedback: lines of context around each change, and the
    # largest gap (in lines) across which neighbouring changes are shown
    # as one block.
    EDIT_CONTEXT_LINES: int = Field(default=5, ge=0)
    EDIT_MERGE_GAP_LINES: int = Field(default=10, ge=0)

    # Hard stop for the session driver loop.
    MAX_TURNS_PER_SESSION: int = Field(default=50, ge=1)

    # Provider round-trips (model output -> tool results) allowed in one turn.
    MAX_STEPS_PER_TURN: int = Field(default=25, ge=1)

    # Commands run after write_file / edit_file / multi_edit, as a JSON list
    # of {"name", "command", "glob", "cwd", "on_failure"} objects.
    POST_WRITE_HOOKS: list[PostWriteHook] = Field(default_factory=list)
    POST_WRITE_HOOK_TIMEOUT_S: float = Field(default=30.0, gt=0)

    # Default downstream action for fan-in groups: POST the finished group
    # here.  Empty leaves retries to triggers registered in-process.
    FAN_IN_DOWNSTREAM_URL: str = ""
    FAN_IN_DOWNSTREAM_TIMEOUT_S: float = Field(default=30.0, gt=0)

    # "postgres" uses fan_in_groups / fan_in_members; "memory" keeps the
    # gate in-process (single worker only).
    FAN_IN_STORE: str = "postgres"

    @field_validator("FAN_IN_STORE")
    @classmethod
    def _check_store(cls, v: str) -> str:
        if v not in ("postgres", "memory"):
            raise ValueError("FAN_IN_STORE must be 'postgres' or 'memory'")
        return v


settings = Settings()


# Validate at import time, but only when NOT running under pytest.
if "pytest" not in sys.modules:
    _missing = [v for v in _REQUIRED_VARS if not getattr(settings, v)]
    if _missing:
        print(
            f"[config] FATAL: missing required environment variables: "
            f"{', '.join(_missing)}",
            file=sys.stderr,
        )
        sys.exit(1)
