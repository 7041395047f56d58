"""
Centralized settings for ralph.

:class:`RalphSettings` is the single validated source of truth for the
scheduler's tunables. Every field can be set through a ``RALPH_*``
environment variable (e.g. ``RALPH_PARALLEL=5``) or a ``.env`` file in
the working directory; CLI options override on top via
:meth:`RalphSettings.with_overrides`.

Precedence: CLI options > environment > ``.env`` > field defaults.

Tags:
    configuration, settings, pydantic, ralph
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_BUNDLED_LIB_DIR = Path(__file__).resolve().parent.parent / "lib"


class RalphSettings(BaseSettings):
    """Ralph configuration, resolved from ``RALPH_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="RALPH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Scheduling ───────────────────────────────────────────────
    parallel: int = Field(default=3, ge=1, description="Max concurrent execution units")
    iterations: int = Field(default=100, ge=1, description="Iteration ceiling per sub-spec")
    poll_interval_seconds: float = Field(default=10.0, gt=0, description="Completion poll interval")
    max_wait_seconds: float | None = Field(
        default=None,
        description="Per-unit wait ceiling; None waits indefinitely",
    )

    # ── Git ──────────────────────────────────────────────────────
    remote: str = Field(default="origin")
    branch_prefix: str = Field(default="ralph")
    git_timeout_seconds: int = Field(default=120, ge=1)

    # ── Docker ───────────────────────────────────────────────────
    image_prefix: str = Field(default="ralph-wiggum")
    lib_dir: Path | None = Field(
        default=None,
        description="Docker build context and loop scripts (defaults to the bundled lib/)",
    )
    docker_timeout_seconds: int = Field(default=600, ge=1)

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: Literal["console", "json"] = Field(default="console")

    @field_validator("max_wait_seconds")
    @classmethod
    def _positive_max_wait(cls, value: float | None) -> float | None:
        if value is not None and value <= 0:
            raise ValueError("max_wait_seconds must be positive")
        return value

    @property
    def resolved_lib_dir(self) -> Path:
        return self.lib_dir or _BUNDLED_LIB_DIR

    def with_overrides(self, **overrides: Any) -> RalphSettings:
        """Return a validated copy with non-None *overrides* applied."""
        values = self.model_dump()
        values.update({k: v for k, v in overrides.items() if v is not None})
        return RalphSettings.model_validate(values)


@lru_cache(maxsize=1)
def get_settings() -> RalphSettings:
    """Return the process-wide settings (cached)."""
    return RalphSettings()


def clear_settings_cache() -> None:
    """Drop the cached settings (tests and env reloads)."""
    get_settings.cache_clear()


__all__ = ["RalphSettings", "get_settings", "clear_settings_cache"]
