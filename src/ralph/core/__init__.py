"""Core primitives shared by every ralph subsystem."""

from ralph.core.errors import (
    ConfigError,
    CycleDetectedError,
    ErrorCategory,
    ErrorContext,
    GitCommandError,
    LaunchError,
    MalformedManifestError,
    ManifestNotFoundError,
    PersistenceError,
    RalphError,
)

__all__ = [
    "ConfigError",
    "CycleDetectedError",
    "ErrorCategory",
    "ErrorContext",
    "GitCommandError",
    "LaunchError",
    "MalformedManifestError",
    "ManifestNotFoundError",
    "PersistenceError",
    "RalphError",
]
