"""
Structured error types for ralph.

Provides a small hierarchy of typed errors that carry enough metadata for
the CLI to report them and for structured logs to index them.

Manifesto:
    - **Typed Error Hierarchy:** Configuration problems, launch problems,
      git problems and persistence problems are different failure modes
      with different blast radii.
    - **Rich Context:** Errors carry the spec, sub-spec, branch and
      container they concern, so a human can intervene manually.
    - **Error Chaining:** The underlying exception (a failed subprocess,
      an ``OSError``) is preserved as ``cause``.

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                           RalphError                             │
        │                 (category, context, cause)                       │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  ConfigError            SchedulingError       LaunchError        │
        │  (CONFIG, fatal)        (SCHEDULING)          (LAUNCH)           │
        │       │                      │                     │             │
        │  NotInitializedError    CycleDetectedError    DockerNotFound     │
        │  SpecNotFoundError                            ContainerCommand   │
        │  ManifestNotFoundError                                           │
        │  MalformedManifestError GitCommandError       PersistenceError   │
        │  MissingDependencyError (INTEGRATION)         (PERSISTENCE)      │
        │  EnvFileMissingError                                             │
        │  RunLockedError                                                  │
        └─────────────────────────────────────────────────────────────────┘

    Only ``ConfigError`` and ``SchedulingError`` are fatal to a whole
    ``parallel-full`` run. Launch, git and persistence errors are caught
    by the scheduler and turned into per-node statuses or log lines.

Examples:
    >>> error = LaunchError("Could not get git remote URL")
    >>> error.with_context(spec_id="auth", sub_spec="01-models")
    LaunchError('Could not get git remote URL', category=LAUNCH)
    >>> error.to_dict()["context"]
    {'spec_id': 'auth', 'sub_spec': '01-models'}

Tags:
    errors, exceptions, error-context, ralph
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and reporting."""

    CONFIG = "CONFIG"                # Missing manifest, malformed graph, lock held
    SCHEDULING = "SCHEDULING"        # Dependency cycle, unreachable nodes
    LAUNCH = "LAUNCH"                # Execution unit failed to start
    EXECUTION = "EXECUTION"          # Execution unit exited non-zero
    INTEGRATION = "INTEGRATION"      # git fetch/merge/push failures
    PERSISTENCE = "PERSISTENCE"      # Manifest write failures
    INTERNAL = "INTERNAL"            # Bugs, unexpected state


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Attributes:
        spec_id: Spec the error concerns
        sub_spec: Sub-spec (graph node) name
        branch: Git branch involved
        container_name: Execution unit container name
        command: Failing CLI command line, if any
        metadata: Additional key-value pairs
    """

    spec_id: str | None = None
    sub_spec: str | None = None
    branch: str | None = None
    container_name: str | None = None
    command: str | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result: dict[str, Any] = {}
        for key in ["spec_id", "sub_spec", "branch", "container_name", "command"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class RalphError(Exception):
    """
    Base exception for all ralph errors.

    Subclasses set ``default_category``. Every instance carries a
    ``category``, an :class:`ErrorContext` and an optional ``cause``.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> RalphError:
        """
        Add context to this error (fluent API).

        Usage:
            raise LaunchError("docker run failed").with_context(
                sub_spec="02-api", container_name="ralph-app-auth-02-api"
            )
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# CONFIGURATION ERRORS (fatal, reported immediately)
# =============================================================================


class ConfigError(RalphError):
    """Configuration problem that prevents a run from starting."""

    default_category = ErrorCategory.CONFIG


class NotInitializedError(ConfigError):
    """The repository has no ``.ralph`` directory."""

    def __init__(self, ralph_dir: str):
        self.ralph_dir = ralph_dir
        super().__init__(f'{ralph_dir} directory not found. Run "ralph init" first.')


class SpecNotFoundError(ConfigError):
    """The spec markdown file does not exist."""

    def __init__(self, spec_id: str, path: str):
        self.spec_id = spec_id
        self.path = path
        super().__init__(
            f"Spec file not found: {path}",
            context=ErrorContext(spec_id=spec_id),
        )


class ManifestNotFoundError(ConfigError):
    """No manifest exists for the spec; the decomposition step never ran."""

    def __init__(self, spec_id: str, path: str):
        self.spec_id = spec_id
        self.path = path
        super().__init__(
            f"No manifest found at {path}. "
            'Run "ralph decompose" first to split the spec into sub-specs.',
            context=ErrorContext(spec_id=spec_id),
        )


class MalformedManifestError(ConfigError):
    """The manifest cannot be turned into a dependency graph."""

    def __init__(self, message: str, spec_id: str | None = None, cause: Exception | None = None):
        super().__init__(message, context=ErrorContext(spec_id=spec_id), cause=cause)


class MissingDependencyError(MalformedManifestError):
    """A node depends on a name that does not exist in the manifest."""

    def __init__(self, node: str, missing: list[str], spec_id: str | None = None):
        self.node = node
        self.missing = missing
        super().__init__(
            f"Sub-spec '{node}' depends on unknown sub-specs: {', '.join(missing)}",
            spec_id=spec_id,
        )
        self.context.sub_spec = node


class EnvFileMissingError(ConfigError):
    """The credentials env file passed to every execution unit is missing."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f'{path} not found. Run "ralph init" to configure credentials.')


class RunLockedError(ConfigError):
    """Another ``parallel-full`` run holds the lock for this spec."""

    def __init__(self, spec_id: str, lock_path: str, holder_pid: int | None):
        self.spec_id = spec_id
        self.lock_path = lock_path
        self.holder_pid = holder_pid
        holder = f"pid {holder_pid}" if holder_pid else "another process"
        super().__init__(
            f"Spec '{spec_id}' is already being scheduled by {holder} (lock: {lock_path})",
            context=ErrorContext(spec_id=spec_id),
        )


# =============================================================================
# SCHEDULING ERRORS
# =============================================================================


class SchedulingError(RalphError):
    """The scheduler cannot make progress."""

    default_category = ErrorCategory.SCHEDULING


class CycleDetectedError(SchedulingError):
    """The pending part of the dependency graph contains a cycle."""

    def __init__(self, cycle: list[str], spec_id: str | None = None):
        self.cycle = cycle
        cycle_str = " -> ".join(cycle)
        super().__init__(
            f"No eligible sub-specs and none in progress. Dependency cycle: {cycle_str}",
            context=ErrorContext(spec_id=spec_id),
        )


# =============================================================================
# LAUNCH / EXECUTION ERRORS (isolated to one node)
# =============================================================================


class LaunchError(RalphError):
    """An execution unit could not be started."""

    default_category = ErrorCategory.LAUNCH


class DockerNotFoundError(LaunchError):
    """The docker CLI is not on PATH."""


class ContainerCommandError(LaunchError):
    """A docker CLI command failed or timed out."""

    def __init__(self, message: str, command: str, returncode: int | None = None, cause: Exception | None = None):
        self.returncode = returncode
        super().__init__(message, context=ErrorContext(command=command), cause=cause)


# =============================================================================
# INTEGRATION / PERSISTENCE ERRORS
# =============================================================================


class GitCommandError(RalphError):
    """A git CLI command failed."""

    default_category = ErrorCategory.INTEGRATION

    def __init__(
        self,
        message: str,
        command: str,
        returncode: int | None = None,
        output: str = "",
        cause: Exception | None = None,
    ):
        self.returncode = returncode
        self.output = output
        super().__init__(message, context=ErrorContext(command=command), cause=cause)


class PersistenceError(RalphError):
    """The manifest could not be written."""

    default_category = ErrorCategory.PERSISTENCE


def categorize_error(error: Exception) -> ErrorCategory:
    """Return the category of *error*, ``INTERNAL`` for foreign exceptions."""
    if isinstance(error, RalphError):
        return error.category
    return ErrorCategory.INTERNAL


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "RalphError",
    "ConfigError",
    "NotInitializedError",
    "SpecNotFoundError",
    "ManifestNotFoundError",
    "MalformedManifestError",
    "MissingDependencyError",
    "EnvFileMissingError",
    "RunLockedError",
    "SchedulingError",
    "CycleDetectedError",
    "LaunchError",
    "DockerNotFoundError",
    "ContainerCommandError",
    "GitCommandError",
    "PersistenceError",
    "categorize_error",
]
