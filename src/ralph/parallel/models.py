"""Data model of the parallel sub-spec scheduler.

``SubSpecStatus`` is the persisted per-node state; everything else here is
transient and lives only for one ``parallel-full`` run.

Status transitions::

    pending ──► in_progress ──► complete        (exit 0 + merge succeeded)
                     │    └───► merge_conflict  (exit 0 + merge failed)
                     └────────► failed          (launch failed / exit != 0)

``in_progress`` is never persisted: results of a batch are applied to
the graph before the manifest is saved.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class SubSpecStatus(str, Enum):
    """Scheduling status of one sub-spec."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    FAILED = "failed"
    MERGE_CONFLICT = "merge_conflict"


class MergeOutcome(str, Enum):
    MERGED = "merged"
    CONFLICT = "conflict"


class RunOutcome(str, Enum):
    """How a scheduler run ended."""

    COMPLETED = "completed"        # every node complete
    FINISHED_WITH_FAILURES = "finished_with_failures"  # nothing left to run, some nodes failed
    STUCK = "stuck"                # pending nodes remain, blocked by failed dependencies
    ABORTED = "aborted"            # no unit of a batch could be launched


@dataclass
class GraphNode:
    """A sub-spec inside the in-memory dependency graph."""

    name: str
    deps: list[str]
    status: SubSpecStatus = SubSpecStatus.PENDING


@dataclass(frozen=True)
class LaunchOptions:
    """Per-run parameters passed to every execution unit."""

    base_branch: str
    iterations: int = 100
    verbose: bool = False


@dataclass(frozen=True)
class ExecutionHandle:
    """Token for one launched execution unit.

    Returned by the launcher, consumed by the waiter, and used by the
    cleanup routine to stop the unit on interrupt.
    """

    sub_spec: str
    container_name: str
    branch: str
    container_id: str = ""


@dataclass(frozen=True)
class UnitResult:
    """Terminal result of one execution unit."""

    handle: ExecutionHandle
    exit_code: int

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class SchedulerOptions:
    parallel: int = 3
    iterations: int = 100
    verbose: bool = False

    def __post_init__(self) -> None:
        if self.parallel < 1:
            raise ValueError("parallel must be >= 1")
        if self.iterations < 1:
            raise ValueError("iterations must be >= 1")


@dataclass
class CycleReport:
    """What happened in one scheduling cycle."""

    cycle: int
    launched: list[str] = field(default_factory=list)
    launch_failed: list[str] = field(default_factory=list)
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    conflicted: list[str] = field(default_factory=list)


@dataclass
class SchedulerResult:
    """Outcome of a whole ``parallel-full`` run."""

    spec_id: str
    outcome: RunOutcome
    statuses: dict[str, SubSpecStatus]
    cycles: list[CycleReport] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.statuses)

    @property
    def complete(self) -> int:
        return sum(1 for s in self.statuses.values() if s is SubSpecStatus.COMPLETE)

    @property
    def unsuccessful(self) -> dict[str, SubSpecStatus]:
        """Nodes that ended ``failed`` or ``merge_conflict``."""
        return {
            name: status
            for name, status in self.statuses.items()
            if status in (SubSpecStatus.FAILED, SubSpecStatus.MERGE_CONFLICT)
        }

    @property
    def succeeded(self) -> bool:
        return self.outcome is RunOutcome.COMPLETED

    @property
    def launched(self) -> list[str]:
        return [name for report in self.cycles for name in report.launched]
