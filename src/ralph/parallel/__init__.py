"""
Parallel sub-spec scheduling (``ralph parallel-full``).

Leaf-first:

    manifest    load / atomically save ``.ralph/specs/<spec>/manifest.json``
    graph       manifest -> dependency graph, eligibility, cycle detection
    launcher    one detached container per eligible sub-spec
    waiter      poll units until exited / dead
    integrator  merge sub-spec branches into ``ralph/<spec>``
    scheduler   the control loop composing all of the above
"""

from ralph.parallel.graph import DependencyGraph, build_graph
from ralph.parallel.integrator import BranchIntegrator, ConflictRecord, ManifestCheckpointer
from ralph.parallel.launcher import ExecutionLauncher, UnitTracker
from ralph.parallel.manifest import Manifest, ManifestStore
from ralph.parallel.models import (
    CycleReport,
    ExecutionHandle,
    GraphNode,
    LaunchOptions,
    MergeOutcome,
    RunOutcome,
    SchedulerOptions,
    SchedulerResult,
    SubSpecStatus,
    UnitResult,
)
from ralph.parallel.preflight import run_preflight
from ralph.parallel.scheduler import ParallelScheduler, SchedulerReporter
from ralph.parallel.waiter import CompletionWaiter

__all__ = [
    "BranchIntegrator",
    "CompletionWaiter",
    "ConflictRecord",
    "CycleReport",
    "DependencyGraph",
    "ExecutionHandle",
    "ExecutionLauncher",
    "GraphNode",
    "LaunchOptions",
    "Manifest",
    "ManifestCheckpointer",
    "ManifestStore",
    "MergeOutcome",
    "ParallelScheduler",
    "RunOutcome",
    "SchedulerOptions",
    "SchedulerReporter",
    "SchedulerResult",
    "SubSpecStatus",
    "UnitResult",
    "UnitTracker",
    "build_graph",
    "run_preflight",
]
