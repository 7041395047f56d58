"""
Scheduler Loop for ``parallel-full``.

One run repeats a cycle until the graph is finished or cannot move::

    Scheduling ─► Launching ─► Waiting ─► Integrating ─► Persisting ─┐
        ▲                                                            │
        └────────────────────────────────────────────────────────────┘

Per cycle:
    1. rebuild the graph from the in-memory manifest document
    2. take the first ``parallel`` eligible nodes, mark them in_progress
    3. launch each one; a launch failure marks only that node failed
    4. wait for every launched unit concurrently
    5. exit 0 -> merge (complete / merge_conflict), else failed
    6. destroy every unit
    7. write statuses back, save the manifest, commit + push it

Terminal conditions:
    COMPLETED               every node complete
    FINISHED_WITH_FAILURES  nothing pending, some nodes failed/conflicted
    STUCK                   pending nodes blocked by unsuccessful deps
    ABORTED                 no member of a batch could be launched
    CycleDetectedError      non-complete nodes form a dependency cycle;
                            checked once before the first cycle

The graph is only mutated by this coroutine, between await points.
Blocking subprocess work (launch, merge, destroy) runs in worker threads.
"""

from __future__ import annotations

import asyncio
from typing import Protocol

from ralph.core.errors import CycleDetectedError, LaunchError, PersistenceError, RalphError
from ralph.core.logging import LogContext, get_logger
from ralph.parallel.graph import DependencyGraph, build_graph
from ralph.parallel.manifest import Manifest, ManifestStore
from ralph.parallel.models import (
    CycleReport,
    ExecutionHandle,
    LaunchOptions,
    MergeOutcome,
    RunOutcome,
    SchedulerOptions,
    SchedulerResult,
    SubSpecStatus,
    UnitResult,
)

logger = get_logger(__name__)

FAILURE_LOG_LINES = 20


class Launcher(Protocol):
    def launch(self, spec_id: str, sub_spec: str, opts: LaunchOptions) -> ExecutionHandle: ...

    def destroy(self, handle: ExecutionHandle) -> None: ...

    def failure_logs(self, handle: ExecutionHandle, lines: int = 20) -> str: ...

    def stop_all(self) -> list[ExecutionHandle]: ...


class Waiter(Protocol):
    async def wait_all(self, handles: list[ExecutionHandle]) -> list[UnitResult]: ...


class Integrator(Protocol):
    def merge(self, spec_id: str, sub_spec_branch: str) -> MergeOutcome: ...


class Checkpointer(Protocol):
    def checkpoint(self, spec_id: str, complete: int, total: int) -> bool: ...


class SchedulerReporter:
    """Progress callbacks. The default implementation does nothing."""

    def run_started(self, spec_id: str, graph: DependencyGraph, options: SchedulerOptions) -> None:
        pass

    def cycle_started(self, cycle: int, batch: list[str]) -> None:
        pass

    def unit_launched(self, handle: ExecutionHandle) -> None:
        pass

    def launch_failed(self, sub_spec: str, error: RalphError) -> None:
        pass

    def waiting(self, handles: list[ExecutionHandle]) -> None:
        pass

    def unit_finished(self, result: UnitResult, status: SubSpecStatus, logs: str = "") -> None:
        pass

    def cycle_finished(self, report: CycleReport, complete: int, total: int) -> None:
        pass


class ParallelScheduler:
    """Runs the sub-specs of one spec with bounded concurrency."""

    def __init__(
        self,
        store: ManifestStore,
        launcher: Launcher,
        waiter: Waiter,
        integrator: Integrator,
        checkpointer: Checkpointer | None = None,
        options: SchedulerOptions | None = None,
        reporter: SchedulerReporter | None = None,
    ) -> None:
        self.store = store
        self.launcher = launcher
        self.waiter = waiter
        self.integrator = integrator
        self.checkpointer = checkpointer
        self.options = options or SchedulerOptions()
        self.reporter = reporter or SchedulerReporter()

    async def run(self, spec_id: str, base_branch: str = "main") -> SchedulerResult:
        """Schedule *spec_id* until it is finished, stuck or aborted.

        Raises:
            ManifestNotFoundError: No manifest for *spec_id*.
            MalformedManifestError: The manifest cannot be turned into a graph.
            CycleDetectedError: Non-complete nodes depend on each other;
                raised before anything is launched or saved.
        """
        manifest = self.store.load(spec_id)
        graph = build_graph(manifest)
        cycle = graph.find_cycle()
        if cycle:
            logger.error("scheduler.cycle_detected", spec=spec_id, cycle=cycle)
            raise CycleDetectedError(cycle, spec_id)

        launch_opts = LaunchOptions(
            base_branch=base_branch,
            iterations=self.options.iterations,
            verbose=self.options.verbose,
        )

        orphans = graph.in_progress()
        if orphans:
            logger.warning("scheduler.orphans_reset", spec=spec_id, sub_specs=orphans)
            for name in orphans:
                graph.set_status(name, SubSpecStatus.PENDING)
            self._save(manifest, graph)

        self.reporter.run_started(spec_id, graph, self.options)
        logger.info(
            "scheduler.started",
            spec=spec_id,
            total=len(graph),
            complete=graph.complete_count,
            parallel=self.options.parallel,
        )

        cycles: list[CycleReport] = []
        async with LogContext(spec=spec_id):
            try:
                while True:
                    graph = build_graph(manifest)
                    eligible = graph.eligible()
                    if not eligible:
                        return self._finish(spec_id, graph, cycles)

                    report = await self._run_cycle(
                        spec_id, manifest, graph, eligible, launch_opts, len(cycles) + 1
                    )
                    cycles.append(report)
                    if not report.launched:
                        logger.error("scheduler.batch_launch_failed", batch=report.launch_failed)
                        return self._result(spec_id, RunOutcome.ABORTED, graph, cycles)
            finally:
                self._abandon(spec_id, manifest, graph)

    async def _run_cycle(
        self,
        spec_id: str,
        manifest: Manifest,
        graph: DependencyGraph,
        eligible: list[str],
        launch_opts: LaunchOptions,
        cycle: int,
    ) -> CycleReport:
        batch = eligible[: self.options.parallel]
        report = CycleReport(cycle=cycle)
        for name in batch:
            graph.set_status(name, SubSpecStatus.IN_PROGRESS)

        async with LogContext(cycle=cycle):
            logger.info("cycle.started", batch=batch, eligible=len(eligible))
            self.reporter.cycle_started(cycle, batch)

            running: list[ExecutionHandle] = []
            for name in batch:
                try:
                    handle = await self._launch(spec_id, name, launch_opts)
                except LaunchError as e:
                    logger.error(
                        "unit.launch_failed",
                        sub_spec=name,
                        container=e.context.container_name,
                        error=e.message,
                    )
                    graph.set_status(name, SubSpecStatus.FAILED)
                    report.launch_failed.append(name)
                    self.reporter.launch_failed(name, e)
                    continue
                running.append(handle)
                report.launched.append(name)
                self.reporter.unit_launched(handle)

            if running:
                self.reporter.waiting(running)
                results = await self.waiter.wait_all(running)
                # apply the whole batch before persisting
                for result in results:
                    await self._integrate(spec_id, graph, result, report)

            self._persist(spec_id, manifest, graph)
            complete, total = graph.complete_count, len(graph)
            logger.info("cycle.finished", complete=complete, total=total)
            self.reporter.cycle_finished(report, complete, total)
        return report

    async def _launch(self, spec_id: str, name: str, launch_opts: LaunchOptions) -> ExecutionHandle:
        """Launch *name* in a worker thread.

        Cancelling the await does not stop the thread. On cancellation the
        thread is waited for, so a unit it starts is tracked by the
        launcher before the cleanup in :meth:`run` stops every unit.
        """
        launch = asyncio.ensure_future(
            asyncio.to_thread(self.launcher.launch, spec_id, name, launch_opts)
        )
        try:
            return await asyncio.shield(launch)
        except asyncio.CancelledError:
            await asyncio.gather(launch, return_exceptions=True)
            raise

    async def _integrate(
        self,
        spec_id: str,
        graph: DependencyGraph,
        result: UnitResult,
        report: CycleReport,
    ) -> None:
        handle = result.handle
        logs = ""
        if result.succeeded:
            outcome = await asyncio.to_thread(self.integrator.merge, spec_id, handle.branch)
            if outcome is MergeOutcome.MERGED:
                status = SubSpecStatus.COMPLETE
                report.completed.append(handle.sub_spec)
            else:
                status = SubSpecStatus.MERGE_CONFLICT
                report.conflicted.append(handle.sub_spec)
        else:
            status = SubSpecStatus.FAILED
            report.failed.append(handle.sub_spec)
            logs = await asyncio.to_thread(self.launcher.failure_logs, handle, FAILURE_LOG_LINES)
            logger.error(
                "unit.failed",
                sub_spec=handle.sub_spec,
                exit_code=result.exit_code,
                container=handle.container_name,
                branch=handle.branch,
                logs=logs,
            )

        graph.set_status(handle.sub_spec, status)
        self.reporter.unit_finished(result, status, logs)
        try:
            await asyncio.to_thread(self.launcher.destroy, handle)
        except RalphError as e:
            logger.warning("unit.destroy_failed", container=handle.container_name, error=e.message)

    # ── Persistence ──────────────────────────────────────────────

    def _save(self, manifest: Manifest, graph: DependencyGraph) -> bool:
        manifest.apply_statuses(graph.statuses())
        try:
            self.store.save(manifest)
        except PersistenceError as e:
            logger.error("manifest.save_failed", spec=manifest.spec_id, error=e.message)
            return False
        return True

    def _persist(self, spec_id: str, manifest: Manifest, graph: DependencyGraph) -> None:
        if self._save(manifest, graph) and self.checkpointer is not None:
            self.checkpointer.checkpoint(spec_id, graph.complete_count, len(graph))

    def _abandon(self, spec_id: str, manifest: Manifest, graph: DependencyGraph) -> None:
        """Stop units left running by an interrupted cycle and return their nodes to pending."""
        stopped = self.launcher.stop_all()
        in_flight = graph.in_progress()
        if not stopped and not in_flight:
            return
        logger.warning(
            "scheduler.interrupted",
            spec=spec_id,
            stopped=[h.container_name for h in stopped],
            reset=in_flight,
        )
        for name in in_flight:
            graph.set_status(name, SubSpecStatus.PENDING)
        self._save(manifest, graph)

    # ── Outcome ──────────────────────────────────────────────────

    def _finish(
        self, spec_id: str, graph: DependencyGraph, cycles: list[CycleReport]
    ) -> SchedulerResult:
        if graph.is_complete():
            return self._result(spec_id, RunOutcome.COMPLETED, graph, cycles)

        pending = graph.pending()
        if not pending:
            return self._result(spec_id, RunOutcome.FINISHED_WITH_FAILURES, graph, cycles)

        logger.warning(
            "scheduler.stuck",
            blocked={name: graph.blocked_by(name) for name in pending},
        )
        return self._result(spec_id, RunOutcome.STUCK, graph, cycles, blocked=pending)

    def _result(
        self,
        spec_id: str,
        outcome: RunOutcome,
        graph: DependencyGraph,
        cycles: list[CycleReport],
        blocked: list[str] | None = None,
    ) -> SchedulerResult:
        result = SchedulerResult(
            spec_id=spec_id,
            outcome=outcome,
            statuses=graph.statuses(),
            cycles=cycles,
            blocked=blocked or [],
        )
        logger.info(
            "scheduler.finished",
            outcome=outcome.value,
            complete=result.complete,
            total=result.total,
        )
        return result


__all__ = ["ParallelScheduler", "SchedulerReporter"]
