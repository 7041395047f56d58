"""
Tests for the scheduler loop.

The collaborators are in-memory fakes (see conftest), so these tests
exercise scheduling, bounded concurrency, integration bookkeeping and
persistence without Docker or git.
"""

import asyncio
import random
import threading
from unittest.mock import MagicMock

import pytest

from conftest import (
    SPEC,
    FakeCheckpointer,
    FakeIntegrator,
    FakeLauncher,
    FakeWaiter,
    read_statuses,
)
from ralph.core.errors import CycleDetectedError, ManifestNotFoundError, PersistenceError
from ralph.core.settings import RalphSettings
from ralph.parallel.launcher import ExecutionLauncher
from ralph.parallel.models import ExecutionHandle, RunOutcome, SchedulerOptions, SubSpecStatus
from ralph.parallel.scheduler import ParallelScheduler, SchedulerReporter


def _scheduler(store, launcher=None, waiter=None, integrator=None, checkpointer=None, parallel=3, reporter=None):
    return ParallelScheduler(
        store=store,
        launcher=launcher or FakeLauncher(),
        waiter=waiter or FakeWaiter(),
        integrator=integrator or FakeIntegrator(),
        checkpointer=checkpointer,
        options=SchedulerOptions(parallel=parallel),
        reporter=reporter,
    )


class TestScenarios:
    @pytest.mark.asyncio
    async def test_independent_nodes_in_bounded_batches(self, store, paths, write_manifest):
        write_manifest(SPEC, [{"name": "a"}, {"name": "b"}, {"name": "c"}])
        launcher, waiter, checkpointer = FakeLauncher(), FakeWaiter(), FakeCheckpointer()

        result = await _scheduler(
            store, launcher, waiter, checkpointer=checkpointer, parallel=2
        ).run(SPEC)

        assert result.outcome is RunOutcome.COMPLETED
        assert waiter.batches == [["a", "b"], ["c"]]
        assert read_statuses(paths) == {"a": "complete", "b": "complete", "c": "complete"}
        assert result.complete == result.total == 3
        assert checkpointer.checkpoints == [(2, 3), (3, 3)]

    @pytest.mark.asyncio
    async def test_failed_dependency_leaves_dependent_pending(self, store, paths, write_manifest):
        write_manifest(SPEC, [{"name": "a"}, {"name": "b", "dependencies": ["a"]}])
        launcher = FakeLauncher()

        result = await _scheduler(store, launcher, FakeWaiter({"a": 1})).run(SPEC)

        assert result.outcome is RunOutcome.STUCK
        assert result.blocked == ["b"]
        assert launcher.launched == ["a"]
        assert read_statuses(paths) == {"a": "failed", "b": "pending"}
        assert result.complete == 0

    @pytest.mark.asyncio
    async def test_merge_conflict_is_isolated(self, store, paths, write_manifest):
        write_manifest(SPEC, [{"name": "x"}, {"name": "y"}])

        result = await _scheduler(store, integrator=FakeIntegrator(conflicts={"x"})).run(SPEC)

        assert result.outcome is RunOutcome.FINISHED_WITH_FAILURES
        assert read_statuses(paths) == {"x": "merge_conflict", "y": "complete"}
        assert result.complete == 1
        assert result.unsuccessful == {"x": SubSpecStatus.MERGE_CONFLICT}

    @pytest.mark.asyncio
    async def test_cycle_detected_before_any_launch(self, store, write_manifest):
        write_manifest(SPEC, [{"name": "a", "dependencies": ["b"]}, {"name": "b", "dependencies": ["a"]}])
        launcher = FakeLauncher()

        with pytest.raises(CycleDetectedError) as exc_info:
            await _scheduler(store, launcher).run(SPEC)

        assert set(exc_info.value.cycle) == {"a", "b"}
        assert launcher.launched == []

    @pytest.mark.asyncio
    async def test_cycle_reported_before_independent_work(self, store, paths, write_manifest):
        write_manifest(SPEC, [
            {"name": "free"},
            {"name": "a", "dependencies": ["b"]},
            {"name": "b", "dependencies": ["a"]},
        ])
        launcher = FakeLauncher()
        before = paths.manifest_path(SPEC).read_text(encoding="utf-8")

        with pytest.raises(CycleDetectedError):
            await _scheduler(store, launcher).run(SPEC)

        assert launcher.launched == []
        assert paths.manifest_path(SPEC).read_text(encoding="utf-8") == before

    @pytest.mark.asyncio
    async def test_rerun_skips_complete_nodes(self, store, paths, write_manifest):
        write_manifest(SPEC, [
            {"name": "a", "status": "complete"},
            {"name": "b", "status": "complete"},
            {"name": "c", "dependencies": ["a"]},
            {"name": "d", "dependencies": ["b", "c"]},
        ])
        launcher = FakeLauncher()

        result = await _scheduler(store, launcher).run(SPEC)

        assert result.outcome is RunOutcome.COMPLETED
        assert launcher.launched == ["c", "d"]
        assert read_statuses(paths)["a"] == "complete"

    @pytest.mark.asyncio
    async def test_already_complete_manifest_launches_nothing(self, store, write_manifest):
        write_manifest(SPEC, [{"name": "a", "status": "complete"}])
        launcher = FakeLauncher()
        result = await _scheduler(store, launcher).run(SPEC)
        assert result.outcome is RunOutcome.COMPLETED
        assert result.cycles == []
        assert launcher.launched == []


class TestProperties:
    @pytest.mark.asyncio
    async def test_dependencies_complete_before_launch(self, store, write_manifest):
        entries = [
            {"name": "db"},
            {"name": "models", "dependencies": ["db"]},
            {"name": "api", "dependencies": ["models"]},
            {"name": "ui", "dependencies": ["api", "models"]},
            {"name": "docs"},
        ]
        write_manifest(SPEC, entries)
        deps = {e["name"]: e.get("dependencies", []) for e in entries}
        integrator = FakeIntegrator()

        class CheckingLauncher(FakeLauncher):
            def launch(self, spec_id, sub_spec, opts):
                assert all(d in integrator.merged for d in deps[sub_spec])
                return super().launch(spec_id, sub_spec, opts)

        launcher = CheckingLauncher()
        result = await _scheduler(store, launcher, integrator=integrator, parallel=2).run(SPEC)

        assert result.outcome is RunOutcome.COMPLETED
        assert launcher.launched == ["db", "docs", "models", "api", "ui"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("seed", range(12))
    async def test_random_dags(self, store, paths, write_manifest, seed):
        rng = random.Random(seed)
        names = [f"s{i:02d}" for i in range(rng.randint(3, 12))]
        entries = []
        for i, name in enumerate(names):
            deps = rng.sample(names[:i], k=min(i, rng.randint(0, 3)))
            entry = {"name": name, "dependencies": deps}
            if rng.random() < 0.2:
                entry["status"] = "complete"
            entries.append(entry)
        write_manifest(SPEC, entries)
        deps_of = {e["name"]: e["dependencies"] for e in entries}
        initially_complete = {e["name"] for e in entries if e.get("status") == "complete"}
        failing = {n for n in names if rng.random() < 0.2}
        parallel = rng.randint(1, 4)
        integrator = FakeIntegrator()

        class CheckingLauncher(FakeLauncher):
            def launch(self, spec_id, sub_spec, opts):
                done = initially_complete | set(integrator.merged)
                assert all(d in done for d in deps_of[sub_spec])
                assert sub_spec not in initially_complete
                return super().launch(spec_id, sub_spec, opts)

        launcher = CheckingLauncher()
        waiter = FakeWaiter({n: 1 for n in failing})
        result = await _scheduler(store, launcher, waiter, integrator, parallel=parallel).run(SPEC)

        assert all(len(batch) <= parallel for batch in waiter.batches)
        assert len(launcher.launched) == len(set(launcher.launched))
        statuses = read_statuses(paths)
        assert "in_progress" not in statuses.values()
        if not failing & set(launcher.launched):
            assert result.outcome is RunOutcome.COMPLETED

    @pytest.mark.asyncio
    async def test_parallelism_bound(self, store, write_manifest):
        write_manifest(SPEC, [{"name": f"n{i}"} for i in range(7)])
        launcher, waiter = FakeLauncher(), FakeWaiter()

        await _scheduler(store, launcher, waiter, parallel=3).run(SPEC)

        assert launcher.max_live <= 3
        assert [len(b) for b in waiter.batches] == [3, 3, 1]

    @pytest.mark.asyncio
    async def test_failure_does_not_touch_siblings(self, store, paths, write_manifest):
        write_manifest(SPEC, [
            {"name": "done", "status": "complete"},
            {"name": "x"},
            {"name": "y"},
            {"name": "z", "status": "merge_conflict"},
        ])

        await _scheduler(store, waiter=FakeWaiter({"x": 3})).run(SPEC)

        assert read_statuses(paths) == {
            "done": "complete",
            "x": "failed",
            "y": "complete",
            "z": "merge_conflict",
        }

    @pytest.mark.asyncio
    async def test_every_unit_destroyed(self, store, write_manifest):
        write_manifest(SPEC, [{"name": "a"}, {"name": "b"}, {"name": "c"}])
        launcher = FakeLauncher()

        await _scheduler(
            store, launcher, FakeWaiter({"b": 1}), FakeIntegrator(conflicts={"c"})
        ).run(SPEC)

        assert sorted(launcher.destroyed) == ["a", "b", "c"]
        assert launcher.live == {}

    @pytest.mark.asyncio
    async def test_in_progress_never_persisted(self, store, paths, write_manifest):
        write_manifest(SPEC, [{"name": "a"}, {"name": "b", "dependencies": ["a"]}])
        seen = []

        class SnoopingWaiter(FakeWaiter):
            async def wait_all(self, handles):
                seen.append(read_statuses(paths))
                return await super().wait_all(handles)

        await _scheduler(store, waiter=SnoopingWaiter()).run(SPEC)

        assert seen == [
            {"a": "pending", "b": "pending"},
            {"a": "complete", "b": "pending"},
        ]


class TestLaunchFailures:
    @pytest.mark.asyncio
    async def test_single_launch_failure_does_not_abort_batch(self, store, paths, write_manifest):
        write_manifest(SPEC, [{"name": "a"}, {"name": "b"}])
        launcher = FakeLauncher(fail={"a"})

        result = await _scheduler(store, launcher).run(SPEC)

        assert result.outcome is RunOutcome.FINISHED_WITH_FAILURES
        assert read_statuses(paths) == {"a": "failed", "b": "complete"}
        assert result.cycles[0].launch_failed == ["a"]
        assert result.cycles[0].launched == ["b"]

    @pytest.mark.asyncio
    async def test_whole_batch_failing_aborts(self, store, paths, write_manifest):
        write_manifest(SPEC, [{"name": "a"}, {"name": "b"}, {"name": "c"}])
        launcher = FakeLauncher(fail={"a", "b"})

        result = await _scheduler(store, launcher, parallel=2).run(SPEC)

        assert result.outcome is RunOutcome.ABORTED
        assert read_statuses(paths) == {"a": "failed", "b": "failed", "c": "pending"}


class TestLaunchOptions:
    @pytest.mark.asyncio
    async def test_options_passed_to_launcher(self, store, write_manifest):
        write_manifest(SPEC, [{"name": "a"}])
        launcher = FakeLauncher()
        scheduler = ParallelScheduler(
            store=store,
            launcher=launcher,
            waiter=FakeWaiter(),
            integrator=FakeIntegrator(),
            options=SchedulerOptions(parallel=1, iterations=7, verbose=True),
        )

        await scheduler.run(SPEC, base_branch="develop")

        opts = launcher.options[0]
        assert (opts.base_branch, opts.iterations, opts.verbose) == ("develop", 7, True)


class TestPersistence:
    @pytest.mark.asyncio
    async def test_missing_manifest(self, store):
        with pytest.raises(ManifestNotFoundError):
            await _scheduler(store).run(SPEC)

    @pytest.mark.asyncio
    async def test_orphaned_in_progress_reset(self, store, paths, write_manifest):
        write_manifest(SPEC, [{"name": "a", "status": "in_progress"}])
        launcher = FakeLauncher()

        result = await _scheduler(store, launcher).run(SPEC)

        assert launcher.launched == ["a"]
        assert result.outcome is RunOutcome.COMPLETED

    @pytest.mark.asyncio
    async def test_save_failure_is_not_fatal(self, store, write_manifest, monkeypatch):
        write_manifest(SPEC, [{"name": "a"}, {"name": "b", "dependencies": ["a"]}])
        checkpointer = FakeCheckpointer()

        def broken_save(manifest):
            raise PersistenceError("disk full")

        monkeypatch.setattr(store, "save", broken_save)

        result = await _scheduler(store, checkpointer=checkpointer).run(SPEC)

        assert result.outcome is RunOutcome.COMPLETED
        assert checkpointer.checkpoints == []

    @pytest.mark.asyncio
    async def test_progress_refreshed(self, store, paths, write_manifest):
        import json

        write_manifest(SPEC, [{"name": "a"}, {"name": "b"}])
        await _scheduler(store, integrator=FakeIntegrator(conflicts={"b"})).run(SPEC)

        data = json.loads(paths.manifest_path(SPEC).read_text(encoding="utf-8"))
        assert data["progress"] == {"complete": 1, "total": 2}


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_stops_units_and_resets_nodes(self, store, paths, write_manifest):
        write_manifest(SPEC, [{"name": "a"}, {"name": "b"}, {"name": "c", "status": "complete"}])
        launcher = FakeLauncher()
        waiting = asyncio.Event()

        class HangingWaiter(FakeWaiter):
            async def wait_all(self, handles):
                waiting.set()
                await asyncio.sleep(3600)

        task = asyncio.create_task(_scheduler(store, launcher, HangingWaiter()).run(SPEC))
        await waiting.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert sorted(launcher.stopped) == ["a", "b"]
        assert read_statuses(paths) == {"a": "pending", "b": "pending", "c": "complete"}

    @pytest.mark.asyncio
    async def test_cancel_during_launch_stops_the_late_unit(self, store, paths, write_manifest, tmp_path):
        write_manifest(SPEC, [{"name": "a"}])
        starting, release = threading.Event(), threading.Event()
        containers = MagicMock()
        started, stopped = [], []

        def run_detached(name, *args, **kwargs):
            starting.set()
            release.wait(5)
            started.append(name)
            return "abc123def456"

        containers.run_detached.side_effect = run_detached
        containers.stop_container.side_effect = stopped.append
        git = MagicMock()
        git.remote_url.return_value = "https://github.com/org/my-app.git"
        launcher = ExecutionLauncher(paths, containers, git, RalphSettings(lib_dir=tmp_path / "lib"))

        task = asyncio.create_task(_scheduler(store, launcher).run(SPEC))
        await asyncio.to_thread(starting.wait, 5)
        task.cancel()
        asyncio.get_running_loop().call_later(0.05, release.set)
        with pytest.raises(asyncio.CancelledError):
            await task

        assert started == ["ralph-my-app-auth-a"]
        assert stopped == ["ralph-my-app-auth-a"]
        assert launcher.tracker.active() == []
        assert read_statuses(paths) == {"a": "pending"}


class TestReporter:
    @pytest.mark.asyncio
    async def test_events(self, store, write_manifest):
        write_manifest(SPEC, [{"name": "a"}, {"name": "b"}])
        events = []

        class Recorder(SchedulerReporter):
            def cycle_started(self, cycle, batch):
                events.append(("cycle", cycle, batch))

            def unit_launched(self, handle: ExecutionHandle):
                events.append(("launched", handle.sub_spec))

            def launch_failed(self, sub_spec, error):
                events.append(("launch_failed", sub_spec))

            def unit_finished(self, result, status, logs=""):
                events.append(("finished", result.handle.sub_spec, status.value, bool(logs)))

            def cycle_finished(self, report, complete, total):
                events.append(("progress", complete, total))

        await _scheduler(
            store, FakeLauncher(fail={"b"}), FakeWaiter({"a": 2}), reporter=Recorder()
        ).run(SPEC)

        assert events == [
            ("cycle", 1, ["a", "b"]),
            ("launched", "a"),
            ("launch_failed", "b"),
            ("finished", "a", "failed", True),
            ("progress", 0, 2),
        ]
