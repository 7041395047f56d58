"""
CLI: ``ralph parallel-full`` and its companions.

Usage::

    ralph parallel-full auth                 # 3 units at a time, 100 iterations each
    ralph parallel-full auth -j 5 -n 50 -v
    ralph parallel-full auth --max-wait 7200 # stop units running longer than 2h

    ralph status auth                        # manifest table (read-only)
    ralph cleanup auth                       # remove orphaned containers

Exit codes: 0 when every sub-spec is complete, 1 otherwise, 130 when
interrupted.
"""

from __future__ import annotations

import asyncio
import atexit
import signal

import typer
from pydantic import ValidationError
from rich.table import Table

from ralph.cli.reporter import ConsoleReporter, render_summary
from ralph.cli.utils import console, err_console, fail, styled_status
from ralph.core.errors import RalphError
from ralph.core.lock import SpecRunLock
from ralph.core.logging import get_logger
from ralph.core.paths import RalphPaths
from ralph.core.settings import RalphSettings, get_settings
from ralph.deploy.container import ContainerManager
from ralph.parallel.graph import build_graph
from ralph.parallel.integrator import BranchIntegrator, ManifestCheckpointer
from ralph.parallel.launcher import ExecutionLauncher
from ralph.parallel.manifest import ManifestStore
from ralph.parallel.models import RunOutcome, SchedulerOptions, SchedulerResult
from ralph.parallel.preflight import run_preflight
from ralph.parallel.scheduler import ParallelScheduler
from ralph.parallel.waiter import CompletionWaiter
from ralph.tools.git import GitClient

logger = get_logger(__name__)

EXIT_INTERRUPTED = 130


def _require_spec(spec: str | None, paths: RalphPaths) -> str:
    if spec:
        return spec
    err_console.print("[red]Usage: ralph parallel-full <spec-name>[/red]")
    available = paths.available_specs()
    if available:
        err_console.print(f"[yellow]Available specs: {', '.join(available)}[/yellow]")
    raise typer.Exit(code=1)


def _load_settings(**overrides: object) -> RalphSettings:
    try:
        return get_settings().with_overrides(**overrides)
    except ValidationError as e:
        err_console.print(f"[bold red]Error[/bold red] (CONFIG): invalid settings\n{e}")
        raise typer.Exit(code=1) from None


def build_scheduler(
    paths: RalphPaths,
    settings: RalphSettings,
    containers: ContainerManager,
    git: GitClient,
    verbose: bool = False,
) -> tuple[ParallelScheduler, ExecutionLauncher]:
    """Wire the production collaborators of one run."""
    launcher = ExecutionLauncher(paths, containers, git, settings)
    scheduler = ParallelScheduler(
        store=ManifestStore(paths),
        launcher=launcher,
        waiter=CompletionWaiter(
            containers,
            poll_interval=settings.poll_interval_seconds,
            max_wait=settings.max_wait_seconds,
        ),
        integrator=BranchIntegrator(git, paths, settings.remote, settings.branch_prefix),
        checkpointer=ManifestCheckpointer(git, paths, settings.remote, settings.branch_prefix),
        options=SchedulerOptions(
            parallel=settings.parallel,
            iterations=settings.iterations,
            verbose=verbose,
        ),
        reporter=ConsoleReporter(console),
    )
    return scheduler, launcher


def run_scheduler(scheduler: ParallelScheduler, spec_id: str, base_branch: str) -> SchedulerResult:
    """Run *scheduler* on a fresh event loop; SIGTERM cancels it like Ctrl-C."""

    async def _main() -> SchedulerResult:
        task = asyncio.current_task()
        loop = asyncio.get_running_loop()
        if task is not None:
            try:
                loop.add_signal_handler(signal.SIGTERM, task.cancel)
            except (NotImplementedError, RuntimeError, ValueError):
                # Not supported on Windows event loops / non-main threads
                pass
        return await scheduler.run(spec_id, base_branch)

    return asyncio.run(_main())


def parallel_full(
    spec: str | None = typer.Argument(None, help="Spec name (.ralph/specs/<spec>.md)."),
    parallel: int | None = typer.Option(
        None, "--parallel", "-j", min=1, help="Max concurrent containers [default: 3]."
    ),
    iterations: int | None = typer.Option(
        None, "--iterations", "-n", min=1, help="Max iterations per sub-spec [default: 100]."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Pass --verbose to every unit."),
    poll_interval: float | None = typer.Option(
        None, "--poll-interval", min=0.1, help="Seconds between container state polls."
    ),
    max_wait: float | None = typer.Option(
        None, "--max-wait", min=1, help="Stop and fail a unit after this many seconds."
    ),
) -> None:
    """Run all sub-specs of a decomposed spec in parallel containers.

    Sub-specs are launched in dependency order, at most ``--parallel`` at
    a time. Each finished sub-spec branch is merged into ``ralph/<spec>``
    and the manifest is updated after every batch.
    """
    paths = RalphPaths.from_cwd()
    spec_id = _require_spec(spec, paths)
    settings = _load_settings(
        parallel=parallel,
        iterations=iterations,
        poll_interval_seconds=poll_interval,
        max_wait_seconds=max_wait,
    )

    launcher: ExecutionLauncher | None = None
    try:
        run_preflight(paths, spec_id)
        containers = ContainerManager(timeout=settings.docker_timeout_seconds)
        git = GitClient(paths.repo_dir, timeout=settings.git_timeout_seconds)
        scheduler, launcher = build_scheduler(paths, settings, containers, git, verbose)
        # forced interpreter shutdown still stops tracked units
        atexit.register(launcher.stop_all)

        with SpecRunLock(paths.lock_path(spec_id), spec_id):
            base_branch = git.current_branch()
            result = run_scheduler(scheduler, spec_id, base_branch)
    except RalphError as e:
        logger.error("parallel_full.failed", **e.to_dict())
        raise fail(e) from None
    except (KeyboardInterrupt, asyncio.CancelledError):
        err_console.print("\n[yellow]Interrupted. Running containers were stopped.[/yellow]")
        raise typer.Exit(code=EXIT_INTERRUPTED) from None
    finally:
        if launcher is not None:
            # units registered by launch threads that outlived the event loop
            launcher.stop_all()
            atexit.unregister(launcher.stop_all)

    render_summary(console, result)
    if result.outcome is not RunOutcome.COMPLETED:
        raise typer.Exit(code=1)


def status(
    spec: str = typer.Argument(..., help="Spec name."),
) -> None:
    """Show the sub-specs of a spec with their dependencies and status."""
    paths = RalphPaths.from_cwd()
    try:
        manifest = ManifestStore(paths).load(spec)
        graph = build_graph(manifest)
    except RalphError as e:
        raise fail(e) from None

    eligible = set(graph.eligible())
    table = Table(title=f"Sub-specs of {spec}", show_lines=False, pad_edge=False)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Sub-spec", style="bold")
    table.add_column("Depends on")
    table.add_column("Status")
    table.add_column("Eligible", justify="center")
    for index, node in enumerate(graph, start=1):
        table.add_row(
            str(index),
            node.name,
            ", ".join(node.deps) or "—",
            styled_status(node.status),
            "✓" if node.name in eligible else "",
        )
    console.print(table)
    console.print(f"\n[bold]{graph.complete_count}/{len(graph)}[/bold] sub-specs complete")


def cleanup(
    spec: str = typer.Argument(..., help="Spec name."),
) -> None:
    """Force-remove every container left behind by runs of a spec."""
    settings = _load_settings()
    try:
        containers = ContainerManager(timeout=settings.docker_timeout_seconds)
        removed = containers.cleanup({"spec": spec})
    except RalphError as e:
        raise fail(e) from None

    if not removed:
        console.print("[dim]No containers to remove.[/dim]")
        return
    for name in removed:
        console.print(f"  [green]removed[/green] {name}")
    console.print(f"\n[bold]{len(removed)}[/bold] containers removed")
