"""Rich rendering of scheduler progress and the final run summary."""

from __future__ import annotations

from rich.console import Console
from rich.panel import Panel

from ralph.core.errors import RalphError
from ralph.parallel.graph import DependencyGraph
from ralph.parallel.models import (
    CycleReport,
    ExecutionHandle,
    RunOutcome,
    SchedulerOptions,
    SchedulerResult,
    SubSpecStatus,
    UnitResult,
)
from ralph.parallel.scheduler import SchedulerReporter


class ConsoleReporter(SchedulerReporter):
    """Prints one line per scheduler event."""

    def __init__(self, console: Console) -> None:
        self.console = console

    def run_started(self, spec_id: str, graph: DependencyGraph, options: SchedulerOptions) -> None:
        self.console.print(f"[bold]Parallel Full Mode[/bold] — {spec_id}")
        self.console.print(f"  Sub-specs: {len(graph)} ({graph.complete_count} complete)")
        self.console.print(f"  Max parallel: {options.parallel}")
        self.console.print(f"  Iterations: {options.iterations}")

    def cycle_started(self, cycle: int, batch: list[str]) -> None:
        self.console.print(f"\n[cyan]Cycle {cycle}: launching {len(batch)} sub-specs[/cyan]")

    def unit_launched(self, handle: ExecutionHandle) -> None:
        self.console.print(f"  [dim]{handle.sub_spec}[/dim] → {handle.container_name} ({handle.branch})")

    def launch_failed(self, sub_spec: str, error: RalphError) -> None:
        self.console.print(f"  [red]Failed to launch {sub_spec}: {error.message}[/red]")

    def waiting(self, handles: list[ExecutionHandle]) -> None:
        self.console.print(f"[cyan]Waiting for {len(handles)} containers to complete...[/cyan]")

    def unit_finished(self, result: UnitResult, status: SubSpecStatus, logs: str = "") -> None:
        name = result.handle.sub_spec
        if status is SubSpecStatus.COMPLETE:
            self.console.print(f"  [green]{name} completed and merged[/green]")
        elif status is SubSpecStatus.MERGE_CONFLICT:
            self.console.print(f"  [red]{name} has merge conflicts - needs manual resolution[/red]")
        else:
            self.console.print(f"  [red]{name} failed (exit {result.exit_code})[/red]")
            if logs.strip():
                self.console.print(logs.rstrip(), style="dim", highlight=False, markup=False)

    def cycle_finished(self, report: CycleReport, complete: int, total: int) -> None:
        self.console.print(f"\n[bold]Progress: {complete}/{total} sub-specs complete[/bold]")


def render_summary(console: Console, result: SchedulerResult) -> None:
    """Final box shown after a run ends."""
    if result.outcome is RunOutcome.COMPLETED:
        body = (
            f"All {result.total} sub-specs completed!\n\n"
            f'Run "ralph full {result.spec_id}" for master completion check'
        )
        console.print(Panel(body, title="Parallel Full Complete", border_style="green"))
        return

    lines = [f"{result.complete}/{result.total} sub-specs completed"]
    for name, status in result.unsuccessful.items():
        lines.append(f"  {name}: {status.value}")
    if result.blocked:
        lines.append("")
        lines.append(f"Blocked (dependencies not complete): {', '.join(result.blocked)}")
    if any(s is SubSpecStatus.MERGE_CONFLICT for s in result.statuses.values()):
        lines.append("")
        lines.append("See .ralph/paused.md for merge conflict resolution steps.")

    title = {
        RunOutcome.STUCK: "Parallel Full Stuck",
        RunOutcome.ABORTED: "Parallel Full Aborted",
    }.get(result.outcome, "Parallel Full Incomplete")
    console.print(Panel("\n".join(lines), title=title, border_style="yellow"))


__all__ = ["ConsoleReporter", "render_summary"]
