"""
CLI utility helpers — consoles and error rendering.
"""

from __future__ import annotations

import typer
from rich.console import Console

from ralph.core.errors import RalphError
from ralph.parallel.models import SubSpecStatus

console = Console()
err_console = Console(stderr=True)

STATUS_STYLES: dict[SubSpecStatus, str] = {
    SubSpecStatus.PENDING: "dim",
    SubSpecStatus.IN_PROGRESS: "cyan",
    SubSpecStatus.COMPLETE: "green",
    SubSpecStatus.FAILED: "red",
    SubSpecStatus.MERGE_CONFLICT: "yellow",
}


def styled_status(status: SubSpecStatus) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status.value}[/{style}]"


def fail(error: RalphError) -> typer.Exit:
    """Print *error* to stderr and return the ``Exit`` to raise."""
    err_console.print(f"[bold red]Error[/bold red] ({error.category.value}): {error.message}")
    return typer.Exit(code=1)
