"""
Root Typer application for the ralph CLI.
"""

from __future__ import annotations

import typer
from pydantic import ValidationError
from typer import Typer

from ralph.cli.utils import err_console
from ralph.core.logging import configure_logging
from ralph.core.settings import get_settings

app = Typer(
    name="ralph",
    help="ralph — drive a coding agent through isolated containers, one branch per sub-spec.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from ralph import __version__

        typer.echo(f"ralph {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str | None = typer.Option(
        None, "--log-level", help="Log level (DEBUG, INFO, WARNING, ERROR)."
    ),
    json_logs: bool | None = typer.Option(
        None, "--json-logs/--console-logs", help="Render logs as JSON lines."
    ),
) -> None:
    """ralph CLI — parallel sub-spec execution."""
    try:
        settings = get_settings()
    except ValidationError as e:
        err_console.print(f"[bold red]Error[/bold red] (CONFIG): invalid RALPH_* settings\n{e}")
        raise typer.Exit(code=1) from None
    if json_logs is None:
        json_logs = settings.log_format == "json"
    configure_logging(level=(log_level or settings.log_level).upper(), json_format=json_logs)


# ── Command registration ─────────────────────────────────────────────────

from ralph.cli.parallel import cleanup, parallel_full, status  # noqa: E402

app.command("parallel-full")(parallel_full)
app.command("status")(status)
app.command("cleanup")(cleanup)


if __name__ == "__main__":
    app()
