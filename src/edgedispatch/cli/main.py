"""Main CLI entry point for the edgedispatch CLI."""

from importlib import metadata
from typing import List, Optional

import typer
from rich.console import Console
from rich.panel import Panel


def get_version() -> str:
    """Get the package version from metadata."""
    try:
        return metadata.version("edge-dispatch")
    except metadata.PackageNotFoundError:
        return "unknown"


console = Console()

DEFAULT_COORDINATOR = "http://localhost:8700"

# command: edgedispatch
app = typer.Typer(
    name="edgedispatch",
    help="Dispatch jobs to heartbeat-tracked edge nodes",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


@app.command("serve")
def serve_cmd(
    host: str = typer.Option("0.0.0.0", help="Host to bind to"),
    port: int = typer.Option(8700, help="Port to bind to"),
):
    """Run the coordinator: job API, heartbeat intake and dispatcher."""
    from .commands.serve import serve_command

    return serve_command(host, port)


@app.command("node")
def node_cmd(
    host: str = typer.Option("0.0.0.0", help="Host to bind to"),
    port: int = typer.Option(8710, help="Port to bind to"),
    coordinator: Optional[str] = typer.Option(
        None, "--coordinator", "-c", help="Coordinator URL to heartbeat to"
    ),
    advertise: Optional[str] = typer.Option(
        None,
        "--advertise",
        "-a",
        help="Address the coordinator should call this node on "
        "(defaults to http://<host>:<port>)",
    ),
):
    """Run an edge node agent."""
    from .commands.node import node_command

    return node_command(host, port, coordinator, advertise)


@app.command("submit")
def submit_cmd(
    task: str = typer.Argument(..., help="Task type to run"),
    arg: List[str] = typer.Option(
        [], "--arg", help="Task argument as key=value (value parsed as JSON if possible)"
    ),
    coordinator: str = typer.Option(DEFAULT_COORDINATOR, "--coordinator", "-c"),
):
    """Submit a job."""
    from .commands.jobs import submit_command

    return submit_command(task, arg, coordinator)


@app.command("status")
def status_cmd(
    job_id: str = typer.Argument(..., help="Job identifier"),
    coordinator: str = typer.Option(DEFAULT_COORDINATOR, "--coordinator", "-c"),
):
    """Show the current status of a job."""
    from .commands.jobs import status_command

    return status_command(job_id, coordinator)


@app.command("nodes")
def nodes_cmd(
    coordinator: str = typer.Option(DEFAULT_COORDINATOR, "--coordinator", "-c"),
):
    """List edge nodes known to the coordinator."""
    from .commands.jobs import nodes_command

    return nodes_command(coordinator)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", "-v", help="Show version"),
):
    """Edge dispatch CLI - job dispatch to heartbeat-tracked edge nodes."""
    if version:
        console.print(f"edgedispatch v{get_version()}")
        raise typer.Exit()

    if ctx.invoked_subcommand is None:
        console.print(
            Panel(
                "[bold blue]edgedispatch[/bold blue]\n\n"
                "Queue jobs and run them on live edge nodes.\n\n"
                "Use [bold]edgedispatch --help[/bold] to see available commands.",
                title="Welcome",
                expand=False,
            )
        )


if __name__ == "__main__":
    app()
