"""Run the coordinator server."""

import typer
import uvicorn
from rich.console import Console

from edgedispatch.config import DispatchConfig

console = Console()


def serve_command(host: str, port: int):
    """Run the coordinator with uvicorn."""
    try:
        config = DispatchConfig.from_env()
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    console.print("[green]Starting edgedispatch coordinator[/green]")
    console.print(f"Server: [bold]http://{host}:{port}[/bold]")
    console.print(f"Liveness timeout: [bold]{config.liveness_timeout}s[/bold]")
    console.print(f"Workers: [bold]{config.workers}[/bold]")
    console.print(f"Job store: [bold]{config.store_path or 'in-memory'}[/bold]")
    console.print("\nPress CTRL+C to stop\n")

    uvicorn.run(
        "edgedispatch.runtime.coordinator_handler:create_app_from_env",
        factory=True,
        host=host,
        port=port,
    )
