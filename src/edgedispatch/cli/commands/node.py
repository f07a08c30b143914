"""Run an edge node agent."""

import os
from typing import Optional

import typer
import uvicorn
from rich.console import Console

from edgedispatch.models import normalize_node_address

console = Console()


def node_command(
    host: str,
    port: int,
    coordinator: Optional[str],
    advertise: Optional[str],
):
    """Run the edge node agent with uvicorn."""
    if advertise is None:
        if host in ("0.0.0.0", "::"):
            console.print(
                "[red]Error:[/red] --advertise is required when binding to "
                f"{host}; pass the address the coordinator can reach"
            )
            raise typer.Exit(1)
        advertise = f"http://{host}:{port}"

    try:
        advertise = normalize_node_address(advertise)
    except ValueError as e:
        console.print(f"[red]Error:[/red] invalid --advertise: {e}")
        raise typer.Exit(1)

    # The app factory reads its settings from the environment
    if coordinator:
        os.environ["EDGEDISPATCH_COORDINATOR_URL"] = coordinator
    os.environ["EDGEDISPATCH_ADVERTISE_ADDRESS"] = advertise

    console.print("[green]Starting edgedispatch node[/green]")
    console.print(f"Listening: [bold]http://{host}:{port}[/bold]")
    console.print(f"Advertised as: [bold]{advertise}[/bold]")
    console.print(
        f"Coordinator: [bold]{coordinator or 'none (heartbeats disabled)'}[/bold]"
    )

    uvicorn.run(
        "edgedispatch.runtime.node_handler:create_node_app_from_env",
        factory=True,
        host=host,
        port=port,
    )
