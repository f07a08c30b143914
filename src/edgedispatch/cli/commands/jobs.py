"""Job submission and status commands talking to a running coordinator."""

import json
from typing import Any, Dict, List

import httpx
import typer
from rich.console import Console
from rich.table import Table

console = Console()

STATUS_STYLES = {
    "pending": "yellow",
    "running": "blue",
    "completed": "green",
    "failed": "red",
}


def parse_arguments(pairs: List[str]) -> Dict[str, Any]:
    """Turn ``key=value`` pairs into an arguments dict.

    Values are decoded as JSON when possible (``w=100`` gives an int),
    otherwise kept as strings.
    """
    arguments: Dict[str, Any] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"Expected key=value, got {pair!r}")
        try:
            arguments[key] = json.loads(raw)
        except ValueError:
            arguments[key] = raw
    return arguments


def _request(method: str, url: str, **kwargs) -> httpx.Response:
    try:
        return httpx.request(method, url, timeout=10.0, **kwargs)
    except httpx.HTTPError as e:
        console.print(f"[red]Error:[/red] cannot reach coordinator: {e}")
        raise typer.Exit(1)


def _print_job(job: Dict[str, Any]) -> None:
    table = Table(show_header=False, box=None)
    table.add_column(style="bold")
    table.add_column()
    style = STATUS_STYLES.get(job["status"], "white")
    table.add_row("ID", job["id"])
    table.add_row("Task", job["task"])
    table.add_row("Arguments", json.dumps(job["arguments"]))
    table.add_row("Status", f"[{style}]{job['status']}[/{style}]")
    table.add_row("Result", "" if job["result"] is None else json.dumps(job["result"]))
    table.add_row("Created", job["created_at"])
    table.add_row("Updated", job["updated_at"])
    console.print(table)


def submit_command(task: str, args: List[str], coordinator: str):
    """Submit a job and print the created record."""
    arguments = parse_arguments(args)
    response = _request(
        "POST",
        f"{coordinator.rstrip('/')}/jobs",
        json={"task": task, "arguments": arguments},
    )
    if response.status_code != 201:
        console.print(
            f"[red]Submission failed:[/red] {response.status_code} - {response.text}"
        )
        raise typer.Exit(1)

    console.print("[green]Job submitted[/green]")
    _print_job(response.json())


def status_command(job_id: str, coordinator: str):
    """Print the current record of a job."""
    response = _request("GET", f"{coordinator.rstrip('/')}/jobs/{job_id}")
    if response.status_code == 404:
        console.print(f"[red]Job {job_id} not found[/red]")
        raise typer.Exit(1)
    if response.status_code >= 400:
        console.print(f"[red]Error:[/red] {response.status_code} - {response.text}")
        raise typer.Exit(1)

    _print_job(response.json())


def nodes_command(coordinator: str):
    """Print the nodes known to the coordinator."""
    response = _request("GET", f"{coordinator.rstrip('/')}/nodes")
    if response.status_code >= 400:
        console.print(f"[red]Error:[/red] {response.status_code} - {response.text}")
        raise typer.Exit(1)

    nodes = response.json()
    if not nodes:
        console.print("No nodes have sent a heartbeat yet")
        return

    table = Table(title="Edge nodes")
    table.add_column("Address")
    table.add_column("Last heartbeat")
    table.add_column("State")
    for node in nodes:
        state = "[green]alive[/green]" if node["alive"] else "[red]unreachable[/red]"
        table.add_row(node["address"], node["last_heartbeat"], state)
    console.print(table)
