#!/usr/bin/env python3
"""Shipment Notifications CLI.

Usage:
    shipnotify enqueue TOPIC [--payload JSON] [--dedupe-key KEY]
                                          - Enqueue a domain event
    shipnotify dispatch events|notifications - Run one dispatch cycle now
    shipnotify stats [QUEUE]              - Task counts per status
    shipnotify failed [QUEUE]             - List FAILED tasks with their last error
    shipnotify requeue QUEUE TASK_ID      - Re-drive a FAILED task
"""

import json
import os
import sys
from typing import Optional

import click
import httpx
from rich.console import Console
from rich.table import Table

# API base URL
API_BASE = os.getenv("SHIPNOTIFY_API_URL", "http://localhost:8000")
DISPATCH_TOKEN = os.getenv("SHIPNOTIFY_DISPATCH_TOKEN", "")

QUEUES = ("events", "notifications")

STATUS_STYLES = {
    "PENDING": "yellow",
    "PROCESSING": "blue",
    "COMPLETED": "green",
    "FAILED": "red",
}

console = Console()


def _handle_api_error(error: Exception, endpoint: str) -> None:
    """Handle API errors with user-friendly messages."""
    if isinstance(error, httpx.ConnectError):
        console.print()
        console.print("[red]⚠️  Cannot connect to the notifications API[/red]")
        console.print()
        console.print(f"[dim]Tried: {API_BASE}{endpoint}[/dim]")
        console.print("[dim]Check that the server is running and SHIPNOTIFY_API_URL is correct.[/dim]")
    elif isinstance(error, httpx.TimeoutException):
        console.print()
        console.print("[red]⚠️  Request timed out[/red]")
    elif isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        console.print()
        try:
            detail = error.response.json().get("detail", f"HTTP {status}")
        except ValueError:
            detail = f"HTTP {status}"
        if status == 401:
            console.print(f"[red]⚠️  Unauthorized: {detail}[/red]")
            console.print("[dim]Set SHIPNOTIFY_DISPATCH_TOKEN to the server's dispatch token.[/dim]")
        elif status >= 500:
            console.print("[red]⚠️  Server error - the API is having issues[/red]")
        else:
            console.print(f"[red]⚠️  {detail}[/red]")
    else:
        console.print()
        console.print(f"[red]⚠️  Unexpected error: {error}[/red]")
    sys.exit(1)


def _headers() -> dict:
    return {"X-Dispatch-Token": DISPATCH_TOKEN} if DISPATCH_TOKEN else {}


def api_get(endpoint: str, params: Optional[dict] = None):
    """Make GET request to API."""
    try:
        response = httpx.get(f"{API_BASE}{endpoint}", params=params, timeout=30)
        response.raise_for_status()
        return response.json()
    except httpx.HTTPError as e:
        _handle_api_error(e, endpoint)


def api_post(endpoint: str, data: Optional[dict] = None):
    """Make POST request to API."""
    try:
        response = httpx.post(
            f"{API_BASE}{endpoint}", json=data or {}, headers=_headers(), timeout=60
        )
        response.raise_for_status()
        return response.json()
    except httpx.HTTPError as e:
        _handle_api_error(e, endpoint)


@click.group()
def cli():
    """Shipment Notifications - queue and dispatch operations."""
    pass


@cli.command()
@click.argument("topic")
@click.option("--payload", "-p", default="{}", help="Event payload as JSON")
@click.option("--dedupe-key", "-k", help="Idempotency key")
@click.option("--max-attempts", type=int, help="Override the attempt budget")
def enqueue(topic: str, payload: str, dedupe_key: Optional[str], max_attempts: Optional[int]):
    """Enqueue a domain event."""
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"Invalid JSON: {e}", param_hint="--payload")

    body = {"topic": topic, "payload": data}
    if dedupe_key:
        body["dedupe_key"] = dedupe_key
    if max_attempts:
        body["max_attempts"] = max_attempts

    result = api_post("/events", body)

    console.print()
    if result.get("duplicate"):
        console.print(f"[yellow]→[/yellow] Duplicate dedupe key, {topic} already queued")
    else:
        console.print(f"[green]✓[/green] Enqueued {topic}")
    console.print()


@cli.command()
@click.argument("queue", type=click.Choice(QUEUES))
def dispatch(queue: str):
    """Run one dispatch cycle for events or notifications."""
    with console.status(f"[bold blue]Dispatching {queue}...", spinner="dots"):
        data = api_post(f"/dispatch/{queue}")

    results = data.get("results", [])
    console.print()
    if not results:
        console.print(f"[dim]Nothing registered to dispatch for {queue}.[/dim]")
        console.print()
        return

    table = Table(title=f"Dispatch {queue}")
    table.add_column("Key", style="bold")
    table.add_column("Processed", justify="right", style="green")
    table.add_column("Errors", justify="right", style="red")
    for result in results:
        table.add_row(result["key"], str(result["processed"]), str(result["errors"]))

    console.print(table)
    console.print(
        f"[dim]Total: {data.get('processed', 0)} processed, {data.get('errors', 0)} errors[/dim]"
    )
    console.print()


@cli.command()
@click.argument("queue", type=click.Choice(QUEUES), required=False)
@click.option("--key", "-k", help="Topic or channel to filter by")
def stats(queue: Optional[str], key: Optional[str]):
    """Show task counts per status."""
    table = Table(title="Queue status")
    table.add_column("Queue", style="bold")
    statuses = list(STATUS_STYLES)
    for status in statuses:
        table.add_column(status, justify="right", style=STATUS_STYLES[status])

    params = {"key": key} if key else None
    for name in [queue] if queue else QUEUES:
        data = api_get(f"/queues/{name}/stats", params=params)
        counts = data.get("counts", {})
        table.add_row(name, *(str(counts.get(s, 0)) for s in statuses))

    console.print()
    console.print(table)
    console.print()


@cli.command()
@click.argument("queue", type=click.Choice(QUEUES), default="notifications")
@click.option("--limit", "-l", default=20, help="Max tasks to show")
def failed(queue: str, limit: int):
    """List FAILED tasks with their last error."""
    data = api_get(f"/queues/{queue}/tasks", params={"status": "FAILED", "limit": limit})

    if not data:
        console.print()
        console.print(f"[green]✓[/green] No failed {queue}.")
        console.print()
        return

    table = Table(title=f"Failed {queue}")
    table.add_column("ID", style="dim")
    table.add_column("Key", style="bold")
    table.add_column("Attempts", justify="right", width=8)
    table.add_column("Last error", style="red")

    for task in data:
        table.add_row(
            task["id"],
            task["key"],
            f"{task['attempts']}/{task['max_attempts']}",
            (task.get("last_error") or "")[:80],
        )

    console.print()
    console.print(table)
    console.print()
    console.print(
        f"[dim]Run [bold]shipnotify requeue {queue} ID[/bold] to retry a task[/dim]"
    )


@cli.command()
@click.argument("queue", type=click.Choice(QUEUES))
@click.argument("task_id")
def requeue(queue: str, task_id: str):
    """Re-drive a FAILED task with a fresh attempt budget."""
    data = api_post(f"/queues/{queue}/tasks/{task_id}/requeue")
    console.print()
    console.print(f"[green]✓[/green] {data.get('message', 'Requeued')}")
    console.print()


if __name__ == "__main__":
    cli()
