"""
practice-relay operator CLI.

Commands:
- practice-relay health              : Provider settings, API and network status
- practice-relay queue status        : Offline queue size and oldest item
- practice-relay queue list          : Queued operations
- practice-relay queue process       : Run one processing pass now
- practice-relay queue purge         : Drop every queued operation
- practice-relay usage show USER_ID  : Today's conversation usage
- practice-relay usage reset USER_ID : Reset a user's daily counter
- practice-relay db init             : Create document store tables
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

import typer
from loguru import logger
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from practice_relay.bootstrap import Runtime, build_runtime
from practice_relay.errors import SessionError
from practice_relay.logging_config import configure_logging
from practice_relay.models import User, UserRole
from practice_relay.store import SqlDocumentStore

T = TypeVar("T")

app = typer.Typer(
    help="practice-relay: AI practice session layer (quota, sessions, offline queue)",
    no_args_is_help=True,
)

console = Console()


def _run(action: Callable[[Runtime], Awaitable[T]]) -> T:
    """Build a runtime, run ``action`` against it and close it."""

    async def runner() -> T:
        runtime = build_runtime()
        try:
            return await action(runtime)
        finally:
            await runtime.aclose()

    try:
        return asyncio.run(runner())
    except SessionError as error:
        logger.debug("Command failed: {!r}", error)
        rprint(f"[red]✗[/red] {error.code}: {error.message}")
        raise typer.Exit(code=1)


def _mark(ok: bool) -> str:
    return "[green]✓[/green]" if ok else "[red]✗[/red]"


# ========================================
# HEALTH
# ========================================


@app.command("health")
def health(
    probe: bool = typer.Option(
        True,
        "--probe/--no-probe",
        help="Probe the provider URL before reporting network status",
    ),
) -> None:
    """Show provider settings, API reachability and queue state."""

    async def action(runtime: Runtime):
        if probe:
            await runtime.connectivity.probe(
                runtime.settings.provider_api_url,
                timeout=runtime.settings.provider_health_timeout_seconds,
            )
        return await runtime.service.health()

    report = _run(action)

    table = Table(title="Practice Relay Health", show_header=True)
    table.add_column("Check", style="cyan")
    table.add_column("Status")
    table.add_row("Provider settings", _mark(report.settings))
    table.add_row("Provider API", _mark(report.api))
    table.add_row("Network", _mark(report.network))
    oldest = report.queue.oldest_item.isoformat() if report.queue.oldest_item else "-"
    table.add_row("Offline queue", f"{report.queue.size} item(s), oldest {oldest}")
    console.print(table)

    if not report.healthy:
        raise typer.Exit(code=1)


# ========================================
# QUEUE COMMANDS
# ========================================

queue_app = typer.Typer(help="Offline operation queue")
app.add_typer(queue_app, name="queue")


@queue_app.command("status")
def queue_status() -> None:
    """Show queue size and oldest item."""

    async def action(runtime: Runtime):
        return runtime.queue.status()

    status = _run(action)
    rprint(f"[bold]Queued operations:[/bold] {status.size}")
    if status.oldest_item:
        rprint(f"[bold]Oldest item:[/bold] {status.oldest_item.isoformat()}")


@queue_app.command("list")
def queue_list() -> None:
    """List queued operations in processing order."""

    async def action(runtime: Runtime):
        return runtime.queue.items

    items = _run(action)
    if not items:
        rprint("[dim]Offline queue is empty[/dim]")
        return

    table = Table(title="Offline Queue", show_header=True)
    table.add_column("ID", style="dim")
    table.add_column("Operation", style="cyan")
    table.add_column("Queued at")
    table.add_column("Retries", justify="right")
    table.add_column("Last error", style="yellow")
    for item in items:
        table.add_row(
            item.id[:12],
            item.operation.value,
            item.timestamp.isoformat(timespec="seconds"),
            str(item.retry_count),
            item.last_error or "",
        )
    console.print(table)


@queue_app.command("process")
def queue_process() -> None:
    """Run one processing pass now."""

    async def action(runtime: Runtime):
        return await runtime.queue.process_queue()

    result = _run(action)
    if result.skipped:
        rprint("[yellow]Queue processing already in progress[/yellow]")
        return
    rprint(
        f"[green]✓[/green] Processed {result.processed}, dropped {result.dropped}, "
        f"remaining {result.remaining}"
    )


@queue_app.command("purge")
def queue_purge(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Drop every queued operation."""
    if not yes and not typer.confirm("Drop all queued operations?"):
        raise typer.Abort()

    async def action(runtime: Runtime):
        return runtime.queue.purge()

    count = _run(action)
    rprint(f"[green]✓[/green] Purged {count} queued operation(s)")


# ========================================
# USAGE COMMANDS
# ========================================

usage_app = typer.Typer(help="Daily conversation quota")
app.add_typer(usage_app, name="usage")


@usage_app.command("show")
def usage_show(
    user_id: str = typer.Argument(..., help="User id"),
    tier: UserRole = typer.Option(UserRole.FREE, "--tier", "-t", help="Subscription tier of the user"),
) -> None:
    """Show today's usage for a user."""

    async def action(runtime: Runtime):
        return await runtime.quota.get_usage_status(User(uid=user_id, role=tier))

    status = _run(action)

    table = Table(title=f"Usage for {user_id}", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Tier", status.tier)
    table.add_row("Used", str(status.used))
    table.add_row("Limit", str(status.limit))
    table.add_row("Remaining", str(status.remaining))
    table.add_row("Can start", _mark(status.can_start))
    if status.reset_time:
        table.add_row("Resets at", status.reset_time.isoformat())
    console.print(table)


@usage_app.command("reset")
def usage_reset(
    user_id: str = typer.Argument(..., help="User id"),
    date: Optional[str] = typer.Option(None, "--date", "-d", help="Day to reset (YYYY-MM-DD, default today)"),
) -> None:
    """Reset a user's daily conversation counter."""

    async def action(runtime: Runtime):
        await runtime.quota.reset_usage(user_id, date)

    _run(action)
    rprint(f"[green]✓[/green] Usage reset for {user_id}")


# ========================================
# DATABASE COMMANDS
# ========================================

db_app = typer.Typer(help="Document store management")
app.add_typer(db_app, name="db")


@db_app.command("init")
def db_init() -> None:
    """
    Create the document store tables.

    Safe to run multiple times (idempotent).
    """
    logger.info("Initializing document store tables...")

    async def action(runtime: Runtime):
        if not isinstance(runtime.store, SqlDocumentStore):
            return False
        await runtime.store.create_tables()
        return True

    if not _run(action):
        rprint("[yellow]Configured store has no tables to create[/yellow]")
        return
    rprint("[green]✓[/green] Document store initialized!")


def main() -> None:
    """Entry point for the CLI."""
    configure_logging()
    app()


if __name__ == "__main__":
    main()
