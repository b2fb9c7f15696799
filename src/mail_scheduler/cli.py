"""Command-line interface for the mail scheduler.

This module provides a CLI for serving the API and for operating on the
record store directly, without going through the HTTP API.

Usage:
    mail-scheduler serve --port 8000
    mail-scheduler items list --status DEFERRED
    mail-scheduler items submit sender-1 --at 2026-01-01T09:00:00Z --payload mail.json
    mail-scheduler items show <item-id>
    mail-scheduler items cancel <item-id>
    mail-scheduler items audit <item-id>
    mail-scheduler recover
    mail-scheduler rate status sender-1
    mail-scheduler rate reset sender-1

Example:
    $ mail-scheduler --config /etc/mail-scheduler.ini items list --owner sender-1 --json
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, TypeVar

import click
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from mail_scheduler.config_loader import DispatchSettings, load_settings
from mail_scheduler.core import MailScheduler
from mail_scheduler.errors import MailSchedulerError
from mail_scheduler.models import WorkItem, WorkItemCreate, WorkItemStatus
from mail_scheduler.timeutils import parse_iso

console = Console()
err_console = Console(stderr=True)

T = TypeVar("T")

STATUS_STYLES = {
    WorkItemStatus.PENDING: "cyan",
    WorkItemStatus.IN_PROGRESS: "yellow",
    WorkItemStatus.DONE: "green",
    WorkItemStatus.FAILED: "red",
    WorkItemStatus.DEFERRED: "magenta",
    WorkItemStatus.CANCELLED: "dim",
}


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def _with_scheduler(settings: DispatchSettings, action: Callable[[MailScheduler], Awaitable[T]]) -> T:
    """Open the record store, run ``action`` and close it again.

    The queue loop is not started: a running server picks up new jobs on its
    next poll.
    """

    async def _run() -> T:
        scheduler = MailScheduler(settings)
        await scheduler.persistence.open()
        try:
            return await action(scheduler)
        finally:
            await scheduler.persistence.close()

    try:
        return run_async(_run())
    except MailSchedulerError as exc:
        print_error(str(exc))
        sys.exit(1)


def _status_cell(status: WorkItemStatus) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status.value}[/{style}]"


def _format_ts(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


def _items_table(items: list[WorkItem], title: str) -> Table:
    table = Table(title=title)
    table.add_column("ID", style="bold")
    table.add_column("Owner")
    table.add_column("Scheduled (UTC)")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Last error")
    for item in items:
        table.add_row(
            item.id,
            item.owner_id,
            _format_ts(item.scheduled_at),
            _status_cell(item.status),
            str(item.attempt_count),
            item.last_error or "",
        )
    return table


@click.group()
@click.version_option(package_name="mail-scheduler")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="INI configuration file (default: $MSCHED_CONFIG or config.ini).",
)
@click.pass_context
def main(ctx: click.Context, config_path: Optional[Path]) -> None:
    """Scheduled email dispatch with rate limiting and crash recovery."""
    ctx.obj = load_settings(config_path)


# ============================================================================
# SERVE command
# ============================================================================

@main.command("serve")
@click.option("--host", "-h", default=None, help="Host to bind to (default from config).")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on (default from config).")
@click.pass_obj
def serve(settings: DispatchSettings, host: Optional[str], port: Optional[int]) -> None:
    """Run the HTTP API and the dispatch engine."""
    import uvicorn

    from mail_scheduler.server import build_app

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    host = host or settings.http_host
    port = port or settings.http_port
    console.print("\n[bold cyan]Starting mail scheduler[/bold cyan]")
    console.print(f"  DB:      {settings.db_path}")
    console.print(f"  Listen:  {host}:{port}")
    console.print()
    uvicorn.run(build_app(settings), host=host, port=port, log_level=settings.log_level.lower())


# ============================================================================
# ITEMS commands
# ============================================================================

@main.group("items")
def items() -> None:
    """Inspect and manage scheduled work items."""


@items.command("list")
@click.option(
    "--status",
    "status",
    type=click.Choice([s.value for s in WorkItemStatus], case_sensitive=False),
    default=None,
    help="Only items in this status.",
)
@click.option("--owner", "owner_id", default=None, help="Only items of this owner.")
@click.option("--limit", type=int, default=50, show_default=True)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def items_list(
    settings: DispatchSettings, status: Optional[str], owner_id: Optional[str], limit: int, as_json: bool
) -> None:
    """List work items, most recent schedule first."""
    found = _with_scheduler(
        settings,
        lambda s: s.list_items(status=status.upper() if status else None, owner_id=owner_id, limit=limit),
    )
    if as_json:
        print_json([item.model_dump(mode="json") for item in found])
        return
    if not found:
        console.print("[dim]No work items found.[/dim]")
        return
    console.print(_items_table(found, f"Work items ({len(found)})"))


@items.command("submit")
@click.argument("owner_id")
@click.option("--at", "scheduled_at", required=True, help="ISO-8601 send time; naive values are UTC.")
@click.option(
    "--payload",
    "payload_file",
    type=click.File("r"),
    required=True,
    help="JSON file with the delivery payload ('-' for stdin).",
)
@click.option("--dedupe-key", default=None, help="Idempotency token.")
@click.pass_obj
def items_submit(
    settings: DispatchSettings, owner_id: str, scheduled_at: str, payload_file, dedupe_key: Optional[str]
) -> None:
    """Schedule an email for OWNER_ID."""
    try:
        when = parse_iso(scheduled_at)
        data = WorkItemCreate(
            owner_id=owner_id,
            payload=json.load(payload_file),
            scheduled_at=when,
            dedupe_key=dedupe_key,
        )
    except (ValueError, ValidationError) as exc:
        print_error(f"Invalid submission: {exc}")
        sys.exit(1)

    item, created = _with_scheduler(settings, lambda s: s.submit(data))
    if created:
        print_success(f"Item {item.id} scheduled for {_format_ts(item.scheduled_at)} UTC.")
    else:
        console.print(f"[yellow]Dedupe key already used:[/yellow] existing item {item.id} ({item.status.value})")


@items.command("show")
@click.argument("item_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def items_show(settings: DispatchSettings, item_id: str, as_json: bool) -> None:
    """Show one work item with its payload."""
    item = _with_scheduler(settings, lambda s: s.get_status(item_id))
    if as_json:
        print_json(item.model_dump(mode="json"))
        return
    console.print(f"\n[bold]Item {item.id}[/bold]")
    console.print(f"  Owner:      {item.owner_id}")
    console.print(f"  Status:     {_status_cell(item.status)}")
    console.print(f"  Scheduled:  {_format_ts(item.scheduled_at)}")
    console.print(f"  Attempts:   {item.attempt_count}")
    console.print(f"  Executed:   {_format_ts(item.executed_at)}")
    if item.dedupe_key:
        console.print(f"  Dedupe key: {item.dedupe_key}")
    if item.last_error:
        console.print(f"  Last error: [red]{item.last_error}[/red]")
    console.print("  Payload:")
    print_json(item.payload)


@items.command("cancel")
@click.argument("item_id")
@click.option("--force", "-f", is_flag=True, help="Skip confirmation prompt.")
@click.pass_obj
def items_cancel(settings: DispatchSettings, item_id: str, force: bool) -> None:
    """Cancel an item that has not started yet."""
    if not force and not click.confirm(f"Cancel work item '{item_id}'?"):
        console.print("Aborted.")
        return
    item = _with_scheduler(settings, lambda s: s.cancel(item_id))
    print_success(f"Item {item.id} cancelled.")


@items.command("audit")
@click.argument("item_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def items_audit(settings: DispatchSettings, item_id: str, as_json: bool) -> None:
    """Show the audit trail of an item."""
    entries = _with_scheduler(settings, lambda s: s.audit_trail(item_id))
    if as_json:
        print_json(entries)
        return
    if not entries:
        console.print("[dim]No audit entries.[/dim]")
        return
    table = Table(title=f"Audit trail of {item_id}")
    table.add_column("When")
    table.add_column("Status")
    table.add_column("Message")
    for entry in entries:
        table.add_row(entry["created_at"], entry["status"], entry["message"])
    console.print(table)


# ============================================================================
# RECOVER command
# ============================================================================

@main.command("recover")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def recover(settings: DispatchSettings, as_json: bool) -> None:
    """Re-arm every non-terminal item (safe to run repeatedly)."""
    report = _with_scheduler(settings, lambda s: s.recovery.run())
    if as_json:
        print_json(report.to_dict())
        return
    if not report.ok:
        for error in report.errors:
            print_error(error)
        sys.exit(1)
    print_success(
        f"Recovery complete: {report.requeued} requeued, {report.already_queued} already queued, "
        f"{report.expired} expired, {report.swept} swept."
    )


# ============================================================================
# RATE commands
# ============================================================================

@main.group("rate")
def rate() -> None:
    """Inspect and reset per-owner hourly rate limits."""


@rate.command("status")
@click.argument("owner_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def rate_status(settings: DispatchSettings, owner_id: str, as_json: bool) -> None:
    """Show how many emails OWNER_ID sent in the current hour."""
    status = _with_scheduler(settings, lambda s: s.rate_status(owner_id))
    if as_json:
        print_json({"owner_id": owner_id, **status.to_dict()})
        return
    colour = "green" if status.allowed else "red"
    console.print(f"[bold]{owner_id}[/bold] window {status.window}")
    console.print(f"  Sent:   [{colour}]{status.current}/{status.limit}[/{colour}]")
    console.print(f"  Resets: {_format_ts(status.reset_at)} UTC")


@rate.command("reset")
@click.argument("owner_id")
@click.pass_obj
def rate_reset(settings: DispatchSettings, owner_id: str) -> None:
    """Reset the current hourly counter of OWNER_ID."""
    removed = _with_scheduler(settings, lambda s: s.reset_rate_limit(owner_id))
    if removed:
        print_success(f"Rate limit of '{owner_id}' reset.")
    else:
        console.print(f"[dim]No counter for '{owner_id}' in the current hour.[/dim]")


if __name__ == "__main__":
    main()
