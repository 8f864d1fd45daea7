"""
Migration execution commands.

This module provides commands to create, run and control store migrations
and to inspect their progress, logs and reports.
"""

import asyncio
from collections.abc import Callable
from contextlib import nullcontext
from pathlib import Path
from typing import Any

import click
from rich.markup import escape

from store_migration.cli.context import MigrationContext
from store_migration.cli.decorators import (
    confirm_action,
    handle_errors,
    pass_context,
    requires_config,
)
from store_migration.cli.utils import (
    console,
    create_progress_bar,
    echo_error,
    echo_info,
    echo_success,
    echo_warning,
    format_timestamp,
    print_table,
    styled_level,
    styled_status,
)
from store_migration.migration.scheduler import JobScheduler
from store_migration.reporting.events import COMPLETE, ERROR, PROGRESS, LocalEventBus, MigrationEvent
from store_migration.reporting.progress import global_progress
from store_migration.reporting.report import MigrationReport
from store_migration.resources import get_all_modules, parse_module
from store_migration.utils.logging import get_logger

logger = get_logger(__name__)


def _parse_modules(value: str | None) -> list[str]:
    if not value:
        return get_all_modules()
    return [m.strip() for m in value.split(",") if m.strip()]


@click.group(name="migrate")
def migrate() -> None:
    """Run and control store migrations."""


@migrate.command(name="start")
@click.option("--source", "-s", required=True, help="Source store name (from config)")
@click.option("--destination", "-d", required=True, help="Destination store name (from config)")
@click.option(
    "--modules",
    "-m",
    help=f"Comma-separated modules (default: all of {', '.join(get_all_modules())})",
)
@click.option("--account", help="Owning account identifier")
@click.option("--detach", is_flag=True, help="Only queue the jobs; run them with 'migrate worker'")
@click.option("--no-progress", is_flag=True, help="Disable the live progress display")
@pass_context
@requires_config
@handle_errors
def start(
    ctx: MigrationContext,
    source: str,
    destination: str,
    modules: str | None,
    account: str | None,
    detach: bool,
    no_progress: bool,
) -> None:
    """Create a migration and run it.

    Examples:

        store-bridge -c config.yaml migrate start -s old-shop -d new-shop

        store-bridge -c config.yaml migrate start -s old-shop -d new-shop -m products,collections
    """
    # resolve both stores before anything is persisted
    ctx.resolve_store(source)
    ctx.resolve_store(destination)

    migration_id = ctx.migration_state.create_migration(
        source, destination, _parse_modules(modules), account_id=account
    )
    echo_info(f"Created migration {migration_id}")

    _dispatch(ctx, migration_id, lambda s: s.start_migration(migration_id), detach, no_progress)


@migrate.command(name="resume")
@click.argument("migration_id")
@click.option("--detach", is_flag=True, help="Only queue the jobs; run them with 'migrate worker'")
@click.option("--no-progress", is_flag=True, help="Disable the live progress display")
@pass_context
@requires_config
@handle_errors
def resume(ctx: MigrationContext, migration_id: str, detach: bool, no_progress: bool) -> None:
    """Resume a paused or failed migration."""
    _dispatch(ctx, migration_id, lambda s: s.resume_migration(migration_id), detach, no_progress)


@migrate.command(name="rerun")
@click.argument("migration_id")
@click.option("--module", help="Only re-run this module")
@click.option("--detach", is_flag=True, help="Only queue the jobs; run them with 'migrate worker'")
@click.option("--no-progress", is_flag=True, help="Disable the live progress display")
@pass_context
@requires_config
@handle_errors
def rerun(
    ctx: MigrationContext, migration_id: str, module: str | None, detach: bool, no_progress: bool
) -> None:
    """Retry the failed items of a completed migration.

    Items past the retry limit are only picked up again after
    'items reset-failed'.
    """
    if module:
        module = parse_module(module).value
    _dispatch(ctx, migration_id, lambda s: s.rerun_failed(migration_id, module=module), detach, no_progress)
    if not detach:
        remaining = len(ctx.checkpoints.failed_items(migration_id, module=module))
        if remaining:
            echo_warning(f"{remaining} item(s) still failed; see 'items failed {migration_id}'")


@migrate.command(name="pause")
@click.argument("migration_id")
@pass_context
@requires_config
@handle_errors
def pause(ctx: MigrationContext, migration_id: str) -> None:
    """Pause a running migration.

    Running jobs, in this or another process, stop after their current item.
    """
    ctx.create_scheduler().pause_migration(migration_id)
    echo_success(f"Migration {migration_id} paused")


@migrate.command(name="cancel")
@click.argument("migration_id")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@pass_context
@requires_config
@confirm_action("Cancelling cannot be undone. Continue?")
@handle_errors
def cancel(ctx: MigrationContext, migration_id: str, yes: bool) -> None:
    """Cancel a migration."""
    ctx.create_scheduler().cancel_migration(migration_id)
    echo_success(f"Migration {migration_id} cancelled")


@migrate.command(name="worker")
@click.option("--no-progress", is_flag=True, help="Disable the live progress display")
@pass_context
@requires_config
@handle_errors
def worker(ctx: MigrationContext, no_progress: bool) -> None:
    """Run queued and interrupted module jobs until the queue is empty."""
    count = asyncio.run(_run_worker(ctx, no_progress))
    echo_success(f"Worker finished ({count} job(s) recovered)")


@migrate.command(name="list")
@click.option("--limit", default=20, show_default=True, help="Number of migrations")
@click.option("--account", help="Only migrations of this account")
@pass_context
@requires_config
@handle_errors
def list_migrations(ctx: MigrationContext, limit: int, account: str | None) -> None:
    """List recent migrations."""
    rows = [
        [
            m["id"],
            m["source_store"],
            m["destination_store"],
            styled_status(m["status"]),
            format_timestamp(m["created_at"]),
        ]
        for m in ctx.migration_state.list_migrations(limit=limit, account_id=account)
    ]
    print_table("Migrations", ["ID", "Source", "Destination", "Status", "Created"], rows)


@migrate.command(name="status")
@click.argument("migration_id")
@pass_context
@requires_config
@handle_errors
def status(ctx: MigrationContext, migration_id: str) -> None:
    """Show module progress and errors of a migration."""
    state = ctx.migration_state
    migration = state.get_migration(migration_id)
    counts = ctx.checkpoints.status_counts(migration_id)

    console.print(
        f"Migration [bold]{migration.id}[/bold]: {migration.source_store} → "
        f"{migration.destination_store}  {styled_status(migration.status.value)}  "
        f"({global_progress(state, migration_id)}%)"
    )

    rows = []
    for module in migration.selected:
        progress = migration.progress.get(module.value)
        module_counts = counts.get(module.value, {})
        rows.append(
            [
                module.value,
                f"{progress.percentage if progress else 0}%",
                f"{progress.processed if progress else 0}/{progress.total if progress else 0}",
                module_counts.get("completed", 0),
                module_counts.get("failed", 0),
            ]
        )
    print_table("Modules", ["Module", "Progress", "Processed", "Completed", "Failed"], rows)

    if migration.errors:
        click.echo()
        for error in migration.errors:
            echo_error(f"[{error['module']}] {format_timestamp(error['timestamp'])}: {error['error']}")


@migrate.command(name="logs")
@click.argument("migration_id")
@click.option("--limit", default=50, show_default=True, help="Number of entries")
@click.option("--offset", default=0, show_default=True, help="Entries to skip")
@click.option("--module", help="Only entries of this module")
@click.option(
    "--level",
    type=click.Choice(["info", "warning", "error", "success"]),
    help="Only entries of this level",
)
@pass_context
@requires_config
@handle_errors
def logs(
    ctx: MigrationContext,
    migration_id: str,
    limit: int,
    offset: int,
    module: str | None,
    level: str | None,
) -> None:
    """Show the log feed of a migration, newest first."""
    state = ctx.migration_state
    state.get_status(migration_id)
    entries = state.list_logs(migration_id, limit=limit, offset=offset, module=module, level=level)
    total = state.count_logs(migration_id, module=module, level=level)

    for entry in entries:
        console.print(
            f"{format_timestamp(entry['created_at'])} {styled_level(entry['level'])} "
            f"[dim]{entry['module'] or '-'}[/dim] {escape(entry['message'])}"
        )
    echo_info(f"Showing {len(entries)} of {total} entries")


@migrate.command(name="report")
@click.argument("migration_id")
@click.option("--output", "-o", type=click.Path(path_type=Path), help="Write the report to a file")
@click.option(
    "--format",
    "report_format",
    type=click.Choice(["json", "markdown"]),
    default="json",
    show_default=True,
)
@pass_context
@requires_config
@handle_errors
def report(
    ctx: MigrationContext, migration_id: str, output: Path | None, report_format: str
) -> None:
    """Generate a migration report."""
    migration_report = MigrationReport.build(ctx.migration_state, ctx.checkpoints, migration_id)
    if report_format == "markdown":
        content = migration_report.generate_markdown(output)
    else:
        content = migration_report.generate_json(output)

    if output:
        echo_success(f"Report written to {output}")
    else:
        click.echo(content)


# ----------------------------------------------------------------------
# Running jobs in this process
# ----------------------------------------------------------------------


def _dispatch(
    ctx: MigrationContext,
    migration_id: str,
    submit: Callable[[JobScheduler], Any],
    detach: bool,
    no_progress: bool,
) -> None:
    if detach:
        jobs = submit(ctx.create_scheduler())
        echo_success(f"Queued {len(jobs)} module job(s); run 'store-bridge migrate worker'")
        return

    asyncio.run(_run_jobs(ctx, migration_id, submit, no_progress))
    final = ctx.migration_state.get_status(migration_id)
    if final.value == "completed":
        echo_success(f"Migration {migration_id} completed")
    elif final.value == "failed":
        echo_error(f"Migration {migration_id} failed; see 'migrate status {migration_id}'")
        raise click.exceptions.Exit(1)
    else:
        echo_warning(f"Migration {migration_id} is {final.value}")


async def _run_jobs(
    ctx: MigrationContext,
    migration_id: str | None,
    submit: Callable[[JobScheduler], Any] | None,
    no_progress: bool,
) -> int:
    bus = LocalEventBus()
    scheduler = ctx.create_scheduler(publisher=bus)
    show_progress = not (no_progress or ctx.config.logging.disable_progress)
    display = create_progress_bar() if show_progress else None
    if display is not None:
        bus.subscribe(migration_id, callback=_progress_callback(display))

    recovered = 0
    try:
        if submit is not None:
            submit(scheduler)
        else:
            recovered = scheduler.recover()
        await scheduler.start(recover=False)
        with display if display is not None else nullcontext():
            await scheduler.run_until_idle()
    finally:
        await scheduler.stop()
    return recovered


async def _run_worker(ctx: MigrationContext, no_progress: bool) -> int:
    return await _run_jobs(ctx, None, None, no_progress)


def _progress_callback(display) -> Callable[[MigrationEvent], None]:
    tasks: dict[tuple[str, str], Any] = {}

    def on_event(event: MigrationEvent) -> None:
        payload = event.payload
        if event.kind == PROGRESS:
            key = (event.migration_id, payload["module"])
            if key not in tasks:
                tasks[key] = display.add_task(payload["module"], total=100, detail="")
            display.update(
                tasks[key],
                completed=payload["percentage"],
                detail=f"{payload['processed']}/{payload['total']}",
            )
        elif event.kind == ERROR:
            display.console.print(f"[red]✗ {payload['module']}: {escape(payload['error'])}[/red]")
        elif event.kind == COMPLETE:
            display.console.print(f"[green]✓ Migration {event.migration_id} completed[/green]")

    return on_event
