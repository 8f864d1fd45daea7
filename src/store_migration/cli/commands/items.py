"""
Item checkpoint commands.
"""

import click
from rich.markup import escape

from store_migration.cli.context import MigrationContext
from store_migration.cli.decorators import handle_errors, pass_context, requires_config
from store_migration.cli.utils import echo_info, echo_success, print_table
from store_migration.resources import parse_module


@click.group(name="items")
def items() -> None:
    """Inspect and re-admit migrated items."""


@items.command(name="failed")
@click.argument("migration_id")
@click.option("--module", help="Only items of this module")
@click.option("--limit", default=50, show_default=True, help="Number of items")
@pass_context
@requires_config
@handle_errors
def failed(ctx: MigrationContext, migration_id: str, module: str | None, limit: int) -> None:
    """List failed items of a migration."""
    ctx.migration_state.get_status(migration_id)
    if module:
        module = parse_module(module).value
    records = ctx.checkpoints.failed_items(migration_id, module=module, limit=limit)
    rows = [[r.source_id, r.retry_count, escape(r.error_message or "")] for r in records]
    print_table("Failed Items", ["Source ID", "Attempts", "Last Error"], rows)


@items.command(name="reset-failed")
@click.argument("migration_id")
@click.option("--module", help="Only reset items of this module")
@pass_context
@requires_config
@handle_errors
def reset_failed(ctx: MigrationContext, migration_id: str, module: str | None) -> None:
    """Re-admit failed items so the next run retries them.

    Clears the retry count of every failed item. Retry them afterwards with
    'migrate rerun' (completed migrations) or 'migrate resume' (paused or
    failed ones).
    """
    status = ctx.migration_state.get_status(migration_id)
    if module:
        module = parse_module(module).value
    count = ctx.checkpoints.reset_failed(migration_id, module=module)
    if count:
        echo_success(f"Reset {count} failed item(s)")
        command = "rerun" if status.value == "completed" else "resume"
        echo_info(f"Run 'store-bridge migrate {command} {migration_id}' to retry them")
    else:
        echo_info("No failed items to reset")
