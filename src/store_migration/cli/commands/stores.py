"""
Store connection commands.
"""

import asyncio

import click

from store_migration.cli.context import MigrationContext
from store_migration.cli.decorators import handle_errors, pass_context, requires_config
from store_migration.cli.utils import echo_error, echo_success, print_table


@click.group(name="stores")
def stores() -> None:
    """Inspect and test configured stores."""


@stores.command(name="list")
@pass_context
@requires_config
@handle_errors
def list_stores(ctx: MigrationContext) -> None:
    """List configured stores."""
    rows = [
        [name, store.url, store.api_version, store.timeout]
        for name, store in ctx.config.stores.items()
    ]
    print_table("Stores", ["Name", "URL", "API Version", "Timeout (s)"], rows)


@stores.command(name="test")
@click.argument("name")
@pass_context
@requires_config
@handle_errors
def test_store(ctx: MigrationContext, name: str) -> None:
    """Test the connection to store NAME."""
    result = asyncio.run(_test(ctx, name))
    if not result["success"]:
        echo_error(f"{name}: {result['error']}")
        raise click.exceptions.Exit(4)
    echo_success(f"{name}: connected to {result.get('shop') or name}")


async def _test(ctx: MigrationContext, name: str) -> dict:
    async with ctx.store_client(name) as client:
        return await client.test_connection()
