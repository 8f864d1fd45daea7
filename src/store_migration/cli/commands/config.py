"""
Configuration management commands.

This module provides commands for validating migration configuration.
"""

import asyncio

import click

from store_migration.cli.context import MigrationContext
from store_migration.cli.decorators import handle_errors, pass_context, requires_config
from store_migration.cli.utils import echo_error, echo_info, echo_success, echo_warning, print_table
from store_migration.config import MigrationConfig
from store_migration.utils.logging import get_logger

logger = get_logger(__name__)


@click.group(name="config")
def config() -> None:
    """Configuration management commands."""


@config.command(name="validate")
@click.option(
    "--check-connectivity",
    is_flag=True,
    help="Test connectivity to every configured store",
)
@pass_context
@requires_config
@handle_errors
def validate(ctx: MigrationContext, check_connectivity: bool) -> None:
    """Validate migration configuration.

    Loads the configuration file, prints a summary of the stores, rate
    limits and scheduler settings and, with --check-connectivity, calls
    each store's shop endpoint.

    Examples:

        store-bridge -c config.yaml config validate

        store-bridge -c config.yaml config validate --check-connectivity
    """
    echo_info(f"Validating configuration: {ctx.config_path}")
    config = ctx.config

    click.echo()
    _display_config_summary(config)

    if not config.stores:
        echo_warning("No stores configured; add a 'stores' section to run migrations")

    if check_connectivity and config.stores:
        click.echo()
        echo_info("Testing connectivity...")
        failures = asyncio.run(_test_stores(ctx, list(config.stores)))
        if failures:
            raise click.ClickException(f"{failures} store(s) unreachable")

    click.echo()
    echo_success("Configuration is valid!")


def _display_config_summary(config: MigrationConfig) -> None:
    limits = config.rate_limits
    rows = [[f"Store '{name}'", f"{store.url} (API {store.api_version})"] for name, store in config.stores.items()]
    rows.extend(
        [
            ["REST limit", f"{limits.rest_capacity}/{limits.rest_interval}s, spacing {limits.rest_min_spacing}s"],
            [
                "GraphQL limit",
                f"{limits.graphql_capacity}/{limits.graphql_interval}s, spacing {limits.graphql_min_spacing}s",
            ],
            ["Throttle attempts", limits.throttle_max_attempts],
            ["Workers", config.scheduler.concurrency],
            ["Job attempts", config.scheduler.job_attempts],
            ["Item retries", config.migrators.max_item_retries],
            ["State DB", config.state.db_path],
        ]
    )
    print_table("Configuration Summary", ["Setting", "Value"], rows)


async def _test_stores(ctx: MigrationContext, names: list[str]) -> int:
    failures = 0
    for name in names:
        async with ctx.store_client(name) as client:
            result = await client.test_connection()
        if result["success"]:
            echo_success(f"{name}: connected to {result.get('shop') or ctx.config.stores[name].url}")
        else:
            failures += 1
            echo_error(f"{name}: {result['error']}")
    return failures
