"""
Main CLI entry point for Store Bridge.

This module provides the command-line interface for migrating products,
collections, pages, media and themes from one store to another.
"""

import sys
from pathlib import Path

import click
from dotenv import load_dotenv

from store_migration import __version__
from store_migration.cli.commands import config as config_commands
from store_migration.cli.commands import items as items_commands
from store_migration.cli.commands import migrate as migrate_commands
from store_migration.cli.commands import stores as stores_commands
from store_migration.cli.context import MigrationContext
from store_migration.utils.logging import configure_logging, get_logger

# Load environment variables from .env file
load_dotenv()

logger = get_logger(__name__)


@click.group()
@click.version_option(version=__version__, prog_name="store-bridge")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file",
    envvar="STORE_BRIDGE_CONFIG",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    help="Set console logging level (file logging stays at DEBUG)",
    envvar="STORE_BRIDGE_LOG_LEVEL",
)
@click.option(
    "--log-file",
    type=click.Path(path_type=Path),
    help="Log file path (default: logs/migration.log)",
    envvar="STORE_BRIDGE_LOG_FILE",
)
@click.pass_context
def cli(
    ctx: click.Context,
    config: Path | None,
    log_level: str,
    log_file: Path | None,
) -> None:
    """Store Bridge - Migrate a store's catalogue and content to another store.

    Examples:

        # Validate configuration
        store-bridge -c config.yaml config validate

        # Migrate everything from one store to another
        store-bridge -c config.yaml migrate start -s old-shop -d new-shop

        # Show migration status
        store-bridge -c config.yaml migrate status MIGRATION_ID
    """
    effective_log_file = Path(log_file) if log_file else Path("logs/migration.log")
    effective_log_file.parent.mkdir(parents=True, exist_ok=True)

    configure_logging(level=log_level, log_file=str(effective_log_file))

    ctx.obj = MigrationContext(
        config_path=config,
        log_level=log_level,
        log_file=log_file,
    )

    logger.debug("cli_initialized", config=str(config) if config else None, log_level=log_level)


# Register command groups
cli.add_command(config_commands.config)
cli.add_command(stores_commands.stores)
cli.add_command(migrate_commands.migrate)
cli.add_command(items_commands.items)


def main() -> int:
    """Main entry point for CLI."""
    try:
        # with standalone_mode off, click returns the code of an Exit
        result = cli(standalone_mode=False)
        return result if isinstance(result, int) else 0
    except click.ClickException as e:
        e.show()
        return e.exit_code
    except click.exceptions.Abort:
        click.echo("Aborted!", err=True)
        return 1
    except Exception as e:
        logger.error("unexpected_error", error=str(e), exc_info=True)
        click.echo(f"Error: {e}", err=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
