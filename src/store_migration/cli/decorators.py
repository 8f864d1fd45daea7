"""
Decorators shared by the store-bridge commands.

Every command is stacked as ``@pass_context``, ``@requires_config`` (when it
touches stores or state) and ``@handle_errors``. The last one turns the
migration exceptions into an error line, a hint naming the command that
helps, and the exit code listed on ``handle_errors``.
"""

import functools
from collections.abc import Callable
from dataclasses import dataclass

import click
from pydantic import ValidationError as PydanticValidationError

from store_migration.cli.context import MigrationContext
from store_migration.cli.utils import echo_error
from store_migration.client.exceptions import (
    APIError,
    AuthenticationError,
    ConfigurationError,
    LifecycleError,
    MigrationNotFoundError,
    NetworkError,
    RateLimitError,
    StateError,
    UnknownModuleError,
)
from store_migration.migration.lifecycle import MigrationStatus
from store_migration.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ErrorOutcome:
    """How one family of exceptions is reported."""

    errors: tuple[type[BaseException], ...]
    exit_code: int
    label: str
    event: str
    hint: Callable[[BaseException], str | None] = lambda e: None


def _lifecycle_hint(e: BaseException) -> str | None:
    current = getattr(e, "current_status", None)
    if current == MigrationStatus.COMPLETED.value:
        return "Use 'migrate rerun' to retry failed items of a completed migration."
    if current in (MigrationStatus.PAUSED.value, MigrationStatus.FAILED.value):
        return "Use 'migrate resume' to continue it."
    if current == MigrationStatus.PENDING.value:
        return "The migration has not been started; use 'migrate start' or 'migrate cancel'."
    return None


def _api_hint(e: BaseException) -> str | None:
    if isinstance(e, RateLimitError) and e.retry_after:
        return f"The store is throttling requests; retry in {e.retry_after:g}s."
    if getattr(e, "status_code", None):
        return f"Response status: {e.status_code}"
    return None


# Order matters: the first matching row wins
ERROR_OUTCOMES: tuple[ErrorOutcome, ...] = (
    ErrorOutcome(
        (ConfigurationError, PydanticValidationError),
        2,
        "Configuration Error",
        "configuration_error",
        lambda e: "Check the config file; 'store-bridge config validate' lists the problems.",
    ),
    ErrorOutcome(
        (AuthenticationError,),
        3,
        "Authentication Error",
        "authentication_error",
        lambda e: "Check the store access tokens; 'store-bridge stores test NAME' retries one.",
    ),
    ErrorOutcome((APIError, NetworkError), 4, "API Error", "api_error", _api_hint),
    ErrorOutcome(
        (StateError,),
        5,
        "State Error",
        "state_error",
        lambda e: "The migration database could not be read or written (see state.db_path).",
    ),
    ErrorOutcome((LifecycleError,), 6, "Not Allowed", "lifecycle_error", _lifecycle_hint),
    ErrorOutcome(
        (MigrationNotFoundError,),
        1,
        "Error",
        "migration_not_found",
        lambda e: "'store-bridge migrate list' shows the known migrations.",
    ),
    ErrorOutcome((UnknownModuleError,), 1, "Error", "unknown_module"),
)


def pass_context(f: Callable) -> Callable:
    """Call the command with the MigrationContext built by the root group."""

    @click.pass_context
    @functools.wraps(f)
    def wrapper(click_ctx: click.Context, *args, **kwargs):
        migration_ctx: MigrationContext = click_ctx.obj
        return f(migration_ctx, *args, **kwargs)

    return wrapper


def handle_errors(f: Callable) -> Callable:
    """
    Report failures of a command and exit with its code.

    Exit codes:
        1: Unknown migration or module, or an unexpected error
        2: Configuration error (including an unknown store name)
        3: Store rejected the access token
        4: Store API or network error
        5: Migration database error
        6: Operation not allowed in the migration's current status
    """

    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except click.exceptions.Exit:
            raise
        except Exception as e:
            outcome = next((o for o in ERROR_OUTCOMES if isinstance(e, o.errors)), None)
            if outcome is None:
                logger.error("unexpected_error", command=f.__name__, error=str(e), exc_info=True)
                echo_error(f"Unexpected Error: {e}")
                click.echo("See the log file for the traceback.", err=True)
                raise click.exceptions.Exit(1) from e

            logger.error(outcome.event, command=f.__name__, error=str(e))
            echo_error(f"{outcome.label}: {e}")
            hint = outcome.hint(e)
            if hint:
                click.echo(hint, err=True)
            raise click.exceptions.Exit(outcome.exit_code) from e

    return wrapper


def requires_config(f: Callable) -> Callable:
    """Load and validate the config file before the command runs (exit 2 otherwise)."""

    @functools.wraps(f)
    def wrapper(ctx: MigrationContext, *args, **kwargs):
        if ctx.config_path is None:
            echo_error(
                "Configuration file required. Use --config option or set STORE_BRIDGE_CONFIG."
            )
            raise click.exceptions.Exit(2)

        try:
            _ = ctx.config
        except Exception as e:
            echo_error(f"Error loading configuration: {e}")
            raise click.exceptions.Exit(2) from e

        return f(ctx, *args, **kwargs)

    return wrapper


def confirm_action(message: str, abort_message: str = "Nothing was changed.") -> Callable:
    """Ask before a destructive command unless it was given ``--yes``."""

    def decorator(f: Callable) -> Callable:
        @functools.wraps(f)
        def wrapper(*args, **kwargs):
            if not click.get_current_context().params.get("yes") and not click.confirm(message):
                click.echo(abort_message)
                raise click.exceptions.Exit(0)
            return f(*args, **kwargs)

        return wrapper

    return decorator
