"""
CLI context manager for Store Bridge.

This module provides the context object that is passed to all CLI commands,
containing configuration and state management.
"""

from dataclasses import dataclass, field
from pathlib import Path

from store_migration.client.credentials import ConfigCredentialProvider, StoreCredential
from store_migration.client.exceptions import ConfigurationError
from store_migration.client.store_client import StoreClient, create_store_client
from store_migration.config import MigrationConfig, load_config_from_yaml
from store_migration.migration.checkpoint import CheckpointStore
from store_migration.migration.scheduler import JobScheduler
from store_migration.migration.state import MigrationState
from store_migration.reporting.events import EventPublisher
from store_migration.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class MigrationContext:
    """
    Context object for CLI commands.

    Holds the configuration and the state shared across CLI commands. It is
    passed via Click's context mechanism.

    Attributes:
        config_path: Path to configuration file
        log_level: Logging level
        log_file: Optional log file path
    """

    config_path: Path | None = None
    log_level: str = "INFO"
    log_file: Path | None = None

    # Lazy-loaded attributes
    _config: MigrationConfig | None = field(default=None, init=False, repr=False)
    _migration_state: MigrationState | None = field(default=None, init=False, repr=False)

    @property
    def config(self) -> MigrationConfig:
        """Get or load migration configuration."""
        if self._config is None:
            if self.config_path is None:
                raise ConfigurationError(
                    "Configuration file path not provided. "
                    "Use --config option or set STORE_BRIDGE_CONFIG environment variable."
                )

            logger.debug("loading_configuration", config_path=str(self.config_path))
            try:
                self._config = load_config_from_yaml(self.config_path)
            except (FileNotFoundError, ValueError) as e:
                raise ConfigurationError(str(e)) from e
            logger.debug("configuration_loaded")

        return self._config

    @property
    def migration_state(self) -> MigrationState:
        """Get or create migration state tracker."""
        if self._migration_state is None:
            logger.debug("initializing_migration_state", db_path=str(self.config.state.db_path))
            self._migration_state = MigrationState(config=self.config.state)

        return self._migration_state

    @property
    def checkpoints(self) -> CheckpointStore:
        return CheckpointStore(self.migration_state)

    def resolve_store(self, store_ref: str) -> StoreCredential:
        """
        Raises:
            ConfigurationError: If the store is not configured
        """
        return ConfigCredentialProvider(self.config.stores).resolve(store_ref)

    def store_client(self, store_ref: str) -> StoreClient:
        """Create a client for a configured store (caller closes it)."""
        return create_store_client(
            self.resolve_store(store_ref),
            rate_limits=self.config.rate_limits,
            log_payloads=self.config.logging.log_payloads,
            max_payload_size=self.config.logging.max_payload_size,
        )

    def create_scheduler(self, publisher: EventPublisher | None = None) -> JobScheduler:
        """Create a job scheduler over this context's state."""
        return JobScheduler(self.config, self.migration_state, publisher=publisher)
