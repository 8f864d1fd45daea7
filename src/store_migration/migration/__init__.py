"""
Migration module for Store Bridge.

This module provides state management, item checkpoints, lifecycle rules and
cooperative cancellation. The job scheduler lives in
``store_migration.migration.scheduler``.
"""

# Cancellation
from store_migration.migration.cancellation import CancellationToken

# Checkpoint management
from store_migration.migration.checkpoint import CheckpointRecord, CheckpointStore

# Database utilities
from store_migration.migration.database import (
    create_database_engine,
    get_engine,
    get_session,
    get_session_factory,
    init_database,
)

# Lifecycle
from store_migration.migration.lifecycle import MigrationStatus, can_transition

# Database models
from store_migration.migration.models import (
    Base,
    Migration,
    MigrationFailure,
    MigrationItem,
    MigrationLog,
    ModuleJob,
    ModuleProgress,
)

# State management
from store_migration.migration.state import MigrationSnapshot, MigrationState

__all__ = [
    # Models
    "Base",
    "Migration",
    "ModuleProgress",
    "MigrationItem",
    "MigrationLog",
    "MigrationFailure",
    "ModuleJob",
    # Database utilities
    "init_database",
    "get_engine",
    "get_session",
    "get_session_factory",
    "create_database_engine",
    # Lifecycle
    "MigrationStatus",
    "can_transition",
    # State management
    "MigrationState",
    "MigrationSnapshot",
    # Checkpoint management
    "CheckpointStore",
    "CheckpointRecord",
    # Cancellation
    "CancellationToken",
]
