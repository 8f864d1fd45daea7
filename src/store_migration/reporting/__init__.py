"""Progress, log feed, events and reports for store migrations."""

from store_migration.reporting.events import (
    EventPublisher,
    LocalEventBus,
    MigrationEvent,
    NullPublisher,
)
from store_migration.reporting.migration_log import MigrationLogger
from store_migration.reporting.progress import ProgressAggregator, compute_percentage
from store_migration.reporting.report import MigrationReport

__all__ = [
    "EventPublisher",
    "LocalEventBus",
    "MigrationEvent",
    "NullPublisher",
    "MigrationLogger",
    "ProgressAggregator",
    "compute_percentage",
    "MigrationReport",
]
