"""Migration log feed.

Entries are written to the ``migration_logs`` table (the audit trail and
the substrate of the live feed), mirrored to structlog and published to
subscribers of the migration.
"""

from typing import Any

from store_migration.client.exceptions import StateError
from store_migration.migration.state import MigrationState
from store_migration.reporting.events import EventPublisher, NullPublisher, safe_publish
from store_migration.utils.logging import get_logger

logger = get_logger(__name__)

_STRUCTLOG_LEVELS = {
    "info": "info",
    "success": "info",
    "warning": "warning",
    "error": "error",
}


class MigrationLogger:
    """Append entries to the log feed of one migration."""

    def __init__(
        self,
        migration_id: str,
        state: MigrationState,
        publisher: EventPublisher | None = None,
    ):
        self.migration_id = migration_id
        self.state = state
        self.publisher = publisher or NullPublisher()

    async def log(
        self, level: str, message: str, module: str | None = None, **metadata: Any
    ) -> dict[str, Any] | None:
        """Record one entry.

        A failure to store the entry is logged and otherwise ignored: the
        feed is an audit trail, it must not stop a migration.

        Returns:
            The stored entry, or None if it could not be stored
        """
        getattr(logger, _STRUCTLOG_LEVELS.get(level, "info"))(
            "migration_log",
            migration_id=self.migration_id,
            module=module,
            level=level,
            message=message,
            **metadata,
        )

        try:
            entry = self.state.append_log(
                self.migration_id, level, message, module=module, metadata=metadata or None
            )
        except StateError as e:
            logger.error("migration_log_write_failed", migration_id=self.migration_id, error=str(e))
            return None

        await safe_publish(
            self.publisher.publish_log(self.migration_id, entry),
            channel=f"migration:log:{self.migration_id}",
        )
        return entry

    async def info(self, message: str, module: str | None = None, **metadata: Any) -> None:
        await self.log("info", message, module=module, **metadata)

    async def warning(self, message: str, module: str | None = None, **metadata: Any) -> None:
        await self.log("warning", message, module=module, **metadata)

    async def error(self, message: str, module: str | None = None, **metadata: Any) -> None:
        await self.log("error", message, module=module, **metadata)

    async def success(self, message: str, module: str | None = None, **metadata: Any) -> None:
        await self.log("success", message, module=module, **metadata)
