"""
Per-item checkpoint ledger.

The CheckpointStore is the single source of truth for whether a source item
has been migrated. It keeps no in-memory cache: every lookup reads the
database, so a module job can resume on any worker or after a restart.
"""

from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import func, select, update

from store_migration.migration.database import dialect_insert, get_session
from store_migration.migration.models import MigrationItem
from store_migration.migration.state import MigrationState
from store_migration.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class CheckpointRecord:
    """Stored outcome for one source item."""

    source_id: str
    destination_id: str | None
    status: str
    retry_count: int = 0
    error_message: str | None = None

    @property
    def is_migrated(self) -> bool:
        """An item with a destination id is never sent again."""
        return self.destination_id is not None


class CheckpointStore:
    """
    Durable mapping of (migration, module, source id) to its destination item.

    Usage:
        checkpoints = CheckpointStore(state)
        record = checkpoints.get(migration_id, "products", "632910392")
        if record is None or not record.is_migrated:
            ...
            checkpoints.upsert(migration_id, "products", "632910392", "1071559")
    """

    def __init__(self, state: MigrationState):
        """
        Initialize checkpoint store.

        Args:
            state: MigrationState whose database holds the checkpoints
        """
        self.state = state
        self.database_url = state.database_url

    def get(self, migration_id: str, module: str, source_id: str) -> CheckpointRecord | None:
        """Return the checkpoint of an item, or None if it was never attempted."""
        with get_session(self.database_url) as session:
            item = session.scalar(
                select(MigrationItem).where(
                    MigrationItem.migration_id == migration_id,
                    MigrationItem.module == module,
                    MigrationItem.source_id == str(source_id),
                )
            )
            if item is None:
                return None
            return CheckpointRecord(
                source_id=item.source_id,
                destination_id=item.destination_id,
                status=item.status,
                retry_count=item.retry_count,
                error_message=item.error_message,
            )

    def upsert(
        self,
        migration_id: str,
        module: str,
        source_id: str,
        destination_id: str | None,
        status: str = "completed",
    ) -> None:
        """
        Insert or update the checkpoint of an item; the last write wins.

        A successful write clears any previous error message but keeps the
        retry count as history.
        """
        now = datetime.now(UTC)
        with get_session(self.database_url) as session:
            stmt = dialect_insert(session, MigrationItem).values(
                migration_id=migration_id,
                module=module,
                source_id=str(source_id),
                destination_id=str(destination_id) if destination_id is not None else None,
                status=status,
                retry_count=0,
                created_at=now,
                updated_at=now,
            )
            session.execute(
                stmt.on_conflict_do_update(
                    index_elements=["migration_id", "module", "source_id"],
                    set_={
                        "destination_id": stmt.excluded.destination_id,
                        "status": stmt.excluded.status,
                        "error_message": None,
                        "updated_at": now,
                    },
                )
            )

        logger.debug(
            "checkpoint_saved",
            migration_id=migration_id,
            module=module,
            source_id=source_id,
            destination_id=destination_id,
            status=status,
        )

    def record_failure(
        self, migration_id: str, module: str, source_id: str, error_message: str
    ) -> None:
        """
        Mark an item failed and increment its retry count.

        Any destination id recorded by an earlier attempt is left untouched.
        """
        now = datetime.now(UTC)
        with get_session(self.database_url) as session:
            stmt = dialect_insert(session, MigrationItem).values(
                migration_id=migration_id,
                module=module,
                source_id=str(source_id),
                destination_id=None,
                status="failed",
                error_message=error_message,
                retry_count=1,
                created_at=now,
                updated_at=now,
            )
            session.execute(
                stmt.on_conflict_do_update(
                    index_elements=["migration_id", "module", "source_id"],
                    set_={
                        "status": "failed",
                        "error_message": stmt.excluded.error_message,
                        "retry_count": MigrationItem.retry_count + 1,
                        "updated_at": now,
                    },
                )
            )

        logger.warning(
            "checkpoint_failed",
            migration_id=migration_id,
            module=module,
            source_id=source_id,
            error_message=error_message,
        )

    def completed_mapping(self, migration_id: str, module: str) -> dict[str, str]:
        """Source id to destination id for every completed item of a module."""
        with get_session(self.database_url) as session:
            rows = session.execute(
                select(MigrationItem.source_id, MigrationItem.destination_id).where(
                    MigrationItem.migration_id == migration_id,
                    MigrationItem.module == module,
                    MigrationItem.status == "completed",
                    MigrationItem.destination_id.is_not(None),
                )
            )
            return {source_id: destination_id for source_id, destination_id in rows}

    def status_counts(self, migration_id: str) -> dict[str, dict[str, int]]:
        """Item counts grouped by module and status."""
        with get_session(self.database_url) as session:
            rows = session.execute(
                select(MigrationItem.module, MigrationItem.status, func.count(MigrationItem.id))
                .where(MigrationItem.migration_id == migration_id)
                .group_by(MigrationItem.module, MigrationItem.status)
            )
            counts: dict[str, dict[str, int]] = {}
            for module, status, count in rows:
                counts.setdefault(module, {})[status] = count
            return counts

    def failed_items(
        self, migration_id: str, module: str | None = None, limit: int = 100
    ) -> list[CheckpointRecord]:
        """Failed items, most recently updated first."""
        with get_session(self.database_url) as session:
            query = (
                select(MigrationItem)
                .where(
                    MigrationItem.migration_id == migration_id,
                    MigrationItem.status == "failed",
                )
                .order_by(MigrationItem.updated_at.desc())
                .limit(limit)
            )
            if module:
                query = query.where(MigrationItem.module == module)
            return [
                CheckpointRecord(
                    source_id=item.source_id,
                    destination_id=item.destination_id,
                    status=item.status,
                    retry_count=item.retry_count,
                    error_message=item.error_message,
                )
                for item in session.scalars(query)
            ]

    def reset_failed(self, migration_id: str, module: str | None = None) -> int:
        """
        Re-admit failed items: status back to pending and retry count to zero.

        Returns:
            Number of items reset
        """
        with get_session(self.database_url) as session:
            stmt = (
                update(MigrationItem)
                .where(
                    MigrationItem.migration_id == migration_id,
                    MigrationItem.status == "failed",
                )
                .values(status="pending", retry_count=0, updated_at=datetime.now(UTC))
            )
            if module:
                stmt = stmt.where(MigrationItem.module == module)
            count = session.execute(stmt).rowcount or 0

        logger.info(
            "checkpoints_reset",
            migration_id=migration_id,
            module=module or "all",
            count=count,
        )
        return count
