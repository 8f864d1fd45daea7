"""Cooperative cancellation for running module jobs.

A CancellationToken is handed to each migrator and checked once per item.
It trips either through an in-process signal (pause or cancel issued by the
scheduler of the same process) or by reading the durable migration status,
which covers a pause issued from another process.
"""

from store_migration.client.exceptions import MigrationHalted
from store_migration.migration.lifecycle import HALTED_STATUSES, MigrationStatus
from store_migration.migration.state import MigrationState


class CancellationToken:
    """Stop signal for the jobs of one migration."""

    def __init__(self, migration_id: str, state: MigrationState | None = None):
        """
        Args:
            migration_id: Migration the token belongs to
            state: When given, the durable status is read on every check
        """
        self.migration_id = migration_id
        self._state = state
        self._halted: MigrationStatus | None = None

    def signal(self, status: MigrationStatus = MigrationStatus.PAUSED) -> None:
        """Trip the token from the current process."""
        self._halted = MigrationStatus(status)

    def check(self) -> MigrationStatus | None:
        """Return the halting status if the migration should stop, else None."""
        if self._halted is None and self._state is not None:
            status = self._state.get_status(self.migration_id)
            if status in HALTED_STATUSES:
                self._halted = status
        return self._halted

    def raise_if_halted(self) -> None:
        """
        Raises:
            MigrationHalted: If the migration was paused or cancelled
        """
        status = self.check()
        if status is not None:
            raise MigrationHalted(self.migration_id, status.value)
