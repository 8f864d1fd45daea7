"""Per-module progress aggregation.

The ProgressAggregator converts processed/total counters into a percentage,
persists it through an atomic per-module upsert and publishes the update
together with the progress of every module of the migration.
"""

from typing import Any

from store_migration.migration.state import MigrationState
from store_migration.reporting.events import EventPublisher, NullPublisher, safe_publish
from store_migration.resources import selected_modules
from store_migration.utils.logging import get_logger

logger = get_logger(__name__)


def compute_percentage(processed: int, total: int) -> int:
    """Rounded percentage, capped at 100. An empty module counts as done."""
    if total <= 0:
        return 100
    return min(100, round(processed / total * 100))


class ProgressAggregator:
    """Progress reporting for the module jobs of one migration.

    Within one run of a module, the reported processed count never decreases
    and never exceeds the total; stale or out-of-order updates are ignored.
    """

    def __init__(
        self,
        migration_id: str,
        state: MigrationState,
        publisher: EventPublisher | None = None,
    ):
        self.migration_id = migration_id
        self.state = state
        self.publisher = publisher or NullPublisher()
        self._processed: dict[str, int] = {}
        self._totals: dict[str, int] = {}

    async def set_total(self, module: str, total: int) -> None:
        """Register the item total of a module; starts a new run for it."""
        total = max(int(total), 0)
        self._totals[module] = total
        self._processed[module] = 0
        self.state.set_module_total(self.migration_id, module, total)
        logger.info("module_total_registered", migration_id=self.migration_id, module=module, total=total)

    async def update(self, module: str, processed: int, total: int | None = None) -> int:
        """Report processed items of a module.

        Args:
            module: Module name
            processed: Items processed so far in this run
            total: Item total (defaults to the registered total)

        Returns:
            The percentage now stored for the module
        """
        total = self._totals.get(module, 0) if total is None else max(int(total), 0)
        processed = min(max(int(processed), self._processed.get(module, 0)), total)

        self._totals[module] = total
        self._processed[module] = processed
        percentage = compute_percentage(processed, total)
        await self._store(module, percentage, processed, total)
        return percentage

    async def set_percentage(self, module: str, percentage: int, processed: int, total: int) -> None:
        """Report a derived percentage directly (used by modules measured in sub-steps)."""
        percentage = max(0, min(100, int(percentage)))
        self._processed[module] = max(processed, self._processed.get(module, 0))
        self._totals[module] = total
        await self._store(module, percentage, self._processed[module], total)

    async def _store(self, module: str, percentage: int, processed: int, total: int) -> None:
        self.state.set_module_progress(self.migration_id, module, percentage, processed, total)

        all_progress = self.state.get_module_progress(self.migration_id)
        payload: dict[str, Any] = {
            "module": module,
            "percentage": percentage,
            "processed": processed,
            "total": total,
            "all_progress": {m: p.percentage for m, p in all_progress.items()},
            "all_processed": {m: p.processed for m, p in all_progress.items()},
            "all_totals": {m: p.total for m, p in all_progress.items()},
        }
        await safe_publish(
            self.publisher.publish_progress(self.migration_id, payload),
            channel=f"migration:progress:{self.migration_id}",
        )

    def global_progress(self) -> int:
        """Mean percentage over the selected modules of the migration."""
        return global_progress(self.state, self.migration_id)


def global_progress(state: MigrationState, migration_id: str) -> int:
    """Mean percentage over the selected modules of a migration."""
    migration = state.get_migration(migration_id)
    modules = selected_modules(migration.selected_modules)
    if not modules:
        return 0
    total = sum(
        migration.progress[m.value].percentage if m.value in migration.progress else 0
        for m in modules
    )
    return round(total / len(modules))
