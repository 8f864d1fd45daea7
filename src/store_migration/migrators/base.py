"""Base class for module migrators.

A migrator copies every source item of one module to the destination store.
The shared loop in ``ResourceMigrator.migrate`` handles checkpoint lookups,
per-item failure bookkeeping, cooperative cancellation, progress and the
milestone log; subclasses supply discovery, iteration and the create call.
"""

from collections.abc import AsyncIterator
from dataclasses import asdict, dataclass, field
from typing import Any

from store_migration.client.exceptions import MigrationHalted, StateError, StoreMigrationError
from store_migration.client.store_client import StoreClient
from store_migration.config import MigratorConfig
from store_migration.migration.cancellation import CancellationToken
from store_migration.migration.checkpoint import CheckpointStore
from store_migration.reporting.migration_log import MigrationLogger
from store_migration.reporting.progress import ProgressAggregator
from store_migration.resources import ModuleName
from store_migration.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class MigratorContext:
    """Everything a module job borrows for one run."""

    migration_id: str
    source: StoreClient
    destination: StoreClient
    checkpoints: CheckpointStore
    progress: ProgressAggregator
    log: MigrationLogger
    token: CancellationToken
    config: MigratorConfig = field(default_factory=MigratorConfig)


@dataclass
class MigrationSummary:
    """Outcome of one ``migrate()`` run."""

    module: str
    succeeded: bool = True
    total: int = 0
    processed: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def pick(data: dict[str, Any], fields: tuple[str, ...]) -> dict[str, Any]:
    """Copy the allow-listed fields that are present and not null."""
    return {key: data[key] for key in fields if data.get(key) is not None}


class ResourceMigrator:
    """Base class for the module migrators.

    Subclasses set ``MODULE`` and the nouns used in log messages, and
    implement ``discover_total``, ``iter_items``, ``transform`` and ``create``.
    ``after_create`` runs secondary writes (metafields, memberships) once the
    item is checkpointed; an error it raises is logged as a warning and never
    marks the item failed.
    """

    MODULE: ModuleName
    NOUN = "item"
    NOUN_PLURAL = "items"

    def __init__(self, context: MigratorContext):
        """Initialize migrator.

        Args:
            context: Clients, stores and reporters for this run
        """
        self.context = context
        self.migration_id = context.migration_id
        self.source = context.source
        self.destination = context.destination
        self.checkpoints = context.checkpoints
        self.progress = context.progress
        self.log = context.log
        self.token = context.token
        self.config = context.config
        self.summary = MigrationSummary(module=self.module)

    @property
    def module(self) -> str:
        return self.MODULE.value

    @property
    def page_size(self) -> int:
        return self.config.page_size(self.module)

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    async def discover_total(self) -> int:
        raise NotImplementedError

    def iter_items(self) -> AsyncIterator[Any]:
        raise NotImplementedError

    def source_id(self, item: Any) -> str:
        return str(item["id"])

    def label(self, item: Any) -> str:
        return str(item.get("title") or self.source_id(item))

    def transform(self, item: Any) -> dict[str, Any]:
        raise NotImplementedError

    async def create(self, item: Any, payload: dict[str, Any]) -> str:
        """Create the item at the destination and return its id."""
        raise NotImplementedError

    async def after_create(self, item: Any, destination_id: str) -> None:
        return None

    async def report_progress(self) -> None:
        await self.progress.update(self.module, self.summary.processed, self.summary.total)

    async def finish(self) -> None:
        return None

    # ------------------------------------------------------------------
    # Shared loop
    # ------------------------------------------------------------------

    async def migrate(self) -> MigrationSummary:
        """Run the module migration.

        Returns:
            Summary of this run

        Raises:
            MigrationHalted: If the migration was paused or cancelled
            StoreMigrationError: If the module cannot proceed (count or page
                fetch failed, missing prerequisites)
        """
        self.summary = MigrationSummary(module=self.module)
        await self.log.info(f"Starting {self.NOUN} migration", module=self.module)

        try:
            self.summary.total = await self.discover_total()
            await self.progress.set_total(self.module, self.summary.total)
            await self.log.info(
                f"Found {self.summary.total} {self.NOUN_PLURAL} to migrate", module=self.module
            )

            async for item in self.iter_items():
                self.token.raise_if_halted()
                await self.process_item(item)
                await self.report_progress()
                if self.summary.processed % self.config.milestone_every == 0:
                    await self.log.info(
                        f"Migrated {self.summary.processed}/{self.summary.total} {self.NOUN_PLURAL}",
                        module=self.module,
                    )

            if self.summary.processed < self.summary.total:
                await self.log.warning(
                    f"Source listed {self.summary.processed} of {self.summary.total} counted "
                    f"{self.NOUN_PLURAL}",
                    module=self.module,
                )
                self.summary.total = self.summary.processed
            # also settles empty modules at 100%
            await self.report_progress()
            await self.finish()
        except MigrationHalted as e:
            await self.log.warning(
                f"{self.NOUN.capitalize()} migration stopped ({e.status})",
                module=self.module,
                processed=self.summary.processed,
                total=self.summary.total,
            )
            raise
        except Exception as e:
            self.summary.succeeded = False
            await self.log.error(
                f"{self.NOUN.capitalize()} migration failed",
                module=self.module,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

        await self.log.success(
            f"{self.NOUN.capitalize()} migration completed",
            module=self.module,
            total=self.summary.total,
            processed=self.summary.processed,
            completed=self.summary.completed,
            failed=self.summary.failed,
            skipped=self.summary.skipped,
        )
        return self.summary

    async def process_item(self, item: Any) -> None:
        """Migrate one item; item failures are recorded, never raised."""
        source_id = self.source_id(item)
        record = self.checkpoints.get(self.migration_id, self.module, source_id)

        if record is not None and record.is_migrated:
            logger.debug("item_already_migrated", module=self.module, source_id=source_id)
            self.summary.processed += 1
            self.summary.skipped += 1
            return

        if (
            record is not None
            and record.status == "failed"
            and record.retry_count >= self.config.max_item_retries
        ):
            await self.log.warning(
                f"Skipping {self.NOUN} {self.label(item)} after {record.retry_count} failed attempts",
                module=self.module,
                source_id=source_id,
                last_error=record.error_message,
            )
            self.summary.processed += 1
            self.summary.skipped += 1
            return

        try:
            payload = self.transform(item)
            destination_id = await self.create(item, payload)
            self.checkpoints.upsert(self.migration_id, self.module, source_id, destination_id)
        except (MigrationHalted, StateError):
            raise
        except Exception as e:
            await self.log.error(
                f"Failed to migrate {self.NOUN}: {self.label(item)}",
                module=self.module,
                source_id=source_id,
                error=str(e),
            )
            self.checkpoints.record_failure(self.migration_id, self.module, source_id, str(e))
            self.summary.processed += 1
            self.summary.failed += 1
            return

        self.summary.processed += 1
        self.summary.completed += 1

        # the item exists at the destination from here on
        try:
            await self.after_create(item, destination_id)
        except (MigrationHalted, StateError):
            raise
        except Exception as e:
            await self.log.warning(
                f"Created {self.NOUN} {self.label(item)} but its follow-up writes failed",
                module=self.module,
                source_id=source_id,
                destination_id=destination_id,
                error=str(e),
            )

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------

    async def iter_numbered_pages(self, path: str, resource_key: str) -> AsyncIterator[dict[str, Any]]:
        """Walk a page-numbered collection until ``total`` items were processed."""
        page = 1
        while self.summary.processed < self.summary.total:
            data = await self.source.rest_call(
                "GET", path, params={"limit": self.page_size, "page": page}
            )
            items = data.get(resource_key) or []
            if not items:
                break
            for item in items:
                if self.summary.processed >= self.summary.total:
                    return
                yield item
            page += 1

    async def copy_metafields(self, resource: str, item: dict[str, Any], destination_id: str) -> None:
        """Copy an item's metafields; each failure is a warning."""
        for metafield in item.get("metafields") or []:
            try:
                await self.destination.rest_call(
                    "POST",
                    f"{resource}/{destination_id}/metafields.json",
                    body={
                        "metafield": pick(metafield, ("namespace", "key", "value", "type")),
                    },
                )
            except StoreMigrationError as e:
                await self.log.warning(
                    f"Failed to migrate metafield for {self.NOUN}: {self.label(item)}",
                    module=self.module,
                    namespace=metafield.get("namespace"),
                    key=metafield.get("key"),
                    error=str(e),
                )
