"""Tests for progress aggregation, the log feed, events and reports."""

import json

import pytest

from store_migration.client.exceptions import StateError
from store_migration.reporting.events import (
    COMPLETE,
    ERROR,
    LOG,
    PROGRESS,
    LocalEventBus,
    MigrationEvent,
    safe_publish,
)
from store_migration.reporting.migration_log import MigrationLogger
from store_migration.reporting.progress import ProgressAggregator, compute_percentage, global_progress
from store_migration.reporting.report import MigrationReport


def drain(subscription) -> list[MigrationEvent]:
    events = []
    while not subscription.queue.empty():
        events.append(subscription.queue.get_nowait())
    return events


class TestComputePercentage:
    @pytest.mark.parametrize(
        "processed,total,expected",
        [(0, 0, 100), (0, 10, 0), (1, 3, 33), (2, 3, 67), (10, 10, 100), (12, 10, 100)],
    )
    def test_values(self, processed, total, expected):
        assert compute_percentage(processed, total) == expected


class TestProgressAggregator:
    """Tests for ProgressAggregator."""

    @pytest.mark.asyncio
    async def test_processed_never_decreases_or_exceeds_total(self, state, bus):
        migration_id = state.create_migration("source", "destination", ["products"])
        progress = ProgressAggregator(migration_id, state, bus)
        await progress.set_total("products", 10)

        assert await progress.update("products", 5) == 50
        assert await progress.update("products", 3) == 50
        assert await progress.update("products", 25) == 100

        stored = state.get_module_progress(migration_id)["products"]
        assert (stored.processed, stored.total) == (10, 10)

    @pytest.mark.asyncio
    async def test_set_total_starts_new_run(self, state, bus):
        migration_id = state.create_migration("source", "destination", ["products"])
        progress = ProgressAggregator(migration_id, state, bus)
        await progress.set_total("products", 4)
        await progress.update("products", 4)

        await progress.set_total("products", 6)
        assert await progress.update("products", 2) == 33

    @pytest.mark.asyncio
    async def test_update_publishes_all_modules(self, state, bus):
        migration_id = state.create_migration("source", "destination", ["products", "pages"])
        subscription = bus.subscribe(migration_id)
        progress = ProgressAggregator(migration_id, state, bus)
        await progress.set_total("pages", 2)
        await progress.update("pages", 2)
        await progress.set_total("products", 4)
        await progress.update("products", 1)

        events = drain(subscription)
        assert [e.kind for e in events] == [PROGRESS, PROGRESS]
        payload = events[-1].payload
        assert payload["module"] == "products"
        assert payload["percentage"] == 25
        assert payload["all_progress"] == {"pages": 100, "products": 25}
        assert payload["all_totals"] == {"pages": 2, "products": 4}

    @pytest.mark.asyncio
    async def test_empty_module_reports_complete(self, state, bus):
        migration_id = state.create_migration("source", "destination", ["pages"])
        progress = ProgressAggregator(migration_id, state, bus)
        await progress.set_total("pages", 0)

        assert await progress.update("pages", 0) == 100

    @pytest.mark.asyncio
    async def test_set_percentage_is_clamped(self, state, bus):
        migration_id = state.create_migration("source", "destination", ["theme"])
        progress = ProgressAggregator(migration_id, state, bus)
        await progress.set_percentage("theme", 140, 3, 3)

        assert state.get_module_progress(migration_id)["theme"].percentage == 100

    def test_global_progress_is_mean_of_selected(self, state):
        migration_id = state.create_migration("source", "destination", ["products", "pages"])
        state.set_module_progress(migration_id, "products", 100, 3, 3)
        state.set_module_progress(migration_id, "pages", 50, 1, 2)
        # not selected, ignored
        state.set_module_progress(migration_id, "media", 0, 0, 9)

        assert global_progress(state, migration_id) == 75

    def test_global_progress_counts_missing_modules_as_zero(self, state):
        migration_id = state.create_migration("source", "destination", ["products", "pages"])
        state.set_module_progress(migration_id, "products", 100, 3, 3)

        assert global_progress(state, migration_id) == 50


class TestLocalEventBus:
    """Tests for in-process event fan-out."""

    @pytest.mark.asyncio
    async def test_subscribers_only_see_their_migration(self):
        bus = LocalEventBus()
        mine = bus.subscribe("m1")
        everything = bus.subscribe()

        await bus.publish_progress("m1", {"module": "products", "percentage": 10})
        await bus.publish_completion("m2")

        assert [e.kind for e in drain(mine)] == [PROGRESS]
        assert [(e.kind, e.migration_id) for e in drain(everything)] == [(PROGRESS, "m1"), (COMPLETE, "m2")]

    @pytest.mark.asyncio
    async def test_callbacks_sync_and_async(self):
        bus = LocalEventBus()
        received = []

        async def on_async(event):
            received.append(("async", event.kind))

        bus.subscribe("m1", callback=lambda event: received.append(("sync", event.kind)))
        bus.subscribe("m1", callback=on_async)

        await bus.publish_error("m1", "theme", "No active theme found in source store")

        assert received == [("sync", ERROR), ("async", ERROR)]

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_block_others(self):
        bus = LocalEventBus()

        def broken(event):
            raise RuntimeError("subscriber down")

        bus.subscribe("m1", callback=broken)
        healthy = bus.subscribe("m1")

        await bus.publish_log("m1", {"level": "info", "message": "hello"})

        events = drain(healthy)
        assert events[0].payload["message"] == "hello"

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = LocalEventBus()
        subscription = bus.subscribe("m1")
        bus.unsubscribe(subscription)
        bus.unsubscribe(subscription)

        await bus.publish_completion("m1")
        assert drain(subscription) == []

    def test_channel_names(self):
        assert MigrationEvent(LOG, "abc").channel == "migration:log:abc"

    @pytest.mark.asyncio
    async def test_safe_publish_swallows_delivery_errors(self):
        async def failing():
            raise ConnectionError("broker unavailable")

        await safe_publish(failing(), channel="migration:progress:m1")


class TestMigrationLogger:
    """Tests for the log feed writer."""

    @pytest.mark.asyncio
    async def test_entry_is_stored_and_published(self, state, bus):
        migration_id = state.create_migration("source", "destination", ["products"])
        subscription = bus.subscribe(migration_id)
        log = MigrationLogger(migration_id, state, bus)

        entry = await log.log("warning", "Skipping product Hat", module="products", source_id="7")

        assert entry["level"] == "warning"
        assert entry["metadata"] == {"source_id": "7"}
        stored = state.list_logs(migration_id)
        assert stored[0]["message"] == "Skipping product Hat"
        event = drain(subscription)[0]
        assert event.kind == LOG
        assert event.payload["id"] == entry["id"]

    @pytest.mark.asyncio
    async def test_level_shortcuts(self, state):
        migration_id = state.create_migration("source", "destination", ["products"])
        log = MigrationLogger(migration_id, state)

        await log.info("a")
        await log.success("b")
        await log.error("c")

        assert [e["level"] for e in state.list_logs(migration_id)] == ["error", "success", "info"]

    @pytest.mark.asyncio
    async def test_write_failure_is_not_raised(self, state, bus, monkeypatch):
        migration_id = state.create_migration("source", "destination", ["products"])
        subscription = bus.subscribe(migration_id)
        log = MigrationLogger(migration_id, state, bus)

        def broken(*args, **kwargs):
            raise StateError("database is locked")

        monkeypatch.setattr(state, "append_log", broken)

        assert await log.info("hello") is None
        assert drain(subscription) == []


class TestMigrationReport:
    """Tests for report generation."""

    def test_report_contents(self, state, checkpoints, tmp_path):
        migration_id = state.create_migration("source", "destination", ["products", "pages"])
        state.set_module_progress(migration_id, "products", 100, 2, 2)
        checkpoints.upsert(migration_id, "products", "1", "100")
        checkpoints.record_failure(migration_id, "products", "2", "[422] Validation failed")
        state.append_log(migration_id, "info", "Starting product migration", module="products")

        report = MigrationReport.build(state, checkpoints, migration_id)
        output = tmp_path / "reports" / "migration.json"
        report.generate_json(output)
        data = json.loads(output.read_text())
        summary = data["summary"]

        assert data["migration_id"] == migration_id
        assert summary["modules"]["products"]["completed"] == 1
        assert summary["modules"]["products"]["failed"] == 1
        assert summary["modules"]["pages"]["percentage"] == 0
        assert summary["failed_items"][0]["error"] == "[422] Validation failed"
        assert summary["logs"][0]["message"] == "Starting product migration"
        assert data["statistics"]["success_rate"] == 50.0

    def test_markdown(self, state, checkpoints):
        migration_id = state.create_migration("source", "destination", ["products"])
        checkpoints.record_failure(migration_id, "products", "2", "boom")

        content = MigrationReport.build(state, checkpoints, migration_id).generate_markdown()

        assert migration_id in content
        assert "products" in content
        assert "boom" in content
