"""Tests for the module job scheduler and lifecycle operations."""

import httpx
import pytest

from store_migration.client.exceptions import LifecycleError
from store_migration.client.store_client import StoreClient
from store_migration.migration.lifecycle import MigrationStatus
from store_migration.migration.scheduler import JobScheduler
from store_migration.reporting.events import COMPLETE, ERROR, PROGRESS

from .conftest import FAST_LIMITS, make_product


@pytest.fixture
def stores(source_store, destination_store):
    source_store.products = [make_product(1, "Hat"), make_product(2, "Scarf"), make_product(3, "Gloves")]
    source_store.pages = [{"id": 11, "title": "About"}, {"id": 12, "title": "Contact"}]
    return {source_store.domain: source_store, destination_store.domain: destination_store}


@pytest.fixture
def opened_clients():
    return []


@pytest.fixture
def make_scheduler(config, state, stores, opened_clients):
    def client_factory(credential):
        client = StoreClient(
            credential,
            rate_limits=FAST_LIMITS,
            transport=stores[credential.store_url].transport(),
        )
        opened_clients.append(client)
        return client

    def _make(publisher=None):
        return JobScheduler(config, state, publisher=publisher, client_factory=client_factory)

    return _make


async def run_to_idle(scheduler: JobScheduler) -> None:
    await scheduler.start(recover=False)
    try:
        await scheduler.run_until_idle()
    finally:
        await scheduler.stop()


def drain_kinds(subscription) -> list[str]:
    kinds = []
    while not subscription.queue.empty():
        kinds.append(subscription.queue.get_nowait().kind)
    return kinds


class TestRunToCompletion:
    """Tests for a migration running through to the end."""

    @pytest.mark.asyncio
    async def test_start_to_completed(self, make_scheduler, state, bus, destination_store):
        migration_id = state.create_migration("source", "destination", ["products", "pages"])
        subscription = bus.subscribe(migration_id)
        scheduler = make_scheduler(bus)

        jobs = scheduler.start_migration(migration_id)
        assert [j.module for j in jobs] == ["products", "pages"]
        assert state.get_status(migration_id) == MigrationStatus.RUNNING

        await run_to_idle(scheduler)

        assert state.get_status(migration_id) == MigrationStatus.COMPLETED
        assert scheduler.global_progress(migration_id) == 100
        assert {j.status for j in state.list_jobs(migration_id=migration_id)} == {"succeeded"}
        assert len(destination_store.created["product"]) == 3
        assert len(destination_store.created["page"]) == 2
        assert state.list_logs(migration_id, limit=1)[0]["message"] == "Migration completed"

        kinds = drain_kinds(subscription)
        assert PROGRESS in kinds
        assert kinds.count(COMPLETE) == 1

    @pytest.mark.asyncio
    async def test_item_failures_do_not_fail_migration(
        self, make_scheduler, state, checkpoints, destination_store
    ):
        destination_store.fail_create = {"Scarf"}
        migration_id = state.create_migration("source", "destination", ["products"])
        scheduler = make_scheduler()

        scheduler.start_migration(migration_id)
        await run_to_idle(scheduler)

        assert state.get_status(migration_id) == MigrationStatus.COMPLETED
        assert [r.source_id for r in checkpoints.failed_items(migration_id)] == ["2"]

    @pytest.mark.asyncio
    async def test_rerun_reset_items_of_completed_migration(
        self, make_scheduler, state, checkpoints, destination_store
    ):
        destination_store.fail_create = {"Scarf"}
        migration_id = state.create_migration("source", "destination", ["products", "pages"])
        scheduler = make_scheduler()
        scheduler.start_migration(migration_id)
        await run_to_idle(scheduler)
        assert state.get_status(migration_id) == MigrationStatus.COMPLETED

        destination_store.fail_create = set()
        assert checkpoints.reset_failed(migration_id) == 1

        scheduler = make_scheduler()
        jobs = scheduler.rerun_failed(migration_id)
        assert [j.module for j in jobs] == ["products"]
        await run_to_idle(scheduler)

        assert state.get_status(migration_id) == MigrationStatus.COMPLETED
        assert checkpoints.failed_items(migration_id) == []
        assert checkpoints.get(migration_id, "products", "2").is_migrated
        assert [p["title"] for p in destination_store.created["product"]] == ["Hat", "Gloves", "Scarf"]
        assert len(destination_store.created["page"]) == 2
        assert state.get_module_progress(migration_id)["products"].percentage == 100

    @pytest.mark.asyncio
    async def test_dispatch_shares_and_closes_clients(self, make_scheduler, state, opened_clients):
        migration_id = state.create_migration("source", "destination", ["products", "pages"])
        scheduler = make_scheduler()

        scheduler.start_migration(migration_id)
        await run_to_idle(scheduler)

        assert len(opened_clients) == 2
        assert all(client.client.is_closed for client in opened_clients)


class TestJobFailures:
    """Tests for job retries and module failures."""

    @pytest.mark.asyncio
    async def test_failed_module_fails_migration(self, make_scheduler, state, bus, source_store):
        source_store.overrides[("GET", "products/count.json")] = lambda request: httpx.Response(
            500, json={"errors": "Internal error"}
        )
        migration_id = state.create_migration("source", "destination", ["products", "pages"])
        subscription = bus.subscribe(migration_id)
        scheduler = make_scheduler(bus)

        scheduler.start_migration(migration_id)
        await run_to_idle(scheduler)

        assert state.get_status(migration_id) == MigrationStatus.FAILED
        jobs = {j.module: j for j in state.list_jobs(migration_id=migration_id)}
        assert jobs["products"].status == "failed"
        assert jobs["products"].attempts == 2
        assert jobs["pages"].status == "succeeded"
        assert source_store.calls("GET", "products/count.json") == 2

        errors = state.get_migration(migration_id).errors
        assert [e["module"] for e in errors] == ["products"]
        assert "Internal error" in errors[0]["error"]
        assert ERROR in drain_kinds(subscription)

    @pytest.mark.asyncio
    async def test_module_error_is_not_retried(self, make_scheduler, state, source_store):
        source_store.themes = [{"id": 2, "name": "Old", "role": "unpublished"}]
        migration_id = state.create_migration("source", "destination", ["theme"])
        scheduler = make_scheduler()

        scheduler.start_migration(migration_id)
        await run_to_idle(scheduler)

        job = state.list_jobs(migration_id=migration_id)[0]
        assert (job.status, job.attempts) == ("failed", 1)
        assert job.last_error == "No active theme found in source store"
        assert state.get_status(migration_id) == MigrationStatus.FAILED

    @pytest.mark.asyncio
    async def test_resume_after_failure(self, make_scheduler, state, source_store, destination_store):
        source_store.overrides[("GET", "products/count.json")] = lambda request: httpx.Response(
            503, json={"errors": "Unavailable"}
        )
        migration_id = state.create_migration("source", "destination", ["products", "pages"])
        scheduler = make_scheduler()
        scheduler.start_migration(migration_id)
        await run_to_idle(scheduler)
        assert state.get_status(migration_id) == MigrationStatus.FAILED

        source_store.overrides.clear()
        scheduler = make_scheduler()
        scheduler.resume_migration(migration_id)
        await run_to_idle(scheduler)

        assert state.get_status(migration_id) == MigrationStatus.COMPLETED
        assert len(destination_store.created["product"]) == 3
        # pages were already migrated by the first run
        assert len(destination_store.created["page"]) == 2


class TestPauseAndCancel:
    """Tests for cooperative pause, resume and cancel."""

    @pytest.mark.asyncio
    async def test_pause_then_resume_without_duplicates(self, make_scheduler, state, bus, destination_store):
        migration_id = state.create_migration("source", "destination", ["products"])
        scheduler = make_scheduler(bus)
        paused = []

        def pause_after_first_item(event):
            if event.kind == PROGRESS and event.payload["processed"] == 1 and not paused:
                paused.append(True)
                scheduler.pause_migration(migration_id)

        bus.subscribe(migration_id, callback=pause_after_first_item)

        scheduler.start_migration(migration_id)
        await scheduler.start(recover=False)
        try:
            await scheduler.run_until_idle()

            assert state.get_status(migration_id) == MigrationStatus.PAUSED
            assert state.list_jobs(migration_id=migration_id)[0].status == "halted"
            assert len(destination_store.created["product"]) == 1

            scheduler.resume_migration(migration_id)
            await scheduler.run_until_idle()
        finally:
            await scheduler.stop()

        assert state.get_status(migration_id) == MigrationStatus.COMPLETED
        assert [p["title"] for p in destination_store.created["product"]] == ["Hat", "Scarf", "Gloves"]

    @pytest.mark.asyncio
    async def test_cancel_stops_jobs(self, make_scheduler, state, bus, destination_store):
        migration_id = state.create_migration("source", "destination", ["products"])
        scheduler = make_scheduler(bus)

        def cancel_after_first_item(event):
            if event.kind == PROGRESS and event.payload["processed"] == 1:
                scheduler.cancel_migration(migration_id)

        bus.subscribe(migration_id, callback=cancel_after_first_item)

        scheduler.start_migration(migration_id)
        await run_to_idle(scheduler)

        assert state.get_status(migration_id) == MigrationStatus.CANCELLED
        assert len(destination_store.created["product"]) == 1
        with pytest.raises(LifecycleError):
            scheduler.resume_migration(migration_id)

    @pytest.mark.asyncio
    async def test_queued_jobs_of_paused_migration_are_dropped(self, make_scheduler, state, destination_store):
        migration_id = state.create_migration("source", "destination", ["products", "pages"])
        scheduler = make_scheduler()

        scheduler.start_migration(migration_id)
        scheduler.pause_migration(migration_id)
        await run_to_idle(scheduler)

        assert {j.status for j in state.list_jobs(migration_id=migration_id)} == {"dropped"}
        assert destination_store.created["product"] == []


class TestSubmissionAndRecovery:
    """Tests for job submission, lifecycle guards and crash recovery."""

    def test_start_requires_pending(self, make_scheduler, state):
        migration_id = state.create_migration("source", "destination", ["products"])
        scheduler = make_scheduler()
        scheduler.start_migration(migration_id)

        with pytest.raises(LifecycleError):
            scheduler.start_migration(migration_id)

    def test_resume_requires_paused_or_failed(self, make_scheduler, state):
        migration_id = state.create_migration("source", "destination", ["products"])

        with pytest.raises(LifecycleError):
            make_scheduler().resume_migration(migration_id)

    def test_one_active_job_per_module(self, make_scheduler, state):
        migration_id = state.create_migration("source", "destination", ["products"])
        scheduler = make_scheduler()

        assert scheduler.submit_module_job(migration_id, "products") is not None
        assert scheduler.submit_module_job(migration_id, "products") is None
        assert scheduler.queue.qsize() == 1

    @pytest.mark.asyncio
    async def test_recover_interrupted_jobs(self, make_scheduler, state, destination_store):
        migration_id = state.create_migration("source", "destination", ["products", "pages"])
        jobs = make_scheduler().start_migration(migration_id)
        # a worker died mid-run
        state.update_job(jobs[0].id, status="running", attempts=1)

        scheduler = make_scheduler()
        await scheduler.start()
        try:
            await scheduler.run_until_idle()
        finally:
            await scheduler.stop()

        assert state.get_status(migration_id) == MigrationStatus.COMPLETED
        assert len(destination_store.created["product"]) == 3

    def test_rerun_requires_completed(self, make_scheduler, state):
        migration_id = state.create_migration("source", "destination", ["products"])
        scheduler = make_scheduler()
        scheduler.start_migration(migration_id)

        with pytest.raises(LifecycleError, match="use resume"):
            scheduler.rerun_failed(migration_id)

    def test_rerun_without_failed_items_queues_nothing(self, make_scheduler, state):
        migration_id = state.create_migration("source", "destination", ["products"])
        state.transition(migration_id, MigrationStatus.RUNNING)
        state.transition(migration_id, MigrationStatus.COMPLETED)

        assert make_scheduler().rerun_failed(migration_id) == []

    def test_recover_skips_jobs_live_elsewhere(self, make_scheduler, state):
        migration_id = state.create_migration("source", "destination", ["products", "pages"])
        products, pages = make_scheduler().start_migration(migration_id)
        assert state.claim_job(products.id, "other-host:1234:abcd")

        scheduler = make_scheduler()

        assert scheduler.recover() == 1
        assert state.get_job(products.id).status == "running"
        assert state.get_job(pages.id).status == "queued"

    @pytest.mark.asyncio
    async def test_job_queued_in_two_schedulers_runs_once(self, make_scheduler, state, destination_store):
        migration_id = state.create_migration("source", "destination", ["products"])
        first = make_scheduler()
        first.start_migration(migration_id)
        second = make_scheduler()
        assert second.recover() == 1

        await run_to_idle(first)
        await run_to_idle(second)

        assert state.get_status(migration_id) == MigrationStatus.COMPLETED
        assert len(destination_store.created["product"]) == 3
        assert [j.status for j in state.list_jobs(migration_id=migration_id)] == ["succeeded"]
