"""Tests for migration state, lifecycle transitions and the job queue."""

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import update

from store_migration.client.exceptions import (
    LifecycleError,
    MigrationError,
    MigrationNotFoundError,
    UnknownModuleError,
)
from store_migration.migration.database import get_session
from store_migration.migration.lifecycle import MigrationStatus, can_transition
from store_migration.migration.models import ModuleJob


class TestLifecycle:
    """Tests for the transition table."""

    @pytest.mark.parametrize(
        "current,target",
        [
            ("pending", "running"),
            ("running", "paused"),
            ("paused", "running"),
            ("running", "completed"),
            ("running", "failed"),
            ("failed", "running"),
            ("pending", "cancelled"),
            ("running", "cancelled"),
            ("paused", "cancelled"),
        ],
    )
    def test_allowed(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.parametrize(
        "current,target",
        [
            ("pending", "paused"),
            ("pending", "completed"),
            ("paused", "failed"),
            ("cancelled", "failed"),
            ("completed", "running"),
            ("cancelled", "running"),
            ("completed", "cancelled"),
            ("failed", "cancelled"),
            ("running", "pending"),
        ],
    )
    def test_rejected(self, current, target):
        assert not can_transition(current, target)


class TestMigrations:
    """Tests for creating and transitioning migrations."""

    def test_create_normalizes_selection(self, state):
        migration_id = state.create_migration("source", "destination", ["Products", "pages"])
        migration = state.get_migration(migration_id)

        assert migration.status == MigrationStatus.PENDING
        assert migration.selected_modules == {
            "theme": False,
            "products": True,
            "collections": False,
            "pages": True,
            "media": False,
        }
        assert [m.value for m in migration.selected] == ["products", "pages"]

    def test_create_accepts_mapping(self, state):
        migration_id = state.create_migration(
            "source", "destination", {"media": True, "theme": False}, account_id="acct-1"
        )
        migration = state.get_migration(migration_id)

        assert [m.value for m in migration.selected] == ["media"]
        assert migration.account_id == "acct-1"

    def test_same_store_rejected(self, state):
        with pytest.raises(MigrationError, match="different"):
            state.create_migration("source", "source", ["products"])

    def test_empty_selection_rejected(self, state):
        with pytest.raises(MigrationError, match="At least one module"):
            state.create_migration("source", "destination", {"products": False})

    def test_unknown_module_rejected(self, state):
        with pytest.raises(UnknownModuleError):
            state.create_migration("source", "destination", ["customers"])

    def test_unknown_migration(self, state):
        with pytest.raises(MigrationNotFoundError):
            state.get_status("does-not-exist")
        with pytest.raises(MigrationNotFoundError):
            state.get_migration("does-not-exist")

    def test_running_sets_started_at_once(self, state):
        migration_id = state.create_migration("source", "destination", ["products"])
        state.transition(migration_id, MigrationStatus.RUNNING)
        started = state.get_migration(migration_id).started_at

        state.transition(migration_id, MigrationStatus.PAUSED)
        state.transition(migration_id, MigrationStatus.RUNNING)

        assert started is not None
        assert state.get_migration(migration_id).started_at == started

    def test_completed_sets_completed_at(self, state):
        migration_id = state.create_migration("source", "destination", ["products"])
        state.transition(migration_id, "running")
        state.transition(migration_id, "completed")

        migration = state.get_migration(migration_id)
        assert migration.status == MigrationStatus.COMPLETED
        assert migration.completed_at is not None

    def test_disallowed_transition_raises(self, state):
        migration_id = state.create_migration("source", "destination", ["products"])

        with pytest.raises(LifecycleError) as exc_info:
            state.transition(migration_id, MigrationStatus.PAUSED)

        assert exc_info.value.current_status == "pending"
        assert exc_info.value.target_status == "paused"
        assert state.get_status(migration_id) == MigrationStatus.PENDING

    def test_failed_only_from_running(self, state):
        migration_id = state.create_migration("source", "destination", ["products"])
        state.transition(migration_id, MigrationStatus.RUNNING)
        state.transition(migration_id, MigrationStatus.PAUSED)

        assert state.try_transition(migration_id, MigrationStatus.FAILED) is False
        assert state.get_status(migration_id) == MigrationStatus.PAUSED

    def test_list_migrations_filters_by_account(self, state):
        state.create_migration("source", "destination", ["products"], account_id="a")
        state.create_migration("source", "destination", ["pages"], account_id="b")

        assert len(state.list_migrations()) == 2
        listed = state.list_migrations(account_id="b")
        assert len(listed) == 1
        assert listed[0]["status"] == "pending"

    def test_error_list_keeps_order(self, state):
        migration_id = state.create_migration("source", "destination", ["products", "pages"])
        state.append_failure(migration_id, "products", "first")
        state.append_failure(migration_id, "pages", "second")

        errors = state.get_migration(migration_id).errors
        assert [(e["module"], e["error"]) for e in errors] == [("products", "first"), ("pages", "second")]
        assert all(e["timestamp"] for e in errors)


class TestModuleProgress:
    """Tests for the per-module progress rows."""

    def test_set_total_resets_counters(self, state):
        migration_id = state.create_migration("source", "destination", ["products"])
        state.set_module_progress(migration_id, "products", 50, 5, 10)
        state.set_module_total(migration_id, "products", 12)

        progress = state.get_module_progress(migration_id)["products"]
        assert (progress.percentage, progress.processed, progress.total) == (0, 0, 12)

    def test_modules_do_not_overwrite_each_other(self, state):
        migration_id = state.create_migration("source", "destination", ["products", "pages"])
        state.set_module_progress(migration_id, "products", 40, 4, 10)
        state.set_module_progress(migration_id, "pages", 100, 2, 2)
        state.set_module_progress(migration_id, "products", 60, 6, 10)

        progress = state.get_module_progress(migration_id)
        assert progress["products"].percentage == 60
        assert progress["pages"].percentage == 100

    def test_all_selected_complete(self, state):
        migration_id = state.create_migration("source", "destination", ["products", "pages"])
        state.set_module_progress(migration_id, "products", 100, 3, 3)
        assert state.all_selected_complete(migration_id) is False

        state.set_module_progress(migration_id, "pages", 100, 0, 0)
        assert state.all_selected_complete(migration_id) is True

    def test_to_dict_exposes_progress_maps(self, state):
        migration_id = state.create_migration("source", "destination", ["products"])
        state.set_module_progress(migration_id, "products", 50, 1, 2)

        data = state.get_migration(migration_id).to_dict()
        assert data["status"] == "pending"
        assert data["progress"] == {"products": 50}
        assert data["processed"] == {"products": 1}
        assert data["totals"] == {"products": 2}


class TestLogFeed:
    """Tests for the append-only log feed."""

    def test_newest_first_with_filters(self, state):
        migration_id = state.create_migration("source", "destination", ["products", "pages"])
        state.append_log(migration_id, "info", "Starting product migration", module="products")
        state.append_log(migration_id, "error", "Failed to migrate product: Hat", module="products")
        state.append_log(migration_id, "info", "Starting page migration", module="pages")

        entries = state.list_logs(migration_id)
        assert [e["message"] for e in entries] == [
            "Starting page migration",
            "Failed to migrate product: Hat",
            "Starting product migration",
        ]
        assert len(state.list_logs(migration_id, module="products")) == 2
        assert state.count_logs(migration_id, level="error") == 1
        assert state.list_logs(migration_id, limit=1, offset=1)[0]["message"].startswith("Failed")

    def test_metadata_is_stored(self, state):
        migration_id = state.create_migration("source", "destination", ["products"])
        entry = state.append_log(migration_id, "warning", "Slow", metadata={"wait": 2})

        assert entry["metadata"] == {"wait": 2}
        assert entry["module"] is None

    def test_invalid_level(self, state):
        migration_id = state.create_migration("source", "destination", ["products"])
        with pytest.raises(ValueError):
            state.append_log(migration_id, "debug", "nope")


class TestJobs:
    """Tests for the durable module job queue."""

    def test_one_active_job_per_module(self, state):
        migration_id = state.create_migration("source", "destination", ["products"])

        job = state.create_job(migration_id, "products", "d1")
        assert job is not None
        assert state.create_job(migration_id, "products", "d2") is None

        state.update_job(job.id, status="succeeded")
        assert state.create_job(migration_id, "products", "d3") is not None

    def test_has_active_jobs(self, state):
        migration_id = state.create_migration("source", "destination", ["products"])
        job = state.create_job(migration_id, "products", "d1")

        assert state.has_active_jobs(migration_id)
        assert not state.has_active_jobs(migration_id, exclude_job_id=job.id)

        state.update_job(job.id, status="failed", last_error="boom")
        assert not state.has_active_jobs(migration_id)
        assert state.get_job(job.id).last_error == "boom"

    def test_requeue_interrupted_jobs(self, state):
        migration_id = state.create_migration("source", "destination", ["products", "pages"])
        products = state.create_job(migration_id, "products", "d1")
        pages = state.create_job(migration_id, "pages", "d1")
        state.update_job(products.id, status="running", attempts=1)
        state.update_job(pages.id, status="succeeded")

        assert state.requeue_interrupted_jobs() == 1
        queued = state.list_jobs(statuses=("queued",))
        assert [j.module for j in queued] == ["products"]
        assert queued[0].attempts == 1

    def test_claim_is_exclusive(self, state):
        migration_id = state.create_migration("source", "destination", ["products"])
        job = state.create_job(migration_id, "products", "d1")

        assert state.claim_job(job.id, "worker-a")
        assert not state.claim_job(job.id, "worker-b")

        claimed = state.get_job(job.id)
        assert (claimed.status, claimed.worker_id) == ("running", "worker-a")
        assert claimed.heartbeat_at is not None
        assert state.heartbeat_job(job.id, "worker-a")
        assert not state.heartbeat_job(job.id, "worker-b")

    def test_requeue_leaves_live_jobs_alone(self, state):
        migration_id = state.create_migration("source", "destination", ["products", "pages"])
        live = state.create_job(migration_id, "products", "d1")
        stale = state.create_job(migration_id, "pages", "d1")
        state.claim_job(live.id, "worker-a")
        state.claim_job(stale.id, "worker-b")
        with get_session(state.database_url) as session:
            session.execute(
                update(ModuleJob)
                .where(ModuleJob.id == stale.id)
                .values(heartbeat_at=datetime.now(UTC) - timedelta(minutes=5))
            )

        assert state.requeue_interrupted_jobs(lease_timeout=60) == 1

        assert state.get_job(live.id).status == "running"
        assert state.get_job(live.id).worker_id == "worker-a"
        requeued = state.get_job(stale.id)
        assert (requeued.status, requeued.worker_id) == ("queued", None)
        # the old owner lost its lease
        assert not state.heartbeat_job(stale.id, "worker-b")
