"""
Migration state management.

This module provides the MigrationState class, the durable record of every
migration: its lifecycle status, per-module progress, error list, log feed
and the module job queue. All writes that may race between concurrent
module jobs are single conditional statements (conditional UPDATE or
INSERT ... ON CONFLICT DO UPDATE), never read-then-write.
"""

import threading
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import func, or_, select, update

from store_migration.client.exceptions import (
    LifecycleError,
    MigrationError,
    MigrationNotFoundError,
    StateError,
)
from store_migration.config import StateConfig
from store_migration.migration.database import (
    dialect_insert,
    get_session,
    init_database,
    to_database_url,
)
from store_migration.migration.lifecycle import MigrationStatus, allowed_sources
from store_migration.migration.models import (
    ACTIVE_JOB_STATUSES,
    LOG_LEVELS,
    Migration,
    MigrationFailure,
    MigrationLog,
    ModuleJob,
    ModuleProgress,
)
from store_migration.resources import ModuleName, normalize_selection, selected_modules
from store_migration.utils.logging import get_logger

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class ModuleProgressSnapshot:
    """Progress of one module as stored."""

    module: str
    percentage: int = 0
    processed: int = 0
    total: int = 0


@dataclass
class MigrationSnapshot:
    """Read model of a migration with its progress and error list."""

    id: str
    account_id: str | None
    source_store: str
    destination_store: str
    selected_modules: dict[str, bool]
    status: MigrationStatus
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    progress: dict[str, ModuleProgressSnapshot] = field(default_factory=dict)
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def selected(self) -> list[ModuleName]:
        """Selected modules in display order."""
        return selected_modules(self.selected_modules)

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly representation."""
        data = asdict(self)
        data["status"] = self.status.value
        for key in ("created_at", "started_at", "completed_at"):
            value = getattr(self, key)
            data[key] = value.isoformat() if value else None
        data["progress"] = {m: p.percentage for m, p in self.progress.items()}
        data["processed"] = {m: p.processed for m, p in self.progress.items()}
        data["totals"] = {m: p.total for m, p in self.progress.items()}
        return data


@dataclass
class JobRecord:
    """A queued unit of work (migration, module)."""

    id: int
    migration_id: str
    module: str
    dispatch_id: str
    status: str
    attempts: int = 0
    last_error: str | None = None
    worker_id: str | None = None
    heartbeat_at: datetime | None = None


def _job_record(job: ModuleJob) -> JobRecord:
    return JobRecord(
        id=job.id,
        migration_id=job.migration_id,
        module=job.module,
        dispatch_id=job.dispatch_id,
        status=job.status,
        attempts=job.attempts,
        last_error=job.last_error,
        worker_id=job.worker_id,
        heartbeat_at=job.heartbeat_at,
    )


class MigrationState:
    """
    Durable state of all migrations.

    Methods are thread-safe and open one short session per call, so the
    same instance can be shared by every worker of the scheduler.

    Usage:
        state = MigrationState(config.state)
        migration_id = state.create_migration("source", "destination", ["products"])
        state.transition(migration_id, MigrationStatus.RUNNING)
    """

    def __init__(self, config: StateConfig):
        """
        Initialize migration state manager.

        Args:
            config: State configuration

        Raises:
            StateError: If initialization fails
        """
        self.config = config
        self.database_url = to_database_url(config.db_path)
        self._lock = threading.RLock()

        try:
            init_database(
                self.database_url,
                pool_size=config.db_pool_size,
                max_overflow=config.db_max_overflow,
                pool_timeout=config.db_pool_timeout,
                pool_recycle=config.db_pool_recycle,
            )
        except Exception as e:
            logger.error("migration_state_init_failed", error=str(e))
            raise StateError(f"Failed to initialize migration state: {e}") from e

    # ------------------------------------------------------------------
    # Migrations
    # ------------------------------------------------------------------

    def create_migration(
        self,
        source_store: str,
        destination_store: str,
        modules: dict[str, bool] | list[str],
        account_id: str | None = None,
    ) -> str:
        """
        Create a migration in ``pending`` status.

        Args:
            source_store: Source store reference
            destination_store: Destination store reference
            modules: Module selection, as a mapping or a list of names
            account_id: Owning account

        Returns:
            The new migration identifier

        Raises:
            MigrationError: If the stores are identical or nothing is selected
            UnknownModuleError: If a module name is not supported
        """
        if source_store == destination_store:
            raise MigrationError("Source and destination stores must be different")

        selection = normalize_selection(modules)
        if not any(selection.values()):
            raise MigrationError("At least one module must be selected")

        with self._lock, get_session(self.database_url) as session:
            migration = Migration(
                account_id=account_id,
                source_store=source_store,
                destination_store=destination_store,
                selected_modules=selection,
                status=MigrationStatus.PENDING.value,
            )
            session.add(migration)
            session.flush()
            migration_id = migration.id

        logger.info(
            "migration_created",
            migration_id=migration_id,
            source=source_store,
            destination=destination_store,
            modules=[m for m, on in selection.items() if on],
        )
        return migration_id

    def get_migration(self, migration_id: str) -> MigrationSnapshot:
        """
        Load a migration with its progress rows and error list.

        Raises:
            MigrationNotFoundError: If no migration has this identifier
        """
        with self._lock, get_session(self.database_url) as session:
            migration = session.get(Migration, migration_id)
            if migration is None:
                raise MigrationNotFoundError(f"Migration not found: {migration_id}")

            return MigrationSnapshot(
                id=migration.id,
                account_id=migration.account_id,
                source_store=migration.source_store,
                destination_store=migration.destination_store,
                selected_modules=dict(migration.selected_modules),
                status=MigrationStatus(migration.status),
                created_at=migration.created_at,
                started_at=migration.started_at,
                completed_at=migration.completed_at,
                progress={
                    p.module: ModuleProgressSnapshot(p.module, p.percentage, p.processed, p.total)
                    for p in migration.progress
                },
                errors=[
                    {
                        "module": f.module,
                        "error": f.error,
                        "timestamp": f.created_at.isoformat() if f.created_at else None,
                    }
                    for f in migration.failures
                ],
            )

    def list_migrations(self, limit: int = 20, account_id: str | None = None) -> list[dict[str, Any]]:
        """Most recent migrations, newest first."""
        with self._lock, get_session(self.database_url) as session:
            query = select(Migration).order_by(Migration.created_at.desc()).limit(limit)
            if account_id:
                query = query.where(Migration.account_id == account_id)
            return [
                {
                    "id": m.id,
                    "source_store": m.source_store,
                    "destination_store": m.destination_store,
                    "status": m.status,
                    "created_at": m.created_at.isoformat() if m.created_at else None,
                }
                for m in session.scalars(query)
            ]

    def get_status(self, migration_id: str) -> MigrationStatus:
        """
        Current lifecycle status of a migration.

        Raises:
            MigrationNotFoundError: If no migration has this identifier
        """
        with self._lock, get_session(self.database_url) as session:
            status = session.scalar(select(Migration.status).where(Migration.id == migration_id))
        if status is None:
            raise MigrationNotFoundError(f"Migration not found: {migration_id}")
        return MigrationStatus(status)

    def try_transition(self, migration_id: str, target: MigrationStatus | str) -> bool:
        """
        Move a migration to ``target`` if its current status allows it.

        The check and the write are one conditional UPDATE, so two concurrent
        callers cannot both succeed from the same source status.

        Returns:
            True if the status changed, False otherwise
        """
        target = MigrationStatus(target)
        sources = [s.value for s in allowed_sources(target)]
        now = _utcnow()

        values: dict[str, Any] = {"status": target.value, "updated_at": now}
        if target == MigrationStatus.RUNNING:
            values["started_at"] = func.coalesce(Migration.started_at, now)
            values["completed_at"] = None
        elif target == MigrationStatus.COMPLETED:
            values["completed_at"] = now

        with self._lock, get_session(self.database_url) as session:
            result = session.execute(
                update(Migration)
                .where(Migration.id == migration_id, Migration.status.in_(sources))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            changed = result.rowcount == 1

        if changed:
            logger.info("migration_status_changed", migration_id=migration_id, status=target.value)
        return changed

    def transition(self, migration_id: str, target: MigrationStatus | str) -> None:
        """
        Move a migration to ``target``.

        Raises:
            MigrationNotFoundError: If no migration has this identifier
            LifecycleError: If the transition is not allowed from the current status
        """
        target = MigrationStatus(target)
        if self.try_transition(migration_id, target):
            return

        current = self.get_status(migration_id)
        raise LifecycleError(
            f"Cannot move migration {migration_id} from '{current.value}' to '{target.value}'",
            current_status=current.value,
            target_status=target.value,
        )

    def append_failure(self, migration_id: str, module: str, error: str) -> None:
        """Append ``(module, error, timestamp)`` to the migration's error list."""
        with self._lock, get_session(self.database_url) as session:
            session.add(MigrationFailure(migration_id=migration_id, module=module, error=error))

    # ------------------------------------------------------------------
    # Module progress
    # ------------------------------------------------------------------

    def set_module_total(self, migration_id: str, module: str, total: int) -> None:
        """Register the item total of a module at the start of a run."""
        now = _utcnow()
        with self._lock, get_session(self.database_url) as session:
            stmt = dialect_insert(session, ModuleProgress).values(
                migration_id=migration_id,
                module=module,
                percentage=0,
                processed=0,
                total=total,
                updated_at=now,
            )
            session.execute(
                stmt.on_conflict_do_update(
                    index_elements=["migration_id", "module"],
                    set_={
                        "total": stmt.excluded.total,
                        "processed": 0,
                        "percentage": 0,
                        "updated_at": now,
                    },
                )
            )

    def set_module_progress(
        self, migration_id: str, module: str, percentage: int, processed: int, total: int
    ) -> None:
        """Upsert the progress counters of one module."""
        now = _utcnow()
        with self._lock, get_session(self.database_url) as session:
            stmt = dialect_insert(session, ModuleProgress).values(
                migration_id=migration_id,
                module=module,
                percentage=percentage,
                processed=processed,
                total=total,
                updated_at=now,
            )
            session.execute(
                stmt.on_conflict_do_update(
                    index_elements=["migration_id", "module"],
                    set_={
                        "percentage": stmt.excluded.percentage,
                        "processed": stmt.excluded.processed,
                        "total": stmt.excluded.total,
                        "updated_at": now,
                    },
                )
            )

    def get_module_progress(self, migration_id: str) -> dict[str, ModuleProgressSnapshot]:
        """Progress rows of a migration keyed by module."""
        with self._lock, get_session(self.database_url) as session:
            rows = session.scalars(
                select(ModuleProgress).where(ModuleProgress.migration_id == migration_id)
            )
            return {
                p.module: ModuleProgressSnapshot(p.module, p.percentage, p.processed, p.total)
                for p in rows
            }

    def all_selected_complete(self, migration_id: str) -> bool:
        """Whether every selected module of the migration has reached 100%."""
        migration = self.get_migration(migration_id)
        for module in migration.selected:
            progress = migration.progress.get(module.value)
            if progress is None or progress.percentage < 100:
                return False
        return True

    # ------------------------------------------------------------------
    # Log feed
    # ------------------------------------------------------------------

    def append_log(
        self,
        migration_id: str,
        level: str,
        message: str,
        module: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Append an entry to the migration log feed.

        Returns:
            The stored entry as a dict
        """
        if level not in LOG_LEVELS:
            raise ValueError(f"Log level must be one of: {', '.join(LOG_LEVELS)}")

        with self._lock, get_session(self.database_url) as session:
            entry = MigrationLog(
                migration_id=migration_id,
                module=module,
                level=level,
                message=message,
                log_metadata=metadata or {},
            )
            session.add(entry)
            session.flush()
            return _log_dict(entry)

    def list_logs(
        self,
        migration_id: str,
        limit: int = 100,
        offset: int = 0,
        module: str | None = None,
        level: str | None = None,
    ) -> list[dict[str, Any]]:
        """Log entries of a migration, newest first."""
        with self._lock, get_session(self.database_url) as session:
            query = (
                select(MigrationLog)
                .where(MigrationLog.migration_id == migration_id)
                .order_by(MigrationLog.id.desc())
                .limit(limit)
                .offset(offset)
            )
            if module:
                query = query.where(MigrationLog.module == module)
            if level:
                query = query.where(MigrationLog.level == level)
            return [_log_dict(entry) for entry in session.scalars(query)]

    def count_logs(
        self, migration_id: str, module: str | None = None, level: str | None = None
    ) -> int:
        """Number of log entries of a migration."""
        with self._lock, get_session(self.database_url) as session:
            query = select(func.count(MigrationLog.id)).where(
                MigrationLog.migration_id == migration_id
            )
            if module:
                query = query.where(MigrationLog.module == module)
            if level:
                query = query.where(MigrationLog.level == level)
            return session.scalar(query) or 0

    # ------------------------------------------------------------------
    # Module jobs
    # ------------------------------------------------------------------

    def create_job(self, migration_id: str, module: str, dispatch_id: str) -> JobRecord | None:
        """
        Persist a queued job unless one is already queued or running.

        Returns:
            The new job, or None if an active job exists for (migration, module)
        """
        with self._lock, get_session(self.database_url) as session:
            active = session.scalar(
                select(ModuleJob.id).where(
                    ModuleJob.migration_id == migration_id,
                    ModuleJob.module == module,
                    ModuleJob.status.in_(ACTIVE_JOB_STATUSES),
                )
            )
            if active is not None:
                logger.info(
                    "module_job_already_active",
                    migration_id=migration_id,
                    module=module,
                    job_id=active,
                )
                return None

            job = ModuleJob(
                migration_id=migration_id,
                module=module,
                dispatch_id=dispatch_id,
                status="queued",
            )
            session.add(job)
            session.flush()
            return _job_record(job)

    def update_job(
        self,
        job_id: int,
        status: str | None = None,
        attempts: int | None = None,
        last_error: str | None = None,
    ) -> None:
        """Update the status, attempt count or last error of a job."""
        values: dict[str, Any] = {"updated_at": _utcnow()}
        if status is not None:
            values["status"] = status
        if attempts is not None:
            values["attempts"] = attempts
        if last_error is not None:
            values["last_error"] = last_error

        with self._lock, get_session(self.database_url) as session:
            session.execute(update(ModuleJob).where(ModuleJob.id == job_id).values(**values))

    def get_job(self, job_id: int) -> JobRecord | None:
        """Load one job."""
        with self._lock, get_session(self.database_url) as session:
            job = session.get(ModuleJob, job_id)
            return _job_record(job) if job else None

    def list_jobs(
        self, statuses: tuple[str, ...] | None = None, migration_id: str | None = None
    ) -> list[JobRecord]:
        """Jobs in queue order, optionally filtered by status and migration."""
        with self._lock, get_session(self.database_url) as session:
            query = select(ModuleJob).order_by(ModuleJob.id)
            if statuses:
                query = query.where(ModuleJob.status.in_(statuses))
            if migration_id:
                query = query.where(ModuleJob.migration_id == migration_id)
            return [_job_record(job) for job in session.scalars(query)]

    def has_active_jobs(self, migration_id: str, exclude_job_id: int | None = None) -> bool:
        """Whether any job of the migration is queued or running."""
        with self._lock, get_session(self.database_url) as session:
            query = select(func.count(ModuleJob.id)).where(
                ModuleJob.migration_id == migration_id,
                ModuleJob.status.in_(ACTIVE_JOB_STATUSES),
            )
            if exclude_job_id is not None:
                query = query.where(ModuleJob.id != exclude_job_id)
            return (session.scalar(query) or 0) > 0

    def claim_job(self, job_id: int, worker_id: str) -> bool:
        """
        Move a queued job to running on behalf of ``worker_id``.

        Returns:
            True if this caller now owns the job, False if it was no longer queued
        """
        now = _utcnow()
        with self._lock, get_session(self.database_url) as session:
            result = session.execute(
                update(ModuleJob)
                .where(ModuleJob.id == job_id, ModuleJob.status == "queued")
                .values(status="running", worker_id=worker_id, heartbeat_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def heartbeat_job(self, job_id: int, worker_id: str) -> bool:
        """
        Renew the lease of a running job.

        Returns:
            False if the job is no longer running under ``worker_id``
        """
        with self._lock, get_session(self.database_url) as session:
            result = session.execute(
                update(ModuleJob)
                .where(
                    ModuleJob.id == job_id,
                    ModuleJob.worker_id == worker_id,
                    ModuleJob.status == "running",
                )
                .values(heartbeat_at=_utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def requeue_interrupted_jobs(self, lease_timeout: float = 60.0) -> int:
        """
        Put jobs left ``running`` by a dead worker back in the queue.

        A running job is considered dead once its owner has not renewed the
        lease for ``lease_timeout`` seconds. Jobs still heartbeating are left
        alone, so a recovering worker never runs a job that is live elsewhere.
        """
        cutoff = _utcnow() - timedelta(seconds=lease_timeout)
        with self._lock, get_session(self.database_url) as session:
            result = session.execute(
                update(ModuleJob)
                .where(
                    ModuleJob.status == "running",
                    or_(ModuleJob.heartbeat_at.is_(None), ModuleJob.heartbeat_at < cutoff),
                )
                .values(status="queued", worker_id=None, heartbeat_at=None, updated_at=_utcnow())
                .execution_options(synchronize_session=False)
            )
            count = result.rowcount or 0

        if count:
            logger.warning("module_jobs_requeued", count=count, lease_timeout=lease_timeout)
        return count


def _log_dict(entry: MigrationLog) -> dict[str, Any]:
    return {
        "id": entry.id,
        "migration_id": entry.migration_id,
        "module": entry.module,
        "level": entry.level,
        "message": entry.message,
        "metadata": entry.log_metadata or {},
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }
