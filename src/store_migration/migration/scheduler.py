"""Module job scheduler and migration lifecycle operations.

Every selected module of a migration runs as its own job. Jobs are persisted
in ``module_jobs`` and consumed by a bounded pool of asyncio workers. A
worker claims a job with a conditional UPDATE and renews a lease on it while
it runs; a job whose lease expired is put back in the queue on recovery.

Jobs submitted by one ``start``/``resume`` call (a dispatch) share one client
per store, closed when the last job of the dispatch finishes.
"""

import asyncio
import os
import socket
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from functools import partial

from store_migration.client.credentials import (
    ConfigCredentialProvider,
    CredentialProvider,
    StoreCredential,
)
from store_migration.client.exceptions import (
    ConfigurationError,
    LifecycleError,
    MigrationHalted,
    ModuleError,
)
from store_migration.client.store_client import StoreClient, create_store_client
from store_migration.config import MigrationConfig
from store_migration.migration.cancellation import CancellationToken
from store_migration.migration.checkpoint import CheckpointStore
from store_migration.migration.lifecycle import HALTED_STATUSES, MigrationStatus
from store_migration.migration.state import JobRecord, MigrationState
from store_migration.migrators import MigrationSummary, MigratorContext, create_migrator
from store_migration.reporting.events import EventPublisher, NullPublisher, safe_publish
from store_migration.reporting.migration_log import MigrationLogger
from store_migration.reporting.progress import ProgressAggregator, global_progress
from store_migration.resources import parse_module
from store_migration.utils.logging import get_logger
from store_migration.utils.retry import job_retrying

logger = get_logger(__name__)

# Failures that retrying the whole module cannot fix
NEVER_RETRY = (ModuleError, MigrationHalted, LifecycleError, ConfigurationError)

ClientFactory = Callable[[StoreCredential], StoreClient]


@dataclass
class Dispatch:
    """Jobs submitted together, sharing a client pair."""

    id: str
    migration_id: str
    pending: int = 0
    clients: tuple[StoreClient, StoreClient] | None = None


class JobScheduler:
    """Runs module jobs and applies lifecycle operations.

    Usage:
        scheduler = JobScheduler(config, state, publisher=bus)
        await scheduler.start()
        scheduler.start_migration(migration_id)
        await scheduler.run_until_idle()
        await scheduler.stop()
    """

    def __init__(
        self,
        config: MigrationConfig,
        state: MigrationState,
        credentials: CredentialProvider | None = None,
        publisher: EventPublisher | None = None,
        client_factory: ClientFactory | None = None,
    ):
        """Initialize scheduler.

        Args:
            config: Migration configuration
            state: Shared migration state
            credentials: Resolves store references (defaults to the config stores)
            publisher: Receives progress, log, completion and error events
            client_factory: Builds a store client from a credential
        """
        self.config = config
        self.state = state
        self.checkpoints = CheckpointStore(state)
        self.credentials = credentials or ConfigCredentialProvider(config.stores)
        self.publisher = publisher or NullPublisher()
        self.client_factory = client_factory or partial(
            create_store_client,
            rate_limits=config.rate_limits,
            log_payloads=config.logging.log_payloads,
            max_payload_size=config.logging.max_payload_size,
        )

        self.queue: asyncio.Queue[int] = asyncio.Queue()
        self._workers: list[asyncio.Task] = []
        self._enqueued: set[int] = set()
        self._dispatches: dict[str, Dispatch] = {}
        self._job_dispatch: dict[int, str] = {}
        self._tokens: dict[str, set[CancellationToken]] = {}
        self.worker_id = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"

    # ------------------------------------------------------------------
    # Submission and lifecycle
    # ------------------------------------------------------------------

    def submit_module_job(
        self, migration_id: str, module: str, dispatch_id: str | None = None
    ) -> JobRecord | None:
        """Queue a job for one module of a migration.

        Returns:
            The queued job, or None if one is already queued or running

        Raises:
            UnknownModuleError: If the module is not supported
            MigrationNotFoundError: If the migration does not exist
        """
        name = parse_module(module).value
        self.state.get_status(migration_id)

        job = self.state.create_job(migration_id, name, dispatch_id or uuid.uuid4().hex)
        if job is None:
            return None

        self._enqueue(job)
        logger.info(
            "module_job_submitted",
            migration_id=migration_id,
            module=name,
            job_id=job.id,
            dispatch_id=job.dispatch_id,
        )
        return job

    def _submit_selected(self, migration_id: str) -> list[JobRecord]:
        migration = self.state.get_migration(migration_id)
        dispatch_id = uuid.uuid4().hex
        jobs = []
        for module in migration.selected:
            job = self.submit_module_job(migration_id, module.value, dispatch_id=dispatch_id)
            if job is not None:
                jobs.append(job)
        return jobs

    def start_migration(self, migration_id: str) -> list[JobRecord]:
        """Queue one job per selected module and move the migration to running.

        Raises:
            LifecycleError: If the migration is not pending
        """
        status = self.state.get_status(migration_id)
        if status != MigrationStatus.PENDING:
            raise LifecycleError(
                f"Migration {migration_id} cannot be started from '{status.value}'",
                current_status=status.value,
                target_status=MigrationStatus.RUNNING.value,
            )

        jobs = self._submit_selected(migration_id)
        self.state.transition(migration_id, MigrationStatus.RUNNING)
        logger.info("migration_started", migration_id=migration_id, jobs=len(jobs))
        return jobs

    def pause_migration(self, migration_id: str) -> None:
        """Pause a running migration; in-flight jobs stop after their current item.

        Raises:
            LifecycleError: If the migration is not running
        """
        self.state.transition(migration_id, MigrationStatus.PAUSED)
        self._signal(migration_id, MigrationStatus.PAUSED)
        logger.info("migration_paused", migration_id=migration_id)

    def resume_migration(self, migration_id: str) -> list[JobRecord]:
        """Move a paused or failed migration back to running and re-queue its modules.

        Raises:
            LifecycleError: If the migration is neither paused nor failed
        """
        status = self.state.get_status(migration_id)
        if status not in (MigrationStatus.PAUSED, MigrationStatus.FAILED):
            raise LifecycleError(
                f"Migration {migration_id} cannot be resumed from '{status.value}'",
                current_status=status.value,
                target_status=MigrationStatus.RUNNING.value,
            )

        self.state.transition(migration_id, MigrationStatus.RUNNING)
        jobs = self._submit_selected(migration_id)
        logger.info("migration_resumed", migration_id=migration_id, jobs=len(jobs))
        return jobs

    def rerun_failed(self, migration_id: str, module: str | None = None) -> list[JobRecord]:
        """Re-queue the modules of a completed migration that still have unmigrated items.

        A module qualifies when it has failed items or items re-admitted by
        ``CheckpointStore.reset_failed``. The migration stays ``completed``;
        checkpoints make the new jobs touch only those items.

        Args:
            migration_id: Completed migration
            module: Only re-run this module

        Returns:
            The queued jobs (empty when nothing is left to re-run)

        Raises:
            LifecycleError: If the migration is not completed
            UnknownModuleError: If the module is not supported
        """
        status = self.state.get_status(migration_id)
        if status != MigrationStatus.COMPLETED:
            raise LifecycleError(
                f"Migration {migration_id} is '{status.value}'; only completed migrations "
                "can re-run failed items (use resume for paused or failed ones)",
                current_status=status.value,
            )

        wanted = parse_module(module).value if module else None
        counts = self.checkpoints.status_counts(migration_id)
        dispatch_id = uuid.uuid4().hex
        jobs = []
        for name in self.state.get_migration(migration_id).selected:
            if wanted and name.value != wanted:
                continue
            by_status = counts.get(name.value, {})
            if not (by_status.get("failed") or by_status.get("pending")):
                continue
            job = self.submit_module_job(migration_id, name.value, dispatch_id=dispatch_id)
            if job is not None:
                jobs.append(job)

        logger.info("migration_rerun", migration_id=migration_id, module=wanted or "all", jobs=len(jobs))
        return jobs

    def cancel_migration(self, migration_id: str) -> None:
        """Cancel a pending, running or paused migration.

        Raises:
            LifecycleError: If the migration already ended
        """
        self.state.transition(migration_id, MigrationStatus.CANCELLED)
        self._signal(migration_id, MigrationStatus.CANCELLED)
        logger.info("migration_cancelled", migration_id=migration_id)

    def global_progress(self, migration_id: str) -> int:
        """Mean percentage over the selected modules."""
        return global_progress(self.state, migration_id)

    def _signal(self, migration_id: str, status: MigrationStatus) -> None:
        for token in self._tokens.get(migration_id, ()):
            token.signal(status)

    # ------------------------------------------------------------------
    # Worker pool
    # ------------------------------------------------------------------

    def _enqueue(self, job: JobRecord) -> None:
        if job.id in self._enqueued:
            return
        dispatch = self._dispatches.get(job.dispatch_id)
        if dispatch is None:
            dispatch = Dispatch(id=job.dispatch_id, migration_id=job.migration_id)
            self._dispatches[job.dispatch_id] = dispatch
        dispatch.pending += 1
        self._job_dispatch[job.id] = job.dispatch_id
        self._enqueued.add(job.id)
        self.queue.put_nowait(job.id)

    def recover(self) -> int:
        """Queue persisted jobs, including running jobs whose lease expired.

        Returns:
            Number of jobs queued
        """
        self.state.requeue_interrupted_jobs(self.config.scheduler.lease_timeout)
        count = 0
        for job in self.state.list_jobs(statuses=("queued",)):
            if job.id not in self._enqueued:
                self._enqueue(job)
                count += 1
        if count:
            logger.info("module_jobs_recovered", count=count)
        return count

    async def start(self, recover: bool = True) -> None:
        """Start the workers, first queueing persisted jobs unless ``recover`` is False."""
        if self._workers:
            return
        if recover:
            self.recover()
        concurrency = self.config.scheduler.concurrency
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"module-worker-{i}")
            for i in range(concurrency)
        ]
        logger.info("job_workers_started", concurrency=concurrency)

    async def run_until_idle(self) -> None:
        """Wait until every queued job has been handled."""
        await self.queue.join()

    async def stop(self) -> None:
        """Stop the workers and close any open clients."""
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        for dispatch in list(self._dispatches.values()):
            await self._close_clients(dispatch)
        self._dispatches.clear()
        logger.info("job_workers_stopped")

    async def _worker(self, index: int) -> None:
        while True:
            job_id = await self.queue.get()
            try:
                await self._execute(job_id)
            except Exception as e:
                logger.error("module_job_crashed", worker=index, job_id=job_id, error=str(e))
            finally:
                self._enqueued.discard(job_id)
                await self._release(job_id)
                self.queue.task_done()

    # ------------------------------------------------------------------
    # Job execution
    # ------------------------------------------------------------------

    async def _execute(self, job_id: int) -> None:
        job = self.state.get_job(job_id)
        if job is None or not self.state.claim_job(job_id, self.worker_id):
            # taken by another scheduler, or no longer queued
            return

        migration_id, module = job.migration_id, job.module
        status = self.state.get_status(migration_id)
        if status in HALTED_STATUSES:
            self.state.update_job(job.id, status="dropped")
            logger.info("module_job_dropped", migration_id=migration_id, module=module, status=status.value)
            return

        token = CancellationToken(migration_id, self.state)
        self._tokens.setdefault(migration_id, set()).add(token)
        log = MigrationLogger(migration_id, self.state, self.publisher)
        heartbeat = asyncio.create_task(self._heartbeat(job.id), name=f"job-heartbeat-{job.id}")

        try:
            summary = await self._run_with_retry(job, token, log)
        except MigrationHalted as e:
            self.state.update_job(job.id, status="halted", last_error=str(e))
            logger.info("module_job_halted", migration_id=migration_id, module=module, status=e.status)
            if self.state.get_status(migration_id) == MigrationStatus.RUNNING:
                # resumed while this job was winding down
                self.submit_module_job(migration_id, module)
            return
        except Exception as e:
            await self._fail(job, e)
            return
        finally:
            heartbeat.cancel()
            self._tokens.get(migration_id, set()).discard(token)

        self.state.update_job(job.id, status="succeeded")
        logger.info(
            "module_job_succeeded",
            migration_id=migration_id,
            module=module,
            processed=summary.processed,
            completed=summary.completed,
            failed=summary.failed,
        )
        await self._maybe_complete(migration_id, log)

    async def _heartbeat(self, job_id: int) -> None:
        interval = self.config.scheduler.heartbeat_interval
        while True:
            await asyncio.sleep(interval)
            if not self.state.heartbeat_job(job_id, self.worker_id):
                logger.warning("module_job_lease_lost", job_id=job_id, worker_id=self.worker_id)
                return

    async def _run_with_retry(
        self, job: JobRecord, token: CancellationToken, log: MigrationLogger
    ) -> MigrationSummary:
        dispatch = self._dispatches[self._job_dispatch[job.id]]
        settings = self.config.scheduler
        attempts = 0

        async for attempt in job_retrying(
            max_attempts=settings.job_attempts,
            backoff_base=settings.job_backoff_base,
            never_retry=NEVER_RETRY,
            migration_id=job.migration_id,
            module=job.module,
        ):
            with attempt:
                attempts += 1
                self.state.update_job(job.id, attempts=attempts)
                token.raise_if_halted()
                source, destination = self._clients_for(dispatch)
                context = MigratorContext(
                    migration_id=job.migration_id,
                    source=source,
                    destination=destination,
                    checkpoints=self.checkpoints,
                    progress=ProgressAggregator(job.migration_id, self.state, self.publisher),
                    log=log,
                    token=token,
                    config=self.config.migrators,
                )
                summary = await create_migrator(job.module, context).migrate()

        return summary

    async def _fail(self, job: JobRecord, error: Exception) -> None:
        message = str(error) or type(error).__name__
        migration_id, module = job.migration_id, job.module

        self.state.update_job(job.id, status="failed", last_error=message)
        self.state.append_failure(migration_id, module, message)
        moved = self.state.try_transition(migration_id, MigrationStatus.FAILED)
        logger.error(
            "module_job_failed",
            migration_id=migration_id,
            module=module,
            error=message,
            error_type=type(error).__name__,
            migration_failed=moved,
        )
        await safe_publish(
            self.publisher.publish_error(migration_id, module, message),
            channel=f"migration:error:{migration_id}",
        )

    async def _maybe_complete(self, migration_id: str, log: MigrationLogger) -> bool:
        """Complete the migration once all selected modules reached 100%."""
        if self.state.has_active_jobs(migration_id):
            return False
        if not self.state.all_selected_complete(migration_id):
            return False
        if not self.state.try_transition(migration_id, MigrationStatus.COMPLETED):
            return False

        await log.success("Migration completed")
        await safe_publish(
            self.publisher.publish_completion(migration_id),
            channel=f"migration:complete:{migration_id}",
        )
        return True

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------

    def _clients_for(self, dispatch: Dispatch) -> tuple[StoreClient, StoreClient]:
        if dispatch.clients is None:
            migration = self.state.get_migration(dispatch.migration_id)
            source = self.client_factory(self.credentials.resolve(migration.source_store))
            destination = self.client_factory(self.credentials.resolve(migration.destination_store))
            dispatch.clients = (source, destination)
        return dispatch.clients

    async def _release(self, job_id: int) -> None:
        dispatch_id = self._job_dispatch.pop(job_id, None)
        dispatch = self._dispatches.get(dispatch_id) if dispatch_id else None
        if dispatch is None:
            return
        dispatch.pending -= 1
        if dispatch.pending <= 0:
            await self._close_clients(dispatch)
            self._dispatches.pop(dispatch.id, None)

    async def _close_clients(self, dispatch: Dispatch) -> None:
        if dispatch.clients is None:
            return
        for client in dispatch.clients:
            await client.close()
        dispatch.clients = None
        logger.debug("dispatch_clients_closed", dispatch_id=dispatch.id)
