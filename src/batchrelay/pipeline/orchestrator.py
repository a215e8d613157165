"""
Drive closed batches through the provider pipeline.

Each stage is a job handler. A stage re-reads its batch, does nothing when
the batch is no longer in the state the stage expects, and never holds a
database transaction open across a provider call.
"""

from __future__ import annotations

import typing as t
from datetime import datetime, timedelta

import structlog

from batchrelay import state_machine
from batchrelay.db import crud
from batchrelay.db.models import utcnow
from batchrelay.exceptions import ProviderCapacityError, ProviderError, ProviderNotFoundError
from batchrelay.jobs.queue import JobKind
from batchrelay.pipeline.files import remove_batch_dir, write_batch_file
from batchrelay.pipeline.reconcile import ReconcileStats, fail_missing_results, reconcile_file
from batchrelay.status import BATCH_TERMINAL_STATES, BatchState, RequestState
from batchrelay.utils.logging import logging_context

if t.TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from batchrelay.aggregator import Aggregator
    from batchrelay.capacity.backoff import CapacityBackoff
    from batchrelay.capacity.control import CapacityControl
    from batchrelay.db.models import Batch, Job
    from batchrelay.db.session import Database
    from batchrelay.delivery.deliverer import Deliverer
    from batchrelay.jobs.queue import JobQueue
    from batchrelay.jobs.scheduler import Scheduler
    from batchrelay.provider.client import ProviderClient
    from batchrelay.settings import Settings

log = structlog.get_logger(__name__)

ALL_REQUESTS_FAILED_MESSAGE = "All requests in batch failed"
EMPTY_BATCH_MESSAGE = "Batch has no pending requests"
INSUFFICIENT_HEADROOM = "insufficient_headroom"

# Requests still owed a result when their batch fails or is cancelled
_UNFINISHED_REQUEST_STATES = (
    RequestState.PENDING,
    RequestState.PROCESSING,
    RequestState.PROCESSED,
    RequestState.DELIVERING,
)


class Orchestrator:
    """
    Upload, submit, poll, download and reconcile batches.

    Parameters
    ----------
    database : Database
        Persistence.
    settings : Settings
        Poll interval, chunk sizes, storage path and retention.
    client : ProviderClient
        Provider Batch API client.
    job_queue : JobQueue
        Queue the stages hand work to.
    capacity_control : CapacityControl
        Admission decision before remote job creation.
    backoff : CapacityBackoff
        Retry schedule after provider capacity rejections.
    aggregator : Aggregator
        Receives requests resubmitted from expired batches.
    deliverer : Deliverer
        Delivers reconciled results.
    """

    def __init__(
        self,
        *,
        database: "Database",
        settings: "Settings",
        client: "ProviderClient",
        job_queue: "JobQueue",
        capacity_control: "CapacityControl",
        backoff: "CapacityBackoff",
        aggregator: "Aggregator",
        deliverer: "Deliverer",
    ) -> None:
        self.database = database
        self.settings = settings
        self.client = client
        self.job_queue = job_queue
        self.capacity_control = capacity_control
        self.backoff = backoff
        self.aggregator = aggregator
        self.deliverer = deliverer

    @property
    def poll_delay(self) -> timedelta:
        return timedelta(seconds=self.settings.poll_interval_seconds)

    def register(self, scheduler: "Scheduler") -> None:
        """Register every stage handler and periodic sweep on ``scheduler``."""
        scheduler.register(JobKind.UPLOAD_BATCH, self._handle_upload_batch)
        scheduler.register(JobKind.CREATE_REMOTE_JOB, self._handle_create_remote_job)
        scheduler.register(JobKind.POLL_BATCH, self._handle_poll_batch)
        scheduler.register(JobKind.DOWNLOAD_RESULTS, self._handle_download_results)
        scheduler.register(JobKind.PROCESS_EXPIRED, self._handle_process_expired)
        scheduler.register(JobKind.DELIVER, self._handle_deliver)
        scheduler.register(JobKind.DELETE_REMOTE_FILE, self._handle_delete_remote_file)

        sweep = self.settings.sweep_interval_seconds
        scheduler.add_cron("expire_stale_building", sweep, self.expire_stale_building)
        scheduler.add_cron("recheck_polling", sweep, self.recheck_polling)
        scheduler.add_cron("dispatch_waiting", self.settings.poll_interval_seconds, self.dispatch_waiting)
        scheduler.add_cron("resume_stale_work", sweep, self.resume_stale_work)
        scheduler.add_cron("delete_expired_batches", sweep, self.delete_expired_batches)
        scheduler.add_cron("rescue_stuck_jobs", sweep, self.rescue_stuck_jobs)
        scheduler.add_cron("prune_jobs", sweep, self.prune_jobs)

    # -- job handlers --------------------------------------------------------

    async def _handle_upload_batch(self, job: "Job") -> None:
        await self.upload_batch(t.cast(int, job.batch_id))

    async def _handle_create_remote_job(self, job: "Job") -> None:
        await self.create_remote_job(t.cast(int, job.batch_id))

    async def _handle_poll_batch(self, job: "Job") -> None:
        await self.poll_batch(t.cast(int, job.batch_id))

    async def _handle_download_results(self, job: "Job") -> None:
        await self.download_results(t.cast(int, job.batch_id))

    async def _handle_process_expired(self, job: "Job") -> None:
        await self.process_expired(t.cast(int, job.batch_id))

    async def _handle_deliver(self, job: "Job") -> None:
        await self.deliverer.deliver(t.cast(int, job.request_id))

    async def _handle_delete_remote_file(self, job: "Job") -> None:
        if not job.payload:
            log.warning(event="Delete job without a file id", job_id=job.id)
            return
        try:
            await self.client.delete_file(job.payload)
        except ProviderNotFoundError:
            log.debug(event="Remote file already gone", file_id=job.payload)
            return
        log.info(event="Deleted remote file", file_id=job.payload)

    # -- stages --------------------------------------------------------------

    async def upload_batch(self, batch_id: int) -> None:
        """
        Write the batch's input file and upload it.

        Parameters
        ----------
        batch_id : int
            Batch in ``uploading``.
        """
        with logging_context(batch_id=batch_id):
            with self.database.session() as session:
                batch = crud.get_batch(session, batch_id)
                if batch is None or batch.state != BatchState.UPLOADING:
                    log.debug(event="Skipped upload", state=None if batch is None else str(batch.state))
                    return
                path, count = write_batch_file(
                    session, batch_id=batch_id, storage_path=self.settings.batch_storage_path
                )
                if count == 0:
                    state_machine.fire(session, batch, "fail", error_message=EMPTY_BATCH_MESSAGE)
                    session.commit()
                    remove_batch_dir(self.settings.batch_storage_path, batch_id)
                    log.warning(event="Failed empty batch")
                    return

            remote_file = await self.client.upload_file(path)
            log.info(event="Uploaded batch file", file_id=remote_file.id, line_count=count)
            try:
                persisted = self._record_upload(
                    batch_id, file_id=remote_file.id, expires_at=remote_file.expires_at_datetime
                )
            except Exception:
                log.error(event="Could not persist upload, deleting remote file", file_id=remote_file.id)
                await self._delete_remote_file_quietly(remote_file.id)
                raise
            if not persisted:
                await self._delete_remote_file_quietly(remote_file.id)
            remove_batch_dir(self.settings.batch_storage_path, batch_id)

    def _record_upload(
        self, batch_id: int, *, file_id: str, expires_at: datetime | None
    ) -> bool:
        with self.database.session() as session:
            batch = crud.get_batch(session, batch_id, for_update=True)
            if batch is None or batch.state != BatchState.UPLOADING:
                log.info(event="Batch left uploading during upload")
                return False
            if expires_at is None and self.settings.batch_retention_seconds is not None:
                expires_at = utcnow() + timedelta(seconds=self.settings.batch_retention_seconds)
            state_machine.fire(
                session, batch, "upload", remote_input_file_id=file_id, expires_at=expires_at
            )
            pending = crud.requests_in_state(session, batch_id, [RequestState.PENDING])
            state_machine.fire_all(session, pending, "begin_processing")
            self.job_queue.enqueue(session, JobKind.CREATE_REMOTE_JOB, batch_id=batch_id)
            session.commit()
        return True

    async def create_remote_job(self, batch_id: int) -> None:
        """
        Submit an uploaded batch to the provider when capacity allows.

        Parameters
        ----------
        batch_id : int
            Batch in ``uploaded`` or ``waiting_for_capacity``.
        """
        with logging_context(batch_id=batch_id):
            now = utcnow()
            with self.database.session() as session:
                batch = crud.get_batch(session, batch_id, for_update=True)
                if batch is None or batch.state not in (
                    BatchState.UPLOADED,
                    BatchState.WAITING_FOR_CAPACITY,
                ):
                    log.debug(event="Skipped remote job creation")
                    return
                if batch.capacity_retry_next_at is not None and batch.capacity_retry_next_at > now:
                    self._enqueue_capacity_retry(session, batch)
                    session.commit()
                    return
                decision = self.capacity_control.decision(session, batch)
                if not decision.admit:
                    self._wait_for_capacity(session, batch, reason=INSUFFICIENT_HEADROOM, now=now)
                    session.commit()
                    log.info(event="Batch waiting for capacity", **decision.as_log_context())
                    return
                input_file_id = t.cast(str, batch.remote_input_file_id)
                endpoint = batch.endpoint

            try:
                remote = await self.client.create_batch(
                    input_file_id=input_file_id,
                    endpoint=endpoint,
                    metadata={"batchrelay_batch_id": str(batch_id)},
                )
            except ProviderCapacityError as e:
                self._record_capacity_rejection(batch_id, reason=str(e), now=now)
                return

            with self.database.session() as session:
                batch = crud.get_batch(session, batch_id, for_update=True)
                if batch is None or batch.state not in (
                    BatchState.UPLOADED,
                    BatchState.WAITING_FOR_CAPACITY,
                ):
                    log.warning(event="Batch changed state during remote job creation", remote_job_id=remote.id)
                    cancel_remote = True
                else:
                    cancel_remote = False
                    self.backoff.reset(batch)
                    state_machine.fire(
                        session,
                        batch,
                        "create_remote_job",
                        remote_job_id=remote.id,
                        capacity_wait_reason=None,
                        waiting_since_at=None,
                    )
                    self.job_queue.enqueue(
                        session, JobKind.POLL_BATCH, batch_id=batch_id, delay=self.poll_delay
                    )
                    session.commit()
                    log.info(event="Created remote job", remote_job_id=remote.id)
            if cancel_remote:
                await self._cancel_remote_quietly(remote.id)

    def _wait_for_capacity(
        self, session: "Session", batch: "Batch", *, reason: str, now: datetime
    ) -> None:
        state_machine.fire(
            session,
            batch,
            "wait_for_capacity",
            capacity_wait_reason=reason,
            waiting_since_at=batch.waiting_since_at or now,
        )

    def _enqueue_capacity_retry(self, session: "Session", batch: "Batch") -> None:
        delay = timedelta(0)
        if batch.capacity_retry_next_at is not None:
            delay = max(batch.capacity_retry_next_at - utcnow(), timedelta(0))
        self.job_queue.enqueue(session, JobKind.CREATE_REMOTE_JOB, batch_id=batch.id, delay=delay)

    def _record_capacity_rejection(self, batch_id: int, *, reason: str, now: datetime) -> None:
        with self.database.session() as session:
            batch = crud.get_batch(session, batch_id, for_update=True)
            if batch is None or not state_machine.can_fire(batch, "wait_for_capacity"):
                return
            next_at = self.backoff.record_rejection(batch, now)
            self._wait_for_capacity(session, batch, reason=reason, now=now)
            self._enqueue_capacity_retry(session, batch)
            session.commit()
        log.warning(
            event="Provider rejected batch for capacity",
            reason=reason,
            attempt=batch.capacity_retry_attempts,
            retry_at=next_at.isoformat(),
        )

    async def poll_batch(self, batch_id: int) -> None:
        """
        Check the remote job and move the batch on when its status changed.

        Parameters
        ----------
        batch_id : int
            Batch in ``polling``.
        """
        with logging_context(batch_id=batch_id):
            with self.database.session() as session:
                batch = crud.get_batch(session, batch_id)
                if batch is None or batch.state != BatchState.POLLING or not batch.remote_job_id:
                    log.debug(event="Skipped poll")
                    return
                remote_job_id = batch.remote_job_id

            remote = await self.client.get_batch(remote_job_id)
            target = self.settings.status_map.get(remote.status)
            if target is None:
                log.warning(event="Unknown provider batch status, still polling", status=remote.status)
                target = BatchState.POLLING

            with self.database.session() as session:
                batch = crud.get_batch(session, batch_id, for_update=True)
                if batch is None or batch.state != BatchState.POLLING:
                    return
                batch.remote_status_last_checked_at = utcnow()
                if target == BatchState.POLLING:
                    self.job_queue.enqueue(
                        session, JobKind.POLL_BATCH, batch_id=batch_id, delay=self.poll_delay
                    )
                elif target == BatchState.DOWNLOADING:
                    state_machine.fire(
                        session,
                        batch,
                        "provider_completed",
                        remote_output_file_id=remote.output_file_id,
                        remote_error_file_id=remote.error_file_id,
                        input_tokens=remote.input_tokens,
                        output_tokens=remote.output_tokens,
                    )
                    self.job_queue.enqueue(session, JobKind.DOWNLOAD_RESULTS, batch_id=batch_id)
                elif target == BatchState.FAILED and remote.is_capacity_failure:
                    # same input file is resubmitted once the backoff elapses
                    next_at = self.backoff.record_rejection(batch)
                    self._wait_for_capacity(
                        session, batch, reason=remote.error_summary or "token_limit_exceeded", now=utcnow()
                    )
                    batch.remote_job_id = None
                    self._enqueue_capacity_retry(session, batch)
                    log.warning(event="Remote job failed for capacity", retry_at=next_at.isoformat())
                elif target == BatchState.FAILED:
                    message = remote.error_summary or f"provider batch {remote.status}"
                    state_machine.fire(session, batch, "fail", error_message=message)
                    requests = crud.requests_in_state(session, batch_id, _UNFINISHED_REQUEST_STATES)
                    state_machine.fire_all(session, requests, "mark_failed", error_message=message)
                    log.error(event="Remote job failed", error=message)
                elif target == BatchState.EXPIRED:
                    state_machine.fire(
                        session,
                        batch,
                        "expire",
                        remote_output_file_id=remote.output_file_id,
                        remote_error_file_id=remote.error_file_id,
                    )
                    self.job_queue.enqueue(session, JobKind.PROCESS_EXPIRED, batch_id=batch_id)
                    log.warning(event="Remote job expired", output_file_id=remote.output_file_id)
                elif target == BatchState.CANCELLED:
                    self._cancel_locally(session, batch, reason=f"provider batch {remote.status}")
                else:
                    log.error(event="Status map points to an unsupported state", target=str(target))
                session.commit()
            log.debug(event="Polled remote job", status=remote.status, target=str(target))

    async def _reconcile_files(self, batch_id: int, file_ids: t.Iterable[str | None]) -> ReconcileStats:
        stats = ReconcileStats()
        for file_id in file_ids:
            if file_id:
                stats.merge(
                    await reconcile_file(
                        database=self.database,
                        client=self.client,
                        batch_id=batch_id,
                        file_id=file_id,
                        chunk_size=self.settings.reconcile_chunk_size,
                    )
                )
        return stats

    async def download_results(self, batch_id: int) -> None:
        """
        Reconcile the output and error files of a completed remote job.

        Parameters
        ----------
        batch_id : int
            Batch in ``downloading``.
        """
        with logging_context(batch_id=batch_id):
            with self.database.session() as session:
                batch = crud.get_batch(session, batch_id)
                if batch is None or batch.state != BatchState.DOWNLOADING:
                    log.debug(event="Skipped download")
                    return
                file_ids = (batch.remote_output_file_id, batch.remote_error_file_id)

            await self._reconcile_files(batch_id, file_ids)

            with self.database.session() as session:
                batch = crud.get_batch(session, batch_id, for_update=True)
                if batch is None or batch.state != BatchState.DOWNLOADING:
                    return
                fail_missing_results(session, batch_id)
                self._finalize(session, batch)
                session.commit()

    def _finalize(self, session: "Session", batch: "Batch") -> None:
        session.flush()
        processed = crud.request_ids_in_state(session, batch.id, [RequestState.PROCESSED])
        if not processed and not crud.count_open_requests(session, batch.id):
            state_machine.fire(session, batch, "fail", error_message=ALL_REQUESTS_FAILED_MESSAGE)
            log.warning(event="Every request of the batch failed")
            return
        state_machine.fire(session, batch, "reconciled")
        queued = self.deliverer.enqueue_pending(session, batch.id)
        log.info(event="Batch reconciled", deliveries=queued, counts=crud.request_state_counts(session, batch.id))

    async def process_expired(self, batch_id: int) -> list[int]:
        """
        Salvage partial results of an expired remote job and resubmit the rest.

        Results the provider did return are reconciled and delivered; every
        request still ``processing`` is reset to ``pending`` and moved into a
        new batch with its ``custom_id`` unchanged. The expired batch itself
        stays ``expired``.

        Parameters
        ----------
        batch_id : int
            Batch in ``expired``.

        Returns
        -------
        list[int]
            Ids of the batches that received resubmitted requests.
        """
        with logging_context(batch_id=batch_id):
            with self.database.session() as session:
                batch = crud.get_batch(session, batch_id)
                if batch is None or batch.state != BatchState.EXPIRED:
                    log.debug(event="Skipped expiry processing")
                    return []
                file_ids = (batch.remote_output_file_id, batch.remote_error_file_id)
                key = (batch.endpoint, batch.model)

            try:
                await self._reconcile_files(batch_id, file_ids)
            except ProviderError as e:
                log.warning(event="Could not download partial results, resubmitting all", error=str(e))

            with self.database.session() as session:
                processing = crud.requests_in_state(session, batch_id, [RequestState.PROCESSING])
                reset = state_machine.fire_all(
                    session, processing, "reset_to_pending", error_message=None, response_payload=None
                )
                delivered = self.deliverer.enqueue_pending(session, batch_id)
                session.commit()
                pending_ids = crud.request_ids_in_state(session, batch_id, [RequestState.PENDING])

            log.info(event="Processed expired batch", reset=reset, deliveries=delivered, resubmitting=len(pending_ids))
            if not pending_ids:
                return []
            batch_ids = await self.aggregator.readmit(pending_ids)
            # resubmitted work has already waited a full completion window
            await self.aggregator.close(*key)
            return batch_ids

    # -- operator actions ----------------------------------------------------

    def _cancel_locally(self, session: "Session", batch: "Batch", *, reason: str) -> None:
        state_machine.fire(session, batch, "cancel", error_message=reason)
        requests = crud.requests_in_state(session, batch.id, _UNFINISHED_REQUEST_STATES)
        state_machine.fire_all(session, requests, "cancel")
        self.job_queue.cancel_for_batch(session, batch.id)
        self.job_queue.cancel_for_requests(session, [request.id for request in requests])
        log.info(event="Cancelled batch", reason=reason, requests=len(requests))

    async def cancel_batch(self, batch_id: int, *, reason: str = "cancelled by operator") -> bool:
        """
        Cancel a batch and every request still owed a result.

        Calling it again, or on a finished batch, does nothing.

        Returns
        -------
        bool
            Whether the batch was cancelled by this call.
        """
        with logging_context(batch_id=batch_id):
            with self.database.session() as session:
                batch = crud.get_batch(session, batch_id)
                if batch is None or batch.state in BATCH_TERMINAL_STATES:
                    return False
                remote_job_id = batch.remote_job_id if batch.state == BatchState.POLLING else None

            if remote_job_id:
                await self._cancel_remote_quietly(remote_job_id)

            with self.database.session() as session:
                batch = crud.get_batch(session, batch_id, for_update=True)
                if batch is None or batch.state in BATCH_TERMINAL_STATES:
                    return False
                self._cancel_locally(session, batch, reason=reason)
                session.commit()
            remove_batch_dir(self.settings.batch_storage_path, batch_id)
            return True

    async def destroy_batch(self, batch_id: int) -> bool:
        """
        Delete a batch, its requests and history.

        The remote job is cancelled when still running and the batch's remote
        files are deleted in the background.

        Returns
        -------
        bool
            Whether a batch was deleted.
        """
        with logging_context(batch_id=batch_id):
            with self.database.session() as session:
                batch = crud.get_batch(session, batch_id)
                if batch is None:
                    return False
                remote_job_id = batch.remote_job_id if batch.state == BatchState.POLLING else None

            if remote_job_id:
                await self._cancel_remote_quietly(remote_job_id)

            with self.database.session() as session:
                batch = crud.get_batch(session, batch_id, for_update=True)
                if batch is None:
                    return False
                file_ids = [
                    file_id
                    for file_id in (
                        batch.remote_input_file_id,
                        batch.remote_output_file_id,
                        batch.remote_error_file_id,
                    )
                    if file_id
                ]
                for file_id in file_ids:
                    # not tied to the batch id so it outlives the row
                    self.job_queue.enqueue(session, JobKind.DELETE_REMOTE_FILE, payload=file_id)
                self.job_queue.cancel_for_batch(session, batch_id)
                session.delete(batch)
                session.commit()
            remove_batch_dir(self.settings.batch_storage_path, batch_id)
            log.info(event="Destroyed batch", remote_files=len(file_ids))
            return True

    def redeliver(self, request_id: int) -> bool:
        return self.deliverer.redeliver(request_id)

    def redeliver_failed(self, batch_id: int) -> int:
        return self.deliverer.redeliver_failed(batch_id)

    async def _cancel_remote_quietly(self, remote_job_id: str) -> None:
        try:
            await self.client.cancel_batch(remote_job_id)
        except ProviderNotFoundError:
            log.info(event="Remote job already gone", remote_job_id=remote_job_id)
        except ProviderError as e:
            log.warning(event="Could not cancel remote job", remote_job_id=remote_job_id, error=str(e))

    async def _delete_remote_file_quietly(self, file_id: str) -> None:
        try:
            await self.client.delete_file(file_id)
        except ProviderError as e:
            log.warning(event="Could not delete remote file", file_id=file_id, error=str(e))

    # -- sweeps --------------------------------------------------------------

    async def expire_stale_building(self) -> int:
        """Close open batches past their maximum age; empty ones are deleted."""
        cutoff = utcnow() - self.settings.batch_max_age
        with self.database.session() as session:
            stale = [
                (batch.endpoint, batch.model)
                for batch in crud.batches_in_state(session, BatchState.BUILDING)
                if batch.opened_at < cutoff
            ]
        for endpoint, model in stale:
            await self.aggregator.close(endpoint, model, drop_empty=True)
        if stale:
            log.info(event="Closed stale open batches", count=len(stale))
        return len(stale)

    async def recheck_polling(self) -> int:
        """Queue polls for polling batches whose poll job went missing."""
        cutoff = utcnow() - 2 * self.poll_delay
        queued = 0
        with self.database.session() as session:
            for batch in crud.batches_in_state(session, BatchState.POLLING):
                checked = batch.remote_status_last_checked_at or batch.updated_at
                if checked < cutoff and self.job_queue.enqueue(
                    session, JobKind.POLL_BATCH, batch_id=batch.id
                ):
                    queued += 1
            session.commit()
        return queued

    async def dispatch_waiting(self) -> int:
        """Retry waiting batches whose backoff elapsed, oldest first."""
        now = utcnow()
        queued = 0
        with self.database.session() as session:
            for batch in crud.batches_in_state(session, BatchState.WAITING_FOR_CAPACITY):
                if batch.capacity_retry_next_at is not None and batch.capacity_retry_next_at > now:
                    continue
                if self.job_queue.enqueue(session, JobKind.CREATE_REMOTE_JOB, batch_id=batch.id):
                    queued += 1
            session.commit()
        if queued:
            log.debug(event="Dispatched waiting batches", count=queued)
        return queued

    async def resume_stale_work(self) -> int:
        """
        Queue the next stage for batches left mid-pipeline, e.g. after a
        restart that lost in-flight jobs, and hand deliveries whose worker
        vanished back for another attempt.
        """
        cutoff = utcnow() - timedelta(seconds=self.settings.job_lease_seconds)
        stage_jobs = {
            BatchState.UPLOADING: JobKind.UPLOAD_BATCH,
            BatchState.UPLOADED: JobKind.CREATE_REMOTE_JOB,
            BatchState.DOWNLOADING: JobKind.DOWNLOAD_RESULTS,
        }
        queued = 0
        with self.database.session() as session:
            for state, kind in stage_jobs.items():
                for batch in crud.batches_in_state(session, state, older_than=cutoff):
                    if not self.job_queue.pending(kind=kind, batch_id=batch.id) and self.job_queue.enqueue(
                        session, kind, batch_id=batch.id
                    ):
                        queued += 1
            for batch in crud.batches_in_state(session, BatchState.EXPIRED, older_than=cutoff):
                unfinished = crud.request_ids_in_state(
                    session, batch.id, [RequestState.PROCESSING, RequestState.PENDING]
                )
                if unfinished and self.job_queue.enqueue(session, JobKind.PROCESS_EXPIRED, batch_id=batch.id):
                    queued += 1
            queued += self.deliverer.release_stalled(session, older_than=cutoff)
            for batch in crud.batches_in_state(session, BatchState.DELIVERING, older_than=cutoff):
                queued += self.deliverer.enqueue_pending(session, batch.id)
                crud.finish_batch_if_delivered(session, batch.id)
            session.commit()
        if queued:
            log.info(event="Resumed stale work", jobs=queued)
        return queued

    async def delete_expired_batches(self) -> int:
        """Destroy finished batches whose retention ran out."""
        now = utcnow()
        with self.database.session() as session:
            expired = [
                batch.id
                for batch in crud.list_batches(session, states=BATCH_TERMINAL_STATES)
                if batch.expires_at is not None and batch.expires_at < now
            ]
        for batch_id in expired:
            await self.destroy_batch(batch_id)
        if expired:
            log.info(event="Deleted batches past retention", count=len(expired))
        return len(expired)

    async def rescue_stuck_jobs(self) -> int:
        return self.job_queue.rescue_expired_leases()

    async def prune_jobs(self) -> int:
        return self.job_queue.prune()
