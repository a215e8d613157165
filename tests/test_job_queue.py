from datetime import timedelta

import pytest

from batchrelay.db.models import Job, utcnow
from batchrelay.exceptions import InvalidTransition, ProviderAuthError, ProviderClientError
from batchrelay.jobs.queue import JobKind, JobQueue
from batchrelay.jobs.scheduler import Scheduler
from batchrelay.status import JobState


def _enqueue(database, queue, kind=JobKind.POLL_BATCH, **kwargs):
    with database.session() as session:
        job = queue.enqueue(session, kind, **kwargs)
        session.commit()
        return job


def _job(database, job_id) -> Job:
    with database.session() as session:
        return session.get(Job, job_id)


def test_enqueue_skips_available_duplicates(database, job_queue):
    first = _enqueue(database, job_queue, batch_id=1)
    assert first is not None
    assert _enqueue(database, job_queue, batch_id=1) is None
    assert _enqueue(database, job_queue, batch_id=2) is not None
    assert _enqueue(database, job_queue, batch_id=1, unique=False) is not None
    assert len(job_queue.pending(kind=JobKind.POLL_BATCH)) == 3


def test_uniqueness_includes_payload(database, job_queue):
    assert _enqueue(database, job_queue, JobKind.DELETE_REMOTE_FILE, payload="file_1") is not None
    assert _enqueue(database, job_queue, JobKind.DELETE_REMOTE_FILE, payload="file_2") is not None
    assert _enqueue(database, job_queue, JobKind.DELETE_REMOTE_FILE, payload="file_1") is None


def test_executing_job_does_not_block_a_new_one(database, job_queue):
    _enqueue(database, job_queue, batch_id=1)
    assert len(job_queue.claim(5)) == 1
    assert _enqueue(database, job_queue, batch_id=1) is not None


def test_claim_respects_schedule(database, job_queue):
    _enqueue(database, job_queue, batch_id=1, delay=60)
    assert job_queue.claim(5) == []
    (job,) = job_queue.claim(5, now=utcnow() + timedelta(minutes=2))
    assert job.state == JobState.EXECUTING
    assert job.attempt == 1
    assert job.leased_until is not None


def test_complete(database, job_queue):
    _enqueue(database, job_queue, batch_id=1)
    (job,) = job_queue.claim()
    job_queue.complete(job.id)
    stored = _job(database, job.id)
    assert stored.state == JobState.COMPLETED
    assert stored.completed_at is not None


def test_fail_retries_then_discards(database, settings):
    queue = JobQueue(database, settings.model_copy(update={"job_max_attempts": 2}))
    _enqueue(database, queue, batch_id=1)
    far_future = utcnow() + timedelta(days=1)

    (job,) = queue.claim()
    assert queue.fail(job.id, "boom") == JobState.AVAILABLE
    retried = _job(database, job.id)
    assert retried.scheduled_at > utcnow()
    assert retried.last_error == "boom"

    (job,) = queue.claim(now=far_future)
    assert job.attempt == 2
    assert queue.fail(job.id, "boom again") == JobState.DISCARDED
    assert queue.claim(now=far_future) == []


def test_snooze_does_not_count_an_attempt(database, job_queue):
    _enqueue(database, job_queue, batch_id=1)
    (job,) = job_queue.claim()
    job_queue.snooze(job.id, 30)
    stored = _job(database, job.id)
    assert stored.state == JobState.AVAILABLE
    assert stored.attempt == 0
    assert stored.scheduled_at > utcnow() + timedelta(seconds=20)


def test_cancel_for_batch_and_requests(database, job_queue):
    _enqueue(database, job_queue, batch_id=1)
    _enqueue(database, job_queue, JobKind.DOWNLOAD_RESULTS, batch_id=1)
    _enqueue(database, job_queue, batch_id=2)
    _enqueue(database, job_queue, JobKind.DELIVER, request_id=7)
    with database.session() as session:
        assert job_queue.cancel_for_batch(session, 1) == 2
        assert job_queue.cancel_for_requests(session, [7]) == 1
        assert job_queue.cancel_for_requests(session, []) == 0
        session.commit()
    assert [job.batch_id for job in job_queue.pending()] == [2]


def test_rescue_expired_leases(database, job_queue):
    _enqueue(database, job_queue, batch_id=1)
    (job,) = job_queue.claim()
    assert job_queue.rescue_expired_leases() == 0
    assert job_queue.rescue_expired_leases(now=utcnow() + timedelta(hours=1)) == 1
    assert _job(database, job.id).state == JobState.AVAILABLE


def test_prune_deletes_old_finished_jobs(database, job_queue):
    _enqueue(database, job_queue, batch_id=1)
    _enqueue(database, job_queue, batch_id=2)
    finished, _ = job_queue.claim(2)
    job_queue.complete(finished.id)
    assert job_queue.prune() == 0
    assert job_queue.prune(now=utcnow() + timedelta(days=2)) == 1
    assert _job(database, finished.id) is None
    assert len(job_queue.pending()) == 1


@pytest.fixture
def scheduler(job_queue, settings):
    return Scheduler(job_queue, settings)


def _register_raising(scheduler, error):
    async def handler(job):
        raise error

    scheduler.register(JobKind.POLL_BATCH, handler)


@pytest.mark.asyncio
async def test_successful_job_is_completed(database, job_queue, scheduler):
    seen = []

    async def handler(job):
        seen.append(job.batch_id)

    scheduler.register(JobKind.POLL_BATCH, handler)
    job = _enqueue(database, job_queue, batch_id=3)
    assert await scheduler.run_once() == 1
    assert seen == [3]
    assert _job(database, job.id).state == JobState.COMPLETED


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        ProviderClientError("bad request", status_code=400),
        InvalidTransition(entity="batch", entity_id=1, event="finish", state="building"),
    ],
)
async def test_permanent_errors_discard_the_job(database, job_queue, scheduler, error):
    _register_raising(scheduler, error)
    job = _enqueue(database, job_queue, batch_id=1)
    await scheduler.run_once()
    stored = _job(database, job.id)
    assert stored.state == JobState.DISCARDED
    assert stored.last_error == str(error)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error", [RuntimeError("flaky"), ProviderAuthError("invalid key", status_code=401)]
)
async def test_other_errors_retry_the_job(database, job_queue, scheduler, error):
    _register_raising(scheduler, error)
    job = _enqueue(database, job_queue, batch_id=1)
    await scheduler.run_once()
    stored = _job(database, job.id)
    assert stored.state == JobState.AVAILABLE
    assert stored.attempt == 1


@pytest.mark.asyncio
async def test_unknown_job_kind_is_discarded(database, job_queue, scheduler):
    job = _enqueue(database, job_queue, JobKind.DOWNLOAD_RESULTS, batch_id=1)
    await scheduler.run_once()
    assert _job(database, job.id).state == JobState.DISCARDED


@pytest.mark.asyncio
async def test_drain_runs_jobs_enqueued_by_jobs(database, job_queue, scheduler):
    order = []

    async def poll(job):
        order.append(("poll", job.batch_id))
        with database.session() as session:
            job_queue.enqueue(session, JobKind.DOWNLOAD_RESULTS, batch_id=job.batch_id, delay=60)
            session.commit()

    async def download(job):
        order.append(("download", job.batch_id))

    scheduler.register(JobKind.POLL_BATCH, poll)
    scheduler.register(JobKind.DOWNLOAD_RESULTS, download)
    _enqueue(database, job_queue, batch_id=9)

    assert await scheduler.drain() == 1
    assert await scheduler.drain(now=utcnow() + timedelta(minutes=5)) == 1
    assert order == [("poll", 9), ("download", 9)]
