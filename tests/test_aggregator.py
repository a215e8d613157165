import asyncio

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from batchrelay.aggregator import AdmissionItem, Aggregator
from batchrelay.db.models import Batch, Request
from batchrelay.exceptions import (
    CustomIdAlreadyTaken,
    InvalidDeliveryConfig,
    InvalidPayload,
    PayloadTooLarge,
    UnsupportedEndpoint,
)
from batchrelay.jobs.queue import JobKind, JobQueue
from batchrelay.status import BatchState, RequestState

ENDPOINT = "/v1/chat/completions"
MODEL = "gpt-4o-mini"
WEBHOOK = {"type": "webhook", "webhook_url": "https://example.com/hook"}


def _item(custom_id: str, *, content: str = "hello", **kwargs) -> AdmissionItem:
    fields = {
        "custom_id": custom_id,
        "endpoint": ENDPOINT,
        "model": MODEL,
        "payload": {"messages": [{"role": "user", "content": content}]},
        "delivery_config": WEBHOOK,
    }
    fields.update(kwargs)
    return AdmissionItem(**fields)


@pytest.fixture
def small_settings(settings):
    return settings.model_copy(update={"max_requests_per_batch": 5})


@pytest_asyncio.fixture
async def aggregator(database, small_settings, estimator, rate_limits):
    aggregator = Aggregator(
        database=database,
        settings=small_settings,
        estimator=estimator,
        rate_limits=rate_limits,
        job_queue=JobQueue(database, small_settings),
    )
    yield aggregator
    await aggregator.shutdown()


def _batches(database) -> list[Batch]:
    with database.session() as session:
        return list(session.execute(select(Batch).order_by(Batch.id)).scalars())


@pytest.mark.asyncio
async def test_admissions_share_the_open_batch(aggregator, database):
    requests = [await aggregator.admit(_item(f"req-{n}")) for n in range(3)]

    assert len({request.batch_id for request in requests}) == 1
    assert all(request.state == RequestState.PENDING for request in requests)
    (batch,) = _batches(database)
    assert batch.state == BatchState.BUILDING
    assert batch.request_count == 3
    assert batch.size_bytes == sum(request.payload_size for request in requests)
    assert batch.estimated_token_total == sum(request.estimated_tokens for request in requests)


@pytest.mark.asyncio
async def test_full_batch_is_closed_and_a_new_one_opened(aggregator, database, job_queue):
    requests = [await aggregator.admit(_item(f"req-{n}")) for n in range(6)]

    first, second = _batches(database)
    assert [request.batch_id for request in requests] == [first.id] * 5 + [second.id]
    assert first.state == BatchState.UPLOADING
    assert first.request_count == 5
    assert second.state == BatchState.BUILDING
    uploads = job_queue.pending(kind=JobKind.UPLOAD_BATCH)
    assert [job.batch_id for job in uploads] == [first.id]


@pytest.mark.asyncio
async def test_keys_get_their_own_batches(aggregator, database):
    await aggregator.admit(_item("a"))
    await aggregator.admit(
        _item("b", model="gpt-4o", payload={"model": "gpt-4o", "messages": []})
    )
    assert sorted(batch.model for batch in _batches(database)) == ["gpt-4o", "gpt-4o-mini"]
    assert sorted(aggregator.builder_keys) == [(ENDPOINT, "gpt-4o"), (ENDPOINT, MODEL)]


@pytest.mark.asyncio
async def test_model_is_written_into_the_stored_body(aggregator):
    request = await aggregator.admit(_item("req-1"))
    assert '"model":"gpt-4o-mini"' in request.payload


@pytest.mark.asyncio
async def test_duplicate_custom_id_is_rejected(aggregator, database):
    await aggregator.admit(_item("dup"))
    with pytest.raises(CustomIdAlreadyTaken) as e:
        await aggregator.admit(_item("dup", content="again"))
    assert e.value.custom_id == "dup"

    with database.session() as session:
        assert session.execute(select(func.count(Request.id))).scalar_one() == 1
    (batch,) = _batches(database)
    assert batch.request_count == 1


@pytest.mark.asyncio
async def test_unsupported_endpoint(aggregator):
    with pytest.raises(UnsupportedEndpoint):
        await aggregator.admit(_item("req-1", endpoint="/v1/images/generations"))


@pytest.mark.asyncio
async def test_payload_model_mismatch(aggregator):
    with pytest.raises(InvalidPayload):
        await aggregator.admit(_item("req-1", payload={"model": "gpt-4o", "messages": []}))


@pytest.mark.asyncio
async def test_invalid_delivery_config(aggregator):
    with pytest.raises(InvalidDeliveryConfig):
        await aggregator.admit(_item("req-1", delivery_config={"type": "webhook", "webhook_url": "ftp://x"}))
    with pytest.raises(InvalidDeliveryConfig):
        await aggregator.admit(_item("req-2", delivery_config={"type": "rabbitmq"}))


@pytest.mark.asyncio
async def test_payload_larger_than_an_empty_batch(database, settings, estimator, rate_limits):
    tiny = settings.model_copy(update={"max_batch_size_bytes": 200})
    aggregator = Aggregator(
        database=database,
        settings=tiny,
        estimator=estimator,
        rate_limits=rate_limits,
        job_queue=JobQueue(database, tiny),
    )
    try:
        with pytest.raises(PayloadTooLarge):
            await aggregator.admit(_item("big", content="x" * 500))
        # the empty batch stays open until it is dropped
        (batch,) = _batches(database)
        assert batch.request_count == 0
        assert await aggregator.close(ENDPOINT, MODEL, drop_empty=True) is None
        assert _batches(database) == []
    finally:
        await aggregator.shutdown()


@pytest.mark.asyncio
async def test_close_hands_the_batch_to_upload(aggregator, database, job_queue):
    await aggregator.admit(_item("req-1"))
    batch_id = await aggregator.close(ENDPOINT, MODEL)

    (batch,) = _batches(database)
    assert batch.id == batch_id
    assert batch.state == BatchState.UPLOADING
    assert job_queue.pending(kind=JobKind.UPLOAD_BATCH, batch_id=batch_id)
    assert await aggregator.close(ENDPOINT, MODEL) is None


@pytest.mark.asyncio
async def test_readmit_moves_pending_requests_to_the_open_batch(aggregator, database):
    requests = [await aggregator.admit(_item(f"req-{n}")) for n in range(2)]
    old_batch_id = await aggregator.close(ENDPOINT, MODEL)

    batch_ids = await aggregator.readmit([request.id for request in requests])

    assert len(batch_ids) == 1
    assert batch_ids[0] != old_batch_id
    with database.session() as session:
        moved = list(session.execute(select(Request).order_by(Request.id)).scalars())
        assert {request.batch_id for request in moved} == {batch_ids[0]}
        assert [request.custom_id for request in moved] == ["req-0", "req-1"]
        assert session.get(Batch, batch_ids[0]).request_count == 2


@pytest.mark.asyncio
async def test_concurrent_admissions(aggregator, database):
    custom_ids = [f"req-{n}" for n in range(9)] + ["req-1", "req-4", "req-7"]

    results = await asyncio.gather(
        *(aggregator.admit(_item(custom_id)) for custom_id in custom_ids), return_exceptions=True
    )

    rejected = [result for result in results if isinstance(result, Exception)]
    assert all(isinstance(error, CustomIdAlreadyTaken) for error in rejected)
    assert sorted(error.custom_id for error in rejected) == ["req-1", "req-4", "req-7"]
    counts = [batch.request_count for batch in _batches(database)]
    assert sum(counts) == 9
    assert max(counts) <= 5
    with database.session() as session:
        stored = session.execute(select(Request.custom_id)).scalars().all()
    assert sorted(stored) == sorted(set(custom_ids))


@pytest.mark.asyncio
async def test_builder_closes_its_batch_after_max_age(database, settings, estimator, rate_limits, job_queue):
    short = settings.model_copy(update={"batch_max_age_seconds": 0.05})
    aggregator = Aggregator(
        database=database,
        settings=short,
        estimator=estimator,
        rate_limits=rate_limits,
        job_queue=JobQueue(database, short),
    )
    try:
        request = await aggregator.admit(_item("req-1"))
        for _ in range(200):
            (batch,) = _batches(database)
            if batch.state != BatchState.BUILDING:
                break
            await asyncio.sleep(0.01)

        assert batch.id == request.batch_id
        assert batch.state == BatchState.UPLOADING
        assert [job.batch_id for job in job_queue.pending(kind=JobKind.UPLOAD_BATCH)] == [batch.id]
    finally:
        await aggregator.shutdown()
