import typing as t
from datetime import datetime

import structlog
from sqlalchemy import and_, exists, func, select

from batchrelay import state_machine
from batchrelay.db.models import Batch, DeliveryAttempt, Job, Request
from batchrelay.status import REQUEST_TERMINAL_STATES, BatchState, JobState, RequestState

if t.TYPE_CHECKING:
    from sqlalchemy.orm import Session

log = structlog.get_logger(__name__)


def get_batch(db: "Session", batch_id: int, *, for_update: bool = False) -> Batch | None:
    """Get a batch by id

    Parameters
    ----------
    db : Session
        The database session
    batch_id : int
        The id of the batch
    for_update : bool
        Lock the row until the transaction ends

    Returns
    -------
    Batch | None
        The batch
    """
    stmt = select(Batch).where(Batch.id == batch_id)
    if for_update:
        stmt = stmt.with_for_update()
    return db.execute(stmt).scalar_one_or_none()


def get_request(db: "Session", request_id: int, *, for_update: bool = False) -> Request | None:
    stmt = select(Request).where(Request.id == request_id)
    if for_update:
        stmt = stmt.with_for_update()
    return db.execute(stmt).scalar_one_or_none()


def get_request_by_custom_id(db: "Session", custom_id: str) -> Request | None:
    return db.execute(select(Request).where(Request.custom_id == custom_id)).scalar_one_or_none()


def list_batches(
    db: "Session",
    *,
    states: t.Iterable[BatchState] | None = None,
    model: str | None = None,
    limit: int | None = None,
    offset: int | None = None,
) -> list[Batch]:
    """List batches, newest first

    Parameters
    ----------
    db : Session
        The database session
    states : Iterable[BatchState] | None
        Only return batches in these states
    model : str | None
        Only return batches for this model
    limit : int | None
        The maximum number of batches
    offset : int | None
        The number of batches to skip

    Returns
    -------
    list[Batch]
        The batches
    """
    stmt = select(Batch)
    if states is not None:
        stmt = stmt.where(Batch.state.in_(list(states)))
    if model is not None:
        stmt = stmt.where(Batch.model == model)
    stmt = stmt.order_by(Batch.id.desc())
    if limit is not None:
        stmt = stmt.limit(limit)
    if offset is not None:
        stmt = stmt.offset(offset)
    return list(db.execute(stmt).scalars())


def batches_in_state(
    db: "Session",
    state: BatchState,
    *,
    older_than: datetime | None = None,
    oldest_first: bool = True,
) -> list[Batch]:
    stmt = select(Batch).where(Batch.state == state)
    if older_than is not None:
        stmt = stmt.where(Batch.updated_at < older_than)
    order = Batch.waiting_since_at if state == BatchState.WAITING_FOR_CAPACITY else Batch.id
    stmt = stmt.order_by(order.asc() if oldest_first else order.desc(), Batch.id)
    return list(db.execute(stmt).scalars())


def requests_in_state(
    db: "Session", batch_id: int, states: t.Iterable[RequestState]
) -> list[Request]:
    stmt = (
        select(Request)
        .where(Request.batch_id == batch_id, Request.state.in_(list(states)))
        .order_by(Request.id)
    )
    return list(db.execute(stmt).scalars())


def request_ids_in_state(db: "Session", batch_id: int, states: t.Iterable[RequestState]) -> list[int]:
    stmt = (
        select(Request.id)
        .where(Request.batch_id == batch_id, Request.state.in_(list(states)))
        .order_by(Request.id)
    )
    return list(db.execute(stmt).scalars())


def request_state_counts(db: "Session", batch_id: int) -> dict[str, int]:
    rows = db.execute(
        select(Request.state, func.count(Request.id))
        .where(Request.batch_id == batch_id)
        .group_by(Request.state)
    ).all()
    return {str(state): count for state, count in rows}


def count_open_requests(db: "Session", batch_id: int) -> int:
    return int(
        db.execute(
            select(func.count(Request.id)).where(
                Request.batch_id == batch_id,
                Request.state.not_in(list(REQUEST_TERMINAL_STATES)),
            )
        ).scalar_one()
    )


def delivery_attempts(db: "Session", request_id: int) -> list[DeliveryAttempt]:
    stmt = (
        select(DeliveryAttempt)
        .where(DeliveryAttempt.request_id == request_id)
        .order_by(DeliveryAttempt.attempt_number)
    )
    return list(db.execute(stmt).scalars())


def stalled_deliveries(db: "Session", *, older_than: datetime, job_kind: str) -> list[Request]:
    """``delivering`` requests untouched since ``older_than`` with no executing ``job_kind`` job."""
    running = exists().where(
        and_(
            Job.request_id == Request.id,
            Job.kind == job_kind,
            Job.state == JobState.EXECUTING,
        )
    )
    stmt = (
        select(Request)
        .where(Request.state == RequestState.DELIVERING, Request.updated_at < older_than, ~running)
        .order_by(Request.id)
    )
    return list(db.execute(stmt).scalars())


def finish_batch_if_delivered(db: "Session", batch_id: int) -> bool:
    """Complete a delivering batch once all of its requests are terminal

    Parameters
    ----------
    db : Session
        The database session, committed by the caller
    batch_id : int
        The id of the batch

    Returns
    -------
    bool
        Whether the batch was completed
    """
    db.flush()
    batch = get_batch(db, batch_id, for_update=True)
    if batch is None or batch.state != BatchState.DELIVERING:
        return False
    if count_open_requests(db, batch_id):
        return False
    state_machine.fire(db, batch, "finish")
    log.info(event="Batch delivery complete", batch_id=batch_id, counts=request_state_counts(db, batch_id))
    return True
