"""
Batch and request lifecycle transitions.

Every state change goes through :func:`fire`, which checks the edge against
the transition table, mutates the entity and appends the audit row to the
same session, so the change and its history are committed together.
"""

from __future__ import annotations

import typing as t

import structlog

from batchrelay.db.models import Batch, BatchTransition, Request, RequestTransition, utcnow
from batchrelay.exceptions import InvalidTransition
from batchrelay.status import BATCH_TERMINAL_STATES, BatchState, RequestState

if t.TYPE_CHECKING:
    from sqlalchemy.orm import Session

log = structlog.get_logger(__name__)

Entity = t.TypeVar("Entity", Batch, Request)

_NON_TERMINAL_BATCH_STATES = tuple(s for s in BatchState if s not in BATCH_TERMINAL_STATES)

BATCH_EDGES: dict[str, dict[BatchState, BatchState]] = {
    "start_upload": {BatchState.BUILDING: BatchState.UPLOADING},
    "upload": {BatchState.UPLOADING: BatchState.UPLOADED},
    "create_remote_job": {
        BatchState.UPLOADED: BatchState.POLLING,
        BatchState.WAITING_FOR_CAPACITY: BatchState.POLLING,
    },
    "wait_for_capacity": {
        BatchState.UPLOADED: BatchState.WAITING_FOR_CAPACITY,
        BatchState.WAITING_FOR_CAPACITY: BatchState.WAITING_FOR_CAPACITY,
        BatchState.POLLING: BatchState.WAITING_FOR_CAPACITY,
    },
    "provider_completed": {BatchState.POLLING: BatchState.DOWNLOADING},
    "reconciled": {BatchState.DOWNLOADING: BatchState.DELIVERING},
    "finish": {BatchState.DELIVERING: BatchState.COMPLETED},
    "expire": {
        BatchState.POLLING: BatchState.EXPIRED,
        BatchState.DOWNLOADING: BatchState.EXPIRED,
    },
    "fail": {state: BatchState.FAILED for state in _NON_TERMINAL_BATCH_STATES},
    "cancel": {state: BatchState.CANCELLED for state in _NON_TERMINAL_BATCH_STATES},
}

REQUEST_EDGES: dict[str, dict[RequestState, RequestState]] = {
    "begin_processing": {RequestState.PENDING: RequestState.PROCESSING},
    "complete_processing": {RequestState.PROCESSING: RequestState.PROCESSED},
    "begin_delivery": {RequestState.PROCESSED: RequestState.DELIVERING},
    "complete_delivery": {RequestState.DELIVERING: RequestState.DELIVERED},
    "schedule_redelivery": {RequestState.DELIVERING: RequestState.PROCESSED},
    "mark_delivery_failed": {RequestState.DELIVERING: RequestState.DELIVERY_FAILED},
    "mark_failed": {
        RequestState.PENDING: RequestState.FAILED,
        RequestState.PROCESSING: RequestState.FAILED,
        RequestState.PROCESSED: RequestState.FAILED,
    },
    "mark_expired": {
        RequestState.PENDING: RequestState.EXPIRED,
        RequestState.PROCESSING: RequestState.EXPIRED,
    },
    "cancel": {
        RequestState.PENDING: RequestState.CANCELLED,
        RequestState.PROCESSING: RequestState.CANCELLED,
        RequestState.PROCESSED: RequestState.CANCELLED,
        RequestState.DELIVERING: RequestState.CANCELLED,
    },
    "reset_to_pending": {RequestState.PROCESSING: RequestState.PENDING},
    "retry_delivery": {
        RequestState.PROCESSED: RequestState.PROCESSED,
        RequestState.DELIVERED: RequestState.PROCESSED,
        RequestState.DELIVERY_FAILED: RequestState.PROCESSED,
    },
}


def _edges_for(entity: Batch | Request) -> tuple[str, dict[str, dict]]:
    if isinstance(entity, Batch):
        return "batch", BATCH_EDGES
    if isinstance(entity, Request):
        return "request", REQUEST_EDGES
    raise TypeError(f"no state machine for {type(entity).__name__}")


def target_state(entity: Batch | Request, event: str) -> BatchState | RequestState | None:
    """
    Return the state ``event`` would move ``entity`` to, or ``None`` when the
    edge does not exist.
    """
    _, edges = _edges_for(entity)
    return edges.get(event, {}).get(entity.state)


def can_fire(entity: Batch | Request, event: str) -> bool:
    return target_state(entity, event) is not None


def _audit_row(
    session: "Session",
    entity: Batch | Request,
    *,
    event: str,
    from_state: str | None,
    to_state: str,
) -> BatchTransition | RequestTransition:
    now = utcnow()
    # many-to-one assignment links rows to entities that have no id yet
    if isinstance(entity, Batch):
        row = BatchTransition(
            batch=entity, event=event, from_state=from_state, to_state=to_state, transitioned_at=now
        )
    else:
        row = RequestTransition(
            request=entity,
            event=event,
            from_state=from_state,
            to_state=to_state,
            transitioned_at=now,
        )
    session.add(row)
    return row


def initialize(session: "Session", entity: Entity) -> Entity:
    """
    Add a new entity to the session and record its initial transition.

    Parameters
    ----------
    session : Session
        Session owning the unit of work.
    entity : Batch | Request
        Freshly constructed entity; its ``state`` defaults to the initial state.

    Returns
    -------
    Batch | Request
        The same entity.
    """
    kind, _ = _edges_for(entity)
    if entity.state is None:
        entity.state = BatchState.BUILDING if kind == "batch" else RequestState.PENDING
    session.add(entity)
    _audit_row(session, entity, event="create", from_state=None, to_state=str(entity.state))
    return entity


def fire(session: "Session", entity: Entity, event: str, **changes: t.Any) -> Entity:
    """
    Apply ``event`` to ``entity``.

    The entity is left untouched when the edge does not exist.

    Parameters
    ----------
    session : Session
        Session owning the unit of work. The caller commits.
    entity : Batch | Request
        Entity to transition.
    event : str
        Event name from the transition table.
    **changes : typing.Any
        Attribute updates applied together with the state change.

    Returns
    -------
    Batch | Request
        The transitioned entity.

    Raises
    ------
    InvalidTransition
        If ``event`` has no edge from the entity's current state.
    """
    kind, _ = _edges_for(entity)
    to_state = target_state(entity, event)
    if to_state is None:
        raise InvalidTransition(
            entity=kind, entity_id=entity.id, event=event, state=str(entity.state)
        )
    for name in changes:
        if not hasattr(entity, name) or name in ("id", "state"):
            raise AttributeError(f"{kind} has no mutable attribute '{name}'")

    from_state = str(entity.state)
    for name, value in changes.items():
        setattr(entity, name, value)
    entity.state = to_state
    session.add(entity)
    _audit_row(session, entity, event=event, from_state=from_state, to_state=str(to_state))
    log.debug(
        event="State transition",
        entity=kind,
        entity_id=entity.id,
        transition=event,
        from_state=from_state,
        to_state=str(to_state),
    )
    return entity


def fire_all(
    session: "Session", entities: t.Iterable[Entity], event: str, **changes: t.Any
) -> int:
    """
    Fire ``event`` on every entity that has the edge, skipping the others.

    Returns
    -------
    int
        Number of entities transitioned.
    """
    fired = 0
    for entity in entities:
        if can_fire(entity, event):
            fire(session, entity, event, **changes)
            fired += 1
    return fired
