"""
At-least-once delivery of finished requests.
"""

from __future__ import annotations

import asyncio
import typing as t
from datetime import datetime, timedelta

import structlog
from sqlalchemy.exc import IntegrityError

from batchrelay import state_machine
from batchrelay.db import crud
from batchrelay.db.models import DeliveryAttempt, Request, utcnow
from batchrelay.delivery.config import RabbitMQDelivery, WebhookDelivery, parse_delivery_config
from batchrelay.exceptions import DeliveryError, InvalidDeliveryConfig
from batchrelay.jobs.queue import JobKind, retry_delay
from batchrelay.status import DeliveryOutcome, RequestState

if t.TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from batchrelay.db.session import Database
    from batchrelay.delivery.sinks import RabbitMQSink, WebhookSink
    from batchrelay.jobs.queue import JobQueue
    from batchrelay.settings import Settings

log = structlog.get_logger(__name__)


def result_message(request: Request) -> dict[str, t.Any]:
    """Body handed to the sink for ``request``."""
    return {
        "custom_id": request.custom_id,
        "state": str(request.state),
        "response_payload": request.response_payload,
        "error_message": request.error_message,
        "tag": request.tag,
    }


class Deliverer:
    """
    Send processed requests to their configured sink and track attempts.

    Parameters
    ----------
    database : Database
        Persistence.
    settings : Settings
        Retry policy.
    job_queue : JobQueue
        Receives delayed redelivery jobs.
    webhook_sink : WebhookSink
        Sink for webhook configs.
    rabbitmq_sink : RabbitMQSink
        Sink for RabbitMQ configs.
    """

    def __init__(
        self,
        *,
        database: "Database",
        settings: "Settings",
        job_queue: "JobQueue",
        webhook_sink: "WebhookSink",
        rabbitmq_sink: "RabbitMQSink",
    ) -> None:
        self.database = database
        self.settings = settings
        self.job_queue = job_queue
        self.webhook_sink = webhook_sink
        self.rabbitmq_sink = rabbitmq_sink
        self._locks: dict[int, asyncio.Lock] = {}
        self._lock_users: dict[int, int] = {}

    def _acquire_lock(self, request_id: int) -> asyncio.Lock:
        lock = self._locks.get(request_id)
        if lock is None:
            lock = self._locks[request_id] = asyncio.Lock()
        self._lock_users[request_id] = self._lock_users.get(request_id, 0) + 1
        return lock

    def _release_lock(self, request_id: int) -> None:
        users = self._lock_users[request_id] - 1
        if users:
            self._lock_users[request_id] = users
        else:
            # last holder or waiter gone
            del self._lock_users[request_id]
            del self._locks[request_id]

    def redelivery_delay(self, attempt_number: int) -> timedelta:
        return retry_delay(
            attempt_number,
            base_seconds=self.settings.delivery_backoff_base_seconds,
            max_seconds=self.settings.delivery_backoff_max_seconds,
        )

    async def deliver(self, request_id: int) -> DeliveryOutcome | None:
        """
        Deliver one processed request.

        Parameters
        ----------
        request_id : int
            Request to deliver.

        Returns
        -------
        DeliveryOutcome | None
            Outcome of the attempt, ``None`` when the request was not
            ``processed`` and nothing was sent.
        """
        lock = self._acquire_lock(request_id)
        try:
            async with lock:
                return await self._deliver_locked(request_id)
        finally:
            self._release_lock(request_id)

    async def _deliver_locked(self, request_id: int) -> DeliveryOutcome | None:
        with self.database.session() as session:
            request = crud.get_request(session, request_id, for_update=True)
            if request is None or request.state != RequestState.PROCESSED:
                log.debug(
                    event="Skipped delivery",
                    request_id=request_id,
                    state=None if request is None else str(request.state),
                )
                return None
            message = result_message(request)
            state_machine.fire(session, request, "begin_delivery")
            session.commit()
            config_snapshot = dict(request.delivery_config)
            custom_id = request.custom_id

        try:
            outcome, error = await self._send(config_snapshot, message)
        except BaseException:
            # e.g. worker shutdown cancelled the send
            self._hand_back(request_id)
            raise
        log.info(
            event="Delivery attempt finished",
            request_id=request_id,
            custom_id=custom_id,
            outcome=str(outcome),
            error=error,
        )
        return self._record(request_id, outcome=outcome, error=error, config_snapshot=config_snapshot)

    async def _send(
        self, config_snapshot: dict[str, t.Any], message: dict[str, t.Any]
    ) -> tuple[DeliveryOutcome, str | None]:
        try:
            config = parse_delivery_config(config_snapshot)
            if isinstance(config, WebhookDelivery):
                await self.webhook_sink.send(config, message)
            elif isinstance(config, RabbitMQDelivery):
                await self.rabbitmq_sink.send(config, message)
        except DeliveryError as e:
            return e.outcome, str(e)
        except InvalidDeliveryConfig as e:
            return DeliveryOutcome.OTHER, str(e)
        except Exception as e:
            log.exception(event="Unexpected delivery error")
            return DeliveryOutcome.OTHER, repr(e)
        return DeliveryOutcome.SUCCESS, None

    def _record(
        self,
        request_id: int,
        *,
        outcome: DeliveryOutcome,
        error: str | None,
        config_snapshot: dict[str, t.Any],
    ) -> DeliveryOutcome:
        for _ in range(2):
            with self.database.session() as session:
                request = crud.get_request(session, request_id, for_update=True)
                if request is None:
                    log.warning(event="Request vanished during delivery", request_id=request_id)
                    return outcome
                attempt_number = request.delivery_attempt_count + 1
                request.delivery_attempt_count = attempt_number
                session.add(
                    DeliveryAttempt(
                        request_id=request.id,
                        attempt_number=attempt_number,
                        outcome=outcome,
                        error_message=error,
                        delivery_config=config_snapshot,
                        attempted_at=utcnow(),
                    )
                )
                self._transition_after_attempt(
                    session, request, outcome=outcome, error=error, attempt_number=attempt_number
                )
                try:
                    crud.finish_batch_if_delivered(session, request.batch_id)
                    session.commit()
                except IntegrityError:
                    # another writer took this attempt number, read the counter again
                    session.rollback()
                    log.warning(event="Delivery attempt number collision", request_id=request_id)
                    continue
                return outcome
        raise RuntimeError(f"could not record delivery attempt for request {request_id}")

    def _transition_after_attempt(
        self,
        session: "Session",
        request: Request,
        *,
        outcome: DeliveryOutcome,
        error: str | None,
        attempt_number: int,
    ) -> None:
        if request.state != RequestState.DELIVERING:
            # cancelled while the sink call was in flight
            log.info(
                event="Request left delivering during attempt",
                request_id=request.id,
                state=str(request.state),
            )
            return
        if outcome == DeliveryOutcome.SUCCESS:
            state_machine.fire(session, request, "complete_delivery", error_message=None)
            return
        retries_left = attempt_number < self.settings.delivery_max_attempts
        if not self.settings.delivery_retry_enabled or not retries_left:
            state_machine.fire(session, request, "mark_delivery_failed", error_message=error)
            log.warning(
                event="Delivery failed permanently",
                request_id=request.id,
                custom_id=request.custom_id,
                attempts=attempt_number,
            )
            return
        delay = self.redelivery_delay(attempt_number)
        state_machine.fire(session, request, "schedule_redelivery")
        self.job_queue.enqueue(
            session, JobKind.DELIVER, batch_id=request.batch_id, request_id=request.id, delay=delay
        )
        log.info(
            event="Scheduled redelivery",
            request_id=request.id,
            attempt_number=attempt_number,
            delay_seconds=round(delay.total_seconds(), 1),
        )

    def _requeue(self, session: "Session", request: Request) -> None:
        state_machine.fire(session, request, "schedule_redelivery")
        self.job_queue.enqueue(
            session, JobKind.DELIVER, batch_id=request.batch_id, request_id=request.id
        )

    def _hand_back(self, request_id: int) -> None:
        with self.database.session() as session:
            request = crud.get_request(session, request_id, for_update=True)
            if request is None or request.state != RequestState.DELIVERING:
                return
            self._requeue(session, request)
            session.commit()
        log.warning(event="Delivery interrupted, queued again", request_id=request_id)

    def release_stalled(self, session: "Session", *, older_than: datetime) -> int:
        """
        Put ``delivering`` requests whose worker vanished back to ``processed``
        and queue another attempt. The caller commits.

        Parameters
        ----------
        session : Session
            Unit of work of the caller.
        older_than : datetime
            Only requests last changed before this instant are released.

        Returns
        -------
        int
            Number of released requests.
        """
        stalled = crud.stalled_deliveries(session, older_than=older_than, job_kind=JobKind.DELIVER)
        for request in stalled:
            self._requeue(session, request)
            log.warning(
                event="Released stalled delivery",
                request_id=request.id,
                custom_id=request.custom_id,
            )
        return len(stalled)

    def enqueue_pending(self, session: "Session", batch_id: int) -> int:
        """Queue delivery of every processed request of ``batch_id``; the caller commits."""
        ids = crud.request_ids_in_state(session, batch_id, [RequestState.PROCESSED])
        for request_id in ids:
            self.job_queue.enqueue(session, JobKind.DELIVER, batch_id=batch_id, request_id=request_id)
        return len(ids)

    def redeliver(self, request_id: int) -> bool:
        """
        Operator redelivery of one request.

        Returns
        -------
        bool
            Whether a delivery was queued.
        """
        with self.database.session() as session:
            request = crud.get_request(session, request_id, for_update=True)
            if request is None or not state_machine.can_fire(request, "retry_delivery"):
                return False
            state_machine.fire(session, request, "retry_delivery", error_message=None)
            self.job_queue.enqueue(
                session, JobKind.DELIVER, batch_id=request.batch_id, request_id=request.id
            )
            session.commit()
        log.info(event="Queued redelivery", request_id=request_id)
        return True

    def redeliver_failed(self, batch_id: int) -> int:
        """Redeliver every ``delivery_failed`` request of a batch."""
        with self.database.session() as session:
            requests = crud.requests_in_state(session, batch_id, [RequestState.DELIVERY_FAILED])
            for request in requests:
                state_machine.fire(session, request, "retry_delivery", error_message=None)
                self.job_queue.enqueue(
                    session, JobKind.DELIVER, batch_id=batch_id, request_id=request.id
                )
            session.commit()
        log.info(event="Queued batch redelivery", batch_id=batch_id, count=len(requests))
        return len(requests)
