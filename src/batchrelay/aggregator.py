"""
Admission of work items into open batches.

One ``BatchBuilder`` task per ``(endpoint, model)`` owns the batch currently
open for admission and serialises every change to it. Builders are created
on demand, hand full or aged batches to the upload stage and stop once their
batch is closed and nothing is waiting for them.
"""

from __future__ import annotations

import asyncio
import json
import typing as t
from dataclasses import dataclass, field
from datetime import datetime

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from batchrelay import state_machine
from batchrelay.db.models import Batch, Request, utcnow
from batchrelay.delivery.config import RabbitMQDelivery, WebhookDelivery, parse_delivery_config
from batchrelay.exceptions import (
    CustomIdAlreadyTaken,
    InvalidPayload,
    PayloadTooLarge,
    UnsupportedEndpoint,
)
from batchrelay.jobs.queue import JobKind
from batchrelay.pipeline.files import line_size
from batchrelay.status import BatchState, RequestState

if t.TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from batchrelay.capacity.estimator import TokenEstimator
    from batchrelay.capacity.limits import RateLimits
    from batchrelay.db.session import Database
    from batchrelay.jobs.queue import JobQueue
    from batchrelay.settings import Settings

log = structlog.get_logger(__name__)

BuilderKey = tuple[str, str]


@dataclass(frozen=True)
class AdmissionItem:
    custom_id: str
    endpoint: str
    model: str
    payload: dict[str, t.Any]
    delivery_config: WebhookDelivery | RabbitMQDelivery | dict[str, t.Any]
    tag: str | None = None


@dataclass
class _PreparedItem:
    item: AdmissionItem
    payload_text: str
    payload_size: int
    estimated_tokens: int
    delivery_config: WebhookDelivery | RabbitMQDelivery


@dataclass
class _Command:
    kind: t.Literal["admit", "readmit", "close"]
    future: asyncio.Future
    item: _PreparedItem | None = None
    request_ids: list[int] = field(default_factory=list)
    drop_empty: bool = False


def close_batch(session: "Session", batch: Batch, *, job_queue: "JobQueue", reason: str) -> None:
    """Close ``batch`` for admission and queue its upload; the caller commits."""
    state_machine.fire(session, batch, "start_upload")
    job_queue.enqueue(session, JobKind.UPLOAD_BATCH, batch_id=batch.id)
    log.info(
        event="Closed batch for admission",
        batch_id=batch.id,
        endpoint=batch.endpoint,
        model=batch.model,
        reason=reason,
        request_count=batch.request_count,
        size_bytes=batch.size_bytes,
        estimated_token_total=batch.estimated_token_total,
    )


class BatchBuilder:
    """
    Serialised owner of the open batch for one ``(endpoint, model)``.

    Parameters
    ----------
    aggregator : Aggregator
        Owning aggregator, provides settings and collaborators.
    key : BuilderKey
        ``(endpoint, model)`` handled by this builder.
    """

    def __init__(self, aggregator: "Aggregator", key: BuilderKey) -> None:
        self.aggregator = aggregator
        self.key = key
        self.endpoint, self.model = key
        self.queue: asyncio.Queue[_Command] = asyncio.Queue()
        self.task: asyncio.Task | None = None
        self._deadline: datetime | None = None

    @property
    def settings(self) -> "Settings":
        return self.aggregator.settings

    def start(self) -> None:
        self.task = asyncio.create_task(
            self.run(), name=f"batch_builder_{self.endpoint}_{self.model}"
        )

    async def run(self) -> None:
        log.debug(event="Batch builder started", endpoint=self.endpoint, model=self.model)
        with self.aggregator.database.session() as session:
            batch = self._find_open_batch(session)
            if batch is not None:
                self._deadline = batch.opened_at + self.settings.batch_max_age
        while True:
            command = await self._next_command()
            if command is None:
                # the open batch reached its maximum age
                self._close_open_batch(reason="max_age", drop_empty=True)
                if await self.aggregator._release(self):
                    return
                continue
            self._handle(command)
            if self._deadline is None and await self.aggregator._release(self):
                return

    async def _next_command(self) -> _Command | None:
        if self._deadline is None:
            return await self.queue.get()
        timeout = max((self._deadline - utcnow()).total_seconds(), 0.0)
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except TimeoutError:
            return None

    def _handle(self, command: _Command) -> None:
        if command.future.done():
            return
        try:
            if command.kind == "admit":
                result: t.Any = self._admit(t.cast(_PreparedItem, command.item))
            elif command.kind == "readmit":
                result = self._readmit(command.request_ids)
            else:
                result = self._close_open_batch(reason="forced", drop_empty=command.drop_empty)
        except Exception as e:
            command.future.set_exception(e)
        else:
            command.future.set_result(result)

    def _find_open_batch(self, session: "Session") -> Batch | None:
        return session.execute(
            select(Batch).where(
                Batch.endpoint == self.endpoint,
                Batch.model == self.model,
                Batch.state == BatchState.BUILDING,
            )
        ).scalar_one_or_none()

    def _open_batch(self, session: "Session") -> Batch:
        batch = self._find_open_batch(session)
        if batch is None:
            batch = Batch(endpoint=self.endpoint, model=self.model, opened_at=utcnow())
            state_machine.initialize(session, batch)
            try:
                session.commit()
            except IntegrityError:
                # another process opened the batch first
                session.rollback()
                batch = self._find_open_batch(session)
                if batch is None:
                    raise
            else:
                log.info(
                    event="Opened batch", batch_id=batch.id, endpoint=self.endpoint, model=self.model
                )
        self._deadline = batch.opened_at + self.settings.batch_max_age
        return batch

    def _overflow_reason(
        self, session: "Session", batch: Batch, *, size: int, tokens: int
    ) -> str | None:
        if batch.request_count >= self.settings.max_requests_per_batch:
            return "max_requests"
        if batch.size_bytes + size > self.settings.max_batch_size_bytes:
            return "max_size_bytes"
        limit = self.aggregator.rate_limits.budget_for(self.model, session=session).limit
        if batch.estimated_token_total + tokens > limit:
            return "token_budget"
        return None

    def _batch_with_room(
        self, session: "Session", *, size: int, tokens: int, custom_id: str, force: bool = False
    ) -> Batch:
        batch = self._open_batch(session)
        reason = self._overflow_reason(session, batch, size=size, tokens=tokens)
        if reason is None:
            return batch
        if batch.request_count > 0:
            close_batch(session, batch, job_queue=self.aggregator.job_queue, reason=reason)
            session.commit()
            batch = self._open_batch(session)
            reason = self._overflow_reason(session, batch, size=size, tokens=tokens)
            if reason is None:
                return batch
        if force:
            log.warning(
                event="Placing oversized request alone in a batch",
                batch_id=batch.id,
                custom_id=custom_id,
                reason=reason,
            )
            return batch
        raise PayloadTooLarge(f"request '{custom_id}' does not fit an empty batch ({reason})")

    def _admit(self, prepared: _PreparedItem) -> Request:
        item = prepared.item
        with self.aggregator.database.session() as session:
            batch = self._batch_with_room(
                session,
                size=prepared.payload_size,
                tokens=prepared.estimated_tokens,
                custom_id=item.custom_id,
            )
            request = Request(
                batch_id=batch.id,
                custom_id=item.custom_id,
                endpoint=item.endpoint,
                model=item.model,
                payload=prepared.payload_text,
                payload_size=prepared.payload_size,
                estimated_tokens=prepared.estimated_tokens,
                delivery_config=prepared.delivery_config.model_dump(exclude_none=True),
                tag=item.tag,
            )
            state_machine.initialize(session, request)
            batch.request_count += 1
            batch.size_bytes += prepared.payload_size
            batch.estimated_token_total += prepared.estimated_tokens
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                if "custom_id" in str(e.orig):
                    log.warning(event="Duplicate custom_id", custom_id=item.custom_id, batch_id=batch.id)
                    raise CustomIdAlreadyTaken(item.custom_id) from e
                raise
            log.debug(
                event="Admitted request",
                batch_id=batch.id,
                custom_id=item.custom_id,
                request_count=batch.request_count,
            )
            return request

    def _readmit(self, request_ids: list[int]) -> list[int]:
        """Move pending requests into the open batch, rotating as it fills."""
        batch_ids: list[int] = []
        with self.aggregator.database.session() as session:
            requests = list(
                session.execute(
                    select(Request).where(Request.id.in_(request_ids)).order_by(Request.id)
                ).scalars()
            )
            for request in requests:
                if request.state != RequestState.PENDING:
                    log.warning(
                        event="Skipped readmission of non-pending request",
                        request_id=request.id,
                        state=str(request.state),
                    )
                    continue
                batch = self._batch_with_room(
                    session,
                    size=request.payload_size,
                    tokens=request.estimated_tokens,
                    custom_id=request.custom_id,
                    force=True,
                )
                previous_batch_id = request.batch_id
                request.batch_id = batch.id
                batch.request_count += 1
                batch.size_bytes += request.payload_size
                batch.estimated_token_total += request.estimated_tokens
                session.commit()
                if batch.id not in batch_ids:
                    batch_ids.append(batch.id)
                log.info(
                    event="Resubmitted request",
                    request_id=request.id,
                    custom_id=request.custom_id,
                    from_batch_id=previous_batch_id,
                    to_batch_id=batch.id,
                )
        return batch_ids

    def _close_open_batch(self, *, reason: str, drop_empty: bool) -> int | None:
        with self.aggregator.database.session() as session:
            batch = self._find_open_batch(session)
            self._deadline = None
            if batch is None:
                return None
            if batch.request_count == 0:
                if drop_empty:
                    session.delete(batch)
                    session.commit()
                    log.info(event="Deleted empty open batch", batch_id=batch.id, reason=reason)
                return None
            close_batch(session, batch, job_queue=self.aggregator.job_queue, reason=reason)
            session.commit()
            return batch.id


class Aggregator:
    """
    Route admissions to the builder of their ``(endpoint, model)``.

    Parameters
    ----------
    database : Database
        Persistence.
    settings : Settings
        Batch limits and supported endpoints.
    estimator : TokenEstimator
        Token estimates for new items.
    rate_limits : RateLimits
        Model token budgets.
    job_queue : JobQueue
        Receives upload jobs for closed batches.
    """

    def __init__(
        self,
        *,
        database: "Database",
        settings: "Settings",
        estimator: "TokenEstimator",
        rate_limits: "RateLimits",
        job_queue: "JobQueue",
    ) -> None:
        self.database = database
        self.settings = settings
        self.estimator = estimator
        self.rate_limits = rate_limits
        self.job_queue = job_queue
        self._builders: dict[BuilderKey, BatchBuilder] = {}
        self._registry_lock = asyncio.Lock()

    @property
    def builder_keys(self) -> list[BuilderKey]:
        return list(self._builders)

    def _prepare(self, item: AdmissionItem) -> _PreparedItem:
        if item.endpoint not in self.settings.supported_endpoints:
            raise UnsupportedEndpoint(item.endpoint)
        if not item.custom_id:
            raise InvalidPayload("custom_id must not be empty")
        delivery_config = parse_delivery_config(item.delivery_config)
        if not isinstance(item.payload, dict):
            raise InvalidPayload("payload must be a JSON object")
        body = dict(item.payload)
        body_model = body.setdefault("model", item.model)
        if body_model != item.model:
            raise InvalidPayload(
                f"payload model '{body_model}' does not match request model '{item.model}'"
            )
        try:
            payload_text = json.dumps(body, separators=(",", ":"), allow_nan=False)
        except (TypeError, ValueError) as e:
            raise InvalidPayload(f"payload is not JSON serialisable: {e}") from e
        size = line_size(custom_id=item.custom_id, endpoint=item.endpoint, payload=payload_text)
        estimate = self.estimator.estimate(item.model, body, endpoint=item.endpoint)
        return _PreparedItem(
            item=item,
            payload_text=payload_text,
            payload_size=size,
            estimated_tokens=estimate.tokens,
            delivery_config=delivery_config,
        )

    async def _send(self, key: BuilderKey, command: _Command) -> t.Any:
        async with self._registry_lock:
            builder = self._builders.get(key)
            if builder is None or builder.task is None or builder.task.done():
                builder = BatchBuilder(self, key)
                self._builders[key] = builder
                builder.start()
                t.cast(asyncio.Task, builder.task).add_done_callback(
                    lambda task, builder=builder: self._on_builder_done(builder, task)
                )
            builder.queue.put_nowait(command)
        return await command.future

    async def _release(self, builder: BatchBuilder) -> bool:
        """Deregister an idle builder; refuse while commands are queued."""
        async with self._registry_lock:
            if not builder.queue.empty():
                return False
            if self._builders.get(builder.key) is builder:
                del self._builders[builder.key]
        log.debug(event="Batch builder stopped", endpoint=builder.endpoint, model=builder.model)
        return True

    def _on_builder_done(self, builder: BatchBuilder, task: asyncio.Task) -> None:
        if self._builders.get(builder.key) is builder:
            del self._builders[builder.key]
        error = None if task.cancelled() else task.exception()
        if error is not None:
            log.error(
                event="Batch builder crashed",
                endpoint=builder.endpoint,
                model=builder.model,
                error=repr(error),
            )
        while not builder.queue.empty():
            command = builder.queue.get_nowait()
            if not command.future.done():
                command.future.set_exception(
                    error or RuntimeError(f"batch builder for {builder.key} stopped")
                )

    async def admit(self, item: AdmissionItem) -> Request:
        """
        Admit one work item into the open batch for its endpoint and model.

        Parameters
        ----------
        item : AdmissionItem
            The item to admit.

        Returns
        -------
        Request
            The stored request, detached from its session.

        Raises
        ------
        AdmissionError
            ``UnsupportedEndpoint``, ``InvalidPayload``, ``PayloadTooLarge``
            or ``CustomIdAlreadyTaken``.
        """
        prepared = self._prepare(item)
        loop = asyncio.get_running_loop()
        command = _Command(kind="admit", future=loop.create_future(), item=prepared)
        return await self._send((item.endpoint, item.model), command)

    async def readmit(self, request_ids: t.Sequence[int]) -> list[int]:
        """
        Move pending requests into the open batch of their key.

        Returns
        -------
        list[int]
            Ids of the batches that received requests.
        """
        with self.database.session() as session:
            rows = session.execute(
                select(Request.id, Request.endpoint, Request.model).where(Request.id.in_(request_ids))
            ).all()
        by_key: dict[BuilderKey, list[int]] = {}
        for request_id, endpoint, model in rows:
            by_key.setdefault((endpoint, model), []).append(request_id)

        batch_ids: list[int] = []
        loop = asyncio.get_running_loop()
        for key, ids in by_key.items():
            command = _Command(kind="readmit", future=loop.create_future(), request_ids=ids)
            batch_ids.extend(await self._send(key, command))
        return batch_ids

    async def close(self, endpoint: str, model: str, *, drop_empty: bool = False) -> int | None:
        """
        Force-close the open batch of ``(endpoint, model)``.

        Parameters
        ----------
        endpoint : str
            Endpoint path.
        model : str
            Model name.
        drop_empty : bool
            Delete the open batch instead when it holds no requests.

        Returns
        -------
        int | None
            Id of the closed batch, ``None`` if nothing was closed.
        """
        loop = asyncio.get_running_loop()
        command = _Command(kind="close", future=loop.create_future(), drop_empty=drop_empty)
        return await self._send((endpoint, model), command)

    async def shutdown(self) -> None:
        """Stop every builder, leaving open batches open."""
        async with self._registry_lock:
            builders = list(self._builders.values())
            self._builders.clear()
        for builder in builders:
            if builder.task is not None and not builder.task.done():
                builder.task.cancel()
        await asyncio.gather(
            *(builder.task for builder in builders if builder.task is not None),
            return_exceptions=True,
        )
        log.info(event="Aggregator shut down", builders=len(builders))
