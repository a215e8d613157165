import typing as t
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from batchrelay.status import BatchState, DeliveryOutcome, JobState, RequestState


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation stored in every DateTime column."""
    return datetime.now(UTC).replace(tzinfo=None)


def _state_enum(enum_cls: type) -> Enum:
    return Enum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [member.value for member in members],
    )


class Base(DeclarativeBase):
    pass


class Batch(Base):
    __tablename__ = "batches"
    __table_args__ = (
        # exactly one batch open for admission per (endpoint, model)
        Index(
            "uq_batches_building_endpoint_model",
            "endpoint",
            "model",
            unique=True,
            sqlite_where=text("state = 'building'"),
            postgresql_where=text("state = 'building'"),
        ),
        Index("ix_batches_model_state", "model", "state"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    endpoint: Mapped[str] = mapped_column(String, nullable=False)
    model: Mapped[str] = mapped_column(String, nullable=False)
    state: Mapped[BatchState] = mapped_column(
        _state_enum(BatchState), nullable=False, default=BatchState.BUILDING
    )
    remote_job_id: Mapped[str | None] = mapped_column(String, nullable=True)
    remote_input_file_id: Mapped[str | None] = mapped_column(String, nullable=True)
    remote_output_file_id: Mapped[str | None] = mapped_column(String, nullable=True)
    remote_error_file_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    estimated_token_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    input_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    output_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    capacity_retry_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    capacity_retry_next_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    capacity_wait_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    waiting_since_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    remote_status_last_checked_at: Mapped[datetime | None] = mapped_column(
        DateTime, nullable=True
    )
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    opened_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    requests: Mapped[list["Request"]] = relationship(
        back_populates="batch", cascade="all", passive_deletes=True
    )
    transitions: Mapped[list["BatchTransition"]] = relationship(
        back_populates="batch",
        cascade="all",
        passive_deletes=True,
        order_by="BatchTransition.id",
    )

    def __repr__(self) -> str:
        return f"<Batch id={self.id} {self.endpoint}:{self.model} state={self.state}>"


class Request(Base):
    __tablename__ = "requests"
    __table_args__ = (Index("ix_requests_batch_state", "batch_id", "state"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[int] = mapped_column(
        ForeignKey("batches.id", ondelete="CASCADE"), nullable=False, index=True
    )
    custom_id: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    endpoint: Mapped[str] = mapped_column(String, nullable=False)
    model: Mapped[str] = mapped_column(String, nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    payload_size: Mapped[int] = mapped_column(Integer, nullable=False)
    estimated_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    state: Mapped[RequestState] = mapped_column(
        _state_enum(RequestState), nullable=False, default=RequestState.PENDING
    )
    response_payload: Mapped[dict[str, t.Any] | None] = mapped_column(JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivery_config: Mapped[dict[str, t.Any]] = mapped_column(JSON, nullable=False)
    delivery_attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tag: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    batch: Mapped[Batch] = relationship(back_populates="requests")
    transitions: Mapped[list["RequestTransition"]] = relationship(
        back_populates="request",
        cascade="all",
        passive_deletes=True,
        order_by="RequestTransition.id",
    )
    delivery_attempts: Mapped[list["DeliveryAttempt"]] = relationship(
        back_populates="request",
        cascade="all",
        passive_deletes=True,
        order_by="DeliveryAttempt.attempt_number",
    )

    def __repr__(self) -> str:
        return f"<Request id={self.id} custom_id={self.custom_id} state={self.state}>"


class BatchTransition(Base):
    __tablename__ = "batch_transitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[int] = mapped_column(
        ForeignKey("batches.id", ondelete="CASCADE"), nullable=False, index=True
    )
    event: Mapped[str] = mapped_column(String, nullable=False)
    from_state: Mapped[str | None] = mapped_column(String, nullable=True)
    to_state: Mapped[str] = mapped_column(String, nullable=False)
    transitioned_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    batch: Mapped[Batch] = relationship(back_populates="transitions")


class RequestTransition(Base):
    __tablename__ = "request_transitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_id: Mapped[int] = mapped_column(
        ForeignKey("requests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    event: Mapped[str] = mapped_column(String, nullable=False)
    from_state: Mapped[str | None] = mapped_column(String, nullable=True)
    to_state: Mapped[str] = mapped_column(String, nullable=False)
    transitioned_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    request: Mapped[Request] = relationship(back_populates="transitions")


class DeliveryAttempt(Base):
    __tablename__ = "request_delivery_attempts"
    __table_args__ = (
        UniqueConstraint("request_id", "attempt_number", name="uq_delivery_attempt_number"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_id: Mapped[int] = mapped_column(
        ForeignKey("requests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    outcome: Mapped[DeliveryOutcome] = mapped_column(_state_enum(DeliveryOutcome), nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivery_config: Mapped[dict[str, t.Any]] = mapped_column(JSON, nullable=False)
    attempted_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    request: Mapped[Request] = relationship(back_populates="delivery_attempts")


class ModelCapacityOverride(Base):
    __tablename__ = "model_capacity_overrides"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    model_prefix: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    token_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )


class Setting(Base):
    __tablename__ = "settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    overrides_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )


class Job(Base):
    __tablename__ = "jobs"
    __table_args__ = (
        Index("ix_jobs_state_scheduled_at", "state", "scheduled_at"),
        Index("ix_jobs_kind_batch", "kind", "batch_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String, nullable=False)
    batch_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    request_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payload: Mapped[str | None] = mapped_column(String, nullable=True)
    state: Mapped[JobState] = mapped_column(
        _state_enum(JobState), nullable=False, default=JobState.AVAILABLE
    )
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    leased_until: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<Job id={self.id} kind={self.kind} state={self.state} attempt={self.attempt}>"
