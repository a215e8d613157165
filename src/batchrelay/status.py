from enum import StrEnum


class BatchState(StrEnum):
    BUILDING = "building"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    WAITING_FOR_CAPACITY = "waiting_for_capacity"
    POLLING = "polling"
    DOWNLOADING = "downloading"
    DELIVERING = "delivering"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class RequestState(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    DELIVERING = "delivering"
    DELIVERED = "delivered"
    DELIVERY_FAILED = "delivery_failed"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class DeliveryOutcome(StrEnum):
    SUCCESS = "success"
    HTTP_STATUS_NOT_2XX = "http_status_not_2xx"
    TIMEOUT = "timeout"
    CONNECTION_ERROR = "connection_error"
    QUEUE_NOT_FOUND = "queue_not_found"
    EXCHANGE_NOT_FOUND = "exchange_not_found"
    RABBITMQ_NOT_CONFIGURED = "rabbitmq_not_configured"
    OTHER = "other"


class JobState(StrEnum):
    AVAILABLE = "available"
    EXECUTING = "executing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISCARDED = "discarded"


BATCH_TERMINAL_STATES = frozenset(
    {BatchState.COMPLETED, BatchState.FAILED, BatchState.EXPIRED, BatchState.CANCELLED}
)
REQUEST_TERMINAL_STATES = frozenset(
    {
        RequestState.DELIVERED,
        RequestState.DELIVERY_FAILED,
        RequestState.FAILED,
        RequestState.EXPIRED,
        RequestState.CANCELLED,
    }
)
# Batches holding provider queue headroom for their model
ACTIVE_RESERVATION_STATES = frozenset(
    {BatchState.POLLING, BatchState.DOWNLOADING, BatchState.DELIVERING}
)
