"""
Batchrelay runtime exceptions.

Client errors (``AdmissionError`` subclasses) are reported to callers and
never retried. ``ProviderTransientError`` is retried with backoff,
``ProviderCapacityError`` is turned into a capacity wait and everything else
under ``ProviderError`` is final for the current stage run.
"""

from __future__ import annotations

import typing as t

if t.TYPE_CHECKING:
    from batchrelay.status import DeliveryOutcome


class BatchRelayError(Exception):
    """Base class for every error raised by batchrelay."""


class InvalidTransition(BatchRelayError):
    """
    Raised when an event has no edge from the entity's current state.

    Parameters
    ----------
    entity : str
        Entity type name (``"batch"`` or ``"request"``).
    entity_id : int | None
        Entity primary key.
    event : str
        Rejected event name.
    state : str
        Current state of the entity.
    """

    code = "invalid_transition"

    def __init__(self, *, entity: str, entity_id: int | None, event: str, state: str) -> None:
        self.entity = entity
        self.entity_id = entity_id
        self.event = event
        self.state = state
        super().__init__(f"{entity} {entity_id}: no '{event}' transition from state '{state}'")


class AdmissionError(BatchRelayError):
    """A work item was refused at admission time."""

    code = "admission_error"


class CustomIdAlreadyTaken(AdmissionError):
    code = "custom_id_already_taken"

    def __init__(self, custom_id: str) -> None:
        self.custom_id = custom_id
        super().__init__(f"custom_id '{custom_id}' is already taken")


class InvalidDeliveryConfig(AdmissionError):
    code = "invalid_delivery_config"


class UnsupportedEndpoint(AdmissionError):
    code = "unsupported_endpoint"

    def __init__(self, endpoint: str) -> None:
        self.endpoint = endpoint
        super().__init__(f"endpoint '{endpoint}' is not supported")


class InvalidPayload(AdmissionError):
    code = "invalid_payload"


class PayloadTooLarge(AdmissionError):
    code = "payload_too_large"


class ProviderError(BatchRelayError):
    """
    Error returned by the provider API.

    Parameters
    ----------
    message : str
        Human readable error message.
    status_code : int | None
        HTTP status code, ``None`` for transport errors.
    error_code : str | None
        Provider error code, e.g. ``"token_limit_exceeded"``.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        error_code: str | None = None,
    ) -> None:
        self.status_code = status_code
        self.error_code = error_code
        super().__init__(message)


class ProviderTransientError(ProviderError):
    """5xx, timeouts and connection errors."""


class ProviderClientError(ProviderError):
    """4xx errors other than the dedicated subclasses."""


class ProviderAuthError(ProviderClientError):
    """401 from the provider: invalid long-term credential."""


class ProviderNotFoundError(ProviderClientError):
    """404 from the provider."""


class ProviderCapacityError(ProviderError):
    """The provider refused the work for token or rate limit reasons."""


class DeliveryError(BatchRelayError):
    """
    A result could not be handed to its sink.

    Parameters
    ----------
    outcome : DeliveryOutcome
        Classified failure.
    message : str
        Detail recorded on the delivery attempt.
    """

    def __init__(self, outcome: "DeliveryOutcome", message: str) -> None:
        self.outcome = outcome
        super().__init__(message)
