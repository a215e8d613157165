"""
Transport-agnostic entry point for submitted work items.

HTTP handlers and queue consumers call ``Ingestor.submit`` with the decoded
message and translate the returned ``IngestionResponse`` for their caller.
"""

from __future__ import annotations

import typing as t
from dataclasses import dataclass

import structlog
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, model_validator

from batchrelay.aggregator import AdmissionItem
from batchrelay.exceptions import AdmissionError, CustomIdAlreadyTaken

if t.TYPE_CHECKING:
    from batchrelay.aggregator import Aggregator

log = structlog.get_logger(__name__)


class SubmittedItem(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    custom_id: str = Field(min_length=1)
    endpoint: str = Field(validation_alias=AliasChoices("endpoint", "url"))
    model: str = Field(min_length=1)
    payload: dict[str, t.Any] = Field(validation_alias=AliasChoices("payload", "body"))
    delivery_config: dict[str, t.Any]
    tag: str | None = None

    @model_validator(mode="before")
    @classmethod
    def model_from_payload(cls, data: t.Any) -> t.Any:
        # callers may only name the model inside the request body
        if isinstance(data, dict) and not data.get("model"):
            body = data.get("payload", data.get("body"))
            if isinstance(body, dict) and body.get("model"):
                data = {**data, "model": body["model"]}
        return data

    def to_admission_item(self) -> AdmissionItem:
        return AdmissionItem(
            custom_id=self.custom_id,
            endpoint=self.endpoint,
            model=self.model,
            payload=self.payload,
            delivery_config=self.delivery_config,
            tag=self.tag,
        )


@dataclass(frozen=True)
class IngestionResponse:
    status_code: int
    body: dict[str, t.Any]


def _validation_details(error: ValidationError) -> list[dict[str, t.Any]]:
    return [
        {"loc": ".".join(str(part) for part in item["loc"]), "msg": item["msg"]}
        for item in error.errors(include_url=False)
    ]


class Ingestor:
    """
    Validate a submitted item, admit it and map the outcome to a status code.

    Parameters
    ----------
    aggregator : Aggregator
        Receives validated items.
    """

    def __init__(self, aggregator: "Aggregator") -> None:
        self.aggregator = aggregator

    async def submit(self, message: t.Any) -> IngestionResponse:
        """
        Admit one submitted work item.

        Parameters
        ----------
        message : typing.Any
            Decoded JSON message.

        Returns
        -------
        IngestionResponse
            ``202`` with the ``custom_id`` on success, ``409`` for a duplicate
            ``custom_id``, ``422`` for invalid input and ``500`` with a generic
            body for anything else.
        """
        try:
            item = SubmittedItem.model_validate(message)
        except ValidationError as e:
            return IngestionResponse(
                status_code=422,
                body={"error": "invalid_request", "details": _validation_details(e)},
            )

        try:
            await self.aggregator.admit(item.to_admission_item())
        except CustomIdAlreadyTaken as e:
            return IngestionResponse(
                status_code=409, body={"error": e.code, "custom_id": item.custom_id}
            )
        except AdmissionError as e:
            log.info(event="Rejected submission", custom_id=item.custom_id, error=str(e))
            return IngestionResponse(status_code=422, body={"error": e.code, "message": str(e)})
        except Exception:
            log.exception(event="Submission failed", custom_id=item.custom_id)
            return IngestionResponse(status_code=500, body={"error": "internal error"})
        return IngestionResponse(status_code=202, body={"custom_id": item.custom_id})
