import typing as t
from datetime import UTC, datetime

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

# Error codes meaning the provider queue for the model is full
CAPACITY_ERROR_CODES = frozenset({"token_limit_exceeded"})


def epoch_to_datetime(value: int | float | None) -> datetime | None:
    """Convert a provider epoch timestamp to a naive UTC datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=UTC).replace(tzinfo=None)


class ProviderFile(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    bytes: int | None = None
    filename: str | None = None
    purpose: str | None = None
    expires_at: int | None = None

    @property
    def expires_at_datetime(self) -> datetime | None:
        return epoch_to_datetime(self.expires_at)


class ProviderBatchError(BaseModel):
    model_config = ConfigDict(extra="allow")

    code: str | None = None
    message: str | None = None
    line: int | None = None
    param: str | None = None


class ProviderRequestCounts(BaseModel):
    total: int = 0
    completed: int = 0
    failed: int = 0


class ProviderBatch(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    status: str = "validating"
    endpoint: str | None = None
    input_file_id: str | None = None
    output_file_id: str | None = Field(
        default=None, validation_alias=AliasChoices("output_file_id", "output_file")
    )
    error_file_id: str | None = Field(
        default=None, validation_alias=AliasChoices("error_file_id", "error_file")
    )
    errors: list[ProviderBatchError] = Field(default_factory=list)
    request_counts: ProviderRequestCounts | None = None
    usage: dict[str, t.Any] | None = None
    expires_at: int | None = None

    @field_validator("errors", mode="before")
    @classmethod
    def unwrap_error_list(cls, value: t.Any) -> t.Any:
        # the API wraps errors as {"object": "list", "data": [...]}
        if value is None:
            return []
        if isinstance(value, dict):
            return value.get("data") or []
        return value

    @property
    def error_codes(self) -> set[str]:
        return {error.code for error in self.errors if error.code}

    @property
    def is_capacity_failure(self) -> bool:
        return self.status == "failed" and bool(self.error_codes & CAPACITY_ERROR_CODES)

    @property
    def error_summary(self) -> str | None:
        if not self.errors:
            return None
        return "; ".join(
            f"{error.code or 'error'}: {error.message or ''}".strip() for error in self.errors
        )

    @property
    def input_tokens(self) -> int | None:
        return (self.usage or {}).get("input_tokens")

    @property
    def output_tokens(self) -> int | None:
        return (self.usage or {}).get("output_tokens")
