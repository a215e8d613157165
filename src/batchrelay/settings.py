"""
Runtime configuration loaded from environment variables.
"""

from __future__ import annotations

import os
import typing as t
from datetime import timedelta
from pathlib import Path

from dotenv import load_dotenv
from platformdirs import user_data_dir
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

APP_NAME = "batchrelay"
APP_AUTHOR = "batchrelay"
ENV_PREFIX = "BATCHRELAY_"

_TRUTHY = frozenset({"1", "true", "yes", "on"})

DEFAULT_STATUS_MAP: dict[str, str] = {
    "validating": "polling",
    "in_progress": "polling",
    "finalizing": "polling",
    "completed": "downloading",
    "failed": "failed",
    "expired": "expired",
    "cancelling": "cancelled",
    "cancelled": "cancelled",
}


def _default_data_dir() -> Path:
    return Path(user_data_dir(APP_NAME, APP_AUTHOR))


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    openai_api_key: str = Field(default="", repr=False, description="provider bearer token")
    openai_base_url: str = Field(default="https://api.openai.com", description="provider base URL")
    database_url: str = Field(
        default_factory=lambda: f"sqlite:///{_default_data_dir() / f'{APP_NAME}.db'}",
        description="SQLAlchemy database URL",
    )
    batch_storage_path: Path = Field(
        default_factory=lambda: _default_data_dir() / "batches",
        description="scratch directory for batch files awaiting upload",
    )

    # Batch limits
    max_requests_per_batch: int = Field(default=50_000, gt=0)
    max_batch_size_bytes: int = Field(default=200 * 1024 * 1024, gt=0)
    batch_max_age_seconds: float = Field(default=3600.0, gt=0)
    completion_window: str = "24h"
    supported_endpoints: tuple[str, ...] = (
        "/v1/responses",
        "/v1/chat/completions",
        "/v1/completions",
        "/v1/embeddings",
        "/v1/moderations",
    )

    # Token estimation
    safety_buffer: float = 1.10
    fallback_chars_per_token: float = Field(default=3.5, gt=0)
    max_tokenizer_payload_bytes: int = Field(default=200_000, gt=0)

    # Capacity control
    default_unknown_model_token_limit: int = Field(default=250_000, gt=0)
    capacity_backoff_base_seconds: float = Field(default=300.0, gt=0)
    capacity_backoff_max_seconds: float = Field(default=4800.0, gt=0)

    # Provider HTTP
    http_connect_timeout_seconds: float = 10.0
    http_receive_timeout_seconds: float = 60.0
    http_max_attempts: int = Field(default=4, ge=1)
    status_map: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_STATUS_MAP))

    # Pipeline
    poll_interval_seconds: float = Field(default=60.0, gt=0)
    reconcile_chunk_size: int = Field(default=100, gt=0)
    batch_retention_seconds: float | None = Field(
        default=None,
        description="fallback retention when the provider does not report file expiry",
    )

    # Delivery
    delivery_retry_enabled: bool = True
    delivery_max_attempts: int = Field(default=5, ge=1)
    delivery_backoff_base_seconds: float = Field(default=10.0, gt=0)
    delivery_backoff_max_seconds: float = Field(default=600.0, gt=0)
    delivery_timeout_seconds: float = Field(default=30.0, gt=0)
    rabbitmq_url: str | None = None

    # Job queue
    worker_concurrency: int = Field(default=8, ge=1)
    job_lease_seconds: float = Field(default=300.0, gt=0)
    job_poll_interval_seconds: float = Field(default=1.0, gt=0)
    job_max_attempts: int = Field(default=10, ge=1)
    job_retention_seconds: float = Field(default=86_400.0, gt=0)
    sweep_interval_seconds: float = Field(default=300.0, gt=0)

    log_level: str = "INFO"

    @field_validator("safety_buffer")
    @classmethod
    def check_safety_buffer(cls, value: float) -> float:
        if value < 1.0:
            raise ValueError("safety_buffer must be >= 1.0")
        return value

    @model_validator(mode="after")
    def check_backoff_bounds(self) -> "Settings":
        if self.capacity_backoff_max_seconds < self.capacity_backoff_base_seconds:
            raise ValueError("capacity_backoff_max_seconds must be >= capacity_backoff_base_seconds")
        if self.delivery_backoff_max_seconds < self.delivery_backoff_base_seconds:
            raise ValueError("delivery_backoff_max_seconds must be >= delivery_backoff_base_seconds")
        return self

    @property
    def batch_max_age(self) -> timedelta:
        return timedelta(seconds=self.batch_max_age_seconds)

    @classmethod
    def from_env(cls, env: t.Mapping[str, str] | None = None, **overrides: t.Any) -> "Settings":
        """
        Build settings from environment variables.

        Every field can be set with ``BATCHRELAY_<FIELD_NAME>``; the provider key
        and the RabbitMQ URL also honour the conventional ``OPENAI_API_KEY`` and
        ``RABBITMQ_URL`` names. A ``.env`` file in the working directory is
        loaded first when ``env`` is not given.

        Parameters
        ----------
        env : typing.Mapping[str, str] | None
            Environment to read, defaults to ``os.environ``.
        **overrides : typing.Any
            Explicit values taking precedence over the environment.

        Returns
        -------
        Settings
            Validated settings.
        """
        if env is None:
            load_dotenv()
            env = os.environ

        values: dict[str, t.Any] = {}
        if env.get("OPENAI_API_KEY"):
            values["openai_api_key"] = env["OPENAI_API_KEY"]
        if env.get("RABBITMQ_URL"):
            values["rabbitmq_url"] = env["RABBITMQ_URL"]
        if env.get("DISABLE_DELIVERY_RETRY", "").lower() in _TRUTHY:
            values["delivery_retry_enabled"] = False

        for name, field in cls.model_fields.items():
            raw = env.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is None:
                continue
            values[name] = _coerce(raw=raw, annotation=field.annotation)

        values.update(overrides)
        return cls(**values)


def _coerce(*, raw: str, annotation: t.Any) -> t.Any:
    """
    Convert a raw environment string for fields pydantic cannot parse from text.
    """
    if annotation is bool:
        return raw.strip().lower() in _TRUTHY
    if annotation == tuple[str, ...]:
        return tuple(item.strip() for item in raw.split(",") if item.strip())
    if annotation == dict[str, str]:
        pairs = (item.split("=", 1) for item in raw.split(",") if "=" in item)
        return {key.strip(): value.strip() for key, value in pairs}
    return raw
