import typing as t
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator, model_validator

from batchrelay.exceptions import InvalidDeliveryConfig


class WebhookDelivery(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    type: t.Literal["webhook"] = "webhook"
    webhook_url: str

    @field_validator("webhook_url")
    @classmethod
    def check_url(cls, value: str) -> str:
        parsed = urlparse(value)
        host = parsed.hostname or ""
        if parsed.scheme not in ("http", "https") or not host:
            raise ValueError("webhook_url must be a valid HTTP or HTTPS URL")
        if host != "localhost" and "." not in host:
            raise ValueError("webhook_url host must be a domain name or localhost")
        return value


class RabbitMQDelivery(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    type: t.Literal["rabbitmq"] = "rabbitmq"
    rabbitmq_queue: str | None = None
    rabbitmq_exchange: str | None = None
    rabbitmq_routing_key: str | None = None

    @model_validator(mode="after")
    def check_target(self) -> "RabbitMQDelivery":
        if self.rabbitmq_exchange:
            if not self.rabbitmq_routing_key:
                raise ValueError("rabbitmq_routing_key is required with rabbitmq_exchange")
        elif not self.rabbitmq_queue:
            raise ValueError("rabbitmq_queue is required unless rabbitmq_exchange is set")
        return self

    @property
    def exchange(self) -> str:
        return self.rabbitmq_exchange or ""

    @property
    def routing_key(self) -> str:
        # the default exchange routes by queue name
        return self.rabbitmq_routing_key if self.rabbitmq_exchange else t.cast(str, self.rabbitmq_queue)


DeliveryConfig = t.Annotated[WebhookDelivery | RabbitMQDelivery, Field(discriminator="type")]

delivery_config_adapter: TypeAdapter[WebhookDelivery | RabbitMQDelivery] = TypeAdapter(DeliveryConfig)


def parse_delivery_config(raw: t.Any) -> WebhookDelivery | RabbitMQDelivery:
    """
    Validate a caller-supplied delivery config.

    Parameters
    ----------
    raw : typing.Any
        Mapping with a ``type`` of ``"webhook"`` or ``"rabbitmq"``.

    Returns
    -------
    WebhookDelivery | RabbitMQDelivery
        The validated config.

    Raises
    ------
    InvalidDeliveryConfig
        If the config is malformed.
    """
    if isinstance(raw, (WebhookDelivery, RabbitMQDelivery)):
        return raw
    try:
        return delivery_config_adapter.validate_python(raw)
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'delivery_config'}: {error['msg']}"
            for error in e.errors()
        )
        raise InvalidDeliveryConfig(f"invalid delivery_config: {details}") from e
