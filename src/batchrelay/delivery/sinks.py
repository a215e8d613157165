"""
Delivery sinks: where finished results are handed back to callers.

Every sink raises ``DeliveryError`` carrying a classified outcome when the
hand-off fails; returning normally means the sink accepted the message.
"""

from __future__ import annotations

import asyncio
import json
import time
import typing as t

import aio_pika
import httpx
import structlog
from aio_pika import exceptions as amqp_errors

from batchrelay.exceptions import DeliveryError
from batchrelay.status import DeliveryOutcome

if t.TYPE_CHECKING:
    from batchrelay.delivery.config import RabbitMQDelivery, WebhookDelivery

log = structlog.get_logger(__name__)


class WebhookSink:
    """
    POST results as JSON to the request's webhook URL.

    Parameters
    ----------
    timeout : float
        Per-delivery timeout in seconds.
    transport : httpx.AsyncBaseTransport | None
        Transport override for tests.
    """

    def __init__(self, *, timeout: float, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport, follow_redirects=False)

    async def send(self, config: "WebhookDelivery", message: dict[str, t.Any]) -> None:
        try:
            response = await self._client.post(
                config.webhook_url,
                json=message,
                headers={"Content-Type": "application/json"},
            )
        except httpx.TimeoutException as e:
            raise DeliveryError(DeliveryOutcome.TIMEOUT, f"webhook timed out: {e}") from e
        except httpx.TransportError as e:
            raise DeliveryError(DeliveryOutcome.CONNECTION_ERROR, f"webhook connection failed: {e}") from e
        if not response.is_success:
            raise DeliveryError(
                DeliveryOutcome.HTTP_STATUS_NOT_2XX,
                f"webhook returned HTTP {response.status_code}: {response.text[:500]}",
            )
        log.debug(event="Webhook accepted result", status_code=response.status_code)

    async def aclose(self) -> None:
        await self._client.aclose()


class RabbitMQSink:
    """
    Publish results to a RabbitMQ queue or exchange.

    The connection is opened lazily and reconnects on its own. Messages are
    published with confirms and ``mandatory`` so unroutable messages fail the
    delivery. Destinations found missing are remembered for a while to avoid
    hammering the broker.

    Parameters
    ----------
    url : str | None
        AMQP URL; ``None`` makes every delivery fail as not configured.
    timeout : float
        Publish timeout in seconds.
    failure_ttl : float
        Seconds a missing destination is remembered.
    """

    def __init__(self, url: str | None, *, timeout: float = 10.0, failure_ttl: float = 300.0) -> None:
        self.url = url
        self.timeout = timeout
        self.failure_ttl = failure_ttl
        self._connection: aio_pika.abc.AbstractRobustConnection | None = None
        self._connect_lock = asyncio.Lock()
        self._failed_destinations: dict[tuple[str, str], tuple[DeliveryOutcome, float]] = {}

    async def _get_connection(self) -> aio_pika.abc.AbstractRobustConnection:
        async with self._connect_lock:
            if self._connection is None or self._connection.is_closed:
                self._connection = await aio_pika.connect_robust(t.cast(str, self.url))
                log.info(event="Connected to RabbitMQ")
            return self._connection

    def _cached_failure(self, destination: tuple[str, str]) -> DeliveryOutcome | None:
        cached = self._failed_destinations.get(destination)
        if cached is None:
            return None
        outcome, expires = cached
        if time.monotonic() >= expires:
            del self._failed_destinations[destination]
            return None
        return outcome

    def clear_destination_cache(self) -> None:
        self._failed_destinations.clear()

    async def send(self, config: "RabbitMQDelivery", message: dict[str, t.Any]) -> None:
        if not self.url:
            raise DeliveryError(DeliveryOutcome.RABBITMQ_NOT_CONFIGURED, "RABBITMQ_URL is not configured")
        destination = (config.exchange, config.routing_key)
        cached = self._cached_failure(destination)
        if cached is not None:
            raise DeliveryError(cached, f"destination {destination} recently missing")
        try:
            await asyncio.wait_for(self._publish(config, message), timeout=self.timeout)
        except DeliveryError as e:
            if e.outcome in (DeliveryOutcome.QUEUE_NOT_FOUND, DeliveryOutcome.EXCHANGE_NOT_FOUND):
                self._failed_destinations[destination] = (e.outcome, time.monotonic() + self.failure_ttl)
            raise
        except TimeoutError as e:
            raise DeliveryError(DeliveryOutcome.TIMEOUT, "publish confirm timed out") from e
        except (amqp_errors.AMQPConnectionError, ConnectionError, OSError) as e:
            raise DeliveryError(DeliveryOutcome.CONNECTION_ERROR, f"RabbitMQ connection failed: {e}") from e
        except amqp_errors.AMQPError as e:
            raise DeliveryError(DeliveryOutcome.OTHER, f"RabbitMQ error: {e!r}") from e

    async def _publish(self, config: "RabbitMQDelivery", message: dict[str, t.Any]) -> None:
        connection = await self._get_connection()
        async with connection.channel(publisher_confirms=True, on_return_raises=True) as channel:
            if config.rabbitmq_exchange:
                try:
                    exchange = await channel.get_exchange(config.rabbitmq_exchange, ensure=True)
                except amqp_errors.ChannelNotFoundEntity as e:
                    raise DeliveryError(
                        DeliveryOutcome.EXCHANGE_NOT_FOUND,
                        f"exchange '{config.rabbitmq_exchange}' not found",
                    ) from e
            else:
                try:
                    await channel.declare_queue(config.routing_key, passive=True)
                except amqp_errors.ChannelNotFoundEntity as e:
                    raise DeliveryError(
                        DeliveryOutcome.QUEUE_NOT_FOUND, f"queue '{config.routing_key}' not found"
                    ) from e
                exchange = channel.default_exchange
            try:
                await exchange.publish(
                    aio_pika.Message(
                        body=json.dumps(message).encode(),
                        content_type="application/json",
                        delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
                        message_id=str(message.get("custom_id")),
                    ),
                    routing_key=config.routing_key,
                    mandatory=True,
                )
            except (amqp_errors.PublishError, amqp_errors.DeliveryError) as e:
                raise DeliveryError(
                    DeliveryOutcome.QUEUE_NOT_FOUND,
                    f"message to {config.exchange or '(default)'}/{config.routing_key} was not routed",
                ) from e
        log.debug(event="Published result to RabbitMQ", exchange=config.exchange, routing_key=config.routing_key)

    async def aclose(self) -> None:
        if self._connection is not None and not self._connection.is_closed:
            await self._connection.close()
        self._connection = None
