"""
Wiring of the batchrelay runtime.
"""

from __future__ import annotations

import typing as t

import structlog

from batchrelay.aggregator import Aggregator
from batchrelay.capacity.backoff import CapacityBackoff
from batchrelay.capacity.control import CapacityControl
from batchrelay.capacity.estimator import TokenEstimator
from batchrelay.capacity.limits import RateLimits
from batchrelay.db.session import Database
from batchrelay.delivery.deliverer import Deliverer
from batchrelay.delivery.sinks import RabbitMQSink, WebhookSink
from batchrelay.ingestion import Ingestor
from batchrelay.jobs.queue import JobQueue
from batchrelay.jobs.scheduler import Scheduler
from batchrelay.pipeline.orchestrator import Orchestrator
from batchrelay.provider.client import ProviderClient
from batchrelay.settings import Settings
from batchrelay.utils.logging import setup_logging

if t.TYPE_CHECKING:
    import httpx

log = structlog.get_logger(__name__)


class Application:
    """
    Build every component from one ``Settings`` and run them together.

    Parameters
    ----------
    settings : Settings | None
        Configuration, read from the environment when omitted.
    provider_transport : httpx.AsyncBaseTransport | None
        Transport for provider calls, used by tests to plug a fake provider.
    webhook_transport : httpx.AsyncBaseTransport | None
        Transport for webhook deliveries.
    estimator : TokenEstimator | None
        Token estimator, built from ``settings`` when omitted.
    configure_logging : bool
        Configure structlog from ``settings.log_level``.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        provider_transport: "httpx.AsyncBaseTransport | None" = None,
        webhook_transport: "httpx.AsyncBaseTransport | None" = None,
        estimator: TokenEstimator | None = None,
        configure_logging: bool = True,
    ) -> None:
        self.settings = settings or Settings.from_env()
        if configure_logging:
            setup_logging(self.settings.log_level)

        self.database = Database(self.settings.database_url)
        self.database.init_db()
        self.estimator = estimator or TokenEstimator(self.settings)
        self.rate_limits = RateLimits(self.database, self.settings)
        self.capacity_control = CapacityControl(self.rate_limits)
        self.backoff = CapacityBackoff.from_settings(self.settings)
        self.client = ProviderClient(self.settings, transport=provider_transport)
        self.job_queue = JobQueue(self.database, self.settings)
        self.scheduler = Scheduler(self.job_queue, self.settings)
        self.aggregator = Aggregator(
            database=self.database,
            settings=self.settings,
            estimator=self.estimator,
            rate_limits=self.rate_limits,
            job_queue=self.job_queue,
        )
        self.webhook_sink = WebhookSink(
            timeout=self.settings.delivery_timeout_seconds, transport=webhook_transport
        )
        self.rabbitmq_sink = RabbitMQSink(
            self.settings.rabbitmq_url, timeout=self.settings.delivery_timeout_seconds
        )
        self.deliverer = Deliverer(
            database=self.database,
            settings=self.settings,
            job_queue=self.job_queue,
            webhook_sink=self.webhook_sink,
            rabbitmq_sink=self.rabbitmq_sink,
        )
        self.orchestrator = Orchestrator(
            database=self.database,
            settings=self.settings,
            client=self.client,
            job_queue=self.job_queue,
            capacity_control=self.capacity_control,
            backoff=self.backoff,
            aggregator=self.aggregator,
            deliverer=self.deliverer,
        )
        self.orchestrator.register(self.scheduler)
        self.ingestor = Ingestor(self.aggregator)

    async def __aenter__(self) -> "Application":
        return self

    async def __aexit__(self, *exc_info: t.Any) -> None:
        await self.stop()

    async def start(self, *, validate_credentials: bool = True) -> None:
        """
        Start the job workers and periodic sweeps.

        Raises
        ------
        ProviderAuthError
            If the provider rejects the configured API key.
        """
        if validate_credentials:
            await self.client.validate_credentials()
        self.settings.batch_storage_path.mkdir(parents=True, exist_ok=True)
        await self.scheduler.start()
        log.info(
            event="batchrelay started",
            database_url=self.database.engine.url.render_as_string(hide_password=True),
            provider=self.settings.openai_base_url,
        )

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.aggregator.shutdown()
        await self.client.aclose()
        await self.webhook_sink.aclose()
        await self.rabbitmq_sink.aclose()
        self.database.dispose()
        log.info(event="batchrelay stopped")
