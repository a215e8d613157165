import json
import typing as t

import httpx
import pytest

from batchrelay import state_machine
from batchrelay.app import Application
from batchrelay.capacity.estimator import TokenEstimator
from batchrelay.capacity.limits import RateLimits
from batchrelay.db.models import Batch, Request, utcnow
from batchrelay.db.session import Database
from batchrelay.jobs.queue import JobQueue
from batchrelay.settings import Settings
from batchrelay.status import BatchState, RequestState
from tests.mocks.provider import FakeOpenAIAPI, WebhookRecorder

WEBHOOK_CONFIG = {"type": "webhook", "webhook_url": "https://hooks.example.com/results"}


class FakeEncoding:
    """Four characters per token, like a very regular tokenizer."""

    def encode(self, text: str, *, disallowed_special: t.Any = ()) -> list[int]:
        return list(range(max(1, len(text) // 4)))


def fake_encoding_for_model(model: str) -> FakeEncoding:
    if model.startswith("unknown"):
        raise KeyError(model)
    return FakeEncoding()


@pytest.fixture(autouse=True)
def test_set_env(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    monkeypatch.delenv("RABBITMQ_URL", raising=False)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        openai_api_key="test-key",
        openai_base_url="https://api.openai.test",
        database_url=f"sqlite:///{tmp_path / 'batchrelay.db'}",
        batch_storage_path=tmp_path / "batches",
        poll_interval_seconds=30.0,
        delivery_backoff_base_seconds=1.0,
        delivery_backoff_max_seconds=2.0,
        http_max_attempts=2,
    )


@pytest.fixture
def database(settings):
    database = Database(settings.database_url)
    database.init_db()
    yield database
    database.destroy_db()
    database.dispose()


@pytest.fixture
def seed_batch(database):
    """
    Store a batch in ``state`` holding one request per entry of ``requests``.

    ``requests`` maps custom_id to request state. Returns the batch id and a
    custom_id to request id mapping.
    """

    def factory(
        state: BatchState,
        requests: dict[str, RequestState],
        *,
        delivery_config: dict[str, t.Any] | None = None,
        model: str = "gpt-4o-mini",
        **batch_fields: t.Any,
    ) -> tuple[int, dict[str, int]]:
        with database.session() as session:
            batch = Batch(
                endpoint="/v1/chat/completions",
                model=model,
                opened_at=utcnow(),
                request_count=len(requests),
                **batch_fields,
            )
            state_machine.initialize(session, batch)
            batch.state = state
            session.flush()
            stored = {}
            for custom_id, request_state in requests.items():
                request = Request(
                    batch_id=batch.id,
                    custom_id=custom_id,
                    endpoint=batch.endpoint,
                    model=model,
                    payload=json.dumps({"model": model, "messages": []}),
                    payload_size=100,
                    estimated_tokens=10,
                    delivery_config=delivery_config or WEBHOOK_CONFIG,
                    response_payload={"ok": True} if request_state == RequestState.PROCESSED else None,
                )
                state_machine.initialize(session, request)
                request.state = request_state
                stored[custom_id] = request
            session.commit()
            return batch.id, {custom_id: request.id for custom_id, request in stored.items()}

    return factory


@pytest.fixture
def estimator(settings) -> TokenEstimator:
    return TokenEstimator(settings, encoding_for_model=fake_encoding_for_model)


@pytest.fixture
def rate_limits(database, settings) -> RateLimits:
    return RateLimits(database, settings)


@pytest.fixture
def job_queue(database, settings) -> JobQueue:
    return JobQueue(database, settings)


@pytest.fixture
def fake_api() -> FakeOpenAIAPI:
    return FakeOpenAIAPI()


@pytest.fixture
def webhook() -> WebhookRecorder:
    return WebhookRecorder()


@pytest.fixture
def make_application(settings, fake_api, webhook, estimator):
    created: list[Application] = []

    def factory(**overrides: t.Any) -> Application:
        application = Application(
            settings.model_copy(update=overrides) if overrides else settings,
            provider_transport=httpx.MockTransport(fake_api.handler),
            webhook_transport=httpx.MockTransport(webhook.handler),
            estimator=estimator,
            configure_logging=False,
        )
        created.append(application)
        return application

    yield factory
    for application in created:
        application.database.dispose()
