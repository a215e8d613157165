import pytest
import pytest_asyncio

from batchrelay.ingestion import SubmittedItem
from tests.conftest import WEBHOOK_CONFIG


@pytest_asyncio.fixture
async def app(make_application):
    app = make_application()
    yield app
    await app.stop()


def _message(**overrides):
    message = {
        "custom_id": "req-1",
        "url": "/v1/chat/completions",
        "body": {"model": "gpt-4o-mini", "messages": [{"role": "user", "content": "hi"}]},
        "delivery_config": WEBHOOK_CONFIG,
        "tag": "  nightly  ",
    }
    message.update(overrides)
    return message


def test_model_is_taken_from_the_body():
    item = SubmittedItem.model_validate(_message(ignored="field"))
    assert item.model == "gpt-4o-mini"
    assert item.endpoint == "/v1/chat/completions"
    assert item.tag == "nightly"
    assert item.to_admission_item().payload["messages"][0]["content"] == "hi"


@pytest.mark.asyncio
async def test_accepted(app):
    response = await app.ingestor.submit(_message())
    assert response.status_code == 202
    assert response.body == {"custom_id": "req-1"}


@pytest.mark.asyncio
async def test_duplicate_custom_id(app):
    await app.ingestor.submit(_message())
    response = await app.ingestor.submit(_message())
    assert response.status_code == 409
    assert response.body == {"error": "custom_id_already_taken", "custom_id": "req-1"}


@pytest.mark.asyncio
async def test_malformed_message(app):
    response = await app.ingestor.submit({"custom_id": "", "url": "/v1/chat/completions"})
    assert response.status_code == 422
    assert response.body["error"] == "invalid_request"
    assert {detail["loc"] for detail in response.body["details"]} >= {"custom_id", "delivery_config"}

    response = await app.ingestor.submit(["not", "an", "object"])
    assert response.status_code == 422


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides,code",
    [
        ({"url": "/v1/images/generations"}, "unsupported_endpoint"),
        ({"delivery_config": {"type": "webhook", "webhook_url": "not a url"}}, "invalid_delivery_config"),
        ({"model": "gpt-4o"}, "invalid_payload"),
    ],
)
async def test_rejected_items(app, overrides, code):
    response = await app.ingestor.submit(_message(**overrides))
    assert response.status_code == 422
    assert response.body["error"] == code
    assert response.body["message"]


@pytest.mark.asyncio
async def test_unexpected_errors_are_hidden(app, monkeypatch):
    async def explode(item):
        raise RuntimeError("database password is hunter2")

    monkeypatch.setattr(app.aggregator, "admit", explode)
    response = await app.ingestor.submit(_message())
    assert response.status_code == 500
    assert response.body == {"error": "internal error"}
