import json

import pytest

from batchrelay.db import crud
from batchrelay.pipeline.reconcile import (
    MISSING_RESULT_MESSAGE,
    ReconcileStats,
    apply_results,
    fail_missing_results,
    parse_result_line,
    reconcile_file,
)
from batchrelay.provider.client import ProviderClient
from batchrelay.status import BatchState, RequestState
from tests.mocks.provider import make_openai_batch_transport


def _ok(custom_id: str) -> str:
    return json.dumps(
        {
            "id": f"batch_req_{custom_id}",
            "custom_id": custom_id,
            "response": {"status_code": 200, "request_id": "req_1", "body": {"answer": custom_id}},
            "error": None,
        }
    )


def _http_error(custom_id: str) -> str:
    return json.dumps(
        {
            "custom_id": custom_id,
            "response": {
                "status_code": 400,
                "body": {"error": {"code": "invalid_request", "message": "bad prompt"}},
            },
            "error": None,
        }
    )


def _states(database, ids):
    with database.session() as session:
        return {
            custom_id: (request.state, request.response_payload, request.error_message)
            for custom_id, request_id in ids.items()
            for request in [crud.get_request(session, request_id)]
        }


def test_parse_result_line():
    assert parse_result_line(_ok("a")).succeeded
    assert not parse_result_line(_http_error("a")).succeeded
    assert parse_result_line("not json") is None
    assert parse_result_line(json.dumps({"response": {}})) is None


@pytest.mark.parametrize(
    "line,message",
    [
        (_http_error("a"), "invalid_request: bad prompt"),
        (json.dumps({"custom_id": "a", "error": {"code": "server_error", "message": "boom"}}), "server_error: boom"),
        (json.dumps({"custom_id": "a", "response": {"status_code": 500, "body": {}}}), "provider returned HTTP 500"),
        (json.dumps({"custom_id": "a", "response": None, "error": None}), "provider returned no response"),
    ],
)
def test_error_messages(line, message):
    result = parse_result_line(line)
    assert not result.succeeded
    assert result.error_message == message


def test_apply_results(database, seed_batch):
    batch_id, ids = seed_batch(
        BatchState.DOWNLOADING,
        {
            "ok": RequestState.PROCESSING,
            "bad": RequestState.PROCESSING,
            "done": RequestState.PROCESSED,
        },
    )
    other_batch_id, other_ids = seed_batch(BatchState.DOWNLOADING, {"elsewhere": RequestState.PROCESSING})
    stats = ReconcileStats()
    lines = [_ok("ok"), _http_error("bad"), _ok("done"), _ok("ghost"), _ok("elsewhere"), "{broken"]

    with database.session() as session:
        apply_results(session, batch_id=batch_id, lines=lines, stats=stats)
        session.commit()

    assert (stats.processed, stats.failed, stats.skipped, stats.unknown, stats.malformed) == (1, 1, 1, 2, 1)
    states = _states(database, ids)
    assert states["ok"] == (RequestState.PROCESSED, {"answer": "ok"}, None)
    assert states["bad"] == (RequestState.FAILED, None, "invalid_request: bad prompt")
    assert states["done"][0] == RequestState.PROCESSED
    # results only ever match requests of their own batch
    assert _states(database, other_ids)["elsewhere"][0] == RequestState.PROCESSING


def test_fail_missing_results(database, seed_batch):
    batch_id, ids = seed_batch(
        BatchState.DOWNLOADING, {"a": RequestState.PROCESSING, "b": RequestState.PROCESSED}
    )
    with database.session() as session:
        assert fail_missing_results(session, batch_id) == 1
        session.commit()
    states = _states(database, ids)
    assert states["a"] == (RequestState.FAILED, None, MISSING_RESULT_MESSAGE)
    assert states["b"][0] == RequestState.PROCESSED


@pytest.mark.asyncio
async def test_reconcile_file_commits_chunks(database, seed_batch, settings, fake_api):
    batch_id, ids = seed_batch(
        BatchState.DOWNLOADING, {name: RequestState.PROCESSING for name in ("a", "b", "c")}
    )
    fake_api.files["output_1"] = [{"raw": _ok("a")}, {"raw": _ok("b")}, {"raw": _http_error("c")}]

    async with ProviderClient(settings, transport=make_openai_batch_transport(fake_api)) as client:
        stats = await reconcile_file(
            database=database, client=client, batch_id=batch_id, file_id="output_1", chunk_size=2
        )
        rerun = await reconcile_file(
            database=database, client=client, batch_id=batch_id, file_id="output_1", chunk_size=2
        )

    assert (stats.processed, stats.failed, stats.files) == (2, 1, ["output_1"])
    assert rerun.skipped == 3
    assert [state for state, _, _ in _states(database, ids).values()] == [
        RequestState.PROCESSED,
        RequestState.PROCESSED,
        RequestState.FAILED,
    ]


def test_stats_merge():
    total = ReconcileStats(processed=1, files=["a"])
    total.merge(ReconcileStats(failed=2, malformed=1, files=["b"]))
    assert (total.processed, total.failed, total.malformed, total.files) == (1, 2, 1, ["a", "b"])
