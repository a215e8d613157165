import json
import math
from datetime import datetime, timedelta

import pytest

from batchrelay import state_machine
from batchrelay.capacity.backoff import CapacityBackoff
from batchrelay.capacity.control import CapacityControl, reserved_tokens_for_model
from batchrelay.capacity.estimator import TokenEstimator, counted_input
from batchrelay.capacity.limits import (
    RateLimits,
    delete_override,
    list_overrides,
    longest_prefix_match,
    set_override,
)
from batchrelay.db.models import Batch, utcnow
from batchrelay.status import BatchState
from tests.conftest import FakeEncoding, fake_encoding_for_model


class ExplodingEncoding:
    def encode(self, text, *, disallowed_special=()):
        raise RuntimeError("tokenizer crashed")


def test_estimate_uses_tokenizer_with_safety_buffer(estimator):
    body = {"model": "gpt-4o-mini", "messages": [{"role": "user", "content": "hello there"}]}
    counted = json.dumps(counted_input("/v1/chat/completions", body), separators=(",", ":"))
    raw = len(FakeEncoding().encode(counted))

    estimate = estimator.estimate("gpt-4o-mini", body, endpoint="/v1/chat/completions")

    assert estimate.source == "tokenizer"
    assert estimate.tokens == math.ceil(raw * 1.10)


def test_counted_input_keeps_only_prompt_fields():
    body = {"model": "m", "messages": [], "temperature": 0.2, "max_tokens": 10}
    assert counted_input("/v1/chat/completions", body) == {"messages": []}
    responses = {"model": "m", "input": "hi", "text": {"format": {"type": "json_schema"}}}
    assert counted_input("/v1/responses", responses) == {
        "input": "hi",
        "text": {"format": {"type": "json_schema"}},
    }


def test_estimate_falls_back_for_unknown_models(estimator):
    estimate = estimator.estimate("unknown-model", {"input": "x" * 70}, endpoint="/v1/embeddings")
    assert estimate.source == "fallback"
    assert estimate.tokens >= 1


def test_estimate_falls_back_when_tokenizer_raises(settings):
    estimator = TokenEstimator(settings, encoding_for_model=lambda model: ExplodingEncoding())
    estimate = estimator.estimate("gpt-4o", {"input": "hello"}, endpoint="/v1/responses")
    assert estimate.source == "fallback"


def test_estimate_skips_tokenizer_for_large_payloads(settings):
    calls = []

    def encoding_for_model(model):
        calls.append(model)
        return FakeEncoding()

    small = settings.model_copy(update={"max_tokenizer_payload_bytes": 100})
    estimator = TokenEstimator(small, encoding_for_model=encoding_for_model)
    estimate = estimator.estimate("gpt-4o", {"input": "x" * 500}, endpoint="/v1/responses")
    assert estimate.source == "fallback"
    assert calls == []


def test_estimate_never_raises_on_garbage(estimator):
    assert estimator.estimate("gpt-4o", "{not json").source == "fallback"
    assert estimator.estimate("gpt-4o", {"input": object()}).source == "fallback"


def test_encoding_lookup_is_cached(settings):
    calls = []

    def encoding_for_model(model):
        calls.append(model)
        return fake_encoding_for_model(model)

    estimator = TokenEstimator(settings, encoding_for_model=encoding_for_model)
    estimator.estimate("gpt-4o", {"input": "a"})
    estimator.estimate("gpt-4o", {"input": "b"})
    assert calls == ["gpt-4o"]


def test_longest_prefix_wins():
    table = {"gpt-4o": 90_000, "gpt-4o-mini": 2_000_000}
    assert longest_prefix_match("gpt-4o-mini-2024-07-18", table) == ("gpt-4o-mini", 2_000_000)
    assert longest_prefix_match("GPT-4o-2024-08-06", table) == ("gpt-4o", 90_000)
    assert longest_prefix_match("claude", table) is None


def test_override_beats_builtin_default(database, settings):
    rate_limits = RateLimits(database, settings, defaults={"gpt-4o-mini": 90_000})
    assert rate_limits.budget_for("gpt-4o-mini-2024-07-18").source == "default"

    with database.session() as session:
        set_override(session, "gpt-4o-mini", 2_000_000)

    budget = rate_limits.budget_for("gpt-4o-mini-2024-07-18")
    assert budget.limit == 2_000_000
    assert budget.source == "override"
    assert budget.matched_prefix == "gpt-4o-mini"


def test_override_changes_are_picked_up(database, rate_limits):
    with database.session() as session:
        set_override(session, "GPT-4o", 123)
    assert rate_limits.budget_for("gpt-4o-2024-08-06").limit == 123

    with database.session() as session:
        set_override(session, "gpt-4o", 456)
    assert rate_limits.budget_for("gpt-4o-2024-08-06").limit == 456

    with database.session() as session:
        assert delete_override(session, "gpt-4o") is True
        assert delete_override(session, "gpt-4o") is False
        assert list_overrides(session) == []
    assert rate_limits.budget_for("gpt-4o-2024-08-06").source == "default"


def test_invalid_override_is_rejected(database):
    with database.session() as session:
        with pytest.raises(ValueError):
            set_override(session, "gpt-4o", 0)
        with pytest.raises(ValueError):
            set_override(session, "  ", 10)


def test_unknown_model_uses_fallback(rate_limits, settings):
    budget = rate_limits.budget_for("some-new-model")
    assert budget.source == "fallback"
    assert budget.limit == settings.default_unknown_model_token_limit


def test_backoff_doubles_and_caps():
    backoff = CapacityBackoff(base_seconds=300, max_seconds=4800)
    delays = [backoff.delay_for_attempt(n).total_seconds() for n in range(1, 8)]
    assert delays == [300, 600, 1200, 2400, 4800, 4800, 4800]
    assert backoff.delay_for_attempt(10_000).total_seconds() == 4800


def test_backoff_records_rejections():
    backoff = CapacityBackoff(base_seconds=10, max_seconds=100)
    batch = Batch(endpoint="/v1/responses", model="gpt-4o", capacity_retry_attempts=0)
    now = datetime(2026, 1, 1, 12, 0, 0)
    assert backoff.record_rejection(batch, now) == now + timedelta(seconds=10)
    assert backoff.record_rejection(batch, now) == now + timedelta(seconds=20)
    assert batch.capacity_retry_attempts == 2
    backoff.reset(batch)
    assert batch.capacity_retry_attempts == 0
    assert batch.capacity_retry_next_at is None


def test_backoff_rejects_bad_bounds():
    with pytest.raises(ValueError):
        CapacityBackoff(base_seconds=10, max_seconds=5)
    with pytest.raises(ValueError):
        CapacityBackoff(base_seconds=10, max_seconds=20).delay_for_attempt(0)


def _batch_in_state(session, state: BatchState, tokens: int, model: str = "gpt-4o") -> Batch:
    batch = Batch(
        endpoint="/v1/responses",
        model=model,
        opened_at=utcnow(),
        estimated_token_total=tokens,
        request_count=1,
    )
    state_machine.initialize(session, batch)
    batch.state = state
    session.commit()
    return batch


def test_capacity_decision_accounts_for_active_batches(database, settings):
    rate_limits = RateLimits(database, settings, defaults={"gpt-4o": 1_000})
    control = CapacityControl(rate_limits)
    with database.session() as session:
        _batch_in_state(session, BatchState.POLLING, 600)
        _batch_in_state(session, BatchState.DELIVERING, 100)
        # neither waiting batches nor other models hold headroom
        _batch_in_state(session, BatchState.WAITING_FOR_CAPACITY, 900)
        _batch_in_state(session, BatchState.POLLING, 900, model="o3")
        fits = _batch_in_state(session, BatchState.UPLOADED, 300)
        too_big = _batch_in_state(session, BatchState.UPLOADED, 301)

        assert reserved_tokens_for_model(session, "gpt-4o") == 700
        decision = control.decision(session, fits)
        assert decision.admit
        assert decision.headroom == 300
        assert decision.reserved == 700
        assert not control.decision(session, too_big).admit
