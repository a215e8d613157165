"""
Token estimation for admission control.
"""

from __future__ import annotations

import json
import math
import threading
import typing as t
from dataclasses import dataclass

import structlog
import tiktoken

from batchrelay.settings import Settings

log = structlog.get_logger(__name__)

# Prompt-bearing fields per endpoint; other endpoints count the whole body.
COUNTED_FIELDS: dict[str, tuple[str, ...]] = {
    "/v1/responses": ("input", "instructions", "prompt", "tools"),
    "/v1/chat/completions": ("messages", "tools", "functions", "response_format"),
    "/v1/completions": ("prompt", "suffix"),
    "/v1/embeddings": ("input",),
    "/v1/moderations": ("input",),
}


class Encoding(t.Protocol):
    def encode(self, text: str, *, disallowed_special: t.Any = ...) -> list[int]: ...


@dataclass(frozen=True)
class TokenEstimate:
    tokens: int
    source: t.Literal["tokenizer", "fallback"]


def counted_input(endpoint: str | None, body: dict[str, t.Any]) -> dict[str, t.Any]:
    """
    Keep only the parts of a request body that consume input tokens.

    Parameters
    ----------
    endpoint : str | None
        Provider endpoint path, e.g. ``/v1/chat/completions``.
    body : dict[str, typing.Any]
        Provider request body.

    Returns
    -------
    dict[str, typing.Any]
        The subset of ``body`` that is counted.
    """
    fields = COUNTED_FIELDS.get(endpoint or "")
    if fields is None:
        return body
    picked = {field: body[field] for field in fields if field in body}
    if endpoint == "/v1/responses" and isinstance(body.get("text"), dict):
        text_format = body["text"].get("format")
        if text_format is not None:
            picked["text"] = {"format": text_format}
    return picked


class TokenEstimator:
    """
    Estimate the tokens a request body will consume in the provider queue.

    Uses the model's ``tiktoken`` encoding when one exists and falls back to a
    characters-per-token ratio otherwise. Estimation never raises.

    Parameters
    ----------
    settings : Settings
        Safety buffer, fallback ratio and tokenizer payload threshold.
    encoding_for_model : typing.Callable[[str], Encoding]
        Encoding lookup, ``tiktoken.encoding_for_model`` by default.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        encoding_for_model: t.Callable[[str], Encoding] = tiktoken.encoding_for_model,
    ) -> None:
        self.safety_buffer = settings.safety_buffer
        self.chars_per_token = settings.fallback_chars_per_token
        self.max_tokenizer_payload_bytes = settings.max_tokenizer_payload_bytes
        self._encoding_for_model = encoding_for_model
        self._encodings: dict[str, Encoding | None] = {}
        self._lock = threading.Lock()

    def _encoding(self, model: str) -> Encoding | None:
        with self._lock:
            if model in self._encodings:
                return self._encodings[model]
        try:
            encoding = self._encoding_for_model(model)
        except Exception as e:
            # unknown models raise KeyError, missing encoding files raise network errors
            log.warning(event="No tokenizer for model, using fallback", model=model, error=str(e))
            encoding = None
        with self._lock:
            self._encodings[model] = encoding
        return encoding

    def fallback_tokens(self, text: str) -> int:
        return max(1, math.ceil(len(text.encode("utf-8")) / self.chars_per_token))

    def _apply_buffer(self, tokens: int) -> int:
        return max(1, math.ceil(tokens * self.safety_buffer))

    def estimate(
        self,
        model: str,
        payload: dict[str, t.Any] | str,
        *,
        endpoint: str | None = None,
    ) -> TokenEstimate:
        """
        Estimate the buffered token count of ``payload``.

        Parameters
        ----------
        model : str
            Model the request targets.
        payload : dict[str, typing.Any] | str
            Request body, as a dict or as JSON text.
        endpoint : str | None
            Endpoint path selecting which body fields are counted.

        Returns
        -------
        TokenEstimate
            Buffered token count (at least 1) and the counting method used.
        """
        try:
            body = json.loads(payload) if isinstance(payload, str) else payload
            if not isinstance(body, dict):
                body = {"input": body}
            text = json.dumps(counted_input(endpoint, body), separators=(",", ":"))
        except (TypeError, ValueError) as e:
            log.warning(event="Could not normalise payload for estimation", model=model, error=str(e))
            text = payload if isinstance(payload, str) else repr(payload)
            return TokenEstimate(tokens=self._apply_buffer(self.fallback_tokens(text)), source="fallback")

        if len(text.encode("utf-8")) >= self.max_tokenizer_payload_bytes:
            return TokenEstimate(tokens=self._apply_buffer(self.fallback_tokens(text)), source="fallback")

        encoding = self._encoding(model)
        if encoding is None:
            return TokenEstimate(tokens=self._apply_buffer(self.fallback_tokens(text)), source="fallback")
        try:
            raw = len(encoding.encode(text, disallowed_special=()))
        except Exception as e:
            log.warning(event="Tokenizer failed, using fallback", model=model, error=str(e))
            return TokenEstimate(tokens=self._apply_buffer(self.fallback_tokens(text)), source="fallback")
        return TokenEstimate(tokens=self._apply_buffer(raw), source="tokenizer")
