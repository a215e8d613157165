"""
HTTP client for an OpenAI-compatible Batch API.
"""

from __future__ import annotations

import typing as t
from contextlib import asynccontextmanager
from pathlib import Path

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from batchrelay.exceptions import (
    ProviderAuthError,
    ProviderCapacityError,
    ProviderClientError,
    ProviderError,
    ProviderNotFoundError,
    ProviderTransientError,
)
from batchrelay.provider.models import CAPACITY_ERROR_CODES, ProviderBatch, ProviderFile

if t.TYPE_CHECKING:
    from batchrelay.settings import Settings

log = structlog.get_logger(__name__)


def _error_details(response: httpx.Response) -> tuple[str, str | None]:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500] or f"HTTP {response.status_code}", None
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("message") or f"HTTP {response.status_code}", error.get("code")
    return f"HTTP {response.status_code}", None


def raise_for_provider_status(response: httpx.Response) -> None:
    """
    Translate a non-2xx provider response into a ``ProviderError`` subclass.

    Parameters
    ----------
    response : httpx.Response
        Response with its body already read.

    Raises
    ------
    ProviderError
        The subclass matching the status code.
    """
    status = response.status_code
    if 200 <= status < 300:
        return
    message, error_code = _error_details(response)
    kwargs = {"status_code": status, "error_code": error_code}
    if status == 401:
        raise ProviderAuthError(message, **kwargs)
    if status == 404:
        raise ProviderNotFoundError(message, **kwargs)
    if status == 429 or error_code in CAPACITY_ERROR_CODES:
        raise ProviderCapacityError(message, **kwargs)
    if status >= 500:
        raise ProviderTransientError(message, **kwargs)
    raise ProviderClientError(message, **kwargs)


class ProviderClient:
    """
    Async client for the provider's file and batch endpoints.

    5xx responses and transport errors are retried with jittered exponential
    backoff; 4xx responses are raised immediately.

    Parameters
    ----------
    settings : Settings
        API key, base URL, timeouts and retry bound.
    transport : httpx.AsyncBaseTransport | None
        Transport override, used by tests to plug a fake provider.
    retry_wait_initial : float
        Initial retry delay in seconds.
    retry_wait_max : float
        Maximum retry delay in seconds.
    """

    def __init__(
        self,
        settings: "Settings",
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        retry_wait_initial: float = 1.0,
        retry_wait_max: float = 30.0,
    ) -> None:
        self.completion_window = settings.completion_window
        self.max_attempts = settings.http_max_attempts
        self.retry_wait_initial = retry_wait_initial
        self.retry_wait_max = retry_wait_max
        self._client = httpx.AsyncClient(
            base_url=settings.openai_base_url,
            headers={"Authorization": f"Bearer {settings.openai_api_key}"},
            timeout=httpx.Timeout(
                settings.http_receive_timeout_seconds,
                connect=settings.http_connect_timeout_seconds,
            ),
            transport=transport,
        )

    async def __aenter__(self) -> "ProviderClient":
        return self

    async def __aexit__(self, *exc_info: t.Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception_type(ProviderTransientError),
            wait=wait_exponential_jitter(initial=self.retry_wait_initial, max=self.retry_wait_max),
            stop=stop_after_attempt(self.max_attempts),
            before_sleep=self._log_retry,
            reraise=True,
        )

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        log.warning(
            event="Retrying provider call",
            attempt=retry_state.attempt_number,
            error=str(error),
        )

    async def _send_once(self, request: httpx.Request, *, stream: bool = False) -> httpx.Response:
        try:
            response = await self._client.send(request, stream=stream)
        except httpx.TimeoutException as e:
            raise ProviderTransientError(f"timeout calling {request.url.path}: {e}") from e
        except httpx.TransportError as e:
            raise ProviderTransientError(f"connection error calling {request.url.path}: {e}") from e
        if response.is_success:
            return response
        try:
            await response.aread()
        finally:
            await response.aclose()
        raise_for_provider_status(response)
        return response

    async def _request(self, method: str, url: str, **kwargs: t.Any) -> httpx.Response:
        async for attempt in self._retrying():
            with attempt:
                request = self._client.build_request(method, url, **kwargs)
                return await self._send_once(request)
        raise ProviderError(f"{method} {url}: no attempt was made")

    async def upload_file(self, path: Path) -> ProviderFile:
        """
        Upload a JSONL batch input file.

        Parameters
        ----------
        path : Path
            Local JSONL file.

        Returns
        -------
        ProviderFile
            The created file, including its expiry when the provider reports one.
        """
        content = path.read_bytes()
        log.debug(event="Uploading batch file", path=str(path), bytes=len(content))
        response = await self._request(
            "POST",
            "/v1/files",
            files={"file": (path.name, content, "application/jsonl")},
            data={"purpose": "batch"},
        )
        return ProviderFile.model_validate(response.json())

    async def create_batch(
        self,
        *,
        input_file_id: str,
        endpoint: str,
        metadata: dict[str, str] | None = None,
    ) -> ProviderBatch:
        response = await self._request(
            "POST",
            "/v1/batches",
            json={
                "input_file_id": input_file_id,
                "endpoint": endpoint,
                "completion_window": self.completion_window,
                "metadata": metadata or {},
            },
        )
        return ProviderBatch.model_validate(response.json())

    async def get_batch(self, job_id: str) -> ProviderBatch:
        response = await self._request("GET", f"/v1/batches/{job_id}")
        return ProviderBatch.model_validate(response.json())

    async def cancel_batch(self, job_id: str) -> ProviderBatch:
        response = await self._request("POST", f"/v1/batches/{job_id}/cancel")
        return ProviderBatch.model_validate(response.json())

    async def delete_file(self, file_id: str) -> None:
        await self._request("DELETE", f"/v1/files/{file_id}")

    @asynccontextmanager
    async def _stream(self, method: str, url: str) -> t.AsyncIterator[httpx.Response]:
        response: httpx.Response | None = None
        async for attempt in self._retrying():
            with attempt:
                request = self._client.build_request(method, url)
                response = await self._send_once(request, stream=True)
        if response is None:
            raise ProviderError(f"{method} {url}: no attempt was made")
        try:
            yield response
        finally:
            await response.aclose()

    async def iter_file_lines(self, file_id: str) -> t.AsyncIterator[str]:
        """
        Stream the non-empty lines of a provider file.

        Opening the stream is retried; a failure mid-stream propagates.

        Parameters
        ----------
        file_id : str
            Provider file id.

        Yields
        ------
        str
            One JSONL line without its trailing newline.
        """
        async with self._stream("GET", f"/v1/files/{file_id}/content") as response:
            try:
                async for line in response.aiter_lines():
                    if line.strip():
                        yield line
            except httpx.TransportError as e:
                raise ProviderTransientError(f"stream of file {file_id} interrupted: {e}") from e

    async def validate_credentials(self) -> None:
        """
        Check the API key with a cheap authenticated call.

        Raises
        ------
        ProviderAuthError
            If the provider rejects the credential.
        """
        await self._request("GET", "/v1/batches", params={"limit": 1})
        log.info(event="Validated provider credentials")
