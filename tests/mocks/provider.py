import json
import typing as t
from email.parser import BytesParser
from email.policy import default

import httpx


class FakeOpenAIAPI:
    """
    Emulate the subset of the OpenAI Batch API used by batchrelay.

    Every remote batch reaches ``final_status`` after ``polls_before_final``
    in-progress polls. Requests whose custom_id is in ``fail_custom_ids`` end
    up in the error file; for expired batches only the first
    ``partial_count`` requests get a result.
    """

    def __init__(self, *, api_key: str = "test-key") -> None:
        self.api_key = api_key
        self.files: dict[str, list[dict[str, t.Any]]] = {}
        self.batches: dict[str, dict[str, t.Any]] = {}
        self.deleted_files: list[str] = []
        self.cancelled_batches: list[str] = []
        self.created_batches: list[dict[str, t.Any]] = []
        self.final_status = "completed"
        self.polls_before_final = 0
        self.partial_count = 0
        self.fail_custom_ids: set[str] = set()
        self.batch_errors: list[dict[str, t.Any]] = []
        self.create_rejections = 0
        self.file_expires_at: int | None = None
        self._poll_count: dict[str, int] = {}
        self._counter = 0

    def _json_response(self, *, status_code: int, payload: dict[str, t.Any]) -> httpx.Response:
        return httpx.Response(status_code=status_code, json=payload)

    def _next_id(self, *, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_{self._counter}"

    def _parse_multipart_file(self, *, request: httpx.Request) -> list[dict[str, t.Any]]:
        """
        Parse multipart payload and extract JSONL lines from the file part.

        Parameters
        ----------
        request : httpx.Request
            Incoming HTTP request.

        Returns
        -------
        list[dict[str, typing.Any]]
            JSONL line objects from the uploaded file.
        """
        content_type = request.headers.get("content-type", "")
        body = request.read()
        message = BytesParser(policy=default).parsebytes(
            text=b"Content-Type: " + content_type.encode("utf-8") + b"\r\n\r\n" + body
        )
        for part in message.iter_parts():
            if part.get_content_disposition() != "form-data":
                continue
            if part.get_param("name", header="content-disposition") != "file":
                continue
            payload = part.get_payload(decode=True)
            if not isinstance(payload, bytes):
                payload = b""
            return [json.loads(line) for line in payload.decode("utf-8").splitlines() if line.strip()]
        return []

    def _result_line(self, line: dict[str, t.Any]) -> str:
        return json.dumps(
            {
                "id": f"batch_req_{line['custom_id']}",
                "custom_id": line["custom_id"],
                "response": {
                    "status_code": 200,
                    "request_id": f"req_{line['custom_id']}",
                    "body": {
                        "model": line["body"].get("model"),
                        "choices": [{"message": {"content": "ok"}}],
                    },
                },
                "error": None,
            }
        )

    def _error_line(self, line: dict[str, t.Any]) -> str:
        return json.dumps(
            {
                "id": f"batch_req_{line['custom_id']}",
                "custom_id": line["custom_id"],
                "response": {
                    "status_code": 400,
                    "request_id": f"req_{line['custom_id']}",
                    "body": {"error": {"code": "invalid_request", "message": "bad prompt"}},
                },
                "error": None,
            }
        )

    def _write_results(self, remote: dict[str, t.Any]) -> None:
        lines = self.files[remote["input_file_id"]]
        if remote["status"] == "expired":
            lines = lines[: self.partial_count]
        output = [line for line in lines if line["custom_id"] not in self.fail_custom_ids]
        errors = [line for line in lines if line["custom_id"] in self.fail_custom_ids]
        if output:
            remote["output_file_id"] = self._next_id(prefix="output")
            self.files[remote["output_file_id"]] = [{"raw": self._result_line(line)} for line in output]
        if errors:
            remote["error_file_id"] = self._next_id(prefix="error")
            self.files[remote["error_file_id"]] = [{"raw": self._error_line(line)} for line in errors]

    def _handle_upload(self, *, request: httpx.Request) -> httpx.Response:
        file_id = self._next_id(prefix="file")
        self.files[file_id] = self._parse_multipart_file(request=request)
        return self._json_response(
            status_code=200,
            payload={
                "id": file_id,
                "object": "file",
                "purpose": "batch",
                "filename": "input.jsonl",
                "expires_at": self.file_expires_at,
            },
        )

    def _handle_batch_create(self, *, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.read())
        if self.create_rejections > 0:
            self.create_rejections -= 1
            return self._json_response(
                status_code=400,
                payload={
                    "error": {
                        "code": "token_limit_exceeded",
                        "message": "Enqueued token limit reached for this model.",
                    }
                },
            )
        batch_id = self._next_id(prefix="batch")
        self.batches[batch_id] = {
            "id": batch_id,
            "object": "batch",
            "endpoint": payload["endpoint"],
            "input_file_id": payload["input_file_id"],
            "status": "validating",
            "output_file_id": None,
            "error_file_id": None,
        }
        self.created_batches.append(payload)
        return self._json_response(status_code=200, payload=self.batches[batch_id])

    def _handle_batch_status(self, *, batch_id: str) -> httpx.Response:
        remote = self.batches.get(batch_id)
        if remote is None:
            return self._json_response(status_code=404, payload={"error": {"message": "not found"}})
        poll_count = self._poll_count.get(batch_id, 0) + 1
        self._poll_count[batch_id] = poll_count
        if remote["status"] in ("validating", "in_progress"):
            if poll_count > self.polls_before_final:
                remote["status"] = self.final_status
                if self.final_status in ("completed", "expired"):
                    self._write_results(remote)
                    remote["usage"] = {"input_tokens": 10, "output_tokens": 5}
                if self.final_status == "failed":
                    remote["errors"] = {"object": "list", "data": self.batch_errors}
            else:
                remote["status"] = "in_progress"
        return self._json_response(status_code=200, payload=remote)

    def _handle_batch_cancel(self, *, batch_id: str) -> httpx.Response:
        remote = self.batches.get(batch_id)
        if remote is None:
            return self._json_response(status_code=404, payload={"error": {"message": "not found"}})
        remote["status"] = "cancelling"
        self.cancelled_batches.append(batch_id)
        return self._json_response(status_code=200, payload=remote)

    def _handle_file_content(self, *, file_id: str) -> httpx.Response:
        lines = self.files.get(file_id)
        if lines is None:
            return self._json_response(status_code=404, payload={"error": {"message": "not found"}})
        return httpx.Response(status_code=200, text="\n".join(line["raw"] for line in lines) + "\n")

    def _handle_file_delete(self, *, file_id: str) -> httpx.Response:
        if self.files.pop(file_id, None) is None:
            return self._json_response(status_code=404, payload={"error": {"message": "not found"}})
        self.deleted_files.append(file_id)
        return self._json_response(status_code=200, payload={"id": file_id, "deleted": True})

    def handler(self, request: httpx.Request) -> httpx.Response:
        """
        Dispatch incoming requests to mock handlers.

        Parameters
        ----------
        request : httpx.Request
            Incoming HTTP request.

        Returns
        -------
        httpx.Response
            Mock response.
        """
        if request.headers.get("authorization") != f"Bearer {self.api_key}":
            return self._json_response(
                status_code=401, payload={"error": {"code": "invalid_api_key", "message": "bad key"}}
            )
        path = request.url.path
        parts = path.strip("/").split("/")
        if request.method == "POST" and path == "/v1/files":
            return self._handle_upload(request=request)
        if request.method == "GET" and path == "/v1/batches":
            return self._json_response(status_code=200, payload={"object": "list", "data": []})
        if request.method == "POST" and path == "/v1/batches":
            return self._handle_batch_create(request=request)
        if request.method == "GET" and len(parts) == 3 and parts[1] == "batches":
            return self._handle_batch_status(batch_id=parts[2])
        if request.method == "POST" and len(parts) == 4 and parts[3] == "cancel":
            return self._handle_batch_cancel(batch_id=parts[2])
        if request.method == "GET" and len(parts) == 4 and parts[3] == "content":
            return self._handle_file_content(file_id=parts[2])
        if request.method == "DELETE" and len(parts) == 3 and parts[1] == "files":
            return self._handle_file_delete(file_id=parts[2])
        return self._json_response(status_code=404, payload={"error": {"message": "not found"}})


class WebhookRecorder:
    """Record webhook deliveries and answer with ``status_code``."""

    def __init__(self, status_code: int = 200) -> None:
        self.status_code = status_code
        self.received: list[dict[str, t.Any]] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.received.append(json.loads(request.read()))
        return httpx.Response(status_code=self.status_code, json={"ok": self.status_code < 300})


def make_openai_batch_transport(api: FakeOpenAIAPI | None = None) -> httpx.MockTransport:
    """
    Create a mock OpenAI batch transport for tests.

    Parameters
    ----------
    api : FakeOpenAIAPI | None
        Fake to serve, a fresh one by default.

    Returns
    -------
    httpx.MockTransport
        Mock transport that emulates the file and batch endpoints.
    """
    return httpx.MockTransport(handler=(api or FakeOpenAIAPI()).handler)
