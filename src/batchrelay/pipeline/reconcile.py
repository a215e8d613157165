"""
Match provider result lines back to the requests of a batch.
"""

from __future__ import annotations

import typing as t
from dataclasses import dataclass, field

import structlog
from pydantic import BaseModel, ConfigDict, ValidationError
from sqlalchemy import select

from batchrelay import state_machine
from batchrelay.db.models import Request
from batchrelay.status import RequestState

if t.TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from batchrelay.db.session import Database
    from batchrelay.provider.client import ProviderClient

log = structlog.get_logger(__name__)

MISSING_RESULT_MESSAGE = "missing from provider results"


class ResultResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    status_code: int = 200
    request_id: str | None = None
    body: t.Any = None


class ResultLine(BaseModel):
    """One line of a provider output or error file."""

    model_config = ConfigDict(extra="allow")

    id: str | None = None
    custom_id: str
    response: ResultResponse | None = None
    error: dict[str, t.Any] | None = None

    @property
    def body_error(self) -> t.Any:
        body = self.response.body if self.response is not None else None
        if isinstance(body, dict):
            return body.get("error")
        return None

    @property
    def succeeded(self) -> bool:
        return (
            self.error is None
            and self.response is not None
            and self.response.status_code == 200
            and not self.body_error
        )

    @property
    def error_message(self) -> str:
        for error in (self.error, self.body_error):
            if isinstance(error, dict) and (error.get("message") or error.get("code")):
                code = error.get("code")
                message = error.get("message") or ""
                return f"{code}: {message}" if code else message
            if isinstance(error, str) and error:
                return error
        if self.response is not None:
            return f"provider returned HTTP {self.response.status_code}"
        return "provider returned no response"


@dataclass
class ReconcileStats:
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    malformed: int = 0
    unknown: int = 0
    files: list[str] = field(default_factory=list)

    def merge(self, other: "ReconcileStats") -> None:
        self.processed += other.processed
        self.failed += other.failed
        self.skipped += other.skipped
        self.malformed += other.malformed
        self.unknown += other.unknown
        self.files.extend(other.files)


def parse_result_line(line: str) -> ResultLine | None:
    """Parse a result line, ``None`` when it is not a valid result."""
    try:
        return ResultLine.model_validate_json(line)
    except ValidationError:
        return None


def apply_results(
    session: "Session", *, batch_id: int, lines: t.Sequence[str], stats: ReconcileStats
) -> None:
    """
    Apply a chunk of result lines within the caller's transaction.

    Parameters
    ----------
    session : Session
        Session committed by the caller once the chunk is applied.
    batch_id : int
        Only requests of this batch are matched.
    lines : Sequence[str]
        Raw JSONL lines.
    stats : ReconcileStats
        Counters updated in place.
    """
    parsed: list[ResultLine] = []
    for line in lines:
        result = parse_result_line(line)
        if result is None:
            stats.malformed += 1
            log.warning(event="Skipped malformed result line", batch_id=batch_id, line=line[:200])
            continue
        parsed.append(result)
    if not parsed:
        return

    custom_ids = {result.custom_id for result in parsed}
    requests = {
        request.custom_id: request
        for request in session.execute(
            select(Request)
            .where(Request.batch_id == batch_id, Request.custom_id.in_(custom_ids))
            .with_for_update()
        ).scalars()
    }
    for result in parsed:
        request = requests.get(result.custom_id)
        if request is None:
            stats.unknown += 1
            log.warning(event="Result for unknown custom_id", batch_id=batch_id, custom_id=result.custom_id)
            continue
        if request.state != RequestState.PROCESSING:
            # already reconciled by an earlier run
            stats.skipped += 1
            continue
        if result.succeeded:
            state_machine.fire(
                session,
                request,
                "complete_processing",
                response_payload=t.cast(ResultResponse, result.response).body,
                error_message=None,
            )
            stats.processed += 1
        else:
            state_machine.fire(session, request, "mark_failed", error_message=result.error_message)
            stats.failed += 1


async def reconcile_file(
    *,
    database: "Database",
    client: "ProviderClient",
    batch_id: int,
    file_id: str,
    chunk_size: int,
) -> ReconcileStats:
    """
    Stream one provider result file and apply it chunk by chunk.

    Each chunk is committed on its own, so an interrupted download keeps the
    chunks already applied and a rerun skips them.

    Parameters
    ----------
    database : Database
        Persistence.
    client : ProviderClient
        Streams the file content.
    batch_id : int
        Batch the file belongs to.
    file_id : str
        Provider file id.
    chunk_size : int
        Lines per transaction.

    Returns
    -------
    ReconcileStats
        What the file did to the batch's requests.
    """
    stats = ReconcileStats(files=[file_id])
    chunk: list[str] = []

    def flush() -> None:
        with database.session() as session:
            apply_results(session, batch_id=batch_id, lines=chunk, stats=stats)
            session.commit()
        chunk.clear()

    async for line in client.iter_file_lines(file_id):
        chunk.append(line)
        if len(chunk) >= chunk_size:
            flush()
    if chunk:
        flush()
    log.info(
        event="Reconciled result file",
        batch_id=batch_id,
        file_id=file_id,
        processed=stats.processed,
        failed=stats.failed,
        skipped=stats.skipped,
        malformed=stats.malformed,
        unknown=stats.unknown,
    )
    return stats


def fail_missing_results(session: "Session", batch_id: int) -> int:
    """Fail the batch's requests the provider returned nothing for; the caller commits."""
    missing = list(
        session.execute(
            select(Request).where(
                Request.batch_id == batch_id, Request.state == RequestState.PROCESSING
            )
        ).scalars()
    )
    count = state_machine.fire_all(session, missing, "mark_failed", error_message=MISSING_RESULT_MESSAGE)
    if count:
        log.warning(event="Requests missing from provider results", batch_id=batch_id, count=count)
    return count
