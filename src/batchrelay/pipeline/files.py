"""
Local JSONL scratch files for batches awaiting upload.
"""

from __future__ import annotations

import json
import shutil
import typing as t
from pathlib import Path

import structlog
from sqlalchemy import select

from batchrelay.db.models import Request
from batchrelay.status import RequestState

if t.TYPE_CHECKING:
    from sqlalchemy.orm import Session

log = structlog.get_logger(__name__)


def render_jsonl_line(*, custom_id: str, endpoint: str, payload: str) -> str:
    """
    Render one provider input line.

    Parameters
    ----------
    custom_id : str
        Caller id echoed back by the provider.
    endpoint : str
        Endpoint path, used as the line's ``url``.
    payload : str
        Request body as compact JSON text.

    Returns
    -------
    str
        JSON line without a trailing newline.
    """
    # payload is already JSON, splice it in rather than decoding it again
    head = json.dumps({"custom_id": custom_id, "method": "POST", "url": endpoint})
    return f'{head[:-1]}, "body": {payload}}}'


def line_size(*, custom_id: str, endpoint: str, payload: str) -> int:
    """Bytes the request occupies in the input file, newline included."""
    return len(render_jsonl_line(custom_id=custom_id, endpoint=endpoint, payload=payload).encode()) + 1


def batch_dir(storage_path: Path, batch_id: int) -> Path:
    return storage_path / str(batch_id)


def batch_file_path(storage_path: Path, batch_id: int) -> Path:
    return batch_dir(storage_path, batch_id) / f"batch_{batch_id}.jsonl"


def write_batch_file(
    session: "Session",
    *,
    batch_id: int,
    storage_path: Path,
    chunk_size: int = 1000,
) -> tuple[Path, int]:
    """
    Stream the batch's pending requests into its JSONL input file.

    Parameters
    ----------
    session : Session
        Session used to read requests.
    batch_id : int
        Batch id.
    storage_path : Path
        Root scratch directory.
    chunk_size : int
        Rows fetched per round trip.

    Returns
    -------
    tuple[Path, int]
        The file path and the number of lines written.
    """
    path = batch_file_path(storage_path, batch_id)
    path.parent.mkdir(parents=True, exist_ok=True)
    stmt = (
        select(Request.custom_id, Request.endpoint, Request.payload)
        .where(Request.batch_id == batch_id, Request.state == RequestState.PENDING)
        .order_by(Request.id)
        .execution_options(yield_per=chunk_size)
    )
    count = 0
    with path.open("w", encoding="utf-8") as f:
        for custom_id, endpoint, payload in session.execute(stmt):
            f.write(render_jsonl_line(custom_id=custom_id, endpoint=endpoint, payload=payload))
            f.write("\n")
            count += 1
    log.debug(event="Wrote batch file", batch_id=batch_id, path=str(path), line_count=count)
    return path, count


def remove_batch_dir(storage_path: Path, batch_id: int) -> None:
    directory = batch_dir(storage_path, batch_id)
    if directory.exists():
        shutil.rmtree(directory, ignore_errors=True)
        log.debug(event="Removed batch scratch directory", batch_id=batch_id, path=str(directory))
