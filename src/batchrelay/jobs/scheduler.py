from __future__ import annotations

import asyncio
import typing as t
from dataclasses import dataclass
from datetime import datetime

import structlog
from structlog.contextvars import bind_contextvars, unbind_contextvars

from batchrelay.exceptions import InvalidTransition, ProviderAuthError, ProviderClientError

if t.TYPE_CHECKING:
    from batchrelay.db.models import Job
    from batchrelay.jobs.queue import JobQueue
    from batchrelay.settings import Settings

log = structlog.get_logger(__name__)

JobHandler = t.Callable[["Job"], t.Awaitable[None]]
CronTask = t.Callable[[], t.Awaitable[t.Any]]

# Errors that will not go away by running the job again
PERMANENT_ERRORS: tuple[type[Exception], ...] = (InvalidTransition,)


@dataclass
class _Cron:
    name: str
    interval: float
    task: CronTask


class Scheduler:
    """
    Run queued jobs and periodic sweeps on the current event loop.

    Parameters
    ----------
    queue : JobQueue
        Queue to claim jobs from.
    settings : Settings
        Worker concurrency and queue polling interval.
    """

    def __init__(self, queue: "JobQueue", settings: "Settings") -> None:
        self.queue = queue
        self.concurrency = settings.worker_concurrency
        self.poll_interval = settings.job_poll_interval_seconds
        self._handlers: dict[str, JobHandler] = {}
        self._crons: list[_Cron] = []
        self._tasks: list[asyncio.Task] = []
        self._stopping = asyncio.Event()

    def register(self, kind: str, handler: JobHandler) -> None:
        self._handlers[str(kind)] = handler

    def add_cron(self, name: str, interval: float, task: CronTask) -> None:
        self._crons.append(_Cron(name=name, interval=interval, task=task))

    async def run_job(self, job: "Job") -> None:
        """
        Dispatch one claimed job and record its outcome in the queue.
        """
        handler = self._handlers.get(job.kind)
        if handler is None:
            self.queue.discard(job.id, f"no handler for job kind '{job.kind}'")
            log.error(event="No handler for job", job_id=job.id, kind=job.kind)
            return
        bind_contextvars(
            job_id=job.id, job_kind=job.kind, batch_id=job.batch_id, request_id=job.request_id
        )
        try:
            await handler(job)
        except asyncio.CancelledError:
            self.queue.fail(job.id, "worker cancelled")
            raise
        except ProviderAuthError as e:
            log.error(event="Provider rejected credentials, job will retry", error=str(e))
            self.queue.fail(job.id, str(e))
        except ProviderClientError as e:
            log.error(event="Provider refused job request", error=str(e), status_code=e.status_code)
            self.queue.discard(job.id, str(e))
        except PERMANENT_ERRORS as e:
            log.warning(event="Discarded job", error=str(e))
            self.queue.discard(job.id, str(e))
        except Exception as e:
            log.warning(event="Job failed", attempt=job.attempt, error=repr(e))
            self.queue.fail(job.id, repr(e))
        else:
            self.queue.complete(job.id)
        finally:
            unbind_contextvars("job_id", "job_kind", "batch_id", "request_id")

    async def run_once(self, limit: int | None = None, *, now: datetime | None = None) -> int:
        """
        Claim and run the currently due jobs sequentially.

        Parameters
        ----------
        limit : int | None
            Maximum number of jobs, worker concurrency by default.
        now : datetime | None
            Clock used to decide which jobs are due.

        Returns
        -------
        int
            Number of jobs run.
        """
        jobs = self.queue.claim(limit or self.concurrency, now=now)
        for job in jobs:
            await self.run_job(job)
        return len(jobs)

    async def drain(self, *, max_rounds: int = 100, now: datetime | None = None) -> int:
        """Run due jobs until none are left, including jobs they enqueue."""
        total = 0
        for _ in range(max_rounds):
            ran = await self.run_once(now=now)
            if not ran:
                break
            total += ran
        return total

    async def _worker(self, index: int) -> None:
        while not self._stopping.is_set():
            jobs = self.queue.claim(1)
            if not jobs:
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
                except TimeoutError:
                    pass
                continue
            await self.run_job(jobs[0])

    async def _cron_loop(self, cron: _Cron) -> None:
        while not self._stopping.is_set():
            try:
                await cron.task()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.error(event="Periodic task failed", task=cron.name, error=repr(e))
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=cron.interval)
            except TimeoutError:
                pass

    async def start(self) -> None:
        if self._tasks:
            return
        self._stopping.clear()
        for index in range(self.concurrency):
            self._tasks.append(asyncio.create_task(self._worker(index), name=f"job_worker_{index}"))
        for cron in self._crons:
            self._tasks.append(asyncio.create_task(self._cron_loop(cron), name=f"cron_{cron.name}"))
        log.info(event="Scheduler started", workers=self.concurrency, crons=len(self._crons))

    async def stop(self) -> None:
        self._stopping.set()
        tasks, self._tasks = self._tasks, []
        if not tasks:
            return
        done, pending = await asyncio.wait(tasks, timeout=self.poll_interval + 5)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        log.info(event="Scheduler stopped")
