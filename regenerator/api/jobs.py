from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from .config import DEFAULT_CONCURRENCY, DEFAULT_JOB_TIMEOUT_SECONDS
from .models import ACTIVE_STATUSES, AnalysisResult, JobRecord, PageRecord

logger = logging.getLogger("regenerator.jobs")

TRANSITIONS: Dict[str, Set[str]] = {
    "idle": {"queued"},
    "queued": {"scanning", "idle"},
    "scanning": {"optimizing", "error"},
    "optimizing": {"review_pending", "error"},
    "review_pending": {"published", "queued"},
    "published": {"queued"},
    "error": {"queued"},
}
STOPPED_MESSAGE = "Processing stopped."
LOG_LIMIT = 50

Advance = Callable[..., None]
JobHandler = Callable[[JobRecord, Advance], Awaitable[AnalysisResult]]


class JobError(RuntimeError):
    pass


class JobNotFound(JobError):
    pass


def _now() -> datetime:
    return datetime.now(timezone.utc)


def timeout_message(timeout_seconds: float) -> str:
    return f"Timeout ({timeout_seconds / 60:g}min Exceeded)"


class JobQueue:
    """FIFO of page ids drained by a bounded pool of asyncio workers.

    ``handler(job, advance)`` does the work for one page; it calls
    ``advance("optimizing", **fields)`` once the page is scanned and returns
    the analysis. Each run is bounded by ``timeout_seconds``. All methods must
    be called from the event loop that runs the workers.
    """

    def __init__(
        self,
        handler: JobHandler,
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
        timeout_seconds: float = DEFAULT_JOB_TIMEOUT_SECONDS,
    ):
        if concurrency < 1:
            raise JobError("Concurrency must be at least 1.")
        self._handler = handler
        self.concurrency = concurrency
        self.timeout_seconds = timeout_seconds
        self.jobs: Dict[int, JobRecord] = {}
        self._queue: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []
        self._subscribers: List[asyncio.Queue] = []
        self.active_count = 0
        self.peak_active = 0

    # Records

    def register(self, page: PageRecord) -> JobRecord:
        existing = self.jobs.get(page.id)
        if existing is not None:
            job = existing.model_copy(update={"title": page.title, "slug": page.slug})
        else:
            job = JobRecord(page_id=page.id, title=page.title, slug=page.slug, updated_at=_now())
        self.jobs[page.id] = job
        return job

    def get(self, page_id: int) -> JobRecord:
        job = self.jobs.get(page_id)
        if job is None:
            raise JobNotFound(f"Unknown page id {page_id}.")
        return job

    def list_jobs(self) -> List[JobRecord]:
        return list(self.jobs.values())

    def store(self, job: JobRecord) -> JobRecord:
        """Replace a record without a status change (review edits)."""
        current = self.get(job.page_id)
        if job.status != current.status:
            raise JobError(f"Use a transition to change status of page {job.page_id}.")
        updated = job.model_copy(update={"updated_at": _now()})
        self.jobs[job.page_id] = updated
        self._emit(updated)
        return updated

    def transition(self, page_id: int, status: str, *, message: str = "", **fields: Any) -> JobRecord:
        job = self.get(page_id)
        if status not in TRANSITIONS.get(job.status, set()):
            raise JobError(f"Invalid transition {job.status} -> {status} for page {page_id}.")
        log = (job.log + [f"{job.status} -> {status}" + (f": {message}" if message else "")])[-LOG_LIMIT:]
        updated = job.model_copy(update={**fields, "status": status, "log": log, "updated_at": _now()})
        self.jobs[page_id] = updated
        logger.info("jobs.transition page_id=%s from=%s to=%s", page_id, job.status, status)
        self._emit(updated)
        return updated

    # Events

    def subscribe(self) -> asyncio.Queue:
        subscriber: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(subscriber)
        return subscriber

    def unsubscribe(self, subscriber: asyncio.Queue) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    def _emit(self, job: JobRecord) -> None:
        event = {"page_id": job.page_id, "status": job.status, "error": job.error}
        for subscriber in list(self._subscribers):
            subscriber.put_nowait(event)

    # Queue

    def enqueue(self, page_ids: Iterable[int]) -> List[JobRecord]:
        pending = self._ensure_workers()
        queued: List[JobRecord] = []
        for page_id in page_ids:
            job = self.jobs.get(page_id)
            if job is None:
                job = self.register(PageRecord(id=page_id))
            if job.status == "queued" or job.status in ACTIVE_STATUSES:
                logger.info("jobs.enqueue_skipped page_id=%s status=%s", page_id, job.status)
                continue
            queued.append(self.transition(page_id, "queued", error=None))
            pending.put_nowait(page_id)
        return queued

    def _ensure_workers(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue()
        pending = self._queue
        self._workers = [worker for worker in self._workers if not worker.done()]
        while len(self._workers) < self.concurrency:
            index = len(self._workers)
            self._workers.append(asyncio.get_running_loop().create_task(self._worker(pending, index)))
        return pending

    async def _worker(self, pending: asyncio.Queue, index: int) -> None:
        while True:
            page_id = await pending.get()
            try:
                if self.jobs.get(page_id) and self.jobs[page_id].status == "queued":
                    await self._run_job(page_id)
            except Exception:
                logger.exception("jobs.worker.loop_error worker=%s page_id=%s", index, page_id)
            finally:
                pending.task_done()

    async def _run_job(self, page_id: int) -> None:
        job = self.transition(page_id, "scanning")
        self.active_count += 1
        self.peak_active = max(self.peak_active, self.active_count)

        def advance(status: str, **fields: Any) -> None:
            self.transition(page_id, status, **fields)

        try:
            analysis = await asyncio.wait_for(self._handler(job, advance), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            message = timeout_message(self.timeout_seconds)
            logger.warning("jobs.timeout page_id=%s timeout=%ss", page_id, self.timeout_seconds)
            self._fail(page_id, message)
        except asyncio.CancelledError:
            self._fail(page_id, STOPPED_MESSAGE)
            raise
        except Exception as exc:
            logger.exception("jobs.failed page_id=%s", page_id)
            self._fail(page_id, str(exc) or exc.__class__.__name__)
        else:
            if self.jobs[page_id].status == "scanning":
                self.transition(page_id, "optimizing")
            self.transition(
                page_id,
                "review_pending",
                analysis=analysis,
                draft_html=analysis.final_html,
                error=None,
            )
        finally:
            self.active_count -= 1

    def _fail(self, page_id: int, message: str) -> None:
        job = self.jobs.get(page_id)
        if job is None or job.status not in ACTIVE_STATUSES:
            return
        self.transition(page_id, "error", message=message, error=message)

    async def join(self) -> None:
        if self._queue is not None:
            await self._queue.join()

    async def stop(self) -> int:
        """Drop queued jobs back to idle and abandon in-flight runs."""
        drained = 0
        if self._queue is not None:
            while True:
                try:
                    page_id = self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    break
                self._queue.task_done()
                if self.jobs.get(page_id) and self.jobs[page_id].status == "queued":
                    self.transition(page_id, "idle", message=STOPPED_MESSAGE)
                    drained += 1

        workers, self._workers = self._workers, []
        for worker in workers:
            worker.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        self._queue = None
        logger.info("jobs.stopped drained=%s cancelled_workers=%s", drained, len(workers))
        return drained
