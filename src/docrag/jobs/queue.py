"""Bounded-concurrency background job queue on asyncio.

Jobs are promoted from a FIFO backlog whenever a job is added or a running
job terminates; there is no polling loop. All bookkeeping happens on the
event loop thread, so job state needs no lock.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Awaitable, Callable, Deque, Dict, List, Mapping, Optional

from docrag.errors import DocRagError, DocumentNotFound, JobNotFound
from docrag.models import DocumentState, Job, JobStatus, utcnow
from docrag.status import DocumentStatusTracker

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT = 2
DEFAULT_RETENTION_SECONDS = 60 * 60

ProgressCallback = Callable[[int, str, Optional[DocumentState]], None]
JobHandler = Callable[[Job, ProgressCallback], Awaitable[Dict[str, Any]]]


def _copy(job: Job) -> Job:
    return replace(
        job,
        metadata=dict(job.metadata),
        result=dict(job.result) if job.result is not None else None,
    )


class JobQueue:
    """Runs at most ``max_concurrent`` jobs at once, oldest first."""

    def __init__(
        self,
        handler: JobHandler,
        *,
        tracker: DocumentStatusTracker | None = None,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self._handler = handler
        self._tracker = tracker
        self.max_concurrent = max_concurrent
        self.retention_seconds = retention_seconds
        self._jobs: Dict[str, Job] = {}
        self._backlog: Deque[str] = deque()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._done: Dict[str, asyncio.Event] = {}
        self._closed = False

    @property
    def processing_count(self) -> int:
        return len(self._tasks)

    def add_job(
        self,
        document_id: str,
        file_path: Path | str,
        metadata: Mapping[str, Any] | None = None,
    ) -> str:
        """Enqueue an ingestion job and start it if a slot is free.

        Must be called from a running event loop.
        """
        if self._closed:
            raise RuntimeError("Job queue is stopped")
        job = Job(
            id=uuid.uuid4().hex,
            document_id=document_id,
            file_path=Path(file_path),
            metadata=dict(metadata or {}),
            status_message="Queued for processing",
        )
        self._jobs[job.id] = job
        self._done[job.id] = asyncio.Event()
        self._backlog.append(job.id)
        LOGGER.info("Queued job %s for document %s", job.id, document_id)
        self._process_next()
        return job.id

    def get_job(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return _copy(job)

    def list_jobs(self) -> List[Job]:
        return [_copy(job) for job in self._jobs.values()]

    def get_stats(self) -> Dict[str, int]:
        stats = {status.value: 0 for status in JobStatus}
        for job in self._jobs.values():
            stats[job.status.value] += 1
        return {"total": len(self._jobs), **stats, "capacity": self.max_concurrent}

    async def wait_for(self, job_id: str, timeout: float | None = None) -> Job:
        """Wait until ``job_id`` is completed or failed and return its snapshot."""
        if job_id not in self._jobs:
            raise JobNotFound(job_id)
        event = self._done.get(job_id)
        if event is not None:
            await asyncio.wait_for(event.wait(), timeout)
        return self.get_job(job_id)

    def cancel_document(self, document_id: str, reason: str = "Document deleted") -> int:
        """Fail every unfinished job for ``document_id``; running ones are cancelled.

        Returns the number of jobs failed.
        """
        failed = 0
        for job in list(self._jobs.values()):
            if job.document_id != document_id or job.is_terminal:
                continue
            task = self._tasks.pop(job.id, None)
            if task is not None:
                task.cancel()
            self._finish(job, error=reason)
            failed += 1
        if failed:
            LOGGER.info("Cancelled %d job(s) for document %s: %s", failed, document_id, reason)
            self._process_next()
        return failed

    def cleanup(self, now: datetime | None = None) -> int:
        """Forget terminal jobs that finished more than the retention window ago."""
        cutoff = (now or utcnow()) - timedelta(seconds=self.retention_seconds)
        expired = [
            job_id
            for job_id, job in self._jobs.items()
            if job.is_terminal and job.completed_at is not None and job.completed_at < cutoff
        ]
        for job_id in expired:
            del self._jobs[job_id]
            self._done.pop(job_id, None)
        if expired:
            LOGGER.info("Cleaned up %d old jobs", len(expired))
        return len(expired)

    async def stop(self) -> None:
        """Fail queued jobs and cancel running ones."""
        self._closed = True
        while self._backlog:
            job = self._jobs.get(self._backlog.popleft())
            if job is not None and job.status is JobStatus.QUEUED:
                self._finish(job, error="Job queue stopped before the job started")
        running = dict(self._tasks)
        for task in running.values():
            task.cancel()
        if running:
            await asyncio.gather(*running.values(), return_exceptions=True)
        # Tasks cancelled before their first step never reach _run_job.
        for job_id in running:
            self._tasks.pop(job_id, None)
            job = self._jobs.get(job_id)
            if job is not None:
                self._finish(job, error="Job cancelled")

    def _process_next(self) -> None:
        while not self._closed and self._backlog and self.processing_count < self.max_concurrent:
            job = self._jobs.get(self._backlog.popleft())
            if job is None or job.status is not JobStatus.QUEUED:
                continue
            job.status = JobStatus.PROCESSING
            job.started_at = utcnow()
            job.status_message = "Processing started"
            self._tasks[job.id] = asyncio.create_task(self._run_job(job), name=f"job-{job.id}")
            LOGGER.info(
                "Started job %s (%d/%d slots in use)", job.id, self.processing_count, self.max_concurrent
            )

    def _reporter(self, job: Job) -> ProgressCallback:
        def report(progress: int, message: str = "", state: DocumentState | None = None) -> None:
            if job.is_terminal:
                return
            job.progress = max(job.progress, min(max(int(progress), 0), 100))
            if message:
                job.status_message = message
            if self._tracker is not None:
                if state is not None:
                    self._tracker.set_status(job.document_id, state)
                self._tracker.update_progress(job.document_id, job.progress, message or None)

        return report

    async def _run_job(self, job: Job) -> None:
        try:
            if self._tracker is not None:
                if not self._tracker.has_status(job.document_id):
                    raise DocumentNotFound(job.document_id)
                self._tracker.set_status(job.document_id, DocumentState.PROCESSING)
            result = await self._handler(job, self._reporter(job))
        except asyncio.CancelledError:
            self._finish(job, error="Job cancelled")
            raise
        except Exception as exc:
            LOGGER.error("Job %s for document %s failed: %s", job.id, job.document_id, exc)
            self._finish(job, error=str(exc) or type(exc).__name__)
        else:
            self._finish(job, result=result)
        finally:
            self._tasks.pop(job.id, None)
            self._process_next()

    def _finish(
        self,
        job: Job,
        *,
        result: Dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        if job.is_terminal:
            return
        job.completed_at = utcnow()
        if error is None:
            job.status = JobStatus.COMPLETED
            job.progress = 100
            job.result = result or {}
            job.status_message = "Completed"
        else:
            job.status = JobStatus.FAILED
            job.error = error
            job.status_message = "Failed"
        self._sync_tracker(job)
        event = self._done.get(job.id)
        if event is not None:
            event.set()
        if job.status is JobStatus.COMPLETED:
            LOGGER.info("Job %s completed", job.id)

    def _sync_tracker(self, job: Job) -> None:
        tracker = self._tracker
        # A missing record means the document was deleted while the job ran.
        if tracker is None or not tracker.has_status(job.document_id):
            return
        try:
            if job.status is JobStatus.COMPLETED:
                tracker.mark_completed(job.document_id, job.result)
            else:
                tracker.mark_error(job.document_id, job.error or "Unknown error")
        except DocRagError as exc:
            LOGGER.warning("Could not record outcome of job %s: %s", job.id, exc)
