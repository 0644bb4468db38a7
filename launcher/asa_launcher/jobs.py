"""
jobs.py - in-memory tracking of long-running operations
-------------------------------------------------------
Status moves forward only: pending -> running -> completed | failed.
Progress messages are append-only. Every state change is published to
the registered hooks; a failing hook is logged and ignored.

Jobs live in memory only. A launcher restart loses them.
"""

from __future__ import annotations
import asyncio
import threading
import uuid
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .errors import JobStateError, NotFoundError
from .models import Job, JobEvent, JobStatus, ProgressEntry, utcnow
from .logging_setup import get_logger

log = get_logger("asa.launcher.jobs")

JobHook = Callable[[JobEvent], None]

_ALLOWED = {
    JobStatus.pending: {JobStatus.running},
    JobStatus.running: {JobStatus.completed, JobStatus.failed},
    JobStatus.completed: set(),
    JobStatus.failed: set(),
}


def to_event(job: Job) -> JobEvent:
    if job.status == JobStatus.completed:
        pct = 100
    elif job.status == JobStatus.failed:
        pct = 0
    elif job.percent is not None:
        pct = job.percent
    else:
        pct = 0 if job.status == JobStatus.pending else 50
    return JobEvent(
        jobId=job.id,
        status=job.status,
        progress=pct,
        message=job.progress[-1].message if job.progress else None,
        result=job.result,
        error=job.error,
    )


class JobContext:
    """Progress sink handed to one job's operation."""

    def __init__(self, manager: "JobManager", job_id: str):
        self.manager = manager
        self.job_id = job_id

    def __call__(self, message: str, percent: Optional[int] = None) -> None:
        self.manager.add_progress(self.job_id, message, percent=percent)


JobOperation = Callable[[JobContext], Awaitable[Any]]


class JobManager:
    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self._jobs: Dict[str, Job] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._hooks: List[JobHook] = []
        # hooks run under the lock so observers see events in production order
        self._lock = threading.RLock()

    def add_hook(self, hook: JobHook) -> None:
        with self._lock:
            self._hooks.append(hook)

    def remove_hook(self, hook: JobHook) -> None:
        with self._lock:
            if hook in self._hooks:
                self._hooks.remove(hook)

    def _publish(self, job: Job) -> None:
        event = to_event(job)
        for hook in list(self._hooks):
            try:
                hook(event)
            except Exception:
                log.exception("Job hook failed for %s", job.id)

    def _get(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id!r} not found")
        return job

    def create_job(self, type: str, metadata: Optional[Dict[str, Any]] = None) -> Job:
        now = self.clock()
        job = Job(id=uuid.uuid4().hex[:12], type=type, metadata=dict(metadata or {}),
                  created_at=now, updated_at=now)
        with self._lock:
            self._jobs[job.id] = job
            self._publish(job)
            log.info("Created job %s of type %s", job.id, type, extra={"job_id": job.id})
            return job.model_copy(deep=True)

    def update_job(self, job_id: str, patch: Dict[str, Any]) -> Job:
        unknown = set(patch) - {"status", "result", "error", "metadata", "percent"}
        if unknown:
            raise JobStateError(f"Cannot update job fields: {sorted(unknown)}")
        with self._lock:
            job = self._get(job_id)
            if job.status.terminal:
                raise JobStateError(f"Job {job_id} is already {job.status.value}")
            if "status" in patch:
                new = JobStatus(patch["status"])
                if new != job.status and new not in _ALLOWED[job.status]:
                    raise JobStateError(f"Illegal transition {job.status.value} -> {new.value} for job {job_id}")
                job.status = new
            if "result" in patch:
                job.result = patch["result"]
            if "error" in patch:
                job.error = patch["error"]
            if "metadata" in patch:
                job.metadata.update(patch["metadata"] or {})
            if "percent" in patch:
                job.percent = patch["percent"]
            job.updated_at = self.clock()
            self._publish(job)
            log.info("Updated job %s: %s", job_id, job.status.value, extra={"job_id": job_id})
            return job.model_copy(deep=True)

    def add_progress(self, job_id: str, message: str, *, percent: Optional[int] = None) -> Job:
        with self._lock:
            job = self._get(job_id)
            if job.status.terminal:
                raise JobStateError(f"Job {job_id} is already {job.status.value}")
            job.progress.append(ProgressEntry(timestamp=self.clock(), message=message))
            if percent is not None:
                job.percent = max(0, min(100, int(percent)))
            job.updated_at = self.clock()
            self._publish(job)
            log.info("Job %s progress: %s", job_id, message, extra={"job_id": job_id})
            return job.model_copy(deep=True)

    def get_job(self, job_id: str) -> Job:
        with self._lock:
            return self._get(job_id).model_copy(deep=True)

    def list_jobs(self, *, type: Optional[str] = None, status: Optional[JobStatus] = None) -> List[Job]:
        with self._lock:
            jobs = [j.model_copy(deep=True) for j in self._jobs.values()
                    if (type is None or j.type == type) and (status is None or j.status == status)]
        return sorted(jobs, key=lambda j: j.created_at, reverse=True)

    def prune_jobs(self, max_age: timedelta = timedelta(hours=24)) -> int:
        cutoff = self.clock() - max_age
        with self._lock:
            stale = [jid for jid, j in self._jobs.items() if j.status.terminal and j.updated_at < cutoff]
            for jid in stale:
                del self._jobs[jid]
                self._tasks.pop(jid, None)
        if stale:
            log.info("Pruned %d old jobs", len(stale))
        return len(stale)

    # --- execution ---

    def submit(self, type: str, metadata: Optional[Dict[str, Any]], operation: JobOperation) -> Job:
        """Create a job and run `operation` in the background. Returns immediately."""
        job = self.create_job(type, metadata)
        task = asyncio.get_running_loop().create_task(self._run(job.id, operation))
        self._tasks[job.id] = task
        return job

    async def _run(self, job_id: str, operation: JobOperation) -> None:
        self.update_job(job_id, {"status": JobStatus.running})
        ctx = JobContext(self, job_id)
        try:
            result = await operation(ctx)
        except Exception as e:
            log.exception("Job %s failed", job_id, extra={"job_id": job_id})
            self.update_job(job_id, {"status": JobStatus.failed, "error": str(e) or type(e).__name__})
            return
        if hasattr(result, "model_dump"):
            result = result.model_dump(mode="json")
        elif isinstance(result, list):
            result = [r.model_dump(mode="json") if hasattr(r, "model_dump") else r for r in result]
        self.update_job(job_id, {"status": JobStatus.completed, "result": result})

    async def wait(self, job_id: str) -> Job:
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.shield(task)
        return self.get_job(job_id)
