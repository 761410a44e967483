from __future__ import annotations

import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from uuid import UUID

from .artifacts import ArtifactStore
from .errors import ArtifactNotReadyError, JobNotFoundError
from .job_queue import JobQueue
from .storage import append_event, read_events
from .types import ArtifactInfo, JobStatus, RenderJob, StatusPayload


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def estimate_remaining_seconds(job: RenderJob, *, now: datetime | None = None) -> float | None:
    if job.status == JobStatus.succeeded:
        return 0.0
    if job.status != JobStatus.running or job.started_at is None:
        return None
    if job.chunks_done <= 0 or job.chunks_total <= 0:
        return None
    elapsed = ((now or now_utc()) - job.started_at).total_seconds()
    per_chunk = max(0.0, elapsed) / job.chunks_done
    return round(per_chunk * max(0, job.chunks_total - job.chunks_done), 1)


def status_payload(job: RenderJob, *, now: datetime | None = None) -> StatusPayload:
    return StatusPayload(
        job_id=job.id,
        assessment_id=job.assessment_id,
        status=job.status,
        message=job.message,
        progress=round(job.progress, 4),
        chunks_total=job.chunks_total,
        chunks_done=job.chunks_done,
        estimated_remaining_seconds=estimate_remaining_seconds(job, now=now),
        error=job.error,
        artifact_ready=job.status == JobStatus.succeeded and job.artifact is not None,
        attempt=job.attempt,
        routing=job.routing,
        estimate=job.estimate,
        requested_at=job.requested_at,
        started_at=job.started_at,
        finished_at=job.finished_at,
        updated_at=job.updated_at,
    )


class StatusStore:
    """Read side of job state plus the per-job event log."""

    def __init__(self, queue: JobQueue, artifacts: ArtifactStore, jobs_root: Path):
        self.queue = queue
        self.artifacts = artifacts
        self.jobs_root = jobs_root
        # chunk threads and pool workers share one event log per job
        self._events_lock = threading.Lock()

    def get_job(self, job_id: UUID | str) -> RenderJob:
        try:
            job = self.queue.get(job_id)
        except ValueError:
            job = None
        if job is None:
            raise JobNotFoundError(f'Job not found: {job_id}', detail={'job_id': str(job_id)})
        return job

    def get_status(self, job_id: UUID | str) -> StatusPayload:
        return status_payload(self.get_job(job_id))

    def get_artifact(self, job_id: UUID | str) -> ArtifactInfo:
        job = self.get_job(job_id)
        if job.status != JobStatus.succeeded or job.artifact is None:
            raise ArtifactNotReadyError(
                f'Job {job.id} has no artifact (status={job.status.value}).',
                detail={'job_id': str(job.id), 'status': job.status.value},
            )
        self.artifacts.open_path(job.artifact)
        return job.artifact

    def record_event(self, job_id: UUID | str, event: str, **extra: Any) -> None:
        with self._events_lock:
            append_event(self.jobs_root, job_id, event, **extra)

    def events(self, job_id: UUID | str) -> list[dict[str, Any]]:
        self.get_job(job_id)
        with self._events_lock:
            return read_events(self.jobs_root, job_id)
