from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable
from uuid import UUID

from .artifacts import ArtifactStore
from .assessments import AssessmentStore
from .config import Settings, get_settings, prepare_dirs
from .errors import InvalidJobStateError
from .job_queue import JobQueue
from .notify import Notifier, build_notifier
from .report.renderers import ChunkRenderer, build_renderer
from .runner import RenderWorker, WorkerPool
from .state import StatusStore
from .storage import remove_tree
from .submit import JobSubmitter
from .types import JobStatus, OutputFormat, RenderJob, Routing
from .watchdog import Watchdog


logger = logging.getLogger(__name__)


@dataclass
class PurgeReport:
    artifacts_removed: int
    jobs_removed: int


class ReportService:
    """Wires the submitter, queue, stores, workers and watchdog from one ``Settings``."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        notifier: Notifier | None = None,
        renderer_factory: Callable[[OutputFormat, Settings], ChunkRenderer] = build_renderer,
    ):
        self.settings = prepare_dirs(settings) if settings is not None else get_settings()
        self.assessments = AssessmentStore(self.settings.assessments_dir())
        self.queue = JobQueue(self.settings.queue_path())
        self.artifacts = ArtifactStore(
            self.settings.artifacts_dir(),
            retention_hours=self.settings.artifact_retention_hours,
        )
        self.status = StatusStore(self.queue, self.artifacts, self.settings.jobs_dir())
        self.notifier = notifier or build_notifier(self.settings)
        self.renderer_factory = renderer_factory
        self.submitter = JobSubmitter(
            self.settings,
            assessments=self.assessments,
            queue=self.queue,
            artifacts=self.artifacts,
            status=self.status,
            renderer_factory=renderer_factory,
        )
        self.watchdog = Watchdog(self.settings, queue=self.queue, status=self.status, notifier=self.notifier)

    # submission
    def estimate(self, assessment_id: str):
        return self.submitter.estimate(assessment_id)[1]

    def submit(self, assessment_id: str, **kwargs):
        return self.submitter.submit(assessment_id, **kwargs)

    # status
    def get_status(self, job_id: UUID | str):
        return self.status.get_status(job_id)

    def get_artifact(self, job_id: UUID | str):
        return self.status.get_artifact(job_id)

    def list_jobs(self, *, status: JobStatus | None = None, limit: int = 50) -> list[RenderJob]:
        return self.queue.list_jobs(status=status, limit=limit)

    def cancel(self, job_id: UUID | str) -> RenderJob:
        self.status.get_job(job_id)
        job = self.queue.request_cancel(job_id)
        self.status.record_event(job.id, 'cancel_requested', status=job.status.value)
        if job.status == JobStatus.cancelled:
            self.notifier.notify(job)
        return job

    def retry(self, job_id: UUID | str, *, priority: int | None = None) -> RenderJob:
        """Queue a fresh job for a failed one; the failed job keeps its history."""
        previous = self.status.get_job(job_id)
        if not previous.status.is_failure:
            raise InvalidJobStateError(
                f'Only failed, timed-out or cancelled jobs can be retried (status={previous.status.value}).',
                detail={'job_id': str(previous.id), 'status': previous.status.value},
            )
        _, estimate = self.submitter.estimate(previous.assessment_id)
        job = self.submitter.enqueue_job(
            RenderJob(
                assessment_id=previous.assessment_id,
                title=previous.title,
                estimate=estimate,
                routing=Routing.async_,
                output_format=previous.output_format,
                priority=previous.priority if priority is None else priority,
                retry_of=previous.id,
            )
        )
        self.status.record_event(previous.id, 'retried', new_job_id=str(job.id))
        return job

    def stats(self) -> dict[str, int]:
        return self.queue.stats()

    # workers
    def make_worker(self, worker_id: str | None = None) -> RenderWorker:
        return RenderWorker(
            self.settings,
            queue=self.queue,
            status=self.status,
            assessments=self.assessments,
            artifacts=self.artifacts,
            notifier=self.notifier,
            worker_id=worker_id,
            renderer_factory=self.renderer_factory,
        )

    def make_pool(self, size: int | None = None) -> WorkerPool:
        count = max(1, int(size or self.settings.worker_concurrency))
        return WorkerPool([self.make_worker() for _ in range(count)])

    def drain(self, *, max_jobs: int | None = None) -> list[RenderJob]:
        """Process queued jobs in this thread until the queue is empty."""
        worker = self.make_worker()
        processed: list[RenderJob] = []
        while max_jobs is None or len(processed) < max_jobs:
            job = worker.run_once()
            if job is None:
                break
            processed.append(job)
        return processed

    # retention
    def purge(self) -> PurgeReport:
        removed = self.artifacts.purge_expired()
        cutoff = time.time() - self.settings.artifact_retention_hours * 3600
        job_ids = self.queue.delete_finished_before(cutoff)
        for job_id in job_ids:
            remove_tree(self.settings.jobs_dir() / job_id)
            self.artifacts.delete(job_id)
        logger.info('Purged %s artifacts and %s jobs', len(removed), len(job_ids))
        return PurgeReport(artifacts_removed=len(removed), jobs_removed=len(job_ids))
