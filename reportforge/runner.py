from __future__ import annotations

import logging
import os
import socket
import threading
import time
import traceback
from typing import Callable
from uuid import uuid4

from .artifacts import ArtifactStore
from .assessments import AssessmentStore
from .config import Settings
from .errors import CancellationError, ReportForgeError, RenderTimeoutError
from .job_queue import JobQueue
from .notify import Notifier
from .pipeline import ChunkPipeline, PipelineHooks, layout_chunks
from .report.renderers import ChunkRenderer, RenderContext, build_renderer
from .state import StatusStore
from .storage import attempt_dir, remove_tree
from .types import JobError, JobStatus, OutputFormat, RenderJob


logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    return f'{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:6]}'


class _Heartbeat(threading.Thread):
    """Extends the job lease until stopped; flags ``lost`` once the claim is gone."""

    def __init__(self, queue: JobQueue, job: RenderJob, worker_id: str, *, lease_seconds: float, interval: float):
        super().__init__(name=f'heartbeat-{job.id}', daemon=True)
        self.queue = queue
        self.job_id = job.id
        self.worker_id = worker_id
        self.lease_seconds = lease_seconds
        self.interval = max(0.05, interval)
        self.stopped = threading.Event()
        self.lost = threading.Event()

    def run(self) -> None:
        try:
            while not self.stopped.wait(self.interval):
                if not self.queue.heartbeat(self.job_id, self.worker_id, lease_seconds=self.lease_seconds):
                    logger.warning('Worker %s lost its claim on job %s', self.worker_id, self.job_id)
                    self.lost.set()
                    return
        except Exception:
            logger.exception('Heartbeat for job %s crashed', self.job_id)
            self.lost.set()
        finally:
            self.queue.close()

    def stop(self) -> None:
        self.stopped.set()
        if self.is_alive():
            self.join(timeout=self.interval + 1)


def _job_error(exc: Exception) -> JobError:
    if isinstance(exc, ReportForgeError):
        return JobError(
            kind=exc.kind,
            message=exc.message,
            chunk_index=getattr(exc, 'chunk_index', None),
            detail=exc.detail,
        )
    detail = ''.join(traceback.format_exception_only(type(exc), exc)).strip()
    return JobError(kind='InternalError', message=detail)


def _failure_status(exc: Exception) -> JobStatus:
    if isinstance(exc, RenderTimeoutError):
        return JobStatus.timed_out
    if isinstance(exc, CancellationError):
        return JobStatus.cancelled
    return JobStatus.failed


class RenderWorker:
    def __init__(
        self,
        settings: Settings,
        *,
        queue: JobQueue,
        status: StatusStore,
        assessments: AssessmentStore,
        artifacts: ArtifactStore,
        notifier: Notifier,
        worker_id: str | None = None,
        renderer_factory: Callable[[OutputFormat, Settings], ChunkRenderer] = build_renderer,
    ):
        self.settings = settings
        self.queue = queue
        self.status = status
        self.assessments = assessments
        self.artifacts = artifacts
        self.notifier = notifier
        self.worker_id = worker_id or default_worker_id()
        self.renderer_factory = renderer_factory

    def run_once(self) -> RenderJob | None:
        job = self.queue.claim(self.worker_id, lease_seconds=self.settings.lease_seconds)
        if job is None:
            return None
        return self.process(job)

    def run_forever(self, stop: threading.Event) -> None:
        logger.info('Worker %s started', self.worker_id)
        try:
            while not stop.is_set():
                try:
                    job = self.run_once()
                except Exception:
                    logger.exception('Worker %s failed to claim a job', self.worker_id)
                    job = None
                if job is None:
                    stop.wait(self.settings.worker_poll_interval_seconds)
        finally:
            self.queue.close()
            logger.info('Worker %s stopped', self.worker_id)

    def _finish(self, final: RenderJob | None, job: RenderJob) -> RenderJob:
        if final is None:
            # watchdog or lease expiry moved the job on; its state is not ours to touch
            logger.warning('Worker %s no longer holds job %s; result discarded', self.worker_id, job.id)
            self.status.record_event(job.id, 'result_discarded', worker_id=self.worker_id, attempt=job.attempt)
            current = self.queue.get(job.id)
            return current or job
        self.status.record_event(
            final.id,
            final.status.value,
            worker_id=self.worker_id,
            attempt=final.attempt,
            error=final.error.model_dump(mode='json') if final.error else None,
        )
        self.notifier.notify(final)
        return final

    def process(self, job: RenderJob) -> RenderJob:
        self.status.record_event(job.id, 'claimed', worker_id=self.worker_id, attempt=job.attempt)
        heartbeat = _Heartbeat(
            self.queue,
            job,
            self.worker_id,
            lease_seconds=self.settings.lease_seconds,
            interval=self.settings.heartbeat_interval_seconds,
        )
        heartbeat.start()

        work_dir = attempt_dir(self.settings.jobs_dir(), job.id, job.attempt)
        output_path = work_dir / f'merged.{job.output_format.extension}'
        deadline = time.monotonic() + self.settings.job_timeout_seconds
        try:
            assessment = self.assessments.load(job.assessment_id)
            pages, chunks = layout_chunks(assessment, self.settings)
            if len(pages) != job.estimate.page_count:
                logger.warning(
                    'Job %s: layout has %s pages, estimate said %s',
                    job.id,
                    len(pages),
                    job.estimate.page_count,
                )
            self.queue.update_progress(
                job.id,
                self.worker_id,
                done=0,
                total=len(chunks),
                message=f'Rendering {len(pages)} pages in {len(chunks)} chunks...',
            )
            self.status.record_event(job.id, 'split', pages=len(pages), chunks=len(chunks))

            def is_cancelled() -> bool:
                return heartbeat.lost.is_set() or self.queue.is_cancel_requested(job.id)

            def on_progress(done: int, total: int) -> None:
                self.queue.update_progress(
                    job.id,
                    self.worker_id,
                    done=done,
                    total=total,
                    message=f'Rendered {done}/{total} chunks.',
                )

            def on_event(name: str, **fields) -> None:
                self.status.record_event(job.id, name, **fields)

            renderer = self.renderer_factory(job.output_format, self.settings)
            pipeline = ChunkPipeline.from_settings(self.settings, renderer)
            result = pipeline.run(
                chunks,
                context=RenderContext(
                    title=assessment.title,
                    assessment_id=assessment.id,
                    total_pages=len(pages),
                ),
                work_dir=work_dir,
                output_path=output_path,
                deadline=deadline,
                job_timeout_seconds=self.settings.job_timeout_seconds,
                hooks=PipelineHooks(is_cancelled=is_cancelled, on_progress=on_progress, on_event=on_event),
            )
            if heartbeat.lost.is_set():
                return self._finish(None, job)

            artifact = self.artifacts.store_file(
                job.id,
                output_path,
                attempt=job.attempt,
                output_format=job.output_format,
                page_count=result.page_count,
                generation_seconds=result.elapsed_seconds,
            )
            final = self.queue.complete(job.id, self.worker_id, artifact=artifact)
            if final is None:
                self.artifacts.discard(job.id, attempt=job.attempt)
            return self._finish(final, job)
        except Exception as exc:
            if heartbeat.lost.is_set():
                return self._finish(None, job)
            error = _job_error(exc)
            if not isinstance(exc, ReportForgeError):
                logger.exception('Job %s crashed in worker %s', job.id, self.worker_id)
                self.status.record_event(job.id, 'pipeline_exception', error=error.message, stack=traceback.format_exc())
            else:
                logger.warning('Job %s failed: %s: %s', job.id, error.kind, error.message)
            final = self.queue.fail(
                job.id,
                self.worker_id,
                status=_failure_status(exc),
                error=error,
                message=f'Report generation {_failure_status(exc).value}: {error.message}',
            )
            return self._finish(final, job)
        finally:
            heartbeat.stop()
            remove_tree(work_dir / 'chunks')
            output_path.unlink(missing_ok=True)


class WorkerPool:
    """A bounded number of worker threads sharing one queue."""

    def __init__(self, workers: list[RenderWorker]):
        self.workers = workers
        self.stop_event = threading.Event()
        self._threads: list[threading.Thread] = []

    def start(self) -> None:
        for worker in self.workers:
            thread = threading.Thread(
                target=worker.run_forever,
                args=(self.stop_event,),
                name=f'worker-{worker.worker_id}',
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

    def stop(self, *, timeout: float | None = None) -> None:
        self.stop_event.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
