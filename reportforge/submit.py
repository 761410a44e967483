from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable
from uuid import uuid4

from .artifacts import ArtifactStore
from .assessments import AssessmentStore
from .config import Settings
from .errors import ReportForgeError
from .job_queue import JobQueue
from .layout import estimate_size
from .pipeline import ChunkPipeline, layout_chunks
from .report.renderers import ChunkRenderer, RenderContext, build_renderer
from .state import StatusStore
from .storage import remove_tree
from .types import Assessment, OutputFormat, RenderJob, Routing, SizeEstimate, SubmitResult


logger = logging.getLogger(__name__)


class JobSubmitter:
    """Measures an assessment and routes the request.

    Small reports render in-process under ``sync_timeout_seconds`` and come
    back as an artifact (HTTP 200). Reports at or above
    ``sync_page_threshold`` pages are queued and a job handle is returned
    right away (HTTP 202). Failures are raised as typed errors; a size estimate
    is never returned without one of those two outcomes.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        assessments: AssessmentStore,
        queue: JobQueue,
        artifacts: ArtifactStore,
        status: StatusStore,
        renderer_factory: Callable[[OutputFormat, Settings], ChunkRenderer] = build_renderer,
    ):
        self.settings = settings
        self.assessments = assessments
        self.queue = queue
        self.artifacts = artifacts
        self.status = status
        self.renderer_factory = renderer_factory

    def estimate(self, assessment_id: str) -> tuple[Assessment, SizeEstimate]:
        assessment = self.assessments.load(assessment_id)
        return assessment, estimate_size(assessment, words_per_page=self.settings.words_per_page)

    def route(self, estimate: SizeEstimate, *, force_async: bool = False) -> Routing:
        if force_async or estimate.page_count >= self.settings.sync_page_threshold:
            return Routing.async_
        return Routing.sync

    def submit(
        self,
        assessment_id: str,
        *,
        output_format: OutputFormat | None = None,
        priority: int = 0,
        force_async: bool = False,
    ) -> SubmitResult:
        fmt = output_format or OutputFormat(self.settings.default_output_format)
        assessment, estimate = self.estimate(assessment_id)
        routing = self.route(estimate, force_async=force_async)
        logger.info(
            'Assessment %s: %s words / %s pages -> %s',
            assessment.id,
            estimate.word_count,
            estimate.page_count,
            routing.value,
        )
        if routing is Routing.sync:
            return self._render_sync(assessment, estimate, fmt)
        return self._enqueue(assessment, estimate, fmt, priority=priority)

    def enqueue_job(self, job: RenderJob) -> RenderJob:
        self.queue.enqueue(job, max_pending=self.settings.max_queued_jobs)
        self.status.record_event(
            job.id,
            'queued',
            assessment_id=job.assessment_id,
            pages=job.estimate.page_count,
            words=job.estimate.word_count,
            priority=job.priority,
            retry_of=str(job.retry_of) if job.retry_of else None,
        )
        return job

    def _enqueue(
        self,
        assessment: Assessment,
        estimate: SizeEstimate,
        fmt: OutputFormat,
        *,
        priority: int,
    ) -> SubmitResult:
        job = self.enqueue_job(
            RenderJob(
                assessment_id=assessment.id,
                title=assessment.title,
                estimate=estimate,
                routing=Routing.async_,
                output_format=fmt,
                priority=priority,
            )
        )
        return SubmitResult(
            http_status=202,
            routing=Routing.async_,
            estimate=estimate,
            job_id=job.id,
            status=job.status,
        )

    def _render_sync(self, assessment: Assessment, estimate: SizeEstimate, fmt: OutputFormat) -> SubmitResult:
        owner = f'sync-{uuid4().hex}'
        work_dir = Path(self.settings.data_dir) / 'sync' / owner
        deadline = time.monotonic() + self.settings.sync_timeout_seconds
        renderer = self.renderer_factory(fmt, self.settings)
        pipeline = ChunkPipeline.from_settings(self.settings, renderer)
        try:
            pages, chunks = layout_chunks(assessment, self.settings)
            output_path = work_dir / f'merged.{fmt.extension}'
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
                job_timeout_seconds=self.settings.sync_timeout_seconds,
                scratch_dir=work_dir,
            )
            artifact = self.artifacts.store_file(
                owner,
                output_path,
                attempt=1,
                output_format=fmt,
                page_count=result.page_count,
                generation_seconds=result.elapsed_seconds,
            )
        except ReportForgeError as exc:
            exc.detail.setdefault('routing', Routing.sync.value)
            exc.detail.setdefault('estimate', estimate.model_dump(mode='json'))
            logger.warning('Synchronous render of %s failed: %s', assessment.id, exc)
            raise
        finally:
            remove_tree(work_dir)

        return SubmitResult(
            http_status=200,
            routing=Routing.sync,
            estimate=estimate,
            artifact=artifact,
        )
