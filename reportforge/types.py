from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    queued = 'queued'
    running = 'running'
    succeeded = 'succeeded'
    failed = 'failed'
    timed_out = 'timed_out'
    cancelled = 'cancelled'

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_failure(self) -> bool:
        return self in {JobStatus.failed, JobStatus.timed_out, JobStatus.cancelled}


TERMINAL_STATUSES = frozenset(
    {JobStatus.succeeded, JobStatus.failed, JobStatus.timed_out, JobStatus.cancelled}
)


class Routing(str, Enum):
    sync = 'sync'
    async_ = 'async'


class OutputFormat(str, Enum):
    pdf = 'pdf'
    markdown = 'markdown'

    @property
    def extension(self) -> str:
        return 'pdf' if self is OutputFormat.pdf else 'md'


class AssessmentItem(BaseModel):
    question: str
    answer: str = ''


class AssessmentSection(BaseModel):
    title: str
    items: list[AssessmentItem] = Field(default_factory=list)


class Assessment(BaseModel):
    id: str
    title: str
    sections: list[AssessmentSection] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class SizeEstimate(BaseModel):
    word_count: int
    page_count: int
    words_per_page: int
    section_count: int = 0
    item_count: int = 0


class JobError(BaseModel):
    kind: str
    message: str
    chunk_index: int | None = None
    detail: dict[str, Any] = Field(default_factory=dict)


class ArtifactInfo(BaseModel):
    path: str
    format: OutputFormat
    size_bytes: int
    page_count: int
    checksum: str
    generation_seconds: float
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime | None = None


class RenderJob(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    assessment_id: str
    title: str = ''
    requested_at: datetime = Field(default_factory=utcnow)
    estimate: SizeEstimate
    routing: Routing = Routing.async_
    output_format: OutputFormat = OutputFormat.pdf
    priority: int = 0

    status: JobStatus = JobStatus.queued
    message: str = 'Job queued.'
    progress: float = 0.0
    chunks_total: int = 0
    chunks_done: int = 0
    error: JobError | None = None
    artifact: ArtifactInfo | None = None

    attempt: int = 1
    worker_id: str | None = None
    lease_expires_at: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    updated_at: datetime = Field(default_factory=utcnow)
    cancel_requested: bool = False
    retry_of: UUID | None = None


class JobAttempt(BaseModel):
    job_id: UUID
    attempt: int
    worker_id: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    outcome: str
    error: JobError | None = None


class LayoutLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: str
    text: str


class PageLayout(BaseModel):
    model_config = ConfigDict(frozen=True)

    number: int
    lines: tuple[LayoutLine, ...] = ()
    sections: tuple[str, ...] = ()
    word_count: int = 0


class Chunk(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: int
    page_start: int
    page_end: int
    pages: tuple[PageLayout, ...]
    word_count: int

    @property
    def page_count(self) -> int:
        return self.page_end - self.page_start + 1


class ChunkResult(BaseModel):
    index: int
    path: str
    page_count: int
    attempts: int = 1


class StatusPayload(BaseModel):
    job_id: UUID
    assessment_id: str
    status: JobStatus
    message: str
    progress: float
    chunks_total: int
    chunks_done: int
    estimated_remaining_seconds: float | None = None
    error: JobError | None = None
    artifact_ready: bool = False
    attempt: int = 1
    routing: Routing
    estimate: SizeEstimate
    requested_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    updated_at: datetime


class SubmitResult(BaseModel):
    http_status: int
    routing: Routing
    estimate: SizeEstimate
    job_id: UUID | None = None
    status: JobStatus | None = None
    artifact: ArtifactInfo | None = None

    @property
    def completed(self) -> bool:
        return self.artifact is not None
