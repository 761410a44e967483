"""Typed failures surfaced through job status, HTTP codes and CLI output.

Every error carries a stable ``kind`` that is persisted with the job, so a
terminal job always reports a specific, actionable cause.
"""

from __future__ import annotations

from typing import Any


class ReportForgeError(Exception):
    kind = 'InternalError'
    http_status = 500

    def __init__(self, message: str, *, detail: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.detail = dict(detail or {})

    def to_payload(self) -> dict[str, Any]:
        return {
            'kind': self.kind,
            'message': self.message,
            'detail': self.detail,
        }


class SizeEstimationError(ReportForgeError):
    """The assessment content could not be measured."""

    kind = 'SizeEstimationError'
    http_status = 422


class AssessmentNotFoundError(SizeEstimationError):
    http_status = 404


class ChunkRenderError(ReportForgeError):
    """One chunk kept failing after its retry budget was spent."""

    kind = 'ChunkRenderError'

    def __init__(
        self,
        message: str,
        *,
        chunk_index: int,
        attempts: int,
        cause: str | None = None,
        detail: dict[str, Any] | None = None,
    ):
        payload = dict(detail or {})
        payload.update({'chunk_index': chunk_index, 'attempts': attempts, 'cause': cause})
        super().__init__(message, detail=payload)
        self.chunk_index = chunk_index
        self.attempts = attempts
        self.cause = cause


class MergeError(ReportForgeError):
    kind = 'MergeError'


class RenderTimeoutError(ReportForgeError, TimeoutError):
    kind = 'TimeoutError'
    http_status = 504

    def __init__(
        self,
        message: str,
        *,
        scope: str,
        chunk_index: int | None = None,
        limit_seconds: float | None = None,
    ):
        super().__init__(
            message,
            detail={'scope': scope, 'chunk_index': chunk_index, 'limit_seconds': limit_seconds},
        )
        self.scope = scope
        self.chunk_index = chunk_index
        self.limit_seconds = limit_seconds


class CancellationError(ReportForgeError):
    kind = 'CancellationError'
    http_status = 409


class WorkerLostError(ReportForgeError):
    """The worker holding a job stopped heartbeating too many times."""

    kind = 'WorkerLostError'


class JobNotFoundError(ReportForgeError):
    kind = 'JobNotFoundError'
    http_status = 404


class ArtifactNotReadyError(ReportForgeError):
    kind = 'ArtifactNotReadyError'
    http_status = 409


class InvalidJobStateError(ReportForgeError):
    kind = 'InvalidJobStateError'
    http_status = 409


class QueueFullError(ReportForgeError):
    kind = 'QueueFullError'
    http_status = 429


class ArtifactExistsError(ReportForgeError):
    kind = 'ArtifactExistsError'
    http_status = 409
