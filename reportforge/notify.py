from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from .config import Settings
from .types import RenderJob


logger = logging.getLogger(__name__)


def terminal_event(job: RenderJob) -> dict[str, Any]:
    payload: dict[str, Any] = {
        'event': f'report.{job.status.value}',
        'job_id': str(job.id),
        'assessment_id': job.assessment_id,
        'status': job.status.value,
        'message': job.message,
        'attempt': job.attempt,
        'finished_at': job.finished_at.isoformat() if job.finished_at else None,
    }
    if job.error is not None:
        payload['error'] = job.error.model_dump(mode='json')
    if job.artifact is not None:
        payload['artifact'] = {
            'format': job.artifact.format.value,
            'page_count': job.artifact.page_count,
            'size_bytes': job.artifact.size_bytes,
            'checksum': job.artifact.checksum,
        }
    return payload


class Notifier(Protocol):
    def notify(self, job: RenderJob) -> None:
        """Called once when ``job`` reaches a terminal state."""
        ...


class LoggingNotifier:
    def notify(self, job: RenderJob) -> None:
        if job.status.is_failure:
            logger.warning(
                'Job %s finished %s: %s',
                job.id,
                job.status.value,
                job.error.message if job.error else job.message,
            )
        else:
            logger.info('Job %s finished %s', job.id, job.status.value)


@dataclass
class WebhookConfig:
    url: str
    secret: str | None
    timeout_seconds: float


class WebhookNotifier:
    """Posts terminal events to an external delivery service (email, in-app)."""

    def __init__(self, cfg: WebhookConfig, *, transport: httpx.BaseTransport | None = None):
        self.cfg = cfg
        self._transport = transport

    def notify(self, job: RenderJob) -> None:
        headers = {'Content-Type': 'application/json'}
        secret = str(self.cfg.secret or '').strip()
        if secret:
            headers['Authorization'] = f'Bearer {secret}'
        try:
            with httpx.Client(timeout=self.cfg.timeout_seconds, transport=self._transport) as client:
                response = client.post(self.cfg.url, headers=headers, json=terminal_event(job))
            response.raise_for_status()
        except httpx.HTTPError as exc:
            # delivery is owned by the collaborator; job state is already final
            logger.warning('Webhook notification for job %s failed: %s', job.id, exc)


def build_notifier(settings: Settings) -> Notifier:
    if settings.notify_webhook_url:
        return WebhookNotifier(
            WebhookConfig(
                url=settings.notify_webhook_url,
                secret=settings.notify_webhook_secret,
                timeout_seconds=settings.notify_timeout_seconds,
            )
        )
    return LoggingNotifier()
