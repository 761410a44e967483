from __future__ import annotations

import logging
import threading

from .config import Settings
from .job_queue import JobQueue
from .notify import Notifier
from .state import StatusStore
from .types import RenderJob


logger = logging.getLogger(__name__)


class Watchdog:
    """Guarantees that every running job eventually reaches a terminal state."""

    def __init__(self, settings: Settings, *, queue: JobQueue, status: StatusStore, notifier: Notifier):
        self.settings = settings
        self.queue = queue
        self.status = status
        self.notifier = notifier

    def sweep(self, *, now: float | None = None) -> list[RenderJob]:
        changed: list[RenderJob] = []
        for job in self.queue.mark_timed_out(job_timeout_seconds=self.settings.job_timeout_seconds, now=now):
            self.status.record_event(
                job.id,
                'timed_out',
                source='watchdog',
                limit_seconds=self.settings.job_timeout_seconds,
            )
            changed.append(job)
        for job in self.queue.requeue_expired(max_attempts=self.settings.max_job_attempts, now=now):
            self.status.record_event(
                job.id,
                'requeued' if not job.status.terminal else job.status.value,
                source='watchdog',
                attempt=job.attempt,
                reason='lease_expired',
            )
            changed.append(job)

        for job in changed:
            if job.status.terminal:
                self.notifier.notify(job)
        return changed

    def run_forever(self, stop: threading.Event) -> None:
        logger.info('Watchdog started (interval=%ss)', self.settings.watchdog_interval_seconds)
        try:
            while not stop.wait(self.settings.watchdog_interval_seconds):
                try:
                    changed = self.sweep()
                except Exception:
                    logger.exception('Watchdog sweep failed')
                    continue
                if changed:
                    logger.info('Watchdog updated %s jobs', len(changed))
        finally:
            self.queue.close()
