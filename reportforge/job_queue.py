"""SQLite-backed durable job queue.

The queue is the single source of truth for job state. Each job row keeps a
few indexed columns for scheduling (state, priority, lease) next to the full
``RenderJob`` document. Every transition is a conditional UPDATE inside an
immediate transaction, which gives:

- one claim holder per running job (lease + worker id guard)
- at-least-once delivery: an expired lease puts the job back in ``queued``
- terminal rows are never rewritten

State machine::

    queued --claim--> running --complete--> succeeded
       |                 |------fail------> failed | timed_out | cancelled
       |                 '--lease expired--> queued (attempt + 1)
       '--cancel--> cancelled
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator
from uuid import UUID

from .errors import JobNotFoundError, QueueFullError
from .storage import safe_job_id
from .types import ArtifactInfo, JobAttempt, JobError, JobStatus, RenderJob


logger = logging.getLogger(__name__)

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS jobs (
  seq INTEGER PRIMARY KEY AUTOINCREMENT,
  id TEXT NOT NULL UNIQUE,
  state TEXT NOT NULL,
  priority INTEGER NOT NULL DEFAULT 0,
  attempt INTEGER NOT NULL DEFAULT 1,
  worker_id TEXT,
  lease_expires_at REAL,
  started_at REAL,
  finished_at REAL,
  cancel_requested INTEGER NOT NULL DEFAULT 0,
  payload TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_jobs_claim ON jobs(state, priority, seq);
CREATE INDEX IF NOT EXISTS idx_jobs_lease ON jobs(state, lease_expires_at);

CREATE TABLE IF NOT EXISTS job_attempts (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  job_id TEXT NOT NULL,
  attempt INTEGER NOT NULL,
  worker_id TEXT,
  started_at REAL,
  ended_at REAL,
  outcome TEXT NOT NULL,
  error TEXT
);

CREATE INDEX IF NOT EXISTS idx_attempts_job ON job_attempts(job_id, attempt);
"""


def _to_dt(ts: float | None) -> datetime | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, timezone.utc)


def _now(now: float | None) -> float:
    return time.time() if now is None else float(now)


class JobQueue:
    def __init__(self, path: Path | str):
        self.path = str(path)
        self._local = threading.local()
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(self.path, timeout=30.0)
        try:
            conn.execute('PRAGMA journal_mode=WAL')
            conn.execute('PRAGMA busy_timeout=10000')
            conn.executescript(_SCHEMA_SQL)
            conn.commit()
        finally:
            conn.close()
        logger.info('JobQueue initialized at %s', self.path)

    def _connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, 'conn', None)
        if conn is None:
            conn = sqlite3.connect(self.path, timeout=30.0, isolation_level=None)
            conn.row_factory = sqlite3.Row
            conn.execute('PRAGMA busy_timeout=10000')
            self._local.conn = conn
        return conn

    def close(self) -> None:
        conn = getattr(self._local, 'conn', None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._connection()
        conn.execute('BEGIN IMMEDIATE')
        try:
            yield conn
        except BaseException:
            conn.execute('ROLLBACK')
            raise
        else:
            conn.execute('COMMIT')

    # ------------------------------------------------------------------ rows

    @staticmethod
    def _load(row: sqlite3.Row | None) -> RenderJob | None:
        if row is None:
            return None
        return RenderJob.model_validate_json(row['payload'])

    @staticmethod
    def _write(conn: sqlite3.Connection, job: RenderJob, **columns: Any) -> None:
        job.updated_at = datetime.now(timezone.utc)
        conn.execute(
            """
            UPDATE jobs
            SET state = ?, attempt = ?, worker_id = ?, lease_expires_at = ?,
                started_at = ?, finished_at = ?, cancel_requested = ?, payload = ?
            WHERE id = ?
            """,
            (
                job.status.value,
                job.attempt,
                job.worker_id,
                columns.get('lease_expires_at'),
                columns.get('started_at'),
                columns.get('finished_at'),
                1 if job.cancel_requested else 0,
                job.model_dump_json(),
                str(job.id),
            ),
        )

    @staticmethod
    def _record_attempt(
        conn: sqlite3.Connection,
        job: RenderJob,
        *,
        started_at: float | None,
        ended_at: float,
        outcome: str,
    ) -> None:
        conn.execute(
            """
            INSERT INTO job_attempts (job_id, attempt, worker_id, started_at, ended_at, outcome, error)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                str(job.id),
                job.attempt,
                job.worker_id,
                started_at,
                ended_at,
                outcome,
                job.error.model_dump_json() if job.error is not None else None,
            ),
        )

    def _select_running(
        self, conn: sqlite3.Connection, job_id: UUID | str, worker_id: str
    ) -> sqlite3.Row | None:
        return conn.execute(
            'SELECT * FROM jobs WHERE id = ? AND state = ? AND worker_id = ?',
            (safe_job_id(job_id), JobStatus.running.value, worker_id),
        ).fetchone()

    # ------------------------------------------------------------- producers

    def enqueue(self, job: RenderJob, *, max_pending: int | None = None) -> RenderJob:
        job.status = JobStatus.queued
        with self._transaction() as conn:
            if max_pending is not None:
                pending = conn.execute(
                    'SELECT COUNT(*) FROM jobs WHERE state IN (?, ?)',
                    (JobStatus.queued.value, JobStatus.running.value),
                ).fetchone()[0]
                if pending >= max_pending:
                    raise QueueFullError(
                        f'Render queue is full ({pending} pending jobs).',
                        detail={'pending': pending, 'max_pending': max_pending},
                    )
            conn.execute(
                """
                INSERT INTO jobs (id, state, priority, attempt, payload)
                VALUES (?, ?, ?, ?, ?)
                """,
                (str(job.id), job.status.value, job.priority, job.attempt, job.model_dump_json()),
            )
        logger.debug('Enqueued job %s (priority=%s)', job.id, job.priority)
        return job

    def request_cancel(self, job_id: UUID | str, *, now: float | None = None) -> RenderJob:
        """Cancel a queued job right away, or flag a running one for its worker."""
        ts = _now(now)
        with self._transaction() as conn:
            row = conn.execute('SELECT * FROM jobs WHERE id = ?', (safe_job_id(job_id),)).fetchone()
            job = self._load(row)
            if job is None:
                raise JobNotFoundError(f'Job not found: {job_id}')
            if job.status.terminal:
                return job
            job.cancel_requested = True
            if job.status == JobStatus.queued:
                job.status = JobStatus.cancelled
                job.message = 'Job cancelled before it started.'
                job.error = JobError(kind='CancellationError', message='Cancelled while queued.')
                job.finished_at = _to_dt(ts)
                self._write(conn, job, finished_at=ts)
            else:
                job.message = 'Cancellation requested.'
                self._write(
                    conn,
                    job,
                    lease_expires_at=row['lease_expires_at'],
                    started_at=row['started_at'],
                )
        return job

    # ------------------------------------------------------------- consumers

    def claim(self, worker_id: str, *, lease_seconds: float, now: float | None = None) -> RenderJob | None:
        ts = _now(now)
        with self._transaction() as conn:
            row = conn.execute(
                'SELECT * FROM jobs WHERE state = ? ORDER BY priority DESC, seq ASC LIMIT 1',
                (JobStatus.queued.value,),
            ).fetchone()
            job = self._load(row)
            if job is None:
                return None
            job.status = JobStatus.running
            job.worker_id = worker_id
            job.started_at = _to_dt(ts)
            job.lease_expires_at = _to_dt(ts + lease_seconds)
            job.message = f'Claimed by {worker_id} (attempt {job.attempt}).'
            self._write(conn, job, lease_expires_at=ts + lease_seconds, started_at=ts)
        logger.info('Worker %s claimed job %s (attempt %s)', worker_id, job.id, job.attempt)
        return job

    def heartbeat(
        self, job_id: UUID | str, worker_id: str, *, lease_seconds: float, now: float | None = None
    ) -> bool:
        ts = _now(now)
        with self._transaction() as conn:
            row = self._select_running(conn, job_id, worker_id)
            job = self._load(row)
            if job is None:
                return False
            job.lease_expires_at = _to_dt(ts + lease_seconds)
            self._write(conn, job, lease_expires_at=ts + lease_seconds, started_at=row['started_at'])
        return True

    def update_progress(
        self,
        job_id: UUID | str,
        worker_id: str,
        *,
        done: int,
        total: int,
        message: str | None = None,
    ) -> bool:
        with self._transaction() as conn:
            row = self._select_running(conn, job_id, worker_id)
            job = self._load(row)
            if job is None:
                return False
            job.chunks_done = done
            job.chunks_total = total
            job.progress = (done / total) if total else 0.0
            if message:
                job.message = message
            self._write(
                conn,
                job,
                lease_expires_at=row['lease_expires_at'],
                started_at=row['started_at'],
            )
        return True

    def complete(
        self,
        job_id: UUID | str,
        worker_id: str,
        *,
        artifact: ArtifactInfo,
        now: float | None = None,
    ) -> RenderJob | None:
        ts = _now(now)
        with self._transaction() as conn:
            row = self._select_running(conn, job_id, worker_id)
            job = self._load(row)
            if job is None:
                return None
            job.status = JobStatus.succeeded
            job.message = 'Report generated.'
            job.artifact = artifact
            job.error = None
            job.progress = 1.0
            job.chunks_done = job.chunks_total
            job.finished_at = _to_dt(ts)
            job.lease_expires_at = None
            self._record_attempt(conn, job, started_at=row['started_at'], ended_at=ts, outcome='succeeded')
            self._write(conn, job, started_at=row['started_at'], finished_at=ts)
        return job

    def fail(
        self,
        job_id: UUID | str,
        worker_id: str,
        *,
        status: JobStatus,
        error: JobError,
        message: str,
        now: float | None = None,
    ) -> RenderJob | None:
        if not status.is_failure:
            raise ValueError(f'{status.value} is not a failure state')
        ts = _now(now)
        with self._transaction() as conn:
            row = self._select_running(conn, job_id, worker_id)
            job = self._load(row)
            if job is None:
                return None
            job.status = status
            job.message = message
            job.error = error
            job.finished_at = _to_dt(ts)
            job.lease_expires_at = None
            self._record_attempt(conn, job, started_at=row['started_at'], ended_at=ts, outcome=status.value)
            self._write(conn, job, started_at=row['started_at'], finished_at=ts)
        return job

    # ------------------------------------------------------------- watchdog

    def requeue_expired(self, *, max_attempts: int, now: float | None = None) -> list[RenderJob]:
        """Return jobs whose lease lapsed to the queue, or fail them once retries run out."""
        ts = _now(now)
        changed: list[RenderJob] = []
        with self._transaction() as conn:
            rows = conn.execute(
                'SELECT * FROM jobs WHERE state = ? AND lease_expires_at < ? ORDER BY seq ASC',
                (JobStatus.running.value, ts),
            ).fetchall()
            for row in rows:
                job = self._load(row)
                if job is None:
                    continue
                lost_worker = job.worker_id
                job.error = JobError(
                    kind='WorkerLostError',
                    message=f'Lease held by {lost_worker} expired without heartbeat.',
                    detail={'worker_id': lost_worker, 'attempt': job.attempt},
                )
                self._record_attempt(conn, job, started_at=row['started_at'], ended_at=ts, outcome='lease_expired')
                if job.attempt < max_attempts:
                    job.status = JobStatus.queued
                    job.attempt += 1
                    job.worker_id = None
                    job.lease_expires_at = None
                    job.started_at = None
                    job.progress = 0.0
                    job.chunks_done = 0
                    job.error = None
                    job.message = f'Requeued after lost worker {lost_worker} (attempt {job.attempt}).'
                    self._write(conn, job)
                else:
                    job.status = JobStatus.failed
                    job.message = f'Job abandoned after {job.attempt} lost workers.'
                    job.finished_at = _to_dt(ts)
                    job.lease_expires_at = None
                    self._write(conn, job, started_at=row['started_at'], finished_at=ts)
                changed.append(job)
        for job in changed:
            logger.warning('Expired lease on job %s -> %s', job.id, job.status.value)
        return changed

    def mark_timed_out(self, *, job_timeout_seconds: float, now: float | None = None) -> list[RenderJob]:
        ts = _now(now)
        cutoff = ts - job_timeout_seconds
        changed: list[RenderJob] = []
        with self._transaction() as conn:
            rows = conn.execute(
                'SELECT * FROM jobs WHERE state = ? AND started_at < ? ORDER BY seq ASC',
                (JobStatus.running.value, cutoff),
            ).fetchall()
            for row in rows:
                job = self._load(row)
                if job is None:
                    continue
                job.status = JobStatus.timed_out
                job.message = f'Job exceeded the {job_timeout_seconds:g}s ceiling.'
                job.error = JobError(
                    kind='TimeoutError',
                    message=job.message,
                    detail={'scope': 'job', 'limit_seconds': job_timeout_seconds},
                )
                job.finished_at = _to_dt(ts)
                job.lease_expires_at = None
                self._record_attempt(conn, job, started_at=row['started_at'], ended_at=ts, outcome='timed_out')
                self._write(conn, job, started_at=row['started_at'], finished_at=ts)
                changed.append(job)
        for job in changed:
            logger.warning('Job %s timed out by watchdog', job.id)
        return changed

    # --------------------------------------------------------------- queries

    def get(self, job_id: UUID | str) -> RenderJob | None:
        row = self._connection().execute(
            'SELECT payload FROM jobs WHERE id = ?', (safe_job_id(job_id),)
        ).fetchone()
        return self._load(row)

    def is_cancel_requested(self, job_id: UUID | str) -> bool:
        row = self._connection().execute(
            'SELECT cancel_requested FROM jobs WHERE id = ?', (safe_job_id(job_id),)
        ).fetchone()
        return bool(row and row['cancel_requested'])

    def list_jobs(self, *, status: JobStatus | None = None, limit: int = 50) -> list[RenderJob]:
        conn = self._connection()
        if status is None:
            rows = conn.execute('SELECT payload FROM jobs ORDER BY seq DESC LIMIT ?', (limit,)).fetchall()
        else:
            rows = conn.execute(
                'SELECT payload FROM jobs WHERE state = ? ORDER BY seq DESC LIMIT ?',
                (status.value, limit),
            ).fetchall()
        return [job for job in (self._load(row) for row in rows) if job is not None]

    def attempts(self, job_id: UUID | str) -> list[JobAttempt]:
        rows = self._connection().execute(
            'SELECT * FROM job_attempts WHERE job_id = ? ORDER BY id ASC', (safe_job_id(job_id),)
        ).fetchall()
        return [
            JobAttempt(
                job_id=UUID(row['job_id']),
                attempt=row['attempt'],
                worker_id=row['worker_id'],
                started_at=_to_dt(row['started_at']),
                ended_at=_to_dt(row['ended_at']),
                outcome=row['outcome'],
                error=JobError.model_validate_json(row['error']) if row['error'] else None,
            )
            for row in rows
        ]

    def stats(self) -> dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        rows = self._connection().execute('SELECT state, COUNT(*) AS n FROM jobs GROUP BY state').fetchall()
        for row in rows:
            counts[row['state']] = int(row['n'])
        counts['total'] = sum(counts[status.value] for status in JobStatus)
        return counts

    def delete_finished_before(self, cutoff: float) -> list[str]:
        terminal = [status.value for status in JobStatus if status.terminal]
        placeholders = ','.join('?' for _ in terminal)
        with self._transaction() as conn:
            rows = conn.execute(
                f'SELECT id FROM jobs WHERE state IN ({placeholders}) AND finished_at < ?',
                (*terminal, cutoff),
            ).fetchall()
            ids = [row['id'] for row in rows]
            for job_id in ids:
                conn.execute('DELETE FROM jobs WHERE id = ?', (job_id,))
                conn.execute('DELETE FROM job_attempts WHERE job_id = ?', (job_id,))
        return ids
