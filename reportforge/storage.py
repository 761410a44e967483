from __future__ import annotations

import json
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from uuid import UUID


def safe_job_id(job_id: UUID | str) -> str:
    if isinstance(job_id, UUID):
        return str(job_id)
    token = str(job_id or '').strip()
    if not token:
        raise ValueError('job_id is required')
    try:
        return str(UUID(token))
    except Exception as exc:
        raise ValueError(f'invalid job_id: {job_id}') from exc


def job_dir(jobs_root: Path, job_id: UUID | str) -> Path:
    path = jobs_root / safe_job_id(job_id)
    path.mkdir(parents=True, exist_ok=True)
    return path


def attempt_dir(jobs_root: Path, job_id: UUID | str, attempt: int) -> Path:
    path = job_dir(jobs_root, job_id) / f'attempt-{int(attempt)}'
    path.mkdir(parents=True, exist_ok=True)
    return path


def events_path(jobs_root: Path, job_id: UUID | str) -> Path:
    return job_dir(jobs_root, job_id) / 'events.jsonl'


def write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + '.tmp')
    tmp.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding='utf-8')
    tmp.replace(path)


def read_json(path: Path) -> dict[str, Any]:
    return json.loads(path.read_text(encoding='utf-8'))


def append_event(jobs_root: Path, job_id: UUID | str, event: str, **extra: Any) -> None:
    now = datetime.now(timezone.utc).isoformat()
    row = {
        'ts': now,
        'event': event,
        **extra,
    }
    events_file = events_path(jobs_root, job_id)
    with events_file.open('a', encoding='utf-8') as f:
        f.write(json.dumps(row, ensure_ascii=False, default=str) + '\n')


def read_events(jobs_root: Path, job_id: UUID | str) -> list[dict[str, Any]]:
    path = events_path(jobs_root, job_id)
    if not path.exists():
        return []
    rows: list[dict[str, Any]] = []
    for line in path.read_text(encoding='utf-8').splitlines():
        if line.strip():
            rows.append(json.loads(line))
    return rows


def remove_tree(path: Path) -> None:
    if path.exists():
        shutil.rmtree(path, ignore_errors=True)
