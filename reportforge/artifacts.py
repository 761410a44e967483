from __future__ import annotations

import hashlib
import logging
import shutil
from datetime import datetime, timedelta, timezone
from pathlib import Path
from uuid import UUID

from .errors import ArtifactExistsError, ArtifactNotReadyError
from .storage import read_json, remove_tree, write_json_atomic
from .types import ArtifactInfo, OutputFormat


logger = logging.getLogger(__name__)

_COPY_BLOCK = 1024 * 1024


class ArtifactStore:
    """Write-once storage for merged reports.

    Layout: ``<root>/<owner>/attempt-<n>/report.<ext>`` plus an
    ``artifact.json`` sidecar holding the ``ArtifactInfo``. An artifact file is
    created exclusively and never overwritten.
    """

    def __init__(self, root: Path, *, retention_hours: int = 0):
        self.root = root
        self.retention_hours = retention_hours
        self.root.mkdir(parents=True, exist_ok=True)

    def _owner_dir(self, owner_id: UUID | str) -> Path:
        token = str(owner_id).strip()
        if not token or '/' in token or '\\' in token or token.startswith('.'):
            raise ValueError(f'invalid artifact owner: {owner_id!r}')
        return self.root / token

    def _slot(self, owner_id: UUID | str, attempt: int) -> Path:
        return self._owner_dir(owner_id) / f'attempt-{int(attempt)}'

    def store_file(
        self,
        owner_id: UUID | str,
        source: Path,
        *,
        attempt: int,
        output_format: OutputFormat,
        page_count: int,
        generation_seconds: float,
    ) -> ArtifactInfo:
        slot = self._slot(owner_id, attempt)
        slot.mkdir(parents=True, exist_ok=True)
        target = slot / f'report.{output_format.extension}'

        digest = hashlib.sha256()
        size = 0
        try:
            with source.open('rb') as src, target.open('xb') as dst:
                while True:
                    block = src.read(_COPY_BLOCK)
                    if not block:
                        break
                    digest.update(block)
                    size += len(block)
                    dst.write(block)
        except FileExistsError as exc:
            raise ArtifactExistsError(
                f'Artifact already written for {owner_id} attempt {attempt}.',
                detail={'path': str(target)},
            ) from exc

        created_at = datetime.now(timezone.utc)
        expires_at = None
        if self.retention_hours > 0:
            expires_at = created_at + timedelta(hours=self.retention_hours)
        info = ArtifactInfo(
            path=str(target),
            format=output_format,
            size_bytes=size,
            page_count=page_count,
            checksum=digest.hexdigest(),
            generation_seconds=round(generation_seconds, 3),
            created_at=created_at,
            expires_at=expires_at,
        )
        write_json_atomic(slot / 'artifact.json', info.model_dump(mode='json'))
        logger.info('Stored artifact %s (%s bytes, %s pages)', target, size, page_count)
        return info

    def load_info(self, owner_id: UUID | str, *, attempt: int = 1) -> ArtifactInfo:
        sidecar = self._slot(owner_id, attempt) / 'artifact.json'
        if not sidecar.exists():
            raise ArtifactNotReadyError(
                f'No artifact stored for {owner_id}.',
                detail={'owner': str(owner_id), 'attempt': attempt},
            )
        return ArtifactInfo.model_validate(read_json(sidecar))

    def open_path(self, info: ArtifactInfo) -> Path:
        path = Path(info.path)
        if not path.exists():
            raise ArtifactNotReadyError(f'Artifact file missing: {path}', detail={'path': str(path)})
        return path

    def verify(self, info: ArtifactInfo) -> bool:
        digest = hashlib.sha256()
        with self.open_path(info).open('rb') as f:
            for block in iter(lambda: f.read(_COPY_BLOCK), b''):
                digest.update(block)
        return digest.hexdigest() == info.checksum

    def discard(self, owner_id: UUID | str, *, attempt: int) -> None:
        remove_tree(self._slot(owner_id, attempt))

    def delete(self, owner_id: UUID | str) -> None:
        remove_tree(self._owner_dir(owner_id))

    def purge_expired(self, *, now: datetime | None = None) -> list[Path]:
        moment = now or datetime.now(timezone.utc)
        removed: list[Path] = []
        for sidecar in sorted(self.root.glob('*/attempt-*/artifact.json')):
            try:
                info = ArtifactInfo.model_validate(read_json(sidecar))
            except ValueError:
                logger.warning('Skipping unreadable artifact sidecar %s', sidecar)
                continue
            if info.expires_at is None or info.expires_at > moment:
                continue
            shutil.rmtree(sidecar.parent, ignore_errors=True)
            removed.append(sidecar.parent)
        for owner in list(self.root.iterdir()):
            if owner.is_dir() and not any(owner.iterdir()):
                owner.rmdir()
        if removed:
            logger.info('Purged %s expired artifacts', len(removed))
        return removed
