from __future__ import annotations

import logging
from pathlib import Path

from pydantic import ValidationError

from .errors import AssessmentNotFoundError, SizeEstimationError
from .storage import read_json, write_json_atomic
from .types import Assessment


logger = logging.getLogger(__name__)


def _safe_assessment_id(assessment_id: str) -> str:
    token = str(assessment_id or '').strip()
    if not token:
        raise SizeEstimationError('assessment_id is required')
    if '/' in token or '\\' in token or token.startswith('.'):
        raise SizeEstimationError(f'invalid assessment_id: {assessment_id!r}')
    return token


class AssessmentStore:
    """Reads client assessments stored as JSON documents under one directory."""

    def __init__(self, root: Path):
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, assessment_id: str) -> Path:
        return self.root / f'{_safe_assessment_id(assessment_id)}.json'

    def exists(self, assessment_id: str) -> bool:
        return self.path_for(assessment_id).exists()

    def load(self, assessment_id: str) -> Assessment:
        path = self.path_for(assessment_id)
        if not path.exists():
            raise AssessmentNotFoundError(
                f'Assessment not found: {assessment_id}',
                detail={'assessment_id': assessment_id},
            )
        try:
            payload = read_json(path)
        except ValueError as exc:
            raise SizeEstimationError(
                f'Assessment {assessment_id} is not valid JSON: {exc}',
                detail={'assessment_id': assessment_id},
            ) from exc
        payload.setdefault('id', assessment_id)
        try:
            return Assessment.model_validate(payload)
        except ValidationError as exc:
            raise SizeEstimationError(
                f'Assessment {assessment_id} is malformed: {exc.error_count()} validation errors',
                detail={
                    'assessment_id': assessment_id,
                    'errors': [str(item.get('msg') or '') for item in exc.errors()],
                },
            ) from exc

    def save(self, assessment: Assessment) -> Path:
        path = self.path_for(assessment.id)
        write_json_atomic(path, assessment.model_dump(mode='json'))
        logger.debug('Stored assessment %s at %s', assessment.id, path)
        return path
