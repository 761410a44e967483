"""
reportforge HTTP API (Flask)
============================
Submission, status polling and artifact download for report generation.

Endpoints:
  - GET    /health
  - POST   /reports                         submit (200 sync artifact / 202 job handle)
  - GET    /reports/jobs                    list recent jobs
  - GET    /reports/jobs/<job_id>           status, progress, eta
  - GET    /reports/jobs/<job_id>/artifact  download once succeeded
  - GET    /reports/jobs/<job_id>/events    per-job event log
  - DELETE /reports/jobs/<job_id>           request cancellation
  - POST   /reports/jobs/<job_id>/retry     queue a new job for a failed one
  - GET    /reports/artifacts/<owner>       download a synchronously rendered report
  - GET    /
"""

from __future__ import annotations

import logging
import traceback
from pathlib import Path
from typing import Any

from flask import Flask, jsonify, request, send_file
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from reportforge.config import get_settings
from reportforge.errors import ReportForgeError
from reportforge.service import ReportService
from reportforge.types import ArtifactInfo, JobStatus, OutputFormat, SubmitResult


logger = logging.getLogger(__name__)

_MIMETYPES = {
    OutputFormat.pdf: 'application/pdf',
    OutputFormat.markdown: 'text/markdown',
}


def _artifact_payload(info: ArtifactInfo, download_url: str) -> dict[str, Any]:
    payload = info.model_dump(mode='json')
    payload.pop('path', None)
    payload['download_url'] = download_url
    return payload


def _submit_payload(result: SubmitResult) -> dict[str, Any]:
    payload: dict[str, Any] = {
        'routing': result.routing.value,
        'completed': result.completed,
        'estimate': result.estimate.model_dump(mode='json'),
    }
    if result.job_id is not None:
        job_id = str(result.job_id)
        payload.update(
            {
                'job_id': job_id,
                'status': result.status.value if result.status else None,
                'status_url': f'/reports/jobs/{job_id}',
                'artifact_url': f'/reports/jobs/{job_id}/artifact',
            }
        )
    if result.artifact is not None:
        owner = Path(result.artifact.path).parent.parent.name
        payload['artifact'] = _artifact_payload(result.artifact, f'/reports/artifacts/{owner}')
    return payload


def _parse_int(data: dict[str, Any], key: str, default: int) -> int:
    value = data.get(key, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f'Invalid parameter: {key}')


def _parse_format(data: dict[str, Any]) -> OutputFormat | None:
    value = data.get('format')
    if value in (None, ''):
        return None
    try:
        return OutputFormat(str(value).strip().lower())
    except ValueError:
        raise ValueError(f'Invalid parameter: format (expected one of {[f.value for f in OutputFormat]})')


def create_app(service: ReportService | None = None) -> Flask:
    app = Flask(__name__)
    CORS(app)
    svc = service or ReportService(get_settings())
    app.config['REPORT_SERVICE'] = svc

    @app.errorhandler(ReportForgeError)
    def handle_report_error(exc: ReportForgeError):
        return jsonify({'error': exc.kind, 'message': exc.message, 'detail': exc.detail}), exc.http_status

    @app.errorhandler(Exception)
    def handle_unexpected(exc: Exception):
        if isinstance(exc, HTTPException):
            return jsonify({'error': exc.name, 'message': exc.description}), exc.code
        logger.error('Unhandled error on %s: %s', request.path, exc)
        logger.error(traceback.format_exc())
        return jsonify({'error': 'InternalError', 'message': str(exc)}), 500

    @app.route('/', methods=['GET'])
    def index():
        return jsonify(
            {
                'service': svc.settings.app_name,
                'status': 'running',
                'endpoints': {
                    'POST /reports': 'Submit an assessment for report generation',
                    'GET /reports/jobs': 'List recent jobs',
                    'GET /reports/jobs/<job_id>': 'Job status and progress',
                    'GET /reports/jobs/<job_id>/artifact': 'Download the finished report',
                    'GET /reports/jobs/<job_id>/events': 'Job event log',
                    'DELETE /reports/jobs/<job_id>': 'Cancel a job',
                    'POST /reports/jobs/<job_id>/retry': 'Retry a failed job as a new job',
                    'GET /reports/artifacts/<owner>': 'Download a synchronously rendered report',
                    'GET /health': 'Queue statistics',
                },
            }
        )

    @app.route('/health', methods=['GET'])
    def health():
        return jsonify(
            {
                'status': 'healthy',
                'queue': svc.stats(),
                'routing': {
                    'sync_page_threshold': svc.settings.sync_page_threshold,
                    'max_chunk_pages': svc.settings.max_chunk_pages,
                    'chunk_concurrency': svc.settings.chunk_concurrency,
                },
            }
        ), 200

    @app.route('/reports', methods=['POST'])
    def submit_report():
        data = request.get_json(silent=True)
        if not data or not isinstance(data, dict):
            return jsonify({'error': 'Invalid JSON request'}), 400

        assessment_id = str(data.get('assessment_id') or '').strip()
        if not assessment_id:
            return jsonify({'error': 'Missing required parameter: assessment_id'}), 400
        try:
            output_format = _parse_format(data)
            priority = _parse_int(data, 'priority', 0)
        except ValueError as e:
            return jsonify({'error': str(e)}), 400

        force_async = bool(data.get('async') or data.get('async_mode') or data.get('background'))
        result = svc.submit(
            assessment_id,
            output_format=output_format,
            priority=priority,
            force_async=force_async,
        )
        return jsonify(_submit_payload(result)), result.http_status

    @app.route('/reports/jobs', methods=['GET'])
    def list_jobs():
        status_arg = request.args.get('status')
        status = None
        if status_arg:
            try:
                status = JobStatus(status_arg)
            except ValueError:
                return jsonify({'error': f'Invalid status: {status_arg}'}), 400
        try:
            limit = max(1, min(500, int(request.args.get('limit', 50))))
        except ValueError:
            return jsonify({'error': 'Invalid parameter: limit'}), 400
        jobs = svc.list_jobs(status=status, limit=limit)
        return jsonify(
            [
                {
                    'job_id': str(job.id),
                    'assessment_id': job.assessment_id,
                    'status': job.status.value,
                    'progress': job.progress,
                    'requested_at': job.requested_at.isoformat(),
                }
                for job in jobs
            ]
        ), 200

    @app.route('/reports/jobs/<job_id>', methods=['GET'])
    def job_status(job_id: str):
        return jsonify(svc.get_status(job_id).model_dump(mode='json')), 200

    @app.route('/reports/jobs/<job_id>/artifact', methods=['GET'])
    def job_artifact(job_id: str):
        info = svc.get_artifact(job_id)
        if request.args.get('meta', '0').lower() in ('1', 'true', 'yes'):
            return jsonify(_artifact_payload(info, f'/reports/jobs/{job_id}/artifact')), 200
        return send_file(
            svc.artifacts.open_path(info),
            mimetype=_MIMETYPES[info.format],
            as_attachment=True,
            download_name=f'report-{job_id}.{info.format.extension}',
        )

    @app.route('/reports/jobs/<job_id>/events', methods=['GET'])
    def job_events(job_id: str):
        return jsonify(svc.status.events(job_id)), 200

    @app.route('/reports/jobs/<job_id>', methods=['DELETE'])
    def job_cancel(job_id: str):
        job = svc.cancel(job_id)
        return jsonify(svc.get_status(job.id).model_dump(mode='json')), 200

    @app.route('/reports/jobs/<job_id>/retry', methods=['POST'])
    def job_retry(job_id: str):
        job = svc.retry(job_id)
        return (
            jsonify(
                {
                    'job_id': str(job.id),
                    'retry_of': str(job.retry_of),
                    'status': job.status.value,
                    'status_url': f'/reports/jobs/{job.id}',
                }
            ),
            202,
        )

    @app.route('/reports/artifacts/<owner>', methods=['GET'])
    def sync_artifact(owner: str):
        try:
            info = svc.artifacts.load_info(owner)
        except ValueError as e:
            return jsonify({'error': str(e)}), 400
        return send_file(
            svc.artifacts.open_path(info),
            mimetype=_MIMETYPES[info.format],
            as_attachment=True,
            download_name=f'report-{owner}.{info.format.extension}',
        )

    return app


if __name__ == '__main__':
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    logger.info('Starting reportforge API on http://%s:%s', settings.server_host, settings.server_port)
    create_app().run(host=settings.server_host, port=settings.server_port, debug=False, threaded=True)
