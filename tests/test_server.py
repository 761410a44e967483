"""
Tests for the Flask API.

Tests cover:
- Submission responses (202 job handle, 200 inline artifact, 4xx errors)
- Status, events, artifact download and cancellation endpoints
- Error payloads carry the typed error kind
"""

import pytest

from conftest import build_assessment
from reportforge.report.page_index import page_numbers
from reportforge.server import create_app


@pytest.fixture
def client(service, save_assessment):
    save_assessment(service, build_assessment('acme-large', total_words=121_920, sections=8, items_per_section=10))
    save_assessment(service, build_assessment('acme-small', total_words=20 * 262))
    app = create_app(service)
    app.config['TESTING'] = True
    return app.test_client()


class TestSubmitEndpoint:
    def test_async_submission(self, client) -> None:
        response = client.post('/reports', json={'assessment_id': 'acme-large'})

        assert response.status_code == 202
        body = response.get_json()
        assert body['routing'] == 'async'
        assert body['estimate']['page_count'] == 466
        assert body['status'] == 'queued'
        assert body['status_url'] == f"/reports/jobs/{body['job_id']}"

    def test_sync_submission(self, client) -> None:
        response = client.post('/reports', json={'assessment_id': 'acme-small', 'format': 'markdown'})

        assert response.status_code == 200
        body = response.get_json()
        assert body['routing'] == 'sync'
        assert body['completed'] is True
        assert body['artifact']['page_count'] == 20
        assert 'path' not in body['artifact']

        download = client.get(body['artifact']['download_url'])
        assert download.status_code == 200
        assert page_numbers(download.get_data(as_text=True)) == list(range(1, 21))

    def test_invalid_json(self, client) -> None:
        response = client.post('/reports', data='not json', content_type='application/json')
        assert response.status_code == 400

    def test_missing_assessment_id(self, client) -> None:
        assert client.post('/reports', json={'format': 'pdf'}).status_code == 400

    def test_invalid_format(self, client) -> None:
        response = client.post('/reports', json={'assessment_id': 'acme-small', 'format': 'docx'})
        assert response.status_code == 400

    def test_unknown_assessment(self, client) -> None:
        response = client.post('/reports', json={'assessment_id': 'nope'})

        assert response.status_code == 404
        assert response.get_json()['error'] == 'SizeEstimationError'


class TestJobEndpoints:
    def test_status_then_artifact(self, client, service) -> None:
        job_id = client.post('/reports', json={'assessment_id': 'acme-large'}).get_json()['job_id']

        pending = client.get(f'/reports/jobs/{job_id}/artifact')
        assert pending.status_code == 409
        assert pending.get_json()['error'] == 'ArtifactNotReadyError'

        service.drain()

        status = client.get(f'/reports/jobs/{job_id}').get_json()
        assert status['status'] == 'succeeded'
        assert status['artifact_ready'] is True
        download = client.get(f'/reports/jobs/{job_id}/artifact')
        assert download.status_code == 200
        assert download.mimetype == 'text/markdown'
        assert page_numbers(download.get_data(as_text=True))[-1] == 466

        meta = client.get(f'/reports/jobs/{job_id}/artifact?meta=1').get_json()
        assert meta['page_count'] == 466

        events = client.get(f'/reports/jobs/{job_id}/events').get_json()
        assert events[-1]['event'] == 'succeeded'

    def test_cancel_and_retry(self, client) -> None:
        job_id = client.post('/reports', json={'assessment_id': 'acme-large'}).get_json()['job_id']

        cancelled = client.delete(f'/reports/jobs/{job_id}')
        assert cancelled.status_code == 200
        assert cancelled.get_json()['status'] == 'cancelled'

        retried = client.post(f'/reports/jobs/{job_id}/retry')
        assert retried.status_code == 202
        body = retried.get_json()
        assert body['retry_of'] == job_id
        assert body['status'] == 'queued'

    def test_retry_of_queued_job_conflicts(self, client) -> None:
        job_id = client.post('/reports', json={'assessment_id': 'acme-large'}).get_json()['job_id']
        response = client.post(f'/reports/jobs/{job_id}/retry')

        assert response.status_code == 409
        assert response.get_json()['error'] == 'InvalidJobStateError'

    def test_unknown_job(self, client) -> None:
        response = client.get('/reports/jobs/not-a-job')
        assert response.status_code == 404
        assert response.get_json()['error'] == 'JobNotFoundError'

    def test_list_jobs(self, client) -> None:
        client.post('/reports', json={'assessment_id': 'acme-large'})
        jobs = client.get('/reports/jobs?status=queued').get_json()

        assert len(jobs) == 1
        assert jobs[0]['assessment_id'] == 'acme-large'
        assert client.get('/reports/jobs?status=bogus').status_code == 400


class TestServiceEndpoints:
    def test_health(self, client) -> None:
        body = client.get('/health').get_json()
        assert body['status'] == 'healthy'
        assert body['queue']['total'] == 0

    def test_unknown_route_is_json(self, client) -> None:
        response = client.get('/nowhere')
        assert response.status_code == 404
        assert response.is_json
