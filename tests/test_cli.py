"""
Tests for the command-line entry point.
"""

import json

from conftest import build_assessment
from main import main


def _output(capsys):
    return json.loads(capsys.readouterr().out)


class TestCli:
    def test_estimate(self, service, save_assessment, capsys) -> None:
        save_assessment(service, build_assessment('acme', total_words=121_920, sections=8, items_per_section=10))

        assert main(['estimate', '--assessment-id', 'acme'], service=service) == 0

        body = _output(capsys)
        assert body['page_count'] == 466
        assert body['routing'] == 'async'

    def test_submit_worker_result(self, service, save_assessment, capsys, tmp_path) -> None:
        save_assessment(service, build_assessment('acme', total_words=121_920, sections=8, items_per_section=10))

        assert main(['submit', '--assessment-id', 'acme'], service=service) == 0
        job_id = _output(capsys)['job_id']

        assert main(['worker', '--drain'], service=service) == 0
        assert _output(capsys) == [{'job_id': job_id, 'status': 'succeeded'}]

        target = tmp_path / 'out' / 'report.md'
        assert main(['result', '--job-id', job_id, '--output', str(target)], service=service) == 0
        assert _output(capsys)['page_count'] == 466
        assert target.exists()

    def test_result_before_ready(self, service, save_assessment, capsys) -> None:
        save_assessment(service, build_assessment('acme', total_words=121_920, sections=8, items_per_section=10))
        main(['submit', '--assessment-id', 'acme'], service=service)
        job_id = _output(capsys)['job_id']

        assert main(['result', '--job-id', job_id], service=service) == 0
        body = _output(capsys)
        assert body['status'] == 'not_ready'
        assert body['current_status'] == 'queued'

    def test_errors_exit_with_2(self, service, capsys) -> None:
        assert main(['status', '--job-id', 'missing'], service=service) == 2
        body = _output(capsys)
        assert body['status'] == 'error'
        assert body['kind'] == 'JobNotFoundError'
