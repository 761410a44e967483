from __future__ import annotations

import argparse
import json
import logging
import threading
import time
from pathlib import Path

from reportforge.config import Settings, get_settings
from reportforge.errors import ReportForgeError
from reportforge.service import ReportService
from reportforge.types import JobStatus, OutputFormat, StatusPayload, SubmitResult


def _print_json(payload: dict | list) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def _status_snapshot(status: StatusPayload) -> dict:
    return status.model_dump(mode='json')


def _submit_response(result: SubmitResult, status: StatusPayload | None = None) -> dict:
    payload: dict = {
        'routing': result.routing.value,
        'http_status': result.http_status,
        'completed': result.completed,
        'estimate': result.estimate.model_dump(mode='json'),
    }
    if result.job_id is not None:
        payload['job_id'] = str(result.job_id)
    if status is not None:
        payload['status'] = status.status.value
        payload['message'] = status.message
        payload['progress'] = status.progress
        payload['completed'] = status.status == JobStatus.succeeded
    elif result.status is not None:
        payload['status'] = result.status.value
    if result.artifact is not None:
        payload['result'] = result.artifact.model_dump(mode='json')
    return payload


def _configure_logging(settings: Settings, verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')


def cmd_submit(args: argparse.Namespace, service: ReportService) -> int:
    settings = service.settings
    result = service.submit(
        args.assessment_id,
        output_format=OutputFormat(args.format) if args.format else None,
        priority=args.priority,
        force_async=args.force_async,
    )
    if result.completed or result.job_id is None:
        _print_json(_submit_response(result))
        return 0

    wait_seconds = args.wait_seconds
    if wait_seconds is None:
        wait_seconds = settings.submit_default_wait_seconds
    wait_seconds = max(0, int(wait_seconds))

    deadline = time.time() + wait_seconds
    poll_interval = max(0.3, float(settings.submit_poll_interval_seconds))

    latest = service.get_status(result.job_id)
    while wait_seconds > 0 and time.time() <= deadline:
        latest = service.get_status(result.job_id)
        if latest.status.terminal:
            break
        time.sleep(poll_interval)

    _print_json(_submit_response(result, latest))
    return 0


def cmd_status(args: argparse.Namespace, service: ReportService) -> int:
    _print_json(_status_snapshot(service.get_status(args.job_id)))
    return 0


def cmd_result(args: argparse.Namespace, service: ReportService) -> int:
    status = service.get_status(args.job_id)
    if status.status != JobStatus.succeeded:
        _print_json(
            {
                'status': 'not_ready',
                'job_id': str(status.job_id),
                'current_status': status.status.value,
                'message': status.message,
                'error': status.error.model_dump(mode='json') if status.error else None,
            }
        )
        return 0

    info = service.get_artifact(args.job_id)
    path = service.artifacts.open_path(info)
    if args.output:
        target = Path(args.output).expanduser().resolve()
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(path.read_bytes())
        _print_json({'job_id': str(status.job_id), 'written_to': str(target), 'page_count': info.page_count})
        return 0
    if args.print and info.format == OutputFormat.markdown:
        print(path.read_text(encoding='utf-8'))
        return 0

    _print_json({'job_id': str(status.job_id), **info.model_dump(mode='json')})
    return 0


def cmd_watch(args: argparse.Namespace, service: ReportService) -> int:
    interval = max(0.5, float(args.interval))
    timeout_seconds = max(0, int(args.timeout)) if args.timeout is not None else None
    deadline = time.time() + timeout_seconds if timeout_seconds is not None else None

    last_seen = None
    while True:
        status = service.get_status(args.job_id)
        marker = (status.status.value, status.chunks_done)
        if last_seen != marker:
            _print_json(_status_snapshot(status))
            last_seen = marker

        if status.status.terminal:
            return 0

        if deadline is not None and time.time() > deadline:
            _print_json({'status': 'timeout', 'job_id': str(status.job_id), 'current_status': status.status.value})
            return 0

        time.sleep(interval)


def cmd_cancel(args: argparse.Namespace, service: ReportService) -> int:
    job = service.cancel(args.job_id)
    _print_json(_status_snapshot(service.get_status(job.id)))
    return 0


def cmd_retry(args: argparse.Namespace, service: ReportService) -> int:
    job = service.retry(args.job_id, priority=args.priority)
    _print_json({'job_id': str(job.id), 'retry_of': str(job.retry_of), 'status': job.status.value})
    return 0


def cmd_list(args: argparse.Namespace, service: ReportService) -> int:
    status = JobStatus(args.status) if args.status else None
    jobs = service.list_jobs(status=status, limit=args.limit)
    _print_json(
        [
            {
                'job_id': str(job.id),
                'assessment_id': job.assessment_id,
                'status': job.status.value,
                'progress': job.progress,
                'attempt': job.attempt,
            }
            for job in jobs
        ]
    )
    return 0


def cmd_estimate(args: argparse.Namespace, service: ReportService) -> int:
    estimate = service.estimate(args.assessment_id)
    routing = service.submitter.route(estimate, force_async=False)
    _print_json({'assessment_id': args.assessment_id, 'routing': routing.value, **estimate.model_dump(mode='json')})
    return 0


def cmd_worker(args: argparse.Namespace, service: ReportService) -> int:
    if args.drain:
        processed = service.drain(max_jobs=args.max_jobs)
        _print_json([{'job_id': str(job.id), 'status': job.status.value} for job in processed])
        return 0

    pool = service.make_pool(args.concurrency)
    pool.start()
    watchdog_thread = None
    if args.with_watchdog:
        watchdog_thread = threading.Thread(
            target=service.watchdog.run_forever,
            args=(pool.stop_event,),
            name='watchdog',
            daemon=True,
        )
        watchdog_thread.start()
    try:
        while not pool.stop_event.wait(1.0):
            pass
    except KeyboardInterrupt:
        logging.getLogger(__name__).info('Stopping workers...')
    finally:
        pool.stop(timeout=service.settings.heartbeat_interval_seconds + 5)
        if watchdog_thread is not None:
            watchdog_thread.join(timeout=5)
    return 0


def cmd_watchdog(args: argparse.Namespace, service: ReportService) -> int:
    if args.once:
        changed = service.watchdog.sweep()
        _print_json([{'job_id': str(job.id), 'status': job.status.value, 'attempt': job.attempt} for job in changed])
        return 0
    stop = threading.Event()
    try:
        service.watchdog.run_forever(stop)
    except KeyboardInterrupt:
        stop.set()
    return 0


def cmd_purge(args: argparse.Namespace, service: ReportService) -> int:
    report = service.purge()
    _print_json({'artifacts_removed': report.artifacts_removed, 'jobs_removed': report.jobs_removed})
    return 0


def cmd_serve(args: argparse.Namespace, service: ReportService) -> int:
    from reportforge.server import create_app

    settings = service.settings
    create_app(service).run(
        host=args.host or settings.server_host,
        port=args.port or settings.server_port,
        debug=False,
        threaded=True,
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='reportforge: chunked assessment report generation')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')
    sub = parser.add_subparsers(dest='command', required=True)

    submit = sub.add_parser('submit', help='Submit an assessment for report generation')
    submit.add_argument('--assessment-id', required=True, help='Assessment ID')
    submit.add_argument('--format', choices=[f.value for f in OutputFormat], required=False)
    submit.add_argument('--priority', type=int, default=0)
    submit.add_argument('--async', dest='force_async', action='store_true', help='Always queue the job')
    submit.add_argument('--wait-seconds', type=int, required=False, help='Wait window before returning')
    submit.set_defaults(func=cmd_submit)

    estimate = sub.add_parser('estimate', help='Estimate report size and routing')
    estimate.add_argument('--assessment-id', required=True, help='Assessment ID')
    estimate.set_defaults(func=cmd_estimate)

    status = sub.add_parser('status', help='Get job status')
    status.add_argument('--job-id', required=True, help='Job ID')
    status.set_defaults(func=cmd_status)

    result = sub.add_parser('result', help='Fetch completed result')
    result.add_argument('--job-id', required=True, help='Job ID')
    result.add_argument('--output', required=False, help='Copy the artifact to this path')
    result.add_argument('--print', action='store_true', help='Print a markdown artifact to stdout')
    result.set_defaults(func=cmd_result)

    watch = sub.add_parser('watch', help='Watch job until it reaches a terminal state')
    watch.add_argument('--job-id', required=True, help='Job ID')
    watch.add_argument('--interval', type=float, default=2.0)
    watch.add_argument('--timeout', type=int, required=False)
    watch.set_defaults(func=cmd_watch)

    cancel = sub.add_parser('cancel', help='Cancel a queued or running job')
    cancel.add_argument('--job-id', required=True, help='Job ID')
    cancel.set_defaults(func=cmd_cancel)

    retry = sub.add_parser('retry', help='Queue a new job for a failed one')
    retry.add_argument('--job-id', required=True, help='Job ID')
    retry.add_argument('--priority', type=int, required=False)
    retry.set_defaults(func=cmd_retry)

    jobs = sub.add_parser('list', help='List recent jobs')
    jobs.add_argument('--status', choices=[s.value for s in JobStatus], required=False)
    jobs.add_argument('--limit', type=int, default=50)
    jobs.set_defaults(func=cmd_list)

    worker = sub.add_parser('worker', help='Run render workers')
    worker.add_argument('--concurrency', type=int, required=False)
    worker.add_argument('--with-watchdog', action='store_true', help='Run the watchdog in-process')
    worker.add_argument('--drain', action='store_true', help='Process queued jobs and exit')
    worker.add_argument('--max-jobs', type=int, required=False)
    worker.set_defaults(func=cmd_worker)

    watchdog = sub.add_parser('watchdog', help='Run the lease and deadline watchdog')
    watchdog.add_argument('--once', action='store_true', help='Run a single sweep and exit')
    watchdog.set_defaults(func=cmd_watchdog)

    purge = sub.add_parser('purge', help='Delete expired artifacts and old jobs')
    purge.set_defaults(func=cmd_purge)

    serve = sub.add_parser('serve', help='Run the HTTP API')
    serve.add_argument('--host', required=False)
    serve.add_argument('--port', type=int, required=False)
    serve.set_defaults(func=cmd_serve)

    return parser


def main(argv: list[str] | None = None, *, service: ReportService | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    service = service or ReportService(get_settings())
    _configure_logging(service.settings, args.verbose)
    try:
        return int(args.func(args, service))
    except ReportForgeError as exc:
        _print_json({'status': 'error', **exc.to_payload()})
        return 2


if __name__ == '__main__':
    raise SystemExit(main())
