from __future__ import annotations

import argparse
from dataclasses import dataclass
import json
import os
from pathlib import Path
import threading

import uvicorn

from labeldelay.analytics import LogAnalyticsSink
from labeldelay.config import AppConfig, RepoPolicyLoader, load_config
from labeldelay.error_reporting import ErrorReporter, init_error_reporting
from labeldelay.github_gateway import GitHubGateway
from labeldelay.handlers import WebhookHandlers
from labeldelay.identity import parse_key
from labeldelay.job_store import JobStore
from labeldelay.models import JobPayload, ScheduledJob
from labeldelay.observability import configure_logging
from labeldelay.router import EventRouter, build_router
from labeldelay.scheduler import ActionScheduler
from labeldelay.server import create_app
from labeldelay.service_runner import JobRunner
from labeldelay.worker import JobWorker


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="labeldelay")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init", help="Initialize the state directory and job DB")
    _add_common_arguments(init_parser)

    serve_parser = subparsers.add_parser(
        "serve", help="Run the webhook server together with the job runner"
    )
    _add_common_arguments(serve_parser)

    worker_parser = subparsers.add_parser("worker", help="Run only the job runner")
    _add_common_arguments(worker_parser)
    worker_parser.add_argument(
        "--once", action="store_true", help="Process due jobs once and exit"
    )

    jobs_parser = subparsers.add_parser("jobs", help="Inspect and manage scheduled jobs")
    jobs_subparsers = jobs_parser.add_subparsers(dest="jobs_command", required=True)

    list_parser = jobs_subparsers.add_parser("list", help="List scheduled jobs")
    _add_common_arguments(list_parser)
    list_parser.add_argument("--json", action="store_true", help="Print jobs as JSON")

    cancel_parser = jobs_subparsers.add_parser("cancel", help="Cancel one scheduled job")
    _add_common_arguments(cancel_parser)
    cancel_parser.add_argument(
        "--key",
        type=str,
        required=True,
        help="Job key, e.g. octo:repo:12 or octo:repo:12:merge",
    )

    return parser


def main() -> None:
    args = build_parser().parse_args()
    config = load_config(args.config)
    configure_logging(
        bool(getattr(args, "verbose", False)),
        state_dir=config.runtime.base_dir if getattr(args, "log_to_file", False) else None,
    )

    if args.command == "init":
        _cmd_init(config)
        return
    if args.command == "serve":
        _cmd_serve(config)
        return
    if args.command == "worker":
        _cmd_worker(config, once=bool(args.once))
        return
    if args.command == "jobs":
        _cmd_jobs(config, args)
        return

    raise RuntimeError(f"Unknown command: {args.command}")


@dataclass(frozen=True)
class Services:
    jobs: JobStore
    router: EventRouter
    runner: JobRunner


def build_services(config: AppConfig, *, error_reporter: ErrorReporter) -> Services:
    jobs = JobStore(config.state_db_path)
    policy_loader = RepoPolicyLoader(config.github.repo_config_path)
    scheduler = ActionScheduler(jobs=jobs, analytics=LogAnalyticsSink())
    handlers = WebhookHandlers(
        scheduler=scheduler,
        jobs=jobs,
        policy_loader=policy_loader,
        github_factory=GitHubGateway,
    )
    worker = JobWorker(github_factory=_gateway_for_payload, policy_loader=policy_loader)
    return Services(
        jobs=jobs,
        router=build_router(
            handlers, github_config=config.github, error_reporter=error_reporter
        ),
        runner=JobRunner(
            runtime=config.runtime,
            jobs=jobs,
            processor=worker,
            error_reporter=error_reporter,
        ),
    )


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=Path("labeldelay.toml"))
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose runtime logging to stderr",
    )
    parser.add_argument(
        "--log-to-file",
        action="store_true",
        help="Also write logs to <base_dir>/logs/<date>.log",
    )


def _cmd_init(config: AppConfig) -> None:
    config.runtime.base_dir.mkdir(parents=True, exist_ok=True)
    jobs = JobStore(config.state_db_path)
    print(f"Initialized labeldelay base dir: {config.runtime.base_dir}")
    print(f"Job DB: {jobs.db_path}")


def _cmd_serve(config: AppConfig) -> None:
    services = build_services(config, error_reporter=init_error_reporting())
    secret = os.environ.get(config.server.webhook_secret_env, "").strip() or None
    app = create_app(services.router, webhook_secret=secret)
    stop_event = threading.Event()
    runner_thread = threading.Thread(
        target=services.runner.run,
        kwargs={"once": False, "stop_event": stop_event},
        name="labeldelay-runner",
        daemon=True,
    )
    runner_thread.start()
    try:
        uvicorn.run(app, host=config.server.host, port=config.server.port, log_config=None)
    finally:
        stop_event.set()
        runner_thread.join(timeout=config.runtime.poll_interval_seconds * 2)


def _cmd_worker(config: AppConfig, *, once: bool) -> None:
    services = build_services(config, error_reporter=init_error_reporting())
    services.runner.run(once=once)


def _cmd_jobs(config: AppConfig, args: argparse.Namespace) -> None:
    jobs = JobStore(config.state_db_path)
    if args.jobs_command == "list":
        _cmd_jobs_list(jobs, as_json=bool(args.json))
        return
    if args.jobs_command == "cancel":
        _cmd_jobs_cancel(jobs, key=str(args.key))
        return
    raise RuntimeError(f"Unknown jobs command: {args.jobs_command}")


def _cmd_jobs_list(jobs: JobStore, *, as_json: bool) -> None:
    scheduled = jobs.list_jobs()
    if as_json:
        print(json.dumps([_job_as_json(job) for job in scheduled], indent=2))
        return

    if not scheduled:
        print("No scheduled jobs.")
        return

    for job in scheduled:
        print(
            f"key={job.key} action={job.payload.action} fire_at_ms={job.fire_at_ms} "
            f"attempts={job.attempts} notified={str(job.notified).lower()}"
        )
        if job.last_error:
            print(f"last_error={_summarize_error(job.last_error)}")


def _cmd_jobs_cancel(jobs: JobStore, *, key: str) -> None:
    try:
        parse_key(key)
    except ValueError as exc:
        raise RuntimeError(f"Invalid --key value {key!r}: {exc}") from exc
    if jobs.remove_job(key):
        print(f"Cancelled {key}.")
        return
    print(f"No scheduled job with key {key}.")


def _job_as_json(job: ScheduledJob) -> dict[str, object]:
    return {
        "key": job.key,
        **job.payload.as_dict(),
        "fire_at_ms": job.fire_at_ms,
        "notified": job.notified,
        "attempts": job.attempts,
        "revision": job.revision,
        "last_error": job.last_error,
    }


def _gateway_for_payload(payload: JobPayload) -> GitHubGateway:
    return GitHubGateway(payload.owner, payload.repo, payload.installation_id)


def _summarize_error(error: str) -> str:
    first_line = error.strip().splitlines()[0] if error.strip() else ""
    if not first_line:
        return "<none>"
    if len(first_line) <= 200:
        return first_line
    return f"{first_line[:197]}..."
