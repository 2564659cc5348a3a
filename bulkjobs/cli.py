# bulkjobs/cli.py
from __future__ import annotations

import argparse
import json
import logging
import os
import signal
from pathlib import Path
from typing import Any

from bulkjobs.client import JobsClient
from bulkjobs.config import load_settings
from bulkjobs.poller import StatusPoller
from bulkjobs.recovery import recover_stuck_jobs

DEFAULT_API_URL = "http://127.0.0.1:8000"


def _configure_logging() -> None:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _client(args: argparse.Namespace) -> JobsClient:
    return JobsClient(args.api_url, args.user)


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def _progress_line(job: dict[str, Any]) -> str:
    total = int(job.get("total_items") or 0)
    done = int(job.get("processed_count") or 0)
    return (
        f"{job.get('job_id')} {job.get('status'):10} "
        f"{done}/{total} ok={job.get('success_count', 0)} err={job.get('fail_count', 0)}"
    )


def _cmd_worker(args: argparse.Namespace) -> int:
    from bulkjobs.queueing.rq_worker import run

    run(args.queue or None, burst=args.burst)
    return 0


def _cmd_run(args: argparse.Namespace) -> int:
    from bulkjobs.worker import run_job

    run_job(args.job_id)
    return 0


def _cmd_recover(args: argparse.Namespace) -> int:
    _print_json(recover_stuck_jobs().to_dict())
    return 0


def _cmd_submit(args: argparse.Namespace) -> int:
    items = json.loads(Path(args.file).read_text(encoding="utf-8"))
    if not isinstance(items, list):
        print("input file must contain a JSON array of items")
        return 2
    with _client(args) as client:
        job_id = client.submit(args.kind, items, args.label)
    print(job_id)
    return 0


def _cmd_jobs(args: argparse.Namespace) -> int:
    with _client(args) as client:
        jobs = client.list_jobs(limit=args.limit, kind=args.kind)
    if args.json:
        _print_json(jobs)
        return 0
    if not jobs:
        print("(no jobs)")
    for job in jobs:
        print(_progress_line(job))
    return 0


def _cmd_watch(args: argparse.Namespace) -> int:
    cfg = load_settings().poller
    with _client(args) as client:
        poller = StatusPoller(
            client,
            cfg,
            on_update=lambda job: print(_progress_line(job)),
            max_failures=args.max_failures,
        )
        # Ctrl-C stops the job server-side as well as the local loop.
        previous = signal.signal(signal.SIGINT, lambda *_: poller.stop(args.job_id))
        try:
            last = poller.watch(args.job_id)
        finally:
            signal.signal(signal.SIGINT, previous)
    if last is None:
        return 1
    if last.get("error_message"):
        print(f"error: {last['error_message']}")
    return 0 if last.get("status") == "completed" else 1


def _cmd_stop(args: argparse.Namespace) -> int:
    with _client(args) as client:
        if args.all:
            print(f"stopped {client.stop_all()} job(s)")
            return 0
        if not args.job_id:
            print("job id required unless --all is given")
            return 2
        result = client.stop_job(args.job_id)
    print(f"{result['job_id']} stopped={result['stopped']} status={result['status']}")
    return 0


def _add_client_args(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--api-url",
        default=os.getenv("BULK_API_URL", DEFAULT_API_URL),
        help=f"Base URL of the bulk jobs API (default: $BULK_API_URL or {DEFAULT_API_URL}).",
    )
    p.add_argument(
        "--user",
        default=os.getenv("DEV_USER_ID", "user_dev"),
        help="Owner id sent as x-user-id (default: $DEV_USER_ID).",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bulkjobs",
        description="Bulk email find/verify jobs: worker, recovery and client commands.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    worker_parser = subparsers.add_parser("worker", help="Run an rq worker for bulk jobs.")
    worker_parser.add_argument("--queue", action="append", help="Queue name (repeatable).")
    worker_parser.add_argument(
        "--burst", action="store_true", help="Exit once the queues are empty."
    )
    worker_parser.set_defaults(func=_cmd_worker)

    run_parser = subparsers.add_parser("run", help="Run one job in this process.")
    run_parser.add_argument("job_id")
    run_parser.set_defaults(func=_cmd_run)

    recover_parser = subparsers.add_parser("recover", help="Run one recovery sweep.")
    recover_parser.set_defaults(func=_cmd_recover)

    submit_parser = subparsers.add_parser("submit", help="Submit a batch from a JSON file.")
    submit_parser.add_argument("kind", choices=["find", "verify"])
    submit_parser.add_argument("file", help="JSON array of items.")
    submit_parser.add_argument("--label", default=None)
    _add_client_args(submit_parser)
    submit_parser.set_defaults(func=_cmd_submit)

    jobs_parser = subparsers.add_parser("jobs", help="List recent jobs.")
    jobs_parser.add_argument("--limit", type=int, default=10)
    jobs_parser.add_argument("--kind", choices=["find", "verify"], default=None)
    jobs_parser.add_argument("--json", action="store_true", help="Emit JSON.")
    _add_client_args(jobs_parser)
    jobs_parser.set_defaults(func=_cmd_jobs)

    watch_parser = subparsers.add_parser("watch", help="Poll a job until it finishes.")
    watch_parser.add_argument("job_id")
    watch_parser.add_argument(
        "--max-failures",
        type=int,
        default=None,
        help="Give up after this many consecutive failed polls (default: never).",
    )
    _add_client_args(watch_parser)
    watch_parser.set_defaults(func=_cmd_watch)

    stop_parser = subparsers.add_parser("stop", help="Stop one job, or all with --all.")
    stop_parser.add_argument("job_id", nargs="?")
    stop_parser.add_argument("--all", action="store_true")
    _add_client_args(stop_parser)
    stop_parser.set_defaults(func=_cmd_stop)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    func = getattr(args, "func", None)
    if func is None:
        parser.error("no command specified")
        return 1

    _configure_logging()
    return int(func(args))


if __name__ == "__main__":
    raise SystemExit(main())
