"""Operator CLI for listing, inspecting and stopping crawl jobs."""

from __future__ import annotations

import argparse
from typing import Sequence

from . import db
from .errors import InvalidTransition, JobNotFound
from .job_registry import CrawlJob


def _build_parser() -> argparse.ArgumentParser:
    """Return an argument parser for the jobs CLI."""

    parser = argparse.ArgumentParser(description="Inspect and control FIR crawl jobs.")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list", help="List jobs, newest first.")

    show = sub.add_parser("show", help="Show one job with record counts.")
    show.add_argument("job_id", type=int)

    stop = sub.add_parser("stop", help="Stop a processing job.")
    stop.add_argument("job_id", type=int)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the jobs CLI."""

    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    db.initialize_schema()

    if args.command == "list":
        for job in CrawlJob.list_all():
            print(
                f"{job.id}\t{job.status.value}\t{job.found_total} found\t"
                f"{job.downloaded_total} downloaded\t{job.name}"
            )
        return 0

    try:
        job = CrawlJob.load(args.job_id)
    except JobNotFound as exc:
        parser.error(str(exc))

    if args.command == "show":
        print(f"Job {job.id}: {job.name}")
        print(f"  status: {job.status.value}")
        print(f"  found: {job.found_total}")
        print(f"  downloaded: {job.downloaded_total}")
        checkpoint = job.checkpoint.to_dict() if job.checkpoint else None
        print(f"  checkpoint: {checkpoint}")
        counts = db.count_records_by_status(job.id)
        if counts:
            print("\nRecords:")
            for status, count in sorted(counts.items()):
                print(f"  {status}: {count}")
        return 0

    try:
        job.request_stop()
    except InvalidTransition as exc:
        print(str(exc))
        return 1
    print(f"Job {job.id} stopped")
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry
    raise SystemExit(main())
