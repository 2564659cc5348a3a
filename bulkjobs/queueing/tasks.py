# bulkjobs/queueing/tasks.py
"""RQ entrypoints. Kept import-light so the worker process can resolve them."""

from __future__ import annotations

from bulkjobs.worker import run_job


def run_bulk_job(job_id: str) -> None:
    """Drain one bulk job. Safe to deliver more than once."""
    run_job(job_id)
