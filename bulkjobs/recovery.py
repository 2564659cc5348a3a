"""
Recovery sweep for jobs whose worker went away.

A `processing` job whose heartbeat (`updated_at`) is older than the staleness
threshold lost its worker. A `pending` job that old was never picked up,
unless rq still holds a queued or running entry for it, in which case it is
only waiting its turn and is left alone. Every other stale job is either
reset and re-dispatched, resuming from its cursor, or, once its recovery
budget is spent, failed with reason "stalled".
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from bulkjobs.config import RecoveryConfig, load_settings
from bulkjobs.models import JobStatus, iso_ago
from bulkjobs.queueing.dispatch import Dispatcher
from bulkjobs.store import JobStore

log = logging.getLogger(__name__)


@dataclass
class RecoveryReport:
    restarted: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, list[str]]:
        return {"restarted": self.restarted, "failed": self.failed, "skipped": self.skipped}


class RecoverySweep:
    def __init__(
        self,
        store: JobStore,
        dispatcher: Dispatcher,
        cfg: RecoveryConfig | None = None,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.cfg = cfg or load_settings().recovery

    def recover_stuck_jobs(self, *, now: datetime | None = None) -> RecoveryReport:
        cutoff = iso_ago(self.cfg.stale_after_seconds, now=now)
        report = RecoveryReport()

        stale = self.store.list_stale(JobStatus.PROCESSING, cutoff) + self.store.list_stale(
            JobStatus.PENDING, cutoff
        )
        for job in stale:
            if job.status == JobStatus.PENDING and self.dispatcher.is_queued(job.id):
                log.debug("stale pending bulk job still queued", extra={"job_id": job.id})
                continue

            if job.recovery_attempts >= self.cfg.max_attempts:
                if self.store.fail_stalled(job.id, cutoff):
                    log.warning(
                        "stalled bulk job failed",
                        extra={"job_id": job.id, "attempts": job.recovery_attempts},
                    )
                    report.failed.append(job.id)
                else:
                    report.skipped.append(job.id)
                continue

            # Another sweep or a live worker may have touched it since we read.
            if not self.store.reset_for_retry(job.id, cutoff):
                report.skipped.append(job.id)
                continue

            log.warning(
                "restarting stuck bulk job",
                extra={
                    "job_id": job.id,
                    "was": job.status.value,
                    "cursor": job.cursor,
                    "attempt": job.recovery_attempts + 1,
                },
            )
            self.dispatcher.dispatch(job.id)
            report.restarted.append(job.id)

        if stale:
            log.info(
                "recovery sweep finished",
                extra={
                    "restarted": len(report.restarted),
                    "failed": len(report.failed),
                    "skipped": len(report.skipped),
                },
            )
        return report


def recover_stuck_jobs(
    store: JobStore | None = None,
    dispatcher: Dispatcher | None = None,
    *,
    now: datetime | None = None,
) -> RecoveryReport:
    """Run one sweep against the configured store and queue."""
    store = store or JobStore()
    dispatcher = dispatcher or Dispatcher(store=store)
    return RecoverySweep(store, dispatcher).recover_stuck_jobs(now=now)


__all__ = ["RecoverySweep", "RecoveryReport", "recover_stuck_jobs"]
