"""
Batch worker: drains one job's items, one lookup at a time.

The loop is resumable. It starts at the persisted cursor, skips items that
are no longer pending, and writes each outcome together with the aggregates
and the advanced cursor, so a worker started after a crash or a duplicate
dispatch picks up where the last write left off.

Only the holder of the job's lease advances it. The lease is renewed before
every item; if the renewal fails (the job was stopped, or another worker took
over an expired lease) the loop exits without completing the job.
"""

from __future__ import annotations

import logging
import os
import socket
import time
import uuid
from collections.abc import Callable
from typing import Any, Protocol

from rq.timeouts import JobTimeoutException

from bulkjobs.config import WorkerConfig, load_settings
from bulkjobs.lookup.client import ItemOutcome, LookupClient
from bulkjobs.models import ITEM_ERROR, ITEM_FAILED_REASON, Job, JobKind
from bulkjobs.store import JobStore

log = logging.getLogger(__name__)


class ItemLookup(Protocol):
    def run_item(self, kind: JobKind, item_input: dict[str, Any]) -> ItemOutcome: ...


def new_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class BatchWorker:
    def __init__(
        self,
        store: JobStore,
        lookup: ItemLookup,
        cfg: WorkerConfig | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        worker_id: str | None = None,
    ) -> None:
        self.store = store
        self.lookup = lookup
        self.cfg = cfg or load_settings().worker
        self._sleep = sleep
        self.worker_id = worker_id or new_worker_id()

    def run(self, job_id: str) -> None:
        job = self.store.load(job_id, include_items=False)
        if job is None:
            log.warning("bulk job not found; nothing to run", extra={"job_id": job_id})
            return

        try:
            if not self.store.claim(job_id, self.worker_id, self.cfg.lease_seconds):
                log.info(
                    "bulk job not claimable (terminal or leased elsewhere)",
                    extra={"job_id": job_id, "status": job.status.value, "lease_owner": job.lease_owner},
                )
                return
            self._drain(job_id)
        except JobTimeoutException:
            # Job stays processing; the lease expires and recovery resumes it.
            raise
        except Exception as exc:
            log.exception("bulk job aborted", extra={"job_id": job_id})
            self.store.fail(job_id, str(exc) or type(exc).__name__)

    def _drain(self, job_id: str) -> None:
        job = self.store.load(job_id)
        if job is None:
            return
        log.info(
            "bulk job started",
            extra={
                "job_id": job_id,
                "kind": job.kind.value,
                "cursor": job.cursor,
                "total": job.total_items,
                "worker_id": self.worker_id,
            },
        )

        pending = [item for item in job.items[job.cursor :] if item.is_pending]
        for n, item in enumerate(pending):
            if not self.store.heartbeat(job_id, self.worker_id, self.cfg.lease_seconds):
                log.info(
                    "bulk job no longer active for this worker; stopping",
                    extra={"job_id": job_id, "index": item.index, "worker_id": self.worker_id},
                )
                return

            if not self.store.mark_item_processing(job_id, item.index):
                continue

            outcome = self._lookup(job, item.index, item.input)
            self.store.record_item_outcome(
                job_id,
                item.index,
                worker_id=self.worker_id,
                status=outcome.status,
                result=outcome.result,
                error_reason=outcome.error_reason,
                lease_seconds=self.cfg.lease_seconds,
            )

            if n < len(pending) - 1 and self.cfg.item_delay_seconds > 0:
                self._sleep(self.cfg.item_delay_seconds)

        if self.store.complete(job_id, self.worker_id):
            done = self.store.load(job_id, include_items=False)
            log.info(
                "bulk job completed",
                extra={
                    "job_id": job_id,
                    "processed": done.processed_count if done else None,
                    "succeeded": done.success_count if done else None,
                    "failed": done.fail_count if done else None,
                },
            )

    def _lookup(self, job: Job, index: int, item_input: dict[str, Any]) -> ItemOutcome:
        start = time.perf_counter()
        try:
            outcome = self.lookup.run_item(job.kind, item_input)
        except JobTimeoutException:
            raise
        except Exception:
            log.exception("item lookup raised", extra={"job_id": job.id, "index": index})
            outcome = ItemOutcome(
                ITEM_ERROR,
                {"status": ITEM_ERROR, "reason": ITEM_FAILED_REASON},
                ITEM_FAILED_REASON,
            )
        log.debug(
            "item processed",
            extra={
                "job_id": job.id,
                "index": index,
                "status": outcome.status,
                "latency_ms": int((time.perf_counter() - start) * 1000),
            },
        )
        return outcome


def build_worker() -> BatchWorker:
    """Worker wired to the configured store and lookup service."""
    cfg = load_settings()
    return BatchWorker(JobStore(), LookupClient(cfg.lookup), cfg.worker)


def run_job(job_id: str) -> None:
    build_worker().run(job_id)


__all__ = ["BatchWorker", "ItemLookup", "build_worker", "run_job", "new_worker_id"]
