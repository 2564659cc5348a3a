"""
Dispatch: get a worker run started for a job.

The RQ queue is the normal path. It is best-effort: when Redis is down, the
queue is disabled, or enqueue raises for any other reason, `enqueue()` returns
False and `dispatch()` runs the worker directly on a daemon thread instead.
Either way the caller gets control back immediately.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass

from rq import Queue
from rq.job import JobStatus as RQJobStatus

from bulkjobs.config import QueueConfig, load_settings
from bulkjobs.models import BACKGROUND_FAILED_REASON
from bulkjobs.queueing.redis_conn import get_redis
from bulkjobs.queueing.tasks import run_bulk_job
from bulkjobs.store import JobStore
from bulkjobs.worker import run_job

log = logging.getLogger(__name__)

# rq states in which a delivery is still coming.
_LIVE_RQ_STATES = frozenset(
    {RQJobStatus.QUEUED, RQJobStatus.STARTED, RQJobStatus.DEFERRED, RQJobStatus.SCHEDULED}
)


@dataclass
class DispatchResult:
    job_id: str
    queued: bool
    thread: threading.Thread | None = None

    @property
    def mode(self) -> str:
        return "queued" if self.queued else "direct"


def get_queue(cfg: QueueConfig) -> Queue:
    return Queue(cfg.queue_name, connection=get_redis(cfg.rq_redis_url))


def rq_job_id(job_id: str) -> str:
    """One rq entry per bulk job, so its delivery state can be looked up."""
    return f"bulk-job-{job_id}"


class Dispatcher:
    def __init__(
        self,
        cfg: QueueConfig | None = None,
        *,
        store: JobStore | None = None,
        queue_factory: Callable[[QueueConfig], Queue] = get_queue,
        runner: Callable[[str], None] = run_job,
    ) -> None:
        self.cfg = cfg or load_settings().queue
        self._store = store
        self._queue_factory = queue_factory
        self._runner = runner

    @property
    def store(self) -> JobStore:
        if self._store is None:
            self._store = JobStore()
        return self._store

    def enqueue(self, job_id: str) -> bool:
        if not self.cfg.enabled:
            return False
        try:
            q = self._queue_factory(self.cfg)
            rq_job = q.enqueue(
                run_bulk_job,
                job_id,
                job_id=rq_job_id(job_id),
                job_timeout=self.cfg.job_timeout_seconds,
                description=f"bulk job {job_id}",
            )
        except Exception as exc:  # noqa: BLE001
            log.warning(
                "bulk job enqueue failed",
                extra={"job_id": job_id, "queue": self.cfg.queue_name, "exc": str(exc)},
            )
            return False
        log.info(
            "bulk job enqueued",
            extra={"job_id": job_id, "queue": self.cfg.queue_name, "rq_job_id": rq_job.id},
        )
        return True

    def is_queued(self, job_id: str) -> bool:
        """True while rq still holds an undelivered or running entry for the job."""
        if not self.cfg.enabled:
            return False
        try:
            rq_job = self._queue_factory(self.cfg).fetch_job(rq_job_id(job_id))
            if rq_job is None:
                return False
            status = rq_job.get_status()
        except Exception as exc:  # noqa: BLE001
            log.warning(
                "rq status lookup failed",
                extra={"job_id": job_id, "queue": self.cfg.queue_name, "exc": str(exc)},
            )
            return False
        return status in _LIVE_RQ_STATES

    def _run_guarded(self, job_id: str) -> None:
        try:
            self._runner(job_id)
        except Exception:
            log.exception("direct bulk job run failed", extra={"job_id": job_id})
            try:
                self.store.fail(job_id, BACKGROUND_FAILED_REASON)
            except Exception:
                log.exception("failed to mark bulk job failed", extra={"job_id": job_id})

    def run_detached(self, job_id: str) -> threading.Thread:
        t = threading.Thread(
            target=self._run_guarded,
            args=(job_id,),
            name=f"bulk-job-{job_id}",
            daemon=True,
        )
        t.start()
        return t

    def dispatch(self, job_id: str) -> DispatchResult:
        if self.enqueue(job_id):
            return DispatchResult(job_id=job_id, queued=True)
        log.warning("falling back to direct bulk job run", extra={"job_id": job_id})
        return DispatchResult(job_id=job_id, queued=False, thread=self.run_detached(job_id))


__all__ = ["Dispatcher", "DispatchResult", "get_queue", "rq_job_id"]
