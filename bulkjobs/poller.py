"""
Client-side status poller.

Polls a job until it reaches a terminal status or the caller stops it. The
delay starts at the base, doubles on each consecutive failed read up to the
cap, and drops back to the base after any successful read. This backoff is
separate from the lookup client's retry policy.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any, Protocol

import httpx

from bulkjobs.config import PollerConfig, load_settings
from bulkjobs.models import TERMINAL_JOB_STATUSES

log = logging.getLogger(__name__)

_TERMINAL = {s.value for s in TERMINAL_JOB_STATUSES}


class StatusSource(Protocol):
    def get_job(self, job_id: str) -> dict[str, Any]: ...

    def stop_job(self, job_id: str) -> dict[str, Any]: ...


def next_delay(failures: int, base: float, cap: float) -> float:
    """Delay before the next poll after `failures` consecutive failed reads."""
    if failures <= 0:
        return base
    return min(base * 2 ** (failures - 1), cap)


class StatusPoller:
    def __init__(
        self,
        client: StatusSource,
        cfg: PollerConfig | None = None,
        *,
        sleep: Callable[[float], Any] | None = None,
        on_update: Callable[[dict[str, Any]], None] | None = None,
        max_failures: int | None = None,
    ) -> None:
        self.client = client
        self.cfg = cfg or load_settings().poller
        self._stop = threading.Event()
        # Event.wait returns early when stop() is called mid-sleep.
        self._sleep = sleep or self._stop.wait
        self.on_update = on_update
        self.max_failures = max_failures
        self.delays: list[float] = []
        self.last: dict[str, Any] | None = None

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def stop(self, job_id: str) -> dict[str, Any] | None:
        """Ask the server to stop the job and halt polling."""
        self._stop.set()
        try:
            summary = self.client.stop_job(job_id)
        except httpx.HTTPError as exc:
            log.warning("stop request failed", extra={"job_id": job_id, "exc": str(exc)})
            return None
        self.last = summary
        return summary

    def poll_once(self, job_id: str) -> dict[str, Any]:
        job = self.client.get_job(job_id)
        self.last = job
        if self.on_update is not None:
            self.on_update(job)
        return job

    def watch(self, job_id: str) -> dict[str, Any] | None:
        """
        Poll until the job is terminal, stop() is called, or `max_failures`
        consecutive reads fail. Returns the last summary seen.
        """
        failures = 0
        while not self.stopped:
            try:
                job = self.poll_once(job_id)
            except (httpx.HTTPError, ValueError) as exc:
                failures += 1
                log.warning(
                    "status poll failed",
                    extra={"job_id": job_id, "failures": failures, "exc": str(exc)},
                )
                if self.max_failures is not None and failures >= self.max_failures:
                    break
            else:
                failures = 0
                if job.get("status") in _TERMINAL:
                    log.info(
                        "job reached terminal status",
                        extra={"job_id": job_id, "status": job.get("status")},
                    )
                    break

            if self.stopped:
                break
            delay = next_delay(failures, self.cfg.base_delay_seconds, self.cfg.max_delay_seconds)
            self.delays.append(delay)
            self._sleep(delay)
        return self.last


__all__ = ["StatusPoller", "StatusSource", "next_delay"]
