"""
Job Record Store: persisted, owner-scoped job state on SQLite.

Every write is a field-level UPDATE of the columns it owns, never a full row
replacement, so a writer that only advances the cursor cannot clobber fields
another writer changed. State transitions that can race (claim, completion,
recovery, stop) are compare-and-swap UPDATEs whose WHERE clause encodes the
expected current state; callers check the returned bool.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass
from typing import Any

from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from bulkjobs.db import ensure_schema, get_connection
from bulkjobs.exceptions import JobNotFound
from bulkjobs.models import (
    ITEM_ERROR,
    ITEM_PENDING,
    ITEM_PROCESSING,
    STALLED_REASON,
    STOP_REASON,
    Item,
    Job,
    JobKind,
    JobStatus,
    iso_in,
    utc_now_iso,
)

log = logging.getLogger(__name__)

_ACTIVE_SQL = "('pending', 'processing')"

# Columns a plain update() may touch. Lease bookkeeping is owned by
# the dedicated transition methods below.
_UPDATABLE = frozenset(
    {
        "status",
        "cursor",
        "processed_count",
        "success_count",
        "fail_count",
        "error_message",
        "source_label",
        "completed_at",
        "recovery_attempts",
    }
)

_JOB_COLUMNS = (
    "id, owner, kind, status, total_items, cursor, processed_count, success_count, "
    "fail_count, error_message, source_label, recovery_attempts, lease_owner, "
    "lease_expires_at, created_at, updated_at, completed_at"
)


def _is_locked(exc: BaseException) -> bool:
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    msg = str(exc).lower()
    return "locked" in msg or "busy" in msg


# Transient SQLite contention; anything else propagates immediately.
_write_retry = retry(
    reraise=True,
    retry=retry_if_exception(_is_locked),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.05, max=1.0),
)


def _dumps(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, separators=(",", ":"), default=str)


def _loads(raw: str | None) -> Any:
    if not raw:
        return None
    return json.loads(raw)


def _row_to_job(row: sqlite3.Row) -> Job:
    return Job(
        id=row["id"],
        owner=row["owner"],
        kind=JobKind(row["kind"]),
        status=JobStatus(row["status"]),
        total_items=int(row["total_items"]),
        cursor=int(row["cursor"]),
        processed_count=int(row["processed_count"]),
        success_count=int(row["success_count"]),
        fail_count=int(row["fail_count"]),
        error_message=row["error_message"],
        source_label=row["source_label"],
        recovery_attempts=int(row["recovery_attempts"]),
        lease_owner=row["lease_owner"],
        lease_expires_at=row["lease_expires_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        completed_at=row["completed_at"],
    )


def _row_to_item(row: sqlite3.Row) -> Item:
    return Item(
        index=int(row["idx"]),
        input=_loads(row["input_json"]) or {},
        status=row["status"],
        result=_loads(row["result_json"]),
        error_reason=row["error_reason"],
    )


@dataclass
class StopResult:
    job_id: str
    stopped: bool
    status: JobStatus


class JobStore:
    """SQLite-backed store. One short-lived connection per operation."""

    def __init__(self, db_path: str | None = None, *, init_schema: bool = True) -> None:
        self.db_path = db_path
        if init_schema:
            ensure_schema(db_path)

    def _connect(self) -> sqlite3.Connection:
        return get_connection(self.db_path)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _load_items(self, con: sqlite3.Connection, job_id: str) -> list[Item]:
        rows = con.execute(
            "SELECT idx, input_json, status, result_json, error_reason "
            "FROM bulk_job_items WHERE job_id = ? ORDER BY idx",
            (job_id,),
        ).fetchall()
        return [_row_to_item(r) for r in rows]

    def load(self, job_id: str, *, include_items: bool = True) -> Job | None:
        """Unscoped read used by the worker and recovery paths."""
        con = self._connect()
        try:
            row = con.execute(
                f"SELECT {_JOB_COLUMNS} FROM bulk_jobs WHERE id = ?", (job_id,)
            ).fetchone()
            if row is None:
                return None
            job = _row_to_job(row)
            if include_items:
                job.items = self._load_items(con, job_id)
            return job
        finally:
            con.close()

    def get(self, job_id: str, owner: str, *, include_items: bool = True) -> Job:
        con = self._connect()
        try:
            row = con.execute(
                f"SELECT {_JOB_COLUMNS} FROM bulk_jobs WHERE id = ? AND owner = ?",
                (job_id, owner),
            ).fetchone()
            if row is None:
                raise JobNotFound(job_id)
            job = _row_to_job(row)
            if include_items:
                job.items = self._load_items(con, job_id)
            return job
        finally:
            con.close()

    def list_by_owner(
        self, owner: str, limit: int = 10, *, kind: JobKind | str | None = None
    ) -> list[Job]:
        """Newest first; items are not loaded."""
        sql = f"SELECT {_JOB_COLUMNS} FROM bulk_jobs WHERE owner = ?"
        params: list[Any] = [owner]
        if kind is not None:
            sql += " AND kind = ?"
            params.append(JobKind(kind).value)
        sql += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(int(limit))
        con = self._connect()
        try:
            return [_row_to_job(r) for r in con.execute(sql, params).fetchall()]
        finally:
            con.close()

    def list_stale(self, status: JobStatus | str, older_than: str) -> list[Job]:
        """Jobs in `status` whose last write (heartbeat) is before `older_than`."""
        con = self._connect()
        try:
            rows = con.execute(
                f"SELECT {_JOB_COLUMNS} FROM bulk_jobs "
                "WHERE status = ? AND updated_at < ? ORDER BY updated_at",
                (JobStatus(status).value, older_than),
            ).fetchall()
            return [_row_to_job(r) for r in rows]
        finally:
            con.close()

    # ------------------------------------------------------------------
    # Create / generic update
    # ------------------------------------------------------------------

    @_write_retry
    def create(self, job: Job) -> str:
        job.id = job.id or str(uuid.uuid4())
        now = utc_now_iso()
        job.created_at = job.created_at or now
        job.updated_at = job.updated_at or now
        job.total_items = len(job.items)
        con = self._connect()
        try:
            with con:
                con.execute(
                    """
                    INSERT INTO bulk_jobs (
                      id, owner, kind, status, total_items, cursor,
                      processed_count, success_count, fail_count,
                      error_message, source_label, recovery_attempts,
                      created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        job.id,
                        job.owner,
                        job.kind.value,
                        job.status.value,
                        job.total_items,
                        job.cursor,
                        job.processed_count,
                        job.success_count,
                        job.fail_count,
                        job.error_message,
                        job.source_label,
                        job.recovery_attempts,
                        job.created_at,
                        job.updated_at,
                    ),
                )
                con.executemany(
                    "INSERT INTO bulk_job_items "
                    "(job_id, idx, input_json, status, result_json, error_reason) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    [
                        (
                            job.id,
                            item.index,
                            _dumps(item.input) or "{}",
                            item.status,
                            _dumps(item.result),
                            item.error_reason,
                        )
                        for item in job.items
                    ],
                )
        finally:
            con.close()
        return job.id

    @_write_retry
    def update(self, job_id: str, *, owner: str | None = None, **fields: Any) -> None:
        """
        Field-level merge of job columns. Raises JobNotFound when no row
        matches id (and owner, when given).
        """
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update job fields: {sorted(unknown)}")
        assignments = []
        params: list[Any] = []
        for name, value in fields.items():
            if isinstance(value, JobStatus):
                value = value.value
            assignments.append(f"{name} = ?")
            params.append(value)
        assignments.append("updated_at = ?")
        params.append(utc_now_iso())

        sql = f"UPDATE bulk_jobs SET {', '.join(assignments)} WHERE id = ?"
        params.append(job_id)
        if owner is not None:
            sql += " AND owner = ?"
            params.append(owner)

        con = self._connect()
        try:
            with con:
                cur = con.execute(sql, params)
            if cur.rowcount == 0:
                raise JobNotFound(job_id)
        finally:
            con.close()

    # ------------------------------------------------------------------
    # Worker transitions
    # ------------------------------------------------------------------

    @_write_retry
    def claim(self, job_id: str, worker_id: str, lease_seconds: float) -> bool:
        """
        Move a job to `processing` under `worker_id`'s lease.

        Succeeds from `pending`, or from `processing` when the lease is free,
        expired, or already ours. Items left `processing` by a previous holder
        go back to `pending` so they are retried.
        """
        now = utc_now_iso()
        con = self._connect()
        try:
            with con:
                cur = con.execute(
                    """
                    UPDATE bulk_jobs
                       SET status = 'processing',
                           lease_owner = ?,
                           lease_expires_at = ?,
                           updated_at = ?
                     WHERE id = ?
                       AND (
                            status = 'pending'
                         OR (status = 'processing'
                             AND (lease_owner IS NULL
                                  OR lease_owner = ?
                                  OR lease_expires_at IS NULL
                                  OR lease_expires_at < ?))
                       )
                    """,
                    (worker_id, iso_in(lease_seconds), now, job_id, worker_id, now),
                )
                if cur.rowcount == 0:
                    return False
                con.execute(
                    "UPDATE bulk_job_items SET status = ? WHERE job_id = ? AND status = ?",
                    (ITEM_PENDING, job_id, ITEM_PROCESSING),
                )
            return True
        finally:
            con.close()

    @_write_retry
    def heartbeat(self, job_id: str, worker_id: str, lease_seconds: float) -> bool:
        """Renew the lease. False once the job is stopped or taken over."""
        con = self._connect()
        try:
            with con:
                cur = con.execute(
                    "UPDATE bulk_jobs SET lease_expires_at = ?, updated_at = ? "
                    "WHERE id = ? AND status = 'processing' AND lease_owner = ?",
                    (iso_in(lease_seconds), utc_now_iso(), job_id, worker_id),
                )
            return cur.rowcount == 1
        finally:
            con.close()

    @_write_retry
    def mark_item_processing(self, job_id: str, index: int) -> bool:
        con = self._connect()
        try:
            with con:
                cur = con.execute(
                    "UPDATE bulk_job_items SET status = ? "
                    "WHERE job_id = ? AND idx = ? AND status = ?",
                    (ITEM_PROCESSING, job_id, index, ITEM_PENDING),
                )
                if cur.rowcount == 0:
                    return False
                con.execute(
                    "UPDATE bulk_jobs SET updated_at = ? WHERE id = ?",
                    (utc_now_iso(), job_id),
                )
            return True
        finally:
            con.close()

    @_write_retry
    def record_item_outcome(
        self,
        job_id: str,
        index: int,
        *,
        worker_id: str,
        status: str,
        result: dict[str, Any] | None,
        error_reason: str | None,
        lease_seconds: float,
    ) -> bool:
        """
        Persist one item's outcome together with the aggregates and cursor.

        Only applies to an item that is still `processing`, so an outcome is
        counted at most once even if a stale worker reports late.
        """
        failed = status == ITEM_ERROR
        now = utc_now_iso()
        con = self._connect()
        try:
            with con:
                cur = con.execute(
                    "UPDATE bulk_job_items SET status = ?, result_json = ?, error_reason = ? "
                    "WHERE job_id = ? AND idx = ? AND status = ?",
                    (status, _dumps(result), error_reason, job_id, index, ITEM_PROCESSING),
                )
                if cur.rowcount == 0:
                    return False
                con.execute(
                    """
                    UPDATE bulk_jobs
                       SET processed_count = processed_count + 1,
                           success_count = success_count + ?,
                           fail_count = fail_count + ?,
                           cursor = MAX(cursor, ?),
                           updated_at = ?,
                           lease_expires_at = CASE WHEN lease_owner = ?
                                                   THEN ? ELSE lease_expires_at END
                     WHERE id = ?
                    """,
                    (
                        0 if failed else 1,
                        1 if failed else 0,
                        index + 1,
                        now,
                        worker_id,
                        iso_in(lease_seconds),
                        job_id,
                    ),
                )
            return True
        finally:
            con.close()

    @_write_retry
    def complete(self, job_id: str, worker_id: str) -> bool:
        now = utc_now_iso()
        con = self._connect()
        try:
            with con:
                cur = con.execute(
                    """
                    UPDATE bulk_jobs
                       SET status = 'completed', completed_at = ?, updated_at = ?,
                           lease_owner = NULL, lease_expires_at = NULL
                     WHERE id = ? AND status = 'processing' AND lease_owner = ?
                    """,
                    (now, now, job_id, worker_id),
                )
            return cur.rowcount == 1
        finally:
            con.close()

    @_write_retry
    def fail(self, job_id: str, message: str) -> bool:
        """Abort an active job. Terminal jobs are left untouched."""
        con = self._connect()
        try:
            with con:
                cur = con.execute(
                    f"""
                    UPDATE bulk_jobs
                       SET status = 'failed', error_message = ?, updated_at = ?,
                           lease_owner = NULL, lease_expires_at = NULL
                     WHERE id = ? AND status IN {_ACTIVE_SQL}
                    """,
                    (message, utc_now_iso(), job_id),
                )
            return cur.rowcount == 1
        finally:
            con.close()

    # ------------------------------------------------------------------
    # Manual stop
    # ------------------------------------------------------------------

    @_write_retry
    def stop(self, job_id: str, owner: str, reason: str = STOP_REASON) -> StopResult:
        now = utc_now_iso()
        con = self._connect()
        try:
            with con:
                cur = con.execute(
                    f"""
                    UPDATE bulk_jobs
                       SET status = 'failed', error_message = ?, completed_at = ?,
                           updated_at = ?, lease_owner = NULL, lease_expires_at = NULL
                     WHERE id = ? AND owner = ? AND status IN {_ACTIVE_SQL}
                    """,
                    (reason, now, now, job_id, owner),
                )
            if cur.rowcount == 1:
                return StopResult(job_id=job_id, stopped=True, status=JobStatus.FAILED)
        finally:
            con.close()

        job = self.get(job_id, owner, include_items=False)
        return StopResult(job_id=job_id, stopped=False, status=job.status)

    @_write_retry
    def stop_all(self, owner: str, reason: str = STOP_REASON) -> int:
        now = utc_now_iso()
        con = self._connect()
        try:
            with con:
                cur = con.execute(
                    f"""
                    UPDATE bulk_jobs
                       SET status = 'failed', error_message = ?, completed_at = ?,
                           updated_at = ?, lease_owner = NULL, lease_expires_at = NULL
                     WHERE owner = ? AND status IN {_ACTIVE_SQL}
                    """,
                    (reason, now, now, owner),
                )
            return cur.rowcount
        finally:
            con.close()

    # ------------------------------------------------------------------
    # Recovery transitions
    # ------------------------------------------------------------------

    @_write_retry
    def reset_for_retry(self, job_id: str, older_than: str) -> bool:
        """
        Stale active job -> `pending`, keeping the cursor. Re-checks staleness
        so a job whose worker heartbeated since the sweep read it is left alone.
        """
        con = self._connect()
        try:
            with con:
                cur = con.execute(
                    f"""
                    UPDATE bulk_jobs
                       SET status = 'pending', lease_owner = NULL, lease_expires_at = NULL,
                           recovery_attempts = recovery_attempts + 1,
                           updated_at = ?
                     WHERE id = ? AND status IN {_ACTIVE_SQL} AND updated_at < ?
                    """,
                    (utc_now_iso(), job_id, older_than),
                )
                if cur.rowcount == 0:
                    return False
                con.execute(
                    "UPDATE bulk_job_items SET status = ? WHERE job_id = ? AND status = ?",
                    (ITEM_PENDING, job_id, ITEM_PROCESSING),
                )
            return True
        finally:
            con.close()

    @_write_retry
    def fail_stalled(self, job_id: str, older_than: str) -> bool:
        con = self._connect()
        try:
            with con:
                cur = con.execute(
                    f"""
                    UPDATE bulk_jobs
                       SET status = 'failed', error_message = ?, updated_at = ?,
                           lease_owner = NULL, lease_expires_at = NULL
                     WHERE id = ? AND status IN {_ACTIVE_SQL} AND updated_at < ?
                    """,
                    (STALLED_REASON, utc_now_iso(), job_id, older_than),
                )
            return cur.rowcount == 1
        finally:
            con.close()


__all__ = ["JobStore", "StopResult"]
