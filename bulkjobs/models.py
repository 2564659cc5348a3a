"""
Job / item data model for bulk find and verify batches.

A Job owns an ordered list of Items. `cursor` is the index of the next item
the worker will look at; items below it are terminal and never revisited.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any


class JobKind(str, Enum):
    """Which lookup capability (and item schema) a job uses."""

    FIND = "find"
    VERIFY = "verify"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

# Item statuses. Terminal outcomes are kind-specific; anything other than
# "error" counts as a successful attempt.
ITEM_PENDING = "pending"
ITEM_PROCESSING = "processing"
ITEM_ERROR = "error"

RESERVED_ITEM_STATES = frozenset({ITEM_PENDING, ITEM_PROCESSING})

STOP_REASON = "manually stopped"
STALLED_REASON = "stalled"
ITEM_FAILED_REASON = "Processing failed"
BACKGROUND_FAILED_REASON = "Background processing failed"

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utc_now() -> datetime:
    return datetime.now(UTC)


def to_iso(value: datetime) -> str:
    """Fixed-width UTC timestamp; lexical order matches time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime(_TS_FORMAT)


def utc_now_iso() -> str:
    return to_iso(utc_now())


def iso_ago(seconds: float, *, now: datetime | None = None) -> str:
    return to_iso((now or utc_now()) - timedelta(seconds=seconds))


def iso_in(seconds: float, *, now: datetime | None = None) -> str:
    return to_iso((now or utc_now()) + timedelta(seconds=seconds))


@dataclass
class Item:
    index: int
    input: dict[str, Any]
    status: str = ITEM_PENDING
    result: dict[str, Any] | None = None
    error_reason: str | None = None

    @property
    def is_pending(self) -> bool:
        return self.status == ITEM_PENDING

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "input": dict(self.input),
            "status": self.status,
            "result": self.result,
            "error_reason": self.error_reason,
        }


@dataclass
class Job:
    id: str
    owner: str
    kind: JobKind
    status: JobStatus = JobStatus.PENDING
    items: list[Item] = field(default_factory=list)
    cursor: int = 0
    processed_count: int = 0
    success_count: int = 0
    fail_count: int = 0
    error_message: str | None = None
    source_label: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    completed_at: str | None = None
    total_items: int = 0
    recovery_attempts: int = 0
    lease_owner: str | None = None
    lease_expires_at: str | None = None

    def summary(self, *, include_items: bool = True) -> dict[str, Any]:
        """Public JSON shape returned by the status/list endpoints."""
        out: dict[str, Any] = {
            "job_id": self.id,
            "kind": self.kind.value,
            "status": self.status.value,
            "total_items": self.total_items,
            "cursor": self.cursor,
            "processed_count": self.processed_count,
            "success_count": self.success_count,
            "fail_count": self.fail_count,
            "error_message": self.error_message,
            "source_label": self.source_label,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
        }
        if include_items:
            out["items"] = [item.to_dict() for item in self.items]
        return out


__all__ = [
    "JobKind",
    "JobStatus",
    "Job",
    "Item",
    "TERMINAL_JOB_STATUSES",
    "ITEM_PENDING",
    "ITEM_PROCESSING",
    "ITEM_ERROR",
    "RESERVED_ITEM_STATES",
    "STOP_REASON",
    "STALLED_REASON",
    "ITEM_FAILED_REASON",
    "BACKGROUND_FAILED_REASON",
    "utc_now",
    "utc_now_iso",
    "to_iso",
    "iso_ago",
    "iso_in",
]
