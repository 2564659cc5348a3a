# ruff: noqa: E402
# tests/conftest.py
from __future__ import annotations

import sys
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

# Ensure project root importable
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from bulkjobs.api import deps
from bulkjobs.config import RecoveryConfig, WorkerConfig
from bulkjobs.lookup.client import ItemOutcome
from bulkjobs.models import ITEM_ERROR, ITEM_PENDING, Item, Job, JobKind, JobStatus
from bulkjobs.queueing.dispatch import DispatchResult
from bulkjobs.store import JobStore


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[Path]:
    """
    Point every test at its own SQLite file and keep the real queue and
    lookup service out of reach.
    """
    db_file = tmp_path / "bulk.db"
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("DATABASE_PATH", str(db_file))
    monkeypatch.setenv("BULK_QUEUE_ENABLED", "false")
    monkeypatch.setenv("LOOKUP_API_URL", "http://lookup.test")
    monkeypatch.delenv("QUOTA_API_URL", raising=False)
    monkeypatch.delenv("ADMIN_API_KEY", raising=False)
    monkeypatch.setenv("AUTH_MODE", "dev")

    for fn in (deps.get_settings, deps.get_store, deps.get_dispatcher, deps.get_quota):
        fn.cache_clear()
    yield db_file
    for fn in (deps.get_settings, deps.get_store, deps.get_dispatcher, deps.get_quota):
        fn.cache_clear()


@pytest.fixture
def store(_isolated_env: Path) -> JobStore:
    return JobStore(str(_isolated_env))


@pytest.fixture
def worker_cfg() -> WorkerConfig:
    return WorkerConfig(item_delay_seconds=0.5, lease_seconds=300)


@pytest.fixture
def recovery_cfg() -> RecoveryConfig:
    return RecoveryConfig(stale_after_seconds=600, max_attempts=3, on_list=True)


class FakeLookup:
    """
    Stand-in for LookupClient.run_item.

    `outcomes` maps an item's index to an ItemOutcome or an exception to
    raise; anything not listed succeeds.
    """

    def __init__(self, outcomes: dict[int, Any] | None = None) -> None:
        self.outcomes = outcomes or {}
        self.calls: list[dict[str, Any]] = []
        self.before_call: Callable[[int], None] | None = None

    def run_item(self, kind: JobKind, item_input: dict[str, Any]) -> ItemOutcome:
        index = int(item_input["n"])
        self.calls.append(item_input)
        if self.before_call is not None:
            self.before_call(index)
        outcome = self.outcomes.get(index)
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is not None:
            return outcome
        status = "found" if kind == JobKind.FIND else "valid"
        return ItemOutcome(status, {"status": status, "n": index})

    @property
    def indexes(self) -> list[int]:
        return [int(c["n"]) for c in self.calls]


@pytest.fixture
def fake_lookup() -> FakeLookup:
    return FakeLookup()


class FakeDispatcher:
    def __init__(self) -> None:
        self.dispatched: list[str] = []
        self.fail = False
        self.queued: set[str] = set()

    def is_queued(self, job_id: str) -> bool:
        return job_id in self.queued

    def dispatch(self, job_id: str) -> DispatchResult:
        if self.fail:
            raise RuntimeError("dispatch unavailable")
        self.dispatched.append(job_id)
        return DispatchResult(job_id=job_id, queued=True)


@pytest.fixture
def fake_dispatcher() -> FakeDispatcher:
    return FakeDispatcher()


def _make_job(
    store: JobStore,
    n_items: int,
    *,
    owner: str = "user_a",
    kind: JobKind = JobKind.FIND,
    label: str | None = None,
) -> str:
    items = [
        Item(
            index=i,
            input={"n": i, "full_name": f"Person {i}", "domain": "example.com"}
            if kind == JobKind.FIND
            else {"n": i, "email": f"p{i}@example.com"},
            status=ITEM_PENDING,
        )
        for i in range(n_items)
    ]
    job = Job(
        id="",
        owner=owner,
        kind=kind,
        status=JobStatus.PENDING,
        items=items,
        source_label=label,
    )
    return store.create(job)


def _set_updated_at(store: JobStore, job_id: str, value: str) -> None:
    con = store._connect()
    try:
        with con:
            con.execute("UPDATE bulk_jobs SET updated_at = ? WHERE id = ?", (value, job_id))
    finally:
        con.close()


@pytest.fixture
def make_job(store: JobStore) -> Callable[..., str]:
    def _make(n_items: int, **kwargs: Any) -> str:
        return _make_job(store, n_items, **kwargs)

    return _make


@pytest.fixture
def age_job(store: JobStore) -> Callable[[str, str], None]:
    """Rewrite a job's heartbeat so it looks stale to the recovery sweep."""

    def _age(job_id: str, updated_at: str) -> None:
        _set_updated_at(store, job_id, updated_at)

    return _age


@pytest.fixture
def error_outcome() -> Callable[..., ItemOutcome]:
    def _outcome(reason: str = "Request timed out after 30 seconds") -> ItemOutcome:
        return ItemOutcome(ITEM_ERROR, {"status": "error", "message": reason}, reason)

    return _outcome
