# tests/test_worker.py
from __future__ import annotations

import sqlite3

import pytest
from rq.timeouts import JobTimeoutException

from bulkjobs.config import WorkerConfig
from bulkjobs.lookup.client import ItemOutcome
from bulkjobs.models import ITEM_ERROR, ITEM_PENDING, Item, Job, JobKind, JobStatus, iso_in
from bulkjobs.store import JobStore
from bulkjobs.worker import BatchWorker


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def worker(store, fake_lookup, worker_cfg, sleeps) -> BatchWorker:
    return BatchWorker(store, fake_lookup, worker_cfg, sleep=sleeps.append, worker_id="w-test")


def _assert_counters_consistent(job) -> None:
    assert 0 <= job.cursor <= job.total_items
    assert job.processed_count == job.success_count + job.fail_count
    assert job.processed_count <= job.total_items


def test_all_items_succeed(worker, store, make_job, fake_lookup, sleeps):
    job_id = make_job(3)

    worker.run(job_id)

    job = store.get(job_id, "user_a")
    assert job.status == JobStatus.COMPLETED
    assert job.cursor == 3
    assert (job.processed_count, job.success_count, job.fail_count) == (3, 3, 0)
    assert [it.status for it in job.items] == ["found", "found", "found"]
    assert job.completed_at is not None
    assert job.lease_owner is None
    assert fake_lookup.indexes == [0, 1, 2]
    # fixed delay between items, none after the last one
    assert sleeps == [0.5, 0.5]
    _assert_counters_consistent(job)


def test_item_error_is_isolated(worker, store, make_job, fake_lookup, error_outcome):
    job_id = make_job(3, kind=JobKind.VERIFY)
    fake_lookup.outcomes[1] = error_outcome()

    worker.run(job_id)

    job = store.get(job_id, "user_a")
    assert job.status == JobStatus.COMPLETED
    assert job.cursor == 3
    assert (job.processed_count, job.success_count, job.fail_count) == (3, 2, 1)
    assert job.items[1].status == ITEM_ERROR
    assert job.items[1].error_reason == "Request timed out after 30 seconds"
    assert job.items[0].status == "valid"
    assert job.items[2].status == "valid"
    _assert_counters_consistent(job)


def test_lookup_exception_becomes_item_error(worker, store, make_job, fake_lookup):
    job_id = make_job(2)
    fake_lookup.outcomes[0] = RuntimeError("socket exploded")

    worker.run(job_id)

    job = store.get(job_id, "user_a")
    assert job.status == JobStatus.COMPLETED
    assert job.items[0].status == ITEM_ERROR
    assert job.items[0].error_reason == "Processing failed"
    assert job.items[0].result == {"status": "error", "reason": "Processing failed"}
    assert job.fail_count == 1
    assert job.success_count == 1


def test_non_error_outcomes_count_as_success(worker, store, make_job, fake_lookup):
    job_id = make_job(2, kind=JobKind.VERIFY)
    fake_lookup.outcomes[0] = ItemOutcome("invalid", {"status": "invalid"})
    fake_lookup.outcomes[1] = ItemOutcome("risky", {"status": "risky"})

    worker.run(job_id)

    job = store.get(job_id, "user_a")
    assert (job.success_count, job.fail_count) == (2, 0)


def test_resume_never_touches_items_below_cursor(worker, store, make_job, fake_lookup):
    job_id = make_job(4)
    # a previous worker finished items 0 and 1, then died
    store.claim(job_id, "w-dead", 300)
    for i in (0, 1):
        store.mark_item_processing(job_id, i)
        store.record_item_outcome(
            job_id,
            i,
            worker_id="w-dead",
            status="not_found",
            result={"by": "w-dead"},
            error_reason=None,
            lease_seconds=300,
        )
    assert store.reset_for_retry(job_id, iso_in(60))

    worker.run(job_id)

    job = store.get(job_id, "user_a")
    assert fake_lookup.indexes == [2, 3]
    assert job.items[0].result == {"by": "w-dead"}
    assert job.items[1].result == {"by": "w-dead"}
    assert job.status == JobStatus.COMPLETED
    assert job.cursor == 4
    assert (job.processed_count, job.success_count, job.fail_count) == (4, 4, 0)


def test_completed_job_is_not_reprocessed(worker, store, make_job, fake_lookup):
    job_id = make_job(2)
    worker.run(job_id)
    fake_lookup.calls.clear()

    worker.run(job_id)

    assert fake_lookup.calls == []
    assert store.get(job_id, "user_a").processed_count == 2


def test_duplicate_run_backs_off_from_live_lease(store, make_job, fake_lookup, worker_cfg):
    job_id = make_job(2)
    assert store.claim(job_id, "w-other", 300)

    BatchWorker(store, fake_lookup, worker_cfg, sleep=lambda s: None, worker_id="w-dup").run(job_id)

    assert fake_lookup.calls == []
    job = store.load(job_id, include_items=False)
    assert job.status == JobStatus.PROCESSING
    assert job.lease_owner == "w-other"


def test_missing_job_is_a_no_op(worker, fake_lookup):
    worker.run("no-such-job")
    assert fake_lookup.calls == []


def test_manual_stop_mid_run_halts_the_loop(worker, store, make_job, fake_lookup):
    job_id = make_job(4)

    def stop_during_item(index: int) -> None:
        if index == 1:
            store.stop(job_id, "user_a")

    fake_lookup.before_call = stop_during_item

    worker.run(job_id)

    job = store.get(job_id, "user_a")
    assert job.status == JobStatus.FAILED
    assert job.error_message == "manually stopped"
    # the in-flight item finishes; nothing after it starts
    assert fake_lookup.indexes == [0, 1]
    assert job.items[2].status == ITEM_PENDING
    assert job.items[3].status == ITEM_PENDING
    _assert_counters_consistent(job)


class _BrokenStore(JobStore):
    def record_item_outcome(self, *args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")


def test_store_failure_fails_the_job(_isolated_env, fake_lookup, worker_cfg):
    store = _BrokenStore(str(_isolated_env))
    job_id = store.create(
        Job(
            id="",
            owner="user_a",
            kind=JobKind.FIND,
            items=[
                Item(index=0, input={"n": 0, "full_name": "A B", "domain": "x.com"}, status=ITEM_PENDING)
            ],
        )
    )

    BatchWorker(store, fake_lookup, worker_cfg, sleep=lambda s: None, worker_id="w1").run(job_id)

    job = store.load(job_id, include_items=False)
    assert job.status == JobStatus.FAILED
    assert job.error_message == "disk I/O error"
    assert job.lease_owner is None


def test_zero_delay_skips_sleep(store, make_job, fake_lookup):
    slept: list[float] = []
    job_id = make_job(3)
    BatchWorker(
        store,
        fake_lookup,
        WorkerConfig(item_delay_seconds=0, lease_seconds=300),
        sleep=slept.append,
    ).run(job_id)

    assert slept == []
    assert store.get(job_id, "user_a").status == JobStatus.COMPLETED


def test_rq_timeout_is_not_recorded_as_item_error(worker, store, make_job, fake_lookup):
    job_id = make_job(3)
    fake_lookup.outcomes[1] = JobTimeoutException("Task exceeded maximum timeout value")

    with pytest.raises(JobTimeoutException):
        worker.run(job_id)

    job = store.load(job_id)
    assert job.status == JobStatus.PROCESSING
    assert job.error_message is None
    assert (job.processed_count, job.fail_count) == (1, 0)
    assert job.items[1].status == "processing"
    assert job.cursor == 1
