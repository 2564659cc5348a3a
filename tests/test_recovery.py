# tests/test_recovery.py
from __future__ import annotations

from datetime import timedelta

import pytest

from bulkjobs.models import JobStatus, to_iso, utc_now
from bulkjobs.recovery import RecoverySweep
from bulkjobs.worker import BatchWorker

LONG_AGO = "2000-01-01T00:00:00.000000Z"


@pytest.fixture
def sweep(store, fake_dispatcher, recovery_cfg) -> RecoverySweep:
    return RecoverySweep(store, fake_dispatcher, recovery_cfg)


def _crash_after_first_item(store, job_id: str) -> None:
    store.claim(job_id, "w-dead", 300)
    store.mark_item_processing(job_id, 0)
    store.record_item_outcome(
        job_id,
        0,
        worker_id="w-dead",
        status="found",
        result={"by": "w-dead"},
        error_reason=None,
        lease_seconds=300,
    )
    # died while working on item 1
    store.mark_item_processing(job_id, 1)


def test_stale_processing_job_is_reset_and_resumed(
    sweep, store, make_job, age_job, fake_dispatcher, fake_lookup, worker_cfg
):
    job_id = make_job(3)
    _crash_after_first_item(store, job_id)
    age_job(job_id, LONG_AGO)

    report = sweep.recover_stuck_jobs()

    assert report.restarted == [job_id]
    assert fake_dispatcher.dispatched == [job_id]
    job = store.load(job_id)
    assert job.status == JobStatus.PENDING
    assert job.cursor == 1
    assert job.recovery_attempts == 1
    assert job.items[1].status == "pending"

    BatchWorker(store, fake_lookup, worker_cfg, sleep=lambda s: None).run(job_id)

    job = store.get(job_id, "user_a")
    assert fake_lookup.indexes == [1, 2]
    assert job.items[0].result == {"by": "w-dead"}
    assert job.status == JobStatus.COMPLETED
    assert (job.cursor, job.processed_count, job.success_count) == (3, 3, 3)


def test_exhausted_budget_marks_job_stalled(sweep, store, make_job, age_job, fake_dispatcher):
    job_id = make_job(2)
    store.claim(job_id, "w-dead", 300)
    store.update(job_id, recovery_attempts=3)
    age_job(job_id, LONG_AGO)

    report = sweep.recover_stuck_jobs()

    assert report.failed == [job_id]
    assert report.restarted == []
    assert fake_dispatcher.dispatched == []
    job = store.load(job_id, include_items=False)
    assert job.status == JobStatus.FAILED
    assert job.error_message == "stalled"


def test_stale_pending_job_is_redispatched(sweep, store, make_job, age_job, fake_dispatcher):
    job_id = make_job(1)
    age_job(job_id, LONG_AGO)

    report = sweep.recover_stuck_jobs()

    assert report.restarted == [job_id]
    assert fake_dispatcher.dispatched == [job_id]
    assert store.load(job_id, include_items=False).recovery_attempts == 1


def test_fresh_and_terminal_jobs_are_left_alone(sweep, store, make_job, age_job, fake_dispatcher):
    live = make_job(1)
    store.claim(live, "w-live", 300)
    done = make_job(1)
    store.stop(done, "user_a")
    age_job(done, LONG_AGO)

    report = sweep.recover_stuck_jobs()

    assert report.to_dict() == {"restarted": [], "failed": [], "skipped": []}
    assert fake_dispatcher.dispatched == []
    assert store.load(live, include_items=False).status == JobStatus.PROCESSING
    assert store.load(done, include_items=False).error_message == "manually stopped"


def test_staleness_is_measured_from_now(sweep, store, make_job, age_job):
    job_id = make_job(1)
    store.claim(job_id, "w1", 300)
    five_minutes_ago = to_iso(utc_now() - timedelta(minutes=5))
    age_job(job_id, five_minutes_ago)

    assert sweep.recover_stuck_jobs().restarted == []
    # seen from twenty minutes in the future the same heartbeat is stale
    later = utc_now() + timedelta(minutes=20)
    assert sweep.recover_stuck_jobs(now=later).restarted == [job_id]


def test_repeated_crashes_eventually_fail(store, make_job, age_job, fake_dispatcher, recovery_cfg):
    sweep = RecoverySweep(store, fake_dispatcher, recovery_cfg)
    job_id = make_job(1)

    for _ in range(recovery_cfg.max_attempts):
        age_job(job_id, LONG_AGO)
        assert sweep.recover_stuck_jobs().restarted == [job_id]

    age_job(job_id, LONG_AGO)
    assert sweep.recover_stuck_jobs().failed == [job_id]
    assert store.load(job_id, include_items=False).error_message == "stalled"


def test_pending_job_still_on_queue_is_not_redispatched(
    sweep, store, make_job, age_job, fake_dispatcher
):
    job_id = make_job(2)
    fake_dispatcher.queued.add(job_id)

    for _ in range(4):
        age_job(job_id, LONG_AGO)
        report = sweep.recover_stuck_jobs()
        assert report.to_dict() == {"restarted": [], "failed": [], "skipped": []}

    assert fake_dispatcher.dispatched == []
    job = store.load(job_id, include_items=False)
    assert job.status == JobStatus.PENDING
    assert job.recovery_attempts == 0


def test_processing_job_is_recovered_even_if_rq_reports_it_live(
    sweep, store, make_job, age_job, fake_dispatcher
):
    # rq keeps a dead horse's entry as "started"; the stale lease decides.
    job_id = make_job(1)
    store.claim(job_id, "w-dead", 300)
    fake_dispatcher.queued.add(job_id)
    age_job(job_id, LONG_AGO)

    assert sweep.recover_stuck_jobs().restarted == [job_id]
