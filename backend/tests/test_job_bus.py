import threading
import time

import pytest
from sqlmodel import Session

from lightbox.core.errors import FatalJobError
from lightbox.models.job import PAYLOAD_LIMIT, JobStatus, WorkerJob
from lightbox.services.jobs.broker import InProcessBroker
from lightbox.services.jobs.bus import JobBus
from lightbox.services.jobs.concurrency import ConcurrencyLimiter
from lightbox.services.jobs.worker_pool import RetryPolicy, Worker, WorkerPool


@pytest.fixture()
def bus(engine):
    return JobBus(engine, InProcessBroker(), default_concurrency=2)


def make_pool(bus, events=None, **kwargs):
    return WorkerPool(bus, events, RetryPolicy(initial_interval=0.01), poll_interval=0.05, **kwargs)


def run_one(bus, pool, worker, payload=None):
    job_uid = bus.enqueue(worker.topic, payload or {"image_uid": "img"})
    message = bus.broker.next(worker.topic, timeout=1.0)
    return job_uid, pool.process(worker, message)


def test_enqueue_persists_row_and_counts(bus, engine):
    job_uid = bus.enqueue("image_process", {"image_uid": "abc"}, command="single", image_uid="abc")

    with Session(engine) as session:
        row = session.get(WorkerJob, job_uid)
    assert row.status == JobStatus.QUEUED
    assert row.command == "single"
    assert bus.counts().queued_by_topic == {"image_process": 1}
    assert bus.broker.next("image_process", timeout=0.1).uuid == job_uid


def test_enqueue_truncates_payload(bus, engine):
    job_uid = bus.enqueue("image_process", {"blob": "x" * (PAYLOAD_LIMIT * 2)})
    with Session(engine) as session:
        assert len(session.get(WorkerJob, job_uid).payload) == PAYLOAD_LIMIT


def test_publish_failure_marks_row_failed(bus):
    bus.broker.close()
    job_uid = bus.enqueue("image_process", {"image_uid": "abc"})

    job = bus.get(job_uid)
    assert job.status == JobStatus.FAILED
    assert job.error_code == "publish_failed"
    assert bus.counts().queued_by_topic.get("image_process", 0) == 0


def test_successful_job_lifecycle_and_events(bus, runtime):
    seen = []
    worker = Worker("demo", "demo", "Demo", lambda ctx: ctx.progress("step", 50) or seen.append(ctx.payload))
    pool = make_pool(bus, runtime.events)
    pool.register(worker)

    job_uid, status = run_one(bus, pool, worker, {"image_uid": "img-1"})

    assert status == JobStatus.COMPLETED
    assert seen == [{"image_uid": "img-1"}]
    job = bus.get(job_uid)
    assert job.started_at is not None and job.completed_at is not None
    events = [record.event for record in runtime.events.get_recent(10)]
    assert events == ["job-started", "job-progress", "job-completed"]
    assert bus.counts().running == 0


def test_transient_errors_are_retried(bus):
    calls = []

    def flaky(ctx):
        calls.append(ctx.attempt)
        if len(calls) < 3:
            raise RuntimeError("try again")

    worker = Worker("flaky", "flaky", "Flaky", flaky)
    pool = make_pool(bus)
    pool.register(worker)

    job_uid, status = run_one(bus, pool, worker)
    assert status == JobStatus.COMPLETED
    assert calls == [1, 2, 3]


def test_retries_are_bounded(bus):
    calls = []

    def broken(ctx):
        calls.append(ctx.attempt)
        raise RuntimeError("still broken")

    worker = Worker("broken", "broken", "Broken", broken)
    pool = make_pool(bus)
    pool.register(worker)

    job_uid, status = run_one(bus, pool, worker)
    assert status == JobStatus.FAILED
    assert len(calls) == 3
    job = bus.get(job_uid)
    assert job.error_code == "worker_error"
    assert job.error_msg == "still broken"


def test_fatal_errors_are_not_retried(bus):
    calls = []

    def fatal(ctx):
        calls.append(1)
        raise FatalJobError("cannot decode")

    worker = Worker("fatal", "fatal", "Fatal", fatal)
    pool = make_pool(bus)
    pool.register(worker)

    job_uid, status = run_one(bus, pool, worker)
    assert status == JobStatus.FAILED
    assert calls == [1]
    assert bus.get(job_uid).error_code == "fatal_error"
    assert [job.uid for job in bus.list_jobs(status=JobStatus.FAILED)] == [job_uid]


def test_cancel_queued_job_skips_handler(bus):
    calls = []
    worker = Worker("demo", "demo", "Demo", lambda ctx: calls.append(1))
    pool = make_pool(bus)
    pool.register(worker)

    job_uid = bus.enqueue("demo", {"image_uid": "x"})
    assert bus.cancel(job_uid) is True
    status = pool.process(worker, bus.broker.next("demo", timeout=1.0))

    assert status == JobStatus.CANCELLED
    assert calls == []
    assert bus.cancel(job_uid) is False
    assert bus.cancel("missing-job") is None


def test_cancel_is_observed_at_progress_checkpoint(bus):
    reached = []

    def handler(ctx):
        bus.cancel(ctx.job_uid)
        ctx.progress("halfway", 50)
        reached.append("after")

    worker = Worker("demo", "demo", "Demo", handler)
    pool = make_pool(bus)
    pool.register(worker)

    job_uid, status = run_one(bus, pool, worker)
    assert status == JobStatus.CANCELLED
    assert reached == []
    assert bus.get(job_uid).status == JobStatus.CANCELLED


def test_cancel_racing_dispatch_wins_over_start(bus, monkeypatch):
    calls = []
    worker = Worker("demo", "demo", "Demo", lambda ctx: calls.append(1))
    pool = make_pool(bus)
    pool.register(worker)
    job_uid = bus.enqueue("demo", {"image_uid": "x"})
    message = bus.broker.next("demo", timeout=1.0)

    checked = bus.is_cancelled

    def cancel_after_check(uid):
        # The admin cancel lands after the dispatch-time check passed
        result = checked(uid)
        assert bus.cancel(uid) is True
        return result

    monkeypatch.setattr(bus, "is_cancelled", cancel_after_check)
    status = pool.process(worker, message)

    assert status == JobStatus.CANCELLED
    assert calls == []
    assert bus.get(job_uid).status == JobStatus.CANCELLED
    assert bus.counts().running == 0


def test_begin_only_moves_queued_rows(bus):
    job_uid = bus.enqueue("demo", {"image_uid": "x"})
    assert bus.begin(job_uid, "demo") is not None
    assert bus.begin(job_uid, "demo") is None
    bus.finish(job_uid)

    assert bus.update_status(job_uid, JobStatus.COMPLETED, expected=(JobStatus.RUNNING,)) is True
    assert bus.cancel(job_uid) is False
    assert bus.get(job_uid).status == JobStatus.COMPLETED


def test_completion_does_not_overwrite_cancelled_row(bus, engine):
    def handler(ctx):
        # Cancelled behind the in-memory map, e.g. by another process
        with Session(engine) as session:
            row = session.get(WorkerJob, ctx.job_uid)
            row.status = JobStatus.CANCELLED
            session.add(row)
            session.commit()

    worker = Worker("demo", "demo", "Demo", handler)
    pool = make_pool(bus)
    pool.register(worker)

    job_uid, status = run_one(bus, pool, worker)

    assert status == JobStatus.CANCELLED
    assert bus.get(job_uid).status == JobStatus.CANCELLED


def test_invalid_payload_fails_job(bus):
    worker = Worker("demo", "demo", "Demo", lambda ctx: None)
    pool = make_pool(bus)
    pool.register(worker)
    job_uid = bus.enqueue("demo", {"image_uid": "x"})
    message = bus.broker.next("demo", timeout=1.0)
    message.payload = b"{not json"

    assert pool.process(worker, message) == JobStatus.FAILED
    assert bus.get(job_uid).error_code == "invalid_payload"


def test_concurrency_limit_is_respected(bus):
    lock = threading.Lock()
    state = {"running": 0, "peak": 0, "peak_counts": 0}

    def sleepy(ctx):
        with lock:
            state["running"] += 1
            state["peak"] = max(state["peak"], state["running"])
        time.sleep(0.1)
        with lock:
            state["running"] -= 1

    worker = Worker("sleepy", "image_process", "Sleepy", sleepy)
    pool = make_pool(bus, max_threads=8)
    pool.register(worker)
    bus.set_concurrency("image_process", 2)
    job_uids = [bus.enqueue("image_process", {"image_uid": str(i)}) for i in range(10)]

    pool.start()
    try:
        deadline = time.monotonic() + 10
        while time.monotonic() < deadline:
            running = bus.counts().running_by_topic.get("image_process", 0)
            state["peak_counts"] = max(state["peak_counts"], running)
            if all(bus.get(uid).status == JobStatus.COMPLETED for uid in job_uids):
                break
            time.sleep(0.02)
    finally:
        pool.stop()

    assert state["peak"] <= 2
    assert state["peak_counts"] <= 2
    assert all(bus.get(uid).status == JobStatus.COMPLETED for uid in job_uids)


def test_limiter_bounds_and_resizing():
    limiter = ConcurrencyLimiter(1)
    assert limiter.acquire(timeout=0.01)
    assert not limiter.acquire(timeout=0.01)
    limiter.set_limit(2)
    assert limiter.acquire(timeout=0.01)
    limiter.release()
    limiter.release()
    with pytest.raises(ValueError):
        limiter.set_limit(0)
    with pytest.raises(ValueError):
        limiter.set_limit(101)


def test_recover_republishes_unfinished_rows(bus, engine):
    with Session(engine) as session:
        session.add(WorkerJob(uid="job-running", topic="demo", status=JobStatus.RUNNING, payload='{"image_uid": "a"}'))
        session.add(WorkerJob(uid="job-queued", topic="demo", status=JobStatus.QUEUED, payload='{"image_uid": "b"}'))
        session.add(WorkerJob(uid="job-broken", topic="demo", status=JobStatus.QUEUED, payload='{"image_u'))
        session.add(WorkerJob(uid="job-done", topic="demo", status=JobStatus.COMPLETED, payload="{}"))
        session.commit()

    assert bus.recover() == 2
    assert bus.counts().queued_by_topic == {"demo": 2}
    assert bus.get("job-running").status == JobStatus.QUEUED
    assert bus.get("job-broken").error_code == "payload_truncated"
