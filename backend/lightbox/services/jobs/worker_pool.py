"""Per-topic dispatchers that run job handlers on a shared thread pool.

Each registered topic gets one dispatcher thread. It pulls the next message,
waits for a slot from that topic's limiter (blocking only itself) and hands
the message to the executor. The run wrapper owns the job lifecycle: row
status transitions, lifecycle events, retries and cancellation.
"""

import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from lightbox.core.clock import utcnow
from lightbox.core.errors import FatalJobError
from lightbox.core.websockets import EventBroker
from lightbox.models.job import JobStatus
from lightbox.services.jobs.broker import Message
from lightbox.services.jobs.bus import LIVE_STATUSES, JobBus

logger = logging.getLogger(__name__)


class JobCancelled(Exception):
    """Raised from a progress checkpoint once the job has been cancelled."""


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    initial_interval: float = 2.0
    multiplier: float = 2.0
    max_interval: float = 60.0

    def delay(self, retry_number: int) -> float:
        """Seconds to wait before retry ``retry_number`` (0-based)."""
        return min(self.initial_interval * (self.multiplier ** retry_number), self.max_interval)


class JobContext:
    """What a handler sees of its job: payload, progress reporting and cancellation."""

    def __init__(self, pool: "WorkerPool", worker: "Worker", job_uid: str, payload: Dict[str, Any]):
        self.pool = pool
        self.worker = worker
        self.job_uid = job_uid
        self.payload = payload
        self.attempt = 1

    @property
    def image_uid(self) -> Optional[str]:
        return self.payload.get("image_uid")

    @property
    def cancelled(self) -> bool:
        return self.pool.bus.is_cancelled(self.job_uid)

    def check_cancelled(self) -> None:
        if self.cancelled:
            raise JobCancelled(self.job_uid)

    def progress(self, step: str, percent: int) -> None:
        self.pool.emit(
            "job-progress",
            {
                "jobId": self.job_uid,
                "type": self.worker.name,
                "imageId": self.image_uid,
                "step": step,
                "progress": percent,
            },
        )
        self.check_cancelled()


Handler = Callable[[JobContext], None]


@dataclass
class Worker:
    name: str
    topic: str
    display_name: str
    handler: Handler
    concurrency: Optional[int] = None


class WorkerPool:
    def __init__(
        self,
        bus: JobBus,
        events: Optional[EventBroker] = None,
        retry_policy: Optional[RetryPolicy] = None,
        max_threads: int = 16,
        poll_interval: float = 0.2,
    ):
        self.bus = bus
        self.events = events
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_threads = max_threads
        self.poll_interval = poll_interval
        self._workers: Dict[str, Worker] = {}
        self._stop = threading.Event()
        self._dispatchers: List[threading.Thread] = []
        self._executor: Optional[ThreadPoolExecutor] = None

    def register(self, *workers: Worker) -> None:
        for worker in workers:
            if worker.topic in self._workers:
                raise ValueError(f"topic {worker.topic} already has a worker")
            self._workers[worker.topic] = worker
            self.bus.limiter(worker.topic, worker.concurrency)

    def worker_for(self, topic: str) -> Optional[Worker]:
        return self._workers.get(topic)

    def workers(self) -> List[Dict[str, Any]]:
        return [
            {
                "name": w.name,
                "topic": w.topic,
                "display_name": w.display_name,
                "concurrency": self.bus.concurrency(w.topic),
            }
            for w in self._workers.values()
        ]

    def emit(self, event: str, data: Dict[str, Any]) -> None:
        if self.events is not None:
            self.events.broadcast(event, data)

    @property
    def running(self) -> bool:
        return self._executor is not None and not self._stop.is_set()

    def start(self) -> None:
        if self._executor is not None:
            return
        self._stop.clear()
        self._executor = ThreadPoolExecutor(max_workers=self.max_threads, thread_name_prefix="lightbox-job")
        for worker in self._workers.values():
            thread = threading.Thread(
                target=self._dispatch_loop,
                args=(worker,),
                name=f"dispatch-{worker.topic}",
                daemon=True,
            )
            thread.start()
            self._dispatchers.append(thread)
        logger.info("Worker pool started", extra={"topics": sorted(self._workers)})

    def stop(self, timeout: float = 10.0) -> None:
        if self._executor is None:
            return
        self._stop.set()
        for thread in self._dispatchers:
            thread.join(timeout)
        self._dispatchers.clear()
        self._executor.shutdown(wait=True)
        self._executor = None
        logger.info("Worker pool stopped")

    def _dispatch_loop(self, worker: Worker) -> None:
        limiter = self.bus.limiter(worker.topic)
        while not self._stop.is_set():
            message = self.bus.broker.next(worker.topic, timeout=self.poll_interval)
            if message is None:
                continue
            while not limiter.acquire(timeout=self.poll_interval):
                if self._stop.is_set():
                    # Row stays queued and is re-published by recovery on next start
                    self.bus.mark_dequeued(worker.topic)
                    return
            try:
                self._executor.submit(self._run_with_slot, worker, message, limiter)
            except RuntimeError:
                limiter.release()
                self.bus.mark_dequeued(worker.topic)
                return

    def _run_with_slot(self, worker: Worker, message: Message, limiter) -> None:
        try:
            self.process(worker, message)
        except Exception:
            logger.exception("Job wrapper crashed", extra={"job_id": message.uuid, "topic": worker.topic})
        finally:
            limiter.release()

    def process(self, worker: Worker, message: Message) -> JobStatus:
        """Run one message through ``worker`` and return the job's final status."""
        uid = message.uuid
        self.bus.mark_dequeued(worker.topic)

        if self.bus.is_cancelled(uid):
            logger.info("Skipping cancelled job", extra={"job_id": uid, "topic": worker.topic})
            return JobStatus.CANCELLED

        try:
            payload = json.loads(message.payload)
        except ValueError as exc:
            self._fail(worker, uid, None, "invalid_payload", exc)
            return JobStatus.FAILED

        ctx = JobContext(self, worker, uid, payload)
        if self.bus.begin(uid, worker.topic, ctx.image_uid) is None:
            logger.info("Job cancelled before start", extra={"job_id": uid, "topic": worker.topic})
            return JobStatus.CANCELLED
        self.emit("job-started", {"jobId": uid, "type": worker.name, "imageId": ctx.image_uid})
        try:
            return self._attempt(worker, ctx)
        finally:
            self.bus.finish(uid)

    def _attempt(self, worker: Worker, ctx: JobContext) -> JobStatus:
        policy = self.retry_policy
        uid = ctx.job_uid
        while True:
            try:
                worker.handler(ctx)
                break
            except JobCancelled:
                break
            except FatalJobError as exc:
                self._fail(worker, uid, ctx.image_uid, "fatal_error", exc)
                return JobStatus.FAILED
            except Exception as exc:
                if ctx.attempt >= policy.max_attempts:
                    self._fail(worker, uid, ctx.image_uid, "worker_error", exc)
                    return JobStatus.FAILED
                delay = policy.delay(ctx.attempt - 1)
                logger.warning(
                    "Job handler failed, retrying",
                    extra={"job_id": uid, "topic": worker.topic, "attempt": ctx.attempt, "delay_s": delay, "error": str(exc)},
                )
                if self._stop.wait(delay):
                    self._fail(worker, uid, ctx.image_uid, "worker_error", exc)
                    return JobStatus.FAILED
                if self.bus.is_cancelled(uid):
                    break
                ctx.attempt += 1

        if self.bus.is_cancelled(uid) or not self.bus.update_status(
            uid, JobStatus.COMPLETED, completed_at=utcnow(), expected=(JobStatus.RUNNING,)
        ):
            self.emit("job-cancelled", {"jobId": uid, "type": worker.name, "imageId": ctx.image_uid})
            return JobStatus.CANCELLED

        self.emit("job-completed", {"jobId": uid, "type": worker.name, "imageId": ctx.image_uid})
        logger.info("Job completed", extra={"job_id": uid, "topic": worker.topic, "attempts": ctx.attempt})
        return JobStatus.COMPLETED

    def _fail(self, worker: Worker, uid: str, image_uid: Optional[str], code: str, exc: BaseException) -> None:
        logger.error(
            "Job failed",
            exc_info=exc,
            extra={"job_id": uid, "topic": worker.topic, "error_code": code},
        )
        recorded = self.bus.update_status(
            uid,
            JobStatus.FAILED,
            error_code=code,
            error_msg=str(exc) or type(exc).__name__,
            completed_at=utcnow(),
            expected=LIVE_STATUSES,
        )
        if recorded:
            self.emit("job-failed", {"jobId": uid, "type": worker.name, "imageId": image_uid, "error": str(exc)})
