"""Topic-partitioned job queue backed by ``worker_job`` rows.

Enqueue persists a row then publishes a message whose id is the row uid.
The bus also owns the in-memory bookkeeping the admin API reads: queued
and running counts per topic, the active-jobs map (ids and status only)
and one concurrency limiter per topic.
"""

import json
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from lightbox.core.clock import utcnow
from lightbox.core.uid import new_uid
from lightbox.models.job import (
    ERROR_MSG_LIMIT,
    PAYLOAD_LIMIT,
    JobStatus,
    WorkerJob,
    WorkerJobRead,
    truncate,
)
from lightbox.services.jobs.broker import InProcessBroker, Message, PublishError
from lightbox.services.jobs.concurrency import ConcurrencyLimiter, validate_concurrency

logger = logging.getLogger(__name__)

LIVE_STATUSES = (JobStatus.QUEUED, JobStatus.RUNNING)


@dataclass
class ActiveJob:
    uid: str
    topic: str
    status: JobStatus
    image_uid: Optional[str] = None
    started_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uid": self.uid,
            "topic": self.topic,
            "status": self.status.value,
            "image_uid": self.image_uid,
            "started_at": self.started_at.isoformat(),
        }


@dataclass
class JobCounts:
    running_by_topic: Dict[str, int]
    queued_by_topic: Dict[str, int]

    @property
    def running(self) -> int:
        return sum(self.running_by_topic.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "running_by_topic": dict(self.running_by_topic),
            "queued_by_topic": dict(self.queued_by_topic),
        }


class JobBus:
    def __init__(self, engine: Engine, broker: InProcessBroker, default_concurrency: int = 2):
        self.engine = engine
        self.broker = broker
        self.default_concurrency = validate_concurrency(default_concurrency)
        self._lock = threading.Lock()
        self._active: Dict[str, ActiveJob] = {}
        self._queued: Dict[str, int] = defaultdict(int)
        self._limiters: Dict[str, ConcurrencyLimiter] = {}

    # Concurrency

    def limiter(self, topic: str, initial: Optional[int] = None) -> ConcurrencyLimiter:
        with self._lock:
            limiter = self._limiters.get(topic)
            if limiter is None:
                limiter = self._limiters[topic] = ConcurrencyLimiter(initial or self.default_concurrency)
            return limiter

    def set_concurrency(self, topic: str, value: int) -> None:
        self.limiter(topic).set_limit(value)
        logger.info("Topic concurrency changed", extra={"topic": topic, "concurrency": value})

    def concurrency(self, topic: str) -> int:
        return self.limiter(topic).limit

    # Enqueue / publish

    def enqueue(
        self,
        topic: str,
        payload: Dict[str, Any],
        command: Optional[str] = None,
        image_uid: Optional[str] = None,
    ) -> str:
        body = json.dumps(payload, default=str)
        uid = new_uid()
        job = WorkerJob(
            uid=uid,
            topic=topic,
            command=command,
            image_uid=image_uid,
            status=JobStatus.QUEUED,
            payload=truncate(body, PAYLOAD_LIMIT),
        )
        with Session(self.engine) as session:
            session.add(job)
            session.commit()

        try:
            self.publish(topic, Message(uuid=uid, payload=body.encode("utf-8")))
        except PublishError as exc:
            logger.error("Failed to publish job", extra={"job_id": uid, "topic": topic, "error": str(exc)})
            self.update_status(
                uid,
                JobStatus.FAILED,
                error_code="publish_failed",
                error_msg=str(exc),
                completed_at=utcnow(),
                expected=(JobStatus.QUEUED,),
            )
            return uid

        logger.debug("Job enqueued", extra={"job_id": uid, "topic": topic, "image_uid": image_uid})
        return uid

    def publish(self, topic: str, message: Message) -> None:
        with self._lock:
            self._queued[topic] += 1
        try:
            self.broker.publish(topic, message)
        except Exception:
            with self._lock:
                self._queued[topic] = max(0, self._queued[topic] - 1)
            raise

    def mark_dequeued(self, topic: str) -> None:
        with self._lock:
            self._queued[topic] = max(0, self._queued[topic] - 1)

    # Status

    def update_status(
        self,
        uid: str,
        status: JobStatus,
        *,
        error_code: Optional[str] = None,
        error_msg: Optional[str] = None,
        started_at: Optional[datetime] = None,
        completed_at: Optional[datetime] = None,
        expected: Optional[Iterable[JobStatus]] = None,
    ) -> bool:
        """Write a status transition.

        With ``expected`` the row only changes while its current status is one
        of those values; the return value says whether this call won.
        """
        values: Dict[str, Any] = {"status": status}
        if error_code is not None:
            values["error_code"] = error_code
        if error_msg is not None:
            values["error_msg"] = truncate(error_msg, ERROR_MSG_LIMIT)
        if started_at is not None:
            values["started_at"] = started_at
        if completed_at is not None:
            values["completed_at"] = completed_at

        statement = update(WorkerJob).where(WorkerJob.uid == uid)
        if expected is not None:
            statement = statement.where(WorkerJob.status.in_(list(expected)))
        with Session(self.engine) as session:
            result = session.execute(statement.values(**values))
            session.commit()
        if result.rowcount == 0:
            if expected is None:
                logger.warning("Status update for unknown job", extra={"job_id": uid, "status": status.value})
            else:
                logger.info("Job status changed concurrently", extra={"job_id": uid, "status": status.value})
            return False

        with self._lock:
            active = self._active.get(uid)
            if active is not None and not active.status.is_terminal:
                active.status = status
        return True

    def begin(self, uid: str, topic: str, image_uid: Optional[str] = None) -> Optional[ActiveJob]:
        """Move a dispatched job from queued to running.

        Returns None when the row is no longer queued (cancelled in the
        meantime); the caller must not run the handler then.
        """
        active = ActiveJob(uid=uid, topic=topic, status=JobStatus.QUEUED, image_uid=image_uid)
        # Registered first so a concurrent cancel can flag it in memory
        with self._lock:
            self._active[uid] = active
        if not self.update_status(uid, JobStatus.RUNNING, started_at=active.started_at, expected=(JobStatus.QUEUED,)):
            self.finish(uid)
            return None
        return active

    def finish(self, uid: str) -> None:
        with self._lock:
            self._active.pop(uid, None)

    def is_cancelled(self, uid: str) -> bool:
        with self._lock:
            active = self._active.get(uid)
            if active is not None:
                return active.status == JobStatus.CANCELLED
        row = self._row(uid)
        return row is not None and row.status == JobStatus.CANCELLED

    def cancel(self, uid: str) -> Optional[bool]:
        """Cancel a queued or running job.

        Returns None when the job is unknown and False when it already
        reached a terminal state. A running handler keeps going until it
        checks ``is_cancelled``.
        """
        with self._lock:
            active = self._active.get(uid)
        row = self._row(uid)
        if row is None and active is None:
            return None
        status = active.status if active is not None else row.status
        if JobStatus(status).is_terminal:
            return False

        if not self.update_status(uid, JobStatus.CANCELLED, completed_at=utcnow(), expected=LIVE_STATUSES):
            return False
        logger.info("Job cancelled", extra={"job_id": uid, "previous_status": JobStatus(status).value})
        return True

    # Reads

    def _row(self, uid: str) -> Optional[WorkerJob]:
        with Session(self.engine) as session:
            return session.get(WorkerJob, uid)

    def get(self, uid: str) -> Optional[WorkerJobRead]:
        row = self._row(uid)
        if row is not None:
            return WorkerJobRead.model_validate(row, from_attributes=True)
        with self._lock:
            active = self._active.get(uid)
        if active is None:
            return None
        return WorkerJobRead(
            uid=active.uid,
            topic=active.topic,
            image_uid=active.image_uid,
            status=active.status,
            enqueued_at=active.started_at,
            started_at=active.started_at,
        )

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        topic: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[WorkerJob]:
        query = select(WorkerJob)
        if status is not None:
            query = query.where(WorkerJob.status == status)
        if topic:
            query = query.where(WorkerJob.topic == topic)
        query = query.order_by(WorkerJob.enqueued_at.desc()).offset(offset).limit(limit)
        with Session(self.engine) as session:
            return list(session.exec(query).all())

    def counts(self) -> JobCounts:
        with self._lock:
            running: Dict[str, int] = defaultdict(int)
            for job in self._active.values():
                running[job.topic] += 1
            queued = {topic: count for topic, count in self._queued.items()}
        return JobCounts(running_by_topic=dict(running), queued_by_topic=queued)

    def active_jobs(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [job.to_dict() for job in self._active.values()]

    # Recovery

    def recover(self) -> int:
        """Re-publish rows a previous process left queued or running."""
        with Session(self.engine) as session:
            rows = session.exec(
                select(WorkerJob)
                .where(WorkerJob.status.in_([JobStatus.QUEUED, JobStatus.RUNNING]))
                .order_by(WorkerJob.enqueued_at)
            ).all()

        recovered = 0
        for row in rows:
            try:
                json.loads(row.payload or "")
            except ValueError:
                self.update_status(
                    row.uid,
                    JobStatus.FAILED,
                    error_code="payload_truncated",
                    error_msg="stored payload is not replayable",
                    completed_at=utcnow(),
                )
                continue
            if row.status == JobStatus.RUNNING:
                self.update_status(row.uid, JobStatus.QUEUED)
            try:
                self.publish(row.topic, Message(uuid=row.uid, payload=row.payload.encode("utf-8")))
            except PublishError as exc:
                self.update_status(
                    row.uid, JobStatus.FAILED, error_code="publish_failed", error_msg=str(exc), completed_at=utcnow()
                )
                continue
            recovered += 1
        if recovered:
            logger.info("Recovered unfinished jobs", extra={"count": recovered})
        return recovered
