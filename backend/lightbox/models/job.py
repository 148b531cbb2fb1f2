from enum import Enum
from typing import Optional
from datetime import datetime
from sqlmodel import Field, SQLModel

from lightbox.core.clock import utcnow

ERROR_MSG_LIMIT = 1024
PAYLOAD_LIMIT = 10_000


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class WorkerJobBase(SQLModel):
    topic: str = Field(index=True)
    command: Optional[str] = None
    image_uid: Optional[str] = Field(default=None, index=True)
    status: JobStatus = Field(default=JobStatus.QUEUED, index=True)


class WorkerJob(WorkerJobBase, table=True):
    __tablename__ = "worker_job"

    # Same value as the bus message id
    uid: str = Field(primary_key=True, max_length=24)
    enqueued_at: datetime = Field(default_factory=utcnow, index=True)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_code: Optional[str] = None
    error_msg: Optional[str] = Field(default=None, max_length=ERROR_MSG_LIMIT)
    payload: Optional[str] = Field(default=None, max_length=PAYLOAD_LIMIT)


class WorkerJobRead(WorkerJobBase):
    uid: str
    enqueued_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_code: Optional[str] = None
    error_msg: Optional[str] = None
    payload: Optional[str] = None


def truncate(value: Optional[str], limit: int) -> Optional[str]:
    """Keep the first ``limit`` bytes of the UTF-8 encoding, never splitting a character."""
    if value is None:
        return None
    encoded = value.encode("utf-8")
    if len(encoded) <= limit:
        return value
    return encoded[:limit].decode("utf-8", errors="ignore")
