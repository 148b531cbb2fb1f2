from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from lightbox.api.deps import Principal, get_runtime, require_admin
from lightbox.models.job import JobStatus, WorkerJobRead
from lightbox.services.jobs.workers import registry
from lightbox.services.runtime import Runtime

router = APIRouter()


class EnqueueJobsRequest(BaseModel):
    type: str
    command: str = "missing"
    image_uid: Optional[str] = None


class EnqueueJobsResponse(BaseModel):
    type: str
    topic: str
    command: str
    count: int
    job_ids: List[str]


class ConcurrencyUpdate(BaseModel):
    concurrency: int


def _resolve_type(name: str) -> registry.JobType:
    # Accept either the admin type name or the raw topic
    entry = registry.JOB_TYPES.get(name) or registry.job_type_for_topic(name)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"Unknown job type: {name}")
    return entry


@router.post("", response_model=EnqueueJobsResponse)
def enqueue_jobs(
    body: EnqueueJobsRequest,
    admin: Principal = Depends(require_admin),
    runtime: Runtime = Depends(get_runtime),
):
    entry = registry.job_type(body.type)
    uids = registry.enqueue_for_images(
        runtime.bus,
        runtime.assets,
        entry,
        runtime.handler_for(entry),
        body.command,
        body.image_uid,
    )
    return EnqueueJobsResponse(type=entry.name, topic=entry.topic, command=body.command, count=len(uids), job_ids=uids)


@router.get("", response_model=List[WorkerJobRead])
def list_jobs(
    status: Optional[JobStatus] = None,
    topic: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    admin: Principal = Depends(require_admin),
    runtime: Runtime = Depends(get_runtime),
):
    return runtime.bus.list_jobs(status=status, topic=topic, limit=limit, offset=offset)


@router.get("/stats")
def job_stats(admin: Principal = Depends(require_admin), runtime: Runtime = Depends(get_runtime)):
    return runtime.bus.counts().to_dict()


@router.get("/active")
def active_jobs(admin: Principal = Depends(require_admin), runtime: Runtime = Depends(get_runtime)):
    return runtime.bus.active_jobs()


@router.get("/types")
def job_types(admin: Principal = Depends(require_admin), runtime: Runtime = Depends(get_runtime)):
    return runtime.pool.workers()


@router.put("/types/{job_type}/concurrency")
def set_concurrency(
    job_type: str,
    body: ConcurrencyUpdate,
    admin: Principal = Depends(require_admin),
    runtime: Runtime = Depends(get_runtime),
):
    entry = _resolve_type(job_type)
    try:
        runtime.bus.set_concurrency(entry.topic, body.concurrency)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"type": entry.name, "topic": entry.topic, "concurrency": runtime.bus.concurrency(entry.topic)}


@router.get("/{uid}", response_model=WorkerJobRead)
def read_job(uid: str, admin: Principal = Depends(require_admin), runtime: Runtime = Depends(get_runtime)):
    job = runtime.bus.get(uid)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@router.delete("/{uid}")
def cancel_job(uid: str, admin: Principal = Depends(require_admin), runtime: Runtime = Depends(get_runtime)):
    cancelled = runtime.bus.cancel(uid)
    if cancelled is None:
        raise HTTPException(status_code=404, detail="Job not found")
    if not cancelled:
        raise HTTPException(status_code=409, detail="Job already finished")
    return {"uid": uid, "status": JobStatus.CANCELLED.value}
