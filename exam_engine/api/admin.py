from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from typing import Optional
from sqlalchemy.orm import Session
from rq.job import Job
from rq.exceptions import NoSuchJobError
from exam_engine.core.config import settings
from exam_engine.core.database import get_db
from exam_engine.core.auth import require_roles, ADMIN
from exam_engine.core.errors import NotFound
from exam_engine.services.enrollment import enroll
from exam_engine.services.attempts import expire_overdue
from exam_engine.jobs.queue import queue, redis
from exam_engine.jobs.expiry_job import sweep_expired_attempts

router = APIRouter()

class EnrollmentIn(BaseModel):
    student_id: str
    course_id: str
    status: str = "active"

class SweepIn(BaseModel):
    limit: int = Field(default=settings.EXPIRY_SWEEP_BATCH_SIZE, ge=1)
    inline: bool = False

class JobStatus(BaseModel):
    job_id: str
    state: str
    expired: Optional[int] = None
    result: Optional[dict] = None

@router.post("/enrollments", dependencies=[Depends(require_roles(ADMIN))])
def upsert_enrollment(payload: EnrollmentIn, db: Session = Depends(get_db)):
    row = enroll(db, payload.student_id, payload.course_id, payload.status)
    return {"id": row.id, "student_id": row.student_id, "course_id": row.course_id, "status": row.status}

@router.post("/attempts/expire-sweep", dependencies=[Depends(require_roles(ADMIN))])
def expire_sweep(payload: SweepIn, db: Session = Depends(get_db)):
    if payload.inline:
        return {"job_id": None, "expired": expire_overdue(db, limit=payload.limit)}
    job = queue.enqueue(sweep_expired_attempts, payload.limit, job_timeout=settings.EXPIRY_SWEEP_TIMEOUT)
    return {"job_id": job.get_id(), "expired": None}

@router.get("/jobs/{job_id}", response_model=JobStatus, dependencies=[Depends(require_roles(ADMIN))])
def job_status(job_id: str):
    try:
        job = Job.fetch(job_id, connection=redis)
    except NoSuchJobError:
        raise NotFound("Job not found", resource="job", id=job_id)
    meta = job.meta or {}
    state = meta.get("state") or job.get_status()
    return JobStatus(
        job_id=job_id, state=str(state),
        expired=int(meta["expired"]) if meta.get("expired") is not None else None,
        result=job.result if state == "done" else None,
    )
