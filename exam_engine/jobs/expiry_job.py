import logging
from typing import Optional
from rq import get_current_job
from exam_engine.core.config import settings
from exam_engine.core.database import SessionLocal
from exam_engine.services.attempts import expire_overdue

logger = logging.getLogger(__name__)

def sweep_expired_attempts(limit: Optional[int] = None):
    """Finalize overdue in-progress attempts. Lazy expiry already covers correctness; this keeps stored statuses current."""
    job = get_current_job()
    limit = limit or settings.EXPIRY_SWEEP_BATCH_SIZE
    if job:
        job.meta.update({"state": "running", "limit": limit}); job.save_meta()
    db = SessionLocal()
    try:
        expired = expire_overdue(db, limit=limit)
    except Exception:
        logger.exception("Expiry sweep failed")
        if job:
            job.meta.update({"state": "failed"}); job.save_meta()
        raise
    finally:
        db.close()
    if job:
        job.meta.update({"state": "done", "expired": expired}); job.save_meta()
    return {"expired": expired, "limit": limit}
