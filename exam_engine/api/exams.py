import logging
from datetime import datetime, timezone
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from typing import Dict, List, Optional, Literal, Tuple
from sqlalchemy.orm import Session
from sqlalchemy import select
from exam_engine.core.database import get_db
from exam_engine.core.auth import require_roles, get_current_user, TokenData, INSTRUCTOR, ADMIN
from exam_engine.core.errors import ValidationError, NotFound
from exam_engine.models.orm import Exam, ExamTemplate, ExamStatus
from exam_engine.services.analytics import exam_analytics
from exam_engine.services.attempts import get_exam
from exam_engine.services.pool import get_questions

logger = logging.getLogger(__name__)
router = APIRouter()
staff = require_roles(INSTRUCTOR, ADMIN)

class ExamQuestionIn(BaseModel):
    question_id: int
    points: Optional[int] = Field(default=None, gt=0)
    weight: float = Field(default=1.0, gt=0)

class ExamCreate(BaseModel):
    course_id: str
    section_id: Optional[str] = None
    title: str = Field(min_length=1, max_length=200)
    template_id: Optional[int] = None
    question_ids: List[int] = []
    questions: List[ExamQuestionIn] = []
    duration_minutes: Optional[int] = Field(default=None, gt=0)
    max_attempts: Optional[int] = Field(default=None, ge=1)
    passing_score: Optional[float] = Field(default=None, ge=0)
    shuffle_questions: bool = False
    shuffle_answers: bool = False
    open_at: Optional[datetime] = None
    close_at: Optional[datetime] = None
    show_score_to_student: bool = True
    show_correct_answers: Literal["never", "after_submit"] = "after_submit"
    publish: bool = False

class ExamUpdate(BaseModel):
    """Only the fields sent are changed; sending any source field replaces the whole source."""
    section_id: Optional[str] = None
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    template_id: Optional[int] = None
    question_ids: Optional[List[int]] = None
    questions: Optional[List[ExamQuestionIn]] = None
    duration_minutes: Optional[int] = Field(default=None, gt=0)
    max_attempts: Optional[int] = Field(default=None, ge=1)
    passing_score: Optional[float] = Field(default=None, ge=0)
    shuffle_questions: Optional[bool] = None
    shuffle_answers: Optional[bool] = None
    open_at: Optional[datetime] = None
    close_at: Optional[datetime] = None
    show_score_to_student: Optional[bool] = None
    show_correct_answers: Optional[Literal["never", "after_submit"]] = None

SOURCE_FIELDS = ("template_id", "question_ids", "questions")

def _naive_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None or dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)

def _entries(e: Exam) -> List[dict]:
    settings = e.question_settings or {}
    return [{"question_id": qid, "points": settings.get(str(qid), {}).get("points"),
             "weight": settings.get(str(qid), {}).get("weight", 1.0)} for qid in e.question_ids or []]

def _out(e: Exam, full: bool = True) -> dict:
    out = {
        "id": e.id, "course_id": e.course_id, "section_id": e.section_id, "title": e.title, "status": e.status,
        "duration_minutes": e.duration_minutes, "max_attempts": e.max_attempts, "passing_score": e.passing_score,
        "open_at": e.open_at, "close_at": e.close_at,
    }
    if full:
        out.update({
            "template_id": e.template_id, "question_ids": e.question_ids or [], "questions": _entries(e),
            "shuffle_questions": e.shuffle_questions, "shuffle_answers": e.shuffle_answers,
            "show_score_to_student": e.show_score_to_student, "show_correct_answers": e.show_correct_answers,
            "created_by": e.created_by, "created_at": e.created_at,
        })
    return out

def _resolve_source(db: Session, course_id: str, template_id: Optional[int], question_ids: List[int],
                    questions: List[ExamQuestionIn], passing_score: Optional[float]) -> Tuple[List[int], Dict[str, dict]]:
    """Validate the exam's question source; returns (question_ids, per-question settings)."""
    if questions and question_ids:
        raise ValidationError("Give question_ids or questions, not both", field="questions")
    if questions:
        question_ids = [q.question_id for q in questions]
    if (template_id is None) == (not question_ids):
        raise ValidationError("Provide either template_id or question_ids", field="template_id")
    if template_id is not None:
        t = db.get(ExamTemplate, template_id)
        if not t or not t.is_active:
            raise NotFound("Exam template not found", resource="template", id=template_id)
        if t.course_id != course_id:
            raise ValidationError("Template belongs to another course", field="template_id")
        return [], {}
    if len(set(question_ids)) != len(question_ids):
        raise ValidationError("question_ids contains duplicates", field="question_ids")
    found = get_questions(db, question_ids)
    missing = [qid for qid in question_ids if qid not in found]
    if missing:
        raise ValidationError(f"Unknown or inactive questions: {missing}", field="question_ids")
    settings = {str(q.question_id): {"points": q.points, "weight": q.weight} for q in questions if q.points is not None or q.weight != 1.0}
    total = sum(found[qid].with_scoring(settings.get(str(qid), {}).get("points"), settings.get(str(qid), {}).get("weight")).max_points
                for qid in question_ids)
    if passing_score is not None and passing_score > total:
        raise ValidationError(f"passing_score exceeds the exam's total points ({total:g})", field="passing_score")
    return list(question_ids), settings

def _check_window(open_at: Optional[datetime], close_at: Optional[datetime]) -> None:
    if open_at and close_at and close_at <= open_at:
        raise ValidationError("close_at must be after open_at", field="close_at")

@router.post("", status_code=201)
def create_exam(payload: ExamCreate, user: TokenData = Depends(staff), db: Session = Depends(get_db)):
    question_ids, settings = _resolve_source(db, payload.course_id, payload.template_id, payload.question_ids,
                                             payload.questions, payload.passing_score)
    open_at, close_at = _naive_utc(payload.open_at), _naive_utc(payload.close_at)
    _check_window(open_at, close_at)
    e = Exam(
        course_id=payload.course_id, section_id=payload.section_id, title=payload.title,
        status=ExamStatus.PUBLISHED.value if payload.publish else ExamStatus.DRAFT.value,
        template_id=payload.template_id, question_ids=question_ids, question_settings=settings,
        duration_minutes=payload.duration_minutes, max_attempts=payload.max_attempts, passing_score=payload.passing_score,
        shuffle_questions=payload.shuffle_questions, shuffle_answers=payload.shuffle_answers,
        open_at=open_at, close_at=close_at,
        show_score_to_student=payload.show_score_to_student, show_correct_answers=payload.show_correct_answers,
        created_by=user.sub,
    )
    db.add(e); db.commit(); db.refresh(e)
    logger.info(f"Exam {e.id} created ({e.status}) for course {e.course_id} by {user.sub}")
    return _out(e)

@router.get("")
def list_exams(course_id: str, include_archived: bool = False, user: TokenData = Depends(get_current_user), db: Session = Depends(get_db)):
    stmt = select(Exam).where(Exam.course_id == course_id)
    if not user.is_staff:
        stmt = stmt.where(Exam.status == ExamStatus.PUBLISHED.value)
    elif not include_archived:
        stmt = stmt.where(Exam.status != ExamStatus.ARCHIVED.value)
    return [_out(e, full=user.is_staff) for e in db.execute(stmt.order_by(Exam.id)).scalars().all()]

@router.get("/{exam_id}")
def read_exam(exam_id: int, user: TokenData = Depends(get_current_user), db: Session = Depends(get_db)):
    e = get_exam(db, exam_id)
    if not user.is_staff and e.status != ExamStatus.PUBLISHED.value:
        raise NotFound("Exam not found", resource="exam", id=exam_id)
    return _out(e, full=user.is_staff)

@router.put("/{exam_id}")
def update_exam(exam_id: int, payload: ExamUpdate, user: TokenData = Depends(staff), db: Session = Depends(get_db)):
    """Attempts already started keep their snapshot; changes apply to new attempts only."""
    e = get_exam(db, exam_id)
    changes = payload.model_dump(exclude_unset=True)
    passing_score = changes.get("passing_score", e.passing_score)
    if any(f in changes for f in SOURCE_FIELDS):
        template_id, question_ids, questions = payload.template_id, payload.question_ids or [], payload.questions or []
    else:
        template_id, question_ids = e.template_id, []
        questions = [ExamQuestionIn(**entry) for entry in _entries(e)]
    e.question_ids, e.question_settings = _resolve_source(db, e.course_id, template_id, question_ids, questions, passing_score)
    e.template_id = template_id
    for field in SOURCE_FIELDS:
        changes.pop(field, None)
    for key in ("open_at", "close_at"):
        if key in changes:
            changes[key] = _naive_utc(changes[key])
    _check_window(changes.get("open_at", e.open_at), changes.get("close_at", e.close_at))
    for key, value in changes.items():
        setattr(e, key, value)
    db.commit(); db.refresh(e)
    logger.info(f"Exam {e.id} updated by {user.sub}: {sorted(payload.model_dump(exclude_unset=True))}")
    return _out(e)

@router.delete("/{exam_id}")
def delete_exam(exam_id: int, user: TokenData = Depends(staff), db: Session = Depends(get_db)):
    """Archives the exam; attempts and their scores are kept."""
    e = get_exam(db, exam_id)
    e.status = ExamStatus.ARCHIVED.value
    db.commit()
    logger.info(f"Exam {exam_id} archived by {user.sub}")
    return {"ok": True, "status": e.status}

@router.post("/{exam_id}/publish")
def publish_exam(exam_id: int, user: TokenData = Depends(staff), db: Session = Depends(get_db)):
    e = get_exam(db, exam_id)
    e.status = ExamStatus.PUBLISHED.value
    db.commit(); db.refresh(e)
    logger.info(f"Exam {e.id} published by {user.sub}")
    return _out(e)

@router.get("/{exam_id}/analytics", dependencies=[Depends(staff)])
def read_analytics(exam_id: int, db: Session = Depends(get_db)):
    return exam_analytics(db, get_exam(db, exam_id))
