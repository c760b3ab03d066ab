from fastapi import APIRouter, Depends
from pydantic import BaseModel
from typing import List, Optional
from sqlalchemy.orm import Session
from exam_engine.core.database import get_db
from exam_engine.core.auth import require_roles, get_current_user, TokenData, STUDENT, ADMIN
from exam_engine.core.errors import ValidationError
from exam_engine.models.answers import Answer
from exam_engine.services import attempts as lifecycle
from exam_engine.services.projector import AttemptView, AttemptSummary, project, summarize

router = APIRouter()

class AnswerIn(BaseModel):
    question_id: int
    answer: Answer

class AnswersPut(BaseModel):
    question_id: Optional[int] = None
    answer: Optional[Answer] = None
    answers: List[AnswerIn] = []

    def pairs(self):
        items = [(a.question_id, a.answer) for a in self.answers]
        if self.question_id is not None and self.answer is not None:
            items.append((self.question_id, self.answer))
        elif self.question_id is not None or self.answer is not None:
            raise ValidationError("question_id and answer must be given together", field="answer")
        return items

class SubmitIn(BaseModel):
    answers: List[AnswerIn] = []

class Overview(BaseModel):
    exam_id: int
    max_attempts: Optional[int] = None
    remaining_attempts: Optional[int] = None
    total_attempts: int
    finished_attempts: int
    in_progress_attempt_id: Optional[str] = None
    can_start: bool
    latest_attempt: Optional[AttemptSummary] = None

@router.get("/{exam_id}/overview", response_model=Overview)
def exam_overview(exam_id: int, user: TokenData = Depends(get_current_user), db: Session = Depends(get_db)):
    exam = lifecycle.get_exam(db, exam_id)
    data = lifecycle.exam_overview(db, exam, user.sub)
    latest = data["latest_attempt"]
    data["latest_attempt"] = summarize(latest, for_owner=True, exam=exam) if latest else None
    return Overview(**data)

@router.post("/{exam_id}/attempts", response_model=AttemptView, status_code=201)
def start_attempt(exam_id: int, user: TokenData = Depends(require_roles(STUDENT, ADMIN)), db: Session = Depends(get_db)):
    attempt = lifecycle.start_attempt(db, exam_id, user.sub, check_enrollment=not user.has_role(ADMIN))
    return project(attempt, {}, for_owner=True, exam=lifecycle.get_exam(db, exam_id))

@router.put("/{exam_id}/attempts/{attempt_id}/answers")
def save_answers(exam_id: int, attempt_id: str, payload: AnswersPut, user: TokenData = Depends(get_current_user), db: Session = Depends(get_db)):
    items = payload.pairs()
    if not items:
        raise ValidationError("No answers given", field="answers")
    lifecycle.get_attempt(db, attempt_id, exam_id=exam_id, student_id=user.sub)
    attempt = lifecycle.record_answers(db, attempt_id, items, student_id=user.sub)
    return {"attempt_id": attempt.id, "saved": [qid for qid, _ in items], "status": attempt.status, "expires_at": attempt.expires_at}

@router.post("/{exam_id}/attempts/{attempt_id}/submit", response_model=AttemptView)
def submit_attempt(exam_id: int, attempt_id: str, payload: Optional[SubmitIn] = None,
                   user: TokenData = Depends(get_current_user), db: Session = Depends(get_db)):
    lifecycle.get_attempt(db, attempt_id, exam_id=exam_id, student_id=user.sub)
    items = [(a.question_id, a.answer) for a in payload.answers] if payload else []
    attempt = lifecycle.submit(db, attempt_id, items, student_id=user.sub)
    exam = lifecycle.get_exam(db, exam_id)
    return project(attempt, lifecycle.load_answers(db, attempt.id), for_owner=True, exam=exam)

@router.get("/{exam_id}/attempts/{attempt_id}", response_model=AttemptView)
def read_attempt(exam_id: int, attempt_id: str, user: TokenData = Depends(get_current_user), db: Session = Depends(get_db)):
    attempt = lifecycle.get_attempt(db, attempt_id, exam_id=exam_id, student_id=None if user.is_staff else user.sub)
    attempt = lifecycle.touch(db, attempt)
    exam = lifecycle.get_exam(db, exam_id)
    return project(attempt, lifecycle.load_answers(db, attempt.id), for_owner=attempt.student_id == user.sub, exam=exam)

@router.get("/{exam_id}/attempts", response_model=List[AttemptSummary])
def list_attempts(exam_id: int, student_id: Optional[str] = None, user: TokenData = Depends(get_current_user), db: Session = Depends(get_db)):
    exam = lifecycle.get_exam(db, exam_id)
    target = student_id if (student_id and user.is_staff) else user.sub
    rows = lifecycle.list_attempts(db, exam_id, target)
    return [summarize(a, for_owner=target == user.sub, exam=exam) for a in rows]
