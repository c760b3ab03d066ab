from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from typing import List, Optional, Literal
from sqlalchemy.orm import Session
from exam_engine.core.database import get_db
from exam_engine.core.auth import require_roles, TokenData, INSTRUCTOR, ADMIN
from exam_engine.core.errors import ValidationError
from exam_engine.models.orm import Question, QuestionOption, QuestionType
from exam_engine.services.pool import find_questions

router = APIRouter()

class OptionIn(BaseModel):
    id: str = Field(min_length=1, max_length=32)
    text: str
    is_correct: bool = False

class QuestionCreate(BaseModel):
    course_id: str
    section_id: Optional[str] = None
    type: Literal["single_choice", "multiple_choice", "short_answer"]
    difficulty: Literal["easy", "medium", "hard"] = "medium"
    topic: Optional[str] = None
    text: str = Field(min_length=1)
    points: int = Field(default=1, gt=0)
    options: List[OptionIn] = []
    expected_answers: List[str] = []
    case_sensitive: bool = False

def check_question(payload: QuestionCreate) -> None:
    if payload.type == QuestionType.SHORT_ANSWER.value:
        if not [a for a in payload.expected_answers if a.strip()]:
            raise ValidationError("Short answer questions need at least one expected answer", field="expected_answers")
        return
    if len(payload.options) < 2:
        raise ValidationError("Choice questions need at least two options", field="options")
    if len({o.id for o in payload.options}) != len(payload.options):
        raise ValidationError("Option ids must be unique", field="options")
    correct = sum(1 for o in payload.options if o.is_correct)
    if payload.type == QuestionType.SINGLE_CHOICE.value and correct != 1:
        raise ValidationError("Single choice questions need exactly one correct option", field="options")
    if payload.type == QuestionType.MULTIPLE_CHOICE.value and correct < 1:
        raise ValidationError("Multiple choice questions need at least one correct option", field="options")

@router.post("/questions", status_code=201)
def create_question(payload: QuestionCreate, user: TokenData = Depends(require_roles(INSTRUCTOR, ADMIN)), db: Session = Depends(get_db)):
    check_question(payload)
    is_choice = payload.type != QuestionType.SHORT_ANSWER.value
    q = Question(
        course_id=payload.course_id, section_id=payload.section_id, type=payload.type, difficulty=payload.difficulty,
        topic=payload.topic, text=payload.text, points=payload.points,
        expected_answers=[] if is_choice else [a for a in payload.expected_answers if a.strip()],
        case_sensitive=payload.case_sensitive, created_by=user.sub,
    )
    db.add(q); db.flush()
    if is_choice:
        for pos, o in enumerate(payload.options):
            db.add(QuestionOption(question_id=q.id, option_key=o.id, text=o.text, is_correct=o.is_correct, position=pos))
    db.commit()
    return {"question_id": q.id, "type": q.type, "difficulty": q.difficulty, "topic": q.topic}

@router.get("/questions", dependencies=[Depends(require_roles(INSTRUCTOR, ADMIN))])
def list_questions(course_id: str, section_id: Optional[str] = None, difficulty: Optional[str] = None,
                   type: Optional[str] = None, topic: Optional[str] = None, db: Session = Depends(get_db)):
    rows = find_questions(db, course_id, section_id=section_id, difficulty=difficulty, type=type, topic=topic)
    return [q.to_snapshot() for q in rows]
