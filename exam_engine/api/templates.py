import logging
import random
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from typing import List, Optional
from sqlalchemy.orm import Session
from sqlalchemy import select
from exam_engine.core.database import get_db
from exam_engine.core.auth import require_roles, TokenData, INSTRUCTOR, ADMIN
from exam_engine.core.errors import NotFound
from exam_engine.models.orm import ExamTemplate
from exam_engine.services.pool import find_questions
from exam_engine.services.selector import TemplateSpec, validate_template, preview_selection

logger = logging.getLogger(__name__)
router = APIRouter()
staff = require_roles(INSTRUCTOR, ADMIN)

class DifficultyRule(BaseModel):
    level: str
    ratio: int

class TypeRule(BaseModel):
    type: str
    ratio: int

class TopicRule(BaseModel):
    topic: str
    ratio: int

class TemplateIn(BaseModel):
    section_id: Optional[str] = None
    title: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    number_of_questions: int
    difficulty_distribution: List[DifficultyRule] = []
    type_distribution: List[TypeRule] = []
    topic_distribution: List[TopicRule] = []
    shuffle_questions: bool = True
    shuffle_answers: bool = True

    def to_spec(self) -> TemplateSpec:
        return TemplateSpec(
            number_of_questions=self.number_of_questions,
            difficulty_distribution=[r.model_dump() for r in self.difficulty_distribution],
            type_distribution=[r.model_dump() for r in self.type_distribution],
            topic_distribution=[r.model_dump() for r in self.topic_distribution],
            shuffle_questions=self.shuffle_questions, shuffle_answers=self.shuffle_answers,
        )

def _out(t: ExamTemplate) -> dict:
    return {
        "id": t.id, "course_id": t.course_id, "section_id": t.section_id, "title": t.title, "description": t.description,
        "number_of_questions": t.number_of_questions,
        "difficulty_distribution": t.difficulty_distribution or [], "type_distribution": t.type_distribution or [],
        "topic_distribution": t.topic_distribution or [],
        "shuffle_questions": t.shuffle_questions, "shuffle_answers": t.shuffle_answers,
        "created_by": t.created_by, "is_active": t.is_active, "created_at": t.created_at, "updated_at": t.updated_at,
    }

def get_template(db: Session, template_id: int) -> ExamTemplate:
    t = db.get(ExamTemplate, template_id)
    if not t or not t.is_active:
        raise NotFound("Exam template not found", resource="template", id=template_id)
    return t

@router.post("/courses/{course_id}/exam-templates", status_code=201)
def create_template(course_id: str, payload: TemplateIn, user: TokenData = Depends(staff), db: Session = Depends(get_db)):
    spec = payload.to_spec()
    validate_template(spec)
    t = ExamTemplate(
        course_id=course_id, section_id=payload.section_id, title=payload.title, description=payload.description,
        number_of_questions=spec.number_of_questions, difficulty_distribution=spec.difficulty_distribution,
        type_distribution=spec.type_distribution, topic_distribution=spec.topic_distribution,
        shuffle_questions=spec.shuffle_questions, shuffle_answers=spec.shuffle_answers, created_by=user.sub,
    )
    db.add(t); db.commit(); db.refresh(t)
    logger.info(f"Template {t.id} created for course {course_id} by {user.sub}")
    return _out(t)

@router.get("/courses/{course_id}/exam-templates", dependencies=[Depends(staff)])
def list_templates(course_id: str, section_id: Optional[str] = None, db: Session = Depends(get_db)):
    stmt = select(ExamTemplate).where(ExamTemplate.course_id == course_id, ExamTemplate.is_active.is_(True))
    if section_id is not None:
        stmt = stmt.where(ExamTemplate.section_id == section_id)
    return [_out(t) for t in db.execute(stmt.order_by(ExamTemplate.id)).scalars().all()]

@router.get("/exam-templates/{template_id}", dependencies=[Depends(staff)])
def read_template(template_id: int, db: Session = Depends(get_db)):
    return _out(get_template(db, template_id))

@router.put("/exam-templates/{template_id}")
def update_template(template_id: int, payload: TemplateIn, user: TokenData = Depends(staff), db: Session = Depends(get_db)):
    t = get_template(db, template_id)
    spec = payload.to_spec()
    validate_template(spec)
    t.section_id = payload.section_id; t.title = payload.title; t.description = payload.description
    t.number_of_questions = spec.number_of_questions
    t.difficulty_distribution = spec.difficulty_distribution
    t.type_distribution = spec.type_distribution
    t.topic_distribution = spec.topic_distribution
    t.shuffle_questions = spec.shuffle_questions; t.shuffle_answers = spec.shuffle_answers
    db.commit(); db.refresh(t)
    logger.info(f"Template {t.id} updated by {user.sub}")
    return _out(t)

@router.delete("/exam-templates/{template_id}")
def delete_template(template_id: int, user: TokenData = Depends(staff), db: Session = Depends(get_db)):
    t = get_template(db, template_id)
    t.is_active = False
    db.commit()
    logger.info(f"Template {template_id} deactivated by {user.sub}")
    return {"ok": True}

@router.post("/exam-templates/{template_id}/preview", dependencies=[Depends(staff)])
def preview_template(template_id: int, seed: Optional[int] = None, db: Session = Depends(get_db)):
    t = get_template(db, template_id)
    pool = find_questions(db, course_id=t.course_id, section_id=t.section_id)
    return {"template_id": t.id, **preview_selection(TemplateSpec.from_template(t), pool, random.Random(seed))}
