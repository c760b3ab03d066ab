from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import (
    BigInteger, Integer, String, Text, Boolean, Float, ForeignKey, JSON, DateTime,
    Index, UniqueConstraint, func, text as sql_text,
)
from datetime import datetime
from typing import Optional, List, Dict, Any
import enum

# BIGINT primary keys only autoincrement as INTEGER on SQLite
BigId = BigInteger().with_variant(Integer, "sqlite")

class Base(DeclarativeBase): pass

class QuestionType(str, enum.Enum):
    SINGLE_CHOICE = "single_choice"
    MULTIPLE_CHOICE = "multiple_choice"
    SHORT_ANSWER = "short_answer"

class Difficulty(str, enum.Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"

class ExamStatus(str, enum.Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"

class AttemptStatus(str, enum.Enum):
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    EXPIRED = "expired"

CHOICE_TYPES = (QuestionType.SINGLE_CHOICE.value, QuestionType.MULTIPLE_CHOICE.value)
TERMINAL_STATUSES = (AttemptStatus.SUBMITTED.value, AttemptStatus.EXPIRED.value)

# ========== Question pool ==========

class Question(Base):
    __tablename__ = "questions"
    __table_args__ = (
        Index("idx_questions_course", "course_id", "is_active"),
        Index("idx_questions_tags", "course_id", "difficulty", "type"),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    course_id: Mapped[str] = mapped_column(String(64), nullable=False)
    section_id: Mapped[Optional[str]] = mapped_column(String(64))
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    difficulty: Mapped[str] = mapped_column(String(16), nullable=False, default=Difficulty.MEDIUM.value)
    topic: Mapped[Optional[str]] = mapped_column(String(255))
    text: Mapped[str] = mapped_column(Text, nullable=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    expected_answers: Mapped[List[str]] = mapped_column(JSON, default=list)
    case_sensitive: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())

class QuestionOption(Base):
    __tablename__ = "question_options"
    __table_args__ = (
        UniqueConstraint("question_id", "option_key", name="uq_question_option"),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    question_id: Mapped[int] = mapped_column(BigId, ForeignKey("questions.id", ondelete="CASCADE"), nullable=False)
    option_key: Mapped[str] = mapped_column(String(32), nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    is_correct: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

class Enrollment(Base):
    __tablename__ = "enrollments"
    __table_args__ = (
        UniqueConstraint("student_id", "course_id", name="uq_enrollment"),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    student_id: Mapped[str] = mapped_column(String(255), nullable=False)
    course_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")

# ========== Exam definitions ==========

class ExamTemplate(Base):
    __tablename__ = "exam_templates"
    __table_args__ = (
        Index("idx_et_course", "course_id", "section_id", "is_active"),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    course_id: Mapped[str] = mapped_column(String(64), nullable=False)
    section_id: Mapped[Optional[str]] = mapped_column(String(64))
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    number_of_questions: Mapped[int] = mapped_column(Integer, nullable=False)
    difficulty_distribution: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)
    type_distribution: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)
    topic_distribution: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)
    shuffle_questions: Mapped[bool] = mapped_column(Boolean, default=True)
    shuffle_answers: Mapped[bool] = mapped_column(Boolean, default=True)
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now())

class Exam(Base):
    __tablename__ = "exams"
    __table_args__ = (
        Index("idx_exams_course", "course_id", "status"),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    course_id: Mapped[str] = mapped_column(String(64), nullable=False)
    section_id: Mapped[Optional[str]] = mapped_column(String(64))
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=ExamStatus.DRAFT.value)
    template_id: Mapped[Optional[int]] = mapped_column(BigId, ForeignKey("exam_templates.id"))
    question_ids: Mapped[List[int]] = mapped_column(JSON, default=list)
    # str(question_id) -> {"points": int | None, "weight": float}
    question_settings: Mapped[Dict[str, Dict[str, Any]]] = mapped_column(JSON, default=dict)
    duration_minutes: Mapped[Optional[int]] = mapped_column(Integer)
    max_attempts: Mapped[Optional[int]] = mapped_column(Integer)
    passing_score: Mapped[Optional[float]] = mapped_column(Float)
    shuffle_questions: Mapped[bool] = mapped_column(Boolean, default=False)
    shuffle_answers: Mapped[bool] = mapped_column(Boolean, default=False)
    open_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    close_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    show_score_to_student: Mapped[bool] = mapped_column(Boolean, default=True)
    show_correct_answers: Mapped[str] = mapped_column(String(16), default="after_submit")
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())

# ========== Delivery ==========

class ExamAttempt(Base):
    __tablename__ = "exam_attempts"
    __table_args__ = (
        Index("idx_ea_exam_student", "exam_id", "student_id", "status"),
        Index("idx_ea_expires", "status", "expires_at"),
        # at most one live attempt per (exam, student)
        Index(
            "uq_ea_one_in_progress", "exam_id", "student_id", unique=True,
            postgresql_where=sql_text("status = 'in_progress'"),
            sqlite_where=sql_text("status = 'in_progress'"),
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    exam_id: Mapped[int] = mapped_column(BigId, ForeignKey("exams.id"), nullable=False)
    student_id: Mapped[str] = mapped_column(String(255), nullable=False)
    course_id: Mapped[str] = mapped_column(String(64), nullable=False)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=AttemptStatus.IN_PROGRESS.value)
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    question_snapshot: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False)
    score: Mapped[Optional[float]] = mapped_column(Float)
    max_score: Mapped[Optional[float]] = mapped_column(Float)
    passed: Mapped[Optional[bool]] = mapped_column(Boolean)
    breakdown: Mapped[Optional[List[Dict[str, Any]]]] = mapped_column(JSON)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

class AttemptAnswer(Base):
    __tablename__ = "attempt_answers"
    __table_args__ = (
        UniqueConstraint("attempt_id", "question_id", name="uq_attempt_answer"),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    attempt_id: Mapped[str] = mapped_column(String(36), ForeignKey("exam_attempts.id", ondelete="CASCADE"), nullable=False)
    question_id: Mapped[int] = mapped_column(BigId, nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    score: Mapped[Optional[float]] = mapped_column(Float)
    max_score: Mapped[Optional[float]] = mapped_column(Float)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now())
