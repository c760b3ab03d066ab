"""
Read models for attempts.

While an attempt is in progress nothing derived from the answer key leaves the
service: options are reduced to id/text and only the owner sees their own answers.
Once terminal, scores and correct answers are added subject to the exam's
visibility flags (owners) or unconditionally (staff).
"""
from datetime import datetime
from typing import Dict, List, Optional
from pydantic import BaseModel
from exam_engine.models.answers import Answer, SingleChoiceAnswer, MultipleChoiceAnswer, dump_answer
from exam_engine.models.orm import Exam, ExamAttempt
from exam_engine.services.pool import PoolQuestion, load_snapshot


class OptionView(BaseModel):
    id: str
    text: str


class QuestionView(BaseModel):
    id: int
    type: str
    difficulty: str
    topic: Optional[str] = None
    text: str
    points: int
    weight: float = 1.0
    options: List[OptionView] = []
    answer: Optional[dict] = None
    selected_text: Optional[List[str]] = None
    score: Optional[float] = None
    max_score: Optional[float] = None
    correct_option_ids: Optional[List[str]] = None
    expected_answers: Optional[List[str]] = None


class AttemptView(BaseModel):
    id: str
    exam_id: int
    student_id: str
    attempt_number: int
    status: str
    started_at: datetime
    expires_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    score: Optional[float] = None
    max_score: Optional[float] = None
    passed: Optional[bool] = None
    questions: List[QuestionView] = []


class AttemptSummary(BaseModel):
    id: str
    attempt_number: int
    status: str
    started_at: datetime
    expires_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    score: Optional[float] = None
    max_score: Optional[float] = None
    passed: Optional[bool] = None


def _selected_text(q: PoolQuestion, answer: Answer) -> Optional[List[str]]:
    if isinstance(answer, SingleChoiceAnswer):
        ids = [answer.option_id]
    elif isinstance(answer, MultipleChoiceAnswer):
        ids = answer.option_ids
    else:
        return None
    return [t for t in (q.option_text(i) for i in ids) if t is not None]


def _score_visible(exam: Optional[Exam], for_owner: bool) -> bool:
    return not for_owner or exam is None or bool(exam.show_score_to_student)


def _key_visible(exam: Optional[Exam], for_owner: bool) -> bool:
    return not for_owner or exam is None or exam.show_correct_answers == "after_submit"


def project(attempt: ExamAttempt, answers: Dict[int, Answer], for_owner: bool, exam: Optional[Exam] = None) -> AttemptView:
    snapshot = load_snapshot(attempt.question_snapshot)
    done = attempt.is_terminal and attempt.submitted_at is not None
    show_score = done and _score_visible(exam, for_owner)
    show_key = done and _key_visible(exam, for_owner)
    per_q = {int(b["question_id"]): b for b in attempt.breakdown or []}

    questions = []
    for q in snapshot:
        view = QuestionView(
            id=q.id, type=q.type, difficulty=q.difficulty, topic=q.topic, text=q.text, points=q.points, weight=q.weight,
            options=[OptionView(id=o.id, text=o.text) for o in q.options],
        )
        answer = answers.get(q.id)
        if answer is not None and (for_owner or done):
            view.answer = dump_answer(answer)
            if done:
                view.selected_text = _selected_text(q, answer)
        if show_score and q.id in per_q:
            view.score = per_q[q.id]["score"]
            view.max_score = per_q[q.id]["max_score"]
        if show_key:
            if q.is_choice:
                view.correct_option_ids = q.correct_option_ids
            else:
                view.expected_answers = list(q.expected_answers)
        questions.append(view)

    return AttemptView(
        id=attempt.id, exam_id=attempt.exam_id, student_id=attempt.student_id, attempt_number=attempt.attempt_number,
        status=attempt.status, started_at=attempt.started_at, expires_at=attempt.expires_at, submitted_at=attempt.submitted_at,
        score=attempt.score if show_score else None,
        max_score=attempt.max_score if show_score else None,
        passed=attempt.passed if show_score else None,
        questions=questions,
    )


def summarize(attempt: ExamAttempt, for_owner: bool, exam: Optional[Exam] = None) -> AttemptSummary:
    show_score = attempt.is_terminal and _score_visible(exam, for_owner)
    return AttemptSummary(
        id=attempt.id, attempt_number=attempt.attempt_number, status=attempt.status,
        started_at=attempt.started_at, expires_at=attempt.expires_at, submitted_at=attempt.submitted_at,
        score=attempt.score if show_score else None,
        max_score=attempt.max_score if show_score else None,
        passed=attempt.passed if show_score else None,
    )
