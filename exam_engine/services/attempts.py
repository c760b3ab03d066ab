"""
Attempt lifecycle: in_progress -> submitted | expired, both terminal.

Invariants are enforced by the database, not by in-process locks:

* one in-progress attempt per (exam, student): partial unique index on insert;
* one terminal transition per attempt: ``UPDATE ... WHERE status = 'in_progress'``,
  and only the writer that changed the row scores it.

Expiry is lazy: every call compares ``now`` with ``expires_at`` and finalizes an
overdue attempt as expired on the spot. ``expire_overdue`` does the same in bulk
for the optional sweeper job.
"""
import logging
import random
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import uuid4
from sqlalchemy import select, update, func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from exam_engine.core import errors
from exam_engine.models.answers import Answer, parse_answer, dump_answer
from exam_engine.models.orm import (
    Exam, ExamTemplate, ExamAttempt, AttemptAnswer, AttemptStatus, ExamStatus, TERMINAL_STATUSES,
)
from exam_engine.services import scoring
from exam_engine.services.enrollment import is_enrolled
from exam_engine.services.pool import PoolQuestion, find_questions, get_questions, load_snapshot
from exam_engine.services.selector import TemplateSpec, select_questions, materialize_fixed

logger = logging.getLogger(__name__)

IN_PROGRESS = AttemptStatus.IN_PROGRESS.value
SUBMITTED = AttemptStatus.SUBMITTED.value
EXPIRED = AttemptStatus.EXPIRED.value

AnswerItem = Tuple[int, Answer]


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def is_overdue(expires_at: Optional[datetime], now: datetime) -> bool:
    return expires_at is not None and now > expires_at


# ---------- lookups ----------

def get_exam(db: Session, exam_id: int) -> Exam:
    exam = db.get(Exam, exam_id)
    if not exam:
        raise errors.NotFound("Exam not found", resource="exam", id=exam_id)
    return exam


def get_attempt(db: Session, attempt_id: str, exam_id: Optional[int] = None, student_id: Optional[str] = None) -> ExamAttempt:
    """``student_id`` restricts access to the attempt's owner; pass None for staff access."""
    attempt = db.get(ExamAttempt, attempt_id, populate_existing=True)
    if not attempt or (exam_id is not None and attempt.exam_id != exam_id):
        raise errors.NotFound("Exam attempt not found", resource="attempt", id=attempt_id)
    if student_id is not None and attempt.student_id != student_id:
        raise errors.Forbidden("Not authorized to access this attempt")
    return attempt


def load_answers(db: Session, attempt_id: str) -> Dict[int, Answer]:
    rows = db.execute(select(AttemptAnswer).where(AttemptAnswer.attempt_id == attempt_id)).scalars().all()
    return {r.question_id: parse_answer(r.payload) for r in rows}


def count_finished(db: Session, exam_id: int, student_id: str) -> int:
    return db.scalar(
        select(func.count()).select_from(ExamAttempt).where(
            ExamAttempt.exam_id == exam_id, ExamAttempt.student_id == student_id, ExamAttempt.status.in_(TERMINAL_STATUSES),
        )
    ) or 0


def _in_progress(db: Session, exam_id: int, student_id: str) -> Optional[ExamAttempt]:
    return db.scalar(
        select(ExamAttempt).where(
            ExamAttempt.exam_id == exam_id, ExamAttempt.student_id == student_id, ExamAttempt.status == IN_PROGRESS,
        ).execution_options(populate_existing=True)
    )


# ---------- snapshot ----------

def build_snapshot(db: Session, exam: Exam, rng: Optional[random.Random] = None) -> List[PoolQuestion]:
    if exam.template_id is not None:
        template = db.get(ExamTemplate, exam.template_id)
        if not template or not template.is_active:
            raise errors.ExamNotAvailable("Exam template is no longer active", exam_id=exam.id)
        pool = find_questions(db, course_id=template.course_id, section_id=template.section_id)
        return select_questions(TemplateSpec.from_template(template), pool, rng)
    available = get_questions(db, exam.question_ids or [])
    overrides = {int(k): v for k, v in (exam.question_settings or {}).items()}
    return materialize_fixed(exam.question_ids or [], available, exam.shuffle_questions, exam.shuffle_answers, rng, overrides)


# ---------- writes ----------

def _upsert_answer(db: Session, attempt_id: str, question_id: int, answer: Answer, now: datetime) -> None:
    dialect = db.get_bind().dialect.name
    insert = pg_insert if dialect == "postgresql" else sqlite_insert
    stmt = insert(AttemptAnswer).values(attempt_id=attempt_id, question_id=question_id, payload=dump_answer(answer), updated_at=now)
    stmt = stmt.on_conflict_do_update(
        index_elements=["attempt_id", "question_id"],
        set_={"payload": stmt.excluded.payload, "updated_at": stmt.excluded.updated_at},
    )
    db.execute(stmt)


def _finalize(db: Session, attempt: ExamAttempt, now: datetime, answers: Sequence[AnswerItem] = ()) -> ExamAttempt:
    """
    The single terminal transition. Whoever flips the status scores the attempt in
    the same transaction; a caller that loses the race gets the winner's result.
    """
    status = EXPIRED if is_overdue(attempt.expires_at, now) else SUBMITTED
    res = db.execute(
        update(ExamAttempt)
        .where(ExamAttempt.id == attempt.id, ExamAttempt.status == IN_PROGRESS)
        .values(status=status, submitted_at=now)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        db.rollback()
        logger.info(f"Attempt {attempt.id} already finalized by a concurrent call")
        return get_attempt(db, attempt.id)

    for question_id, answer in answers:
        _upsert_answer(db, attempt.id, question_id, answer, now)

    exam = db.get(Exam, attempt.exam_id)
    snapshot = load_snapshot(attempt.question_snapshot)
    result = scoring.score_attempt(snapshot, load_answers(db, attempt.id), exam.passing_score if exam else None)
    db.execute(
        update(ExamAttempt)
        .where(ExamAttempt.id == attempt.id)
        .values(score=result.score, max_score=result.max_score, passed=result.passed, breakdown=result.breakdown())
        .execution_options(synchronize_session=False)
    )
    for q in result.per_question:
        if q.answered:
            db.execute(
                update(AttemptAnswer)
                .where(AttemptAnswer.attempt_id == attempt.id, AttemptAnswer.question_id == q.question_id)
                .values(score=q.score, max_score=q.max_score)
                .execution_options(synchronize_session=False)
            )
    db.commit()
    logger.info(f"Attempt {attempt.id} {status}: {result.score}/{result.max_score} passed={result.passed}")
    return get_attempt(db, attempt.id)


def touch(db: Session, attempt: ExamAttempt, now: Optional[datetime] = None) -> ExamAttempt:
    """Finalize an overdue in-progress attempt as expired; otherwise return it unchanged."""
    now = now or utcnow()
    if attempt.status == IN_PROGRESS and is_overdue(attempt.expires_at, now):
        return _finalize(db, attempt, now)
    return attempt


def start_attempt(
    db: Session,
    exam_id: int,
    student_id: str,
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
    check_enrollment: bool = True,
) -> ExamAttempt:
    now = now or utcnow()
    exam = get_exam(db, exam_id)
    if exam.status != ExamStatus.PUBLISHED.value:
        raise errors.ExamNotAvailable("Exam is not available", exam_id=exam_id)
    if exam.open_at and now < exam.open_at:
        raise errors.ExamNotAvailable("Exam has not opened yet", exam_id=exam_id)
    if exam.close_at and now > exam.close_at:
        raise errors.ExamNotAvailable("Exam has closed", exam_id=exam_id)
    if check_enrollment and not is_enrolled(db, student_id, exam.course_id):
        raise errors.NotEnrolled("You must be enrolled in this course to take the exam", course_id=exam.course_id)

    live = _in_progress(db, exam_id, student_id)
    if live is not None:
        live = touch(db, live, now)
        if live.status == IN_PROGRESS:
            raise errors.AttemptAlreadyInProgress("An attempt is already in progress", attempt_id=live.id)

    used = count_finished(db, exam_id, student_id)
    if exam.max_attempts is not None and used >= exam.max_attempts:
        raise errors.AttemptLimitExceeded(f"Maximum attempts ({exam.max_attempts}) reached", max_attempts=exam.max_attempts, used=used)

    snapshot = build_snapshot(db, exam, rng)
    attempt = ExamAttempt(
        id=str(uuid4()), exam_id=exam.id, student_id=student_id, course_id=exam.course_id,
        attempt_number=used + 1, status=IN_PROGRESS, started_at=now,
        expires_at=now + timedelta(minutes=exam.duration_minutes) if exam.duration_minutes else None,
        question_snapshot=[q.to_snapshot() for q in snapshot],
    )
    db.add(attempt)
    try:
        db.commit()
    except IntegrityError:
        # a concurrent start inserted the in-progress row first
        db.rollback()
        live = _in_progress(db, exam_id, student_id)
        raise errors.AttemptAlreadyInProgress("An attempt is already in progress", attempt_id=live.id if live else None)
    db.refresh(attempt)
    logger.info(f"Attempt {attempt.id} started: exam={exam.id} student={student_id} questions={len(snapshot)} expires_at={attempt.expires_at}")
    return attempt


def _check_answers(attempt: ExamAttempt, items: Sequence[AnswerItem]) -> None:
    types = {int(q["id"]): q["type"] for q in attempt.question_snapshot}
    for question_id, answer in items:
        if question_id not in types:
            raise errors.AnswerRejected("Question is not part of this attempt", question_id=question_id)
        if answer.type != types[question_id]:
            raise errors.AnswerRejected(f"Answer type '{answer.type}' does not match question type '{types[question_id]}'", question_id=question_id)


def record_answers(
    db: Session,
    attempt_id: str,
    items: Sequence[AnswerItem],
    student_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ExamAttempt:
    """Upsert answers keyed by question id; later writes to the same question win."""
    now = now or utcnow()
    attempt = db.execute(
        select(ExamAttempt).where(ExamAttempt.id == attempt_id)
        .with_for_update(read=True)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if not attempt:
        raise errors.NotFound("Exam attempt not found", resource="attempt", id=attempt_id)
    if student_id is not None and attempt.student_id != student_id:
        db.rollback()
        raise errors.Forbidden("Not authorized to answer this attempt")
    if attempt.status != IN_PROGRESS:
        db.rollback()
        raise errors.AttemptNotActive("Attempt is no longer in progress", status=attempt.status)
    if is_overdue(attempt.expires_at, now):
        db.rollback()
        _finalize(db, attempt, now)
        raise errors.AttemptExpired("Time limit exceeded", expires_at=attempt.expires_at.isoformat())
    try:
        _check_answers(attempt, items)
    except errors.AnswerRejected:
        db.rollback()
        raise
    for question_id, answer in items:
        _upsert_answer(db, attempt.id, question_id, answer, now)
    db.commit()
    return attempt


def record_answer(db: Session, attempt_id: str, question_id: int, answer: Answer, student_id: Optional[str] = None, now: Optional[datetime] = None) -> ExamAttempt:
    return record_answers(db, attempt_id, [(question_id, answer)], student_id=student_id, now=now)


def submit(
    db: Session,
    attempt_id: str,
    items: Sequence[AnswerItem] = (),
    student_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ExamAttempt:
    """
    Finalize the attempt. Submitting an already finalized attempt returns it as is,
    so retries and an auto-submit racing a manual submit are harmless. A submission
    past ``expires_at`` finalizes as expired and its payload is ignored.
    """
    now = now or utcnow()
    attempt = get_attempt(db, attempt_id, student_id=student_id)
    if attempt.is_terminal:
        logger.debug(f"Attempt {attempt.id} already {attempt.status}; submit is a no-op")
        return attempt
    if is_overdue(attempt.expires_at, now):
        if items:
            logger.info(f"Attempt {attempt.id} submitted after expiry; discarding {len(items)} late answers")
        return _finalize(db, attempt, now)
    known = {int(q["id"]) for q in attempt.question_snapshot}
    accepted = [(qid, a) for qid, a in items if qid in known]
    if len(accepted) != len(items):
        logger.warning(f"Attempt {attempt.id}: ignoring {len(items) - len(accepted)} answers for questions outside the snapshot")
    return _finalize(db, attempt, now, accepted)


def expire_overdue(db: Session, now: Optional[datetime] = None, limit: int = 500) -> int:
    """Finalize up to ``limit`` overdue in-progress attempts; returns how many this call expired."""
    now = now or utcnow()
    ids = db.execute(
        select(ExamAttempt.id).where(
            ExamAttempt.status == IN_PROGRESS, ExamAttempt.expires_at.is_not(None), ExamAttempt.expires_at < now,
        ).order_by(ExamAttempt.expires_at).limit(limit)
    ).scalars().all()
    expired = 0
    for attempt_id in ids:
        attempt = get_attempt(db, attempt_id)
        if attempt.status != IN_PROGRESS:
            continue
        if _finalize(db, attempt, now).status == EXPIRED:
            expired += 1
    if ids:
        logger.info(f"Expiry sweep finalized {expired} of {len(ids)} overdue attempts")
    return expired


# ---------- reads ----------

def list_attempts(db: Session, exam_id: int, student_id: str, now: Optional[datetime] = None) -> List[ExamAttempt]:
    now = now or utcnow()
    rows = db.execute(
        select(ExamAttempt).where(ExamAttempt.exam_id == exam_id, ExamAttempt.student_id == student_id)
        .order_by(ExamAttempt.started_at.desc())
    ).scalars().all()
    return [touch(db, a, now) for a in rows]


def exam_overview(db: Session, exam: Exam, student_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utcnow()
    attempts = list_attempts(db, exam.id, student_id, now)
    finished = [a for a in attempts if a.is_terminal]
    live = next((a for a in attempts if a.status == IN_PROGRESS), None)
    remaining = None if exam.max_attempts is None else max(0, exam.max_attempts - len(finished))
    is_open = (not exam.open_at or now >= exam.open_at) and not (exam.close_at and now > exam.close_at)
    can_start = exam.status == ExamStatus.PUBLISHED.value and is_open and live is None and remaining != 0
    return {
        "exam_id": exam.id,
        "max_attempts": exam.max_attempts,
        "remaining_attempts": remaining,
        "total_attempts": len(attempts),
        "finished_attempts": len(finished),
        "in_progress_attempt_id": live.id if live else None,
        "can_start": can_start,
        "latest_attempt": attempts[0] if attempts else None,
    }
