"""
Exam analytics over finished attempts (submitted or expired).

Everything is derived from what the terminal transition stored on the attempt:
``score``, ``max_score``, ``passed``, the per-question ``breakdown`` and the
``started_at``/``submitted_at`` pair. Nothing is re-scored here.
"""
from typing import Any, Dict, List, Optional
from sqlalchemy import select
from sqlalchemy.orm import Session
from exam_engine.models.orm import Exam, ExamAttempt, TERMINAL_STATUSES


def _avg(values: List[float]) -> float:
    return round(sum(values) / len(values), 2) if values else 0.0


def _pct(part: int, whole: int) -> float:
    return round(part * 100.0 / whole, 2) if whole else 0.0


def _minutes(a: ExamAttempt) -> Optional[float]:
    if a.submitted_at is None or a.started_at is None:
        return None
    return (a.submitted_at - a.started_at).total_seconds() / 60


def question_stats(attempts: List[ExamAttempt]) -> List[Dict[str, Any]]:
    """
    Per-question difficulty index: percentage of answers that earned full marks.
    Unanswered questions count toward ``times_shown`` only.
    """
    stats: Dict[int, Dict[str, Any]] = {}
    for a in attempts:
        for b in a.breakdown or []:
            qid = int(b["question_id"])
            s = stats.setdefault(qid, {"question_id": qid, "times_shown": 0, "total_answers": 0, "correct_count": 0, "scores": []})
            s["times_shown"] += 1
            if not b.get("answered"):
                continue
            s["total_answers"] += 1
            s["scores"].append(float(b["score"]))
            if b["max_score"] and b["score"] >= b["max_score"]:
                s["correct_count"] += 1
    out = []
    for qid in sorted(stats):
        s = stats[qid]
        scores = s.pop("scores")
        s["average_score"] = _avg(scores)
        s["difficulty_index"] = _pct(s["correct_count"], s["total_answers"])
        out.append(s)
    return out


def student_stats(attempts: List[ExamAttempt]) -> List[Dict[str, Any]]:
    by_student: Dict[str, List[ExamAttempt]] = {}
    for a in attempts:
        by_student.setdefault(a.student_id, []).append(a)
    out = []
    for student_id in sorted(by_student):
        rows = sorted(by_student[student_id], key=lambda a: a.attempt_number)
        scores = [a.score or 0.0 for a in rows]
        out.append({
            "student_id": student_id,
            "attempts": len(rows),
            "best_score": max(scores),
            "average_score": _avg(scores),
            "passed": any(a.passed for a in rows),
            "last_status": rows[-1].status,
            "last_submitted_at": rows[-1].submitted_at,
        })
    return out


def exam_analytics(db: Session, exam: Exam) -> Dict[str, Any]:
    attempts = list(db.execute(
        select(ExamAttempt).where(ExamAttempt.exam_id == exam.id, ExamAttempt.status.in_(TERMINAL_STATUSES))
        .order_by(ExamAttempt.submitted_at)
    ).scalars().all())
    graded = [a for a in attempts if a.passed is not None]
    passed = sum(1 for a in graded if a.passed)
    times = [m for m in (_minutes(a) for a in attempts) if m is not None]
    return {
        "exam": {"id": exam.id, "title": exam.title, "passing_score": exam.passing_score},
        "attempts": {
            "total": len(attempts),
            "submitted": sum(1 for a in attempts if a.status == "submitted"),
            "expired": sum(1 for a in attempts if a.status == "expired"),
            "passed": passed,
            "failed": len(graded) - passed,
            "pass_rate": _pct(passed, len(graded)),
        },
        "scores": {
            "average": _avg([a.score or 0.0 for a in attempts]),
            "highest": max((a.score or 0.0 for a in attempts), default=0.0),
            "lowest": min((a.score or 0.0 for a in attempts), default=0.0),
            "max_score": max((a.max_score or 0.0 for a in attempts), default=0.0),
        },
        "average_time_minutes": _avg(times),
        "questions": question_stats(attempts),
        "students": student_stats(attempts),
    }
