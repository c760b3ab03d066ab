"""
Question pool access.

The engine only needs tag-filtered reads of the pool; questions are handed around
as ``PoolQuestion`` values, which are also the shape stored in an attempt's
immutable question snapshot.
"""
from dataclasses import dataclass, field, asdict, replace
from typing import Any, Dict, Iterable, List, Optional, Sequence
from sqlalchemy import select
from sqlalchemy.orm import Session
from exam_engine.models.orm import Question, QuestionOption, CHOICE_TYPES


@dataclass(frozen=True)
class Option:
    id: str
    text: str
    is_correct: bool = False


@dataclass(frozen=True)
class PoolQuestion:
    id: int
    type: str
    difficulty: str
    topic: Optional[str]
    text: str
    points: int
    options: List[Option] = field(default_factory=list)
    expected_answers: List[str] = field(default_factory=list)
    case_sensitive: bool = False
    weight: float = 1.0

    @property
    def max_points(self) -> float:
        return self.points * self.weight

    @property
    def is_choice(self) -> bool:
        return self.type in CHOICE_TYPES

    @property
    def correct_option_ids(self) -> List[str]:
        return [o.id for o in self.options if o.is_correct]

    def option_text(self, option_id: str) -> Optional[str]:
        return next((o.text for o in self.options if o.id == option_id), None)

    def with_options(self, options: Sequence[Option]) -> "PoolQuestion":
        return replace(self, options=list(options))

    def with_scoring(self, points: Optional[int] = None, weight: Optional[float] = None) -> "PoolQuestion":
        """Per-exam points override and weight; the pool question itself is untouched."""
        return replace(self, points=points or self.points, weight=self.weight if weight is None else float(weight))

    def to_snapshot(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_snapshot(cls, data: Dict[str, Any]) -> "PoolQuestion":
        opts = [Option(**o) for o in data.get("options") or []]
        return cls(
            id=int(data["id"]), type=data["type"], difficulty=data["difficulty"], topic=data.get("topic"),
            text=data["text"], points=int(data["points"]), options=opts,
            expected_answers=list(data.get("expected_answers") or []),
            case_sensitive=bool(data.get("case_sensitive", False)),
            weight=float(data.get("weight", 1.0)),
        )


def load_snapshot(raw: Iterable[Dict[str, Any]]) -> List[PoolQuestion]:
    return [PoolQuestion.from_snapshot(d) for d in raw]


def _to_pool_questions(db: Session, rows: Sequence[Question]) -> List[PoolQuestion]:
    if not rows:
        return []
    ids = [q.id for q in rows]
    opts = db.execute(
        select(QuestionOption).where(QuestionOption.question_id.in_(ids)).order_by(QuestionOption.question_id, QuestionOption.position)
    ).scalars().all()
    by_q: Dict[int, List[Option]] = {}
    for o in opts:
        by_q.setdefault(o.question_id, []).append(Option(id=o.option_key, text=o.text, is_correct=o.is_correct))
    return [
        PoolQuestion(
            id=q.id, type=q.type, difficulty=q.difficulty, topic=q.topic, text=q.text, points=q.points,
            options=by_q.get(q.id, []) if q.type in CHOICE_TYPES else [],
            expected_answers=list(q.expected_answers or []), case_sensitive=bool(q.case_sensitive),
        )
        for q in rows
    ]


def find_questions(
    db: Session,
    course_id: str,
    section_id: Optional[str] = None,
    difficulty: Optional[str] = None,
    type: Optional[str] = None,
    topic: Optional[str] = None,
) -> List[PoolQuestion]:
    """Active questions of a course matching every given tag filter."""
    stmt = select(Question).where(Question.course_id == course_id, Question.is_active.is_(True))
    if section_id is not None:
        stmt = stmt.where(Question.section_id == section_id)
    if difficulty is not None:
        stmt = stmt.where(Question.difficulty == difficulty)
    if type is not None:
        stmt = stmt.where(Question.type == type)
    if topic is not None:
        stmt = stmt.where(Question.topic == topic)
    rows = db.execute(stmt.order_by(Question.id)).scalars().all()
    return _to_pool_questions(db, rows)


def get_questions(db: Session, question_ids: Sequence[int]) -> Dict[int, PoolQuestion]:
    """Active questions by id; missing or inactive ids are simply absent."""
    if not question_ids:
        return {}
    rows = db.execute(
        select(Question).where(Question.id.in_(list(question_ids)), Question.is_active.is_(True))
    ).scalars().all()
    return {q.id: q for q in _to_pool_questions(db, rows)}
