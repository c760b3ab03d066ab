"""
Scoring engine.

Marking policy:

* single_choice   -- full points when the selected option is the correct one.
* multiple_choice -- full points only when the selected set equals the correct set.
  Subsets earn nothing: partial credit would need a per-option weighting that
  questions do not carry. Any wrong selection also scores 0; a question never
  scores below 0, so negative marking cannot leak into other questions.
* short_answer    -- full points when the trimmed answer equals one of the expected
  answers (case-insensitive unless the question is case sensitive). No fuzzy match.

Every question is worth ``points * weight``; an exam entry may override the pool
points and set a weight, both fixed in the snapshot at start. Unanswered
questions score 0 and still count toward ``max_score``.
"""
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional, Sequence
from exam_engine.models.answers import Answer, SingleChoiceAnswer, MultipleChoiceAnswer, ShortAnswer
from exam_engine.services.pool import PoolQuestion


@dataclass
class QuestionScore:
    question_id: int
    score: float
    max_score: float
    answered: bool


@dataclass
class ScoreResult:
    score: float
    max_score: float
    passed: Optional[bool]
    per_question: List[QuestionScore] = field(default_factory=list)

    def breakdown(self) -> List[Dict]:
        return [asdict(q) for q in self.per_question]


def _normalize(text: str, case_sensitive: bool) -> str:
    text = text.strip()
    return text if case_sensitive else text.casefold()


def score_question(question: PoolQuestion, answer: Optional[Answer]) -> int:
    points = question.points
    if answer is None or answer.type != question.type:
        return 0
    if isinstance(answer, SingleChoiceAnswer):
        correct = question.correct_option_ids
        return points if len(correct) == 1 and answer.option_id == correct[0] else 0
    if isinstance(answer, MultipleChoiceAnswer):
        correct = set(question.correct_option_ids)
        selected = set(answer.option_ids)
        return points if correct and selected == correct else 0
    if isinstance(answer, ShortAnswer):
        given = _normalize(answer.text, question.case_sensitive)
        if not given:
            return 0
        expected = {_normalize(e, question.case_sensitive) for e in question.expected_answers}
        return points if given in expected else 0
    raise TypeError(f"Unhandled answer variant: {type(answer).__name__}")


def score_attempt(
    snapshot: Sequence[PoolQuestion],
    answers: Dict[int, Answer],
    passing_score: Optional[float] = None,
) -> ScoreResult:
    per_question = []
    for q in snapshot:
        answer = answers.get(q.id)
        earned = max(0, min(q.max_points, score_question(q, answer) * q.weight))
        per_question.append(QuestionScore(question_id=q.id, score=earned, max_score=q.max_points, answered=answer is not None))
    total = sum(p.score for p in per_question)
    max_total = sum(p.max_score for p in per_question)
    passed = None if passing_score is None else total >= passing_score
    return ScoreResult(score=total, max_score=max_total, passed=passed, per_question=per_question)
