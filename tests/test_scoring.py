from exam_engine.models.answers import SingleChoiceAnswer, MultipleChoiceAnswer, ShortAnswer, parse_answer
from exam_engine.services.pool import Option, PoolQuestion
from exam_engine.services.scoring import score_question, score_attempt

def choice(qid, type, correct, points=10, keys="ABCD"):
    return PoolQuestion(id=qid, type=type, difficulty="medium", topic=None, text="?", points=points,
                        options=[Option(id=k, text=k.lower(), is_correct=k in correct) for k in keys])

def short(qid, expected, points=5, case_sensitive=False):
    return PoolQuestion(id=qid, type="short_answer", difficulty="easy", topic=None, text="?", points=points,
                        expected_answers=list(expected), case_sensitive=case_sensitive)

def test_multiple_choice_requires_exact_set():
    q = choice(1, "multiple_choice", "AB")
    assert score_question(q, MultipleChoiceAnswer(option_ids=["A", "B"])) == 10
    assert score_question(q, MultipleChoiceAnswer(option_ids=["B", "A", "A"])) == 10
    assert score_question(q, MultipleChoiceAnswer(option_ids=["A"])) == 0
    assert score_question(q, MultipleChoiceAnswer(option_ids=["A", "B", "C"])) == 0
    assert score_question(q, MultipleChoiceAnswer(option_ids=[])) == 0

def test_single_choice():
    q = choice(1, "single_choice", "C", points=3)
    assert score_question(q, SingleChoiceAnswer(option_id="C")) == 3
    assert score_question(q, SingleChoiceAnswer(option_id="A")) == 0

def test_short_answer_trims_and_ignores_case():
    q = short(1, ["Paris"])
    assert score_question(q, ShortAnswer(text="  paris ")) == 5
    assert score_question(q, ShortAnswer(text="Pariss")) == 0
    assert score_question(q, ShortAnswer(text="   ")) == 0

def test_short_answer_case_sensitive():
    q = short(1, ["NaCl"], case_sensitive=True)
    assert score_question(q, ShortAnswer(text="NaCl")) == 5
    assert score_question(q, ShortAnswer(text="nacl")) == 0

def test_mismatched_variant_scores_zero():
    q = choice(1, "single_choice", "A")
    assert score_question(q, MultipleChoiceAnswer(option_ids=["A"])) == 0
    assert score_question(q, None) == 0

def test_unanswered_question_counts_toward_max_score():
    snapshot = [choice(1, "single_choice", "A", points=2), short(2, ["x"], points=5)]
    result = score_attempt(snapshot, {1: SingleChoiceAnswer(option_id="A")})
    assert result.score == 2
    assert result.max_score == 7
    assert result.passed is None
    assert [(p.question_id, p.score, p.max_score, p.answered) for p in result.per_question] == [(1, 2, 2, True), (2, 0, 5, False)]

def test_passed_is_absolute_threshold():
    snapshot = [choice(1, "single_choice", "A", points=4), choice(2, "single_choice", "A", points=6)]
    answers = {1: SingleChoiceAnswer(option_id="A"), 2: SingleChoiceAnswer(option_id="B")}
    assert score_attempt(snapshot, answers, passing_score=4).passed is True
    assert score_attempt(snapshot, answers, passing_score=4.5).passed is False

def test_breakdown_is_plain_data():
    snapshot = [short(7, ["yes"], points=1)]
    result = score_attempt(snapshot, {7: parse_answer({"type": "short_answer", "text": "YES"})})
    assert result.breakdown() == [{"question_id": 7, "score": 1, "max_score": 1, "answered": True}]

def test_weight_scales_earned_and_max_score():
    heavy = choice(1, "single_choice", "A", points=4).with_scoring(weight=2.5)
    light = short(2, ["x"], points=3).with_scoring(points=2)
    result = score_attempt([heavy, light], {1: SingleChoiceAnswer(option_id="A"), 2: ShortAnswer(text="y")}, passing_score=10)
    assert (result.score, result.max_score) == (10, 12)
    assert result.passed is True
    assert [(p.score, p.max_score) for p in result.per_question] == [(10, 10), (0, 2)]
