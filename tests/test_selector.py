import random
import pytest
from exam_engine.core.errors import SelectionError, ValidationError
from exam_engine.services.pool import Option, PoolQuestion
from exam_engine.services.selector import (
    TemplateSpec, validate_template, bucket_targets, select_questions, materialize_fixed, axis_counts, preview_selection,
)

_ids = iter(range(1, 10_000))

def pq(difficulty="easy", type="single_choice", topic=None, points=1):
    qid = next(_ids)
    opts = [Option(id=k, text=f"{qid}-{k}", is_correct=k == "A") for k in "ABCD"] if type != "short_answer" else []
    return PoolQuestion(id=qid, type=type, difficulty=difficulty, topic=topic, text=f"Q{qid}", points=points,
                        options=opts, expected_answers=["x"] if type == "short_answer" else [])

def spec(n, difficulty=(), types=(), topics=(), shuffle_questions=True, shuffle_answers=False):
    return TemplateSpec(
        number_of_questions=n,
        difficulty_distribution=[{"level": k, "ratio": r} for k, r in difficulty],
        type_distribution=[{"type": k, "ratio": r} for k, r in types],
        topic_distribution=[{"topic": k, "ratio": r} for k, r in topics],
        shuffle_questions=shuffle_questions, shuffle_answers=shuffle_answers,
    )


# ---------- validation ----------

@pytest.mark.parametrize("bad", [
    spec(0, difficulty=[("easy", 100)]),
    spec(4, difficulty=[("easy", 50), ("hard", 40)]),
    spec(4, difficulty=[("easy", 101)]),
    spec(4, difficulty=[("easy", 50), ("easy", 50)]),
    spec(4, difficulty=[("trivial", 100)]),
    spec(4, types=[("essay", 100)]),
    spec(4, topics=[("a", 60), ("b", 60)]),
])
def test_validate_template_rejects(bad):
    with pytest.raises(ValidationError):
        validate_template(bad)

def test_validate_template_rejects_fractional_ratio():
    s = spec(4)
    s.difficulty_distribution = [{"level": "easy", "ratio": 50.5}, {"level": "hard", "ratio": 49.5}]
    with pytest.raises(ValidationError):
        validate_template(s)

def test_validate_template_accepts_partial_topics_and_empty_axes():
    validate_template(spec(10, topics=[("cardio", 30)]))
    validate_template(spec(10))


# ---------- bucket targets ----------

def test_bucket_targets_round_half_up_and_reconcile_to_largest():
    assert bucket_targets([("easy", 50), ("hard", 50)], 4) == [("easy", 2), ("hard", 2)]
    # 3.3, 3.3, 3.4 -> 3, 3, 3; residual goes to the first of the largest
    assert bucket_targets([("a", 33), ("b", 33), ("c", 34)], 10) == [("a", 4), ("b", 3), ("c", 3)]
    # 1.5, 1.5 -> 2, 2; overshoot taken from the first of the largest
    assert bucket_targets([("a", 50), ("b", 50)], 3) == [("a", 1), ("b", 2)]

def test_bucket_targets_partial_axis_keeps_rounded_values():
    assert bucket_targets([("cardio", 30)], 10, exact=False) == [("cardio", 3)]


# ---------- selection ----------

def test_difficulty_split_fifty_fifty():
    pool = [pq("easy") for _ in range(5)] + [pq("hard") for _ in range(5)]
    out = select_questions(spec(4, difficulty=[("easy", 50), ("hard", 50)]), pool, random.Random(7))
    assert len(out) == 4
    assert axis_counts(out)["difficulty"] == {"easy": 2, "hard": 2}
    assert len({q.id for q in out}) == 4

def test_counts_hold_on_both_axes_at_once():
    # only hard/single + easy/multiple satisfies both axes
    pool = [pq("easy", "single_choice"), pq("easy", "multiple_choice"), pq("hard", "single_choice")]
    s = spec(2, difficulty=[("easy", 50), ("hard", 50)], types=[("single_choice", 50), ("multiple_choice", 50)])
    for seed in range(20):
        out = select_questions(s, pool, random.Random(seed))
        assert {(q.difficulty, q.type) for q in out} == {("hard", "single_choice"), ("easy", "multiple_choice")}

def test_jointly_infeasible_axes_fail():
    pool = [pq("easy", "single_choice") for _ in range(3)] + [pq("hard", "multiple_choice") for _ in range(2)]
    s = spec(4, difficulty=[("easy", 75), ("hard", 25)], types=[("single_choice", 50), ("multiple_choice", 50)])
    with pytest.raises(SelectionError) as exc:
        select_questions(s, pool, random.Random(1))
    assert exc.value.shortfall == 1

def test_bucket_shortfall_names_bucket():
    pool = [pq("easy") for _ in range(5)] + [pq("hard")]
    with pytest.raises(SelectionError) as exc:
        select_questions(spec(4, difficulty=[("easy", 50), ("hard", 50)]), pool, random.Random(1))
    assert exc.value.bucket == "difficulty=hard"
    assert exc.value.shortfall == 1

def test_positive_ratio_with_empty_bucket_always_fails():
    pool = [pq("easy") for _ in range(10)]
    # 5% of 4 rounds to 0 but the bucket has no supply at all
    s = spec(4, difficulty=[("easy", 95), ("medium", 5)])
    with pytest.raises(SelectionError) as exc:
        select_questions(s, pool, random.Random(1))
    assert exc.value.bucket == "difficulty=medium"
    assert exc.value.shortfall >= 1

def test_pool_smaller_than_n_fails_on_total():
    with pytest.raises(SelectionError) as exc:
        select_questions(spec(5), [pq() for _ in range(3)], random.Random(1))
    assert exc.value.bucket == "total"
    assert exc.value.shortfall == 2

def test_topic_overlay_meets_partial_target():
    pool = [pq("easy", topic="cardio") for _ in range(3)] + [pq("easy", topic="neuro") for _ in range(5)]
    for seed in range(10):
        out = select_questions(spec(4, topics=[("cardio", 50)]), pool, random.Random(seed))
        assert len(out) == 4
        assert axis_counts(out)["topic"].get("cardio", 0) >= 2

def test_topic_overlay_respects_difficulty_quotas():
    pool = ([pq("easy", topic="cardio") for _ in range(2)] + [pq("hard", topic="neuro") for _ in range(4)]
            + [pq("easy", topic="neuro") for _ in range(2)])
    s = spec(4, difficulty=[("easy", 50), ("hard", 50)], topics=[("cardio", 50), ("neuro", 50)])
    out = select_questions(s, pool, random.Random(3))
    counts = axis_counts(out)
    assert counts["difficulty"] == {"easy": 2, "hard": 2}
    assert counts["topic"] == {"cardio": 2, "neuro": 2}

def test_topic_shortfall_fails():
    pool = [pq(topic="cardio")] + [pq(topic="neuro") for _ in range(5)]
    with pytest.raises(SelectionError) as exc:
        select_questions(spec(4, topics=[("cardio", 50)]), pool, random.Random(1))
    assert exc.value.bucket == "topic=cardio"

def test_shuffled_order_varies_between_draws():
    pool = [pq() for _ in range(12)]
    orders = {tuple(q.id for q in select_questions(spec(12), pool, random.Random(seed))) for seed in range(6)}
    assert len(orders) > 1

def test_unshuffled_order_follows_bucket_declaration():
    pool = [pq("hard") for _ in range(3)] + [pq("easy") for _ in range(3)]
    s = spec(4, difficulty=[("easy", 50), ("hard", 50)], shuffle_questions=False)
    out = select_questions(s, pool, random.Random(5))
    assert [q.difficulty for q in out] == ["easy", "easy", "hard", "hard"]

def test_shuffle_answers_permutes_options_only():
    pool = [pq() for _ in range(30)]
    out = select_questions(spec(30, shuffle_answers=True), pool, random.Random(11))
    assert all(sorted(o.id for o in q.options) == ["A", "B", "C", "D"] for q in out)
    assert all(q.correct_option_ids == ["A"] for q in out)
    assert any([o.id for o in q.options] != ["A", "B", "C", "D"] for q in out)

def test_duplicate_pool_entries_are_drawn_once():
    q = pq()
    with pytest.raises(SelectionError):
        select_questions(spec(2), [q, q], random.Random(1))


# ---------- fixed lists / preview ----------

def test_materialize_fixed_keeps_listed_order():
    qs = [pq() for _ in range(3)]
    available = {q.id: q for q in qs}
    out = materialize_fixed([qs[2].id, qs[0].id], available)
    assert [q.id for q in out] == [qs[2].id, qs[0].id]

def test_materialize_fixed_missing_question_fails():
    q = pq()
    with pytest.raises(SelectionError) as exc:
        materialize_fixed([q.id, 999_999], {q.id: q})
    assert exc.value.bucket == "question=999999"

def test_preview_reports_counts():
    pool = [pq("easy") for _ in range(3)] + [pq("hard") for _ in range(3)]
    out = preview_selection(spec(4, difficulty=[("easy", 50), ("hard", 50)]), pool, random.Random(2))
    assert out["number_of_questions"] == 4
    assert out["pool_size"] == 6
    assert out["counts"]["difficulty"] == {"easy": 2, "hard": 2}

def test_materialize_fixed_applies_per_exam_scoring():
    a, b = pq(points=4), pq(points=2)
    out = materialize_fixed([a.id, b.id], {a.id: a, b.id: b}, overrides={a.id: {"points": 6, "weight": 0.5}})
    assert [(q.points, q.weight, q.max_points) for q in out] == [(6, 0.5, 3), (2, 1.0, 2)]
    assert a.points == 4 and a.weight == 1.0
