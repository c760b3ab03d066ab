"""
Template validation and randomized question selection.

A template declares up to three independent distribution axes (difficulty, type,
topic). Difficulty and type each partition the exam: their bucket targets must be
met exactly and simultaneously, so per-cell quotas (difficulty x type) are solved
as a small transportation problem with max-flow. Topic is an overlay: its targets
are drawn inside those cell quotas, and whatever quota is left is filled by a
uniform draw from the rest of the cell.
"""
import logging
import random
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
from exam_engine.core.errors import SelectionError, ValidationError
from exam_engine.models.orm import Difficulty, QuestionType
from exam_engine.services.pool import PoolQuestion

logger = logging.getLogger(__name__)

# axis name -> key of the bucket value inside a distribution rule
AXES = {"difficulty": "level", "type": "type", "topic": "topic"}
ALLOWED = {
    "difficulty": {d.value for d in Difficulty},
    "type": {t.value for t in QuestionType},
}


@dataclass
class TemplateSpec:
    number_of_questions: int
    difficulty_distribution: List[Dict[str, Any]] = field(default_factory=list)
    type_distribution: List[Dict[str, Any]] = field(default_factory=list)
    topic_distribution: List[Dict[str, Any]] = field(default_factory=list)
    shuffle_questions: bool = True
    shuffle_answers: bool = True

    @classmethod
    def from_template(cls, template) -> "TemplateSpec":
        return cls(
            number_of_questions=template.number_of_questions,
            difficulty_distribution=list(template.difficulty_distribution or []),
            type_distribution=list(template.type_distribution or []),
            topic_distribution=list(template.topic_distribution or []),
            shuffle_questions=bool(template.shuffle_questions),
            shuffle_answers=bool(template.shuffle_answers),
        )

    def rules(self, axis: str) -> List[Tuple[str, int]]:
        key = AXES[axis]
        return [(r[key], r["ratio"]) for r in getattr(self, f"{axis}_distribution")]


# ---------- validation ----------

def _is_ratio(v) -> bool:
    return isinstance(v, int) and not isinstance(v, bool) and 0 <= v <= 100


def validate_template(spec: TemplateSpec) -> None:
    """Structural checks only; pool supply is checked at selection time."""
    n = spec.number_of_questions
    if not isinstance(n, int) or isinstance(n, bool) or n <= 0:
        raise ValidationError("numberOfQuestions must be a positive integer", field="numberOfQuestions")
    for axis, key in AXES.items():
        entries = getattr(spec, f"{axis}_distribution")
        seen = set()
        for rule in entries:
            value, ratio = rule.get(key), rule.get("ratio")
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"{axis} rule is missing '{key}'", field=f"{axis}Distribution")
            if axis in ALLOWED and value not in ALLOWED[axis]:
                raise ValidationError(f"Unknown {axis} '{value}'", field=f"{axis}Distribution")
            if not _is_ratio(ratio):
                raise ValidationError(f"{axis} ratio for '{value}' must be an integer in [0, 100]", field=f"{axis}Distribution")
            if value in seen:
                raise ValidationError(f"{axis} '{value}' is listed twice", field=f"{axis}Distribution")
            seen.add(value)
        total = sum(r["ratio"] for r in entries)
        if axis == "topic":
            if total > 100:
                raise ValidationError("Topic distribution ratios cannot exceed 100", field="topicDistribution")
        elif entries and total != 100:
            raise ValidationError(f"{axis.capitalize()} distribution ratios must sum to 100", field=f"{axis}Distribution")


# ---------- bucket targets ----------

def _round_half_up(ratio: int, n: int) -> int:
    return (2 * ratio * n + 100) // 200


def bucket_targets(rules: Sequence[Tuple[str, int]], n: int, exact: bool = True) -> List[Tuple[str, int]]:
    """
    Rounded per-bucket counts. When ``exact`` the counts are reconciled to sum to
    ``n`` by moving the residual onto the largest bucket (first declared on ties);
    otherwise they are only trimmed the same way if rounding overshoots ``n``.
    """
    targets = [_round_half_up(ratio, n) for _, ratio in rules]
    residual = n - sum(targets)
    if targets and (exact or residual < 0):
        while residual != 0:
            i = max(range(len(targets)), key=lambda k: (targets[k], -k))
            step = residual if residual > 0 else -min(targets[i], -residual)
            targets[i] += step
            residual -= step
    return [(value, t) for (value, _), t in zip(rules, targets)]


# ---------- max-flow ----------

class _FlowNetwork:
    """Edmonds-Karp over a handful of nodes; edge order is the search order."""

    def __init__(self):
        self.cap: Dict[Any, Dict[Any, int]] = {}

    def add_edge(self, u, v, c: int) -> None:
        self.cap.setdefault(u, {})
        self.cap.setdefault(v, {})
        self.cap[u][v] = self.cap[u].get(v, 0) + c
        self.cap[v].setdefault(u, 0)

    def max_flow(self, source, sink) -> Dict[Any, Dict[Any, int]]:
        residual = {u: dict(vs) for u, vs in self.cap.items()}
        while True:
            parent = {source: None}
            queue = deque([source])
            while queue and sink not in parent:
                u = queue.popleft()
                for v, c in residual.get(u, {}).items():
                    if c > 0 and v not in parent:
                        parent[v] = u
                        queue.append(v)
            if sink not in parent:
                break
            path, v = [], sink
            while parent[v] is not None:
                path.append((parent[v], v))
                v = parent[v]
            push = min(residual[u][v] for u, v in path)
            for u, v in path:
                residual[u][v] -= push
                residual[v][u] += push
        return {u: {v: c - residual[u][v] for v, c in vs.items() if c > 0 and c - residual[u][v] > 0} for u, vs in self.cap.items()}


# ---------- selection ----------

def _matches(q: PoolQuestion, axis: str, value: Optional[str]) -> bool:
    return value is None or getattr(q, axis) == value


def _check_supply(pool: Sequence[PoolQuestion], axis: str, buckets: List[Tuple[str, int]], ratios: Dict[str, int]) -> None:
    for value, target in buckets:
        supply = sum(1 for q in pool if getattr(q, axis) == value)
        if supply == 0 and ratios[value] > 0:
            raise SelectionError(f"{axis}={value}", max(target, 1), f"No questions available for {axis} '{value}'")
        if supply < target:
            raise SelectionError(f"{axis}={value}", target - supply)


def _solve_cell_quotas(pool, n, rows, cols, rng) -> Dict[Tuple, int]:
    net = _FlowNetwork()
    cells = [(d, t) for d, _ in rows for t, _ in cols]
    rng.shuffle(cells)
    for d, target in rows:
        net.add_edge("src", ("d", d), target)
    for d, t in cells:
        supply = sum(1 for q in pool if _matches(q, "difficulty", d) and _matches(q, "type", t))
        if supply:
            net.add_edge(("d", d), ("t", t), supply)
    for t, target in cols:
        net.add_edge(("t", t), "sink", target)
    flow = net.max_flow("src", "sink")
    for d, target in rows:
        got = sum(flow.get(("d", d), {}).values())
        if got < target:
            bucket = f"difficulty={d}" if d is not None else "total"
            raise SelectionError(bucket, target - got, f"Pool cannot satisfy difficulty '{d}' together with the type distribution (short by {target - got})")
    for t, target in cols:
        got = flow.get(("t", t), {}).get("sink", 0)
        if got < target:
            raise SelectionError(f"type={t}", target - got)
    return {(d, t): flow.get(("d", d), {}).get(("t", t), 0) for d, _ in rows for t, _ in cols}


def _solve_topic_quotas(pool, topics, quotas, rng) -> Dict[Tuple, int]:
    net = _FlowNetwork()
    cells = [c for c, x in quotas.items() if x > 0]
    rng.shuffle(cells)
    for topic, target in topics:
        net.add_edge("src", ("k", topic), target)
        for d, t in cells:
            avail = sum(1 for q in pool if q.topic == topic and _matches(q, "difficulty", d) and _matches(q, "type", t))
            if avail:
                net.add_edge(("k", topic), ("c", d, t), avail)
    for d, t in cells:
        net.add_edge(("c", d, t), "sink", quotas[(d, t)])
    flow = net.max_flow("src", "sink")
    for topic, target in topics:
        got = sum(flow.get(("k", topic), {}).values())
        if got < target:
            raise SelectionError(f"topic={topic}", target - got, f"Pool cannot place {target} '{topic}' questions within the difficulty/type quotas (short by {target - got})")
    return {(topic, d, t): flow.get(("k", topic), {}).get(("c", d, t), 0) for topic, _ in topics for d, t in cells}


def shuffle_options(q: PoolQuestion, rng: random.Random) -> PoolQuestion:
    if not q.is_choice or len(q.options) < 2:
        return q
    return q.with_options(rng.sample(q.options, len(q.options)))


def select_questions(spec: TemplateSpec, pool: Sequence[PoolQuestion], rng: Optional[random.Random] = None) -> List[PoolQuestion]:
    """Draw ``spec.number_of_questions`` questions satisfying every distribution axis."""
    validate_template(spec)
    rng = rng or random.Random()
    n = spec.number_of_questions
    pool = list({q.id: q for q in pool}.values())
    if len(pool) < n:
        raise SelectionError("total", n - len(pool), f"Pool has {len(pool)} questions, template needs {n}")

    axis_buckets = {}
    for axis in AXES:
        rules = spec.rules(axis)
        if not rules:
            continue
        exact = axis != "topic" or sum(r for _, r in rules) == 100
        buckets = bucket_targets(rules, n, exact=exact)
        _check_supply(pool, axis, buckets, dict(rules))
        axis_buckets[axis] = [(v, t) for v, t in buckets if t > 0]

    rows = axis_buckets.get("difficulty") or [(None, n)]
    cols = axis_buckets.get("type") or [(None, n)]
    quotas = _solve_cell_quotas(pool, n, rows, cols, rng)
    topics = axis_buckets.get("topic", [])
    topic_quotas = _solve_topic_quotas(pool, topics, quotas, rng) if topics else {}

    selected: List[PoolQuestion] = []
    for d, _ in rows:
        for t, _ in cols:
            quota = quotas[(d, t)]
            if not quota:
                continue
            cell = [q for q in pool if _matches(q, "difficulty", d) and _matches(q, "type", t)]
            taken = set()
            for topic, _ in topics:
                k = topic_quotas.get((topic, d, t), 0)
                if k:
                    picks = rng.sample([q for q in cell if q.topic == topic and q.id not in taken], k)
                    taken.update(q.id for q in picks)
                    selected.extend(picks)
            rest = quota - len(taken)
            if rest:
                selected.extend(rng.sample([q for q in cell if q.id not in taken], rest))

    if spec.shuffle_questions:
        rng.shuffle(selected)
    if spec.shuffle_answers:
        selected = [shuffle_options(q, rng) for q in selected]
    logger.debug(f"Selected {len(selected)} questions: {axis_counts(selected)}")
    return selected


def materialize_fixed(
    question_ids: Sequence[int],
    available: Dict[int, PoolQuestion],
    shuffle_questions: bool = False,
    shuffle_answers: bool = False,
    rng: Optional[random.Random] = None,
    overrides: Optional[Dict[int, Dict[str, Any]]] = None,
) -> List[PoolQuestion]:
    """
    Snapshot for an exam with a fixed question list, in listed order unless shuffled.
    ``overrides`` maps question id to the exam's ``points``/``weight`` for that entry.
    """
    rng = rng or random.Random()
    missing = [qid for qid in question_ids if qid not in available]
    if missing:
        raise SelectionError(f"question={missing[0]}", len(missing), f"Questions no longer available: {missing}")
    if not question_ids:
        raise SelectionError("total", 1, "Exam has no questions")
    overrides = overrides or {}
    selected = []
    for qid in question_ids:
        o = overrides.get(qid)
        selected.append(available[qid].with_scoring(o.get("points"), o.get("weight")) if o else available[qid])
    if shuffle_questions:
        rng.shuffle(selected)
    if shuffle_answers:
        selected = [shuffle_options(q, rng) for q in selected]
    return selected


def axis_counts(questions: Iterable[PoolQuestion]) -> Dict[str, Dict[str, int]]:
    questions = list(questions)
    return {axis: dict(Counter(getattr(q, axis) for q in questions)) for axis in AXES}


def preview_selection(spec: TemplateSpec, pool: Sequence[PoolQuestion], rng: Optional[random.Random] = None) -> Dict[str, Any]:
    """Dry-run draw for authors; raises the same errors a real start would."""
    selected = select_questions(spec, pool, rng)
    return {"number_of_questions": len(selected), "pool_size": len({q.id for q in pool}), "counts": axis_counts(selected)}
