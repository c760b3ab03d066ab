import os
import tempfile

os.environ["DATABASE_URL"] = f"sqlite:///{tempfile.mkdtemp()}/bootstrap.db"
os.environ["ENABLE_MOCK_LOGIN"] = "true"
os.environ["ENVIRONMENT"] = "test"

import pytest
from datetime import datetime
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from exam_engine.core.auth import create_token
from exam_engine.core.database import get_db
from exam_engine.main import app
from exam_engine.models.orm import Base, Question, QuestionOption, Exam, ExamTemplate, Enrollment

T0 = datetime(2026, 3, 2, 9, 0, 0)


@pytest.fixture
def engine(tmp_path):
    eng = create_engine(f"sqlite:///{tmp_path / 'exam.db'}", connect_args={"check_same_thread": False, "timeout": 30})
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False)


@pytest.fixture
def db(session_factory):
    s = session_factory()
    yield s
    s.close()


@pytest.fixture
def client(session_factory):
    def override():
        s = session_factory()
        try:
            yield s
        finally:
            s.close()
    app.dependency_overrides[get_db] = override
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth(user_id, *roles):
    return {"Authorization": f"Bearer {create_token(user_id, list(roles))}"}


class Factory:
    def __init__(self, db):
        self.db = db

    def question(self, type="single_choice", difficulty="easy", topic=None, points=1, correct=("A",),
                 options=("A", "B", "C"), expected=("Paris",), course="C1", **kw):
        q = Question(
            course_id=course, type=type, difficulty=difficulty, topic=topic, text=f"{type} / {difficulty}",
            points=points, expected_answers=list(expected) if type == "short_answer" else [], created_by="author", **kw,
        )
        self.db.add(q); self.db.flush()
        if type != "short_answer":
            for i, key in enumerate(options):
                self.db.add(QuestionOption(question_id=q.id, option_key=key, text=f"Option {key}", is_correct=key in correct, position=i))
        self.db.commit()
        return q

    def template(self, n, difficulty=(), types=(), topics=(), course="C1", **kw):
        t = ExamTemplate(
            course_id=course, title="Template", number_of_questions=n,
            difficulty_distribution=[{"level": k, "ratio": r} for k, r in difficulty],
            type_distribution=[{"type": k, "ratio": r} for k, r in types],
            topic_distribution=[{"topic": k, "ratio": r} for k, r in topics],
            created_by="instructor", **kw,
        )
        self.db.add(t); self.db.commit()
        return t

    def exam(self, questions=(), template=None, course="C1", status="published", **kw):
        e = Exam(
            course_id=course, title="Exam", status=status, template_id=template.id if template else None,
            question_ids=[q.id for q in questions], created_by="instructor", **kw,
        )
        self.db.add(e); self.db.commit()
        return e

    def enroll(self, student_id, course="C1"):
        self.db.add(Enrollment(student_id=student_id, course_id=course)); self.db.commit()


@pytest.fixture
def factory(db):
    return Factory(db)
