from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Dict, List

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from exam_portal.config import SYSTEM_TABLES
from exam_portal.models import (
    Exam,
    ExamQuestion,
    MCQOption,
    Question,
    QuestionType,
    User,
    UserRole,
)
from exam_portal.services.sandbox import SandboxExecutor, create_sandbox_engine
from exam_portal.timing import utcnow

# ============================================================================
# IN-MEMORY DATABASE FOR TESTING
# ============================================================================

# StaticPool keeps every session on the same in-memory database
test_engine = create_engine(
    "sqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


@pytest.fixture(scope="session", autouse=True)
def setup_test_db():
    """Create all tables in the test database once per session."""
    SQLModel.metadata.create_all(test_engine)
    yield
    SQLModel.metadata.drop_all(test_engine)


@pytest.fixture(autouse=True)
def cleanup_db_between_tests():
    """Clean up test data after each test."""
    yield
    with Session(test_engine) as session:
        for table in reversed(SQLModel.metadata.sorted_tables):
            session.exec(table.delete())
        session.commit()


@pytest.fixture
def session():
    """Provide a database session for tests."""
    with Session(test_engine) as session:
        yield session


@pytest.fixture
def sandbox():
    return SandboxExecutor(
        create_sandbox_engine("sqlite://"),
        timeout_seconds=5.0,
        forbidden_tables=SYSTEM_TABLES,
    )


# ============================================================================
# FASTAPI APP & TEST CLIENT
# ============================================================================

from exam_portal.database import get_session
from exam_portal.deps import get_current_user
from exam_portal.main import app
from exam_portal.services.sandbox import get_sandbox


@pytest.fixture
def client(sandbox):
    def override_get_session():
        with Session(test_engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_sandbox] = lambda: sandbox
    # Not used as a context manager: startup hooks would touch the real database
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def login():
    """Act as the given user for subsequent requests (None logs out)."""

    def _login(user):
        app.dependency_overrides[get_current_user] = lambda: user

    return _login


# ============================================================================
# ENTITY FIXTURES
# ============================================================================


def _save(session: Session, obj):
    session.add(obj)
    session.commit()
    session.refresh(obj)
    return obj


@pytest.fixture
def student(session):
    return _save(session, User(username="alice", email="alice@example.com", role=UserRole.STUDENT.value))


@pytest.fixture
def other_student(session):
    return _save(session, User(username="bob", email="bob@example.com", role=UserRole.STUDENT.value))


@pytest.fixture
def invigilator(session):
    return _save(
        session,
        User(username="ivy", email="ivy@example.com", role=UserRole.INVIGILATOR.value),
    )


@pytest.fixture
def other_invigilator(session):
    return _save(
        session,
        User(username="oscar", email="oscar@example.com", role=UserRole.INVIGILATOR.value),
    )


@pytest.fixture
def admin(session):
    return _save(session, User(username="root", email="root@example.com", role=UserRole.ADMIN.value))


@dataclass
class ExamSetup:
    exam: Exam
    exam_questions: List[ExamQuestion]
    questions: List[Question]
    correct_options: Dict[int, MCQOption]
    wrong_options: Dict[int, MCQOption]


def add_mcq(session: Session, text: str, weightage: str = "1.00"):
    question = _save(
        session,
        Question(question_text=text, question_type=QuestionType.MCQ.value, weightage=Decimal(weightage)),
    )
    correct = _save(session, MCQOption(question_id=question.id, option_text="right", is_correct=True, display_order=1))
    wrong = _save(session, MCQOption(question_id=question.id, option_text="wrong", is_correct=False, display_order=2))
    return question, correct, wrong


def add_sql_question(session: Session, schema: str, reference: str, weightage: str = "1.00"):
    return _save(
        session,
        Question(
            question_text="Write the query",
            question_type=QuestionType.SQL.value,
            weightage=Decimal(weightage),
            database_schema=schema,
            reference_solution=reference,
        ),
    )


def add_exam(session: Session, title: str = "Databases", duration_minutes: int = 30, **kwargs) -> Exam:
    now = utcnow()
    fields = dict(
        exam_title=title,
        scheduled_start=now - timedelta(hours=1),
        scheduled_end=now + timedelta(hours=1),
        duration_minutes=duration_minutes,
        passing_score=Decimal("50.00"),
    )
    fields.update(kwargs)
    return _save(session, Exam(**fields))


def link(session: Session, exam: Exam, question: Question, order: int, weightage: str) -> ExamQuestion:
    return _save(
        session,
        ExamQuestion(exam_id=exam.id, question_id=question.id, question_order=order, weightage=Decimal(weightage)),
    )


@pytest.fixture
def mcq_exam(session, invigilator) -> ExamSetup:
    """30 minute exam created by the invigilator, with two MCQ questions worth 2 and 3 points."""
    exam = add_exam(session, created_by=invigilator.id)
    q1, c1, w1 = add_mcq(session, "First question", "2.00")
    q2, c2, w2 = add_mcq(session, "Second question", "3.00")
    eq1 = link(session, exam, q1, 1, "2.00")
    eq2 = link(session, exam, q2, 2, "3.00")
    return ExamSetup(
        exam=exam,
        exam_questions=[eq1, eq2],
        questions=[q1, q2],
        correct_options={q1.id: c1, q2.id: c2},
        wrong_options={q1.id: w1, q2.id: w2},
    )
