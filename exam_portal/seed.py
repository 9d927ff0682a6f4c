"""Demo data for local development (enabled with SEED_DEMO_DATA=true)."""

import logging
from datetime import timedelta
from decimal import Decimal

from sqlmodel import Session, select

from exam_portal.models import (
    Exam,
    ExamQuestion,
    MCQOption,
    Question,
    QuestionType,
    User,
    UserRole,
)
from exam_portal.timing import utcnow

logger = logging.getLogger(__name__)

CITY_SCHEMA = """
CREATE TABLE IF NOT EXISTS CITY (
    ID INT PRIMARY KEY,
    NAME VARCHAR(17),
    COUNTRYCODE VARCHAR(3),
    DISTRICT VARCHAR(20),
    POPULATION INT
);
DELETE FROM CITY;
INSERT INTO CITY VALUES (6, 'Rotterdam', 'NLD', 'Zuid-Holland', 593321);
INSERT INTO CITY VALUES (3878, 'Scottsdale', 'USA', 'Arizona', 202705);
INSERT INTO CITY VALUES (3965, 'Corona', 'USA', 'California', 124966);
INSERT INTO CITY VALUES (4054, 'Fairfield', 'USA', 'California', 92256);
"""

CITY_REFERENCE = "SELECT * FROM CITY WHERE COUNTRYCODE = 'USA' AND POPULATION > 100000;"


def seed_demo_data(session: Session) -> None:
    """Create demo users and one open exam. Does nothing if an admin already exists."""
    existing_admin = session.exec(select(User).where(User.role == UserRole.ADMIN.value)).first()
    if existing_admin:
        return

    admin = User(username="admin", email="admin@example.com", role=UserRole.ADMIN.value)
    invigilator = User(
        username="invigilator", email="invigilator@example.com", role=UserRole.INVIGILATOR.value
    )
    student = User(username="student", email="student@example.com", role=UserRole.STUDENT.value)
    session.add_all([admin, invigilator, student])
    session.commit()
    session.refresh(admin)

    mcq = Question(
        question_text="Which SQL clause filters rows after grouping?",
        question_type=QuestionType.MCQ.value,
        difficulty="easy",
        weightage=Decimal("2.00"),
        created_by=admin.id,
    )
    sql = Question(
        question_text=(
            "Query all columns for all American cities in the CITY table with populations "
            "larger than 100,000. The CountryCode for America is USA."
        ),
        question_type=QuestionType.SQL.value,
        difficulty="easy",
        weightage=Decimal("5.00"),
        database_schema=CITY_SCHEMA,
        reference_solution=CITY_REFERENCE,
        created_by=admin.id,
    )
    session.add_all([mcq, sql])
    session.commit()
    session.refresh(mcq)
    session.refresh(sql)

    for order, (text, correct) in enumerate(
        [("WHERE", False), ("HAVING", True), ("ORDER BY", False), ("LIMIT", False)], start=1
    ):
        session.add(
            MCQOption(question_id=mcq.id, option_text=text, is_correct=correct, display_order=order)
        )

    now = utcnow()
    exam = Exam(
        exam_title="SQL Fundamentals",
        description="Demo exam with one MCQ and one SQL question.",
        scheduled_start=now - timedelta(days=1),
        scheduled_end=now + timedelta(days=30),
        duration_minutes=30,
        passing_score=Decimal("50.00"),
        created_by=admin.id,
    )
    session.add(exam)
    session.commit()
    session.refresh(exam)

    session.add(ExamQuestion(exam_id=exam.id, question_id=mcq.id, question_order=1, weightage=mcq.weightage))
    session.add(ExamQuestion(exam_id=exam.id, question_id=sql.id, question_order=2, weightage=sql.weightage))
    session.commit()
    logger.info("Seeded demo users and exam %s", exam.id)
