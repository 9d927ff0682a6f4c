"""SQLModel models for the exam portal."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from exam_portal.timing import utcnow


class UserRole(str, Enum):
    STUDENT = "student"
    INVIGILATOR = "invigilator"
    ADMIN = "admin"


class QuestionType(str, Enum):
    MCQ = "mcq"
    SQL = "sql"
    OUTPUT = "output"
    STATEMENT = "statement"
    CODING = "coding"


class AttemptStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    ABANDONED = "abandoned"
    TIMEOUT = "timeout"
    DISQUALIFIED = "disqualified"


class User(SQLModel, table=True):
    """Portal account. Credentials live with the external auth service."""

    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("username", name="uq_user_username"),
        UniqueConstraint("email", name="uq_user_email"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    username: str
    email: str
    role: str = Field(default=UserRole.STUDENT.value)  # student | invigilator | admin
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)


class Exam(SQLModel, table=True):
    __tablename__ = "exams"

    id: Optional[int] = Field(default=None, primary_key=True)
    exam_title: str
    description: Optional[str] = None
    scheduled_start: datetime
    scheduled_end: datetime
    duration_minutes: int
    # Passing percentage (0-100)
    passing_score: Decimal = Field(default=Decimal("50.00"), max_digits=5, decimal_places=2)
    created_by: Optional[int] = Field(default=None, foreign_key="users.id")
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Question(SQLModel, table=True):
    __tablename__ = "questions"

    id: Optional[int] = Field(default=None, primary_key=True)
    question_text: str
    image_url: Optional[str] = None
    question_type: str = Field(default=QuestionType.MCQ.value)
    difficulty: str = Field(default="medium")  # easy | medium | hard
    # Default points; exams may override per ExamQuestion
    weightage: Decimal = Field(default=Decimal("1.00"), max_digits=5, decimal_places=2)
    # SQL questions only: the setup script and the query whose rows are expected
    database_schema: Optional[str] = None
    reference_solution: Optional[str] = None
    created_by: Optional[int] = Field(default=None, foreign_key="users.id")
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)


class MCQOption(SQLModel, table=True):
    __tablename__ = "mcq_options"

    id: Optional[int] = Field(default=None, primary_key=True)
    question_id: int = Field(foreign_key="questions.id", index=True)
    option_text: str
    is_correct: bool = Field(default=False)
    display_order: int = Field(default=1)


class ExamQuestion(SQLModel, table=True):
    """Binds a question to an exam with its order and exam-specific weightage."""

    __tablename__ = "exam_questions"
    __table_args__ = (
        UniqueConstraint("exam_id", "question_id", name="uq_exam_question"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    exam_id: int = Field(foreign_key="exams.id", index=True)
    question_id: int = Field(foreign_key="questions.id", index=True)
    question_order: int = Field(default=1)
    weightage: Decimal = Field(max_digits=5, decimal_places=2)


class ExamAttempt(SQLModel, table=True):
    """One student's timed session against one exam."""

    __tablename__ = "exam_attempts"

    id: Optional[int] = Field(default=None, primary_key=True)
    exam_id: int = Field(foreign_key="exams.id", index=True)
    student_id: int = Field(foreign_key="users.id", index=True)
    started_at: datetime = Field(default_factory=utcnow)
    submitted_at: Optional[datetime] = None
    # in_progress | submitted | abandoned | timeout | disqualified
    status: str = Field(default=AttemptStatus.IN_PROGRESS.value, index=True)
    ip_address: Optional[str] = Field(default=None, max_length=45)
    user_agent: Optional[str] = Field(default=None, max_length=500)


class StudentAnswer(SQLModel, table=True):
    __tablename__ = "student_answers"
    __table_args__ = (
        UniqueConstraint("attempt_id", "exam_question_id", name="uq_attempt_exam_question"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    attempt_id: int = Field(foreign_key="exam_attempts.id", index=True)
    exam_question_id: int = Field(foreign_key="exam_questions.id", index=True)
    selected_option_id: Optional[int] = Field(default=None, foreign_key="mcq_options.id")
    # SQL query (or other free text) written by the student
    answer_text: Optional[str] = None
    answered_at: datetime = Field(default_factory=utcnow)


class ExamResult(SQLModel, table=True):
    """Score of a finalized attempt. Created once, never recomputed in place."""

    __tablename__ = "exam_results"
    __table_args__ = (UniqueConstraint("attempt_id", name="uq_result_attempt"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    attempt_id: int = Field(foreign_key="exam_attempts.id")
    total_score: Decimal = Field(max_digits=10, decimal_places=2)
    max_score: Decimal = Field(max_digits=10, decimal_places=2)
    percentage: Decimal = Field(max_digits=5, decimal_places=2)
    correct_answers: int = Field(default=0)
    total_questions: int = Field(default=0)
    is_passed: bool
    calculated_at: datetime = Field(default_factory=utcnow)


class ExamActivityLog(SQLModel, table=True):
    """Suspicious client-side activity reported during an attempt."""

    __tablename__ = "exam_activity_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    attempt_id: int = Field(foreign_key="exam_attempts.id", index=True)
    activity_type: str  # e.g. "tab_switch", "window_blur", "fullscreen_exit", "copy_attempt"
    severity: str = Field(default="low")  # low | medium | high
    activity_metadata: Optional[str] = None  # JSON string
    timestamp: datetime = Field(default_factory=utcnow)
