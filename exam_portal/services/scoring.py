"""Automatic grading of finalized attempts.

Each question type has its own grader. Only ``mcq`` and ``sql`` answers are
graded automatically; the remaining types wait for manual marking and count
as incorrect here. The per-question breakdown is never stored: it is rebuilt
with the same graders whenever a result is read.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from exam_portal.errors import DuplicateResult, SandboxError
from exam_portal.models import (
    Exam,
    ExamAttempt,
    ExamQuestion,
    ExamResult,
    MCQOption,
    Question,
    QuestionType,
    StudentAnswer,
)
from exam_portal.services.sandbox import SandboxExecutor, serialize_rows
from exam_portal.timing import utcnow

logger = logging.getLogger(__name__)

NOT_ANSWERED = "Not Answered"
ZERO = Decimal("0")


@dataclass
class GradeOutcome:
    is_correct: bool
    display_answer: str


@dataclass
class GradedAnswer:
    answer: StudentAnswer
    exam_question: ExamQuestion
    question: Question
    outcome: GradeOutcome

    @property
    def score(self) -> Decimal:
        return self.exam_question.weightage if self.outcome.is_correct else ZERO


Grader = Callable[[Session, Question, StudentAnswer, SandboxExecutor], GradeOutcome]


def grade_mcq(session: Session, question: Question, answer: StudentAnswer, sandbox: SandboxExecutor) -> GradeOutcome:
    if answer.selected_option_id is None:
        return GradeOutcome(False, NOT_ANSWERED)
    option = session.get(MCQOption, answer.selected_option_id)
    if option is None or option.question_id != question.id:
        return GradeOutcome(False, NOT_ANSWERED)
    return GradeOutcome(bool(option.is_correct), option.option_text)


def sql_answer_matches(sandbox: SandboxExecutor, question: Question, answer_text: str) -> bool:
    """Run the student's query and the reference solution in separate sandboxes and compare rows.

    The comparison is order-sensitive and includes column names. Any sandbox
    failure on either side makes the answer incorrect.
    """
    if not question.reference_solution:
        logger.error("SQL question %s has no reference solution", question.id)
        return False

    try:
        student = sandbox.run(question.database_schema, answer_text)
    except SandboxError as exc:
        logger.info("Student SQL for question %s failed: %s", question.id, exc.message)
        return False

    try:
        reference = sandbox.run(question.database_schema, question.reference_solution)
    except SandboxError as exc:
        logger.error(
            "Reference solution of question %s failed: %s",
            question.id,
            exc.message,
            extra={"error_code": exc.code},
        )
        return False

    return serialize_rows(student.rows) == serialize_rows(reference.rows)


def grade_sql(session: Session, question: Question, answer: StudentAnswer, sandbox: SandboxExecutor) -> GradeOutcome:
    answer_text = (answer.answer_text or "").strip()
    if not answer_text:
        return GradeOutcome(False, NOT_ANSWERED)
    return GradeOutcome(sql_answer_matches(sandbox, question, answer_text), answer_text)


def grade_manual(session: Session, question: Question, answer: StudentAnswer, sandbox: SandboxExecutor) -> GradeOutcome:
    # Placeholder until manual marking exists
    return GradeOutcome(False, answer.answer_text or NOT_ANSWERED)


GRADERS: Dict[QuestionType, Grader] = {
    QuestionType.MCQ: grade_mcq,
    QuestionType.SQL: grade_sql,
    QuestionType.OUTPUT: grade_manual,
    QuestionType.STATEMENT: grade_manual,
    QuestionType.CODING: grade_manual,
}


def grade_answer(
    session: Session, question: Question, answer: StudentAnswer, sandbox: SandboxExecutor
) -> GradeOutcome:
    try:
        grader = GRADERS[QuestionType(question.question_type)]
    except ValueError:
        logger.warning("Unknown question type %r on question %s", question.question_type, question.id)
        grader = grade_manual
    return grader(session, question, answer, sandbox)


def grade_attempt(session: Session, attempt: ExamAttempt, sandbox: SandboxExecutor) -> List[GradedAnswer]:
    """Grade every stored answer of the attempt, in exam question order."""
    rows = session.exec(
        select(StudentAnswer, ExamQuestion, Question)
        .join(ExamQuestion, StudentAnswer.exam_question_id == ExamQuestion.id)
        .join(Question, ExamQuestion.question_id == Question.id)
        .where(
            StudentAnswer.attempt_id == attempt.id,
            ExamQuestion.exam_id == attempt.exam_id,
        )
        .order_by(ExamQuestion.question_order, ExamQuestion.id)
    ).all()

    return [
        GradedAnswer(answer, exam_question, question, grade_answer(session, question, answer, sandbox))
        for answer, exam_question, question in rows
    ]


def raw_percentage(total_score: Decimal, max_score: Decimal) -> Decimal:
    if not max_score:
        return ZERO
    return Decimal(total_score) / Decimal(max_score) * 100


def compute_percentage(total_score: Decimal, max_score: Decimal) -> Decimal:
    """Percentage as stored, rounded half up to two places."""
    return raw_percentage(total_score, max_score).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def score_attempt(
    session: Session,
    attempt: ExamAttempt,
    exam: Exam,
    sandbox: SandboxExecutor,
    now: Optional[datetime] = None,
) -> ExamResult:
    """Grade the attempt and add its ExamResult to the session.

    The caller owns the transaction: the result is flushed, not committed.

    Raises:
        DuplicateResult: the attempt already has a stored result.
    """
    exam_questions = session.exec(
        select(ExamQuestion).where(ExamQuestion.exam_id == exam.id)
    ).all()
    max_score = sum((Decimal(eq.weightage) for eq in exam_questions), ZERO)

    graded = grade_attempt(session, attempt, sandbox)
    total_score = sum((Decimal(g.score) for g in graded), ZERO)
    correct_answers = sum(1 for g in graded if g.outcome.is_correct)
    percentage = compute_percentage(total_score, max_score)
    # Pass/fail is decided on the unrounded value
    passed = raw_percentage(total_score, max_score) >= Decimal(exam.passing_score)

    result = ExamResult(
        attempt_id=attempt.id,
        total_score=total_score,
        max_score=max_score,
        percentage=percentage,
        correct_answers=correct_answers,
        total_questions=len(exam_questions),
        is_passed=passed,
        calculated_at=now or utcnow(),
    )
    session.add(result)
    try:
        session.flush()
    except IntegrityError as exc:
        raise DuplicateResult() from exc
    return result


def build_breakdown(session: Session, attempt: ExamAttempt, sandbox: SandboxExecutor) -> List[dict]:
    """Per-answer grading detail for display, recomputed from the stored answers."""
    return [
        {
            "question_id": g.question.id,
            "exam_question_id": g.exam_question.id,
            "question_order": g.exam_question.question_order,
            "question_text": g.question.question_text,
            "question_type": g.question.question_type,
            "selected_option": g.outcome.display_answer,
            "is_correct": g.outcome.is_correct,
            "weightage": float(g.exam_question.weightage),
            "score": float(g.score),
        }
        for g in grade_attempt(session, attempt, sandbox)
    ]
