"""Answer persistence for in-progress attempts.

One StudentAnswer row per (attempt, exam question); every save overwrites it.
Saving never touches results or correctness.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from exam_portal.errors import (
    AttemptClosed,
    DataIntegrityError,
    NotFound,
    QuestionNotInExam,
)
from exam_portal.models import AttemptStatus, Exam, ExamQuestion, MCQOption, StudentAnswer
from exam_portal.services.attempts import get_owned_attempt
from exam_portal.timing import ensure_not_expired, utcnow

logger = logging.getLogger(__name__)


def resolve_exam_question(
    session: Session,
    exam_id: int,
    exam_question_id: Optional[int] = None,
    question_id: Optional[int] = None,
) -> ExamQuestion:
    """Find the exam question an answer targets.

    ``exam_question_id`` is looked up first. Clients that only know the
    question id send ``question_id`` instead, which is resolved through the
    exam's mapping of that question.
    """
    if exam_question_id is not None:
        exam_question = session.exec(
            select(ExamQuestion).where(
                ExamQuestion.id == exam_question_id, ExamQuestion.exam_id == exam_id
            )
        ).first()
        if exam_question:
            return exam_question

    if question_id is None:
        raise QuestionNotInExam()

    matches = session.exec(
        select(ExamQuestion).where(
            ExamQuestion.exam_id == exam_id, ExamQuestion.question_id == question_id
        )
    ).all()
    if not matches:
        raise QuestionNotInExam()
    if len(matches) > 1:
        logger.error(
            "Question %s is mapped %d times in exam %s",
            question_id,
            len(matches),
            exam_id,
            extra={"exam_id": exam_id},
        )
        raise DataIntegrityError()
    return matches[0]


def _find_answer(session: Session, attempt_id: int, exam_question_id: int) -> Optional[StudentAnswer]:
    return session.exec(
        select(StudentAnswer).where(
            StudentAnswer.attempt_id == attempt_id,
            StudentAnswer.exam_question_id == exam_question_id,
        )
    ).first()


def save_answer(
    session: Session,
    attempt_id: int,
    student_id: int,
    exam_question_id: Optional[int] = None,
    question_id: Optional[int] = None,
    selected_option_id: Optional[int] = None,
    answer_text: Optional[str] = None,
    now: Optional[datetime] = None,
) -> StudentAnswer:
    """Upsert the student's answer for one question of an in-progress attempt.

    Raises:
        NotFound: attempt missing or not owned by the student, or the option
            does not belong to the question.
        AttemptClosed: the attempt is no longer in progress.
        TimeExpired: duration plus grace period has elapsed.
        QuestionNotInExam: the question is not part of the attempt's exam.
    """
    now = now or utcnow()
    attempt = get_owned_attempt(session, attempt_id, student_id)
    if attempt.status != AttemptStatus.IN_PROGRESS.value:
        raise AttemptClosed()

    exam = session.get(Exam, attempt.exam_id)
    ensure_not_expired(attempt.started_at, exam.duration_minutes, now)

    exam_question = resolve_exam_question(
        session, attempt.exam_id, exam_question_id, question_id
    )

    if selected_option_id is not None:
        option = session.get(MCQOption, selected_option_id)
        if option is None or option.question_id != exam_question.question_id:
            raise NotFound("Option not found for this question")

    # A concurrent save may insert the row between our read and our insert;
    # the unique constraint rejects ours and the second pass overwrites theirs.
    for retry in (False, True):
        answer = _find_answer(session, attempt.id, exam_question.id)
        if answer is None:
            answer = StudentAnswer(attempt_id=attempt.id, exam_question_id=exam_question.id)
        answer.selected_option_id = selected_option_id
        answer.answer_text = answer_text
        answer.answered_at = now
        session.add(answer)
        try:
            session.commit()
            break
        except IntegrityError:
            session.rollback()
            if retry:
                raise

    session.refresh(answer)
    return answer
