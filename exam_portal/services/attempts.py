"""Attempt lifecycle: start, read questions, finalize, resume and result reads.

Status transitions are applied with conditional UPDATEs (``WHERE status =
<expected>``) so that of two racing finalize or resume calls exactly one
wins. Finalize commits the status change together with the ExamResult, so
an attempt is never left terminal without a result.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

from sqlalchemy import delete, func, update
from sqlmodel import Session, col, select

from exam_portal.errors import (
    AlreadyAttempted,
    AttemptClosed,
    DuplicateResult,
    Forbidden,
    InvalidState,
    NotFound,
    OutOfWindow,
)
from exam_portal.models import (
    AttemptStatus,
    Exam,
    ExamAttempt,
    ExamQuestion,
    ExamResult,
    MCQOption,
    Question,
    QuestionType,
    StudentAnswer,
    User,
    UserRole,
)
from exam_portal.services import scoring
from exam_portal.services.sandbox import SandboxExecutor
from exam_portal.timing import ensure_not_expired, is_expired, remaining_seconds, utcnow

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = {
    AttemptStatus.SUBMITTED,
    AttemptStatus.ABANDONED,
    AttemptStatus.TIMEOUT,
    AttemptStatus.DISQUALIFIED,
}

# Resume (disqualified -> in_progress) is the only way out of a terminal state
ALLOWED_TRANSITIONS: Dict[AttemptStatus, Set[AttemptStatus]] = {
    AttemptStatus.IN_PROGRESS: set(TERMINAL_STATUSES),
    AttemptStatus.DISQUALIFIED: {AttemptStatus.IN_PROGRESS},
}

FINISHED_STATUSES = [
    AttemptStatus.SUBMITTED.value,
    AttemptStatus.TIMEOUT.value,
    AttemptStatus.DISQUALIFIED.value,
]

STAFF_ROLES = {UserRole.INVIGILATOR.value, UserRole.ADMIN.value}


def can_transition(current: str, target: str) -> bool:
    return AttemptStatus(target) in ALLOWED_TRANSITIONS.get(AttemptStatus(current), set())


def _transition(session: Session, attempt_id: int, current: AttemptStatus, target: AttemptStatus, **values) -> bool:
    """Move the attempt from ``current`` to ``target`` if it is still in ``current``.

    Does not commit. Returns False when another caller got there first.
    """
    if not can_transition(current.value, target.value):
        raise InvalidState(f"Cannot move an attempt from {current.value} to {target.value}")
    claimed = session.exec(
        update(ExamAttempt)
        .where(ExamAttempt.id == attempt_id, ExamAttempt.status == current.value)
        .values(status=target.value, **values)
    )
    return claimed.rowcount == 1


# --- Lookups ----------------------------------------------------------------


def get_owned_attempt(session: Session, attempt_id: int, student_id: int) -> ExamAttempt:
    """Fetch an attempt of this student; someone else's attempt looks missing."""
    attempt = session.get(ExamAttempt, attempt_id)
    if not attempt or attempt.student_id != student_id:
        raise NotFound("Attempt not found")
    return attempt


def ensure_exam_staff(exam: Exam, user: User) -> None:
    """Only an admin or the exam's creator may supervise its attempts."""
    if user.role != UserRole.ADMIN.value and exam.created_by != user.id:
        raise Forbidden("Only the exam creator or an admin can manage this exam")


def get_supervised_attempt(session: Session, attempt_id: int, user: User) -> ExamAttempt:
    attempt = session.get(ExamAttempt, attempt_id)
    if not attempt:
        raise NotFound("Attempt not found")
    ensure_exam_staff(session.get(Exam, attempt.exam_id), user)
    return attempt


def get_attempt_result(session: Session, attempt_id: int) -> Optional[ExamResult]:
    return session.exec(
        select(ExamResult).where(ExamResult.attempt_id == attempt_id)
    ).first()


def _latest_attempt(session: Session, exam_id: int, student_id: int) -> Optional[ExamAttempt]:
    return session.exec(
        select(ExamAttempt)
        .where(ExamAttempt.exam_id == exam_id, ExamAttempt.student_id == student_id)
        .order_by(col(ExamAttempt.started_at).desc(), col(ExamAttempt.id).desc())
    ).first()


# --- Start ------------------------------------------------------------------


def start_attempt(
    session: Session,
    exam_id: int,
    student_id: int,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[ExamAttempt, Exam, bool]:
    """Create the student's attempt, or hand back the one already in progress.

    Returns ``(attempt, exam, resumed)``.
    """
    now = now or utcnow()
    exam = session.get(Exam, exam_id)
    if not exam or not exam.is_active:
        raise NotFound("Exam not found or inactive")

    if now < exam.scheduled_start:
        raise OutOfWindow("Exam has not started yet")
    if now > exam.scheduled_end:
        raise OutOfWindow("Exam has ended")

    existing = _latest_attempt(session, exam_id, student_id)
    if existing:
        if existing.status == AttemptStatus.IN_PROGRESS.value:
            logger.info(
                "Resuming attempt %s",
                existing.id,
                extra={"attempt_id": existing.id, "exam_id": exam_id, "student_id": student_id},
            )
            return existing, exam, True
        if existing.status == AttemptStatus.DISQUALIFIED.value:
            raise AttemptClosed("Attempt was disqualified; ask an invigilator to allow resume")
        raise AlreadyAttempted()

    attempt = ExamAttempt(
        exam_id=exam_id,
        student_id=student_id,
        started_at=now,
        status=AttemptStatus.IN_PROGRESS.value,
        ip_address=ip_address,
        user_agent=user_agent[:500] if user_agent else None,
    )
    session.add(attempt)
    session.commit()
    session.refresh(attempt)
    logger.info(
        "Attempt %s started",
        attempt.id,
        extra={"attempt_id": attempt.id, "exam_id": exam_id, "student_id": student_id},
    )
    return attempt, exam, False


# --- Questions --------------------------------------------------------------


def get_attempt_questions(
    session: Session, attempt_id: int, student_id: int, now: Optional[datetime] = None
) -> dict:
    """Questions of an in-progress attempt with the student's saved answers.

    Reference solutions and option correctness are never included.
    """
    now = now or utcnow()
    attempt = get_owned_attempt(session, attempt_id, student_id)
    if attempt.status != AttemptStatus.IN_PROGRESS.value:
        raise AttemptClosed()
    exam = session.get(Exam, attempt.exam_id)
    ensure_not_expired(attempt.started_at, exam.duration_minutes, now)

    rows = session.exec(
        select(ExamQuestion, Question)
        .join(Question, ExamQuestion.question_id == Question.id)
        .where(ExamQuestion.exam_id == exam.id)
        .order_by(ExamQuestion.question_order, ExamQuestion.id)
    ).all()

    answers = {
        a.exam_question_id: a
        for a in session.exec(
            select(StudentAnswer).where(StudentAnswer.attempt_id == attempt.id)
        ).all()
    }

    mcq_ids = [q.id for _, q in rows if q.question_type == QuestionType.MCQ.value]
    options: Dict[int, List[dict]] = {}
    if mcq_ids:
        for option in session.exec(
            select(MCQOption)
            .where(col(MCQOption.question_id).in_(mcq_ids))
            .order_by(MCQOption.display_order, MCQOption.id)
        ).all():
            options.setdefault(option.question_id, []).append(
                {
                    "id": option.id,
                    "option_text": option.option_text,
                    "display_order": option.display_order,
                }
            )

    questions = []
    for exam_question, question in rows:
        payload = {
            "question_text": question.question_text,
            "question_type": question.question_type,
            "image_url": question.image_url,
            "difficulty": question.difficulty,
        }
        if question.question_type == QuestionType.MCQ.value:
            payload["options"] = options.get(question.id, [])
        if question.question_type == QuestionType.SQL.value:
            payload["database_schema"] = question.database_schema

        answer = answers.get(exam_question.id)
        questions.append(
            {
                "exam_question_id": exam_question.id,
                "question_id": question.id,
                "question_order": exam_question.question_order,
                "weightage": float(exam_question.weightage),
                "question": payload,
                "existing_answer": {
                    "selected_option_id": answer.selected_option_id,
                    "answer_text": answer.answer_text,
                    "answered_at": answer.answered_at,
                }
                if answer
                else None,
            }
        )

    return {
        "attempt_id": attempt.id,
        "exam_id": exam.id,
        "exam_title": exam.exam_title,
        "duration_minutes": exam.duration_minutes,
        "started_at": attempt.started_at,
        "remaining_seconds": remaining_seconds(attempt.started_at, exam.duration_minutes, now),
        "questions": questions,
    }


# --- Finalize ---------------------------------------------------------------


def _finalize_reason(attempt: ExamAttempt, exam: Exam, requested_status: Optional[str], now: datetime) -> AttemptStatus:
    if requested_status == AttemptStatus.DISQUALIFIED.value:
        return AttemptStatus.DISQUALIFIED
    if is_expired(attempt.started_at, exam.duration_minutes, now):
        return AttemptStatus.TIMEOUT
    return AttemptStatus.SUBMITTED


def _existing_result_or_closed(session: Session, attempt_id: int) -> ExamResult:
    result = get_attempt_result(session, attempt_id)
    if result is None:
        raise AttemptClosed()
    logger.info("Attempt %s already finalized; returning stored result", attempt_id, extra={"attempt_id": attempt_id})
    return result


def finalize_attempt(
    session: Session,
    attempt_id: int,
    student_id: int,
    sandbox: SandboxExecutor,
    requested_status: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[ExamAttempt, ExamResult]:
    """Close the attempt and score it, once.

    A repeated or losing concurrent call gets the stored result back.
    Finalizing is allowed after the time limit; it then records ``timeout``.
    """
    now = now or utcnow()
    attempt = get_owned_attempt(session, attempt_id, student_id)
    exam = session.get(Exam, attempt.exam_id)

    if attempt.status != AttemptStatus.IN_PROGRESS.value:
        return attempt, _existing_result_or_closed(session, attempt.id)

    reason = _finalize_reason(attempt, exam, requested_status, now)
    try:
        if not _transition(session, attempt.id, AttemptStatus.IN_PROGRESS, reason, submitted_at=now):
            session.rollback()
            session.refresh(attempt)
            return attempt, _existing_result_or_closed(session, attempt.id)

        result = scoring.score_attempt(session, attempt, exam, sandbox, now)
        session.commit()
    except DuplicateResult:
        # Another finalize stored the result first
        session.rollback()
        session.refresh(attempt)
        return attempt, _existing_result_or_closed(session, attempt.id)
    except Exception:
        session.rollback()
        logger.exception("Finalize failed for attempt %s", attempt.id, extra={"attempt_id": attempt.id})
        raise

    session.refresh(attempt)
    session.refresh(result)
    logger.info(
        "Attempt %s finalized as %s: %s/%s (%s%%)",
        attempt.id,
        reason.value,
        result.total_score,
        result.max_score,
        result.percentage,
        extra={"attempt_id": attempt.id, "exam_id": exam.id, "status": reason.value},
    )
    return attempt, result


# --- Resume -----------------------------------------------------------------


def resume_attempt(session: Session, attempt_id: int, user: User) -> ExamAttempt:
    """Reopen a disqualified attempt and discard its result."""
    attempt = get_supervised_attempt(session, attempt_id, user)

    if not _transition(
        session, attempt.id, AttemptStatus.DISQUALIFIED, AttemptStatus.IN_PROGRESS, submitted_at=None
    ):
        session.rollback()
        raise InvalidState("Only disqualified attempts can be resumed")

    try:
        session.exec(delete(ExamResult).where(ExamResult.attempt_id == attempt.id))
        session.commit()
    except Exception:
        session.rollback()
        logger.exception("Resume failed for attempt %s", attempt.id, extra={"attempt_id": attempt.id})
        raise

    session.refresh(attempt)
    logger.info("Attempt %s resumed", attempt.id, extra={"attempt_id": attempt.id})
    return attempt


# --- Results ----------------------------------------------------------------


def result_summary(result: ExamResult) -> dict:
    return {
        "total_score": float(result.total_score),
        "max_score": float(result.max_score),
        "percentage": float(result.percentage),
        "correct_answers": result.correct_answers,
        "total_questions": result.total_questions,
        "is_passed": result.is_passed,
        "calculated_at": result.calculated_at,
    }


def build_result_payload(
    session: Session,
    attempt: ExamAttempt,
    result: ExamResult,
    sandbox: SandboxExecutor,
) -> dict:
    exam = session.get(Exam, attempt.exam_id)
    return {
        "attempt_id": attempt.id,
        "exam_id": exam.id,
        "exam_title": exam.exam_title,
        "status": attempt.status,
        "started_at": attempt.started_at,
        "submitted_at": attempt.submitted_at,
        "passing_score": float(exam.passing_score),
        **result_summary(result),
        "breakdown": scoring.build_breakdown(session, attempt, sandbox),
    }


def get_result(session: Session, attempt_id: int, user: User) -> Tuple[ExamAttempt, ExamResult]:
    """Result of a finalized attempt. Students only see their own; staff see their exams'."""
    if user.role in STAFF_ROLES:
        attempt = get_supervised_attempt(session, attempt_id, user)
    else:
        attempt = get_owned_attempt(session, attempt_id, user.id)

    if attempt.status == AttemptStatus.IN_PROGRESS.value:
        raise NotFound("Result not available until the attempt is finalized")
    result = get_attempt_result(session, attempt.id)
    if not result:
        raise NotFound("Result not found")
    return attempt, result


def _pagination(page: int, limit: int, total: int) -> dict:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": (total + limit - 1) // limit if limit else 0,
    }


def list_available_exams(
    session: Session,
    student_id: int,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
) -> dict:
    """Active exams with the student's latest attempt status on each."""
    conditions = [Exam.is_active == True]  # noqa: E712
    if search:
        conditions.append(col(Exam.exam_title).ilike(f"%{search}%"))

    total = session.exec(select(func.count()).select_from(Exam).where(*conditions)).one()
    exams = session.exec(
        select(Exam)
        .where(*conditions)
        .order_by(col(Exam.scheduled_start).desc(), col(Exam.id).desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).all()

    items = []
    for exam in exams:
        question_count = session.exec(
            select(func.count()).select_from(ExamQuestion).where(ExamQuestion.exam_id == exam.id)
        ).one()
        latest = _latest_attempt(session, exam.id, student_id)
        items.append(
            {
                "id": exam.id,
                "exam_title": exam.exam_title,
                "description": exam.description,
                "scheduled_start": exam.scheduled_start,
                "scheduled_end": exam.scheduled_end,
                "duration_minutes": exam.duration_minutes,
                "passing_score": float(exam.passing_score),
                "question_count": question_count,
                "attempt_status": latest.status if latest else None,
            }
        )

    return {"exams": items, "pagination": _pagination(page, limit, total)}


def list_my_results(session: Session, student_id: int, page: int = 1, limit: int = 10) -> dict:
    """The student's finished attempts with their results, newest first."""
    conditions = [
        ExamAttempt.student_id == student_id,
        col(ExamAttempt.status).in_(FINISHED_STATUSES),
    ]
    total = session.exec(select(func.count()).select_from(ExamAttempt).where(*conditions)).one()
    rows = session.exec(
        select(ExamAttempt, Exam, ExamResult)
        .join(Exam, ExamAttempt.exam_id == Exam.id)
        .join(ExamResult, ExamResult.attempt_id == ExamAttempt.id, isouter=True)
        .where(*conditions)
        .order_by(col(ExamAttempt.submitted_at).desc(), col(ExamAttempt.id).desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).all()

    results = [
        {
            "attempt_id": attempt.id,
            "exam_id": exam.id,
            "exam_title": exam.exam_title,
            "passing_score": float(exam.passing_score),
            "status": attempt.status,
            "started_at": attempt.started_at,
            "submitted_at": attempt.submitted_at,
            "result": result_summary(result) if result else None,
        }
        for attempt, exam, result in rows
    ]
    return {"results": results, "pagination": _pagination(page, limit, total)}


def list_exam_attempts(session: Session, exam_id: int, user: User) -> List[dict]:
    """Finished attempts of an exam for staff, best percentage first."""
    exam = session.get(Exam, exam_id)
    if not exam:
        raise NotFound("Exam not found")
    ensure_exam_staff(exam, user)

    rows = session.exec(
        select(ExamAttempt, User, ExamResult)
        .join(User, ExamAttempt.student_id == User.id)
        .join(ExamResult, ExamResult.attempt_id == ExamAttempt.id, isouter=True)
        .where(
            ExamAttempt.exam_id == exam_id,
            col(ExamAttempt.status).in_(FINISHED_STATUSES),
        )
    ).all()

    attempts = [
        {
            "attempt_id": attempt.id,
            "student_id": student.id,
            "username": student.username,
            "email": student.email,
            "status": attempt.status,
            "started_at": attempt.started_at,
            "submitted_at": attempt.submitted_at,
            "ip_address": attempt.ip_address,
            "result": result_summary(result) if result else None,
        }
        for attempt, student, result in rows
    ]
    attempts.sort(key=lambda a: a["result"]["percentage"] if a["result"] else -1.0, reverse=True)
    return attempts
