"""Student routes: taking an exam and reading results."""

from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi import status as http_status
from pydantic import BaseModel, Field
from sqlmodel import Session

from exam_portal.database import get_session
from exam_portal.deps import require_role
from exam_portal.models import User, UserRole
from exam_portal.services import activity, answer_store, attempts
from exam_portal.services.sandbox import SandboxExecutor, get_sandbox
from exam_portal.utils import client_ip, success_response

router = APIRouter(prefix="/student", tags=["student"])

require_student = require_role([UserRole.STUDENT.value])


class AnswerIn(BaseModel):
    exam_question_id: Optional[int] = None
    question_id: Optional[int] = None
    selected_option_id: Optional[int] = None
    answer_text: Optional[str] = None


class SubmitIn(BaseModel):
    status: Optional[Literal["disqualified"]] = None


class ActivityIn(BaseModel):
    activity_type: str = Field(min_length=1, max_length=50)
    severity: Literal["low", "medium", "high"] = "low"
    metadata: Optional[Dict[str, Any]] = None


@router.get("/exams")
def available_exams(
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    session: Session = Depends(get_session),
    current_user: User = Depends(require_student),
):
    data = attempts.list_available_exams(session, current_user.id, search, page, limit)
    return success_response(data, "Exams retrieved")


@router.post("/exams/{exam_id}/start")
def start_exam(
    exam_id: int,
    request: Request,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_student),
):
    attempt, exam, resumed = attempts.start_attempt(
        session,
        exam_id,
        current_user.id,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    data = {
        "attempt_id": attempt.id,
        "started_at": attempt.started_at,
        "duration_minutes": exam.duration_minutes,
        "resumed": resumed,
    }
    return success_response(data, "Resuming existing attempt" if resumed else "Exam started")


@router.get("/attempts/{attempt_id}/questions")
def attempt_questions(
    attempt_id: int,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_student),
):
    data = attempts.get_attempt_questions(session, attempt_id, current_user.id)
    return success_response(data, "Questions retrieved")


@router.post("/attempts/{attempt_id}/answer", status_code=http_status.HTTP_204_NO_CONTENT)
def save_answer(
    attempt_id: int,
    body: AnswerIn,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_student),
):
    answer_store.save_answer(
        session,
        attempt_id,
        current_user.id,
        exam_question_id=body.exam_question_id,
        question_id=body.question_id,
        selected_option_id=body.selected_option_id,
        answer_text=body.answer_text,
    )
    return Response(status_code=http_status.HTTP_204_NO_CONTENT)


@router.post("/attempts/{attempt_id}/submit")
def submit_attempt(
    attempt_id: int,
    body: Optional[SubmitIn] = None,
    session: Session = Depends(get_session),
    sandbox: SandboxExecutor = Depends(get_sandbox),
    current_user: User = Depends(require_student),
):
    attempt, result = attempts.finalize_attempt(
        session,
        attempt_id,
        current_user.id,
        sandbox,
        requested_status=body.status if body else None,
    )
    data = attempts.build_result_payload(session, attempt, result, sandbox)
    return success_response(data, "Exam submitted")


@router.get("/attempts/{attempt_id}/result")
def attempt_result(
    attempt_id: int,
    session: Session = Depends(get_session),
    sandbox: SandboxExecutor = Depends(get_sandbox),
    current_user: User = Depends(require_student),
):
    attempt, result = attempts.get_result(session, attempt_id, current_user)
    data = attempts.build_result_payload(session, attempt, result, sandbox)
    return success_response(data, "Result retrieved")


@router.get("/results")
def my_results(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    session: Session = Depends(get_session),
    current_user: User = Depends(require_student),
):
    data = attempts.list_my_results(session, current_user.id, page, limit)
    return success_response(data, "Results retrieved")


@router.post("/attempts/{attempt_id}/activity", status_code=http_status.HTTP_201_CREATED)
def report_activity(
    attempt_id: int,
    body: ActivityIn,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_student),
):
    entry = activity.log_activity(
        session,
        attempt_id,
        current_user.id,
        body.activity_type,
        body.severity,
        body.metadata,
    )
    return success_response({"id": entry.id, "timestamp": entry.timestamp}, "Activity recorded")
