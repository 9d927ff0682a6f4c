"""Staff routes for supervising attempts."""

from fastapi import APIRouter, Depends
from sqlmodel import Session

from exam_portal.database import get_session
from exam_portal.deps import require_role
from exam_portal.models import User, UserRole
from exam_portal.services import activity, attempts
from exam_portal.services.sandbox import SandboxExecutor, get_sandbox
from exam_portal.utils import success_response

router = APIRouter(prefix="/exams", tags=["invigilator"])

require_staff = require_role([UserRole.INVIGILATOR.value, UserRole.ADMIN.value])


@router.post("/attempts/{attempt_id}/allow-resume")
def allow_resume(
    attempt_id: int,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_staff),
):
    attempt = attempts.resume_attempt(session, attempt_id, current_user)
    return success_response(
        {"attempt_id": attempt.id, "status": attempt.status},
        "Student can now resume the exam",
    )


@router.get("/{exam_id}/attempts")
def exam_attempts(
    exam_id: int,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_staff),
):
    return success_response(attempts.list_exam_attempts(session, exam_id, current_user), "Attempts retrieved")


@router.get("/attempts/{attempt_id}/result")
def attempt_result(
    attempt_id: int,
    session: Session = Depends(get_session),
    sandbox: SandboxExecutor = Depends(get_sandbox),
    current_user: User = Depends(require_staff),
):
    attempt, result = attempts.get_result(session, attempt_id, current_user)
    return success_response(
        attempts.build_result_payload(session, attempt, result, sandbox), "Result retrieved"
    )


@router.get("/attempts/{attempt_id}/activity")
def attempt_activity(
    attempt_id: int,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_staff),
):
    return success_response(activity.list_activity(session, attempt_id, current_user), "Activity retrieved")
