"""Suspicious-activity reports sent by the exam client.

Recording an event never changes the attempt; disqualification goes through
finalize with the ``disqualified`` status.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlmodel import Session, select

from exam_portal.errors import AttemptClosed
from exam_portal.models import AttemptStatus, ExamActivityLog, User
from exam_portal.services.attempts import get_owned_attempt, get_supervised_attempt
from exam_portal.timing import utcnow

logger = logging.getLogger(__name__)

SEVERITIES = ("low", "medium", "high")


def log_activity(
    session: Session,
    attempt_id: int,
    student_id: int,
    activity_type: str,
    severity: str = "low",
    metadata: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> ExamActivityLog:
    attempt = get_owned_attempt(session, attempt_id, student_id)
    if attempt.status != AttemptStatus.IN_PROGRESS.value:
        raise AttemptClosed()

    entry = ExamActivityLog(
        attempt_id=attempt.id,
        activity_type=activity_type,
        severity=severity,
        activity_metadata=json.dumps(metadata) if metadata else None,
        timestamp=now or utcnow(),
    )
    session.add(entry)
    session.commit()
    session.refresh(entry)

    if severity == "high":
        logger.warning(
            "High severity activity %s on attempt %s",
            activity_type,
            attempt.id,
            extra={"attempt_id": attempt.id, "student_id": student_id},
        )
    return entry


def list_activity(session: Session, attempt_id: int, user: User) -> List[dict]:
    """All reported events of an attempt, oldest first (staff view)."""
    get_supervised_attempt(session, attempt_id, user)

    entries = session.exec(
        select(ExamActivityLog)
        .where(ExamActivityLog.attempt_id == attempt_id)
        .order_by(ExamActivityLog.timestamp, ExamActivityLog.id)
    ).all()
    return [
        {
            "id": e.id,
            "activity_type": e.activity_type,
            "severity": e.severity,
            "metadata": json.loads(e.activity_metadata) if e.activity_metadata else None,
            "timestamp": e.timestamp,
        }
        for e in entries
    ]
