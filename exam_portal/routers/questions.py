"""Question utilities shared by students and staff."""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from exam_portal.deps import require_login
from exam_portal.models import User
from exam_portal.services.sandbox import SandboxExecutor, get_sandbox
from exam_portal.utils import success_response

router = APIRouter(prefix="/questions", tags=["questions"])


class RunSQLIn(BaseModel):
    sql: str = Field(min_length=1)
    database_schema: Optional[str] = None


@router.post("/run-sql")
def run_sql(
    body: RunSQLIn,
    sandbox: SandboxExecutor = Depends(get_sandbox),
    current_user: User = Depends(require_login),
):
    """Try a query against a question's schema. Nothing it does is kept."""
    result = sandbox.run(body.database_schema, body.sql)
    data = {
        "rows": result.rows,
        "columns": result.columns,
        "row_count": len(result.rows),
        "execution_ms": result.execution_ms,
    }
    return success_response(data, "Query executed successfully")
