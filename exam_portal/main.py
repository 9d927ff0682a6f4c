"""FastAPI entrypoint for the exam portal."""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlmodel import Session
from starlette.middleware.sessions import SessionMiddleware

from exam_portal.config import settings
from exam_portal.database import create_db_and_tables, engine
from exam_portal.errors import PortalError
from exam_portal.logging_config import setup_logging
from exam_portal.routers import invigilator as invigilator_router_module
from exam_portal.routers import questions as questions_router_module
from exam_portal.routers import student as student_router_module
from exam_portal.seed import seed_demo_data
from exam_portal.utils import error_body

logger = logging.getLogger(__name__)

app = FastAPI(title="Online Exam Portal")


@app.exception_handler(PortalError)
async def portal_error_handler(request: Request, exc: PortalError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message, extra={"error_code": exc.code})
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.code, exc.message))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=error_body("internal_error", "Something went wrong; please retry"),
    )


# Identity is written to the session by the external login service
app.add_middleware(SessionMiddleware, secret_key=settings.SESSION_SECRET_KEY)

app.include_router(student_router_module.router)
app.include_router(questions_router_module.router)
app.include_router(invigilator_router_module.router)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.on_event("startup")
def on_startup():
    """Configure logging, create the schema and optionally seed demo data."""
    setup_logging()
    create_db_and_tables()
    if settings.SEED_DEMO_DATA:
        with Session(engine) as session:
            seed_demo_data(session)
