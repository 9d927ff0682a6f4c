"""Database configuration and session dependency."""

from typing import Iterator

from sqlmodel import Session, SQLModel, create_engine

from exam_portal.config import settings


def _connect_args(url: str) -> dict:
    # SQLite connections are shared across the threadpool FastAPI runs sync routes on
    return {"check_same_thread": False} if url.startswith("sqlite") else {}


# echo=False to avoid noisy logs; toggle for debugging
engine = create_engine(
    settings.DATABASE_URL, echo=False, connect_args=_connect_args(settings.DATABASE_URL)
)


def create_db_and_tables() -> None:
    """Create database tables based on SQLModel metadata."""
    import exam_portal.models  # noqa: F401

    SQLModel.metadata.create_all(engine)


def get_session() -> Iterator[Session]:
    """FastAPI dependency that yields a database session (the request's unit of work)."""
    with Session(engine) as session:
        yield session
