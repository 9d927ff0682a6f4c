"""Application settings loaded from the environment / .env file."""

from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

# Persistent tables of the portal itself; student queries may never touch them.
SYSTEM_TABLES = [
    "users",
    "exams",
    "questions",
    "mcq_options",
    "exam_questions",
    "exam_attempts",
    "student_answers",
    "exam_results",
    "exam_activity_logs",
    "sessions",
    "categories",
]


class Settings(BaseSettings):
    """Portal configuration. Every field can be overridden by an env var of the same name."""

    model_config = SettingsConfigDict(
        env_file=".env", env_ignore_case=True, extra="ignore"
    )

    DATABASE_URL: str = "sqlite:///./exam_portal.db"

    # Sandbox used for student SQL (test mode and grading)
    SANDBOX_DATABASE_URL: str = "sqlite://"
    SANDBOX_TIMEOUT_SECONDS: float = 5.0
    SANDBOX_FORBIDDEN_TABLES: List[str] = SYSTEM_TABLES

    # Tolerance after the exam duration before writes are rejected
    ANSWER_GRACE_SECONDS: int = 120

    SESSION_SECRET_KEY: str = "CHANGE_ME_TO_A_RANDOM_SECRET"

    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None

    SEED_DEMO_DATA: bool = False


settings = Settings()
