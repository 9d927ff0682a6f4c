"""Sandboxed execution of a single read-only SQL query.

Every call gets its own connection and transaction on the sandbox engine.
Tables declared by the setup script are rewritten to temporary tables, the
query runs, and the transaction is rolled back and the connection closed no
matter what happened. Nothing survives a call, and two concurrent calls
never see each other's tables.

Used for the students' "run SQL" test action and for grading SQL answers.
"""

import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.pool import NullPool

from exam_portal.config import settings
from exam_portal.errors import (
    DangerousStatement,
    ForbiddenTable,
    SandboxExecutionError,
    SandboxTimeout,
)

logger = logging.getLogger(__name__)

DANGEROUS_KEYWORDS = (
    "DROP",
    "TRUNCATE",
    "ALTER",
    "DELETE",
    "UPDATE",
    "INSERT",
    "CREATE",
    "GRANT",
    "REVOKE",
    "REPLACE",
    "RENAME",
)
_DANGEROUS_RE = re.compile(r"\b(" + "|".join(DANGEROUS_KEYWORDS) + r")\b", re.IGNORECASE)

# A schema qualifier such as main. is dropped; temporary tables have their own schema
_CREATE_TABLE_RE = re.compile(
    r"^CREATE\s+(?:TEMPORARY\s+|TEMP\s+)?TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?(?:[`\"]?\w+[`\"]?\.)?([`\"]?)(\w+)\1",
    re.IGNORECASE,
)

# Drops only a temporary table of that name, never a persistent one
_DROP_TEMP_TABLE = {
    "sqlite": "DROP TABLE IF EXISTS temp.{name}",
    "postgresql": "DROP TABLE IF EXISTS pg_temp.{name}",
    "mysql": "DROP TEMPORARY TABLE IF EXISTS {name}",
    "mariadb": "DROP TEMPORARY TABLE IF EXISTS {name}",
}

_QUOTES = "'\"`"


# --- Text helpers -----------------------------------------------------------


def _skip_quoted(sql: str, start: int) -> int:
    """Return the index just past the quoted literal/identifier opening at ``start``."""
    quote = sql[start]
    i = start + 1
    while i < len(sql):
        if sql[i] == quote:
            # A doubled quote is an escaped quote inside the literal
            if i + 1 < len(sql) and sql[i + 1] == quote:
                i += 2
                continue
            return i + 1
        i += 1
    return len(sql)


def _unquoted_chars(sql: str) -> Iterator[Tuple[int, str]]:
    i = 0
    while i < len(sql):
        if sql[i] in _QUOTES:
            i = _skip_quoted(sql, i)
            continue
        yield i, sql[i]
        i += 1


def strip_comments(sql: str) -> str:
    """Remove ``--`` line comments and ``/* */`` block comments outside of quotes."""
    out: List[str] = []
    i = 0
    n = len(sql)
    while i < n:
        ch = sql[i]
        if ch in _QUOTES:
            end = _skip_quoted(sql, i)
            out.append(sql[i:end])
            i = end
        elif sql.startswith("--", i):
            end = sql.find("\n", i)
            i = n if end == -1 else end
        elif sql.startswith("/*", i):
            end = sql.find("*/", i + 2)
            i = n if end == -1 else end + 2
            out.append(" ")
        else:
            out.append(ch)
            i += 1
    return "".join(out)


def split_statements(sql: str) -> List[str]:
    """Split a script on ``;`` terminators that are not inside quotes. Blank statements are dropped."""
    statements = []
    start = 0
    for i, ch in _unquoted_chars(sql):
        if ch == ";":
            statements.append(sql[start:i])
            start = i + 1
    statements.append(sql[start:])
    return [s.strip() for s in statements if s.strip()]


def rewrite_setup_script(script: str, dialect_name: str = "sqlite") -> List[str]:
    """Turn a schema setup script into statements that only create temporary tables.

    Each ``CREATE TABLE`` becomes ``CREATE TEMPORARY TABLE`` and is preceded
    by a drop of any temporary table with the same name, so a retry inside
    the same session starts clean. Other statements pass through unchanged,
    in their original order.
    """
    drop_template = _DROP_TEMP_TABLE.get(dialect_name, "DROP TABLE IF EXISTS {name}")
    statements: List[str] = []
    for statement in split_statements(strip_comments(script or "")):
        match = _CREATE_TABLE_RE.match(statement)
        if match:
            quote, table = match.group(1), match.group(2)
            name = f"{quote}{table}{quote}"
            statements.append(drop_template.format(name=name))
            statement = f"CREATE TEMPORARY TABLE {name}" + statement[match.end():]
        statements.append(statement)
    return statements


def validate_query(query: str, forbidden_tables: Sequence[str] = ()) -> str:
    """Reject anything but a single non-mutating statement. Returns the comment-free query."""
    clean = strip_comments(query or "").strip()

    # A single trailing terminator is allowed
    body = clean[:-1] if clean.endswith(";") else clean
    has_multiple_statements = any(ch == ";" for _, ch in _unquoted_chars(body))
    if has_multiple_statements or _DANGEROUS_RE.search(clean):
        raise DangerousStatement()

    if forbidden_tables:
        forbidden_re = re.compile(
            r"\b(" + "|".join(re.escape(t) for t in forbidden_tables) + r")\b",
            re.IGNORECASE,
        )
        if forbidden_re.search(clean):
            raise ForbiddenTable()

    return clean


def serialize_rows(rows: List[Dict[str, Any]]) -> str:
    """Canonical text form of a result set; order and column names are significant."""
    return json.dumps(rows, default=str)


# --- Executor ---------------------------------------------------------------


@dataclass
class SandboxResult:
    rows: List[Dict[str, Any]]
    columns: List[str] = field(default_factory=list)
    execution_ms: int = 0


def create_sandbox_engine(url: str) -> Engine:
    """Engine whose every checkout is a brand-new connection (no pooling)."""
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    engine = create_engine(url, poolclass=NullPool, connect_args=connect_args)

    if engine.dialect.name == "sqlite":
        # pysqlite would otherwise autocommit DDL; take over BEGIN so temp tables roll back
        @event.listens_for(engine, "connect")
        def _disable_driver_transactions(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _emit_begin(conn):
            conn.exec_driver_sql("BEGIN")

    return engine


class SandboxExecutor:
    """Runs one query against data built from a setup script, then discards everything."""

    def __init__(
        self,
        engine: Engine,
        timeout_seconds: float = 5.0,
        forbidden_tables: Sequence[str] = (),
    ):
        self.engine = engine
        self.timeout_seconds = timeout_seconds
        self.forbidden_tables = list(forbidden_tables)

    @classmethod
    def from_settings(cls) -> "SandboxExecutor":
        return cls(
            create_sandbox_engine(settings.SANDBOX_DATABASE_URL),
            timeout_seconds=settings.SANDBOX_TIMEOUT_SECONDS,
            forbidden_tables=settings.SANDBOX_FORBIDDEN_TABLES,
        )

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    def run(self, setup_script: Optional[str], query: str) -> SandboxResult:
        """Validate ``query``, build the scratch tables, run the query and roll everything back.

        Raises:
            DangerousStatement / ForbiddenTable: before anything is executed.
            SandboxTimeout: the scope ran longer than ``timeout_seconds``.
            SandboxExecutionError: the setup or the query failed in the database.
        """
        query = validate_query(query, self.forbidden_tables)
        setup_statements = rewrite_setup_script(setup_script or "", self.dialect_name)

        started = time.monotonic()
        deadline = started + self.timeout_seconds

        with self.engine.connect() as conn:
            transaction = conn.begin()
            try:
                self._apply_limits(conn, deadline)
                try:
                    for statement in setup_statements:
                        conn.exec_driver_sql(statement)
                except DBAPIError as exc:
                    self._raise_if_timed_out(deadline, exc)
                    logger.info("Sandbox schema setup failed: %s", _db_message(exc))
                    raise SandboxExecutionError(
                        f"Database schema setup failed: {_db_message(exc)}"
                    ) from exc

                try:
                    result = conn.exec_driver_sql(query)
                    columns = list(result.keys()) if result.returns_rows else []
                    rows = [dict(row) for row in result.mappings()] if result.returns_rows else []
                except DBAPIError as exc:
                    self._raise_if_timed_out(deadline, exc)
                    raise SandboxExecutionError(_db_message(exc)) from exc
            finally:
                self._clear_limits(conn)
                try:
                    transaction.rollback()
                except SQLAlchemyError:
                    # The connection is closed right after; nothing outlives it.
                    logger.warning("Sandbox rollback failed", exc_info=True)

        return SandboxResult(
            rows=rows,
            columns=columns,
            execution_ms=int((time.monotonic() - started) * 1000),
        )

    # -- per-dialect execution limits --

    def _apply_limits(self, conn: Connection, deadline: float) -> None:
        timeout_ms = int(self.timeout_seconds * 1000)
        if self.dialect_name == "sqlite":
            raw = conn.connection.dbapi_connection
            raw.set_progress_handler(lambda: 1 if time.monotonic() > deadline else 0, 1000)
        elif self.dialect_name == "postgresql":
            conn.exec_driver_sql(f"SET LOCAL statement_timeout = {timeout_ms}")
        elif self.dialect_name in ("mysql", "mariadb"):
            conn.exec_driver_sql(f"SET SESSION max_execution_time = {timeout_ms}")
            conn.exec_driver_sql(
                "SET SESSION sql_mode = (SELECT REPLACE(@@sql_mode, 'ONLY_FULL_GROUP_BY', ''))"
            )

    def _clear_limits(self, conn: Connection) -> None:
        if self.dialect_name == "sqlite":
            raw = conn.connection.dbapi_connection
            if raw is not None:
                raw.set_progress_handler(None, 0)

    def _raise_if_timed_out(self, deadline: float, exc: Exception) -> None:
        if time.monotonic() >= deadline:
            logger.info("Sandbox query timed out after %.1fs", self.timeout_seconds)
            raise SandboxTimeout() from exc


def _db_message(exc: DBAPIError) -> str:
    return str(exc.orig) if exc.orig is not None else str(exc)


sandbox = SandboxExecutor.from_settings()


def get_sandbox() -> SandboxExecutor:
    """FastAPI dependency returning the process-wide sandbox executor."""
    return sandbox
