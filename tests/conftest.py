"""
Pytest fixtures for the change kernel test suite.

Provides:
- A session-scoped engine and schema (SQLite file by default)
- Per-test sessions isolated by an outer transaction
- Deterministic clock, settings and notification sinks
- Workflow fixtures and request factories

Environment Variables:
- DATABASE_URL: SQLAlchemy URL of the test database.  When unset, a SQLite
  file in the pytest temp directory is used.  Tests marked ``postgres``
  are skipped unless the URL points at PostgreSQL.
"""

import json
import logging
import os
from io import StringIO
from typing import Generator
from uuid import UUID, uuid4

import pytest
from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker

from change_config.loader import load_settings
from change_kernel.db.base import Base
from change_kernel.db.engine import (
    create_tables,
    drop_tables,
    init_engine_from_url,
    is_postgres,
)
from change_kernel.db.immutability import register_immutability_listeners
from change_kernel.domain.clock import DeterministicClock
from change_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from change_kernel.services.audit_trail import AuditTrail
from change_kernel.services.change_request_workflow import ChangeRequestWorkflow
from change_kernel.services.notification_outbox import NotificationOutbox
from change_kernel.services.sequence_service import SequenceService


# Test actor ID for all test operations
TEST_ACTOR_ID = uuid4()


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture change_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, workflow):
            workflow.create(...)
            logs = captured_logs()
            assert any(r["message"] == "change_request_create_completed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("change_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "postgres: mark test as requiring PostgreSQL"
    )
    config.addinivalue_line(
        "markers", "slow_locks: mark test as potentially waiting for DB locks"
    )


# =============================================================================
# Session-scoped DB infrastructure (create engine + tables ONCE per suite)
# =============================================================================


def _kill_orphaned_connections(database_url: str) -> None:
    """
    Terminate backends left behind by an aborted PostgreSQL test run.

    Orphaned connections holding row locks make later runs hang on the
    counter and request locks.
    """
    import psycopg2

    url = make_url(database_url)
    try:
        conn = psycopg2.connect(
            dbname="postgres",
            user=url.username,
            password=url.password,
            host=url.host or "localhost",
            port=url.port or 5432,
        )
    except psycopg2.Error as exc:
        print(f"\n[conftest] Could not clean orphaned connections: {exc}")
        return

    conn.autocommit = True
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT pg_terminate_backend(pid)
            FROM pg_stat_activity
            WHERE datname = %s
            AND pid <> pg_backend_pid()
            """,
            (url.database,),
        )
        terminated = cur.rowcount
    conn.close()
    if terminated > 0:
        print(f"\n[conftest] Killed {terminated} orphaned DB connection(s)")


@pytest.fixture(scope="session")
def database_url(tmp_path_factory) -> str:
    """DATABASE_URL, or a throwaway SQLite file."""
    url = os.environ.get("DATABASE_URL")
    if url:
        return url
    path = tmp_path_factory.mktemp("db") / "change_kernel_test.db"
    return f"sqlite:///{path}"


@pytest.fixture(scope="session")
def db_engine(database_url):
    """Single engine for the entire test session."""
    if make_url(database_url).get_backend_name() == "postgresql":
        _kill_orphaned_connections(database_url)
    eng = init_engine_from_url(
        database_url, echo=False,
        pool_size=30, max_overflow=20, pool_timeout=10,
    )
    yield eng
    eng.dispose()


@pytest.fixture(scope="session")
def db_tables(db_engine):
    """Create all tables once per session, drop once at end."""
    drop_tables(db_engine)
    create_tables(db_engine)
    register_immutability_listeners()
    yield
    drop_tables(db_engine)


def _truncate_all_tables(engine) -> None:
    """Remove committed rows left by tests that use real commits."""
    table_names = [t.name for t in reversed(Base.metadata.sorted_tables)]
    with engine.connect() as conn:
        if is_postgres(engine):
            conn.execute(text("TRUNCATE " + ", ".join(table_names) + " CASCADE"))
        else:
            for name in table_names:
                conn.execute(text(f"DELETE FROM {name}"))
        conn.commit()


# =============================================================================
# Per-test session with automatic rollback
# =============================================================================


@pytest.fixture(scope="function")
def session(db_tables, db_engine) -> Generator[Session, None, None]:
    """Provide a database session for testing.

    Uses the SQLAlchemy 2.0 ``join_transaction_mode`` pattern:
    - Opens a dedicated connection with an outer transaction
    - Creates a session that *joins* the outer transaction
    - Any ``session.commit()`` inside the test releases a savepoint and any
      ``session.rollback()`` rolls back to it; nothing reaches the database
    - At teardown the outer transaction is rolled back, undoing ALL data
      changes made during the test
    """
    conn = db_engine.connect()
    trans = conn.begin()
    sess = Session(bind=conn, join_transaction_mode="create_savepoint", expire_on_commit=False)
    yield sess
    try:
        sess.close()
    finally:
        try:
            trans.rollback()
        finally:
            conn.close()


# =============================================================================
# Concurrency testing fixtures (real commits + cleanup)
# =============================================================================


@pytest.fixture(scope="function")
def pg_session_factory(db_engine, db_tables) -> Generator[sessionmaker, None, None]:
    """Session factory with real commits, for tests that need row locks.

    Skips unless the test database is PostgreSQL; SQLite has no row locks.
    """
    if not is_postgres(db_engine):
        pytest.skip("requires PostgreSQL (set DATABASE_URL)")
    factory = sessionmaker(bind=db_engine, expire_on_commit=False)
    yield factory
    _truncate_all_tables(db_engine)


# =============================================================================
# Common values
# =============================================================================


@pytest.fixture
def test_actor_id() -> UUID:
    """Provide a consistent test actor ID."""
    return TEST_ACTOR_ID


@pytest.fixture
def scope_id() -> UUID:
    return uuid4()


@pytest.fixture
def approver_a() -> UUID:
    return uuid4()


@pytest.fixture
def approver_b() -> UUID:
    return uuid4()


@pytest.fixture
def approver_c() -> UUID:
    return uuid4()


# Clock / settings fixtures


@pytest.fixture
def deterministic_clock():
    """Provide a deterministic clock for testing."""
    return DeterministicClock()


@pytest.fixture
def settings():
    """Shipped defaults, ignoring the developer's environment."""
    return load_settings(environ={})


# =============================================================================
# Notification sinks
# =============================================================================


class RecordingSink:
    """Sink that keeps every notification it receives."""

    def __init__(self):
        self.sent: list[dict] = []

    def notify(self, user_id, title, message, category, related_id):
        self.sent.append({
            "user_id": user_id,
            "title": title,
            "message": message,
            "category": category,
            "related_id": related_id,
        })

    def to(self, user_id) -> list[dict]:
        return [n for n in self.sent if n["user_id"] == user_id]


class FailingSink:
    """Sink whose transport is down."""

    def __init__(self):
        self.calls = 0

    def notify(self, user_id, title, message, category, related_id):
        self.calls += 1
        raise ConnectionError("notification transport unavailable")


@pytest.fixture
def recording_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def failing_sink() -> FailingSink:
    return FailingSink()


# =============================================================================
# Service fixtures
# =============================================================================


@pytest.fixture
def sequence_service(session: Session) -> SequenceService:
    return SequenceService(session)


@pytest.fixture
def audit_trail(session: Session, deterministic_clock, sequence_service) -> AuditTrail:
    return AuditTrail(session, deterministic_clock, sequence_service)


@pytest.fixture
def outbox(session: Session, deterministic_clock, settings) -> NotificationOutbox:
    return NotificationOutbox(session, deterministic_clock, settings.notifications)


@pytest.fixture
def workflow(session, deterministic_clock, settings, recording_sink) -> ChangeRequestWorkflow:
    """Workflow committing each operation (into the test's savepoint)."""
    return ChangeRequestWorkflow(
        session,
        clock=deterministic_clock,
        settings=settings,
        sink=recording_sink,
    )


@pytest.fixture
def make_request(workflow, scope_id, test_actor_id):
    """Factory creating a draft change request through the workflow."""

    def _make(**overrides):
        data = {
            "scope_id": scope_id,
            "title": "Add fire-rated doors to level 2",
            "category": "addition",
            "priority": "high",
            "reason": "Fire marshal inspection finding",
        }
        data.update(overrides)
        return workflow.create(data, test_actor_id)

    return _make


@pytest.fixture
def submitted_request(make_request, workflow, approver_a, approver_b, test_actor_id):
    """A request with approvers A then B, submitted for approval."""
    request = make_request(
        baseline_value="100000",
        delta_value="15000",
        required_approvers=[approver_a, approver_b],
    )
    return workflow.submit(request.request_id, test_actor_id)
