"""
Pytest fixtures for the recurring processor test suite.

Provides:
- A temp-file SQLite database per test, initialized through
  ledger_kernel.db.engine (foreign keys on, tables created)
- A DeterministicClock
- Template seeding / read-back helpers that open and close their own sessions
- Captured structured logs
"""

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from io import StringIO
from uuid import UUID, uuid4

import pytest
from sqlalchemy import select

import ledger_recurring.models  # noqa: F401  (registers tables on Base.metadata)
from ledger_kernel.db.engine import (
    create_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from ledger_kernel.domain.clock import DeterministicClock
from ledger_kernel.logging_config import LogContext, StructuredFormatter
from ledger_recurring.models.recurring import LedgerEntryModel, RecurringTemplateModel

UTC = timezone.utc

TEST_OWNER_ID = "user_2fGymOwner"


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=UTC)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture ledger_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, runner):
            runner.run_pass()
            logs = captured_logs()
            assert any(r["message"] == "recurring_pass_completed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("ledger_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'ledger.db'}"


@pytest.fixture
def session_factory(database_url):
    """Session factory bound to a fresh temp-file SQLite database."""
    init_engine_from_url(database_url)
    create_tables()
    try:
        yield get_session_factory()
    finally:
        reset_engine()


@pytest.fixture
def clock():
    return DeterministicClock(fixed_time=utc(2025, 1, 2, 0, 0, 0))


@pytest.fixture
def make_template(session_factory):
    """Insert a template row directly (no validation) and return its id."""

    def _make(
        next_run_at: datetime,
        *,
        frequency: str = "MONTHLY",
        interval: int = 1,
        amount: Decimal = Decimal("-50.00"),
        owner_id: str = TEST_OWNER_ID,
        note: str | None = "Gym",
        category_id: str | None = "cat-fitness",
        is_active: bool = True,
        start_at: datetime | None = None,
        template_id: UUID | None = None,
    ) -> UUID:
        template_id = template_id or uuid4()
        with session_factory() as session:
            session.add(
                RecurringTemplateModel(
                    id=template_id,
                    owner_id=owner_id,
                    note=note,
                    amount=amount,
                    category_id=category_id,
                    frequency=frequency,
                    interval=interval,
                    start_at=start_at or next_run_at,
                    next_run_at=next_run_at,
                    last_run_at=None,
                    is_active=is_active,
                    created_at=utc(2024, 12, 1),
                    updated_at=utc(2024, 12, 1),
                )
            )
            session.commit()
        return template_id

    return _make


@pytest.fixture
def fetch_template(session_factory):
    """Read a template row back (detached, attributes loaded)."""

    def _fetch(template_id: UUID) -> RecurringTemplateModel | None:
        with session_factory() as session:
            return session.get(RecurringTemplateModel, template_id)

    return _fetch


@pytest.fixture
def fetch_entries(session_factory):
    """All ledger entries, optionally for one template, oldest occurrence first."""

    def _fetch(template_id: UUID | None = None) -> list[LedgerEntryModel]:
        stmt = select(LedgerEntryModel).order_by(
            LedgerEntryModel.entry_date, LedgerEntryModel.id,
        )
        if template_id is not None:
            stmt = stmt.where(LedgerEntryModel.originating_template_id == template_id)
        with session_factory() as session:
            return list(session.execute(stmt).scalars().all())

    return _fetch


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow_locks: mark test as potentially waiting for DB locks"
    )
