"""
Tests for ledger_recurring.services.runner -- RecurringJobRunner.

Validates one pass end to end against a temp-file SQLite store: entry
creation dated at the occurrence, schedule advance, idempotent re-runs,
per-template failure isolation, backlog policies, the pass deadline,
worker threads, and the structured log events a pass emits.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import create_engine, update
from sqlalchemy.orm import sessionmaker

from ledger_kernel.config import Settings
from ledger_kernel.exceptions import ConfigurationError, TransientStoreError

from ledger_recurring.domain.types import (
    BacklogPolicy,
    DueTemplate,
    ItemStatus,
    RunStatus,
)
from ledger_recurring.models.recurring import LedgerEntryModel, RecurringTemplateModel
from ledger_recurring.services.runner import RecurringJobRunner

UTC = timezone.utc


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=UTC)


@pytest.fixture
def runner(session_factory, clock):
    return RecurringJobRunner(session_factory, clock=clock)


@pytest.fixture
def catch_up_runner(session_factory, clock):
    return RecurringJobRunner(
        session_factory, clock=clock, policy=BacklogPolicy.CATCH_UP,
    )


# =============================================================================
# Construction
# =============================================================================


class TestConstruction:
    def test_defaults(self, session_factory):
        assert RecurringJobRunner(session_factory).policy is BacklogPolicy.SINGLE_STEP

    def test_policy_from_string(self, session_factory):
        runner = RecurringJobRunner(session_factory, policy="catch_up")
        assert runner.policy is BacklogPolicy.CATCH_UP

    def test_unknown_policy(self, session_factory):
        with pytest.raises(ConfigurationError) as exc_info:
            RecurringJobRunner(session_factory, policy="whenever")
        assert exc_info.value.keys == ("backlog_policy",)

    @pytest.mark.parametrize("kwargs", [{"max_workers": 0}, {"max_catch_up": 0}])
    def test_non_positive_limits(self, session_factory, kwargs):
        with pytest.raises(ConfigurationError):
            RecurringJobRunner(session_factory, **kwargs)

    def test_from_settings(self, session_factory, clock):
        settings = Settings(backlog_policy="catch_up", max_catch_up=3, max_workers=2)
        runner = RecurringJobRunner.from_settings(settings, session_factory, clock=clock)
        assert runner.policy is BacklogPolicy.CATCH_UP


# =============================================================================
# Single pass
# =============================================================================


class TestRunPass:
    def test_nothing_due(self, runner):
        summary = runner.run_pass()

        assert summary.status is RunStatus.NOTHING_DUE
        assert summary.total_selected == 0
        assert summary.outcomes == ()

    def test_monthly_gym_membership(
        self, runner, make_template, fetch_template, fetch_entries,
    ):
        tid = make_template(utc(2025, 1, 1), amount=Decimal("-50.00"), note="Gym")

        summary = runner.run_pass(now=utc(2025, 1, 2))

        assert summary.status is RunStatus.COMPLETED
        assert (summary.total_selected, summary.processed) == (1, 1)
        assert summary.errors == summary.skipped == summary.deferred == 0

        entries = fetch_entries(tid)
        assert len(entries) == 1
        entry = entries[0]
        assert entry.entry_date == utc(2025, 1, 1)
        assert entry.amount == Decimal("-50.00")
        assert entry.note == "Gym"
        assert entry.category_id == "cat-fitness"
        assert entry.owner_id == "user_2fGymOwner"
        assert entry.originating_template_id == tid

        template = fetch_template(tid)
        assert template.next_run_at == utc(2025, 2, 1)
        assert template.last_run_at == utc(2025, 1, 1)

        outcome = summary.outcomes[0]
        assert outcome.status is ItemStatus.OK
        assert outcome.entry_ids == (entry.id,)
        assert outcome.next_run_at == utc(2025, 2, 1)

    def test_rerun_is_idempotent(self, runner, make_template, fetch_entries):
        tid = make_template(utc(2025, 1, 1))

        runner.run_pass(now=utc(2025, 1, 2))
        second = runner.run_pass(now=utc(2025, 1, 2))

        assert second.status is RunStatus.NOTHING_DUE
        assert len(fetch_entries(tid)) == 1

    def test_entry_created_at_is_processing_time(
        self, runner, make_template, fetch_entries,
    ):
        tid = make_template(utc(2024, 12, 15))

        runner.run_pass()

        entry = fetch_entries(tid)[0]
        assert entry.entry_date == utc(2024, 12, 15)
        assert entry.created_at == utc(2025, 1, 2)

    def test_now_defaults_to_clock(self, runner, clock, make_template):
        make_template(utc(2025, 1, 3))
        assert runner.run_pass().total_selected == 0

        clock.set_time(utc(2025, 1, 3))
        summary = runner.run_pass()
        assert summary.as_of == utc(2025, 1, 3)
        assert summary.processed == 1

    def test_due_boundary_is_inclusive(self, runner, make_template):
        make_template(utc(2025, 1, 2, 0, 0, 0))
        assert runner.run_pass(now=utc(2025, 1, 2, 0, 0, 0)).processed == 1

    def test_naive_now_is_read_as_utc(self, runner, make_template, fetch_template):
        tid = make_template(utc(2025, 1, 1))

        summary = runner.run_pass(now=datetime(2025, 1, 2))

        assert summary.status is RunStatus.COMPLETED
        assert summary.as_of == utc(2025, 1, 2)
        assert summary.processed == 1
        assert fetch_template(tid).next_run_at == utc(2025, 2, 1)

    def test_offset_now_is_converted_to_utc(self, runner, make_template):
        make_template(utc(2025, 1, 1, 12))
        plus_two = timezone(timedelta(hours=2))

        summary = runner.run_pass(now=datetime(2025, 1, 1, 13, tzinfo=plus_two))

        assert summary.as_of == utc(2025, 1, 1, 11)
        assert summary.status is RunStatus.NOTHING_DUE

    def test_inactive_and_future_templates_not_selected(
        self, runner, make_template, fetch_entries,
    ):
        make_template(utc(2025, 1, 1), is_active=False)
        make_template(utc(2025, 1, 3))

        summary = runner.run_pass(now=utc(2025, 1, 2))

        assert summary.status is RunStatus.NOTHING_DUE
        assert fetch_entries() == []

    def test_yearly_leap_day(self, runner, make_template, fetch_template, fetch_entries):
        tid = make_template(utc(2024, 2, 29), frequency="YEARLY", amount=Decimal("-120"))

        runner.run_pass(now=utc(2025, 3, 1))

        assert [e.entry_date for e in fetch_entries(tid)] == [utc(2024, 2, 29)]
        assert fetch_template(tid).next_run_at == utc(2025, 2, 28)

    def test_weekly_interval(self, runner, make_template, fetch_template):
        tid = make_template(utc(2025, 1, 1, 9), frequency="weekly", interval=2)

        runner.run_pass(now=utc(2025, 1, 2))

        assert fetch_template(tid).next_run_at == utc(2025, 1, 15, 9)

    def test_each_entry_carries_its_owner(self, runner, make_template, fetch_entries):
        a = make_template(utc(2025, 1, 1), owner_id="user_a")
        b = make_template(utc(2025, 1, 1), owner_id="user_b")

        runner.run_pass(now=utc(2025, 1, 2))

        assert [e.owner_id for e in fetch_entries(a)] == ["user_a"]
        assert [e.owner_id for e in fetch_entries(b)] == ["user_b"]

    def test_selection_order(self, runner, make_template):
        late = make_template(utc(2025, 1, 1, 12))
        early = make_template(utc(2024, 12, 1))
        middle = make_template(utc(2024, 12, 20))

        summary = runner.run_pass(now=utc(2025, 1, 2))

        assert [o.template_id for o in summary.outcomes] == [early, middle, late]


# =============================================================================
# Failure isolation
# =============================================================================


class TestFailureIsolation:
    @pytest.mark.parametrize(
        "bad",
        [
            {"frequency": "HOURLY"},
            {"interval": 0},
            {"frequency": "MONTHLY", "interval": -3},
        ],
    )
    def test_invalid_rule_does_not_stop_the_pass(
        self, runner, make_template, fetch_template, fetch_entries, bad,
    ):
        first = make_template(utc(2025, 1, 1, 0, 0))
        broken = make_template(utc(2025, 1, 1, 0, 1), **bad)
        third = make_template(utc(2025, 1, 1, 0, 2))

        summary = runner.run_pass(now=utc(2025, 1, 2))

        assert summary.status is RunStatus.PARTIALLY_COMPLETED
        assert (summary.processed, summary.errors, summary.skipped) == (2, 1, 0)

        by_id = {o.template_id: o for o in summary.outcomes}
        assert by_id[broken].status is ItemStatus.ERROR
        assert by_id[broken].error_code == "INVALID_RECURRENCE_RULE"
        assert by_id[first].status is ItemStatus.OK
        assert by_id[third].status is ItemStatus.OK

        assert fetch_entries(broken) == []
        assert fetch_template(broken).next_run_at == utc(2025, 1, 1, 0, 1)
        assert fetch_template(broken).last_run_at is None
        assert len(fetch_entries(first)) == len(fetch_entries(third)) == 1

    def test_broken_template_stays_due(self, runner, make_template):
        broken = make_template(utc(2025, 1, 1), frequency="HOURLY")

        runner.run_pass(now=utc(2025, 1, 2))
        summary = runner.run_pass(now=utc(2025, 1, 2))

        assert summary.status is RunStatus.FAILED
        assert summary.outcomes[0].template_id == broken

    def test_missing_owner_is_invalid_template(self, runner, make_template):
        make_template(utc(2025, 1, 1), owner_id="")

        summary = runner.run_pass(now=utc(2025, 1, 2))

        assert summary.status is RunStatus.FAILED
        assert summary.outcomes[0].error_code == "INVALID_TEMPLATE"

    def test_unexpected_exception_is_isolated(
        self, runner, make_template, fetch_entries, monkeypatch,
    ):
        first = make_template(utc(2025, 1, 1, 0, 0))
        second = make_template(utc(2025, 1, 1, 0, 1))
        original = runner._occurrences

        def _occurrences(template, now):
            if template.template_id == first:
                raise RuntimeError("boom")
            return original(template, now)

        monkeypatch.setattr(runner, "_occurrences", _occurrences)

        summary = runner.run_pass(now=utc(2025, 1, 2))

        assert summary.outcomes[0].error_code == "UNHANDLED_EXCEPTION"
        assert summary.outcomes[0].detail == "boom"
        assert summary.outcomes[1].status is ItemStatus.OK
        assert fetch_entries(first) == []
        assert len(fetch_entries(second)) == 1

    def test_existing_occurrence_is_a_conflict(
        self, runner, session_factory, make_template, fetch_template, fetch_entries,
    ):
        tid = make_template(utc(2025, 1, 1))
        with session_factory() as session:
            session.add(
                LedgerEntryModel(
                    id=uuid4(),
                    owner_id="user_2fGymOwner",
                    entry_date=utc(2025, 1, 1),
                    amount=Decimal("-50.00"),
                    originating_template_id=tid,
                    created_at=utc(2025, 1, 1),
                )
            )
            session.commit()

        summary = runner.run_pass(now=utc(2025, 1, 2))

        assert summary.outcomes[0].status is ItemStatus.ERROR
        assert summary.outcomes[0].error_code == "CONCURRENCY_CONFLICT"
        assert len(fetch_entries(tid)) == 1
        assert fetch_template(tid).next_run_at == utc(2025, 1, 1)

    def test_schedule_advanced_before_commit_is_a_conflict(
        self, runner, session_factory, make_template, fetch_template, fetch_entries,
        monkeypatch,
    ):
        tid = make_template(utc(2025, 1, 1))
        original = runner._occurrences

        def _occurrences(template, now):
            with session_factory() as other:
                other.execute(
                    update(RecurringTemplateModel)
                    .where(RecurringTemplateModel.id == tid)
                    .values(next_run_at=utc(2025, 2, 1), last_run_at=utc(2025, 1, 1))
                )
                other.commit()
            return original(template, now)

        monkeypatch.setattr(runner, "_occurrences", _occurrences)

        summary = runner.run_pass(now=utc(2025, 1, 2))

        outcome = summary.outcomes[0]
        assert outcome.status is ItemStatus.ERROR
        assert outcome.error_code == "CONCURRENCY_CONFLICT"
        assert "advanced by another run" in outcome.detail
        assert fetch_entries(tid) == []
        template = fetch_template(tid)
        assert template.next_run_at == utc(2025, 2, 1)
        assert template.last_run_at == utc(2025, 1, 1)

    def test_naive_now_in_process_template(self, runner, make_template, fetch_entries):
        tid = make_template(utc(2025, 1, 1))

        outcome = runner.process_template(
            DueTemplate(template_id=tid, next_run_at=utc(2025, 1, 1)),
            datetime(2025, 1, 2),
        )

        assert outcome.status is ItemStatus.OK
        assert len(fetch_entries(tid)) == 1

    def test_selection_failure_raises(self, tmp_path, clock):
        engine = create_engine(f"sqlite:///{tmp_path / 'missing' / 'ledger.db'}")
        runner = RecurringJobRunner(sessionmaker(bind=engine), clock=clock)
        try:
            with pytest.raises(TransientStoreError) as exc_info:
                runner.run_pass()
            assert exc_info.value.operation == "select_due"
        finally:
            engine.dispose()


# =============================================================================
# Per-template entry points
# =============================================================================


class TestProcessTemplate:
    def test_deleted_template_is_skipped(self, runner):
        outcome = runner.process_template(
            DueTemplate(template_id=uuid4(), next_run_at=utc(2025, 1, 1)),
            utc(2025, 1, 2),
        )
        assert outcome.status is ItemStatus.SKIPPED
        assert outcome.detail == "template no longer exists"

    def test_not_yet_due_is_skipped(self, runner, make_template, fetch_entries):
        tid = make_template(utc(2025, 1, 5))

        outcome = runner.process_template(
            DueTemplate(template_id=tid, next_run_at=utc(2025, 1, 5)),
            utc(2025, 1, 2),
        )

        assert outcome.detail == "template is not due"
        assert fetch_entries() == []

    def test_select_due_returns_keys(self, runner, make_template):
        tid = make_template(utc(2025, 1, 1))
        assert runner.select_due(utc(2025, 1, 2)) == (
            DueTemplate(template_id=tid, next_run_at=utc(2025, 1, 1)),
        )


# =============================================================================
# Backlog policies
# =============================================================================


class TestBacklogPolicy:
    def test_single_step_fires_one_occurrence(
        self, runner, make_template, fetch_template, fetch_entries,
    ):
        tid = make_template(utc(2024, 10, 1))

        summary = runner.run_pass(now=utc(2025, 1, 2))

        assert summary.outcomes[0].occurrences == 1
        assert [e.entry_date for e in fetch_entries(tid)] == [utc(2024, 10, 1)]
        assert fetch_template(tid).next_run_at == utc(2024, 11, 1)

    def test_single_step_drains_one_per_pass(self, runner, make_template, fetch_entries):
        tid = make_template(utc(2024, 11, 1))

        for _ in range(5):
            runner.run_pass(now=utc(2025, 1, 2))

        assert [e.entry_date for e in fetch_entries(tid)] == [
            utc(2024, 11, 1), utc(2024, 12, 1), utc(2025, 1, 1),
        ]

    def test_catch_up_fires_every_missed_occurrence(
        self, catch_up_runner, make_template, fetch_template, fetch_entries,
    ):
        tid = make_template(utc(2024, 10, 1))

        summary = catch_up_runner.run_pass(now=utc(2025, 1, 2))

        assert summary.outcomes[0].occurrences == 4
        assert len(summary.outcomes[0].entry_ids) == 4
        assert [e.entry_date for e in fetch_entries(tid)] == [
            utc(2024, 10, 1), utc(2024, 11, 1), utc(2024, 12, 1), utc(2025, 1, 1),
        ]
        template = fetch_template(tid)
        assert template.next_run_at == utc(2025, 2, 1)
        assert template.last_run_at == utc(2025, 1, 1)

    def test_catch_up_is_capped(
        self, session_factory, clock, make_template, fetch_template, fetch_entries,
    ):
        runner = RecurringJobRunner(
            session_factory, clock=clock, policy="catch_up", max_catch_up=2,
        )
        tid = make_template(utc(2024, 10, 1))

        runner.run_pass(now=utc(2025, 1, 2))

        assert len(fetch_entries(tid)) == 2
        assert fetch_template(tid).next_run_at == utc(2024, 12, 1)


# =============================================================================
# Deadline and workers
# =============================================================================


class TestDeadline:
    def test_zero_deadline_defers_everything(
        self, runner, make_template, fetch_template, fetch_entries,
    ):
        tid = make_template(utc(2025, 1, 1))
        make_template(utc(2025, 1, 1, 1))

        summary = runner.run_pass(now=utc(2025, 1, 2), deadline_seconds=0)

        assert summary.status is RunStatus.PARTIALLY_COMPLETED
        assert (summary.total_selected, summary.deferred) == (2, 2)
        assert summary.outcomes == ()
        assert fetch_entries() == []
        assert fetch_template(tid).next_run_at == utc(2025, 1, 1)

    def test_generous_deadline_defers_nothing(self, runner, make_template):
        make_template(utc(2025, 1, 1))

        summary = runner.run_pass(now=utc(2025, 1, 2), deadline_seconds=300)

        assert summary.status is RunStatus.COMPLETED
        assert summary.deferred == 0


class TestWorkers:
    def test_parallel_pass(self, session_factory, clock, make_template, fetch_entries):
        runner = RecurringJobRunner(session_factory, clock=clock, max_workers=3)
        ids = [make_template(utc(2025, 1, 1, hour)) for hour in range(6)]

        summary = runner.run_pass(now=utc(2025, 1, 2))

        assert summary.status is RunStatus.COMPLETED
        assert summary.processed == 6
        assert [o.template_id for o in summary.outcomes] == ids
        assert len(fetch_entries()) == 6


# =============================================================================
# Logging
# =============================================================================


class TestPassLogging:
    def test_events_and_context(self, runner, make_template, captured_logs):
        tid = make_template(utc(2025, 1, 1))

        summary = runner.run_pass(now=utc(2025, 1, 2))

        records = captured_logs()
        messages = [r["message"] for r in records]
        for event in (
            "recurring_pass_started",
            "recurring_templates_selected",
            "recurring_item_processed",
            "recurring_pass_completed",
        ):
            assert event in messages

        processed = next(r for r in records if r["message"] == "recurring_item_processed")
        assert processed["run_id"] == str(summary.run_id)
        assert processed["template_id"] == str(tid)
        assert processed["owner_id"] == "user_2fGymOwner"
        assert processed["next_run_at"] == "2025-02-01T00:00:00+00:00"

        completed = next(r for r in records if r["message"] == "recurring_pass_completed")
        assert completed["status"] == "completed"
        assert completed["processed"] == 1

    def test_item_failure_logged_with_code(self, runner, make_template, captured_logs):
        tid = make_template(utc(2025, 1, 1), frequency="HOURLY")

        runner.run_pass(now=utc(2025, 1, 2))

        failed = [r for r in captured_logs() if r["message"] == "recurring_item_failed"]
        assert len(failed) == 1
        assert failed[0]["error_code"] == "INVALID_RECURRENCE_RULE"
        assert failed[0]["template_id"] == str(tid)
        assert failed[0]["level"] == "WARNING"

    def test_worker_threads_keep_run_id(self, session_factory, clock, make_template, captured_logs):
        runner = RecurringJobRunner(session_factory, clock=clock, max_workers=2)
        make_template(utc(2025, 1, 1))
        make_template(utc(2025, 1, 1, 1))

        summary = runner.run_pass(now=utc(2025, 1, 2))

        processed = [
            r for r in captured_logs() if r["message"] == "recurring_item_processed"
        ]
        assert len(processed) == 2
        assert {r["run_id"] for r in processed} == {str(summary.run_id)}

    def test_deadline_warning(self, runner, make_template, captured_logs):
        make_template(utc(2025, 1, 1))

        runner.run_pass(now=utc(2025, 1, 2), deadline_seconds=0)

        assert "recurring_pass_deadline_exceeded" in [
            r["message"] for r in captured_logs()
        ]
