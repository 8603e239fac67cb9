"""
RecurringJobRunner -- one execution pass over due recurring templates.

Contract:
    ``run_pass()`` selects every active template with ``next_run_at <= now``
    (ascending due time, then id) and processes each in its OWN short
    transaction:

        1. re-read the row FOR UPDATE;
        2. skip if it is gone, inactive, or already advanced past the
           selected occurrence;
        3. validate it (``to_dto()``);
        4. insert the ledger entry (or entries, under CATCH_UP);
        5. conditionally advance ``next_run_at`` / ``last_run_at``
           (WHERE next_run_at = <selected value> AND is_active);
        6. commit.

    A failure rolls back that template only; the pass continues and the
    template stays due for the next invocation.

Architecture: ledger_recurring/services.  Imports from ledger_recurring.domain,
    ledger_recurring.models and ledger_kernel.

Invariants enforced:
    - Exactly-once per occurrence: the conditional advance and the UNIQUE
      (originating_template_id, entry_date) constraint both guard against
      overlapping passes.  Losing either race is a CONCURRENCY_CONFLICT
      error for that item, never a duplicate entry.
    - ``entry_date`` is the occurrence's due time, not the processing time.
    - ``next_run_at`` only moves forward, and only together with the
      entries it accounts for (same transaction).
    - Every entry carries the ``owner_id`` of its template.

Non-goals:
    - Does NOT hold a pass-wide transaction.
    - Does NOT retry within a pass; the next invocation is the retry.
"""

from __future__ import annotations

import contextvars
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime
from typing import Callable
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ledger_kernel.config import Settings
from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.exceptions import (
    ConcurrencyConflictError,
    ConfigurationError,
    LedgerError,
    TransientStoreError,
)
from ledger_kernel.logging_config import LogContext, get_logger

from ledger_recurring.domain.recurrence import advance, as_utc, occurrences_until
from ledger_recurring.domain.types import (
    BacklogPolicy,
    DueTemplate,
    ItemOutcome,
    ItemStatus,
    RecurringTemplate,
    RunSummary,
)
from ledger_recurring.models.recurring import LedgerEntryModel, RecurringTemplateModel

logger = get_logger("recurring.runner")

DEFAULT_MAX_CATCH_UP = 366


class RecurringJobRunner:
    """Materializes due recurring templates into ledger entries.

    Contract:
        - ``run_pass()`` runs one pass and returns a ``RunSummary``.
        - ``select_due()`` / ``process_template()`` are the two halves of a
          pass, public so callers (and tests) can drive them separately.

    Each template gets its own session from ``session_factory``; the runner
    never commits on a caller's session.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Clock | None = None,
        policy: BacklogPolicy | str = BacklogPolicy.SINGLE_STEP,
        max_catch_up: int = DEFAULT_MAX_CATCH_UP,
        max_workers: int = 1,
    ):
        try:
            self._policy = BacklogPolicy(policy)
        except ValueError:
            raise ConfigurationError(
                f"Unknown backlog policy: {policy!r}", keys=("backlog_policy",),
            ) from None
        if max_catch_up < 1:
            raise ConfigurationError(
                "max_catch_up must be >= 1", keys=("max_catch_up",),
            )
        if max_workers < 1:
            raise ConfigurationError(
                "max_workers must be >= 1", keys=("max_workers",),
            )
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._max_catch_up = max_catch_up
        self._max_workers = max_workers

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: Callable[[], Session],
        clock: Clock | None = None,
    ) -> RecurringJobRunner:
        return cls(
            session_factory,
            clock=clock,
            policy=settings.backlog_policy,
            max_catch_up=settings.max_catch_up,
            max_workers=settings.max_workers,
        )

    @property
    def policy(self) -> BacklogPolicy:
        return self._policy

    # -------------------------------------------------------------------------
    # Pass
    # -------------------------------------------------------------------------

    def run_pass(
        self,
        now: datetime | None = None,
        deadline_seconds: float | None = None,
    ) -> RunSummary:
        """Run one pass as of ``now`` (defaults to the clock).

        Templates not started before ``deadline_seconds`` elapse are counted
        as deferred and left due.  Work already committed is kept.

        Raises:
            TransientStoreError: Due selection itself failed.
        """
        run_id = uuid4()
        as_of = as_utc(now or self._clock.now_utc())
        started_at = self._clock.now()
        start = time.monotonic()
        deadline_at = start + deadline_seconds if deadline_seconds is not None else None

        with LogContext.bind(run_id=str(run_id)):
            logger.info(
                "recurring_pass_started",
                extra={
                    "as_of": as_of,
                    "policy": self._policy.value,
                    "max_workers": self._max_workers,
                    "deadline_seconds": deadline_seconds,
                },
            )

            due = self.select_due(as_of)
            results = self._dispatch(due, as_of, deadline_at)

            outcomes = tuple(r for r in results if r is not None)
            processed = sum(1 for o in outcomes if o.status is ItemStatus.OK)
            errors = sum(1 for o in outcomes if o.status is ItemStatus.ERROR)
            skipped = sum(1 for o in outcomes if o.status is ItemStatus.SKIPPED)
            deferred = len(results) - len(outcomes)

            status = RunSummary.derive_status(
                len(due), processed, errors, skipped, deferred,
            )
            duration_ms = int((time.monotonic() - start) * 1000)

            if deferred:
                logger.warning(
                    "recurring_pass_deadline_exceeded",
                    extra={"deferred": deferred, "deadline_seconds": deadline_seconds},
                )

            logger.info(
                "recurring_pass_completed",
                extra={
                    "status": status.value,
                    "total_selected": len(due),
                    "processed": processed,
                    "errors": errors,
                    "skipped": skipped,
                    "deferred": deferred,
                    "duration_ms": duration_ms,
                },
            )

        return RunSummary(
            run_id=run_id,
            as_of=as_of,
            status=status,
            total_selected=len(due),
            processed=processed,
            errors=errors,
            skipped=skipped,
            deferred=deferred,
            outcomes=outcomes,
            started_at=started_at,
            completed_at=self._clock.now(),
            duration_ms=duration_ms,
        )

    def _dispatch(
        self,
        due: tuple[DueTemplate, ...],
        as_of: datetime,
        deadline_at: float | None,
    ) -> list[ItemOutcome | None]:
        """Process ``due`` in order; ``None`` marks a deferred template."""
        if self._max_workers == 1 or len(due) <= 1:
            return [self._run_item(d, as_of, deadline_at) for d in due]

        with ThreadPoolExecutor(
            max_workers=self._max_workers,
            thread_name_prefix="recurring-runner",
        ) as pool:
            # One context copy per task so LogContext fields reach the workers
            futures = [
                pool.submit(
                    contextvars.copy_context().run,
                    self._run_item, d, as_of, deadline_at,
                )
                for d in due
            ]
            return [f.result() for f in futures]

    def _run_item(
        self,
        due: DueTemplate,
        as_of: datetime,
        deadline_at: float | None,
    ) -> ItemOutcome | None:
        if deadline_at is not None and time.monotonic() >= deadline_at:
            return None
        return self.process_template(due, as_of)

    # -------------------------------------------------------------------------
    # Selection
    # -------------------------------------------------------------------------

    def select_due(self, now: datetime) -> tuple[DueTemplate, ...]:
        """Active templates with ``next_run_at <= now``, oldest first.

        Raises:
            TransientStoreError: The store could not be queried.
        """
        session = self._session_factory()
        try:
            rows = session.execute(
                select(RecurringTemplateModel.id, RecurringTemplateModel.next_run_at)
                .where(
                    RecurringTemplateModel.is_active == True,  # noqa: E712
                    RecurringTemplateModel.next_run_at <= now,
                )
                .order_by(
                    RecurringTemplateModel.next_run_at,
                    RecurringTemplateModel.id,
                )
            ).all()
        except SQLAlchemyError as exc:
            logger.error("recurring_select_due_failed", exc_info=True)
            raise TransientStoreError("select_due", str(exc)) from exc
        finally:
            session.close()

        logger.info("recurring_templates_selected", extra={"count": len(rows)})
        return tuple(
            DueTemplate(template_id=row.id, next_run_at=row.next_run_at)
            for row in rows
        )

    # -------------------------------------------------------------------------
    # Per-template processing
    # -------------------------------------------------------------------------

    def process_template(self, due: DueTemplate, now: datetime) -> ItemOutcome:
        """Process one selected template in its own transaction.

        Never raises for per-template failures; they come back as an
        ``error`` outcome with the failure's code.
        """
        now = as_utc(now)
        start = time.monotonic()
        with LogContext.bind(template_id=str(due.template_id)):
            try:
                outcome = self._materialize(due, now)
            except LedgerError as exc:
                logger.warning(
                    "recurring_item_failed",
                    extra={
                        "error_code": exc.code,
                        "reason": str(exc),
                        "selected_next_run_at": due.next_run_at,
                    },
                )
                outcome = ItemOutcome(
                    template_id=due.template_id,
                    status=ItemStatus.ERROR,
                    detail=str(exc),
                    error_code=exc.code,
                )
            except Exception as exc:
                logger.exception("recurring_item_unhandled_exception")
                outcome = ItemOutcome(
                    template_id=due.template_id,
                    status=ItemStatus.ERROR,
                    detail=str(exc),
                    error_code="UNHANDLED_EXCEPTION",
                )

        return replace(outcome, duration_ms=int((time.monotonic() - start) * 1000))

    def _materialize(self, due: DueTemplate, now: datetime) -> ItemOutcome:
        session = self._session_factory()
        try:
            with session.begin():
                model = session.execute(
                    select(RecurringTemplateModel)
                    .where(RecurringTemplateModel.id == due.template_id)
                    .with_for_update()
                ).scalar_one_or_none()

                reason = self._skip_reason(model, due, now)
                if reason is not None:
                    logger.info("recurring_item_skipped", extra={"reason": reason})
                    return ItemOutcome(
                        template_id=due.template_id,
                        status=ItemStatus.SKIPPED,
                        detail=reason,
                    )

                template = model.to_dto()
                occurrences = self._occurrences(template, now)
                created_at = self._clock.now()

                entry_ids: list[UUID] = []
                for occurrence in occurrences:
                    entry = LedgerEntryModel(
                        id=uuid4(),
                        owner_id=template.owner_id,
                        entry_date=occurrence,
                        note=template.note,
                        amount=template.amount,
                        category_id=template.category_id,
                        originating_template_id=template.template_id,
                        created_at=created_at,
                    )
                    session.add(entry)
                    entry_ids.append(entry.id)
                session.flush()

                last_fired = occurrences[-1]
                next_run_at = advance(last_fired, template.rule)

                result = session.execute(
                    update(RecurringTemplateModel)
                    .where(
                        RecurringTemplateModel.id == due.template_id,
                        RecurringTemplateModel.next_run_at == due.next_run_at,
                        RecurringTemplateModel.is_active == True,  # noqa: E712
                    )
                    .values(
                        next_run_at=next_run_at,
                        last_run_at=last_fired,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise ConcurrencyConflictError(
                        str(due.template_id),
                        "schedule was advanced by another run before commit",
                    )
        except IntegrityError as exc:
            raise ConcurrencyConflictError(
                str(due.template_id),
                "occurrence already materialized",
            ) from exc
        except SQLAlchemyError as exc:
            raise TransientStoreError("process_template", str(exc)) from exc
        finally:
            session.close()

        logger.info(
            "recurring_item_processed",
            extra={
                "owner_id": template.owner_id,
                "occurrences": len(occurrences),
                "entry_date": occurrences[0],
                "last_run_at": last_fired,
                "next_run_at": next_run_at,
                "entry_ids": [str(e) for e in entry_ids],
            },
        )
        return ItemOutcome(
            template_id=due.template_id,
            status=ItemStatus.OK,
            occurrences=len(occurrences),
            entry_ids=tuple(entry_ids),
            next_run_at=next_run_at,
        )

    @staticmethod
    def _skip_reason(
        model: RecurringTemplateModel | None,
        due: DueTemplate,
        now: datetime,
    ) -> str | None:
        if model is None:
            return "template no longer exists"
        if not model.is_active:
            return "template is inactive"
        if model.next_run_at != due.next_run_at:
            return "occurrence already processed"
        if model.next_run_at > now:
            return "template is not due"
        return None

    def _occurrences(
        self, template: RecurringTemplate, now: datetime,
    ) -> list[datetime]:
        if self._policy is BacklogPolicy.SINGLE_STEP:
            return [template.next_run_at]
        return list(
            occurrences_until(
                template.next_run_at, now, template.rule, self._max_catch_up,
            )
        )
