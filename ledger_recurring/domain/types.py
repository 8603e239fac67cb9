"""
ledger_recurring.domain.types -- Pure frozen dataclasses for the recurring
processor.  ZERO I/O.

Frozen dataclasses with enum status fields and tuples for immutable
collections.  ORM models convert to and from these at the model boundary;
the runner, the template service and the trigger only ever hand these out.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


# =============================================================================
# Enums
# =============================================================================


class Frequency(str, Enum):
    """Recurrence unit of a template."""

    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class BacklogPolicy(str, Enum):
    """How many overdue occurrences one pass materializes per template."""

    SINGLE_STEP = "single_step"  # One occurrence per template per pass
    CATCH_UP = "catch_up"  # Every occurrence <= now, capped


class ItemStatus(str, Enum):
    """Per-template outcome within a pass."""

    OK = "ok"  # Entry (or entries) created and schedule advanced
    ERROR = "error"  # Rolled back; template stays due
    SKIPPED = "skipped"  # Already handled by a concurrent or earlier pass


class RunStatus(str, Enum):
    """Pass-level status."""

    NOTHING_DUE = "nothing_due"
    COMPLETED = "completed"  # No errors, nothing deferred
    PARTIALLY_COMPLETED = "partially_completed"  # Some errors or deferrals
    FAILED = "failed"  # Every attempted template errored


# =============================================================================
# Rule and record DTOs
# =============================================================================


@dataclass(frozen=True)
class RecurrenceRule:
    """Validated (frequency, interval) pair.  Build via ``parse_rule()``."""

    frequency: Frequency
    interval: int = 1


@dataclass(frozen=True)
class RecurringTemplate:
    """Immutable snapshot of a recurring-transaction template."""

    template_id: UUID
    owner_id: str
    amount: Decimal
    rule: RecurrenceRule
    start_at: datetime
    next_run_at: datetime
    note: str | None = None
    category_id: str | None = None
    last_run_at: datetime | None = None
    is_active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class LedgerEntry:
    """Immutable snapshot of a materialized ledger entry.

    ``entry_date`` is the occurrence's due time, never the processing time.
    """

    entry_id: UUID
    owner_id: str
    entry_date: datetime
    amount: Decimal
    note: str | None = None
    category_id: str | None = None
    originating_template_id: UUID | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class DueTemplate:
    """Selection key: a template and the occurrence it was selected for."""

    template_id: UUID
    next_run_at: datetime


# =============================================================================
# Run results
# =============================================================================


@dataclass(frozen=True)
class ItemOutcome:
    """Result of processing one due template."""

    template_id: UUID
    status: ItemStatus
    detail: str | None = None
    error_code: str | None = None
    occurrences: int = 0
    entry_ids: tuple[UUID, ...] = ()
    next_run_at: datetime | None = None
    duration_ms: int = 0

    def to_response(self) -> dict[str, Any]:
        item: dict[str, Any] = {
            "templateId": str(self.template_id),
            "status": self.status.value,
        }
        if self.detail:
            item["detail"] = self.detail
        if self.error_code:
            item["errorCode"] = self.error_code
        if self.next_run_at is not None:
            item["nextRunAt"] = self.next_run_at.isoformat()
        if self.occurrences:
            item["occurrences"] = self.occurrences
        return item


@dataclass(frozen=True)
class RunSummary:
    """Immutable result of one execution pass.

    ``processed + errors + skipped + deferred == total_selected``.
    """

    run_id: UUID
    as_of: datetime
    status: RunStatus
    total_selected: int
    processed: int
    errors: int
    skipped: int
    deferred: int = 0
    outcomes: tuple[ItemOutcome, ...] = ()
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int = 0

    @staticmethod
    def derive_status(
        total_selected: int, processed: int, errors: int, skipped: int, deferred: int,
    ) -> RunStatus:
        if total_selected == 0:
            return RunStatus.NOTHING_DUE
        if errors == 0 and deferred == 0:
            return RunStatus.COMPLETED
        if errors > 0 and processed == 0 and skipped == 0:
            return RunStatus.FAILED
        return RunStatus.PARTIALLY_COMPLETED

    def to_response(self) -> dict[str, Any]:
        """External JSON shape returned to the trigger's caller."""
        return {
            "success": True,
            "runId": str(self.run_id),
            "asOf": self.as_of.isoformat(),
            "status": self.status.value,
            "totalSelected": self.total_selected,
            "processed": self.processed,
            "errors": self.errors,
            "skipped": self.skipped,
            "deferred": self.deferred,
            "durationMs": self.duration_ms,
            "items": [o.to_response() for o in self.outcomes],
        }
