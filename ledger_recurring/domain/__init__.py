"""Pure domain layer: DTOs and the recurrence calculator."""

from ledger_recurring.domain.recurrence import (
    advance,
    next_occurrence,
    occurrences_until,
    parse_rule,
)
from ledger_recurring.domain.types import (
    BacklogPolicy,
    DueTemplate,
    Frequency,
    ItemOutcome,
    ItemStatus,
    LedgerEntry,
    RecurrenceRule,
    RecurringTemplate,
    RunStatus,
    RunSummary,
)

__all__ = [
    "advance",
    "next_occurrence",
    "occurrences_until",
    "parse_rule",
    "BacklogPolicy",
    "DueTemplate",
    "Frequency",
    "ItemOutcome",
    "ItemStatus",
    "LedgerEntry",
    "RecurrenceRule",
    "RecurringTemplate",
    "RunStatus",
    "RunSummary",
]
