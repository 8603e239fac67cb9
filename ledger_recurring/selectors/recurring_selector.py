"""
RecurringSelector -- read-only diagnostic queries over templates and entries.

Returns rows as stored, WITHOUT rule validation, so that a template the
runner keeps rejecting still shows up in the report.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select

from ledger_kernel.selectors.base import BaseSelector

from ledger_recurring.domain.types import LedgerEntry
from ledger_recurring.models.recurring import LedgerEntryModel, RecurringTemplateModel


@dataclass(frozen=True)
class TemplateRow:
    """Stored state of a template, unvalidated."""

    template_id: UUID
    owner_id: str
    amount: Decimal
    frequency: str
    interval: int
    start_at: datetime
    next_run_at: datetime
    last_run_at: datetime | None
    is_active: bool
    note: str | None = None
    category_id: str | None = None

    def to_response(self) -> dict[str, Any]:
        return {
            "id": str(self.template_id),
            "ownerId": self.owner_id,
            "note": self.note,
            "amount": str(self.amount),
            "categoryId": self.category_id,
            "frequency": self.frequency,
            "interval": self.interval,
            "startAt": self.start_at.isoformat(),
            "nextRunAt": self.next_run_at.isoformat(),
            "lastRunAt": self.last_run_at.isoformat() if self.last_run_at else None,
            "isActive": self.is_active,
        }


def _entry_response(entry: LedgerEntry) -> dict[str, Any]:
    return {
        "id": str(entry.entry_id),
        "ownerId": entry.owner_id,
        "date": entry.entry_date.isoformat(),
        "note": entry.note,
        "amount": str(entry.amount),
        "categoryId": entry.category_id,
        "recurringTransactionId": (
            str(entry.originating_template_id)
            if entry.originating_template_id else None
        ),
        "createdAt": entry.created_at.isoformat() if entry.created_at else None,
    }


@dataclass(frozen=True)
class DiagnosticReport:
    """Snapshot of the recurring subsystem as of ``current_time``."""

    current_time: datetime
    templates: tuple[TemplateRow, ...]
    pending: tuple[TemplateRow, ...]
    recent_entries: tuple[LedgerEntry, ...]

    @property
    def active_count(self) -> int:
        return sum(1 for t in self.templates if t.is_active)

    def to_response(self) -> dict[str, Any]:
        return {
            "success": True,
            "currentTime": self.current_time.isoformat(),
            "summary": {
                "totalRecurring": len(self.templates),
                "activeRecurring": self.active_count,
                "pendingToProcess": len(self.pending),
                "recentTransactionsCreated": len(self.recent_entries),
            },
            "allRecurringTransactions": [t.to_response() for t in self.templates],
            "pendingRecurringTransactions": [t.to_response() for t in self.pending],
            "recentlyCreatedTransactions": [
                _entry_response(e) for e in self.recent_entries
            ],
        }


class RecurringSelector(BaseSelector[RecurringTemplateModel]):
    """Read-only queries for the diagnostic endpoint and the CLI."""

    @staticmethod
    def _row(model: RecurringTemplateModel) -> TemplateRow:
        return TemplateRow(
            template_id=model.id,
            owner_id=model.owner_id,
            amount=model.amount,
            frequency=model.frequency,
            interval=model.interval,
            start_at=model.start_at,
            next_run_at=model.next_run_at,
            last_run_at=model.last_run_at,
            is_active=model.is_active,
            note=model.note,
            category_id=model.category_id,
        )

    def all_templates(self) -> tuple[TemplateRow, ...]:
        """Every template, most recently due first."""
        models = self.session.execute(
            select(RecurringTemplateModel).order_by(
                RecurringTemplateModel.next_run_at.desc(),
                RecurringTemplateModel.id,
            )
        ).scalars().all()
        return tuple(self._row(m) for m in models)

    def templates_for_owner(self, owner_id: str) -> tuple[TemplateRow, ...]:
        """One owner's templates, active or not, next due first."""
        models = self.session.execute(
            select(RecurringTemplateModel)
            .where(RecurringTemplateModel.owner_id == owner_id)
            .order_by(
                RecurringTemplateModel.next_run_at,
                RecurringTemplateModel.id,
            )
        ).scalars().all()
        return tuple(self._row(m) for m in models)

    def pending(self, now: datetime) -> tuple[TemplateRow, ...]:
        """Templates a pass at ``now`` would select, in selection order."""
        models = self.session.execute(
            select(RecurringTemplateModel)
            .where(
                RecurringTemplateModel.is_active == True,  # noqa: E712
                RecurringTemplateModel.next_run_at <= now,
            )
            .order_by(
                RecurringTemplateModel.next_run_at,
                RecurringTemplateModel.id,
            )
        ).scalars().all()
        return tuple(self._row(m) for m in models)

    def recent_entries(self, limit: int = 10) -> tuple[LedgerEntry, ...]:
        """Newest entries that originated from a template."""
        models = self.session.execute(
            select(LedgerEntryModel)
            .where(LedgerEntryModel.originating_template_id.is_not(None))
            .order_by(LedgerEntryModel.created_at.desc(), LedgerEntryModel.id)
            .limit(limit)
        ).scalars().all()
        return tuple(m.to_dto() for m in models)

    def entries_for_template(self, template_id: UUID) -> tuple[LedgerEntry, ...]:
        """All entries materialized from one template, oldest occurrence first."""
        models = self.session.execute(
            select(LedgerEntryModel)
            .where(LedgerEntryModel.originating_template_id == template_id)
            .order_by(LedgerEntryModel.entry_date)
        ).scalars().all()
        return tuple(m.to_dto() for m in models)

    def report(self, now: datetime, recent_limit: int = 10) -> DiagnosticReport:
        return DiagnosticReport(
            current_time=now,
            templates=self.all_templates(),
            pending=self.pending(now),
            recent_entries=self.recent_entries(recent_limit),
        )
