"""
ORM models for recurring templates and the ledger entries they produce.

Contract:
    RecurringTemplateModel and LedgerEntryModel each have ``to_dto()`` /
    ``from_dto()`` methods.  ``RecurringTemplateModel.to_dto()`` is the
    validation boundary: a row whose rule or fields are malformed raises a
    ``ValidationError`` there, never deeper inside the runner.

Architecture: ledger_recurring/models.  Imports from ledger_kernel.db only.

Invariants enforced:
    - UNIQUE (originating_template_id, entry_date): one occurrence of a
      template can be materialized at most once, whatever the runner does.
    - LedgerEntryModel rows are append-only (ORM listeners, see
      ledger_kernel.db.immutability).
    - Deleting a template clears the back-reference on its entries
      (ON DELETE SET NULL); the entries themselves are kept.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import Base, TimestampedBase, UTCDateTime, UUIDString
from ledger_kernel.db.immutability import register_immutability_listeners
from ledger_kernel.exceptions import InvalidTemplateError

if TYPE_CHECKING:
    from ledger_recurring.domain.types import LedgerEntry, RecurringTemplate


class RecurringTemplateModel(TimestampedBase):
    """Persistent recurring-transaction template."""

    __tablename__ = "recurring_templates"

    __table_args__ = (
        Index("ix_recurring_templates_due", "is_active", "next_run_at"),
        Index("ix_recurring_templates_owner", "owner_id"),
    )

    owner_id: Mapped[str] = mapped_column(String(100), nullable=False)
    note: Mapped[str | None] = mapped_column(String(4000), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    category_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    frequency: Mapped[str] = mapped_column(String(20), nullable=False)
    interval: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    start_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    next_run_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    last_run_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def to_dto(self) -> RecurringTemplate:
        """Convert to a validated DTO.

        Raises:
            InvalidRecurrenceRuleError: Frequency/interval not a valid rule.
            InvalidTemplateError: Any other field fails validation.
        """
        from ledger_recurring.domain.recurrence import parse_rule
        from ledger_recurring.domain.types import RecurringTemplate

        template_id = str(self.id)
        if not self.owner_id:
            raise InvalidTemplateError(template_id, "owner_id is required")
        if not isinstance(self.amount, Decimal) or not self.amount.is_finite():
            raise InvalidTemplateError(template_id, "amount must be a finite decimal")
        if self.next_run_at is None:
            raise InvalidTemplateError(template_id, "next_run_at is required")

        rule = parse_rule(self.frequency, self.interval)

        return RecurringTemplate(
            template_id=self.id,
            owner_id=self.owner_id,
            amount=self.amount,
            rule=rule,
            start_at=self.start_at,
            next_run_at=self.next_run_at,
            note=self.note,
            category_id=self.category_id,
            last_run_at=self.last_run_at,
            is_active=self.is_active,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    @classmethod
    def from_dto(cls, dto: RecurringTemplate) -> RecurringTemplateModel:
        return cls(
            id=dto.template_id,
            owner_id=dto.owner_id,
            note=dto.note,
            amount=dto.amount,
            category_id=dto.category_id,
            frequency=dto.rule.frequency.value,
            interval=dto.rule.interval,
            start_at=dto.start_at,
            next_run_at=dto.next_run_at,
            last_run_at=dto.last_run_at,
            is_active=dto.is_active,
            created_at=dto.created_at,
            updated_at=dto.updated_at,
        )


class LedgerEntryModel(Base):
    """Append-only ledger entry (manual, or materialized from a template)."""

    __tablename__ = "ledger_entries"

    __table_args__ = (
        UniqueConstraint(
            "originating_template_id",
            "entry_date",
            name="uq_ledger_entries_template_occurrence",
        ),
        Index("ix_ledger_entries_owner_date", "owner_id", "entry_date"),
        Index("ix_ledger_entries_created_at", "created_at"),
    )

    owner_id: Mapped[str] = mapped_column(String(100), nullable=False)
    entry_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    note: Mapped[str | None] = mapped_column(String(4000), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    category_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    originating_template_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("recurring_templates.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    def to_dto(self) -> LedgerEntry:
        from ledger_recurring.domain.types import LedgerEntry

        return LedgerEntry(
            entry_id=self.id,
            owner_id=self.owner_id,
            entry_date=self.entry_date,
            amount=self.amount,
            note=self.note,
            category_id=self.category_id,
            originating_template_id=self.originating_template_id,
            created_at=self.created_at,
        )

    @classmethod
    def from_dto(cls, dto: LedgerEntry) -> LedgerEntryModel:
        return cls(
            id=dto.entry_id,
            owner_id=dto.owner_id,
            entry_date=dto.entry_date,
            note=dto.note,
            amount=dto.amount,
            category_id=dto.category_id,
            originating_template_id=dto.originating_template_id,
            created_at=dto.created_at,
        )


register_immutability_listeners(LedgerEntryModel)
