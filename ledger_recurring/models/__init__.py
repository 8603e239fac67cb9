"""ORM models for the recurring processor."""

from ledger_recurring.models.recurring import LedgerEntryModel, RecurringTemplateModel

__all__ = ["LedgerEntryModel", "RecurringTemplateModel"]
