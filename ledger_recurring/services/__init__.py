"""Services for the recurring processor."""

from ledger_recurring.services.runner import RecurringJobRunner
from ledger_recurring.services.template_service import RecurringTemplateService

__all__ = ["RecurringJobRunner", "RecurringTemplateService"]
