from ledger_recurring.selectors.recurring_selector import (
    DiagnosticReport,
    RecurringSelector,
    TemplateRow,
)

__all__ = ["DiagnosticReport", "RecurringSelector", "TemplateRow"]
