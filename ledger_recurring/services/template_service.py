"""
RecurringTemplateService -- create and maintain recurring templates.

Contract:
    - ``create()`` normalizes the amount sign (income positive, expense
      negative), validates the rule and schedules the first occurrence ONE
      period after ``start_at``.
    - ``update()`` is partial and never moves ``next_run_at``.
    - ``deactivate()`` is a soft delete; ``delete()`` is a hard delete that
      keeps existing ledger entries (their back-reference is cleared by the
      store).
    - Flush-only: the caller owns commit/rollback.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from ledger_kernel.db.types import money_from_str, round_money
from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.exceptions import InvalidTemplateError, TemplateNotFoundError
from ledger_kernel.logging_config import LogContext, get_logger
from ledger_kernel.services.base import BaseService

from ledger_recurring.domain.recurrence import advance, parse_rule
from ledger_recurring.domain.types import Frequency, RecurringTemplate
from ledger_recurring.models.recurring import RecurringTemplateModel

logger = get_logger("recurring.templates")

_UNSET = object()


def _signed_amount(amount: Decimal | str | int, is_income: bool) -> Decimal:
    try:
        value = amount if isinstance(amount, Decimal) else money_from_str(str(amount))
    except ValueError as exc:
        raise InvalidTemplateError("new", str(exc)) from exc
    if not value.is_finite():
        raise InvalidTemplateError("new", f"amount must be finite: {amount!r}")
    value = round_money(abs(value))
    return value if is_income else -value


class RecurringTemplateService(BaseService[RecurringTemplateModel]):
    """Write side for recurring templates."""

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session)
        self._clock = clock or SystemClock()

    def create(
        self,
        owner_id: str,
        amount: Decimal | str | int,
        frequency: Frequency | str,
        start_at: datetime,
        *,
        interval: int = 1,
        note: str | None = None,
        category_id: str | None = None,
        is_income: bool = False,
    ) -> RecurringTemplate:
        """Create an active template.

        Raises:
            InvalidRecurrenceRuleError: Bad frequency or interval.
            InvalidTemplateError: Missing owner, bad amount, naive start_at.
        """
        if not owner_id:
            raise InvalidTemplateError("new", "owner_id is required")
        if start_at.tzinfo is None:
            raise InvalidTemplateError("new", "start_at must be timezone-aware")

        rule = parse_rule(frequency, interval)
        now = self._clock.now()

        dto = RecurringTemplate(
            template_id=uuid4(),
            owner_id=owner_id,
            amount=_signed_amount(amount, is_income),
            rule=rule,
            start_at=start_at,
            next_run_at=advance(start_at, rule),
            note=note,
            category_id=category_id,
            last_run_at=None,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        self.session.add(RecurringTemplateModel.from_dto(dto))
        self.session.flush()

        with LogContext.bind(owner_id=owner_id, template_id=str(dto.template_id)):
            logger.info(
                "recurring_template_created",
                extra={
                    "frequency": rule.frequency.value,
                    "interval": rule.interval,
                    "next_run_at": dto.next_run_at,
                },
            )
        return dto

    def update(
        self,
        template_id: UUID,
        *,
        amount: Decimal | str | int | None = None,
        is_income: bool | None = None,
        note: str | None | object = _UNSET,
        category_id: str | None | object = _UNSET,
        frequency: Frequency | str | None = None,
        interval: int | None = None,
        is_active: bool | None = None,
    ) -> RecurringTemplate:
        """Apply the given fields; omitted fields are left as they are.

        When only ``is_income`` or only ``amount`` is given, the other is
        taken from the stored amount.  A stored zero counts as an expense.
        """
        model = self._load(template_id)

        if frequency is not None or interval is not None:
            rule = parse_rule(
                frequency if frequency is not None else model.frequency,
                interval if interval is not None else model.interval,
            )
            model.frequency = rule.frequency.value
            model.interval = rule.interval

        if amount is not None or is_income is not None:
            income = is_income if is_income is not None else model.amount > 0
            model.amount = _signed_amount(
                amount if amount is not None else model.amount, income,
            )

        if note is not _UNSET:
            model.note = note
        if category_id is not _UNSET:
            model.category_id = category_id
        if is_active is not None:
            model.is_active = is_active

        model.updated_at = self._clock.now()
        self.session.flush()

        logger.info(
            "recurring_template_updated",
            extra={"template_id": str(template_id), "is_active": model.is_active},
        )
        return model.to_dto()

    def deactivate(self, template_id: UUID) -> RecurringTemplate:
        """Soft delete: the template is kept but never selected again."""
        return self.update(template_id, is_active=False)

    def delete(self, template_id: UUID) -> None:
        """Hard delete.  Entries created from the template are kept."""
        model = self._load(template_id)
        self.session.delete(model)
        self.session.flush()
        logger.info(
            "recurring_template_deleted",
            extra={"template_id": str(template_id)},
        )

    def get(self, template_id: UUID) -> RecurringTemplate:
        return self._load(template_id).to_dto()

    def _load(self, template_id: UUID) -> RecurringTemplateModel:
        model = self.session.get(RecurringTemplateModel, template_id)
        if model is None:
            raise TemplateNotFoundError(str(template_id))
        return model
