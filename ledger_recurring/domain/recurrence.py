"""
Recurrence calculator -- pure schedule arithmetic.  ZERO I/O.

Contract:
    ``next_occurrence(current, frequency, interval)`` returns the next due
    timestamp strictly after ``current``.  Time-of-day and tzinfo are
    preserved.  Month and year steps keep the day-of-month where it exists
    in the target month and clamp to that month's last day otherwise:

        2024-01-31 + 1 MONTHLY  -> 2024-02-29
        2023-01-31 + 1 MONTHLY  -> 2023-02-28
        2024-02-29 + 1 YEARLY   -> 2025-02-28

    Clamping is applied to each step from the value it is given, so a chain
    started on the 31st settles on the clamped day (Jan 31 -> Feb 28 ->
    Mar 28).  Callers that need the anchor day back compute from the anchor.

    Invalid rules raise ``InvalidRecurrenceRuleError``; there is no silent
    fallback frequency.
"""

from __future__ import annotations

import calendar
from datetime import datetime, timedelta, timezone
from typing import Iterator

from ledger_kernel.exceptions import InvalidRecurrenceRuleError

from ledger_recurring.domain.types import Frequency, RecurrenceRule


def parse_rule(frequency: Frequency | str, interval: object = 1) -> RecurrenceRule:
    """Validate and build a RecurrenceRule.

    Frequency names are matched case-insensitively.  Interval must be a
    positive ``int`` (``bool`` is rejected).

    Raises:
        InvalidRecurrenceRuleError: On unknown frequency or bad interval.
    """
    if isinstance(frequency, Frequency):
        freq = frequency
    elif isinstance(frequency, str):
        try:
            freq = Frequency(frequency.strip().upper())
        except ValueError:
            raise InvalidRecurrenceRuleError(
                frequency, interval, "unknown frequency",
            ) from None
    else:
        raise InvalidRecurrenceRuleError(frequency, interval, "unknown frequency")

    if isinstance(interval, bool) or not isinstance(interval, int):
        raise InvalidRecurrenceRuleError(
            frequency, interval, "interval must be an integer",
        )
    if interval < 1:
        raise InvalidRecurrenceRuleError(
            frequency, interval, "interval must be a positive integer",
        )

    return RecurrenceRule(frequency=freq, interval=interval)


def as_utc(moment: datetime) -> datetime:
    """Return ``moment`` in UTC; a naive value is taken to already be UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _add_months(current: datetime, months: int) -> datetime:
    month_index = current.month - 1 + months
    year = current.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return current.replace(year=year, month=month, day=min(current.day, last_day))


def next_occurrence(
    current: datetime,
    frequency: Frequency | str,
    interval: object = 1,
) -> datetime:
    """Compute the occurrence that follows ``current``.

    Raises:
        InvalidRecurrenceRuleError: On unknown frequency or bad interval.
    """
    rule = parse_rule(frequency, interval)
    return advance(current, rule)


def advance(current: datetime, rule: RecurrenceRule) -> datetime:
    """Step ``current`` forward by one period of an already-validated rule."""
    if rule.frequency is Frequency.DAILY:
        return current + timedelta(days=rule.interval)
    if rule.frequency is Frequency.WEEKLY:
        return current + timedelta(days=7 * rule.interval)
    if rule.frequency is Frequency.MONTHLY:
        return _add_months(current, rule.interval)
    if rule.frequency is Frequency.YEARLY:
        return _add_months(current, 12 * rule.interval)
    raise InvalidRecurrenceRuleError(rule.frequency, rule.interval, "unknown frequency")


def occurrences_until(
    first: datetime,
    until: datetime,
    rule: RecurrenceRule,
    limit: int,
) -> Iterator[datetime]:
    """Yield ``first`` and each following occurrence that is <= ``until``.

    At most ``limit`` values are yielded.  Yields nothing when
    ``first > until`` or ``limit < 1``.
    """
    current = first
    emitted = 0
    while current <= until and emitted < limit:
        yield current
        emitted += 1
        current = advance(current, rule)
