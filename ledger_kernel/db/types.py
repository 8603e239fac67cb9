"""
Module: ledger_kernel.db.types
Responsibility: Parsing and rounding helpers for money values.
    Centralizes precision and rounding so every model and service uses the
    same definitions.

    CRITICAL: No floats for amounts.  Every amount is a Decimal with explicit
    precision, from the template row through to the created ledger entry.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

DEFAULT_ROUNDING = ROUND_HALF_UP


def money_from_str(value: str) -> Decimal:
    """
    Create a Money value from string.

    Raises:
        ValueError: If value is not a finite decimal number.
    """
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValueError(f"Not a decimal amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"Not a finite amount: {value!r}")
    return amount


def round_money(
    value: Decimal,
    decimal_places: int = 2,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """
    Round a monetary value to specified decimal places.

    This is the only sanctioned rounding function for amounts.
    """
    quantize_str = "0." + "0" * decimal_places
    return value.quantize(Decimal(quantize_str), rounding=rounding)
