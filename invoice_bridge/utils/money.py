from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional

CENT = Decimal("0.01")


def to_amount(value: Any) -> Decimal:
    """Round a caller-supplied amount to cents for display on the ledger."""
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value))
        except (InvalidOperation, ValueError) as exc:
            raise ValueError(f"Invalid amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def to_ledger_number(value: Optional[Decimal]) -> Optional[float]:
    # The ledger's JSON API takes plain numbers, not strings.
    if value is None:
        return None
    return float(value)


def format_rate(value: Any) -> str:
    return f"{to_amount(value)} %"
