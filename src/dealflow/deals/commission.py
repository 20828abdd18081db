"""Commission derivation for deals.

commission_amount = deal_value * commission_rate / 100
agent_commission  = commission_amount * split / 100   (split given)
                  = commission_amount                 (no split)

Amounts are Decimal, quantized to cents with ROUND_HALF_UP to match the
DECIMAL(12,2) storage columns.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from src.dealflow.deals.errors import ValidationError
from src.dealflow.deals.schemas import CommissionBreakdown

_CENTS = Decimal("0.01")
_HUNDRED = Decimal("100")

Number = Decimal | int | float | str


def _to_decimal(value: Number | None, field: str) -> Decimal | None:
    if value is None:
        return None
    # float goes through str() so 0.1 stays 0.1
    amount = Decimal(str(value)) if isinstance(value, float) else Decimal(value)
    if amount < 0:
        raise ValidationError(f"{field} cannot be negative", field=field)
    return amount


def calculate(
    deal_value: Number | None,
    commission_rate: Number | None,
    split_percent: Number | None = None,
) -> CommissionBreakdown:
    """Derive total and agent commission.

    Args:
        deal_value: Total deal value.
        commission_rate: Commission rate as a percentage (0-100).
        split_percent: Agent's share of the commission as a percentage (0-100).
            None or zero means the agent keeps the whole commission.

    Returns:
        CommissionBreakdown with both amounts; zero when value or rate is
        missing or zero.

    Raises:
        ValidationError: If any input is negative, or a percentage exceeds 100.
    """
    value = _to_decimal(deal_value, "deal_value")
    rate = _to_decimal(commission_rate, "commission_rate")
    split = _to_decimal(split_percent, "commission_split_percent")

    if rate is not None and rate > _HUNDRED:
        raise ValidationError("commission_rate cannot exceed 100", field="commission_rate")
    if split is not None and split > _HUNDRED:
        raise ValidationError(
            "commission_split_percent cannot exceed 100",
            field="commission_split_percent",
        )

    if not value or not rate:
        return CommissionBreakdown()

    commission_amount = value * rate / _HUNDRED
    agent_commission = commission_amount * split / _HUNDRED if split else commission_amount

    return CommissionBreakdown(
        commission_amount=commission_amount.quantize(_CENTS, rounding=ROUND_HALF_UP),
        agent_commission=agent_commission.quantize(_CENTS, rounding=ROUND_HALF_UP),
    )
