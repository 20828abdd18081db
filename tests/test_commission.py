"""Unit tests for commission derivation.

Tests cover:
- Total and agent commission with and without a split
- Zero/None inputs yielding zero amounts
- Negative and out-of-range inputs raising ValidationError
- Cent rounding
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from src.dealflow.deals.commission import calculate
from src.dealflow.deals.errors import ValidationError


class TestCalculate:
    """Tests for commission.calculate."""

    def test_split_commission(self) -> None:
        result = calculate(200000, 3, 50)
        assert result.commission_amount == Decimal("6000.00")
        assert result.agent_commission == Decimal("3000.00")

    def test_no_split_keeps_full_commission(self) -> None:
        result = calculate(100000, 3)
        assert result.commission_amount == Decimal("3000.00")
        assert result.agent_commission == Decimal("3000.00")

    def test_zero_split_treated_as_no_split(self) -> None:
        result = calculate(100000, 3, 0)
        assert result.agent_commission == Decimal("3000.00")

    def test_missing_value_yields_zero(self) -> None:
        result = calculate(None, 3, 50)
        assert result.commission_amount == Decimal("0")
        assert result.agent_commission == Decimal("0")

    def test_zero_rate_yields_zero(self) -> None:
        result = calculate(500000, 0)
        assert result.commission_amount == Decimal("0")

    def test_decimal_and_string_inputs(self) -> None:
        result = calculate(Decimal("350000.00"), "2.5", Decimal("70"))
        assert result.commission_amount == Decimal("8750.00")
        assert result.agent_commission == Decimal("6125.00")

    def test_rounds_half_up_to_cents(self) -> None:
        """0.125 rounds to 0.13, not banker's 0.12."""
        result = calculate(Decimal("12.5"), 1)
        assert result.commission_amount == Decimal("0.13")

    def test_float_inputs_do_not_leak_binary_error(self) -> None:
        result = calculate(0.1, 100)
        assert result.commission_amount == Decimal("0.10")


class TestCalculateValidation:
    """Invalid commission inputs raise ValidationError carrying the field."""

    @pytest.mark.parametrize(
        ("args", "field"),
        [
            ((-1, 3), "deal_value"),
            ((100000, -3), "commission_rate"),
            ((100000, 3, -50), "commission_split_percent"),
            ((100000, 101), "commission_rate"),
            ((100000, 3, 150), "commission_split_percent"),
        ],
    )
    def test_rejects_out_of_range(self, args, field) -> None:
        with pytest.raises(ValidationError) as exc_info:
            calculate(*args)
        assert exc_info.value.field == field
