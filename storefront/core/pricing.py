"""
Fee and bonus engine.

Pure, deterministic computation of what the buyer is charged and what
promotional bonus a deposit earns. No I/O; every amount is a Decimal
quantized to cents with ROUND_HALF_UP.

Example:
    base 100.00, fee 3% active, bonuses [{min 50, 5%}, {min 100, 10%}]
    -> fee 3.00, total 103.00, bonus 10.00, effective credit 110.00
"""
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from storefront.core.exceptions import ValidationError

CENT = Decimal("0.01")
HUNDRED = Decimal("100")


def quantize_money(value: Decimal | int | float | str) -> Decimal:
    """Round to cents, half up."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


class FeeType(str, Enum):
    """How a service fee is computed."""

    PERCENTAGE = "percentage"
    FIXED = "fixed"


class FeeRule(BaseModel):
    """Service fee added on top of the base amount."""

    model_config = ConfigDict(frozen=True)

    is_active: bool = False
    fee_type: FeeType = FeeType.PERCENTAGE
    percentage: Decimal = Field(default=Decimal("0"), ge=0)
    fixed_amount: Decimal = Field(default=Decimal("0"), ge=0)


class BonusRule(BaseModel):
    """Deposit bonus granted once the base amount reaches min_amount."""

    model_config = ConfigDict(frozen=True)

    min_amount: Decimal = Field(ge=0)
    percentage: Decimal = Field(ge=0)
    is_active: bool = True


class PriceQuote(BaseModel):
    """Result of pricing a base amount against a gateway's rules."""

    model_config = ConfigDict(frozen=True)

    base_amount: Decimal
    fee_amount: Decimal
    total_charged: Decimal
    bonus_amount: Decimal
    effective_credit: Decimal
    applied_bonus: Optional[BonusRule] = None

    @field_validator(
        "base_amount", "fee_amount", "total_charged", "bonus_amount", "effective_credit"
    )
    @classmethod
    def validate_amount(cls, v: Decimal) -> Decimal:
        return quantize_money(v)


def calculate_fee(base_amount: Decimal, fee_rule: Optional[FeeRule]) -> Decimal:
    """Fee for base_amount; zero when no rule or the rule is inactive."""
    if fee_rule is None or not fee_rule.is_active:
        return Decimal("0.00")
    if fee_rule.fee_type == FeeType.FIXED:
        return quantize_money(fee_rule.fixed_amount)
    return quantize_money(base_amount * fee_rule.percentage / HUNDRED)


def select_bonus_rule(
    base_amount: Decimal, bonus_rules: Iterable[BonusRule]
) -> Optional[BonusRule]:
    """
    Pick the bonus rule that applies to base_amount.

    Among active rules whose threshold is reached, the highest threshold
    wins; ties go to the highest percentage.
    """
    eligible = [
        rule for rule in bonus_rules
        if rule.is_active and rule.min_amount <= base_amount
    ]
    if not eligible:
        return None
    return max(eligible, key=lambda rule: (rule.min_amount, rule.percentage))


def price(
    base_amount: Decimal | int | str,
    fee_rule: Optional[FeeRule] = None,
    bonus_rules: Iterable[BonusRule] = (),
) -> PriceQuote:
    """
    Price a base amount.

    Args:
        base_amount: Amount before fees (product total or deposit amount)
        fee_rule: Gateway service fee rule
        bonus_rules: Gateway deposit bonus rules

    Returns:
        PriceQuote: fee, total charged, bonus and effective balance credit

    Raises:
        ValidationError: If base_amount is negative
    """
    base = quantize_money(base_amount)
    if base < 0:
        raise ValidationError("Amount must not be negative")

    fee_amount = calculate_fee(base, fee_rule)
    rule = select_bonus_rule(base, bonus_rules)
    bonus_amount = quantize_money(base * rule.percentage / HUNDRED) if rule else Decimal("0.00")

    return PriceQuote(
        base_amount=base,
        fee_amount=fee_amount,
        total_charged=base + fee_amount,
        bonus_amount=bonus_amount,
        effective_credit=base + bonus_amount,
        applied_bonus=rule,
    )
