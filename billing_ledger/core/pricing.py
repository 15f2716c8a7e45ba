"""
Fee policies and fee calculation.

Turns a client's fee policy plus raw trigger inputs into a billable amount.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional, Tuple

from .errors import FeeUnavailableError


CENT = Decimal("0.01")


def to_decimal(value) -> Optional[Decimal]:
    """Convert a number to Decimal without float artifacts; None passes through."""
    if value is None or isinstance(value, Decimal):
        return value
    return Decimal(str(value))


class CalculationType(Enum):
    """How a fee rule turns a base amount into a fee."""
    FIXED = "FIXED"
    PERCENTAGE = "PERCENTAGE"
    TIERED = "TIERED"


class PercentageBase(Enum):
    """What a percentage fee is based on."""
    SALARY = "SALARY"
    CONTRACT_VALUE = "CONTRACT_VALUE"
    MONTHLY_RATE = "MONTHLY_RATE"


class TriggerRule(Enum):
    """Condition that starts billing for a client."""
    ON_PLACEMENT = "ON_PLACEMENT"
    ON_ONBOARD = "ON_ONBOARD"
    ON_CONTRACT_START = "ON_CONTRACT_START"
    ON_EXTENSION = "ON_EXTENSION"
    MANUAL = "MANUAL"


@dataclass(frozen=True)
class FeeTier:
    """One band of a tiered fee: applies to base amounts in [from_amount, to_amount)."""
    from_amount: Decimal
    value: Decimal
    calculation_type: CalculationType = CalculationType.FIXED
    to_amount: Optional[Decimal] = None  # None means unbounded

    def __post_init__(self):
        """Validate tier bounds and type."""
        object.__setattr__(self, "from_amount", to_decimal(self.from_amount))
        object.__setattr__(self, "value", to_decimal(self.value))
        object.__setattr__(self, "to_amount", to_decimal(self.to_amount))
        if self.calculation_type == CalculationType.TIERED:
            raise ValueError("a tier must be FIXED or PERCENTAGE")
        if self.to_amount is not None and self.to_amount <= self.from_amount:
            raise ValueError("to_amount must be greater than from_amount")

    def contains(self, base_amount: Decimal) -> bool:
        if base_amount < self.from_amount:
            return False
        return self.to_amount is None or base_amount < self.to_amount


@dataclass(frozen=True)
class FeeRule:
    """Fee rule for a single fee type."""
    fee_type: str
    calculation_type: CalculationType
    value: Decimal = Decimal("0")  # Amount for FIXED, percent (15 = 15%) for PERCENTAGE
    percentage_base: Optional[PercentageBase] = None
    minimum_fee: Optional[Decimal] = None
    maximum_fee: Optional[Decimal] = None
    tiers: Tuple[FeeTier, ...] = ()

    def __post_init__(self):
        """Validate rule values are consistent."""
        object.__setattr__(self, "value", to_decimal(self.value))
        object.__setattr__(self, "minimum_fee", to_decimal(self.minimum_fee))
        object.__setattr__(self, "maximum_fee", to_decimal(self.maximum_fee))
        object.__setattr__(self, "tiers", tuple(self.tiers))
        object.__setattr__(self, "fee_type", (self.fee_type or "").strip().upper())
        if not self.fee_type:
            raise ValueError("fee_type is required")
        if self.value < 0:
            raise ValueError("value cannot be negative")
        if self.minimum_fee is not None and self.minimum_fee < 0:
            raise ValueError("minimum_fee cannot be negative")
        if self.maximum_fee is not None and self.maximum_fee < 0:
            raise ValueError("maximum_fee cannot be negative")


@dataclass(frozen=True)
class FeePolicy:
    """Versioned billing contract for one client."""
    policy_id: str
    client_id: str
    client_code: str
    client_name: str
    trigger_rule: TriggerRule
    fee_rules: Tuple[FeeRule, ...]
    currency: str
    payment_terms_days: int = 30
    is_active: bool = True
    version: int = 1
    effective_date: Optional[date] = None
    auto_approve: bool = False
    notes: Optional[str] = None
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    created_by: str = "system"
    updated_at: Optional[datetime] = None
    updated_by: str = "system"

    def __post_init__(self):
        """Validate identity and terms."""
        object.__setattr__(self, "fee_rules", tuple(self.fee_rules))
        if not self.client_code or not self.client_code.isalnum():
            raise ValueError("client_code must be alphanumeric")
        if self.payment_terms_days < 0:
            raise ValueError("payment_terms_days cannot be negative")
        if self.version < 1:
            raise ValueError("version must be >= 1")
        if not self.currency:
            raise ValueError("currency is required")

    def get_rule(self, fee_type: str) -> Optional[FeeRule]:
        """Get the fee rule for a fee type, or None when the policy has none."""
        fee_type = fee_type.strip().upper()
        for rule in self.fee_rules:
            if rule.fee_type == fee_type:
                return rule
        return None


@dataclass(frozen=True)
class FeeQuote:
    """Result of a fee calculation."""
    amount: Decimal
    currency: str
    fee_type: str
    calculation_type: CalculationType
    base_amount: Optional[Decimal] = field(default=None)


def calculate_fee(
    policy: FeePolicy,
    fee_type: str,
    base_amount: Optional[Decimal] = None
) -> FeeQuote:
    """Calculate the fee owed for a fee type under a policy.

    Min/max caps are applied after the raw calculation (minimum first, then
    maximum) and the result is rounded half-up to cents. The currency is
    always the policy currency; no conversion is performed.

    Args:
        policy: Client fee policy
        fee_type: Fee type to bill
        base_amount: Base for PERCENTAGE and TIERED rules (e.g. salary)

    Returns:
        FeeQuote with the rounded amount in the policy currency

    Raises:
        FeeUnavailableError: If there is no rule, the base is missing, or
            no tier matches
    """
    rule = policy.get_rule(fee_type)
    if rule is None:
        raise FeeUnavailableError(fee_type, FeeUnavailableError.NO_RULE)

    base = to_decimal(base_amount)

    if rule.calculation_type == CalculationType.FIXED:
        amount = rule.value

    elif rule.calculation_type == CalculationType.PERCENTAGE:
        if base is None:
            raise FeeUnavailableError(fee_type, FeeUnavailableError.MISSING_BASE)
        amount = base * rule.value / Decimal("100")

    else:
        if base is None or not rule.tiers:
            raise FeeUnavailableError(fee_type, FeeUnavailableError.MISSING_BASE)
        tier = next((t for t in rule.tiers if t.contains(base)), None)
        if tier is None:
            raise FeeUnavailableError(fee_type, FeeUnavailableError.NO_MATCHING_TIER)
        if tier.calculation_type == CalculationType.FIXED:
            amount = tier.value
        else:
            amount = base * tier.value / Decimal("100")

    # Clamp low, then high
    if rule.minimum_fee is not None:
        amount = max(amount, rule.minimum_fee)
    if rule.maximum_fee is not None:
        amount = min(amount, rule.maximum_fee)

    return FeeQuote(
        amount=amount.quantize(CENT, rounding=ROUND_HALF_UP),
        currency=policy.currency,
        fee_type=rule.fee_type,
        calculation_type=rule.calculation_type,
        base_amount=base,
    )


def describe_policy(policy: FeePolicy) -> str:
    """Render a plain-English summary of a policy."""
    lines = [
        f"Client: {policy.client_name} ({policy.client_code})",
        f"Billing Currency: {policy.currency}",
        f"Payment Terms: Net {policy.payment_terms_days} days",
        f"Trigger: {policy.trigger_rule.value.replace('_', ' ').lower()}",
    ]

    if policy.fee_rules:
        lines.append("")
        lines.append("Fee Structure:")
        for rule in policy.fee_rules:
            lines.append(f"  - {rule.fee_type}: {_describe_rule(rule, policy.currency)}")

    return "\n".join(lines)


def _describe_rule(rule: FeeRule, currency: str) -> str:
    if rule.calculation_type == CalculationType.FIXED:
        text = f"{currency} {rule.value.quantize(CENT)}"
    elif rule.calculation_type == CalculationType.PERCENTAGE:
        base = rule.percentage_base.value.replace("_", " ").lower() if rule.percentage_base else "amount"
        text = f"{rule.value}% of {base}"
    else:
        text = f"tiered ({len(rule.tiers)} bands)"

    caps = []
    if rule.minimum_fee is not None:
        caps.append(f"min {currency} {rule.minimum_fee.quantize(CENT)}")
    if rule.maximum_fee is not None:
        caps.append(f"max {currency} {rule.maximum_fee.quantize(CENT)}")
    if caps:
        text = f"{text} ({', '.join(caps)})"
    return text
