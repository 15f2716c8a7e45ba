"""
Unit tests for fee calculation.

Tests fixed, percentage and tiered rules, min/max clamping, and rounding.
"""

from decimal import Decimal

import pytest

from billing_ledger.core.errors import FeeUnavailableError
from billing_ledger.core.pricing import (
    CalculationType,
    FeePolicy,
    FeeRule,
    FeeTier,
    PercentageBase,
    TriggerRule,
    calculate_fee,
    describe_policy,
)


def _policy(*rules, currency="USD", terms=30):
    return FeePolicy(
        policy_id="pol-1",
        client_id="client-1",
        client_code="ACME",
        client_name="Acme Corp",
        trigger_rule=TriggerRule.ON_PLACEMENT,
        fee_rules=rules,
        currency=currency,
        payment_terms_days=terms,
    )


TIERED = FeeRule(
    fee_type="PLACEMENT_FEE",
    calculation_type=CalculationType.TIERED,
    tiers=(
        FeeTier(from_amount=0, to_amount=50000, value=5000),
        FeeTier(from_amount=50000, to_amount=100000, value=20, calculation_type=CalculationType.PERCENTAGE),
        FeeTier(from_amount=100000, value=25, calculation_type=CalculationType.PERCENTAGE),
    ),
)


class TestFixedFees:
    """Test FIXED rules."""

    def test_fixed_ignores_base(self):
        """A fixed fee of 500 is 500 whatever the base."""
        policy = _policy(FeeRule("FLAT", CalculationType.FIXED, value=Decimal("500")))
        assert calculate_fee(policy, "FLAT").amount == Decimal("500.00")
        assert calculate_fee(policy, "FLAT", Decimal("123456")).amount == Decimal("500.00")

    def test_currency_is_policy_currency(self):
        policy = _policy(FeeRule("FLAT", CalculationType.FIXED, value=500), currency="GBP")
        quote = calculate_fee(policy, "FLAT")
        assert quote.currency == "GBP"
        assert quote.calculation_type == CalculationType.FIXED


class TestPercentageFees:
    """Test PERCENTAGE rules and clamping."""

    def setup_method(self):
        self.policy = _policy(FeeRule(
            fee_type="PLACEMENT_FEE",
            calculation_type=CalculationType.PERCENTAGE,
            value=Decimal("15"),
            percentage_base=PercentageBase.SALARY,
            minimum_fee=Decimal("100"),
            maximum_fee=Decimal("2000"),
        ))

    @pytest.mark.parametrize("base,expected", [
        ("100", "100.00"),     # 15.00 clamped up to the minimum
        ("20000", "2000.00"),  # 3000.00 clamped down to the maximum
        ("4000", "600.00"),    # unclamped
    ])
    def test_clamping(self, base, expected):
        assert calculate_fee(self.policy, "PLACEMENT_FEE", Decimal(base)).amount == Decimal(expected)

    def test_missing_base(self):
        """Verify a percentage fee without a base is unavailable."""
        with pytest.raises(FeeUnavailableError) as exc_info:
            calculate_fee(self.policy, "PLACEMENT_FEE")
        assert exc_info.value.reason == FeeUnavailableError.MISSING_BASE
        assert exc_info.value.code == "FEE_UNAVAILABLE"

    def test_rounds_half_up_to_cents(self):
        policy = _policy(FeeRule("PCT", CalculationType.PERCENTAGE, value=Decimal("12.5")))
        # 12.5% of 100.02 = 12.5025
        assert calculate_fee(policy, "PCT", Decimal("100.02")).amount == Decimal("12.50")
        # 12.5% of 100.1 = 12.5125
        assert calculate_fee(policy, "PCT", Decimal("100.1")).amount == Decimal("12.51")

    def test_float_base_has_no_binary_artifacts(self):
        policy = _policy(FeeRule("PCT", CalculationType.PERCENTAGE, value=10))
        assert calculate_fee(policy, "PCT", 0.3).amount == Decimal("0.03")


class TestTieredFees:
    """Test TIERED rules."""

    def test_fixed_tier(self):
        assert calculate_fee(_policy(TIERED), "PLACEMENT_FEE", 40000).amount == Decimal("5000.00")

    def test_percentage_tier(self):
        assert calculate_fee(_policy(TIERED), "PLACEMENT_FEE", 80000).amount == Decimal("16000.00")

    def test_bounds_are_half_open(self):
        """A base equal to a tier's upper bound falls in the next tier."""
        assert calculate_fee(_policy(TIERED), "PLACEMENT_FEE", 50000).amount == Decimal("10000.00")
        assert calculate_fee(_policy(TIERED), "PLACEMENT_FEE", 100000).amount == Decimal("25000.00")

    def test_no_matching_tier(self):
        rule = FeeRule(
            fee_type="PLACEMENT_FEE",
            calculation_type=CalculationType.TIERED,
            tiers=(FeeTier(from_amount=10000, to_amount=20000, value=1000),),
        )
        with pytest.raises(FeeUnavailableError) as exc_info:
            calculate_fee(_policy(rule), "PLACEMENT_FEE", 5000)
        assert exc_info.value.reason == FeeUnavailableError.NO_MATCHING_TIER

    def test_tiered_without_base(self):
        with pytest.raises(FeeUnavailableError) as exc_info:
            calculate_fee(_policy(TIERED), "PLACEMENT_FEE")
        assert exc_info.value.reason == FeeUnavailableError.MISSING_BASE

    def test_tier_bounds_validated(self):
        with pytest.raises(ValueError, match="to_amount must be greater"):
            FeeTier(from_amount=100, to_amount=100, value=1)


class TestPolicyLookup:
    """Test rule lookup and policy description."""

    def test_unknown_fee_type(self):
        policy = _policy(FeeRule("FLAT", CalculationType.FIXED, value=500))
        with pytest.raises(FeeUnavailableError) as exc_info:
            calculate_fee(policy, "CONVERSION_FEE")
        assert exc_info.value.reason == FeeUnavailableError.NO_RULE
        assert exc_info.value.fee_type == "CONVERSION_FEE"

    def test_fee_type_case_is_normalized(self):
        policy = _policy(FeeRule(" flat_fee ", CalculationType.FIXED, value=500))

        assert policy.fee_rules[0].fee_type == "FLAT_FEE"
        assert calculate_fee(policy, "Flat_Fee").amount == Decimal("500.00")

    def test_client_code_must_be_alphanumeric(self):
        with pytest.raises(ValueError, match="alphanumeric"):
            FeePolicy(
                policy_id="p", client_id="c", client_code="AC-ME", client_name="Acme",
                trigger_rule=TriggerRule.MANUAL, fee_rules=(), currency="USD",
            )

    def test_describe_policy(self):
        policy = _policy(
            FeeRule("PLACEMENT_FEE", CalculationType.PERCENTAGE, value=15,
                    percentage_base=PercentageBase.SALARY, minimum_fee=5000),
            FeeRule("ONBOARDING_FEE", CalculationType.FIXED, value=1000),
            terms=45,
        )
        text = describe_policy(policy)
        assert "Client: Acme Corp (ACME)" in text
        assert "Payment Terms: Net 45 days" in text
        assert "Trigger: on placement" in text
        assert "PLACEMENT_FEE: 15% of salary (min USD 5000.00)" in text
        assert "ONBOARDING_FEE: USD 1000.00" in text
