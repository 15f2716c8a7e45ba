"""
Shared fixtures for ledger tests.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from billing_ledger.core.audit import AuditTrail
from billing_ledger.core.events import BillableEventLedger, TriggerInput
from billing_ledger.core.invoices import InvoiceLedger
from billing_ledger.core.policies import PolicyRegistry
from billing_ledger.core.pricing import (
    CalculationType,
    FeeRule,
    PercentageBase,
    TriggerRule,
)
from billing_ledger.storage.repository import InMemoryLedgerRepository


class FixedClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 1, 15, 9, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def repository():
    return InMemoryLedgerRepository()


@pytest.fixture
def audit(repository, clock):
    return AuditTrail(repository, clock)


@pytest.fixture
def registry(repository, audit, clock):
    return PolicyRegistry(repository, audit, clock)


@pytest.fixture
def placement_rule():
    return FeeRule(
        fee_type="PLACEMENT_FEE",
        calculation_type=CalculationType.PERCENTAGE,
        value=Decimal("15"),
        percentage_base=PercentageBase.SALARY,
        minimum_fee=Decimal("5000"),
    )


@pytest.fixture
def policy(registry, placement_rule):
    """Active ACME policy: 15% of salary (min 5000) plus a fixed 1000 onboarding fee."""
    return registry.create_policy(
        client_id="client-acme",
        client_code="ACME",
        client_name="Acme Corp",
        trigger_rule=TriggerRule.ON_PLACEMENT,
        fee_rules=[
            placement_rule,
            FeeRule(fee_type="ONBOARDING_FEE", calculation_type=CalculationType.FIXED, value=Decimal("1000")),
        ],
        currency="USD",
        actor="admin",
        payment_terms_days=30,
    )


@pytest.fixture
def events(repository, registry, audit, clock):
    return BillableEventLedger(repository, registry, audit, clock)


@pytest.fixture
def invoices(repository, events, registry, audit, clock):
    return InvoiceLedger(repository, events, registry, audit=audit, clock=clock)


def make_trigger(control_number="PL12345", fee_type="PLACEMENT_FEE", **overrides):
    """Build a trigger for the ACME client."""
    values = dict(
        client_id="client-acme",
        control_number=control_number,
        trigger_date="2023-12-15",
        trigger_type="ON_PLACEMENT",
        fee_type=fee_type,
        base_amount=Decimal("100000"),
    )
    values.update(overrides)
    return TriggerInput(**values)
