"""
Unit tests for the policy registry.

Tests creation, versioning, and active-policy lookup.
"""

from decimal import Decimal

import pytest

from billing_ledger.core.errors import NotFoundError, ValidationError
from billing_ledger.core.pricing import CalculationType, FeeRule, TriggerRule
from billing_ledger.storage.models import AuditAction, EntityType


class TestCreatePolicy:
    """Test policy creation."""

    def test_first_version(self, policy, clock):
        assert policy.version == 1
        assert policy.is_active
        assert policy.client_code == "ACME"
        assert policy.created_by == "admin"
        assert policy.created_at == clock.now
        assert "Acme Corp (ACME)" in policy.description

    def test_second_active_policy_rejected(self, registry, policy, placement_rule):
        with pytest.raises(ValidationError, match="already has an active policy"):
            registry.create_policy(
                client_id="client-acme-2",
                client_code="acme",
                client_name="Acme Again",
                trigger_rule=TriggerRule.ON_PLACEMENT,
                fee_rules=[placement_rule],
                currency="USD",
                actor="admin",
            )

    def test_requires_fee_rules(self, registry):
        with pytest.raises(ValidationError) as exc_info:
            registry.create_policy(
                client_id="client-x",
                client_code="X",
                client_name="X Ltd",
                trigger_rule=TriggerRule.MANUAL,
                fee_rules=[],
                currency="USD",
                actor="admin",
            )
        assert "fee_rules" in exc_info.value.fields

    def test_invalid_client_code(self, registry, placement_rule):
        with pytest.raises(ValidationError, match="alphanumeric"):
            registry.create_policy(
                client_id="client-x",
                client_code="X-1",
                client_name="X Ltd",
                trigger_rule=TriggerRule.MANUAL,
                fee_rules=[placement_rule],
                currency="USD",
                actor="admin",
            )

    def test_creation_audited(self, repository, policy):
        entries = repository.list_audit_entries(EntityType.CLIENT_POLICY, policy.policy_id)
        assert [e.action for e in entries] == [AuditAction.CREATE]


class TestUpdatePolicy:
    """Test versioning rules."""

    def test_fee_rule_change_creates_version(self, registry, policy):
        """Changing fee rules keeps the old version, inactive, for audit."""
        new_rule = FeeRule("PLACEMENT_FEE", CalculationType.FIXED, value=Decimal("9000"))

        updated = registry.update_policy(policy.policy_id, "admin", fee_rules=[new_rule])

        assert updated.version == 2
        assert updated.is_active
        assert updated.policy_id == policy.policy_id
        assert "USD 9000.00" in updated.description
        assert registry.get(policy.policy_id).version == 2
        old = registry.get(policy.policy_id, version=1)
        assert not old.is_active
        assert old.fee_rules == policy.fee_rules
        assert registry.get_active_policy_for_code("ACME").version == 2

    def test_trigger_rule_change_creates_version(self, registry, policy):
        updated = registry.update_policy(policy.policy_id, "admin", trigger_rule=TriggerRule.ON_ONBOARD)
        assert updated.version == 2

    def test_other_changes_update_in_place(self, registry, policy):
        updated = registry.update_policy(policy.policy_id, "admin", payment_terms_days=60, notes="renegotiated")

        assert updated.version == 1
        assert updated.payment_terms_days == 60
        assert len(registry.list_policies()) == 1

    def test_unchanged_fee_rules_do_not_version(self, registry, policy):
        updated = registry.update_policy(policy.policy_id, "admin", fee_rules=list(policy.fee_rules))
        assert updated.version == 1

    def test_unknown_field_rejected(self, registry, policy):
        with pytest.raises(ValidationError, match="client_code"):
            registry.update_policy(policy.policy_id, "admin", client_code="OTHER")

    def test_unknown_policy(self, registry):
        with pytest.raises(NotFoundError):
            registry.update_policy("missing", "admin", notes="x")

    def test_deactivate(self, registry, policy):
        registry.deactivate_policy(policy.policy_id, "admin")

        assert registry.get_active_policy_for_client("client-acme") is None
        assert registry.list_policies(active_only=True) == []
        assert len(registry.list_policies()) == 1

    def test_reactivation_blocked_by_newer_policy(self, registry, policy, placement_rule):
        registry.deactivate_policy(policy.policy_id, "admin")
        registry.create_policy(
            client_id="client-acme",
            client_code="ACME",
            client_name="Acme Corp",
            trigger_rule=TriggerRule.MANUAL,
            fee_rules=[placement_rule],
            currency="USD",
            actor="admin",
        )
        with pytest.raises(ValidationError):
            registry.update_policy(policy.policy_id, "admin", is_active=True)


class TestLookup:
    """Test policy provider lookups."""

    def test_active_policy_for_client(self, registry, policy):
        assert registry.get_active_policy_for_client("client-acme") == policy
        assert registry.get_active_policy_for_client("nobody") is None

    def test_active_policy_for_code_is_case_insensitive(self, registry, policy):
        assert registry.get_active_policy_for_code("acme") == policy

    def test_unknown_version(self, registry, policy):
        with pytest.raises(NotFoundError):
            registry.get(policy.policy_id, version=7)
