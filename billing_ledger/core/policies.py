"""
Client fee policy registry.

Keeps at most one active policy per client code. Changing the fee rules
or the trigger rule creates a new version; the old version is kept,
inactive, so events can still be traced to the terms they were billed under.
"""

import threading
import uuid
from dataclasses import replace
from datetime import date, datetime
from typing import Callable, List, Optional, Sequence

from billing_ledger.logging_config import get_logger
from billing_ledger.storage.models import AuditAction, EntityType
from billing_ledger.storage.repository import LedgerRepository

from .audit import AuditTrail, utc_now
from .errors import NotFoundError, ValidationError
from .pricing import FeePolicy, FeeRule, TriggerRule, describe_policy

logger = get_logger(__name__)

# Fields that, when changed, produce a new policy version
VERSIONED_FIELDS = ("fee_rules", "trigger_rule")

UPDATABLE_FIELDS = (
    "client_name",
    "trigger_rule",
    "fee_rules",
    "currency",
    "payment_terms_days",
    "effective_date",
    "auto_approve",
    "notes",
    "description",
    "is_active",
)


class PolicyRegistry:
    """Versioned store of client fee policies.

    Also serves as the policy provider for BillableEventLedger.
    """

    def __init__(
        self,
        repository: LedgerRepository,
        audit: Optional[AuditTrail] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.repository = repository
        self.audit = audit or AuditTrail()
        self.clock = clock or utc_now
        self._lock = threading.Lock()

    def create_policy(
        self,
        client_id: str,
        client_code: str,
        client_name: str,
        trigger_rule: TriggerRule,
        fee_rules: Sequence[FeeRule],
        currency: str,
        actor: str,
        payment_terms_days: int = 30,
        effective_date: Optional[date] = None,
        auto_approve: bool = False,
        notes: Optional[str] = None,
        description: Optional[str] = None
    ) -> FeePolicy:
        """Create version 1 of a client's policy.

        Raises:
            ValidationError: If inputs are invalid or the client code already
                has an active policy
        """
        missing = {}
        if not client_id:
            missing["client_id"] = "missing"
        if not client_name:
            missing["client_name"] = "missing"
        if not fee_rules:
            missing["fee_rules"] = "at least one fee rule is required"
        if missing:
            raise ValidationError("Invalid fee policy", missing)

        now = self.clock()
        try:
            policy = FeePolicy(
                policy_id=str(uuid.uuid4()),
                client_id=client_id,
                client_code=(client_code or "").strip().upper(),
                client_name=client_name,
                trigger_rule=trigger_rule,
                fee_rules=tuple(fee_rules),
                currency=(currency or "").strip().upper(),
                payment_terms_days=payment_terms_days,
                effective_date=effective_date,
                auto_approve=auto_approve,
                notes=notes,
                description=description,
                created_at=now,
                created_by=actor,
                updated_at=now,
                updated_by=actor,
            )
        except ValueError as e:
            raise ValidationError(f"Invalid fee policy: {e}")

        return self.add_policy(policy, actor)

    def add_policy(self, policy: FeePolicy, actor: str) -> FeePolicy:
        """Store a fully built policy as the active policy for its client code.

        Used by create_policy and by bulk loaders that parse policies from
        files.

        Raises:
            ValidationError: If the client code already has an active policy
        """
        if policy.description is None:
            policy = replace(policy, description=describe_policy(policy))

        with self._lock:
            existing = self.get_active_policy_for_code(policy.client_code)
            if existing is not None and policy.is_active:
                raise ValidationError(
                    f"Client code {policy.client_code} already has an active policy",
                    {"client_code": "an active policy already exists"},
                )
            self.repository.insert_policy(policy)

        self.audit.record(
            AuditAction.CREATE,
            EntityType.CLIENT_POLICY,
            policy.policy_id,
            actor,
            after=policy,
        )
        logger.info(
            "Fee policy created",
            extra={"policy_id": policy.policy_id, "client_code": policy.client_code},
        )
        return policy

    def update_policy(self, policy_id: str, actor: str, **changes) -> FeePolicy:
        """Apply changes to the latest version of a policy.

        A change to fee_rules or trigger_rule creates a new version and
        marks the previous one inactive; other changes are made in place.

        Returns:
            The updated (or newly versioned) policy

        Raises:
            NotFoundError: If the policy doesn't exist
            ValidationError: If a field cannot be updated or is invalid
        """
        unknown = sorted(set(changes) - set(UPDATABLE_FIELDS))
        if unknown:
            raise ValidationError(
                f"Cannot update fields: {', '.join(unknown)}",
                {name: "not updatable" for name in unknown},
            )
        if "fee_rules" in changes:
            changes["fee_rules"] = tuple(changes["fee_rules"])
            if not changes["fee_rules"]:
                raise ValidationError("Invalid fee policy", {"fee_rules": "at least one fee rule is required"})

        with self._lock:
            current = self.get(policy_id)
            if changes.get("is_active") and not current.is_active:
                other = self.get_active_policy_for_code(current.client_code)
                if other is not None:
                    raise ValidationError(
                        f"Client code {current.client_code} already has an active policy",
                        {"client_code": "an active policy already exists"},
                    )
            now = self.clock()
            versioned = any(
                name in changes and changes[name] != getattr(current, name)
                for name in VERSIONED_FIELDS
            )

            try:
                updated = replace(current, updated_at=now, updated_by=actor, **changes)
            except ValueError as e:
                raise ValidationError(f"Invalid fee policy: {e}")

            if versioned:
                if "description" not in changes:
                    updated = replace(updated, description=None)
                updated = replace(
                    updated,
                    version=current.version + 1,
                    created_at=now,
                    created_by=actor,
                    description=updated.description or describe_policy(updated),
                )
                # Retire the old version first so only one is ever active
                self.repository.update_policy(replace(current, is_active=False, updated_at=now, updated_by=actor))
                self.repository.insert_policy(updated)
            else:
                self.repository.update_policy(updated)

        self.audit.record(
            AuditAction.UPDATE,
            EntityType.CLIENT_POLICY,
            policy_id,
            actor,
            before=current,
            after=updated,
            metadata={"new_version": versioned, "version": updated.version},
        )
        logger.info(
            "Fee policy updated",
            extra={"policy_id": policy_id, "version": updated.version, "new_version": versioned},
        )
        return updated

    def deactivate_policy(self, policy_id: str, actor: str) -> FeePolicy:
        """Mark the latest version of a policy inactive."""
        return self.update_policy(policy_id, actor, is_active=False)

    def get(self, policy_id: str, version: Optional[int] = None) -> FeePolicy:
        """Get a policy version, the latest when no version is given.

        Raises:
            NotFoundError: If no such policy (or version) exists
        """
        policy = self.repository.get_policy(policy_id, version)
        if policy is None:
            raise NotFoundError("FeePolicy", policy_id if version is None else f"{policy_id} v{version}")
        return policy

    def get_active_policy_for_client(self, client_id: str) -> Optional[FeePolicy]:
        active = [p for p in self.repository.list_policies() if p.is_active and p.client_id == client_id]
        return max(active, key=lambda p: p.version) if active else None

    def get_active_policy_for_code(self, client_code: str) -> Optional[FeePolicy]:
        code = (client_code or "").strip().upper()
        active = [p for p in self.repository.list_policies() if p.is_active and p.client_code == code]
        return max(active, key=lambda p: p.version) if active else None

    def list_policies(self, active_only: bool = False) -> List[FeePolicy]:
        """List policies ordered by client code and version."""
        policies = self.repository.list_policies()
        if active_only:
            policies = [p for p in policies if p.is_active]
        return sorted(policies, key=lambda p: (p.client_code, p.version))
