"""
Billable event ledger.

Creates events exactly once per idempotency key and moves them through
the approval and billing workflow:

    approve:             PENDING, HOLD      -> APPROVED
    hold:                PENDING, APPROVED  -> HOLD
    mark_invoiced:       APPROVED           -> INVOICED
    mark_partially_paid: INVOICED, PARTIAL  -> PARTIAL
    mark_paid:           INVOICED, PARTIAL  -> PAID

Every successful transition appends one StatusChange and one audit entry.
"""

import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Sequence, Union

from billing_ledger.logging_config import get_logger
from billing_ledger.storage.models import (
    AuditAction,
    BillableEvent,
    EntityType,
    EventStatus,
    StatusChange,
)
from billing_ledger.storage.repository import LedgerRepository

from .audit import AuditTrail, utc_now
from .errors import (
    DuplicateEventError,
    IllegalTransitionError,
    LedgerError,
    NotFoundError,
    ValidationError,
)
from .idempotency import derive_key, normalize_trigger_date
from .locks import KeyedLock
from .pricing import CENT, FeePolicy, calculate_fee, to_decimal

logger = get_logger(__name__)


# Statuses each operation may start from
APPROVABLE: FrozenSet[EventStatus] = frozenset({EventStatus.PENDING, EventStatus.HOLD})
HOLDABLE: FrozenSet[EventStatus] = frozenset({EventStatus.PENDING, EventStatus.APPROVED})
INVOICEABLE: FrozenSet[EventStatus] = frozenset({EventStatus.APPROVED})
PAYABLE: FrozenSet[EventStatus] = frozenset({EventStatus.INVOICED, EventStatus.PARTIAL})


@dataclass(frozen=True)
class TriggerInput:
    """One upstream fact that may create a billable event."""
    client_id: str
    control_number: str
    trigger_date: Union[date, datetime, str]
    trigger_type: str
    fee_type: str
    amount: Optional[Decimal] = None  # Overrides the calculated fee
    base_amount: Optional[Decimal] = None  # Salary, contract value etc. for percentage fees
    candidate_name: Optional[str] = None
    candidate_email: Optional[str] = None
    source_data: Dict[str, Any] = field(default_factory=dict)
    notes: Optional[str] = None


@dataclass(frozen=True)
class BulkDuplicate:
    """A bulk item skipped because its key already exists."""
    index: int
    control_number: str
    idempotency_key: str


@dataclass(frozen=True)
class BulkFailure:
    """A bulk item that failed for a reason other than duplication."""
    index: int
    control_number: str
    code: str
    message: str


@dataclass
class BulkCreateResult:
    """Outcome of bulk_create, each list in input order."""
    created: List[BillableEvent] = field(default_factory=list)
    duplicates: List[BulkDuplicate] = field(default_factory=list)
    errors: List[BulkFailure] = field(default_factory=list)


class BillableEventLedger:
    """Owns billable event creation and status transitions."""

    def __init__(
        self,
        repository: LedgerRepository,
        policies: Any = None,
        audit: Optional[AuditTrail] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """Initialize the ledger.

        Args:
            repository: Event storage
            policies: Policy provider with get_active_policy_for_client(client_id),
                needed only by create_for_client and bulk_create
            audit: Audit trail; audit is skipped when omitted
            clock: Returns the current time, UTC by default
        """
        self.repository = repository
        self.policies = policies
        self.audit = audit or AuditTrail()
        self.clock = clock or utc_now
        self._key_locks = KeyedLock()
        self._event_locks = KeyedLock()

    # Creation

    def create(self, policy: FeePolicy, trigger: TriggerInput, actor: str) -> BillableEvent:
        """Create a PENDING event for a trigger under a policy.

        Args:
            policy: Active fee policy of the trigger's client
            trigger: Upstream trigger
            actor: User or process creating the event

        Returns:
            The new event

        Raises:
            ValidationError: If the trigger is incomplete or the policy inactive
            DuplicateEventError: If the derived idempotency key already exists
            FeeUnavailableError: If no amount was supplied and none can be calculated
        """
        if not policy.is_active:
            raise ValidationError(
                f"Fee policy {policy.policy_id} is not active",
                {"policy_id": "inactive"},
            )
        if trigger.client_id and trigger.client_id != policy.client_id:
            raise ValidationError(
                f"Trigger client {trigger.client_id} does not match policy client {policy.client_id}",
                {"client_id": "does not match policy"},
            )
        if not trigger.trigger_type:
            raise ValidationError("trigger_type is required", {"trigger_type": "missing"})

        key = derive_key(policy.client_code, trigger.control_number, trigger.trigger_date, trigger.fee_type)
        trigger_date = normalize_trigger_date(trigger.trigger_date)

        with self._key_locks.hold(key):
            if self.repository.find_event_by_key(key) is not None:
                logger.warning("Duplicate billable event rejected", extra={"idempotency_key": key})
                raise DuplicateEventError(key)

            amount = self._resolve_amount(policy, trigger)
            now = self.clock()
            event = BillableEvent(
                event_id=str(uuid.uuid4()),
                idempotency_key=key,
                client_id=policy.client_id,
                client_code=policy.client_code,
                client_name=policy.client_name,
                control_number=trigger.control_number.strip(),
                trigger_date=trigger_date,
                trigger_type=trigger.trigger_type,
                fee_type=trigger.fee_type.strip().upper(),
                amount=amount,
                currency=policy.currency,
                status=EventStatus.PENDING,
                policy_id=policy.policy_id,
                policy_version=policy.version,
                created_at=now,
                created_by=actor,
                updated_at=now,
                updated_by=actor,
                status_history=(StatusChange(EventStatus.PENDING, now, actor, "Event created", 0),),
                candidate_name=trigger.candidate_name,
                candidate_email=trigger.candidate_email,
                source_data=dict(trigger.source_data),
                notes=trigger.notes,
            )

            try:
                self.repository.insert_event(event)
            except DuplicateEventError:
                logger.warning("Duplicate billable event rejected", extra={"idempotency_key": key})
                raise

        self.audit.record(
            AuditAction.CREATE,
            EntityType.BILLABLE_EVENT,
            event.event_id,
            actor,
            after=event,
            metadata={"idempotency_key": key},
        )
        logger.info(
            "Billable event created",
            extra={"event_id": event.event_id, "idempotency_key": key, "amount": str(amount)},
        )
        return event

    def create_for_client(self, trigger: TriggerInput, actor: str) -> BillableEvent:
        """Create an event using the client's active policy.

        Raises:
            ValidationError: If the client has no active policy
        """
        policy = self._active_policy(trigger.client_id)
        return self.create(policy, trigger, actor)

    def bulk_create(
        self,
        triggers: Sequence[TriggerInput],
        actor: str,
        max_workers: int = 1
    ) -> BulkCreateResult:
        """Create events for many triggers, each independently.

        A duplicate or failing item is recorded and the batch carries on.

        Args:
            triggers: Triggers to process
            actor: User or process creating the events
            max_workers: Threads to use; 1 processes items sequentially

        Returns:
            BulkCreateResult with created events, duplicates and failures
        """
        def attempt(index: int, trigger: TriggerInput):
            try:
                return index, self.create_for_client(trigger, actor), None
            except LedgerError as e:
                return index, None, e
            except Exception as e:
                logger.exception(
                    "Bulk item failed",
                    extra={"index": index, "control_number": trigger.control_number},
                )
                return index, None, LedgerError(str(e) or type(e).__name__)

        items = list(enumerate(triggers))
        if max_workers > 1 and len(items) > 1:
            with ThreadPoolExecutor(max_workers=max_workers) as executor:
                outcomes = list(executor.map(lambda item: attempt(*item), items))
        else:
            outcomes = [attempt(index, trigger) for index, trigger in items]

        result = BulkCreateResult()
        for index, event, error in outcomes:
            control_number = triggers[index].control_number
            if event is not None:
                result.created.append(event)
            elif isinstance(error, DuplicateEventError):
                result.duplicates.append(BulkDuplicate(index, control_number, error.idempotency_key))
            else:
                result.errors.append(BulkFailure(index, control_number, error.code, error.message))

        logger.info(
            "Bulk create finished",
            extra={
                "created": len(result.created),
                "duplicates": len(result.duplicates),
                "errors": len(result.errors),
            },
        )
        return result

    # Transitions

    def approve(self, event_id: str, actor: str, notes: Optional[str] = None) -> BillableEvent:
        """Approve a PENDING or HOLD event for invoicing.

        Approving a held event lifts the hold; the hold fields are kept so
        the reason stays visible.
        """
        def apply(event: BillableEvent, now: datetime):
            if event.status == EventStatus.HOLD:
                reason = f"Hold lifted: {notes}" if notes else "Hold lifted"
            else:
                reason = notes
            changes = {"approved_at": now, "approved_by": actor, "approval_notes": notes}
            return reason, changes

        return self._transition(event_id, EventStatus.APPROVED, APPROVABLE, actor, AuditAction.APPROVE, apply)

    def hold(self, event_id: str, actor: str, reason: str) -> BillableEvent:
        """Put a PENDING or APPROVED event on hold.

        Raises:
            ValidationError: If reason is blank
        """
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to hold an event", {"reason": "missing"})
        reason = reason.strip()

        def apply(event: BillableEvent, now: datetime):
            return reason, {"hold_reason": reason, "hold_at": now, "hold_by": actor}

        return self._transition(event_id, EventStatus.HOLD, HOLDABLE, actor, AuditAction.HOLD, apply)

    def mark_invoiced(self, event_id: str, actor: str) -> BillableEvent:
        return self._transition(event_id, EventStatus.INVOICED, INVOICEABLE, actor, AuditAction.STATUS_CHANGE)

    def mark_partially_paid(self, event_id: str, actor: str) -> BillableEvent:
        return self._transition(event_id, EventStatus.PARTIAL, PAYABLE, actor, AuditAction.STATUS_CHANGE)

    def mark_paid(self, event_id: str, actor: str) -> BillableEvent:
        return self._transition(event_id, EventStatus.PAID, PAYABLE, actor, AuditAction.STATUS_CHANGE)

    def locked(self, event_id: str):
        """Hold the event's lock across a multi-step operation.

        Transitions made by the holding thread inside the block still go
        through; other threads wait until the block exits.
        """
        return self._event_locks.hold(event_id)

    # Queries

    def get(self, event_id: str) -> BillableEvent:
        """Get an event by id.

        Raises:
            NotFoundError: If the event doesn't exist
        """
        event = self.repository.get_event(event_id)
        if event is None:
            raise NotFoundError("BillableEvent", event_id)
        return event

    def find_by_key(self, idempotency_key: str) -> Optional[BillableEvent]:
        return self.repository.find_event_by_key(idempotency_key)

    def list_by_status(self, status: EventStatus) -> List[BillableEvent]:
        return self.repository.list_events(status=status)

    def list_by_client(self, client_id: str) -> List[BillableEvent]:
        return self.repository.list_events(client_id=client_id)

    def list_all(self) -> List[BillableEvent]:
        return self.repository.list_events()

    def ready_to_invoice(self) -> List[BillableEvent]:
        """Approved events waiting for an invoice."""
        return self.repository.list_events(status=EventStatus.APPROVED)

    # Internals

    def _active_policy(self, client_id: str) -> FeePolicy:
        if self.policies is None:
            raise ValidationError("No policy provider configured", {"client_id": client_id})
        policy = self.policies.get_active_policy_for_client(client_id)
        if policy is None:
            raise ValidationError(
                f"No active fee policy for client {client_id}",
                {"client_id": "no active policy"},
            )
        return policy

    def _resolve_amount(self, policy: FeePolicy, trigger: TriggerInput) -> Decimal:
        if trigger.amount is not None:
            amount = _money(trigger.amount, "amount")
            if amount < 0:
                raise ValidationError("amount cannot be negative", {"amount": "negative"})
            return amount.quantize(CENT, rounding=ROUND_HALF_UP)
        base_amount = _money(trigger.base_amount, "base_amount")
        return calculate_fee(policy, trigger.fee_type.strip().upper(), base_amount).amount

    def _transition(
        self,
        event_id: str,
        target: EventStatus,
        allowed: FrozenSet[EventStatus],
        actor: str,
        action: AuditAction,
        apply: Optional[Callable] = None
    ) -> BillableEvent:
        with self._event_locks.hold(event_id):
            event = self.get(event_id)
            if event.status not in allowed:
                expected = " or ".join(sorted(s.value for s in allowed))
                raise IllegalTransitionError(
                    event_id,
                    event.status.value,
                    target.value,
                    f"expected {expected}",
                )

            now = self.clock()
            reason, changes = apply(event, now) if apply else (None, {})
            change = StatusChange(target, now, actor, reason, len(event.status_history))
            updated = replace(event, status=target, updated_at=now, updated_by=actor, **changes)
            self.repository.update_event(updated, change)
            updated = replace(updated, status_history=event.status_history + (change,))

        self.audit.record(
            action,
            EntityType.BILLABLE_EVENT,
            event_id,
            actor,
            before={"status": event.status.value},
            after={"status": target.value},
            metadata={"reason": reason} if reason else None,
        )
        logger.info(
            "Billable event status changed",
            extra={"event_id": event_id, "from_status": event.status.value, "to_status": target.value},
        )
        return updated


def _money(value: Any, name: str) -> Optional[Decimal]:
    """Parse a caller-supplied amount; None passes through."""
    try:
        amount = to_decimal(value)
    except (ArithmeticError, ValueError, TypeError):
        raise ValidationError(f"{name} must be a number, got {value!r}", {name: "not a number"})
    if amount is not None and not amount.is_finite():
        raise ValidationError(f"{name} must be a finite number", {name: "not finite"})
    return amount
