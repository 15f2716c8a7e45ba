"""
Data models for storage layer.

Defines ledger entities and their status enumerations.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class EventStatus(Enum):
    """Lifecycle status of a billable event.

    Overdue is not an event status; it is derived from the invoice link.
    """
    PENDING = "PENDING"      # Awaiting approval
    APPROVED = "APPROVED"    # Approved, ready for invoicing
    INVOICED = "INVOICED"    # External invoice created
    PARTIAL = "PARTIAL"      # Partial payment received
    PAID = "PAID"            # Paid in full
    HOLD = "HOLD"            # On hold (dispute, review, etc.)
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    CREDITED = "CREDITED"


class InvoiceStatus(Enum):
    """Status of an external invoice as tracked by the invoice link."""
    DRAFT = "DRAFT"
    PENDING = "PENDING"
    SENT = "SENT"
    VIEWED = "VIEWED"
    PARTIAL = "PARTIAL"
    PAID = "PAID"
    OVERDUE = "OVERDUE"
    VOIDED = "VOIDED"


class HistorySource(Enum):
    """Who initiated an invoice status change."""
    PORTAL = "PORTAL"
    EXTERNAL_SYNC = "EXTERNAL_SYNC"


class AuditAction(Enum):
    """State-changing actions recorded in the audit trail."""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    APPROVE = "APPROVE"
    HOLD = "HOLD"
    STATUS_CHANGE = "STATUS_CHANGE"
    INVOICE_CREATE = "INVOICE_CREATE"
    PAYMENT_RECORD = "PAYMENT_RECORD"
    STATUS_SYNC = "STATUS_SYNC"
    SYNC = "SYNC"


class EntityType(Enum):
    """Kinds of entity referenced by audit entries."""
    CLIENT_POLICY = "CLIENT_POLICY"
    BILLABLE_EVENT = "BILLABLE_EVENT"
    INVOICE_LINK = "INVOICE_LINK"
    SYSTEM = "SYSTEM"


@dataclass(frozen=True)
class StatusChange:
    """One entry in a billable event's append-only status history."""
    status: EventStatus
    timestamp: datetime
    actor: str
    reason: Optional[str] = None
    sequence: int = 0


@dataclass(frozen=True)
class BillableEvent:
    """Ledger entry for a single billable occurrence.

    Created once per idempotency key and never deleted. Mutations produce a
    new instance plus one appended StatusChange.
    """
    event_id: str
    idempotency_key: str
    client_id: str
    client_code: str
    client_name: str
    control_number: str
    trigger_date: date
    trigger_type: str
    fee_type: str
    amount: Decimal
    currency: str
    status: EventStatus
    policy_id: str
    policy_version: int
    created_at: datetime
    created_by: str
    updated_at: datetime
    updated_by: str
    status_history: Tuple[StatusChange, ...] = ()
    candidate_name: Optional[str] = None
    candidate_email: Optional[str] = None
    source_data: Dict[str, Any] = field(default_factory=dict)
    notes: Optional[str] = None
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    approval_notes: Optional[str] = None
    hold_reason: Optional[str] = None
    hold_at: Optional[datetime] = None
    hold_by: Optional[str] = None


@dataclass(frozen=True)
class PaymentRecord:
    """Payment received against an external invoice."""
    external_payment_id: str
    payment_date: date
    amount: Decimal
    currency: str
    method: Optional[str] = None
    reference: Optional[str] = None
    synced_at: Optional[datetime] = None


@dataclass(frozen=True)
class InvoiceStatusChange:
    """One entry in an invoice link's append-only status history."""
    status: InvoiceStatus
    timestamp: datetime
    source: HistorySource
    sequence: int = 0


@dataclass(frozen=True)
class InvoiceLink:
    """Connects one billable event to exactly one external invoice.

    Amount and currency are copied from the event at creation and frozen.
    Invariants: balance == max(0, amount - total_paid); total_paid only grows.
    """
    invoice_id: str
    billable_event_id: str
    idempotency_key: str
    external_invoice_id: str
    external_doc_number: str
    invoice_date: date
    due_date: date
    amount: Decimal
    currency: str
    status: InvoiceStatus
    total_paid: Decimal
    balance: Decimal
    created_at: datetime
    created_by: str
    updated_at: datetime
    last_synced_at: datetime
    status_history: Tuple[InvoiceStatusChange, ...] = ()
    payments: Tuple[PaymentRecord, ...] = ()
    paid_in_full_date: Optional[date] = None
    customer_name: Optional[str] = None
    memo: Optional[str] = None


@dataclass(frozen=True)
class AuditEntry:
    """Immutable record of a state-changing operation."""
    entry_id: str
    action: AuditAction
    entity_type: EntityType
    entity_id: Optional[str]
    actor: str
    timestamp: datetime
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
