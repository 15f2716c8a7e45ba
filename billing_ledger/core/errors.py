"""
Typed errors for the billing ledger.

Every error carries a stable machine-readable code so callers can branch
on the kind of failure instead of parsing message text.
"""

from typing import Dict, Optional


class LedgerError(Exception):
    """Base class for all ledger errors."""
    code = "LEDGER_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(LedgerError):
    """Raised when caller input is malformed or missing."""
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, fields: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.fields = dict(fields or {})


class DuplicateEventError(LedgerError):
    """Raised when an idempotency key is already present in the ledger.

    This is an expected outcome for re-delivered triggers, not a fault.
    """
    code = "DUPLICATE_ENTRY"

    def __init__(self, idempotency_key: str):
        super().__init__(f"Duplicate entry detected with idempotency key: {idempotency_key}")
        self.idempotency_key = idempotency_key


class NotFoundError(LedgerError):
    """Raised when an entity id is unknown."""
    code = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(f"{entity_type} not found: {entity_id}")
        self.entity_type = entity_type
        self.entity_id = entity_id


class IllegalTransitionError(LedgerError):
    """Raised when a status change is not allowed from the current status."""
    code = "ILLEGAL_TRANSITION"

    def __init__(self, entity_id: str, current: str, target: str, detail: str = ""):
        message = f"Cannot move {entity_id} from {current} to {target}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.entity_id = entity_id
        self.current = current
        self.target = target


class AlreadyInvoicedError(LedgerError):
    """Raised when an event already has an invoice link."""
    code = "ALREADY_INVOICED"

    def __init__(self, billable_event_id: str, invoice_id: Optional[str] = None):
        super().__init__(f"Invoice already exists for billable event {billable_event_id}")
        self.billable_event_id = billable_event_id
        self.invoice_id = invoice_id


class FeeUnavailableError(LedgerError):
    """Raised when no fee can be computed for a fee type."""
    code = "FEE_UNAVAILABLE"

    NO_RULE = "no_rule"
    MISSING_BASE = "missing_base"
    NO_MATCHING_TIER = "no_matching_tier"

    def __init__(self, fee_type: str, reason: str):
        super().__init__(f"Unable to calculate fee for {fee_type}: {reason.replace('_', ' ')}")
        self.fee_type = fee_type
        self.reason = reason


class IntegrationError(LedgerError):
    """Raised when an external system call fails."""
    code = "INTEGRATION_ERROR"

    def __init__(self, integration: str, message: str, original: Optional[BaseException] = None):
        super().__init__(f"{integration} integration error: {message}")
        self.integration = integration
        self.original = original
