"""
Accounting system contract.

The ledger never talks to an accounting product directly; it builds an
InvoiceRequest and hands it to whatever AccountingClient it was given.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional, Protocol

from billing_ledger.storage.models import InvoiceStatus


@dataclass(frozen=True)
class InvoiceRequest:
    """Everything the accounting system needs to raise one invoice."""
    idempotency_key: str
    customer_name: str
    fee_type: str
    amount: Decimal
    currency: str
    invoice_date: date
    due_date: date
    memo: str
    description: Optional[str] = None


@dataclass(frozen=True)
class InvoiceResponse:
    """Identifiers the accounting system assigned to a new invoice."""
    external_invoice_id: str
    external_doc_number: str
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None


class AccountingClient(Protocol):
    """External accounting system."""

    def create_invoice(self, request: InvoiceRequest) -> InvoiceResponse:
        ...

    def fetch_invoice_status(self, external_invoice_id: str) -> InvoiceStatus:
        ...
