"""
Reconciliation reporting and status sync.

Aggregates invoice links into outstanding, overdue and aging figures.
Reporting is read-only; status sync is the one operation here that
writes, and it only ever overrides statuses reported by the accounting system.
"""

from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Callable, Dict, Iterable, List

from billing_ledger.logging_config import get_logger
from billing_ledger.storage.models import InvoiceLink, InvoiceStatus

from .invoices import AGING_BUCKETS, InvoiceLedger, aging_bucket, days_overdue, is_overdue

logger = get_logger(__name__)

ZERO = Decimal("0.00")


@dataclass
class StatusTotals:
    """Count and open balance for one invoice status."""
    count: int = 0
    balance: Decimal = ZERO


@dataclass
class CurrencyTotals:
    """Outstanding and overdue amounts in one currency."""
    outstanding: Decimal = ZERO
    overdue: Decimal = ZERO


@dataclass
class AgingTotals:
    """Count and amount of overdue invoices in one aging bucket."""
    count: int = 0
    amount: Decimal = ZERO


@dataclass(frozen=True)
class OverdueInvoice:
    """One overdue invoice in a report."""
    invoice_id: str
    billable_event_id: str
    idempotency_key: str
    external_doc_number: str
    customer_name: str
    currency: str
    amount: Decimal
    balance: Decimal
    due_date: date
    days_overdue: int
    aging_bucket: str


@dataclass
class ReconciliationSummary:
    """Aggregate view of invoice links at a point in time."""
    as_of: date
    invoice_count: int = 0
    by_status: Dict[str, StatusTotals] = field(default_factory=dict)
    by_currency: Dict[str, CurrencyTotals] = field(default_factory=dict)
    total_outstanding: Decimal = ZERO
    total_overdue: Decimal = ZERO
    aging: Dict[str, AgingTotals] = field(
        default_factory=lambda: OrderedDict((bucket, AgingTotals()) for bucket in AGING_BUCKETS)
    )
    overdue: List[OverdueInvoice] = field(default_factory=list)


@dataclass
class SyncError:
    """A link whose status could not be synced."""
    invoice_id: str
    message: str


@dataclass
class SyncResult:
    """Outcome of sync_invoice_statuses."""
    synced: int = 0
    updated: int = 0
    errors: List[SyncError] = field(default_factory=list)


def overdue_report(links: Iterable[InvoiceLink], today: date) -> List[OverdueInvoice]:
    """List overdue invoices, most overdue first."""
    rows = []
    for link in links:
        if not is_overdue(link, today):
            continue
        days = days_overdue(link, today)
        rows.append(OverdueInvoice(
            invoice_id=link.invoice_id,
            billable_event_id=link.billable_event_id,
            idempotency_key=link.idempotency_key,
            external_doc_number=link.external_doc_number,
            customer_name=link.customer_name or "",
            currency=link.currency,
            amount=link.amount,
            balance=link.balance,
            due_date=link.due_date,
            days_overdue=days,
            aging_bucket=aging_bucket(days),
        ))
    rows.sort(key=lambda row: (-row.days_overdue, row.invoice_id))
    return rows


def summarize(links: Iterable[InvoiceLink], today: date) -> ReconciliationSummary:
    """Summarize invoice links as of a date.

    Totals are plain sums across currencies; by_currency gives the
    per-currency split. An empty input yields an all-zero summary with
    every aging bucket present.

    Args:
        links: Invoice links to summarize
        today: Reporting date for overdue and aging

    Returns:
        ReconciliationSummary
    """
    links = list(links)
    summary = ReconciliationSummary(as_of=today, invoice_count=len(links))

    for link in links:
        status_totals = summary.by_status.setdefault(link.status.value, StatusTotals())
        status_totals.count += 1
        status_totals.balance += link.balance

        if link.balance > 0 and link.status != InvoiceStatus.VOIDED:
            currency_totals = summary.by_currency.setdefault(link.currency, CurrencyTotals())
            currency_totals.outstanding += link.balance
            summary.total_outstanding += link.balance

    summary.overdue = overdue_report(links, today)
    for row in summary.overdue:
        summary.total_overdue += row.balance
        summary.by_currency.setdefault(row.currency, CurrencyTotals()).overdue += row.balance
        bucket = summary.aging[row.aging_bucket]
        bucket.count += 1
        bucket.amount += row.balance

    return summary


def sync_invoice_statuses(
    invoice_ledger: InvoiceLedger,
    fetch_status: Callable[[str], InvoiceStatus],
    actor: str = "external_sync"
) -> SyncResult:
    """Pull each invoice's status from the accounting system.

    A link is overridden only when the fetched status differs. A failure on
    one link is recorded and the run continues.

    Args:
        invoice_ledger: Ledger holding the links
        fetch_status: Returns the accounting system's status for an external invoice id
        actor: Actor recorded on overrides

    Returns:
        SyncResult with counts and per-link errors
    """
    result = SyncResult()
    for link in invoice_ledger.list_all():
        try:
            status = fetch_status(link.external_invoice_id)
            if status != link.status:
                invoice_ledger.update_status_from_external_sync(link.invoice_id, status, actor)
                result.updated += 1
            result.synced += 1
        except Exception as e:
            logger.warning(
                "Invoice status sync failed",
                extra={"invoice_id": link.invoice_id, "error": str(e)},
            )
            result.errors.append(SyncError(link.invoice_id, str(e)))

    logger.info(
        "Invoice status sync finished",
        extra={"synced": result.synced, "updated": result.updated, "errors": len(result.errors)},
    )
    return result
