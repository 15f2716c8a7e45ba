"""
Invoice links, payments and aging.

An invoice link ties one approved billable event to one invoice in the
external accounting system. Payments accumulate on the link and drive
both the link status and the event status.
"""

import uuid
from dataclasses import replace
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, List, Optional

from billing_ledger.logging_config import get_logger
from billing_ledger.storage.models import (
    AuditAction,
    BillableEvent,
    EntityType,
    EventStatus,
    HistorySource,
    InvoiceLink,
    InvoiceStatus,
    InvoiceStatusChange,
    PaymentRecord,
)
from billing_ledger.storage.repository import LedgerRepository

from .accounting import AccountingClient, InvoiceRequest, InvoiceResponse
from .audit import AuditTrail, utc_now
from .errors import (
    AlreadyInvoicedError,
    IllegalTransitionError,
    IntegrationError,
    LedgerError,
    NotFoundError,
    ValidationError,
)
from .events import PAYABLE, BillableEventLedger
from .idempotency import build_invoice_memo
from .locks import KeyedLock

logger = get_logger(__name__)

DEFAULT_PAYMENT_TERMS_DAYS = 30

AGING_BUCKETS = ("1-30", "31-60", "61-90", "90+")


def is_overdue(link: InvoiceLink, today: date) -> bool:
    """An invoice is overdue when it has an open balance past its due date.

    Voided invoices are never overdue.
    """
    if link.status == InvoiceStatus.VOIDED:
        return False
    return link.balance > 0 and today > link.due_date


def days_overdue(link: InvoiceLink, today: date) -> int:
    """Whole days past due, 0 when not overdue."""
    if not is_overdue(link, today):
        return 0
    return max(0, (today - link.due_date).days)


def aging_bucket(days: int) -> Optional[str]:
    """Map days overdue to an aging bucket; None when not overdue."""
    if days <= 0:
        return None
    if days <= 30:
        return "1-30"
    if days <= 60:
        return "31-60"
    if days <= 90:
        return "61-90"
    return "90+"


class InvoiceLedger:
    """Creates invoice links and applies payments to them."""

    is_overdue = staticmethod(is_overdue)
    days_overdue = staticmethod(days_overdue)
    aging_bucket = staticmethod(aging_bucket)

    def __init__(
        self,
        repository: LedgerRepository,
        events: BillableEventLedger,
        policies: Any = None,
        accounting: Optional[AccountingClient] = None,
        audit: Optional[AuditTrail] = None,
        clock: Optional[Callable[[], datetime]] = None,
        default_payment_terms_days: int = DEFAULT_PAYMENT_TERMS_DAYS
    ):
        """Initialize the invoice ledger.

        Args:
            repository: Invoice link storage
            events: Event ledger notified of invoicing and payments
            policies: Registry used to look up payment terms by policy version
            accounting: Accounting client; invoices are created locally when omitted
            audit: Audit trail; audit is skipped when omitted
            clock: Returns the current time, UTC by default
            default_payment_terms_days: Terms used when the policy can't be found
        """
        self.repository = repository
        self.events = events
        self.policies = policies
        self.accounting = accounting
        self.audit = audit or AuditTrail()
        self.clock = clock or utc_now
        self.default_payment_terms_days = default_payment_terms_days
        self._invoice_locks = KeyedLock()

    def create_invoice(
        self,
        event_id: str,
        actor: str,
        accounting: Optional[AccountingClient] = None
    ) -> InvoiceLink:
        """Create the invoice for an approved event.

        The accounting system is called before anything is stored locally,
        so a failed call leaves the event APPROVED and safe to retry. The
        event stays locked from the status check until it is marked INVOICED.

        Args:
            event_id: Billable event to invoice
            actor: User or process creating the invoice
            accounting: Overrides the ledger's accounting client for this call

        Returns:
            The new invoice link

        Raises:
            NotFoundError: If the event doesn't exist
            AlreadyInvoicedError: If the event already has an invoice
            IllegalTransitionError: If the event is not APPROVED
            IntegrationError: If the accounting system call fails
        """
        client = accounting or self.accounting

        with self.events.locked(event_id):
            event = self.events.get(event_id)

            existing = self.repository.find_invoice_link_by_event(event_id)
            if existing is not None:
                raise AlreadyInvoicedError(event_id, existing.invoice_id)
            if event.status != EventStatus.APPROVED:
                raise IllegalTransitionError(
                    event_id,
                    event.status.value,
                    EventStatus.INVOICED.value,
                    "event must be APPROVED before invoicing",
                )

            now = self.clock()
            invoice_id = str(uuid.uuid4())
            request = self._build_request(event, now.date())

            if client is not None:
                try:
                    response = client.create_invoice(request)
                except Exception as e:
                    logger.error(
                        "Accounting system rejected invoice",
                        extra={"event_id": event_id, "idempotency_key": event.idempotency_key, "error": str(e)},
                    )
                    raise IntegrationError("accounting", str(e), e) from e

                # The accounting call may re-enter the ledger on this thread
                event = self.events.get(event_id)
                if event.status != EventStatus.APPROVED:
                    logger.warning(
                        "Event changed during invoice creation, link not recorded",
                        extra={
                            "event_id": event_id,
                            "status": event.status.value,
                            "external_invoice_id": response.external_invoice_id,
                        },
                    )
                    raise IllegalTransitionError(
                        event_id,
                        event.status.value,
                        EventStatus.INVOICED.value,
                        "event left APPROVED while the invoice was being created",
                    )
            else:
                response = InvoiceResponse(
                    external_invoice_id=f"LOCAL-{invoice_id}",
                    external_doc_number=f"INV-{invoice_id[:8].upper()}",
                )

            link = InvoiceLink(
                invoice_id=invoice_id,
                billable_event_id=event_id,
                idempotency_key=event.idempotency_key,
                external_invoice_id=response.external_invoice_id,
                external_doc_number=response.external_doc_number,
                invoice_date=response.invoice_date or request.invoice_date,
                due_date=response.due_date or request.due_date,
                amount=event.amount,
                currency=event.currency,
                status=InvoiceStatus.PENDING,
                total_paid=Decimal("0.00"),
                balance=event.amount,
                created_at=now,
                created_by=actor,
                updated_at=now,
                last_synced_at=now,
                status_history=(InvoiceStatusChange(InvoiceStatus.PENDING, now, HistorySource.PORTAL, 0),),
                customer_name=request.customer_name,
                memo=request.memo,
            )
            self.repository.insert_invoice_link(link)
            self.events.mark_invoiced(event_id, actor)

        self.audit.record(
            AuditAction.INVOICE_CREATE,
            EntityType.INVOICE_LINK,
            invoice_id,
            actor,
            after=link,
            metadata={"billable_event_id": event_id, "external_invoice_id": link.external_invoice_id},
        )
        logger.info(
            "Invoice created",
            extra={
                "invoice_id": invoice_id,
                "event_id": event_id,
                "external_invoice_id": link.external_invoice_id,
                "amount": str(link.amount),
            },
        )
        return link

    def apply_payment(
        self,
        invoice_id: str,
        payment: PaymentRecord,
        actor: str,
        source: HistorySource = HistorySource.EXTERNAL_SYNC
    ) -> InvoiceLink:
        """Record a payment and derive the new invoice status.

        The link becomes PAID once the balance reaches zero, otherwise
        PARTIAL. The billable event follows: PAID or PARTIAL respectively.

        Raises:
            NotFoundError: If the invoice doesn't exist
            ValidationError: If the amount isn't positive, the currency
                differs, or the payment id was already applied
            IllegalTransitionError: If the invoice is voided
        """
        with self._invoice_locks.hold(invoice_id):
            link = self.get(invoice_id)
            self._validate_payment(link, payment)

            now = self.clock()
            if payment.synced_at is None:
                payment = replace(payment, synced_at=now)

            total_paid = link.total_paid + payment.amount
            balance = max(Decimal("0.00"), link.amount - total_paid)
            if balance <= 0:
                status = InvoiceStatus.PAID
            elif total_paid > 0:
                status = InvoiceStatus.PARTIAL
            else:
                status = link.status

            change = None
            if status != link.status:
                change = InvoiceStatusChange(status, now, source, len(link.status_history))

            updated = replace(
                link,
                total_paid=total_paid,
                balance=balance,
                status=status,
                paid_in_full_date=(
                    link.paid_in_full_date or payment.payment_date
                    if status == InvoiceStatus.PAID else link.paid_in_full_date
                ),
                updated_at=now,
                last_synced_at=now if source == HistorySource.EXTERNAL_SYNC else link.last_synced_at,
            )
            self.repository.update_invoice_link(updated, change, payment)
            updated = replace(
                updated,
                status_history=link.status_history + ((change,) if change else ()),
                payments=link.payments + (payment,),
            )

            self._advance_event(link.billable_event_id, status, actor)

        self.audit.record(
            AuditAction.PAYMENT_RECORD,
            EntityType.INVOICE_LINK,
            invoice_id,
            actor,
            before={"status": link.status.value, "total_paid": link.total_paid, "balance": link.balance},
            after={"status": status.value, "total_paid": total_paid, "balance": balance},
            metadata={
                "external_payment_id": payment.external_payment_id,
                "payment_amount": payment.amount,
                "currency": payment.currency,
                "source": source.value,
            },
        )
        logger.info(
            "Payment applied",
            extra={
                "invoice_id": invoice_id,
                "external_payment_id": payment.external_payment_id,
                "amount": str(payment.amount),
                "balance": str(balance),
                "status": status.value,
            },
        )
        return updated

    def update_status_from_external_sync(
        self,
        invoice_id: str,
        status: InvoiceStatus,
        actor: str = "external_sync"
    ) -> InvoiceLink:
        """Overwrite the invoice status with the accounting system's view.

        Always appends an EXTERNAL_SYNC history entry, even when the
        status is unchanged.
        """
        with self._invoice_locks.hold(invoice_id):
            link = self.get(invoice_id)
            now = self.clock()
            change = InvoiceStatusChange(status, now, HistorySource.EXTERNAL_SYNC, len(link.status_history))
            updated = replace(link, status=status, updated_at=now, last_synced_at=now)
            self.repository.update_invoice_link(updated, change)
            updated = replace(updated, status_history=link.status_history + (change,))

        self.audit.record(
            AuditAction.STATUS_SYNC,
            EntityType.INVOICE_LINK,
            invoice_id,
            actor,
            before={"status": link.status.value},
            after={"status": status.value},
        )
        logger.info(
            "Invoice status synced",
            extra={"invoice_id": invoice_id, "from_status": link.status.value, "to_status": status.value},
        )
        return updated

    # Queries

    def get(self, invoice_id: str) -> InvoiceLink:
        """Get an invoice link by id.

        Raises:
            NotFoundError: If the link doesn't exist
        """
        link = self.repository.get_invoice_link(invoice_id)
        if link is None:
            raise NotFoundError("InvoiceLink", invoice_id)
        return link

    def get_for_event(self, billable_event_id: str) -> Optional[InvoiceLink]:
        return self.repository.find_invoice_link_by_event(billable_event_id)

    def list_all(self) -> List[InvoiceLink]:
        return self.repository.list_invoice_links()

    def list_by_status(self, status: InvoiceStatus) -> List[InvoiceLink]:
        return self.repository.list_invoice_links(status=status)

    def list_overdue(self, today: Optional[date] = None) -> List[InvoiceLink]:
        """Overdue links, most overdue first."""
        today = today or self.clock().date()
        links = self.repository.list_overdue(today)
        return sorted(links, key=lambda link: link.due_date)

    # Internals

    def _advance_event(self, event_id: str, status: InvoiceStatus, actor: str) -> None:
        """Move the event to match a PAID or PARTIAL invoice unless it already does."""
        with self.events.locked(event_id):
            event = self.events.get(event_id)
            if status == InvoiceStatus.PAID and event.status in PAYABLE:
                self.events.mark_paid(event_id, actor)
            elif status == InvoiceStatus.PARTIAL and event.status == EventStatus.INVOICED:
                self.events.mark_partially_paid(event_id, actor)

    def _payment_terms(self, event: BillableEvent) -> int:
        if self.policies is None:
            return self.default_payment_terms_days
        try:
            return self.policies.get(event.policy_id, event.policy_version).payment_terms_days
        except LedgerError:
            logger.warning(
                "Policy not found for event, using default payment terms",
                extra={"event_id": event.event_id, "policy_id": event.policy_id},
            )
            return self.default_payment_terms_days

    def _build_request(self, event: BillableEvent, today: date) -> InvoiceRequest:
        return InvoiceRequest(
            idempotency_key=event.idempotency_key,
            customer_name=event.client_name,
            fee_type=event.fee_type,
            amount=event.amount,
            currency=event.currency,
            invoice_date=today,
            due_date=today + timedelta(days=self._payment_terms(event)),
            memo=build_invoice_memo(event.idempotency_key, event.notes),
            description=_line_description(event),
        )

    @staticmethod
    def _validate_payment(link: InvoiceLink, payment: PaymentRecord) -> None:
        if link.status == InvoiceStatus.VOIDED:
            raise IllegalTransitionError(
                link.invoice_id,
                link.status.value,
                InvoiceStatus.PAID.value,
                "cannot apply a payment to a voided invoice",
            )
        if payment.amount is None or payment.amount <= 0:
            raise ValidationError("Payment amount must be positive", {"amount": "must be > 0"})
        if payment.currency.upper() != link.currency.upper():
            raise ValidationError(
                f"Payment currency {payment.currency} does not match invoice currency {link.currency}",
                {"currency": "mismatch"},
            )
        if not payment.external_payment_id:
            raise ValidationError("external_payment_id is required", {"external_payment_id": "missing"})
        if any(p.external_payment_id == payment.external_payment_id for p in link.payments):
            raise ValidationError(
                f"Payment {payment.external_payment_id} already applied to invoice {link.invoice_id}",
                {"external_payment_id": "duplicate"},
            )


def _line_description(event: BillableEvent) -> str:
    text = event.fee_type.replace("_", " ").title()
    if event.candidate_name:
        text = f"{text} - {event.candidate_name}"
    return f"{text} ({event.control_number})"
