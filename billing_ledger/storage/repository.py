"""
Repository pattern for data access.

Handles ledger persistence: billable events, invoice links, fee policies
and audit entries. Status histories and payments are stored as append-only
rows keyed by (entity id, sequence) so a transition never rewrites them.
"""

import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from billing_ledger.core.errors import AlreadyInvoicedError, DuplicateEventError, NotFoundError
from billing_ledger.core.pricing import (
    CalculationType,
    FeePolicy,
    FeeRule,
    FeeTier,
    PercentageBase,
    TriggerRule,
)

from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    AuditAction,
    AuditEntry,
    BillableEvent,
    EntityType,
    EventStatus,
    HistorySource,
    InvoiceLink,
    InvoiceStatus,
    InvoiceStatusChange,
    PaymentRecord,
    StatusChange,
)


class LedgerRepository(ABC):
    """Persistence contract consumed by the ledger services.

    Implementations must make `insert_event` an atomic insert-if-absent on
    the idempotency key and `insert_invoice_link` an atomic insert-if-absent
    on the billable event id.
    """

    # Billable events

    @abstractmethod
    def insert_event(self, event: BillableEvent) -> None:
        """Insert a new event.

        Raises:
            DuplicateEventError: If an event with the same idempotency key exists
        """

    @abstractmethod
    def get_event(self, event_id: str) -> Optional[BillableEvent]:
        """Get an event by id."""

    @abstractmethod
    def find_event_by_key(self, idempotency_key: str) -> Optional[BillableEvent]:
        """Get an event by idempotency key."""

    @abstractmethod
    def update_event(self, event: BillableEvent, change: StatusChange) -> None:
        """Persist the event's new state and append one history entry."""

    @abstractmethod
    def list_events(
        self,
        status: Optional[EventStatus] = None,
        client_id: Optional[str] = None
    ) -> List[BillableEvent]:
        """List events ordered by creation time, optionally filtered."""

    # Invoice links

    @abstractmethod
    def insert_invoice_link(self, link: InvoiceLink) -> None:
        """Insert a new invoice link.

        Raises:
            AlreadyInvoicedError: If the billable event already has a link
        """

    @abstractmethod
    def get_invoice_link(self, invoice_id: str) -> Optional[InvoiceLink]:
        """Get an invoice link by id."""

    @abstractmethod
    def find_invoice_link_by_event(self, billable_event_id: str) -> Optional[InvoiceLink]:
        """Get the invoice link for a billable event."""

    @abstractmethod
    def update_invoice_link(
        self,
        link: InvoiceLink,
        change: Optional[InvoiceStatusChange] = None,
        payment: Optional[PaymentRecord] = None
    ) -> None:
        """Persist the link's new state, appending at most one history entry and one payment."""

    @abstractmethod
    def list_invoice_links(self, status: Optional[InvoiceStatus] = None) -> List[InvoiceLink]:
        """List invoice links ordered by creation time, optionally filtered."""

    def list_overdue(self, today: date) -> List[InvoiceLink]:
        """List links with an open balance past their due date."""
        return [
            link for link in self.list_invoice_links()
            if link.balance > 0
            and link.status != InvoiceStatus.VOIDED
            and today > link.due_date
        ]

    # Fee policies

    @abstractmethod
    def insert_policy(self, policy: FeePolicy) -> None:
        """Insert a policy version."""

    @abstractmethod
    def update_policy(self, policy: FeePolicy) -> None:
        """Overwrite an existing policy version in place."""

    @abstractmethod
    def list_policies(self) -> List[FeePolicy]:
        """List every stored policy version."""

    def get_policy(self, policy_id: str, version: Optional[int] = None) -> Optional[FeePolicy]:
        """Get a policy version; the latest version when none is given."""
        versions = [p for p in self.list_policies() if p.policy_id == policy_id]
        if version is not None:
            versions = [p for p in versions if p.version == version]
        if not versions:
            return None
        return max(versions, key=lambda p: p.version)

    # Audit

    @abstractmethod
    def append_audit_entry(self, entry: AuditEntry) -> None:
        """Append an audit entry."""

    @abstractmethod
    def list_audit_entries(
        self,
        entity_type: Optional[EntityType] = None,
        entity_id: Optional[str] = None
    ) -> List[AuditEntry]:
        """List audit entries in recording order, optionally filtered."""


class InMemoryLedgerRepository(LedgerRepository):
    """Thread-safe in-process repository.

    Used by tests and by callers embedding the ledger without a database.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._events: Dict[str, BillableEvent] = {}
        self._event_ids_by_key: Dict[str, str] = {}
        self._links: Dict[str, InvoiceLink] = {}
        self._link_ids_by_event: Dict[str, str] = {}
        self._policies: Dict[tuple, FeePolicy] = {}
        self._audit: List[AuditEntry] = []

    def insert_event(self, event: BillableEvent) -> None:
        with self._lock:
            if event.idempotency_key in self._event_ids_by_key:
                raise DuplicateEventError(event.idempotency_key)
            self._events[event.event_id] = event
            self._event_ids_by_key[event.idempotency_key] = event.event_id

    def get_event(self, event_id: str) -> Optional[BillableEvent]:
        with self._lock:
            return self._events.get(event_id)

    def find_event_by_key(self, idempotency_key: str) -> Optional[BillableEvent]:
        with self._lock:
            event_id = self._event_ids_by_key.get(idempotency_key)
            return self._events.get(event_id) if event_id else None

    def update_event(self, event: BillableEvent, change: StatusChange) -> None:
        with self._lock:
            current = self._events.get(event.event_id)
            if current is None:
                raise NotFoundError("BillableEvent", event.event_id)
            history = current.status_history + (change,)
            self._events[event.event_id] = replace(event, status_history=history)

    def list_events(
        self,
        status: Optional[EventStatus] = None,
        client_id: Optional[str] = None
    ) -> List[BillableEvent]:
        with self._lock:
            events = list(self._events.values())
        if status is not None:
            events = [e for e in events if e.status == status]
        if client_id is not None:
            events = [e for e in events if e.client_id == client_id]
        return sorted(events, key=lambda e: e.created_at)

    def insert_invoice_link(self, link: InvoiceLink) -> None:
        with self._lock:
            existing_id = self._link_ids_by_event.get(link.billable_event_id)
            if existing_id is not None:
                raise AlreadyInvoicedError(link.billable_event_id, existing_id)
            self._links[link.invoice_id] = link
            self._link_ids_by_event[link.billable_event_id] = link.invoice_id

    def get_invoice_link(self, invoice_id: str) -> Optional[InvoiceLink]:
        with self._lock:
            return self._links.get(invoice_id)

    def find_invoice_link_by_event(self, billable_event_id: str) -> Optional[InvoiceLink]:
        with self._lock:
            invoice_id = self._link_ids_by_event.get(billable_event_id)
            return self._links.get(invoice_id) if invoice_id else None

    def update_invoice_link(
        self,
        link: InvoiceLink,
        change: Optional[InvoiceStatusChange] = None,
        payment: Optional[PaymentRecord] = None
    ) -> None:
        with self._lock:
            current = self._links.get(link.invoice_id)
            if current is None:
                raise NotFoundError("InvoiceLink", link.invoice_id)
            history = current.status_history + ((change,) if change else ())
            payments = current.payments + ((payment,) if payment else ())
            self._links[link.invoice_id] = replace(link, status_history=history, payments=payments)

    def list_invoice_links(self, status: Optional[InvoiceStatus] = None) -> List[InvoiceLink]:
        with self._lock:
            links = list(self._links.values())
        if status is not None:
            links = [link for link in links if link.status == status]
        return sorted(links, key=lambda link: link.created_at)

    def insert_policy(self, policy: FeePolicy) -> None:
        with self._lock:
            key = (policy.policy_id, policy.version)
            if key in self._policies:
                raise ValueError(f"Policy {policy.policy_id} v{policy.version} already exists")
            self._policies[key] = policy

    def update_policy(self, policy: FeePolicy) -> None:
        with self._lock:
            key = (policy.policy_id, policy.version)
            if key not in self._policies:
                raise NotFoundError("FeePolicy", policy.policy_id)
            self._policies[key] = policy

    def list_policies(self) -> List[FeePolicy]:
        with self._lock:
            return list(self._policies.values())

    def append_audit_entry(self, entry: AuditEntry) -> None:
        with self._lock:
            self._audit.append(entry)

    def list_audit_entries(
        self,
        entity_type: Optional[EntityType] = None,
        entity_id: Optional[str] = None
    ) -> List[AuditEntry]:
        with self._lock:
            entries = list(self._audit)
        if entity_type is not None:
            entries = [e for e in entries if e.entity_type == entity_type]
        if entity_id is not None:
            entries = [e for e in entries if e.entity_id == entity_id]
        return entries


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the ledger tables if they don't exist.

    History, payment and audit tables are append-only: rows are inserted,
    never updated or deleted.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS fee_policy (
                policy_id TEXT NOT NULL,
                version INTEGER NOT NULL,
                client_id TEXT NOT NULL,
                client_code TEXT NOT NULL,
                client_name TEXT NOT NULL,
                trigger_rule TEXT NOT NULL,
                fee_rules TEXT NOT NULL,
                currency TEXT NOT NULL,
                payment_terms_days INTEGER NOT NULL,
                is_active INTEGER NOT NULL,
                effective_date TEXT,
                auto_approve INTEGER NOT NULL DEFAULT 0,
                notes TEXT,
                description TEXT,
                created_at TEXT,
                created_by TEXT NOT NULL,
                updated_at TEXT,
                updated_by TEXT NOT NULL,
                PRIMARY KEY (policy_id, version)
            );

            CREATE UNIQUE INDEX IF NOT EXISTS ux_fee_policy_active_code
                ON fee_policy (client_code) WHERE is_active = 1;

            CREATE TABLE IF NOT EXISTS billable_event (
                event_id TEXT PRIMARY KEY,
                idempotency_key TEXT NOT NULL UNIQUE,
                client_id TEXT NOT NULL,
                client_code TEXT NOT NULL,
                client_name TEXT NOT NULL,
                control_number TEXT NOT NULL,
                trigger_date TEXT NOT NULL,
                trigger_type TEXT NOT NULL,
                fee_type TEXT NOT NULL,
                amount TEXT NOT NULL,
                currency TEXT NOT NULL,
                status TEXT NOT NULL,
                policy_id TEXT NOT NULL,
                policy_version INTEGER NOT NULL,
                candidate_name TEXT,
                candidate_email TEXT,
                source_data TEXT,
                notes TEXT,
                approved_at TEXT,
                approved_by TEXT,
                approval_notes TEXT,
                hold_reason TEXT,
                hold_at TEXT,
                hold_by TEXT,
                created_at TEXT NOT NULL,
                created_by TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                updated_by TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS event_status_history (
                event_id TEXT NOT NULL REFERENCES billable_event (event_id),
                sequence INTEGER NOT NULL,
                status TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                actor TEXT NOT NULL,
                reason TEXT,
                PRIMARY KEY (event_id, sequence)
            );

            CREATE TABLE IF NOT EXISTS invoice_link (
                invoice_id TEXT PRIMARY KEY,
                billable_event_id TEXT NOT NULL UNIQUE REFERENCES billable_event (event_id),
                idempotency_key TEXT NOT NULL,
                external_invoice_id TEXT NOT NULL,
                external_doc_number TEXT NOT NULL,
                invoice_date TEXT NOT NULL,
                due_date TEXT NOT NULL,
                amount TEXT NOT NULL,
                currency TEXT NOT NULL,
                status TEXT NOT NULL,
                total_paid TEXT NOT NULL,
                balance TEXT NOT NULL,
                paid_in_full_date TEXT,
                customer_name TEXT,
                memo TEXT,
                created_at TEXT NOT NULL,
                created_by TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                last_synced_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS invoice_status_history (
                invoice_id TEXT NOT NULL REFERENCES invoice_link (invoice_id),
                sequence INTEGER NOT NULL,
                status TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                source TEXT NOT NULL,
                PRIMARY KEY (invoice_id, sequence)
            );

            CREATE TABLE IF NOT EXISTS invoice_payment (
                invoice_id TEXT NOT NULL REFERENCES invoice_link (invoice_id),
                sequence INTEGER NOT NULL,
                external_payment_id TEXT NOT NULL,
                payment_date TEXT NOT NULL,
                amount TEXT NOT NULL,
                currency TEXT NOT NULL,
                method TEXT,
                reference TEXT,
                synced_at TEXT,
                PRIMARY KEY (invoice_id, sequence),
                UNIQUE (invoice_id, external_payment_id)
            );

            CREATE TABLE IF NOT EXISTS audit_entry (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                entry_id TEXT NOT NULL UNIQUE,
                action TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                entity_id TEXT,
                actor TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                before_value TEXT,
                after_value TEXT,
                metadata TEXT
            );
        """)
        conn.commit()
    finally:
        conn.close()


class SqliteLedgerRepository(LedgerRepository):
    """Repository backed by a SQLite database file.

    Opens a short-lived connection per operation, so instances can be
    shared between threads.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    # Billable events

    def insert_event(self, event: BillableEvent) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "INSERT INTO billable_event (event_id, idempotency_key, client_id, client_code, "
                "client_name, control_number, trigger_date, trigger_type, fee_type, amount, "
                "currency, status, policy_id, policy_version, candidate_name, candidate_email, "
                "source_data, notes, approved_at, approved_by, approval_notes, hold_reason, "
                "hold_at, hold_by, created_at, created_by, updated_at, updated_by) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (event.event_id, event.idempotency_key) + _event_columns(event),
            )
            for change in event.status_history:
                _insert_event_history(conn, event.event_id, change)
            conn.commit()
        except sqlite3.IntegrityError as e:
            conn.rollback()
            if "idempotency_key" in str(e):
                raise DuplicateEventError(event.idempotency_key) from e
            raise
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def get_event(self, event_id: str) -> Optional[BillableEvent]:
        return self._fetch_event("event_id = ?", event_id)

    def find_event_by_key(self, idempotency_key: str) -> Optional[BillableEvent]:
        return self._fetch_event("idempotency_key = ?", idempotency_key)

    def update_event(self, event: BillableEvent, change: StatusChange) -> None:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "UPDATE billable_event SET client_id = ?, client_code = ?, client_name = ?, "
                "control_number = ?, trigger_date = ?, trigger_type = ?, fee_type = ?, amount = ?, "
                "currency = ?, status = ?, policy_id = ?, policy_version = ?, candidate_name = ?, "
                "candidate_email = ?, source_data = ?, notes = ?, approved_at = ?, approved_by = ?, "
                "approval_notes = ?, hold_reason = ?, hold_at = ?, hold_by = ?, created_at = ?, "
                "created_by = ?, updated_at = ?, updated_by = ? WHERE event_id = ?",
                _event_columns(event) + (event.event_id,),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("BillableEvent", event.event_id)
            _insert_event_history(conn, event.event_id, change)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def list_events(
        self,
        status: Optional[EventStatus] = None,
        client_id: Optional[str] = None
    ) -> List[BillableEvent]:
        conditions = []
        params: List[Any] = []
        if status is not None:
            conditions.append("status = ?")
            params.append(status.value)
        if client_id is not None:
            conditions.append("client_id = ?")
            params.append(client_id)
        where = " AND ".join(conditions) if conditions else "1 = 1"
        return self._fetch_events(where, *params)

    def _fetch_event(self, where: str, *params: Any) -> Optional[BillableEvent]:
        events = self._fetch_events(where, *params)
        return events[0] if events else None

    def _fetch_events(self, where: str, *params: Any) -> List[BillableEvent]:
        conn = get_connection(self.db_path, rows=True)
        try:
            rows = conn.execute(
                f"SELECT * FROM billable_event WHERE {where} ORDER BY created_at, rowid",
                params,
            ).fetchall()
            events = []
            for row in rows:
                history = conn.execute(
                    "SELECT status, timestamp, actor, reason, sequence FROM event_status_history "
                    "WHERE event_id = ? ORDER BY sequence",
                    (row["event_id"],),
                ).fetchall()
                events.append(_row_to_event(row, history))
            return events
        finally:
            conn.close()

    # Invoice links

    def insert_invoice_link(self, link: InvoiceLink) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "INSERT INTO invoice_link (invoice_id, billable_event_id, idempotency_key, "
                "external_invoice_id, external_doc_number, invoice_date, due_date, amount, "
                "currency, status, total_paid, balance, paid_in_full_date, customer_name, memo, "
                "created_at, created_by, updated_at, last_synced_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (link.invoice_id, link.billable_event_id) + _link_columns(link),
            )
            for change in link.status_history:
                _insert_invoice_history(conn, link.invoice_id, change)
            for sequence, payment in enumerate(link.payments):
                _insert_payment(conn, link.invoice_id, sequence, payment)
            conn.commit()
        except sqlite3.IntegrityError as e:
            conn.rollback()
            if "billable_event_id" in str(e):
                existing = self.find_invoice_link_by_event(link.billable_event_id)
                raise AlreadyInvoicedError(
                    link.billable_event_id,
                    existing.invoice_id if existing else None,
                ) from e
            raise
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def get_invoice_link(self, invoice_id: str) -> Optional[InvoiceLink]:
        links = self._fetch_links("invoice_id = ?", invoice_id)
        return links[0] if links else None

    def find_invoice_link_by_event(self, billable_event_id: str) -> Optional[InvoiceLink]:
        links = self._fetch_links("billable_event_id = ?", billable_event_id)
        return links[0] if links else None

    def update_invoice_link(
        self,
        link: InvoiceLink,
        change: Optional[InvoiceStatusChange] = None,
        payment: Optional[PaymentRecord] = None
    ) -> None:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "UPDATE invoice_link SET idempotency_key = ?, external_invoice_id = ?, "
                "external_doc_number = ?, invoice_date = ?, due_date = ?, amount = ?, currency = ?, "
                "status = ?, total_paid = ?, balance = ?, paid_in_full_date = ?, customer_name = ?, "
                "memo = ?, created_at = ?, created_by = ?, updated_at = ?, last_synced_at = ? "
                "WHERE invoice_id = ?",
                _link_columns(link) + (link.invoice_id,),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("InvoiceLink", link.invoice_id)
            if change is not None:
                _insert_invoice_history(conn, link.invoice_id, change)
            if payment is not None:
                next_sequence = conn.execute(
                    "SELECT COALESCE(MAX(sequence) + 1, 0) FROM invoice_payment WHERE invoice_id = ?",
                    (link.invoice_id,),
                ).fetchone()[0]
                _insert_payment(conn, link.invoice_id, next_sequence, payment)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def list_invoice_links(self, status: Optional[InvoiceStatus] = None) -> List[InvoiceLink]:
        if status is None:
            return self._fetch_links("1 = 1")
        return self._fetch_links("status = ?", status.value)

    def list_overdue(self, today: date) -> List[InvoiceLink]:
        return self._fetch_links(
            "CAST(balance AS REAL) > 0 AND status != ? AND due_date < ?",
            InvoiceStatus.VOIDED.value,
            today.isoformat(),
        )

    def _fetch_links(self, where: str, *params: Any) -> List[InvoiceLink]:
        conn = get_connection(self.db_path, rows=True)
        try:
            rows = conn.execute(
                f"SELECT * FROM invoice_link WHERE {where} ORDER BY created_at, rowid",
                params,
            ).fetchall()
            links = []
            for row in rows:
                history = conn.execute(
                    "SELECT status, timestamp, source, sequence FROM invoice_status_history "
                    "WHERE invoice_id = ? ORDER BY sequence",
                    (row["invoice_id"],),
                ).fetchall()
                payments = conn.execute(
                    "SELECT external_payment_id, payment_date, amount, currency, method, "
                    "reference, synced_at FROM invoice_payment WHERE invoice_id = ? ORDER BY sequence",
                    (row["invoice_id"],),
                ).fetchall()
                links.append(_row_to_link(row, history, payments))
            return links
        finally:
            conn.close()

    # Fee policies

    def insert_policy(self, policy: FeePolicy) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "INSERT INTO fee_policy (policy_id, version, client_id, client_code, client_name, "
                "trigger_rule, fee_rules, currency, payment_terms_days, is_active, effective_date, "
                "auto_approve, notes, description, created_at, created_by, updated_at, updated_by) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (policy.policy_id, policy.version) + _policy_columns(policy),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def update_policy(self, policy: FeePolicy) -> None:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "UPDATE fee_policy SET client_id = ?, client_code = ?, client_name = ?, "
                "trigger_rule = ?, fee_rules = ?, currency = ?, payment_terms_days = ?, "
                "is_active = ?, effective_date = ?, auto_approve = ?, notes = ?, description = ?, "
                "created_at = ?, created_by = ?, updated_at = ?, updated_by = ? "
                "WHERE policy_id = ? AND version = ?",
                _policy_columns(policy) + (policy.policy_id, policy.version),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("FeePolicy", policy.policy_id)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def list_policies(self) -> List[FeePolicy]:
        conn = get_connection(self.db_path, rows=True)
        try:
            rows = conn.execute(
                "SELECT * FROM fee_policy ORDER BY client_code, version"
            ).fetchall()
            return [_row_to_policy(row) for row in rows]
        finally:
            conn.close()

    # Audit

    def append_audit_entry(self, entry: AuditEntry) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "INSERT INTO audit_entry (entry_id, action, entity_type, entity_id, actor, "
                "timestamp, before_value, after_value, metadata) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    entry.entry_id,
                    entry.action.value,
                    entry.entity_type.value,
                    entry.entity_id,
                    entry.actor,
                    entry.timestamp.isoformat(),
                    _dump_json(entry.before),
                    _dump_json(entry.after),
                    _dump_json(entry.metadata),
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def list_audit_entries(
        self,
        entity_type: Optional[EntityType] = None,
        entity_id: Optional[str] = None
    ) -> List[AuditEntry]:
        conn = get_connection(self.db_path, rows=True)
        try:
            query = "SELECT * FROM audit_entry"
            conditions = []
            params: List[Any] = []
            if entity_type is not None:
                conditions.append("entity_type = ?")
                params.append(entity_type.value)
            if entity_id is not None:
                conditions.append("entity_id = ?")
                params.append(entity_id)
            if conditions:
                query += " WHERE " + " AND ".join(conditions)
            query += " ORDER BY seq"

            return [
                AuditEntry(
                    entry_id=row["entry_id"],
                    action=AuditAction(row["action"]),
                    entity_type=EntityType(row["entity_type"]),
                    entity_id=row["entity_id"],
                    actor=row["actor"],
                    timestamp=datetime.fromisoformat(row["timestamp"]),
                    before=_load_json(row["before_value"]),
                    after=_load_json(row["after_value"]),
                    metadata=_load_json(row["metadata"]) or {},
                )
                for row in conn.execute(query, params).fetchall()
            ]
        finally:
            conn.close()


# Row conversion helpers

def _iso(value: Optional[Any]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _dump_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str, sort_keys=True)


def _load_json(value: Optional[str]) -> Any:
    return json.loads(value) if value else None


def _event_columns(event: BillableEvent) -> tuple:
    return (
        event.client_id,
        event.client_code,
        event.client_name,
        event.control_number,
        event.trigger_date.isoformat(),
        event.trigger_type,
        event.fee_type,
        str(event.amount),
        event.currency,
        event.status.value,
        event.policy_id,
        event.policy_version,
        event.candidate_name,
        event.candidate_email,
        _dump_json(event.source_data),
        event.notes,
        _iso(event.approved_at),
        event.approved_by,
        event.approval_notes,
        event.hold_reason,
        _iso(event.hold_at),
        event.hold_by,
        event.created_at.isoformat(),
        event.created_by,
        event.updated_at.isoformat(),
        event.updated_by,
    )


def _insert_event_history(conn: sqlite3.Connection, event_id: str, change: StatusChange) -> None:
    conn.execute(
        "INSERT INTO event_status_history (event_id, sequence, status, timestamp, actor, reason) "
        "VALUES (?, ?, ?, ?, ?, ?)",
        (event_id, change.sequence, change.status.value, change.timestamp.isoformat(),
         change.actor, change.reason),
    )


def _row_to_event(row: sqlite3.Row, history: List[sqlite3.Row]) -> BillableEvent:
    return BillableEvent(
        event_id=row["event_id"],
        idempotency_key=row["idempotency_key"],
        client_id=row["client_id"],
        client_code=row["client_code"],
        client_name=row["client_name"],
        control_number=row["control_number"],
        trigger_date=date.fromisoformat(row["trigger_date"]),
        trigger_type=row["trigger_type"],
        fee_type=row["fee_type"],
        amount=Decimal(row["amount"]),
        currency=row["currency"],
        status=EventStatus(row["status"]),
        policy_id=row["policy_id"],
        policy_version=row["policy_version"],
        created_at=datetime.fromisoformat(row["created_at"]),
        created_by=row["created_by"],
        updated_at=datetime.fromisoformat(row["updated_at"]),
        updated_by=row["updated_by"],
        status_history=tuple(
            StatusChange(
                status=EventStatus(h["status"]),
                timestamp=datetime.fromisoformat(h["timestamp"]),
                actor=h["actor"],
                reason=h["reason"],
                sequence=h["sequence"],
            )
            for h in history
        ),
        candidate_name=row["candidate_name"],
        candidate_email=row["candidate_email"],
        source_data=_load_json(row["source_data"]) or {},
        notes=row["notes"],
        approved_at=_parse_datetime(row["approved_at"]),
        approved_by=row["approved_by"],
        approval_notes=row["approval_notes"],
        hold_reason=row["hold_reason"],
        hold_at=_parse_datetime(row["hold_at"]),
        hold_by=row["hold_by"],
    )


def _link_columns(link: InvoiceLink) -> tuple:
    return (
        link.idempotency_key,
        link.external_invoice_id,
        link.external_doc_number,
        link.invoice_date.isoformat(),
        link.due_date.isoformat(),
        str(link.amount),
        link.currency,
        link.status.value,
        str(link.total_paid),
        str(link.balance),
        _iso(link.paid_in_full_date),
        link.customer_name,
        link.memo,
        link.created_at.isoformat(),
        link.created_by,
        link.updated_at.isoformat(),
        link.last_synced_at.isoformat(),
    )


def _insert_invoice_history(
    conn: sqlite3.Connection,
    invoice_id: str,
    change: InvoiceStatusChange
) -> None:
    conn.execute(
        "INSERT INTO invoice_status_history (invoice_id, sequence, status, timestamp, source) "
        "VALUES (?, ?, ?, ?, ?)",
        (invoice_id, change.sequence, change.status.value, change.timestamp.isoformat(),
         change.source.value),
    )


def _insert_payment(
    conn: sqlite3.Connection,
    invoice_id: str,
    sequence: int,
    payment: PaymentRecord
) -> None:
    conn.execute(
        "INSERT INTO invoice_payment (invoice_id, sequence, external_payment_id, payment_date, "
        "amount, currency, method, reference, synced_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (invoice_id, sequence, payment.external_payment_id, payment.payment_date.isoformat(),
         str(payment.amount), payment.currency, payment.method, payment.reference,
         _iso(payment.synced_at)),
    )


def _row_to_link(
    row: sqlite3.Row,
    history: List[sqlite3.Row],
    payments: List[sqlite3.Row]
) -> InvoiceLink:
    return InvoiceLink(
        invoice_id=row["invoice_id"],
        billable_event_id=row["billable_event_id"],
        idempotency_key=row["idempotency_key"],
        external_invoice_id=row["external_invoice_id"],
        external_doc_number=row["external_doc_number"],
        invoice_date=date.fromisoformat(row["invoice_date"]),
        due_date=date.fromisoformat(row["due_date"]),
        amount=Decimal(row["amount"]),
        currency=row["currency"],
        status=InvoiceStatus(row["status"]),
        total_paid=Decimal(row["total_paid"]),
        balance=Decimal(row["balance"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        created_by=row["created_by"],
        updated_at=datetime.fromisoformat(row["updated_at"]),
        last_synced_at=datetime.fromisoformat(row["last_synced_at"]),
        status_history=tuple(
            InvoiceStatusChange(
                status=InvoiceStatus(h["status"]),
                timestamp=datetime.fromisoformat(h["timestamp"]),
                source=HistorySource(h["source"]),
                sequence=h["sequence"],
            )
            for h in history
        ),
        payments=tuple(
            PaymentRecord(
                external_payment_id=p["external_payment_id"],
                payment_date=date.fromisoformat(p["payment_date"]),
                amount=Decimal(p["amount"]),
                currency=p["currency"],
                method=p["method"],
                reference=p["reference"],
                synced_at=_parse_datetime(p["synced_at"]),
            )
            for p in payments
        ),
        paid_in_full_date=_parse_date(row["paid_in_full_date"]),
        customer_name=row["customer_name"],
        memo=row["memo"],
    )


def fee_rule_to_dict(rule: FeeRule) -> Dict[str, Any]:
    """Serialize a fee rule to plain JSON-compatible data."""
    data: Dict[str, Any] = {
        "fee_type": rule.fee_type,
        "calculation_type": rule.calculation_type.value,
        "value": str(rule.value),
    }
    if rule.percentage_base is not None:
        data["percentage_base"] = rule.percentage_base.value
    if rule.minimum_fee is not None:
        data["minimum_fee"] = str(rule.minimum_fee)
    if rule.maximum_fee is not None:
        data["maximum_fee"] = str(rule.maximum_fee)
    if rule.tiers:
        data["tiers"] = [
            {
                "from_amount": str(tier.from_amount),
                "to_amount": str(tier.to_amount) if tier.to_amount is not None else None,
                "value": str(tier.value),
                "calculation_type": tier.calculation_type.value,
            }
            for tier in rule.tiers
        ]
    return data


def fee_rule_from_dict(data: Dict[str, Any]) -> FeeRule:
    """Rebuild a fee rule from `fee_rule_to_dict` output."""
    return FeeRule(
        fee_type=data["fee_type"],
        calculation_type=CalculationType(data["calculation_type"]),
        value=Decimal(data["value"]),
        percentage_base=PercentageBase(data["percentage_base"]) if data.get("percentage_base") else None,
        minimum_fee=Decimal(data["minimum_fee"]) if data.get("minimum_fee") is not None else None,
        maximum_fee=Decimal(data["maximum_fee"]) if data.get("maximum_fee") is not None else None,
        tiers=tuple(
            FeeTier(
                from_amount=Decimal(t["from_amount"]),
                to_amount=Decimal(t["to_amount"]) if t.get("to_amount") is not None else None,
                value=Decimal(t["value"]),
                calculation_type=CalculationType(t["calculation_type"]),
            )
            for t in data.get("tiers") or []
        ),
    )


def _policy_columns(policy: FeePolicy) -> tuple:
    return (
        policy.client_id,
        policy.client_code,
        policy.client_name,
        policy.trigger_rule.value,
        json.dumps([fee_rule_to_dict(rule) for rule in policy.fee_rules]),
        policy.currency,
        policy.payment_terms_days,
        1 if policy.is_active else 0,
        _iso(policy.effective_date),
        1 if policy.auto_approve else 0,
        policy.notes,
        policy.description,
        _iso(policy.created_at),
        policy.created_by,
        _iso(policy.updated_at),
        policy.updated_by,
    )


def _row_to_policy(row: sqlite3.Row) -> FeePolicy:
    return FeePolicy(
        policy_id=row["policy_id"],
        client_id=row["client_id"],
        client_code=row["client_code"],
        client_name=row["client_name"],
        trigger_rule=TriggerRule(row["trigger_rule"]),
        fee_rules=tuple(fee_rule_from_dict(d) for d in json.loads(row["fee_rules"])),
        currency=row["currency"],
        payment_terms_days=row["payment_terms_days"],
        is_active=bool(row["is_active"]),
        version=row["version"],
        effective_date=_parse_date(row["effective_date"]),
        auto_approve=bool(row["auto_approve"]),
        notes=row["notes"],
        description=row["description"],
        created_at=_parse_datetime(row["created_at"]),
        created_by=row["created_by"],
        updated_at=_parse_datetime(row["updated_at"]),
        updated_by=row["updated_by"],
    )
