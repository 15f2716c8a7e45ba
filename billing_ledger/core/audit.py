"""
Audit trail recording.

Audit writes are fire-and-forget: a failing sink is logged and never
undoes the operation being audited.
"""

import uuid
from dataclasses import asdict, is_dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Optional

from billing_ledger.logging_config import get_logger
from billing_ledger.storage.models import AuditAction, AuditEntry, EntityType

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Default clock."""
    return datetime.now(timezone.utc)


def snapshot(value: Any) -> Any:
    """Convert a model into JSON-friendly data for before/after fields."""
    if is_dataclass(value) and not isinstance(value, type):
        return snapshot(asdict(value))
    if isinstance(value, dict):
        return {str(k): snapshot(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [snapshot(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


class AuditTrail:
    """Records audit entries to a sink.

    The sink is either an object with `append_audit_entry(entry)` (such as
    a LedgerRepository) or a plain callable taking the entry.
    """

    def __init__(self, sink: Any = None, clock: Optional[Clock] = None):
        self.sink = sink
        self.clock = clock or utc_now

    def record(
        self,
        action: AuditAction,
        entity_type: EntityType,
        entity_id: Optional[str],
        actor: str,
        before: Any = None,
        after: Any = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[AuditEntry]:
        """Record one audit entry.

        Returns:
            The entry, or None when there is no sink or the sink failed
        """
        if self.sink is None:
            return None

        entry = AuditEntry(
            entry_id=str(uuid.uuid4()),
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            actor=actor,
            timestamp=self.clock(),
            before=snapshot(before) if before is not None else None,
            after=snapshot(after) if after is not None else None,
            metadata=snapshot(metadata or {}),
        )

        try:
            if hasattr(self.sink, "append_audit_entry"):
                self.sink.append_audit_entry(entry)
            else:
                self.sink(entry)
        except Exception:
            logger.exception(
                "Failed to record audit entry",
                extra={"action": action.value, "entity_type": entity_type.value, "entity_id": entity_id},
            )
            return None
        return entry
