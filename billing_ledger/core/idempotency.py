"""
Idempotency key derivation and parsing.

Key format: CLIENTCODE-CONTROLNUMBER-TRIGGERDATE-FEETYPE
Example:    ACME-PL12345-20231215-PLACEMENT_FEE

The same key is stored on the billable event and embedded in the memo of
the external invoice, which is how duplicates are recognised on both sides.
"""

import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional, Union

from .errors import ValidationError


KEY_PATTERN = re.compile(r"^([A-Z0-9]+)-([A-Za-z0-9_-]+)-(\d{8})-([A-Z_]+)$")
MEMO_PATTERN = re.compile(r"\[IDEMPOTENCY_KEY:\s*([^\]]+)\]")

_CONTROL_NUMBER_STRIP = re.compile(r"[^A-Za-z0-9_-]")

DateLike = Union[date, datetime, str]


@dataclass(frozen=True)
class IdempotencyKeyParts:
    """Components recovered from an idempotency key."""
    client_code: str
    control_number: str
    trigger_date: str  # ISO YYYY-MM-DD
    fee_type: str


def normalize_trigger_date(trigger_date: DateLike) -> date:
    """Coerce a date, datetime or ISO string to a date.

    Raises:
        ValidationError: If the value is empty or not a parseable date
    """
    if isinstance(trigger_date, datetime):
        return trigger_date.date()
    if isinstance(trigger_date, date):
        return trigger_date
    if not isinstance(trigger_date, str) or not trigger_date.strip():
        raise ValidationError("trigger_date is required", {"trigger_date": "missing"})

    text = trigger_date.strip()
    try:
        # Accepts plain dates as well as full timestamps
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        raise ValidationError(
            f"Invalid trigger_date: {trigger_date}",
            {"trigger_date": "not a valid ISO date"},
        )


def sanitize_control_number(control_number: str) -> str:
    """Remove characters outside [A-Za-z0-9_-] and uppercase the rest."""
    return _CONTROL_NUMBER_STRIP.sub("", control_number or "").upper()


def derive_key(
    client_code: str,
    control_number: str,
    trigger_date: DateLike,
    fee_type: str,
) -> str:
    """Derive the canonical idempotency key for a billable event.

    The key is a pure function of its inputs: the same four values always
    produce the same string.

    Args:
        client_code: Short client code from the fee policy
        control_number: Upstream placement/transaction identifier
        trigger_date: Date the billable condition occurred
        fee_type: Fee type being billed

    Returns:
        Key of the form CLIENTCODE-CONTROLNUMBER-YYYYMMDD-FEETYPE

    Raises:
        ValidationError: If any component is empty or the date is invalid
    """
    missing = {}
    if not client_code or not client_code.strip():
        missing["client_code"] = "missing"
    if not fee_type or not fee_type.strip():
        missing["fee_type"] = "missing"
    sanitized = sanitize_control_number(control_number)
    if not sanitized:
        missing["control_number"] = "missing or has no usable characters"
    if missing:
        raise ValidationError("Cannot derive idempotency key", missing)

    date_str = normalize_trigger_date(trigger_date).strftime("%Y%m%d")
    return f"{client_code.strip().upper()}-{sanitized}-{date_str}-{fee_type.strip().upper()}"


def parse_key(key: str) -> Optional[IdempotencyKeyParts]:
    """Parse an idempotency key back into its components.

    Returns None for malformed keys; callers decide whether that is fatal.
    """
    if not isinstance(key, str):
        return None
    match = KEY_PATTERN.match(key)
    if not match:
        return None

    client_code, control_number, date_str, fee_type = match.groups()
    return IdempotencyKeyParts(
        client_code=client_code,
        control_number=control_number,
        trigger_date=f"{date_str[0:4]}-{date_str[4:6]}-{date_str[6:8]}",
        fee_type=fee_type,
    )


def build_invoice_memo(key: str, notes: Optional[str] = None) -> str:
    """Build the memo text stored on the external invoice.

    The first line is the literal `[IDEMPOTENCY_KEY: <key>]` marker that
    reconciliation relies on.
    """
    lines = [f"[IDEMPOTENCY_KEY: {key}]"]

    parts = parse_key(key)
    if parts:
        lines.append(f"Control #: {parts.control_number}")
        lines.append(f"Fee Type: {parts.fee_type.replace('_', ' ')}")

    if notes:
        lines.append("")
        lines.append(notes)

    return "\n".join(lines)


def extract_key_from_memo(memo: Optional[str]) -> Optional[str]:
    """Extract the idempotency key from an external invoice memo."""
    if not memo:
        return None
    match = MEMO_PATTERN.search(memo)
    return match.group(1).strip() if match else None
