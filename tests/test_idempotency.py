"""
Unit tests for idempotency keys.

Tests key derivation, parsing, and the invoice memo marker.
"""

from datetime import date, datetime

import pytest

from billing_ledger.core.errors import ValidationError
from billing_ledger.core.idempotency import (
    build_invoice_memo,
    derive_key,
    extract_key_from_memo,
    parse_key,
)


class TestDeriveKey:
    """Test key derivation."""

    def test_canonical_format(self):
        """Verify the documented example key."""
        key = derive_key("ACME", "PL12345", "2023-12-15", "PLACEMENT_FEE")
        assert key == "ACME-PL12345-20231215-PLACEMENT_FEE"

    def test_deterministic(self):
        """Same inputs always give the same key."""
        first = derive_key("acme", "pl-1", date(2024, 3, 1), "placement_fee")
        second = derive_key("acme", "pl-1", date(2024, 3, 1), "placement_fee")
        assert first == second

    def test_components_normalized(self):
        """Client code and fee type are uppercased, control number sanitized."""
        key = derive_key(" acme ", "pl 123/45#", "2023-12-15", "placement_fee")
        assert key == "ACME-PL12345-20231215-PLACEMENT_FEE"

    def test_accepts_date_datetime_and_timestamp(self):
        """All supported date forms normalize to YYYYMMDD."""
        expected = "ACME-X1-20231215-FEE"
        assert derive_key("ACME", "X1", date(2023, 12, 15), "FEE") == expected
        assert derive_key("ACME", "X1", datetime(2023, 12, 15, 18, 30), "FEE") == expected
        assert derive_key("ACME", "X1", "2023-12-15T10:00:00Z", "FEE") == expected

    @pytest.mark.parametrize("client_code,control_number,fee_type,field", [
        ("", "PL1", "FEE", "client_code"),
        ("ACME", "", "FEE", "control_number"),
        ("ACME", "###", "FEE", "control_number"),
        ("ACME", "PL1", "  ", "fee_type"),
    ])
    def test_empty_component_rejected(self, client_code, control_number, fee_type, field):
        """Verify empty components raise ValidationError naming the field."""
        with pytest.raises(ValidationError) as exc_info:
            derive_key(client_code, control_number, "2023-12-15", fee_type)
        assert exc_info.value.code == "VALIDATION_ERROR"
        assert field in exc_info.value.fields

    def test_invalid_date_rejected(self):
        with pytest.raises(ValidationError, match="Invalid trigger_date"):
            derive_key("ACME", "PL1", "15/12/2023", "FEE")


class TestParseKey:
    """Test key parsing."""

    def test_round_trip(self):
        """Parsing a derived key recovers the normalized components."""
        parts = parse_key(derive_key("acme", "pl-12_3", "2023-12-15", "placement_fee"))
        assert parts.client_code == "ACME"
        assert parts.control_number == "PL-12_3"
        assert parts.trigger_date == "2023-12-15"
        assert parts.fee_type == "PLACEMENT_FEE"

    @pytest.mark.parametrize("key", [
        "",
        "not-a-key",
        "ACME-PL1-2023121-FEE",
        "acme-PL1-20231215-FEE",
        "ACME-PL1-20231215-FEE1",
    ])
    def test_malformed_returns_none(self, key):
        assert parse_key(key) is None

    def test_non_string_returns_none(self):
        assert parse_key(None) is None


class TestInvoiceMemo:
    """Test the memo marker embedded in external invoices."""

    def test_memo_layout(self):
        memo = build_invoice_memo("ACME-PL12345-20231215-PLACEMENT_FEE", "Net 30")
        assert memo.splitlines() == [
            "[IDEMPOTENCY_KEY: ACME-PL12345-20231215-PLACEMENT_FEE]",
            "Control #: PL12345",
            "Fee Type: PLACEMENT FEE",
            "",
            "Net 30",
        ]

    def test_extract_from_memo(self):
        key = "ACME-PL12345-20231215-PLACEMENT_FEE"
        assert extract_key_from_memo(build_invoice_memo(key)) == key

    def test_extract_tolerates_whitespace(self):
        memo = "Thanks!\n[IDEMPOTENCY_KEY:   ACME-X-20240101-FEE  ]"
        assert extract_key_from_memo(memo) == "ACME-X-20240101-FEE"

    def test_extract_missing_marker(self):
        assert extract_key_from_memo("no marker here") is None
        assert extract_key_from_memo(None) is None
