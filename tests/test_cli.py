"""
Tests for the CLI interface.
"""
import os
import re
import tempfile
from unittest.mock import patch

import pytest
import yaml
from typer.testing import CliRunner

from billing_ledger.cli.main import app, EXIT_CODE_PASS, EXIT_CODE_FAIL
from billing_ledger.logging_config import reset_logging

runner = CliRunner()

POLICIES = {
    "policies": [
        {
            "client_id": "client-acme",
            "client_code": "ACME",
            "client_name": "Acme Corp",
            "trigger_rule": "ON_PLACEMENT",
            "currency": "USD",
            "fee_rules": [
                {
                    "fee_type": "PLACEMENT_FEE",
                    "calculation_type": "PERCENTAGE",
                    "value": 15,
                    "percentage_base": "SALARY",
                    "minimum_fee": 5000,
                },
                {"fee_type": "ONBOARDING_FEE", "calculation_type": "FIXED", "value": 1000},
            ],
        }
    ]
}


@pytest.fixture
def workspace():
    """Temporary directory with a policy file; yields (db_path, policy_path)."""
    with tempfile.TemporaryDirectory() as temp_dir:
        policy_path = os.path.join(temp_dir, "policies.yaml")
        with open(policy_path, 'w', encoding='utf-8') as f:
            yaml.dump(POLICIES, f)
        yield os.path.join(temp_dir, "ledger.db"), policy_path
    reset_logging()


def _load(db_path, policy_path):
    result = runner.invoke(app, ["load-policies", policy_path, "--db", db_path])
    assert result.exit_code == EXIT_CODE_PASS, result.output
    return result


def _create_event(db_path, *extra):
    result = runner.invoke(app, [
        "create-event", "ACME", "PL12345", "2023-12-15", "PLACEMENT_FEE",
        "--base-amount", "100000", "--db", db_path, *extra,
    ])
    assert result.exit_code == EXIT_CODE_PASS, result.output
    return re.search(r"Created event (\S+)", result.output).group(1)


class TestCLI:
    """Test CLI commands."""

    def test_no_command_prints_usage_hint(self):
        result = runner.invoke(app, [])
        assert result.exit_code == EXIT_CODE_PASS
        assert "Use --help" in result.output

    def test_init_creates_database(self, workspace):
        db_path, _ = workspace
        result = runner.invoke(app, ["init", "--db", db_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized" in result.output
        assert os.path.exists(db_path)

    def test_init_failure(self, workspace):
        db_path, _ = workspace
        with patch('billing_ledger.cli.main.initialize_schema', side_effect=RuntimeError("disk full")):
            result = runner.invoke(app, ["init", "--db", db_path])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "disk full" in result.output

    def test_load_and_list_policies(self, workspace):
        db_path, policy_path = workspace
        result = _load(db_path, policy_path)
        assert "Loaded 1 of 1 policies" in result.output

        result = runner.invoke(app, ["policies", "--db", db_path, "--verbose"])
        assert result.exit_code == EXIT_CODE_PASS
        assert "ACME" in result.output
        assert "15% of salary" in result.output

    def test_loading_twice_reports_conflict(self, workspace):
        db_path, policy_path = workspace
        _load(db_path, policy_path)

        result = runner.invoke(app, ["load-policies", policy_path, "--db", db_path])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "already has an active policy" in result.output

    def test_event_lifecycle(self, workspace):
        """Create, approve, invoice and pay an event through the CLI."""
        db_path, policy_path = workspace
        _load(db_path, policy_path)
        event_id = _create_event(db_path)

        result = runner.invoke(app, ["approve", event_id, "--db", db_path, "--actor", "manager"])
        assert result.exit_code == EXIT_CODE_PASS
        assert "APPROVED" in result.output

        result = runner.invoke(app, ["invoice", event_id, "--db", db_path])
        assert result.exit_code == EXIT_CODE_PASS
        assert "USD 15,000.00" in result.output
        invoice_id = re.search(r"Invoice ID: (\S+)", result.output).group(1)

        result = runner.invoke(app, ["pay", invoice_id, "6000", "--payment-id", "PMT-1", "--db", db_path])
        assert result.exit_code == EXIT_CODE_PASS
        assert "PARTIAL" in result.output
        assert "Balance: USD 9,000.00" in result.output

        result = runner.invoke(app, ["pay", invoice_id, "9000", "--payment-id", "PMT-2", "--db", db_path])
        assert result.exit_code == EXIT_CODE_PASS
        assert "PAID" in result.output

        result = runner.invoke(app, ["events", "--status", "paid", "--db", db_path])
        assert result.exit_code == EXIT_CODE_PASS
        assert "Billable Events" in result.output

    def test_duplicate_event_reports_code(self, workspace):
        db_path, policy_path = workspace
        _load(db_path, policy_path)
        _create_event(db_path)

        result = runner.invoke(app, [
            "create-event", "ACME", "PL12345", "2023-12-15", "PLACEMENT_FEE",
            "--base-amount", "100000", "--db", db_path,
        ])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "DUPLICATE_ENTRY" in result.output

    def test_unknown_client_code(self, workspace):
        db_path, _ = workspace
        result = runner.invoke(app, [
            "create-event", "NOPE", "PL1", "2023-12-15", "PLACEMENT_FEE", "--db", db_path,
        ])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "No active policy" in result.output

    def test_illegal_transition_reports_code(self, workspace):
        db_path, policy_path = workspace
        _load(db_path, policy_path)
        event_id = _create_event(db_path)

        result = runner.invoke(app, ["invoice", event_id, "--db", db_path])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "ILLEGAL_TRANSITION" in result.output

    def test_hold_requires_reason(self, workspace):
        db_path, policy_path = workspace
        _load(db_path, policy_path)
        event_id = _create_event(db_path)

        result = runner.invoke(app, ["hold", event_id, "--reason", "Salary disputed", "--db", db_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Salary disputed" in result.output

    def test_events_rejects_unknown_status(self, workspace):
        db_path, _ = workspace
        result = runner.invoke(app, ["events", "--status", "LOST", "--db", db_path])
        assert result.exit_code == EXIT_CODE_FAIL

    def test_report(self, workspace):
        db_path, policy_path = workspace
        _load(db_path, policy_path)
        event_id = _create_event(db_path)
        runner.invoke(app, ["approve", event_id, "--db", db_path])
        runner.invoke(app, ["invoice", event_id, "--db", db_path])

        result = runner.invoke(app, ["report", "--today", "2099-01-01", "--db", db_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Total outstanding: 15,000.00" in result.output
        assert "Total overdue: 15,000.00" in result.output
        assert "days overdue" in result.output

    def test_report_disabled_by_config(self, workspace):
        db_path, _ = workspace
        config_path = os.path.join(os.path.dirname(db_path), "ledger.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump({
                "storage": {"db_path": db_path},
                "defaults": {"currency": "USD"},
                "features": {"enable_reconciliation": False},
                "log_level": "WARNING",
            }, f)

        result = runner.invoke(app, ["report", "--config", config_path])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "disabled" in result.output

    def test_import_events_reports_duplicates(self, workspace):
        db_path, policy_path = workspace
        _load(db_path, policy_path)
        trigger_path = os.path.join(os.path.dirname(db_path), "triggers.yaml")
        trigger = {
            "client_id": "client-acme",
            "control_number": "PL1",
            "trigger_date": "2023-12-15",
            "trigger_type": "ON_PLACEMENT",
            "fee_type": "ONBOARDING_FEE",
        }
        with open(trigger_path, 'w', encoding='utf-8') as f:
            yaml.dump({"triggers": [trigger, {**trigger, "control_number": "PL2"}, trigger]}, f)

        result = runner.invoke(app, ["import-events", trigger_path, "--db", db_path])

        assert result.exit_code == EXIT_CODE_PASS, result.output
        assert "Created 2, duplicates 1, errors 0" in result.output
        assert "#3 duplicate of ACME-PL1-20231215-ONBOARDING_FEE" in result.output

    def test_import_events_fails_on_unknown_client(self, workspace):
        db_path, policy_path = workspace
        _load(db_path, policy_path)
        trigger_path = os.path.join(os.path.dirname(db_path), "triggers.yaml")
        with open(trigger_path, 'w', encoding='utf-8') as f:
            yaml.dump({"triggers": [{
                "client_id": "client-nobody",
                "control_number": "PL1",
                "trigger_date": "2023-12-15",
                "trigger_type": "ON_PLACEMENT",
                "fee_type": "ONBOARDING_FEE",
            }]}, f)

        result = runner.invoke(app, ["import-events", trigger_path, "--db", db_path])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "VALIDATION_ERROR" in result.output
