"""
Configuration management and loading.

Handles ledger settings and client fee policy files.
"""

import uuid
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from billing_ledger.core.events import TriggerInput
from billing_ledger.core.pricing import (
    CalculationType,
    FeePolicy,
    FeeRule,
    FeeTier,
    PercentageBase,
    TriggerRule,
    to_decimal,
)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class StorageConfig:
    """Where the ledger is persisted."""
    db_path: str

    def __post_init__(self):
        if not self.db_path:
            raise ValueError("db_path must not be empty")


@dataclass(frozen=True)
class DefaultsConfig:
    """Defaults applied when a policy doesn't specify a value."""
    payment_terms_days: int = 30
    currency: str = "USD"

    def __post_init__(self):
        """Validate default values."""
        if self.payment_terms_days < 0:
            raise ValueError("payment_terms_days must be >= 0")
        if not self.currency:
            raise ValueError("currency must not be empty")


@dataclass(frozen=True)
class FeatureFlags:
    """Optional behaviour switches."""
    enable_invoice_write: bool = False
    enable_reconciliation: bool = True


@dataclass(frozen=True)
class LedgerConfig:
    """Complete ledger configuration."""
    storage: StorageConfig
    defaults: DefaultsConfig
    features: FeatureFlags = field(default_factory=FeatureFlags)
    log_level: str = "INFO"
    bulk_workers: int = 1

    def __post_init__(self):
        if self.log_level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of: {list(LOG_LEVELS)}")
        if self.bulk_workers < 1:
            raise ValueError("bulk_workers must be >= 1")


def _read_yaml(path: str, what: str) -> Any:
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"{what} file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in {what.lower()} file {path}: {e}")

    if not raw:
        raise ValueError(f"{what} file is empty")
    return raw


def _check_keys(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _section(raw: Dict, name: str, required: bool = True) -> Dict:
    if name not in raw:
        if required:
            raise ValueError(f"Missing required '{name}' section")
        return {}
    data = raw[name]
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _bool(data: Dict, key: str, path: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ValueError(f"'{key}' in {path} must be true or false")
    return value


def _int(data: Dict, key: str, path: str, default: Optional[int] = None) -> int:
    if key not in data:
        if default is None:
            raise ValueError(f"Missing required '{key}' in {path}")
        return default
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' in {path} must be an integer")
    return value


def _str(data: Dict, key: str, path: str, default: Optional[str] = None) -> str:
    if key not in data:
        if default is None:
            raise ValueError(f"Missing required '{key}' in {path}")
        return default
    value = data[key]
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"'{key}' in {path} must be a non-empty string")
    return value.strip()


def load_ledger_config(path: str) -> LedgerConfig:
    """Load and validate ledger configuration from YAML file.

    Strict validation: unknown keys, missing sections and wrong types are
    errors rather than silently ignored.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated LedgerConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    raw_config = _read_yaml(path, "Config")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    _check_keys(raw_config, {'storage', 'defaults', 'features', 'log_level', 'bulk_workers'}, "configuration")

    storage_data = _section(raw_config, 'storage')
    _check_keys(storage_data, {'db_path'}, "storage")
    storage = StorageConfig(db_path=_str(storage_data, 'db_path', "storage"))

    defaults_data = _section(raw_config, 'defaults')
    _check_keys(defaults_data, {'payment_terms_days', 'currency'}, "defaults")
    defaults = DefaultsConfig(
        payment_terms_days=_int(defaults_data, 'payment_terms_days', "defaults", 30),
        currency=_str(defaults_data, 'currency', "defaults", "USD").upper(),
    )

    features_data = _section(raw_config, 'features', required=False)
    _check_keys(features_data, {'enable_invoice_write', 'enable_reconciliation'}, "features")
    features = FeatureFlags(
        enable_invoice_write=_bool(features_data, 'enable_invoice_write', "features", False),
        enable_reconciliation=_bool(features_data, 'enable_reconciliation', "features", True),
    )

    log_level = _str(raw_config, 'log_level', "configuration", "INFO").upper()
    if log_level not in LOG_LEVELS:
        raise ValueError(f"'log_level' must be one of: {list(LOG_LEVELS)}")

    bulk_workers = _int(raw_config, 'bulk_workers', "configuration", 1)
    if bulk_workers < 1:
        raise ValueError("'bulk_workers' must be >= 1")

    return LedgerConfig(
        storage=storage,
        defaults=defaults,
        features=features,
        log_level=log_level,
        bulk_workers=bulk_workers,
    )


def load_policies(path: str, defaults: Optional[DefaultsConfig] = None) -> List[FeePolicy]:
    """Load client fee policies from a YAML file.

    The file holds a top-level `policies` list; each entry describes one
    client and its fee rules.

    Args:
        path: Path to YAML policy file
        defaults: Currency and payment terms for entries that omit them

    Returns:
        Validated policies in file order

    Raises:
        FileNotFoundError: If the file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If any policy is invalid or a client code repeats
    """
    defaults = defaults or DefaultsConfig()
    raw = _read_yaml(path, "Policy")
    if not isinstance(raw, dict):
        raise ValueError("Policy file must be a dictionary")
    _check_keys(raw, {'policies'}, "policy file")

    entries = raw.get('policies')
    if not isinstance(entries, list) or not entries:
        raise ValueError("'policies' must be a non-empty list")

    policies = []
    seen_codes = set()
    for index, entry in enumerate(entries):
        policy = _parse_policy(entry, f"policies[{index}]", defaults)
        if policy.client_code in seen_codes:
            raise ValueError(f"Duplicate client_code in policies[{index}]: {policy.client_code}")
        seen_codes.add(policy.client_code)
        policies.append(policy)
    return policies


def _parse_policy(data: Any, path: str, defaults: DefaultsConfig) -> FeePolicy:
    if not isinstance(data, dict):
        raise ValueError(f"{path} must be a dictionary")

    allowed_keys = {
        'policy_id', 'client_id', 'client_code', 'client_name', 'trigger_rule',
        'currency', 'payment_terms_days', 'effective_date', 'auto_approve',
        'notes', 'description', 'fee_rules',
    }
    _check_keys(data, allowed_keys, path)

    rules_data = data.get('fee_rules')
    if not isinstance(rules_data, list) or not rules_data:
        raise ValueError(f"'fee_rules' in {path} must be a non-empty list")
    fee_rules = tuple(
        _parse_fee_rule(rule, f"{path}.fee_rules[{i}]") for i, rule in enumerate(rules_data)
    )

    effective_date = data.get('effective_date')
    if effective_date is not None and not isinstance(effective_date, date):
        try:
            effective_date = date.fromisoformat(str(effective_date))
        except ValueError:
            raise ValueError(f"'effective_date' in {path} must be a YYYY-MM-DD date")

    try:
        return FeePolicy(
            policy_id=_str(data, 'policy_id', path, str(uuid.uuid4())),
            client_id=_str(data, 'client_id', path),
            client_code=_str(data, 'client_code', path).upper(),
            client_name=_str(data, 'client_name', path),
            trigger_rule=_enum(TriggerRule, data, 'trigger_rule', path),
            fee_rules=fee_rules,
            currency=_str(data, 'currency', path, defaults.currency).upper(),
            payment_terms_days=_int(data, 'payment_terms_days', path, defaults.payment_terms_days),
            effective_date=effective_date,
            auto_approve=_bool(data, 'auto_approve', path, False),
            notes=data.get('notes'),
            description=data.get('description'),
        )
    except ValueError as e:
        raise ValueError(f"Invalid policy in {path}: {e}")


def _parse_fee_rule(data: Any, path: str) -> FeeRule:
    if not isinstance(data, dict):
        raise ValueError(f"{path} must be a dictionary")
    allowed_keys = {
        'fee_type', 'calculation_type', 'value', 'percentage_base',
        'minimum_fee', 'maximum_fee', 'tiers',
    }
    _check_keys(data, allowed_keys, path)

    calculation_type = _enum(CalculationType, data, 'calculation_type', path)

    tiers_data = data.get('tiers') or []
    if not isinstance(tiers_data, list):
        raise ValueError(f"'tiers' in {path} must be a list")
    if calculation_type == CalculationType.TIERED and not tiers_data:
        raise ValueError(f"TIERED rule in {path} requires 'tiers'")

    tiers = []
    for i, tier in enumerate(tiers_data):
        tier_path = f"{path}.tiers[{i}]"
        if not isinstance(tier, dict):
            raise ValueError(f"{tier_path} must be a dictionary")
        _check_keys(tier, {'from_amount', 'to_amount', 'value', 'calculation_type'}, tier_path)
        tiers.append(FeeTier(
            from_amount=_amount(tier, 'from_amount', tier_path, required=True),
            to_amount=_amount(tier, 'to_amount', tier_path),
            value=_amount(tier, 'value', tier_path, required=True),
            calculation_type=(
                _enum(CalculationType, tier, 'calculation_type', tier_path)
                if 'calculation_type' in tier else CalculationType.FIXED
            ),
        ))

    percentage_base = None
    if data.get('percentage_base') is not None:
        percentage_base = _enum(PercentageBase, data, 'percentage_base', path)

    return FeeRule(
        fee_type=_str(data, 'fee_type', path).upper(),
        calculation_type=calculation_type,
        value=_amount(data, 'value', path, required=calculation_type != CalculationType.TIERED) or 0,
        percentage_base=percentage_base,
        minimum_fee=_amount(data, 'minimum_fee', path),
        maximum_fee=_amount(data, 'maximum_fee', path),
        tiers=tuple(tiers),
    )


def _amount(data: Dict, key: str, path: str, required: bool = False):
    if data.get(key) is None:
        if required:
            raise ValueError(f"Missing required '{key}' in {path}")
        return None
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"'{key}' in {path} must be a number")
    try:
        amount = to_decimal(value)
    except ArithmeticError:
        raise ValueError(f"'{key}' in {path} must be a number")
    if not amount.is_finite() or amount < 0:
        raise ValueError(f"'{key}' in {path} must be >= 0")
    return amount


def _enum(enum_cls, data: Dict, key: str, path: str):
    value = _str(data, key, path)
    try:
        return enum_cls(value.upper())
    except ValueError:
        valid = [member.value for member in enum_cls]
        raise ValueError(f"'{key}' in {path} must be one of: {valid}")


def load_triggers(path: str) -> List[TriggerInput]:
    """Load billable event triggers from a YAML file.

    The file holds a top-level `triggers` list. Structural problems fail
    the whole file; business problems (unknown client, duplicate key) are
    left to the ledger so one bad row doesn't block the rest.

    Args:
        path: Path to YAML trigger file

    Returns:
        Triggers in file order

    Raises:
        FileNotFoundError: If the file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If an entry is malformed
    """
    raw = _read_yaml(path, "Trigger")
    if not isinstance(raw, dict):
        raise ValueError("Trigger file must be a dictionary")
    _check_keys(raw, {'triggers'}, "trigger file")

    entries = raw.get('triggers')
    if not isinstance(entries, list) or not entries:
        raise ValueError("'triggers' must be a non-empty list")

    allowed_keys = {
        'client_id', 'control_number', 'trigger_date', 'trigger_type', 'fee_type',
        'amount', 'base_amount', 'candidate_name', 'candidate_email', 'notes', 'source_data',
    }
    triggers = []
    for index, entry in enumerate(entries):
        entry_path = f"triggers[{index}]"
        if not isinstance(entry, dict):
            raise ValueError(f"{entry_path} must be a dictionary")
        _check_keys(entry, allowed_keys, entry_path)

        trigger_date = entry.get('trigger_date')
        if not isinstance(trigger_date, date):
            trigger_date = _str(entry, 'trigger_date', entry_path)

        control_number = str(entry.get('control_number') or '').strip()
        if not control_number:
            raise ValueError(f"Missing required 'control_number' in {entry_path}")

        source_data = entry.get('source_data') or {}
        if not isinstance(source_data, dict):
            raise ValueError(f"'source_data' in {entry_path} must be a dictionary")

        triggers.append(TriggerInput(
            client_id=_str(entry, 'client_id', entry_path),
            control_number=control_number,
            trigger_date=trigger_date,
            trigger_type=_str(entry, 'trigger_type', entry_path).upper(),
            fee_type=_str(entry, 'fee_type', entry_path).upper(),
            amount=_amount(entry, 'amount', entry_path),
            base_amount=_amount(entry, 'base_amount', entry_path),
            candidate_name=entry.get('candidate_name'),
            candidate_email=entry.get('candidate_email'),
            source_data=source_data,
            notes=entry.get('notes'),
        ))
    return triggers
