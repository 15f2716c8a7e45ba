"""
Core modules for the billing ledger.

This package contains idempotency keys, fee calculation, the billable
event and invoice ledgers, policies, audit and reconciliation.
"""
