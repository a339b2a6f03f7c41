"""Tenant usage metering and billing ledger service."""
