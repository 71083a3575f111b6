"""Entitlement and credit engine: feature gating, usage caps and a per-account credit ledger."""
