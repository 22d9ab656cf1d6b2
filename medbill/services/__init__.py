"""Billing and EDI services."""
