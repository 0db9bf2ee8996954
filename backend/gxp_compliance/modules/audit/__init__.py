"""Audit trail read APIs."""
