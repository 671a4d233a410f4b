"""Ledger persistence."""
