"""Data models for the user ledger and billing events."""
