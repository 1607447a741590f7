"""
errors.py
----------
Error taxonomy for the detection engine.

Only structurally invalid input raises. Signal-quality problems (high
variance, irregular gaps, registry misses) are expressed as data on the
RecurringPattern, and per-record problems are collected as records so a
batch never aborts because of one bad row.
"""

from dataclasses import dataclass


class InputDataError(ValueError):
    """A transaction record is missing or has an unparseable id, date or amount."""

    def __init__(self, reason: str, transaction_id: str | None = None):
        super().__init__(reason)
        self.reason = reason
        self.transaction_id = transaction_id


@dataclass(frozen=True)
class SkippedTransaction:
    """A record excluded from clustering, with the reason it was rejected."""
    transaction_id: str | None
    reason: str


@dataclass(frozen=True)
class OverrideConflict:
    """
    A user override that references a transaction id missing from the
    current feed (e.g. deleted upstream). Logged and ignored for that id.
    """
    override_kind: str               # "split" | "confirm"
    transaction_id: str
    merchant: str | None = None
