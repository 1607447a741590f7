"""
models.py
----------
Core domain models. These are the typed contracts between engine layers.

- Transaction: One row of the read-only transaction feed.
- MerchantCluster: Transient grouping produced by the matcher.
- RecurringPattern: Output of the verifier + projector. This is what the
  consumer persists and what the upcoming-bills view is built from.
- MerchantRegistryEntry / RegistryMatch: Admin-curated reference data and
  the result of matching a cluster against it.
"""

import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Optional

import pandas as pd

from core.errors import InputDataError


TRANSACTION_TYPES = ("utility", "subscription", "credit_card", "large_recurring", "excluded")
FREQUENCIES = ("weekly", "biweekly", "monthly", "quarterly", "yearly", "unknown")
CONFIDENCE_HINTS = ("high", "medium", "low")


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def _optional_text(value: Any) -> Optional[str]:
    return None if _is_missing(value) else str(value).strip()


@dataclass(frozen=True)
class Transaction:
    """
    A single transaction from the feed. Never mutated by the engine.

    `amount` is signed; `type` is authoritative when supplied, otherwise
    negative amounts are expenses.
    """

    id: str
    date: date
    description: str
    amount: float
    type: str                        # "income" | "expense"
    merchant: Optional[str] = None
    category: Optional[str] = None

    @property
    def grouping_text(self) -> str:
        """Text the normalizer keys on: merchant when present, else description."""
        return self.merchant if self.merchant else self.description

    @property
    def abs_amount(self) -> float:
        return abs(self.amount)

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Transaction":
        """
        Build a Transaction from a loosely typed record (dict, DataFrame row).

        Raises:
            InputDataError: If id, date or amount is missing or unparseable,
                or the type is not income/expense.
        """
        raw_id = record.get("id", record.get("transaction_id"))
        if _is_missing(raw_id):
            raise InputDataError("missing transaction id")
        txn_id = str(raw_id)

        raw_date = record.get("date", record.get("transaction_date"))
        if _is_missing(raw_date):
            raise InputDataError("missing date", txn_id)
        try:
            parsed_date = pd.to_datetime(raw_date).date()
        except (ValueError, TypeError, OverflowError) as exc:
            raise InputDataError(f"unparseable date {raw_date!r}", txn_id) from exc

        raw_amount = record.get("amount")
        if _is_missing(raw_amount):
            raise InputDataError("missing amount", txn_id)
        try:
            amount = float(raw_amount)
        except (ValueError, TypeError) as exc:
            raise InputDataError(f"unparseable amount {raw_amount!r}", txn_id) from exc
        if not math.isfinite(amount):
            raise InputDataError(f"unparseable amount {raw_amount!r}", txn_id)

        txn_type = _optional_text(record.get("type"))
        if txn_type is None:
            txn_type = "expense" if amount < 0 else "income"
        txn_type = txn_type.lower()
        if txn_type not in ("income", "expense"):
            raise InputDataError(f"unknown transaction type {txn_type!r}", txn_id)

        return cls(
            id=txn_id,
            date=parsed_date,
            description=_optional_text(record.get("description")) or "",
            amount=amount,
            type=txn_type,
            merchant=_optional_text(record.get("merchant")),
            category=_optional_text(record.get("category")),
        )


@dataclass
class MerchantRegistryEntry:
    """Admin-curated known merchant. Read-only to the matcher and verifier."""

    id: str
    merchant_name: str
    normalized_name: str
    category: str
    transaction_type: str            # one of TRANSACTION_TYPES
    frequency: Optional[str] = None
    patterns: list[str] = field(default_factory=list)
    confidence: str = "medium"       # hint: "high" | "medium" | "low"
    logo_url: Optional[str] = None
    is_active: bool = True
    auto_detected: bool = False
    exclude_from_bills: bool = False
    notification_days: Optional[int] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class RegistryMatch:
    """How a piece of text matched a registry entry."""
    entry: MerchantRegistryEntry
    match_type: str                  # "exact" | "pattern" | "substring" | "fuzzy"
    score: float                     # 0.0 - 1.0

    @property
    def is_strong(self) -> bool:
        """Exact and pattern hits pin confidence; weaker hits only seed the classification."""
        return self.match_type in ("exact", "pattern")


@dataclass
class MerchantCluster:
    """Transactions believed to be payments to the same merchant."""

    normalized_key: str
    transactions: list[Transaction] = field(default_factory=list)
    member_keys: set[str] = field(default_factory=set)
    registry_match: Optional[RegistryMatch] = None

    @property
    def occurrence_count(self) -> int:
        return len(self.transactions)

    @property
    def first_seen(self) -> date:
        return self.transactions[0].date

    @property
    def mean_amount(self) -> float:
        if not self.transactions:
            return 0.0
        return sum(t.abs_amount for t in self.transactions) / len(self.transactions)

    def sort(self) -> None:
        """Date ascending, ties by id, so every downstream step is order-stable."""
        self.transactions.sort(key=lambda t: (t.date, t.id))


@dataclass
class RecurringPattern:
    """
    A verified recurring payment for one merchant.

    Produced by PatternVerifier, due date filled in by BillProjector,
    persisted by the consumer.
    """

    # Identity
    id: str
    merchant_name: str
    normalized_key: str
    category: str
    transaction_type: str            # one of TRANSACTION_TYPES

    # Cadence
    frequency: str                   # one of FREQUENCIES

    # Amount statistics
    avg_amount: float
    amount_variance: float           # Population std dev of absolute amounts.

    # Evidence
    occurrences: int
    linked_transaction_ids: list[str]
    last_transaction_date: date

    # Confidence
    confidence: float                # 0.0 - 1.0, kept for sorting/thresholds
    confidence_tier: str             # "high" | "medium" | "low", display only

    # Projection & overrides
    next_due_date: Optional[date] = None
    exclude_from_bills: bool = False
    auto_detected: bool = True
    user_confirmed: bool = False

    # Review & explainability
    needs_review: bool = False
    detection_reasons: list[str] = field(default_factory=list)
    confidence_factors: dict[str, float] = field(default_factory=dict)

    # Presentation
    notification_days: int = 3
    logo_url: Optional[str] = None
