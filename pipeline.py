"""
pipeline.py
------------
Main orchestration layer. Wires together:
    1. Input validation        ->  Transactions + skipped-record report
    2. MerchantMatcher          ->  merchant clusters
    3. PatternVerifier          ->  RecurringPatterns (frequency, confidence, type)
    4. BillProjector            ->  next due dates, upcoming / missed bills
    5. Output serialization     ->  DataFrame for the consumer to persist

This is the single entry point for running the engine. Each run is a pure
function of (transactions, registry snapshot, overrides, as_of): running it
twice on the same inputs gives identical output.

Usage:
    from pipeline import RecurringDetectionPipeline

    pipeline = RecurringDetectionPipeline(registry)
    run = pipeline.run(transactions_df, overrides, as_of=date(2024, 6, 1))
    bills = pipeline.upcoming_bills(run.patterns, as_of=date(2024, 6, 1))
"""

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date
from typing import Any, List, Optional

import pandas as pd

from core.bill_projector import BillProjector, MissedPayment
from core.errors import InputDataError, OverrideConflict, SkippedTransaction
from core.matcher import MerchantMatcher
from core.merchant_registry import MerchantRegistry
from core.models import MerchantCluster, RecurringPattern, Transaction
from core.overrides import RecurringOverrides
from core.pattern_verifier import PatternVerifier

logger = logging.getLogger(__name__)


PATTERN_COLUMNS = [
    "id", "merchant_name", "normalized_key", "category", "transaction_type",
    "frequency", "avg_amount", "amount_variance", "occurrences",
    "confidence", "confidence_tier", "last_transaction_date", "next_due_date",
    "exclude_from_bills", "auto_detected", "user_confirmed", "needs_review",
    "notification_days", "logo_url", "linked_transaction_ids", "detection_reasons",
]


@dataclass
class DetectionRun:
    """Everything one detection run produced, including what it had to leave out."""
    as_of: Optional[date]
    patterns: List[RecurringPattern] = field(default_factory=list)
    skipped: List[SkippedTransaction] = field(default_factory=list)
    conflicts: List[OverrideConflict] = field(default_factory=list)
    suppressed_merchants: List[str] = field(default_factory=list)
    cluster_count: int = 0


class RecurringDetectionPipeline:
    """
    End-to-end recurring bill detection pipeline.

    Orchestrates validation -> clustering -> verification -> projection
    without exposing internal objects to callers.
    """

    def __init__(self, registry: Optional[MerchantRegistry] = None):
        """
        Args:
            registry: Merchant registry to consult. A snapshot is taken at the
                start of every run. Defaults to an empty registry.
        """
        self.registry = registry if registry is not None else MerchantRegistry()
        self.matcher = MerchantMatcher()
        self.verifier = PatternVerifier()
        self.projector = BillProjector()

        logger.info(f"Pipeline initialized. Registry entries: {len(self.registry)}.")

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def run(
        self,
        transactions: pd.DataFrame | Iterable[Transaction | Mapping[str, Any]],
        overrides: Optional[RecurringOverrides] = None,
        as_of: Optional[date] = None,
    ) -> DetectionRun:
        """
        Run the full detection pipeline.

        Args:
            transactions: DataFrame or records with id, date, description,
                amount and optionally type, merchant, category.
            overrides: User overrides to honour.
            as_of: Reference date for projections. Defaults to the latest
                transaction date in the feed.

        Returns:
            DetectionRun with patterns sorted by confidence (descending).
        """
        records, skipped = self._prepare(transactions)
        if as_of is None and records:
            as_of = max(t.date for t in records)
        logger.info(
            f"Pipeline starting. Input: {len(records) + len(skipped):,} records, "
            f"{len(skipped):,} skipped as invalid."
        )

        registry = self.registry.snapshot()
        conflicts = overrides.find_conflicts(t.id for t in records) if overrides is not None else []

        # --- Stage 1: Clustering ---
        clusters = self.matcher.cluster(records, registry, overrides)
        logger.info(f"Stage 1 complete. Merchant clusters: {len(clusters):,}.")

        # --- Stage 2 + 3: Verification and projection ---
        patterns: List[RecurringPattern] = []
        suppressed: List[str] = []
        for cluster in clusters:
            if overrides is not None and overrides.status_for(cluster.member_keys).non_recurring:
                logger.debug(f"Skipping {cluster.normalized_key!r}: user marked non-recurring.")
                suppressed.append(cluster.normalized_key)
                continue
            pattern = self.verifier.verify(cluster, overrides)
            patterns.append(self.projector.project(pattern, as_of))

        patterns.sort(key=lambda p: (-p.confidence, p.normalized_key))
        review = sum(1 for p in patterns if p.needs_review)
        logger.info(
            f"Pipeline complete. Patterns: {len(patterns):,} "
            f"({review:,} need review, {len(suppressed):,} suppressed by user)."
        )

        return DetectionRun(
            as_of=as_of,
            patterns=patterns,
            skipped=skipped,
            conflicts=conflicts,
            suppressed_merchants=suppressed,
            cluster_count=len(clusters),
        )

    def run_detection_only(
        self,
        transactions: pd.DataFrame | Iterable[Transaction | Mapping[str, Any]],
        overrides: Optional[RecurringOverrides] = None,
    ) -> List[MerchantCluster]:
        """
        Run only the clustering stage. Useful for debugging merchant grouping
        or for the manual-selection review flow.
        """
        records, _ = self._prepare(transactions)
        return self.matcher.cluster(records, self.registry.snapshot(), overrides)

    def upcoming_bills(
        self, patterns: Iterable[RecurringPattern], as_of: date, horizon_days: Optional[int] = None
    ) -> List[RecurringPattern]:
        return self.projector.upcoming(patterns, as_of, horizon_days)

    def missed_payments(
        self, patterns: Iterable[RecurringPattern], as_of: date, grace_days: Optional[int] = None
    ) -> List[MissedPayment]:
        return self.projector.missed(patterns, as_of, grace_days)

    # -------------------------------------------------------------------------
    # INTERNAL: INPUT VALIDATION
    # -------------------------------------------------------------------------

    def _prepare(
        self, transactions: pd.DataFrame | Iterable[Transaction | Mapping[str, Any]]
    ) -> tuple[List[Transaction], List[SkippedTransaction]]:
        """
        Validates every record. A malformed record is reported as skipped
        and never aborts the batch.

        Raises:
            ValueError: If a DataFrame lacks the required columns entirely.
        """
        if isinstance(transactions, pd.DataFrame):
            self._check_columns(transactions)
            rows: Iterable[Any] = transactions.to_dict("records")
        else:
            rows = transactions

        records: List[Transaction] = []
        skipped: List[SkippedTransaction] = []
        for row in rows:
            if isinstance(row, Transaction):
                records.append(row)
                continue
            try:
                records.append(Transaction.from_record(row))
            except InputDataError as exc:
                skipped.append(SkippedTransaction(exc.transaction_id, exc.reason))

        for item in skipped:
            logger.warning(f"Skipping transaction {item.transaction_id!r}: {item.reason}.")
        return records, skipped

    @staticmethod
    def _check_columns(df: pd.DataFrame) -> None:
        missing = []
        if "id" not in df.columns and "transaction_id" not in df.columns:
            missing.append("id")
        if "date" not in df.columns and "transaction_date" not in df.columns:
            missing.append("date")
        missing += [c for c in ("description", "amount") if c not in df.columns]
        if missing:
            raise ValueError(f"Missing required columns: {missing}")

    # -------------------------------------------------------------------------
    # OUTPUT SERIALIZATION
    # -------------------------------------------------------------------------

    @staticmethod
    def to_dataframe(patterns: Iterable[RecurringPattern]) -> pd.DataFrame:
        """Flat DataFrame of patterns, one row each, in the given order."""
        rows = []
        for p in patterns:
            rows.append({
                "id": p.id,
                "merchant_name": p.merchant_name,
                "normalized_key": p.normalized_key,
                "category": p.category,
                "transaction_type": p.transaction_type,
                "frequency": p.frequency,
                "avg_amount": p.avg_amount,
                "amount_variance": p.amount_variance,
                "occurrences": p.occurrences,
                "confidence": p.confidence,
                "confidence_tier": p.confidence_tier,
                "last_transaction_date": p.last_transaction_date.isoformat(),
                "next_due_date": p.next_due_date.isoformat() if p.next_due_date else None,
                "exclude_from_bills": p.exclude_from_bills,
                "auto_detected": p.auto_detected,
                "user_confirmed": p.user_confirmed,
                "needs_review": p.needs_review,
                "notification_days": p.notification_days,
                "logo_url": p.logo_url,
                "linked_transaction_ids": "|".join(p.linked_transaction_ids),
                "detection_reasons": " | ".join(p.detection_reasons),
            })

        if not rows:
            return pd.DataFrame(columns=PATTERN_COLUMNS)
        return pd.DataFrame(rows, columns=PATTERN_COLUMNS)
