"""
pattern_verifier.py
--------------------
Turns one merchant cluster into a RecurringPattern.

It answers three questions about the cluster:

    1. How often does it recur? Median inter-arrival gap mapped onto the
       configured frequency bands (robust to a single skipped or doubled
       payment).
    2. How confident are we? Weighted blend of occurrence count, gap
       regularity and amount regularity, adjusted by the tentative cap,
       registry floor, mixed-pattern cap and user confirmation.
    3. What kind of bill is it? Registry type first, then the category /
       keyword taxonomy, then a confidence-based default.

A cluster with very uneven amounts is a "mixed pattern": it is still
returned, but capped at medium confidence and flagged for manual review.
Nothing here raises on poor signal quality.
"""

import hashlib
from collections import Counter
from typing import Dict, Optional

import numpy as np

from config.config_loader import (
    get_bill_projection_config,
    get_confidence_scoring_config,
    get_confidence_tiers,
    get_recurring_detection_config,
)
from core.models import MerchantCluster, RecurringPattern, RegistryMatch
from core.overrides import OverrideStatus, RecurringOverrides
from core.taxonomy import TransactionTypeTaxonomy


_UNCATEGORIZED = {"", "other", "uncategorized"}


class PatternVerifier:
    """
    Usage:
        verifier = PatternVerifier()
        pattern = verifier.verify(cluster)
    """

    def __init__(self):
        self.frequency_bands = get_recurring_detection_config()["frequency_bands"]
        self.scoring = get_confidence_scoring_config()
        self.tier_boundaries = get_confidence_tiers()
        self.notification_days = get_bill_projection_config()["notification_days"]
        self.taxonomy = TransactionTypeTaxonomy()

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def verify(self, cluster: MerchantCluster, overrides: Optional[RecurringOverrides] = None) -> RecurringPattern:
        """
        Build a RecurringPattern from a cluster (expected to hold >= 2 members).
        next_due_date is left unset; BillProjector fills it in.
        """
        status = overrides.status_for(cluster.member_keys) if overrides is not None else OverrideStatus()
        transactions = cluster.transactions
        match = cluster.registry_match
        reasons = [f"OCCURRENCES_{cluster.occurrence_count}"]

        # --- Cadence ---
        ordinals = np.array([t.date.toordinal() for t in transactions], dtype=float)
        gaps = np.diff(ordinals)
        median_gap = float(np.median(gaps)) if gaps.size else None
        inferred = self._infer_frequency(median_gap)
        frequency = inferred
        if median_gap is not None:
            reasons.append(f"FREQUENCY_{inferred.upper()} (median_gap={median_gap:.0f}d)")
        if inferred == "unknown" and match is not None and match.is_strong:
            registry_frequency = match.entry.frequency
            if registry_frequency in self.frequency_bands:
                frequency = registry_frequency
                reasons.append(f"FREQUENCY_FROM_REGISTRY ({registry_frequency})")
        if gaps.size < 2:
            reasons.append("TENTATIVE_SINGLE_GAP")

        # --- Amount statistics ---
        amounts = np.array([t.abs_amount for t in transactions], dtype=float)
        avg_amount = float(np.mean(amounts))
        std_amount = float(np.std(amounts))
        relative_variance = std_amount / avg_amount if avg_amount > 0 else 0.0
        mixed = relative_variance > self.scoring["mixed_variance_ratio"]
        reasons.append(
            f"{'AMOUNT_MIXED' if mixed else 'AMOUNT_STABLE'} "
            f"(rel_var={relative_variance:.3f}, mean=${avg_amount:,.2f})"
        )

        # --- Confidence ---
        confidence, factors = self._score_confidence(
            cluster.occurrence_count, gaps, inferred, relative_variance, match, mixed, status.confirmed
        )
        tier = self._assign_tier(confidence)

        # --- Classification ---
        transaction_type = self._classify(cluster, tier, needs_review=mixed and not status.confirmed)
        if match is not None:
            reasons.append(
                f"REGISTRY_MATCH_{match.match_type.upper()} "
                f"({match.entry.merchant_name}, score={match.score:.2f})"
            )
        if status.confirmed:
            reasons.append("USER_CONFIRMED")

        exclude = (
            status.excluded_from_bills
            or (match is not None and match.entry.exclude_from_bills)
            or transaction_type == "excluded"
        )
        if status.excluded_from_bills:
            reasons.append("USER_EXCLUDED_FROM_BILLS")

        return RecurringPattern(
            id=self._pattern_id(cluster.normalized_key),
            merchant_name=self._merchant_name(cluster),
            normalized_key=cluster.normalized_key,
            category=self._category(cluster, transaction_type),
            transaction_type=transaction_type,
            frequency=frequency,
            avg_amount=round(avg_amount, 2),
            amount_variance=round(std_amount, 4),
            occurrences=cluster.occurrence_count,
            linked_transaction_ids=[t.id for t in transactions],
            last_transaction_date=transactions[-1].date,
            confidence=confidence,
            confidence_tier=tier,
            exclude_from_bills=exclude,
            auto_detected=True,
            user_confirmed=status.confirmed,
            needs_review=mixed and not status.confirmed,
            detection_reasons=reasons,
            confidence_factors=factors,
            notification_days=self._notification_days(transaction_type, match),
            logo_url=match.entry.logo_url if match is not None else None,
        )

    # -------------------------------------------------------------------------
    # INTERNAL: FREQUENCY
    # -------------------------------------------------------------------------

    def _infer_frequency(self, median_gap: Optional[float]) -> str:
        """First band whose inclusive [min_gap_days, max_gap_days] holds the median gap."""
        if median_gap is None:
            return "unknown"
        for name, band in self.frequency_bands.items():
            if band["min_gap_days"] <= median_gap <= band["max_gap_days"]:
                return name
        return "unknown"

    # -------------------------------------------------------------------------
    # INTERNAL: CONFIDENCE
    # -------------------------------------------------------------------------

    def _score_confidence(
        self,
        occurrences: int,
        gaps: np.ndarray,
        inferred_frequency: str,
        relative_variance: float,
        match: Optional[RegistryMatch],
        mixed: bool,
        confirmed: bool,
    ) -> tuple[float, Dict[str, float]]:
        """
        Weighted composite of three 0-1 factors, then the adjustments in order:
        tentative cap, registry floor, mixed-pattern cap, user bonus.
        Every step is non-decreasing in each factor.
        """
        s = self.scoring

        # Component 1: occurrence count, saturating.
        saturation = s["occurrence_saturation"]
        occurrence_score = min(occurrences, saturation) / saturation

        # Component 2: gap regularity, 1 - coefficient of variation of gaps.
        gap_score = 0.0
        if gaps.size:
            mean_gap = float(np.mean(gaps))
            gap_cv = float(np.std(gaps)) / mean_gap if mean_gap > 0 else 1.0
            gap_score = min(max(1.0 - gap_cv, 0.0), 1.0)
        if inferred_frequency == "unknown":
            gap_score *= s["unknown_frequency_gap_penalty"]

        # Component 3: amount regularity.
        amount_score = min(max(1.0 - relative_variance, 0.0), 1.0)

        base = (
            s["occurrence_weight"] * occurrence_score
            + s["gap_regularity_weight"] * gap_score
            + s["amount_regularity_weight"] * amount_score
        )

        confidence = base
        if gaps.size < 2:
            confidence = min(confidence, s["tentative_cap"])
        if match is not None and match.is_strong:
            confidence = max(confidence, s["registry_floor"])
        if mixed:
            confidence = min(confidence, s["mixed_pattern_cap"])
        if confirmed:
            confidence = min(confidence + s["user_confirmed_bonus"], 1.0)

        confidence = round(min(max(confidence, 0.0), 1.0), 4)
        factors = {
            "occurrence": round(occurrence_score, 4),
            "gap_regularity": round(gap_score, 4),
            "amount_regularity": round(amount_score, 4),
            "base": round(base, 4),
            "total": confidence,
        }
        return confidence, factors

    def _assign_tier(self, score: float) -> str:
        """Maps a confidence score to a display tier."""
        for tier_name, bounds in self.tier_boundaries.items():
            if bounds["min_score"] <= score < bounds["max_score"]:
                return tier_name
        # Edge case: score at or above the top boundary
        return "high"

    # -------------------------------------------------------------------------
    # INTERNAL: CLASSIFICATION & PRESENTATION
    # -------------------------------------------------------------------------

    def _classify(self, cluster: MerchantCluster, tier: str, needs_review: bool = False) -> str:
        """
        Registry type, then taxonomy bucket. Without either, a weak or
        unreviewed mixed pattern is kept out of bills until the user confirms it.
        """
        if cluster.registry_match is not None:
            return cluster.registry_match.entry.transaction_type

        bucket = self.taxonomy.classify(
            cluster.member_keys, (t.category for t in cluster.transactions if t.category)
        )
        if bucket is not None:
            return bucket
        return "excluded" if tier == "low" or needs_review else "large_recurring"

    def _category(self, cluster: MerchantCluster, transaction_type: str) -> str:
        if cluster.registry_match is not None and cluster.registry_match.entry.category:
            return cluster.registry_match.entry.category

        categories = [
            t.category for t in cluster.transactions
            if t.category and t.category.strip().lower() not in _UNCATEGORIZED
        ]
        if categories:
            return self._most_common_latest(categories)
        return self.taxonomy.category_label(transaction_type) or "Other"

    def _merchant_name(self, cluster: MerchantCluster) -> str:
        match = cluster.registry_match
        if match is not None and match.is_strong:
            return match.entry.merchant_name
        return self._most_common_latest([t.grouping_text for t in cluster.transactions])

    def _notification_days(self, transaction_type: str, match: Optional[RegistryMatch]) -> int:
        if match is not None and match.entry.notification_days is not None:
            return int(match.entry.notification_days)
        return int(self.notification_days.get(transaction_type, self.notification_days["default"]))

    @staticmethod
    def _most_common_latest(values: list[str]) -> str:
        """Most frequent value; ties go to the one seen latest (values are date-ordered)."""
        counts = Counter(values)
        last_index = {v: i for i, v in enumerate(values)}
        return max(counts, key=lambda v: (counts[v], last_index[v]))

    @staticmethod
    def _pattern_id(normalized_key: str) -> str:
        """Stable across runs: the same merchant key always yields the same id."""
        return "rp_" + hashlib.sha1(normalized_key.encode("utf-8")).hexdigest()[:12]
