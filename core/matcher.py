"""
matcher.py
-----------
Groups expense transactions into merchant clusters.

Two passes:
    1. Exact: transactions with the same normalized key share a cluster.
    2. Fuzzy: small clusters are merged into a neighbour when their keys
       are within a length-scaled Levenshtein distance and their average
       amounts agree. Candidates are bucketed by key prefix first, so the
       pairwise comparison only runs inside a bucket.

Clusters are then tagged with their registry match (if any) and anything
below the minimum occurrence count is dropped.
"""

import logging
from collections import defaultdict
from collections.abc import Iterable
from typing import Dict, List, Optional

from rapidfuzz.distance import Levenshtein

from config.config_loader import get_recurring_detection_config
from core.merchant_registry import MerchantRegistry
from core.models import MerchantCluster, RegistryMatch, Transaction
from core.normalizer import normalize
from core.overrides import RecurringOverrides

logger = logging.getLogger(__name__)

_TIER_RANK = {"exact": 0, "pattern": 1, "substring": 2, "fuzzy": 3}


class MerchantMatcher:
    """
    Usage:
        matcher = MerchantMatcher()
        clusters = matcher.cluster(transactions, registry.snapshot())
    """

    def __init__(self):
        self.config = get_recurring_detection_config()
        self.min_occurrences = self.config["min_occurrences"]
        self.fuzzy_max_size = self.config["fuzzy_candidate_max_size"]
        self.prefix_length = self.config["fuzzy_prefix_length"]

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def cluster(
        self,
        transactions: Iterable[Transaction],
        registry: Optional[MerchantRegistry] = None,
        overrides: Optional[RecurringOverrides] = None,
    ) -> List[MerchantCluster]:
        """
        Cluster expense transactions by merchant.

        Returns:
            Clusters with at least min_occurrences members, ordered by first
            transaction date then normalized key.
        """
        keyed = self._prepare(transactions, overrides)

        clusters = self._exact_pass(keyed)
        clusters = self._fuzzy_pass(clusters)

        if overrides is not None:
            self._apply_selections(clusters, overrides)

        clusters = [c for c in clusters if c.occurrence_count >= self.min_occurrences]

        if registry is not None:
            for cluster in clusters:
                cluster.registry_match = self._match_registry(cluster, registry)

        clusters.sort(key=lambda c: (c.first_seen, c.normalized_key))
        return clusters

    # -------------------------------------------------------------------------
    # INTERNAL: PREPARATION
    # -------------------------------------------------------------------------

    def _prepare(
        self, transactions: Iterable[Transaction], overrides: Optional[RecurringOverrides]
    ) -> List[tuple[Transaction, str]]:
        """
        Drops income, duplicate ids (first wins), user-split transactions and
        empty keys. An empty key is never a valid grouping key.
        """
        split_ids = overrides.split_transaction_ids if overrides is not None else set()
        seen: set[str] = set()
        keyed = []
        dropped_empty = 0

        for txn in transactions:
            if txn.id in seen:
                continue
            seen.add(txn.id)
            if txn.type != "expense" or txn.id in split_ids:
                continue
            key = normalize(txn.grouping_text)
            if not key:
                dropped_empty += 1
                continue
            keyed.append((txn, key))

        if dropped_empty:
            logger.debug(f"Dropped {dropped_empty} transactions with an empty merchant key.")
        return keyed

    # -------------------------------------------------------------------------
    # INTERNAL: EXACT + FUZZY PASSES
    # -------------------------------------------------------------------------

    def _exact_pass(self, keyed: List[tuple[Transaction, str]]) -> List[MerchantCluster]:
        by_key: Dict[str, MerchantCluster] = {}
        for txn, key in keyed:
            if key not in by_key:
                by_key[key] = MerchantCluster(normalized_key=key, member_keys={key})
            by_key[key].transactions.append(txn)

        clusters = list(by_key.values())
        for cluster in clusters:
            cluster.sort()
        return clusters

    def _fuzzy_pass(self, clusters: List[MerchantCluster]) -> List[MerchantCluster]:
        """
        Merges near-duplicate keys. The surviving key belongs to the larger
        cluster; ties go to the earliest first-seen transaction, then to the
        lexically smaller key.
        """
        buckets: Dict[str, List[MerchantCluster]] = defaultdict(list)
        for cluster in clusters:
            buckets[cluster.normalized_key[: self.prefix_length]].append(cluster)

        absorbed: set[str] = set()
        for prefix in sorted(buckets):
            bucket = sorted(
                buckets[prefix],
                key=lambda c: (-c.occurrence_count, c.first_seen, c.normalized_key),
            )
            for i, winner in enumerate(bucket):
                if winner.normalized_key in absorbed:
                    continue
                for other in bucket[i + 1:]:
                    if other.normalized_key in absorbed:
                        continue
                    if (
                        winner.occurrence_count >= self.fuzzy_max_size
                        and other.occurrence_count >= self.fuzzy_max_size
                    ):
                        continue
                    if self._should_merge(winner, other):
                        logger.debug(
                            f"Fuzzy merge: {other.normalized_key!r} -> {winner.normalized_key!r}"
                        )
                        winner.transactions.extend(other.transactions)
                        winner.member_keys |= other.member_keys
                        winner.sort()
                        absorbed.add(other.normalized_key)

        return [c for c in clusters if c.normalized_key not in absorbed]

    def _should_merge(self, a: MerchantCluster, b: MerchantCluster) -> bool:
        """Key similarity AND amount agreement; similar names alone are not enough."""
        shortest = min(len(a.normalized_key), len(b.normalized_key))
        if shortest < self.config["fuzzy_min_length"]:
            return False

        allowed = max(
            self.config["fuzzy_base_distance"],
            shortest // self.config["fuzzy_chars_per_extra_edit"],
        )
        distance = Levenshtein.distance(a.normalized_key, b.normalized_key, score_cutoff=allowed)
        if distance > allowed:
            return False

        larger = max(a.mean_amount, b.mean_amount)
        if larger == 0:
            return True
        return abs(a.mean_amount - b.mean_amount) / larger <= self.config["fuzzy_amount_tolerance"]

    # -------------------------------------------------------------------------
    # INTERNAL: REGISTRY
    # -------------------------------------------------------------------------

    @staticmethod
    def _match_registry(cluster: MerchantCluster, registry: MerchantRegistry) -> Optional[RegistryMatch]:
        """
        Tries the surviving key first, then the merged-in aliases in key
        order. Among hits the strongest tier wins, earlier keys on ties.
        """
        aliases = sorted(cluster.member_keys - {cluster.normalized_key})
        best: Optional[RegistryMatch] = None
        for key in [cluster.normalized_key] + aliases:
            match = registry.match(key)
            if match is None:
                continue
            if best is None or _TIER_RANK[match.match_type] < _TIER_RANK[best.match_type]:
                best = match
        return best

    # -------------------------------------------------------------------------
    # INTERNAL: OVERRIDES
    # -------------------------------------------------------------------------

    def _apply_selections(self, clusters: List[MerchantCluster], overrides: RecurringOverrides) -> None:
        """Members the user left unticked in a confirmation are dropped; new ones stay."""
        for cluster in clusters:
            deselected = overrides.status_for(cluster.member_keys).deselected_ids
            if not deselected:
                continue
            before = cluster.occurrence_count
            cluster.transactions = [t for t in cluster.transactions if t.id not in deselected]
            logger.debug(
                f"Manual selection on {cluster.normalized_key!r}: kept "
                f"{cluster.occurrence_count} of {before} transactions."
            )
