"""
taxonomy.py
------------
Transaction-type taxonomy lookup.

Loads the classification table from config.yaml and answers: which bill
bucket (utility, subscription, credit_card, large_recurring) does a merchant
belong to, judging by its transaction categories first and its normalized
merchant key second?

Taxonomy updates happen in config.yaml, no code changes required.
"""

from collections.abc import Iterable
from typing import Dict, List, Optional, Tuple

from config.config_loader import get_classification_config


BUCKET_ORDER = ("utility", "subscription", "credit_card", "large_recurring")


class TransactionTypeTaxonomy:
    """
    Category / keyword lookup into the fixed bill taxonomy.

    Built once at init from the config table. Thread-safe for reads.
    """

    def __init__(self):
        self._buckets: List[Tuple[str, set[str], List[str]]] = []
        self._labels: Dict[str, str] = {}
        self._load_taxonomy()

    def _load_taxonomy(self) -> None:
        config = get_classification_config()
        for bucket in BUCKET_ORDER:
            if bucket not in config:
                continue
            categories = {c.lower() for c in config[bucket].get("categories", [])}
            keywords = [k.lower() for k in config[bucket].get("keywords", [])]
            self._buckets.append((bucket, categories, keywords))
        self._labels = dict(config.get("category_labels", {}))

    def classify(self, merchant_keys: Iterable[str], categories: Iterable[str]) -> Optional[str]:
        """
        Args:
            merchant_keys: Normalized merchant keys of the cluster.
            categories: Raw transaction categories of the cluster members.

        Returns:
            The bucket name, or None when nothing in the taxonomy applies.
        """
        lowered = {c.strip().lower() for c in categories if c}
        for bucket, bucket_categories, _ in self._buckets:
            if lowered & bucket_categories:
                return bucket

        padded_keys = [f" {k} " for k in sorted(merchant_keys)]
        for bucket, _, keywords in self._buckets:
            for keyword in keywords:
                if any(f" {keyword} " in key for key in padded_keys):
                    return bucket
        return None

    def category_label(self, transaction_type: str) -> Optional[str]:
        """Display category for a bucket, e.g. "utility" -> "Utilities"."""
        return self._labels.get(transaction_type)

    def __len__(self) -> int:
        return len(self._buckets)

    def __repr__(self) -> str:
        return f"TransactionTypeTaxonomy(buckets={[b for b, _, _ in self._buckets]})"
