"""
overrides.py
-------------
User overrides that every detection run must respect.

The consumer persists these (to_dict / from_dict) and passes them back in
on each run. Merchants are keyed by their normalized key, transactions by id.

    - exclude_from_bills: keep the pattern, never surface it as upcoming.
    - mark_non_recurring: suppress the merchant's pattern entirely.
    - split_out: these transactions never join a cluster again.
    - confirm: user says the merchant is recurring; with a transaction
      selection, the members the user left unticked are dropped from that
      merchant's cluster. Transactions that arrive later still join it.
"""

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Dict, List

from core.errors import OverrideConflict
from core.normalizer import normalize

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OverrideStatus:
    """Overrides resolved for one cluster."""
    excluded_from_bills: bool = False
    non_recurring: bool = False
    confirmed: bool = False
    deselected_ids: frozenset[str] = frozenset()


@dataclass
class RecurringOverrides:
    excluded_merchants: set[str] = field(default_factory=set)
    non_recurring_merchants: set[str] = field(default_factory=set)
    confirmed_merchants: dict[str, list[str]] = field(default_factory=dict)   # key -> deselected ids
    split_transaction_ids: set[str] = field(default_factory=set)

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE: USER ACTIONS
    # -------------------------------------------------------------------------

    def exclude_from_bills(self, merchant: str) -> None:
        self.excluded_merchants.add(normalize(merchant))

    def include_in_bills(self, merchant: str) -> None:
        self.excluded_merchants.discard(normalize(merchant))

    def mark_non_recurring(self, merchant: str) -> None:
        key = normalize(merchant)
        self.non_recurring_merchants.add(key)
        self.confirmed_merchants.pop(key, None)

    def confirm(
        self,
        merchant: str,
        transaction_ids: Iterable[str] | None = None,
        candidate_ids: Iterable[str] | None = None,
    ) -> None:
        """
        Mark a merchant recurring, optionally from a hand-picked selection.

        Args:
            merchant: Merchant name or key.
            transaction_ids: The members the user ticked.
            candidate_ids: The members the user was shown (typically the
                pattern's linked_transaction_ids). Candidates not ticked are
                remembered as deselected; anything outside the candidates,
                including future transactions, keeps joining the cluster.

        Raises:
            ValueError: If a selection is given without its candidates.
        """
        key = normalize(merchant)
        deselected: list[str] = []
        if transaction_ids is not None:
            if candidate_ids is None:
                raise ValueError("A transaction selection needs the candidate ids it was made from")
            selected = {str(i) for i in transaction_ids}
            deselected = sorted({str(i) for i in candidate_ids} - selected)
        self.non_recurring_merchants.discard(key)
        self.confirmed_merchants[key] = deselected

    def split_out(self, transaction_ids: Iterable[str]) -> None:
        self.split_transaction_ids.update(str(i) for i in transaction_ids)

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE: RESOLUTION
    # -------------------------------------------------------------------------

    def status_for(self, member_keys: Iterable[str]) -> OverrideStatus:
        """
        Resolve overrides for a cluster. A merchant override applies when it
        names any normalized key that was merged into the cluster.
        """
        keys = sorted(set(member_keys))
        confirmed = [k for k in keys if k in self.confirmed_merchants]
        deselected = {txn_id for k in confirmed for txn_id in self.confirmed_merchants[k]}

        return OverrideStatus(
            excluded_from_bills=any(k in self.excluded_merchants for k in keys),
            non_recurring=any(k in self.non_recurring_merchants for k in keys),
            confirmed=bool(confirmed),
            deselected_ids=frozenset(deselected),
        )

    def find_conflicts(self, known_ids: Iterable[str]) -> List[OverrideConflict]:
        """
        Overrides that reference transaction ids absent from the current feed.
        Each is logged and ignored; the remaining overrides still apply.
        """
        known = set(known_ids)
        conflicts = [
            OverrideConflict("split", txn_id)
            for txn_id in sorted(self.split_transaction_ids - known)
        ]
        for merchant in sorted(self.confirmed_merchants):
            ids = self.confirmed_merchants[merchant]
            conflicts.extend(
                OverrideConflict("confirm", txn_id, merchant)
                for txn_id in ids if txn_id not in known
            )

        for conflict in conflicts:
            logger.warning(
                f"Override conflict: {conflict.override_kind} override references unknown "
                f"transaction {conflict.transaction_id!r}"
                + (f" (merchant {conflict.merchant!r})" if conflict.merchant else "")
                + "; ignoring it."
            )
        return conflicts

    # -------------------------------------------------------------------------
    # PERSISTENCE
    # -------------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "excluded_merchants": sorted(self.excluded_merchants),
            "non_recurring_merchants": sorted(self.non_recurring_merchants),
            "confirmed_merchants": {k: self.confirmed_merchants[k] for k in sorted(self.confirmed_merchants)},
            "split_transaction_ids": sorted(self.split_transaction_ids),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "RecurringOverrides":
        data = data or {}
        overrides = cls()
        for merchant in data.get("excluded_merchants") or []:
            overrides.exclude_from_bills(merchant)
        for merchant in data.get("non_recurring_merchants") or []:
            overrides.mark_non_recurring(merchant)
        for merchant, deselected in (data.get("confirmed_merchants") or {}).items():
            overrides.confirm(merchant)
            overrides.confirmed_merchants[normalize(merchant)] = sorted(str(i) for i in deselected or [])
        overrides.split_out(data.get("split_transaction_ids") or [])
        return overrides
