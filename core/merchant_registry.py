"""
merchant_registry.py
---------------------
Admin-curated table of known merchants.

The matcher consults it to tag clusters with a known category / type, and
the verifier uses the match to pre-seed confidence. Detection treats it as
read-mostly: each run works on a snapshot() taken once at the start, so
admin CRUD or a bulk import in flight is never observed half-written.

An empty registry is valid; detection then runs on heuristics alone.
"""

import copy
import logging
import re
import threading
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, List, Optional, Pattern

from rapidfuzz import fuzz

from config.config_loader import get_merchant_registry_config
from core.models import (
    CONFIDENCE_HINTS,
    TRANSACTION_TYPES,
    MerchantRegistryEntry,
    RecurringPattern,
    RegistryMatch,
)
from core.normalizer import normalize

logger = logging.getLogger(__name__)

_ADMIN_STRIP = re.compile(r"[#*]+")
_ADMIN_SUFFIX = re.compile(r"\s+(auto|eft|payment|bill|monthly)\s*$", re.IGNORECASE)
_ADMIN_PREFIX = re.compile(r"^\s*(payment|bill)\s+", re.IGNORECASE)
_SLUG = re.compile(r"[^a-z0-9]")

_MIN_SUBSTRING_LENGTH = 4
_UPDATABLE_FIELDS = {f.name for f in fields(MerchantRegistryEntry)} - {"id", "normalized_name"}


def normalize_merchant_name(name: str) -> str:
    """
    Registry-side name normalization, used for duplicate detection.

    "Comcast Payment" and "comcast" normalize to the same name.
    """
    name = " ".join(name.lower().split())
    name = _ADMIN_STRIP.sub("", name)
    name = _ADMIN_SUFFIX.sub("", name)
    name = _ADMIN_PREFIX.sub("", name)
    return name.strip()


def _compile_pattern(pattern: str) -> Pattern:
    """Compiles an admin pattern; invalid regex is treated as a literal with * wildcards."""
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error:
        logger.warning(f"Registry pattern {pattern!r} is not a valid regex; matching it literally.")
        return re.compile(re.escape(pattern).replace(r"\*", ".*"), re.IGNORECASE)


def _name_pattern(name: str) -> str:
    """Whole-word pattern for a merchant name: "Rent" must not claim "parentsquare"."""
    return rf"(?<!\w){re.escape(normalize(name))}(?!\w)"


@dataclass(frozen=True)
class ImportResult:
    """Outcome of a bulk import or auto-populate run."""
    added: int
    skipped: int

    def as_dict(self) -> Dict[str, int]:
        return {"added": self.added, "skipped": self.skipped}


class MerchantRegistry:
    """
    In-memory merchant registry with CRUD, matching and bulk import.

    Mutations are serialised with a lock. Detection runs should call
    snapshot() once and match against the returned read-only copy.

    Usage:
        registry = MerchantRegistry()
        registry.create("Netflix", "Entertainment", "subscription", frequency="monthly")
        registry.lookup("NETFLIX.COM *123")
    """

    def __init__(self, entries: Iterable[MerchantRegistryEntry] | None = None, read_only: bool = False):
        self.config = get_merchant_registry_config()
        self._lock = threading.RLock()
        self._entries: Dict[str, MerchantRegistryEntry] = {}
        self._match_keys: Dict[str, str] = {}
        self._compiled: Dict[str, List[Pattern]] = {}
        for entry in entries or []:
            self._index(entry)
        self._read_only = read_only

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE: LOOKUP
    # -------------------------------------------------------------------------

    def lookup(self, text: str) -> Optional[MerchantRegistryEntry]:
        """Returns the best matching active entry for a description, or None."""
        match = self.match(text)
        return match.entry if match else None

    def match(self, text: str) -> Optional[RegistryMatch]:
        """
        Match a description (raw or already normalized) against the registry.

        Priority: exact normalized name, admin pattern, whole-word substring
        of the name, fuzzy ratio. Within a tier the earliest-created entry
        wins, except substrings where the longest name wins.
        """
        key = normalize(text)
        if not key:
            return None
        raw = str(text).lower()

        with self._lock:
            active = [e for e in self._entries.values() if e.is_active]

            for entry in active:
                if self._match_keys[entry.id] == key:
                    return RegistryMatch(entry, "exact", 1.0)

            for entry in active:
                for pattern in self._compiled[entry.id]:
                    if pattern.search(key) or pattern.search(raw):
                        return RegistryMatch(entry, "pattern", 0.9)

            padded = f" {key} "
            substring_hits = [
                e for e in active
                if len(self._match_keys[e.id]) >= _MIN_SUBSTRING_LENGTH
                and f" {self._match_keys[e.id]} " in padded
            ]
            if substring_hits:
                best = max(substring_hits, key=lambda e: len(self._match_keys[e.id]))
                return RegistryMatch(best, "substring", 0.85)

            threshold = self.config["fuzzy_match_threshold"]
            best_entry, best_score = None, 0.0
            for entry in active:
                score = fuzz.ratio(key, self._match_keys[entry.id])
                if score >= threshold and score > best_score:
                    best_entry, best_score = entry, score
            if best_entry is not None:
                return RegistryMatch(best_entry, "fuzzy", round(best_score / 100.0, 4))

        return None

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE: CRUD
    # -------------------------------------------------------------------------

    def create(
        self,
        merchant_name: str,
        category: str,
        transaction_type: str,
        **attributes: Any,
    ) -> MerchantRegistryEntry:
        """
        Add a merchant. Extra keyword attributes map onto MerchantRegistryEntry
        fields (frequency, patterns, confidence, logo_url, ...).

        Raises:
            ValueError: On a blank name, unknown transaction type or confidence hint.
        """
        self._check_writable()
        entry = MerchantRegistryEntry(
            id=uuid.uuid4().hex,
            merchant_name=merchant_name,
            normalized_name="",
            category=category,
            transaction_type=transaction_type,
        )
        for name, value in attributes.items():
            if name not in _UPDATABLE_FIELDS:
                raise ValueError(f"Unknown registry field: {name}")
            setattr(entry, name, value)
        self._validate(entry)

        with self._lock:
            self._index(entry)
        logger.info(f"Registry: created {entry.merchant_name!r} ({entry.transaction_type}).")
        return entry

    def get(self, entry_id: str) -> MerchantRegistryEntry:
        """
        Raises:
            KeyError: If no entry has this id.
        """
        with self._lock:
            if entry_id not in self._entries:
                raise KeyError(f"No registry entry with id '{entry_id}'")
            return self._entries[entry_id]

    def update(self, entry_id: str, **changes: Any) -> MerchantRegistryEntry:
        """
        Update fields of an existing entry. Renaming re-derives normalized_name.

        Raises:
            KeyError: If no entry has this id.
            ValueError: On an unknown field or invalid value.
        """
        self._check_writable()
        with self._lock:
            current = self.get(entry_id)
            updated = copy.deepcopy(current)
            for name, value in changes.items():
                if name not in _UPDATABLE_FIELDS:
                    raise ValueError(f"Unknown registry field: {name}")
                setattr(updated, name, value)
            self._validate(updated)
            self._index(updated)
        logger.info(f"Registry: updated {updated.merchant_name!r} ({sorted(changes)}).")
        return updated

    def delete(self, entry_id: str) -> MerchantRegistryEntry:
        """
        Raises:
            KeyError: If no entry has this id.
        """
        self._check_writable()
        with self._lock:
            entry = self.get(entry_id)
            del self._entries[entry_id]
            del self._match_keys[entry_id]
            del self._compiled[entry_id]
        logger.info(f"Registry: deleted {entry.merchant_name!r}.")
        return entry

    def entries(self) -> List[MerchantRegistryEntry]:
        """All entries in creation order."""
        with self._lock:
            return list(self._entries.values())

    def snapshot(self) -> "MerchantRegistry":
        """Read-only deep copy for one detection run."""
        with self._lock:
            return MerchantRegistry(copy.deepcopy(list(self._entries.values())), read_only=True)

    def to_records(self) -> List[Dict[str, Any]]:
        """Plain dicts for persistence by the admin collaborator."""
        return [asdict(e) for e in self.entries()]

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE: BULK OPERATIONS
    # -------------------------------------------------------------------------

    def parse_bulk_text(self, text: str) -> List[Dict[str, str]]:
        """
        Parse the admin bulk-import format, one merchant per line:

            Netflix - Entertainment - subscription - monthly - active - high

        Fields: name, category, type, frequency, status, confidence. Missing
        trailing fields take the configured defaults; blank lines are ignored.
        """
        delimiter = self.config["bulk_delimiter"]
        defaults = self.config["bulk_defaults"]
        field_names = ["name", "category", "type", "frequency", "status", "confidence"]
        default_values = [
            "",
            defaults["category"],
            defaults["transaction_type"],
            defaults["frequency"],
            defaults["status"],
            defaults["confidence"],
        ]

        records = []
        for line in text.splitlines():
            if not line.strip():
                continue
            parts = [p.strip() for p in line.split(delimiter)]
            record = {}
            for i, name in enumerate(field_names):
                value = parts[i] if i < len(parts) and parts[i] else default_values[i]
                record[name] = value
            records.append(record)
        return records

    def bulk_import(self, records: Iterable[Mapping[str, Any]]) -> ImportResult:
        """
        Import merchants in the shape produced by parse_bulk_text().

        Skips records with a blank name or invalid type, and any whose
        normalized name already exists in the registry or earlier in the
        same batch.
        """
        self._check_writable()
        defaults = self.config["bulk_defaults"]
        added = skipped = 0

        with self._lock:
            known = {e.normalized_name for e in self._entries.values()}
            known |= {e.merchant_name.lower() for e in self._entries.values()}

            for record in records:
                name = str(record.get("name") or "").strip()
                if not name:
                    logger.warning("Bulk import: skipping merchant with missing name.")
                    skipped += 1
                    continue

                normalized_name = normalize_merchant_name(name)
                if normalized_name in known or name.lower() in known:
                    logger.info(f"Bulk import: merchant already exists, skipping {name!r}.")
                    skipped += 1
                    continue

                transaction_type = str(record.get("type") or defaults["transaction_type"]).lower()
                if transaction_type not in TRANSACTION_TYPES:
                    logger.warning(f"Bulk import: unknown type {transaction_type!r} for {name!r}, skipping.")
                    skipped += 1
                    continue

                confidence = str(record.get("confidence") or defaults["confidence"]).lower()
                if confidence not in CONFIDENCE_HINTS:
                    confidence = defaults["confidence"]

                status = str(record.get("status") or defaults["status"]).lower()
                self.create(
                    name,
                    str(record.get("category") or defaults["category"]),
                    transaction_type,
                    frequency=str(record.get("frequency") or defaults["frequency"]).lower(),
                    patterns=[_name_pattern(name)],
                    confidence=confidence,
                    is_active=status == "active",
                    logo_url=self._logo_url(name),
                    notes="Bulk imported merchant",
                )
                known.add(normalized_name)
                added += 1

        logger.info(f"Bulk import complete: {added} added, {skipped} skipped.")
        return ImportResult(added=added, skipped=skipped)

    def auto_populate(self, patterns: Iterable[RecurringPattern]) -> ImportResult:
        """
        Seed the registry from detected patterns. Where several patterns share
        a merchant name the most confident one wins; names already in the
        registry are skipped.
        """
        self._check_writable()
        ranked = sorted(patterns, key=lambda p: (-p.confidence, p.normalized_key))
        added = skipped = 0

        with self._lock:
            known = {e.normalized_name for e in self._entries.values()}
            for pattern in ranked:
                normalized_name = normalize_merchant_name(pattern.merchant_name)
                if not normalized_name or normalized_name in known:
                    skipped += 1
                    continue
                self.create(
                    pattern.merchant_name,
                    pattern.category,
                    pattern.transaction_type,
                    frequency=None if pattern.frequency == "unknown" else pattern.frequency,
                    patterns=[_name_pattern(pattern.normalized_key)],
                    confidence=pattern.confidence_tier,
                    logo_url=pattern.logo_url,
                    auto_detected=True,
                    exclude_from_bills=pattern.exclude_from_bills,
                    notification_days=pattern.notification_days,
                    notes=(
                        f"Auto-detected with {pattern.confidence:.2f} confidence "
                        f"from {pattern.occurrences} occurrences"
                    ),
                )
                known.add(normalized_name)
                added += 1

        logger.info(f"Auto-populate complete: {added} added, {skipped} skipped.")
        return ImportResult(added=added, skipped=skipped)

    # -------------------------------------------------------------------------
    # INTERNAL
    # -------------------------------------------------------------------------

    def _index(self, entry: MerchantRegistryEntry) -> None:
        entry.normalized_name = normalize_merchant_name(entry.merchant_name)
        self._entries[entry.id] = entry
        self._match_keys[entry.id] = normalize(entry.normalized_name)
        self._compiled[entry.id] = [_compile_pattern(p) for p in entry.patterns if p]

    def _validate(self, entry: MerchantRegistryEntry) -> None:
        if not entry.merchant_name or not entry.merchant_name.strip():
            raise ValueError("Registry entry needs a merchant name")
        if entry.transaction_type not in TRANSACTION_TYPES:
            raise ValueError(
                f"Invalid transaction type '{entry.transaction_type}'. "
                f"Available: {list(TRANSACTION_TYPES)}"
            )
        if entry.confidence not in CONFIDENCE_HINTS:
            raise ValueError(f"Invalid confidence hint '{entry.confidence}'")

    def _check_writable(self) -> None:
        if self._read_only:
            raise RuntimeError("Registry snapshot is read-only")

    def _logo_url(self, name: str) -> str:
        slug = _SLUG.sub("", name.lower())
        return self.config["logo_url_template"].format(slug=slug)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"MerchantRegistry(entries={len(self)}, read_only={self._read_only})"
