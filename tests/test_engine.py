"""
test_engine.py
---------------
Test suite for the recurring bill detection engine.

Run from the project root:
    python -m pytest tests/ -v

Tests are organized by layer:
    - Config & Taxonomy
    - Normalizer
    - Merchant Matcher
    - Pattern Verifier
    - Bill Projector
    - Full Pipeline (integration)
"""

import sys
import os
import random
import pytest
import pandas as pd
from datetime import date, timedelta

# Ensure the project root is on the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from config.config_loader import (
    load_config,
    get_frequency_period_days,
    get_recurring_detection_config,
    reset_config,
)
from core.bill_projector import BillProjector
from core.errors import InputDataError
from core.matcher import MerchantMatcher
from core.merchant_registry import MerchantRegistry
from core.models import MerchantCluster, RecurringPattern, Transaction
from core.normalizer import normalize
from core.overrides import RecurringOverrides
from core.pattern_verifier import PatternVerifier
from core.taxonomy import TransactionTypeTaxonomy
from pipeline import PATTERN_COLUMNS, RecurringDetectionPipeline


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture(autouse=True)
def reset_config_cache():
    """Clears config cache before each test for isolation."""
    reset_config()
    yield
    reset_config()


def _make_series(
    description: str = "NETFLIX.COM",
    amounts=(15.99, 15.99, 15.99),
    start: date = date(2024, 2, 15),
    gap_days=30,
    prefix: str = "t",
    category: str | None = None,
) -> list[Transaction]:
    """Helper: expense series. gap_days is a single gap or one gap per step."""
    gaps = [gap_days] * (len(amounts) - 1) if isinstance(gap_days, int) else list(gap_days)
    txns = []
    current = start
    for i, amount in enumerate(amounts):
        if i > 0:
            current = current + timedelta(days=gaps[i - 1])
        txns.append(Transaction(
            id=f"{prefix}{i + 1}",
            date=current,
            description=description,
            amount=-amount,
            type="expense",
            category=category,
        ))
    return txns


def _cluster(txns: list[Transaction], key: str | None = None) -> MerchantCluster:
    key = key or normalize(txns[0].description)
    cluster = MerchantCluster(normalized_key=key, transactions=list(txns), member_keys={key})
    cluster.sort()
    return cluster


def _make_pattern(
    merchant="Netflix",
    next_due=date(2024, 5, 15),
    avg_amount=15.99,
    exclude=False,
    frequency="monthly",
) -> RecurringPattern:
    """Helper: creates a RecurringPattern directly for projector tests."""
    return RecurringPattern(
        id=f"rp_{merchant.lower()}",
        merchant_name=merchant,
        normalized_key=merchant.lower(),
        category="Subscriptions",
        transaction_type="subscription",
        frequency=frequency,
        avg_amount=avg_amount,
        amount_variance=0.0,
        occurrences=3,
        linked_transaction_ids=["a", "b", "c"],
        last_transaction_date=date(2024, 4, 15),
        confidence=0.85,
        confidence_tier="high",
        next_due_date=next_due,
        exclude_from_bills=exclude,
    )


def _to_frame(txns: list[Transaction]) -> pd.DataFrame:
    return pd.DataFrame([
        {
            "id": t.id,
            "date": t.date.isoformat(),
            "description": t.description,
            "amount": t.amount,
            "type": t.type,
            "category": t.category,
        }
        for t in txns
    ])


# =============================================================================
# CONFIG & TAXONOMY TESTS
# =============================================================================

class TestConfig:
    def test_config_loads_successfully(self):
        config = load_config()
        for section in ("recurring_detection", "confidence_scoring", "confidence_tiers",
                        "classification", "bill_projection", "merchant_registry"):
            assert section in config

    def test_frequency_period_days(self):
        assert get_frequency_period_days("weekly") == 7
        assert get_frequency_period_days("biweekly") == 14

    def test_missing_frequency_raises(self):
        with pytest.raises(KeyError):
            get_frequency_period_days("fortnightly-ish")

    def test_config_path_from_environment(self, tmp_path, monkeypatch):
        custom = tmp_path / "custom.yaml"
        custom.write_text("recurring_detection:\n  min_occurrences: 5\n")
        monkeypatch.setenv("RECURRING_CONFIG_PATH", str(custom))
        assert get_recurring_detection_config()["min_occurrences"] == 5

    def test_missing_config_file_raises(self):
        with pytest.raises(FileNotFoundError):
            load_config("/nonexistent/config.yaml")


class TestTaxonomy:
    def test_taxonomy_loads(self):
        taxonomy = TransactionTypeTaxonomy()
        assert len(taxonomy) == 4

    def test_category_wins_over_keyword(self):
        taxonomy = TransactionTypeTaxonomy()
        assert taxonomy.classify(["netflix com"], ["Mortgage"]) == "large_recurring"

    def test_keyword_lookup(self):
        taxonomy = TransactionTypeTaxonomy()
        assert taxonomy.classify(["comcast cable"], []) == "utility"
        assert taxonomy.classify(["spotify usa"], []) == "subscription"

    def test_keyword_must_be_whole_word(self):
        taxonomy = TransactionTypeTaxonomy()
        # "rent" is a keyword; "parent" must not trigger it
        assert taxonomy.classify(["parentsquare"], []) is None

    def test_unknown_returns_none(self):
        taxonomy = TransactionTypeTaxonomy()
        assert taxonomy.classify(["corner deli"], ["Dining"]) is None

    def test_category_label(self):
        taxonomy = TransactionTypeTaxonomy()
        assert taxonomy.category_label("utility") == "Utilities"
        assert taxonomy.category_label("excluded") is None


# =============================================================================
# TRANSACTION RECORD TESTS
# =============================================================================

class TestTransactionRecord:
    def test_sign_sets_type(self):
        txn = Transaction.from_record({"id": 7, "date": "2024-01-05", "amount": "-12.5", "description": "X"})
        assert txn.id == "7"
        assert txn.type == "expense"
        assert txn.abs_amount == 12.5

    @pytest.mark.parametrize("amount", ["nan", "inf", "-inf", float("inf")])
    def test_non_finite_amount_rejected(self, amount):
        with pytest.raises(InputDataError) as exc_info:
            Transaction.from_record({"id": "a1", "date": "2024-01-05", "amount": amount, "description": "X"})
        assert exc_info.value.transaction_id == "a1"
        assert "unparseable amount" in exc_info.value.reason

    def test_non_finite_amounts_skipped_by_pipeline(self):
        records = [
            {"id": "a1", "date": "2024-01-05", "description": "CITY WATER", "amount": "nan", "type": "expense"},
            {"id": "a2", "date": "2024-02-05", "description": "CITY WATER", "amount": "inf", "type": "expense"},
            {"id": "a3", "date": "2024-03-05", "description": "CITY WATER", "amount": "-30", "type": "expense"},
            {"id": "a4", "date": "2024-04-05", "description": "CITY WATER", "amount": "-30", "type": "expense"},
        ]
        run = RecurringDetectionPipeline().run(records)
        assert [s.transaction_id for s in run.skipped] == ["a1", "a2"]
        assert run.patterns[0].linked_transaction_ids == ["a3", "a4"]
        assert run.patterns[0].avg_amount == pytest.approx(30.0)


# =============================================================================
# NORMALIZER TESTS
# =============================================================================

class TestNormalizer:
    def test_card_reference_stripped(self):
        assert normalize("Netflix.com *123") == "netflix com"
        assert normalize("NETFLIX.COM") == "netflix com"

    def test_dates_and_masked_numbers_removed(self):
        assert normalize("SPOTIFY USA 01/15") == "spotify usa"
        assert normalize("POS PURCHASE xxxx1234 SHELL") == "pos purchase shell"
        assert normalize("COMCAST #4521 2024-03-01") == "comcast"

    def test_ampersand_kept(self):
        assert normalize("AT&T BILL") == "at&t bill"

    def test_blank_input(self):
        assert normalize("") == ""
        assert normalize("   ") == ""
        assert normalize(None) == ""

    def test_fully_stripped_falls_back_to_original(self):
        assert normalize("12345") == "12345"

    def test_idempotent(self):
        for text in ["Netflix.com *123", "AMZN Mktp US*2K4", "Geico  Auto #77"]:
            once = normalize(text)
            assert normalize(once) == once


# =============================================================================
# MERCHANT MATCHER TESTS
# =============================================================================

class TestMerchantMatcher:
    def test_exact_grouping(self):
        txns = _make_series("Netflix.com *123") + _make_series("NETFLIX.COM", prefix="u")
        clusters = MerchantMatcher().cluster(txns)
        assert len(clusters) == 1
        assert clusters[0].normalized_key == "netflix com"
        assert clusters[0].occurrence_count == 6

    def test_single_transaction_never_clusters(self):
        txns = _make_series("ONE OFF STORE", amounts=(42.0,))
        assert MerchantMatcher().cluster(txns) == []

    def test_income_ignored(self):
        txns = [
            Transaction("p1", date(2024, 1, 1), "ACME PAYROLL", 2000.0, "income"),
            Transaction("p2", date(2024, 1, 15), "ACME PAYROLL", 2000.0, "income"),
        ]
        assert MerchantMatcher().cluster(txns) == []

    def test_duplicate_ids_counted_once(self):
        txns = _make_series()
        clusters = MerchantMatcher().cluster(txns + txns)
        assert clusters[0].occurrence_count == 3

    def test_empty_key_never_clusters(self):
        txns = _make_series(description="  ", amounts=(10.0, 10.0, 10.0))
        assert MerchantMatcher().cluster(txns) == []

    def test_fuzzy_merge_with_agreeing_amounts(self):
        txns = (
            _make_series("COMCAST CABLE", amounts=(89.99,) * 3, start=date(2024, 1, 5))
            + _make_series("COMCAST CABEL", amounts=(89.99,), start=date(2024, 4, 5), prefix="x")
        )
        clusters = MerchantMatcher().cluster(txns)
        assert len(clusters) == 1
        assert clusters[0].normalized_key == "comcast cable"
        assert clusters[0].member_keys == {"comcast cable", "comcast cabel"}
        assert clusters[0].occurrence_count == 4

    def test_fuzzy_merge_blocked_by_amount(self):
        txns = (
            _make_series("COMCAST CABLE", amounts=(89.99,) * 3, start=date(2024, 1, 5))
            + _make_series("COMCAST CABEL", amounts=(900.0,), start=date(2024, 4, 5), prefix="x")
        )
        clusters = MerchantMatcher().cluster(txns)
        assert len(clusters) == 1
        assert clusters[0].occurrence_count == 3

    def test_distinct_short_keys_not_merged(self):
        txns = _make_series("HULU", amounts=(7.99, 7.99)) + _make_series("HALU", amounts=(7.99, 7.99), prefix="h")
        clusters = MerchantMatcher().cluster(txns)
        assert {c.normalized_key for c in clusters} == {"hulu", "halu"}

    def test_split_override_removes_transaction(self):
        txns = _make_series()
        overrides = RecurringOverrides()
        overrides.split_out(["t2"])
        clusters = MerchantMatcher().cluster(txns, overrides=overrides)
        assert [t.id for t in clusters[0].transactions] == ["t1", "t3"]

    def test_registry_match_attached(self):
        registry = MerchantRegistry()
        registry.create("Netflix", "Entertainment", "subscription", patterns=["netflix"])
        clusters = MerchantMatcher().cluster(_make_series(), registry.snapshot())
        assert clusters[0].registry_match is not None
        assert clusters[0].registry_match.entry.merchant_name == "Netflix"

    def test_registry_match_through_merged_alias(self):
        registry = MerchantRegistry()
        registry.create("Xfinity Comcast", "Internet", "utility", patterns=["comcast cabel"])
        txns = (
            _make_series("COMCAST CABLE", amounts=(89.99,) * 3, start=date(2024, 1, 5))
            + _make_series("COMCAST CABEL", amounts=(89.99,), start=date(2024, 4, 5), prefix="x")
        )
        clusters = MerchantMatcher().cluster(txns, registry.snapshot())
        assert clusters[0].normalized_key == "comcast cable"
        assert clusters[0].registry_match.match_type == "pattern"
        assert clusters[0].registry_match.entry.merchant_name == "Xfinity Comcast"

    def test_clusters_ordered_by_first_seen(self):
        txns = (
            _make_series("SPOTIFY", amounts=(9.99, 9.99), start=date(2024, 3, 1), prefix="s")
            + _make_series("NETFLIX", amounts=(15.99, 15.99), start=date(2024, 1, 1), prefix="n")
        )
        clusters = MerchantMatcher().cluster(txns)
        assert [c.normalized_key for c in clusters] == ["netflix", "spotify"]


# =============================================================================
# PATTERN VERIFIER TESTS
# =============================================================================

class TestPatternVerifier:
    def test_netflix_monthly_high_confidence(self):
        pattern = PatternVerifier().verify(_cluster(_make_series("Netflix.com *123")))
        assert pattern.frequency == "monthly"
        assert pattern.transaction_type == "subscription"
        assert pattern.confidence == pytest.approx(0.85, abs=1e-4)
        assert pattern.confidence_tier == "high"
        assert pattern.avg_amount == pytest.approx(15.99)
        assert pattern.last_transaction_date == date(2024, 4, 15)

    def test_perfect_monthly_series_scores_one(self):
        txns = _make_series("GEICO AUTO", amounts=(120.0,) * 6, start=date(2024, 1, 1))
        pattern = PatternVerifier().verify(_cluster(txns))
        assert pattern.confidence == pytest.approx(1.0)
        assert pattern.confidence_tier == "high"
        assert pattern.transaction_type == "large_recurring"
        assert pattern.needs_review is False

    def test_two_transactions_are_tentative(self):
        txns = _make_series(amounts=(15.99, 15.99))
        pattern = PatternVerifier().verify(_cluster(txns))
        assert pattern.confidence <= 0.70
        assert any(r.startswith("TENTATIVE") for r in pattern.detection_reasons)

    def test_amount_variance_lowers_confidence(self):
        stable = _make_series("CITY WATER", amounts=(85.0,) * 5, category="Utilities")
        varied = _make_series("CITY WATER", amounts=(20.0, 150.0, 30.0, 200.0, 25.0), category="Utilities")
        verifier = PatternVerifier()
        stable_pattern = verifier.verify(_cluster(stable))
        varied_pattern = verifier.verify(_cluster(varied))

        assert varied_pattern.confidence < stable_pattern.confidence
        assert varied_pattern.confidence <= 0.60
        assert varied_pattern.confidence_tier == "medium"
        assert varied_pattern.needs_review is True
        assert varied_pattern.transaction_type == "utility"

    def test_amazon_mixed_pattern_low_and_excluded(self):
        txns = _make_series(
            "AMAZON.COM", amounts=(12.99, 87.50, 12.99, 200.00),
            start=date(2024, 1, 3), gap_days=(11, 47, 23),
        )
        pattern = PatternVerifier().verify(_cluster(txns))
        assert pattern.frequency == "unknown"
        assert pattern.confidence_tier == "low"
        assert pattern.transaction_type == "excluded"
        assert pattern.exclude_from_bills is True
        assert pattern.needs_review is True

    def test_unbucketed_mixed_pattern_kept_out_of_bills(self):
        txns = _make_series(
            "AMAZON", amounts=(12.99, 87.50, 12.99, 200.00),
            start=date(2024, 1, 3), gap_days=(25, 30, 35),
        )
        pattern = PatternVerifier().verify(_cluster(txns))
        assert pattern.frequency == "monthly"
        assert pattern.confidence_tier == "medium"
        assert pattern.needs_review is True
        assert pattern.transaction_type == "excluded"
        assert pattern.exclude_from_bills is True

        projected = BillProjector().project(pattern)
        assert BillProjector().upcoming([projected], projected.next_due_date, horizon_days=7) == []

        overrides = RecurringOverrides()
        overrides.confirm("AMAZON")
        confirmed = PatternVerifier().verify(_cluster(txns), overrides)
        assert confirmed.transaction_type == "large_recurring"
        assert confirmed.exclude_from_bills is False

    def test_registry_floor_and_classification(self):
        registry = MerchantRegistry()
        registry.create("Netflix", "Entertainment", "subscription", frequency="monthly", patterns=["netflix"])
        cluster = _cluster(_make_series(amounts=(15.99, 15.99)))
        cluster.registry_match = registry.match(cluster.normalized_key)

        pattern = PatternVerifier().verify(cluster)
        assert pattern.confidence >= 0.90
        assert pattern.merchant_name == "Netflix"
        assert pattern.category == "Entertainment"
        assert any(r.startswith("REGISTRY_MATCH_PATTERN") for r in pattern.detection_reasons)

    def test_user_confirmation_boosts_and_clears_review(self):
        txns = _make_series("CITY WATER", amounts=(20.0, 150.0, 30.0, 200.0, 25.0), category="Utilities")
        overrides = RecurringOverrides()
        overrides.confirm("CITY WATER")
        plain = PatternVerifier().verify(_cluster(txns))
        confirmed = PatternVerifier().verify(_cluster(txns), overrides)

        assert confirmed.user_confirmed is True
        assert confirmed.needs_review is False
        assert confirmed.confidence == pytest.approx(min(plain.confidence + 0.30, 1.0))

    def test_pattern_id_stable(self):
        a = PatternVerifier().verify(_cluster(_make_series()))
        b = PatternVerifier().verify(_cluster(_make_series(prefix="z")))
        assert a.id == b.id
        assert a.id.startswith("rp_")

    def test_weekly_frequency(self):
        txns = _make_series("CORNER GYM", amounts=(10.0,) * 4, gap_days=7)
        assert PatternVerifier().verify(_cluster(txns)).frequency == "weekly"

    def test_confidence_factors_reported(self):
        pattern = PatternVerifier().verify(_cluster(_make_series()))
        assert set(pattern.confidence_factors) == {
            "occurrence", "gap_regularity", "amount_regularity", "base", "total"
        }
        assert pattern.confidence_factors["total"] == pattern.confidence


# =============================================================================
# BILL PROJECTOR TESTS
# =============================================================================

class TestBillProjector:
    def test_monthly_projection(self):
        pattern = PatternVerifier().verify(_cluster(_make_series()))
        projected = BillProjector().project(pattern)
        assert projected.next_due_date == date(2024, 5, 15)

    def test_end_of_month_clamps(self):
        projector = BillProjector()
        assert projector.next_due_date(date(2024, 1, 31), "monthly") == date(2024, 2, 29)
        assert projector.next_due_date(date(2023, 1, 31), "monthly") == date(2023, 2, 28)

    def test_other_frequencies(self):
        projector = BillProjector()
        assert projector.next_due_date(date(2024, 1, 1), "weekly") == date(2024, 1, 8)
        assert projector.next_due_date(date(2024, 1, 1), "biweekly") == date(2024, 1, 15)
        assert projector.next_due_date(date(2024, 1, 15), "quarterly") == date(2024, 4, 15)
        assert projector.next_due_date(date(2024, 2, 29), "yearly") == date(2025, 2, 28)
        assert projector.next_due_date(date(2024, 1, 1), "unknown") is None

    def test_upcoming_window_and_order(self):
        as_of = date(2024, 5, 10)
        patterns = [
            _make_pattern("Spotify", next_due=date(2024, 5, 12), avg_amount=9.99),
            _make_pattern("Rent", next_due=date(2024, 5, 12), avg_amount=1800.0),
            _make_pattern("Netflix", next_due=date(2024, 5, 11)),
            _make_pattern("Later", next_due=date(2024, 5, 30)),
            _make_pattern("Past", next_due=date(2024, 5, 1)),
        ]
        upcoming = BillProjector().upcoming(patterns, as_of, horizon_days=7)
        assert [p.merchant_name for p in upcoming] == ["Netflix", "Rent", "Spotify"]

    def test_excluded_never_upcoming(self):
        as_of = date(2024, 5, 14)
        patterns = [_make_pattern(next_due=date(2024, 5, 15), exclude=True)]
        assert BillProjector().upcoming(patterns, as_of, horizon_days=7) == []

    def test_missed_payments(self):
        projector = BillProjector()
        pattern = _make_pattern(next_due=date(2024, 4, 10))

        late = projector.missed([pattern], date(2024, 4, 15))
        assert late[0].days_past_due == 5
        assert late[0].status == "late"
        assert late[0].urgency == "low"

        overdue = projector.missed([pattern], date(2024, 4, 30))
        assert overdue[0].status == "overdue"
        assert overdue[0].urgency == "high"

        assert projector.missed([pattern], date(2024, 5, 20)) == []
        assert projector.missed([pattern], date(2024, 4, 10)) == []

    def test_due_for_notification(self):
        projector = BillProjector()
        pattern = _make_pattern(next_due=date(2024, 5, 15))
        assert projector.due_for_notification([pattern], date(2024, 5, 12)) == [pattern]
        assert projector.due_for_notification([pattern], date(2024, 5, 11)) == []

    def test_roll_forward_past_due(self):
        projector = BillProjector()
        projector.config = dict(projector.config, roll_forward_past_due=True)
        pattern = PatternVerifier().verify(_cluster(_make_series()))
        projected = projector.project(pattern, as_of=date(2024, 7, 1))
        assert projected.next_due_date == date(2024, 7, 15)


# =============================================================================
# FULL PIPELINE TESTS
# =============================================================================

def _mixed_feed() -> list[Transaction]:
    return (
        _make_series("Netflix.com *123", prefix="n")
        + _make_series("CITY WATER", amounts=(85.0, 86.0, 84.5, 85.0), start=date(2024, 1, 20), prefix="w")
        + _make_series("AMAZON.COM", amounts=(12.99, 87.50, 12.99, 200.00),
                       start=date(2024, 1, 3), gap_days=(11, 47, 23), prefix="a")
        + _make_series("CORNER DELI", amounts=(8.50,), start=date(2024, 3, 3), prefix="d")
    )


class TestPipeline:
    def test_pipeline_runs_end_to_end(self):
        run = RecurringDetectionPipeline().run(_mixed_feed(), as_of=date(2024, 5, 10))
        keys = {p.normalized_key for p in run.patterns}
        assert keys == {"netflix com", "city water", "amazon com"}
        assert run.cluster_count == 3
        assert run.skipped == []

    def test_netflix_mixed_descriptions_single_pattern(self):
        feed = [
            Transaction("n1", date(2024, 2, 15), "NETFLIX.COM", -15.99, "expense"),
            Transaction("n2", date(2024, 3, 16), "Netflix.com *123", -15.99, "expense"),
            Transaction("n3", date(2024, 4, 15), "NETFLIX.COM", -15.99, "expense"),
        ]
        run = RecurringDetectionPipeline().run(feed, as_of=date(2024, 4, 15))
        assert len(run.patterns) == 1
        pattern = run.patterns[0]
        assert pattern.normalized_key == "netflix com"
        assert pattern.frequency == "monthly"
        assert pattern.amount_variance == 0
        assert pattern.confidence_tier == "high"
        assert pattern.next_due_date == date(2024, 4, 15) + timedelta(days=30)

    def test_pipeline_output_schema(self):
        pipeline = RecurringDetectionPipeline()
        run = pipeline.run(_mixed_feed())
        output = pipeline.to_dataframe(run.patterns)
        assert list(output.columns) == PATTERN_COLUMNS
        assert len(output) == 3

    def test_patterns_sorted_by_confidence(self):
        run = RecurringDetectionPipeline().run(_mixed_feed())
        confidences = [p.confidence for p in run.patterns]
        assert confidences == sorted(confidences, reverse=True)

    def test_deterministic_under_input_order(self):
        pipeline = RecurringDetectionPipeline()
        feed = _mixed_feed()
        shuffled = list(feed)
        random.Random(7).shuffle(shuffled)

        first = pipeline.to_dataframe(pipeline.run(feed, as_of=date(2024, 5, 1)).patterns)
        second = pipeline.to_dataframe(pipeline.run(shuffled, as_of=date(2024, 5, 1)).patterns)
        pd.testing.assert_frame_equal(first, second)

    def test_duplicate_feed_is_idempotent(self):
        pipeline = RecurringDetectionPipeline()
        feed = _mixed_feed()
        once = pipeline.to_dataframe(pipeline.run(feed).patterns)
        twice = pipeline.to_dataframe(pipeline.run(feed + feed).patterns)
        pd.testing.assert_frame_equal(once, twice)

    def test_every_pattern_is_a_real_cluster(self):
        run = RecurringDetectionPipeline().run(_mixed_feed())
        for pattern in run.patterns:
            assert pattern.occurrences >= 2
            assert len(pattern.linked_transaction_ids) == pattern.occurrences
            if pattern.next_due_date is not None:
                assert pattern.next_due_date > pattern.last_transaction_date

    def test_exclusion_override_hides_bill(self):
        # Monthly on the 10th, next due 2024-04-10: tomorrow relative to as_of.
        txns = _make_series("CITY WATER", amounts=(85.0,) * 3, start=date(2024, 1, 10), gap_days=(31, 29))
        as_of = date(2024, 4, 9)
        pipeline = RecurringDetectionPipeline()

        run = pipeline.run(txns, as_of=as_of)
        assert [p.normalized_key for p in pipeline.upcoming_bills(run.patterns, as_of, 7)] == ["city water"]

        overrides = RecurringOverrides()
        overrides.exclude_from_bills("City Water")
        run = pipeline.run(txns, overrides, as_of=as_of)
        assert run.patterns[0].exclude_from_bills is True
        assert run.patterns[0].next_due_date == date(2024, 4, 10)
        assert pipeline.upcoming_bills(run.patterns, as_of, 7) == []

    def test_non_recurring_override_suppresses_pattern(self):
        overrides = RecurringOverrides()
        overrides.mark_non_recurring("AMAZON.COM")
        run = RecurringDetectionPipeline().run(_mixed_feed(), overrides)
        assert "amazon com" not in {p.normalized_key for p in run.patterns}
        assert run.suppressed_merchants == ["amazon com"]

    def test_confirm_with_selection_and_conflicts(self):
        overrides = RecurringOverrides()
        overrides.confirm("Netflix.com", ["n1", "n2"], candidate_ids=["n1", "n2", "n3", "ghost"])
        run = RecurringDetectionPipeline().run(_mixed_feed(), overrides)

        netflix = next(p for p in run.patterns if p.normalized_key == "netflix com")
        assert netflix.linked_transaction_ids == ["n1", "n2"]
        assert netflix.user_confirmed is True
        assert [(c.override_kind, c.transaction_id) for c in run.conflicts] == [("confirm", "ghost")]

    def test_selection_confirm_keeps_accepting_new_payments(self):
        feed = _make_series("NETFLIX.COM", amounts=(15.99,) * 4, start=date(2024, 1, 15), prefix="n")
        overrides = RecurringOverrides()
        overrides.confirm("NETFLIX.COM", ["n2", "n3"], candidate_ids=["n1", "n2", "n3"])

        pipeline = RecurringDetectionPipeline()
        run = pipeline.run(feed, overrides)
        pattern = run.patterns[0]
        assert pattern.linked_transaction_ids == ["n2", "n3", "n4"]
        assert pattern.last_transaction_date == feed[3].date
        assert pattern.next_due_date == date(2024, 5, 14)
        assert pipeline.missed_payments(run.patterns, date(2024, 5, 20)) != []
        assert pipeline.missed_payments(run.patterns, feed[3].date) == []

    def test_dataframe_input_with_bad_rows(self):
        frame = _to_frame(_mixed_feed())
        bad = pd.DataFrame([
            {"id": "bad1", "date": "not a date", "description": "X", "amount": -1.0, "type": "expense"},
            {"id": "bad2", "date": "2024-01-01", "description": "X", "amount": None, "type": "expense"},
        ])
        run = RecurringDetectionPipeline().run(pd.concat([frame, bad], ignore_index=True))
        assert len(run.patterns) == 3
        assert {s.transaction_id for s in run.skipped} == {"bad1", "bad2"}

    def test_missing_columns_raises(self):
        frame = pd.DataFrame([{"id": "1", "description": "X"}])
        with pytest.raises(ValueError):
            RecurringDetectionPipeline().run(frame)

    def test_pipeline_empty_input(self):
        pipeline = RecurringDetectionPipeline()
        run = pipeline.run(pd.DataFrame(columns=["id", "date", "description", "amount"]))
        assert run.patterns == []
        assert run.as_of is None
        assert len(pipeline.to_dataframe(run.patterns)) == 0

    def test_registry_edits_during_run_not_observed(self):
        registry = MerchantRegistry()
        pipeline = RecurringDetectionPipeline(registry)
        run = pipeline.run(_mixed_feed())
        registry.create("City Water Dept", "Utilities", "utility", patterns=["city water"])
        water = next(p for p in run.patterns if p.normalized_key == "city water")
        assert water.merchant_name == "CITY WATER"

        rerun = pipeline.run(_mixed_feed())
        water = next(p for p in rerun.patterns if p.normalized_key == "city water")
        assert water.merchant_name == "City Water Dept"
