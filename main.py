"""
main.py
--------
Batch entry point for the recurring bill detector.

Reads a transactions CSV, runs the detection pipeline, and writes the
detected patterns and the upcoming-bills view to the outputs/ folder.

Usage (from the project root):
    python main.py --input path/to/transactions.csv

    # With optional arguments:
    python main.py --input txns.csv --registry merchants.txt
    python main.py --input txns.csv --overrides overrides.yaml --as-of 2024-06-01
    python main.py --input txns.csv --horizon 14 --auto-populate
"""

import sys
import os
import argparse
import logging
import pandas as pd
import yaml
from datetime import date, datetime

# Ensure project root is on path (for runs from any working directory)
PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, PROJECT_ROOT)

from core.merchant_registry import MerchantRegistry
from core.overrides import RecurringOverrides
from pipeline import RecurringDetectionPipeline


# =============================================================================
# LOGGING SETUP
# =============================================================================

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("main")


# =============================================================================
# ARGUMENT PARSING
# =============================================================================

def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Recurring bill detector. Finds recurring payments and forecasts upcoming bills."
    )
    parser.add_argument(
        "--input", type=str, required=True,
        help="Path to input transactions CSV (id, date, description, amount[, type, merchant, category])."
    )
    parser.add_argument(
        "--registry", type=str, default=None,
        help="Optional merchant list in bulk format: 'Name - Category - Type - Frequency - Status - Confidence'."
    )
    parser.add_argument(
        "--overrides", type=str, default=None,
        help="Optional YAML file with saved user overrides."
    )
    parser.add_argument(
        "--as-of", type=str, default=None,
        help="Reference date (YYYY-MM-DD). Defaults to the latest transaction date."
    )
    parser.add_argument(
        "--horizon", type=int, default=None,
        help="Upcoming-bills window in days. Defaults to config value (7)."
    )
    parser.add_argument(
        "--output-dir", type=str, default=None,
        help="Output directory. Defaults to outputs/ in project root."
    )
    parser.add_argument(
        "--auto-populate", action="store_true", default=False,
        help="Also seed the registry from detected patterns and write it out."
    )
    return parser.parse_args(argv)


# =============================================================================
# MAIN
# =============================================================================

def main(argv=None):
    args = parse_args(argv)

    # --- Resolve paths ---
    output_dir = args.output_dir or os.path.join(PROJECT_ROOT, "outputs")
    os.makedirs(output_dir, exist_ok=True)

    # --- Load transactions ---
    logger.info(f"Loading transactions from: {args.input}")
    if not os.path.exists(args.input):
        logger.error(f"Input file not found: {args.input}")
        sys.exit(1)
    transactions = pd.read_csv(args.input)
    logger.info(f"Loaded {len(transactions):,} transactions.")

    # --- Registry and overrides ---
    registry = MerchantRegistry()
    if args.registry:
        with open(args.registry, "r") as f:
            result = registry.bulk_import(registry.parse_bulk_text(f.read()))
        logger.info(f"Registry loaded: {result.added} merchants ({result.skipped} skipped).")

    overrides = None
    if args.overrides:
        with open(args.overrides, "r") as f:
            overrides = RecurringOverrides.from_dict(yaml.safe_load(f))

    as_of = date.fromisoformat(args.as_of) if args.as_of else None

    # --- Run pipeline ---
    pipeline = RecurringDetectionPipeline(registry)
    try:
        run = pipeline.run(transactions, overrides, as_of=as_of)
    except ValueError as exc:
        logger.error(f"Cannot process input: {exc}")
        sys.exit(1)

    # --- Output ---
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    patterns_path = os.path.join(output_dir, f"recurring_patterns_{timestamp}.csv")
    pipeline.to_dataframe(run.patterns).to_csv(patterns_path, index=False)
    logger.info(f"Patterns saved to: {patterns_path}")

    upcoming = []
    missed = []
    if run.as_of is not None:
        upcoming = pipeline.upcoming_bills(run.patterns, run.as_of, args.horizon)
        missed = pipeline.missed_payments(run.patterns, run.as_of)
    upcoming_path = os.path.join(output_dir, f"upcoming_bills_{timestamp}.csv")
    pipeline.to_dataframe(upcoming).to_csv(upcoming_path, index=False)
    logger.info(f"Upcoming bills saved to: {upcoming_path}")

    if run.skipped:
        skipped_path = os.path.join(output_dir, f"skipped_transactions_{timestamp}.csv")
        pd.DataFrame(
            [{"transaction_id": s.transaction_id, "reason": s.reason} for s in run.skipped]
        ).to_csv(skipped_path, index=False)
        logger.info(f"Skipped-record report saved to: {skipped_path}")

    if args.auto_populate:
        result = registry.auto_populate(run.patterns)
        registry_path = os.path.join(output_dir, f"merchant_registry_{timestamp}.csv")
        pd.DataFrame(registry.to_records()).to_csv(registry_path, index=False)
        logger.info(f"Registry ({result.added} new merchants) saved to: {registry_path}")

    _print_summary(run, upcoming, missed)


def _print_summary(run, upcoming, missed):
    """Prints a clean summary table to the console."""
    if not run.patterns:
        print("\n  No recurring patterns detected.\n")
        return

    print("\n" + "=" * 80)
    print("  RECURRING BILL DETECTION SUMMARY")
    print("=" * 80)

    print("\n  Patterns by Transaction Type:")
    print("  " + "-" * 60)
    for transaction_type in sorted({p.transaction_type for p in run.patterns}):
        subset = [p for p in run.patterns if p.transaction_type == transaction_type]
        high = sum(1 for p in subset if p.confidence_tier == "high")
        med = sum(1 for p in subset if p.confidence_tier == "medium")
        print(f"    {transaction_type:20s}  {len(subset):>5,} patterns  (high: {high}, medium: {med})")

    print(f"\n  Confidence Mix:")
    print("  " + "-" * 60)
    for tier in ["high", "medium", "low"]:
        count = sum(1 for p in run.patterns if p.confidence_tier == tier)
        pct = count / len(run.patterns) * 100
        print(f"    {tier:10s}  {count:>5,}  ({pct:.1f}%)")

    as_of = run.as_of.isoformat() if run.as_of else "n/a"
    print(f"\n  Upcoming bills (as of {as_of}):")
    print("  " + "-" * 60)
    if not upcoming:
        print("    none")
    for p in upcoming:
        print(f"    {p.next_due_date.isoformat()}  {p.merchant_name[:36]:36s}  ${p.avg_amount:>10,.2f}")

    if missed:
        print(f"\n  Missed payments: {len(missed)}")
        for m in missed:
            print(f"    {m.pattern.merchant_name[:36]:36s}  {m.days_past_due:>3} days {m.status} ({m.urgency})")

    print(f"\n  Needs review: {sum(1 for p in run.patterns if p.needs_review)}"
          f"   Skipped records: {len(run.skipped)}   Override conflicts: {len(run.conflicts)}")
    print("=" * 80 + "\n")


if __name__ == "__main__":
    main()
