"""CLI to check and rebuild aggregate statistics (county, state, or everything)."""

import argparse
import sys
from pathlib import Path

# Project root
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from loguru import logger

from inventory.config import configure_logging, load_settings
from inventory.hierarchy.recalculator import StatisticsRecalculator
from inventory.storage.duckdb_store import InventoryStore
from monitoring.drift_detector import StatisticsDriftDetector


def main() -> None:
    settings = load_settings()
    parser = argparse.ArgumentParser(description="Check or rebuild tax-lien inventory statistics.")
    parser.add_argument("--db-path", type=str, default=settings.db_path, help="Database file.")
    parser.add_argument("--state", type=str, help="Recalculate one state from its counties.")
    parser.add_argument("--county", type=str, help="Recalculate one county from its properties.")
    parser.add_argument("--all", action="store_true", help="Rebuild every county, state and root map.")
    parser.add_argument(
        "--check",
        action="store_true",
        help="Report drift only (limited to --state if given); do not write.",
    )
    args = parser.parse_args()

    if not args.check and sum([bool(args.state), bool(args.county), args.all]) != 1:
        parser.error("Exactly one of --state, --county, or --all is required (or use --check).")

    configure_logging(settings)
    store = InventoryStore(args.db_path, transaction_retries=settings.transaction_retries,
                           retry_backoff=settings.transaction_backoff)
    recalculator = StatisticsRecalculator(store, retries=settings.transaction_retries)

    try:
        if args.check:
            drift = StatisticsDriftDetector(store).scan(state_id=args.state)
            if not drift:
                print("No drift detected.")
                return
            print(f"{len(drift)} drifted metrics:")
            for d in drift:
                print(f"  [{d.severity}] {d.entity_type} {d.entity_id} {d.metric}: stored={d.stored} expected={d.expected}")
            sys.exit(1)

        if args.county:
            if recalculator.recalculate_county(args.county) is None:
                logger.error("County not found: {}", args.county)
                sys.exit(1)
            return

        if args.state:
            if recalculator.recalculate_state(args.state) is None:
                logger.error("State not found: {}", args.state)
                sys.exit(1)
            return

        summary = recalculator.recalculate_all()
        print("\nRecalculation summary:")
        print(f"  Root maps:        {summary.roots}")
        print(f"  States:           {summary.states}")
        print(f"  Counties:         {summary.counties}")
        print(f"  Total properties: {summary.total_properties}")
        print(f"  Total value:      {summary.total_value:,.2f}")
    finally:
        store.close()


if __name__ == "__main__":
    main()
