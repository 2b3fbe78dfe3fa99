"""CLI to run data-source collections: one scheduler tick, a single source, or a polling loop."""

import argparse
import sys
import time
from pathlib import Path

# Project root
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from loguru import logger

from collection.scheduler import CollectionScheduler
from inventory.config import configure_logging, load_settings
from inventory.errors import InventoryError
from inventory.schemas.entities import utc_now
from inventory.storage.duckdb_store import InventoryStore


def main() -> None:
    settings = load_settings()
    parser = argparse.ArgumentParser(description="Run scheduled tax-lien data collections.")
    parser.add_argument(
        "--db-path",
        type=str,
        default=settings.db_path,
        help=f"Database file (default: {settings.db_path}).",
    )
    parser.add_argument(
        "--source-id",
        type=str,
        help="Collect a single data source now, regardless of its schedule.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List the sources that are due without collecting.",
    )
    parser.add_argument(
        "--loop",
        action="store_true",
        help="Keep polling, running a tick every --interval seconds.",
    )
    parser.add_argument(
        "--interval",
        type=int,
        default=300,
        help="Seconds between ticks with --loop (default: 300).",
    )
    parser.add_argument(
        "--max-workers",
        type=int,
        default=settings.scheduler_max_workers,
        help=f"Parallel collections per tick (default: {settings.scheduler_max_workers}).",
    )
    args = parser.parse_args()

    if args.source_id and args.loop:
        parser.error("--source-id cannot be combined with --loop.")

    configure_logging(settings)
    store = InventoryStore(args.db_path, transaction_retries=settings.transaction_retries,
                           retry_backoff=settings.transaction_backoff)
    scheduler = CollectionScheduler(
        store,
        max_workers=args.max_workers,
        collector_timeout=settings.collector_timeout,
    )

    try:
        if args.dry_run:
            due = scheduler.find_due_sources(utc_now())
            print(f"Dry run: {len(due)} sources due")
            for s in due:
                print(f"  {s.id} {s.name} ({s.collector_type}, {s.schedule.frequency})")
            return

        if args.source_id:
            try:
                result = scheduler.trigger_collection(args.source_id)
            except InventoryError as e:
                logger.error("Cannot collect source {}: {}", args.source_id, e)
                sys.exit(1)
            _print_table([result])
            if not result.success:
                sys.exit(1)
            return

        while True:
            results = scheduler.tick(utc_now())
            _print_table(results)
            if not args.loop:
                break
            time.sleep(args.interval)
    except KeyboardInterrupt:
        logger.info("Interrupted, stopping")
    finally:
        store.close()


def _print_table(results: list) -> None:
    """Print a simple table of per-source run results."""
    if not results:
        return
    rows = [
        ("Source", "Name", "Status", "Items", "Applied", "Duration", "Error"),
    ]
    for r in results:
        rows.append((
            r.source_id[:12],
            r.source_name[:24] if r.source_name else "-",
            "ok" if r.success else "error",
            str(r.property_count),
            f"{r.applied_count}" + (f" ({r.apply_errors} failed)" if r.apply_errors else ""),
            f"{r.duration}ms",
            (r.error or "-")[:40],
        ))
    col_widths = [max(len(str(row[i])) for row in rows) for i in range(len(rows[0]))]
    for i, row in enumerate(rows):
        print("  ".join(str(x).ljust(col_widths[j]) for j, x in enumerate(row)))
        if i == 0:
            print("  " + "-" * (sum(col_widths) + 2 * (len(col_widths) - 1)))


if __name__ == "__main__":
    main()
