"""Initialize the DuckDB inventory database.

Creates the parent directory and the schema (hierarchy tables, data sources, run history).
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from loguru import logger

from inventory.config import configure_logging, load_settings
from inventory.storage.duckdb_store import InventoryStore


def main() -> None:
    settings = load_settings()
    parser = argparse.ArgumentParser(description="Create the inventory DuckDB schema.")
    parser.add_argument(
        "--db-path",
        type=str,
        default=settings.db_path,
        help=f"Database file (default: {settings.db_path}, from INVENTORY_DB_PATH).",
    )
    args = parser.parse_args()
    configure_logging(settings)

    db_path = Path(args.db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    logger.info("Created directory: {}", db_path.parent)

    try:
        store = InventoryStore(
            db_path,
            transaction_retries=settings.transaction_retries,
            retry_backoff=settings.transaction_backoff,
        )
    except Exception as e:
        logger.error("Failed to initialize DuckDB: {}", e)
        sys.exit(1)

    try:
        stats = store.get_stats()
        logger.info("Schema verified - table row counts: {}", stats)
        logger.success("DuckDB initialization complete!")
        logger.info("Database path: {}", db_path.absolute())
    finally:
        store.close()


if __name__ == "__main__":
    main()
