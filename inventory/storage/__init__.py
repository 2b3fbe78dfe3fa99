"""Storage layer: DuckDB document store with explicit transactions."""

from inventory.storage.duckdb_store import MEMORY, InventoryStore, Transaction

__all__ = [
    "MEMORY",
    "InventoryStore",
    "Transaction",
]
