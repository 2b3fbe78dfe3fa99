"""DuckDB document store for the inventory hierarchy and collection history.

Each record kind lives in its own table as (id, lookup columns, JSON document).
Multi-entity mutations run inside an explicit Transaction obtained from
InventoryStore.transaction(); every store call in the unit of work takes it.
"""

import random
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, List, Optional, Type, TypeVar

import duckdb
from loguru import logger
from pydantic import BaseModel

from inventory.errors import TransactionAbortedError
from inventory.schemas.collection import CollectionRun, DataSource
from inventory.schemas.entities import County, Property, RootMap, State

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)

MEMORY = ":memory:"


class Transaction:
    """
    Capability for one open store transaction.

    Wraps a dedicated DuckDB cursor so concurrent threads never share a live transaction.
    """

    def __init__(self, cursor: duckdb.DuckDBPyConnection):
        self.cursor = cursor
        self.closed = False


class InventoryStore:
    """
    DuckDB-backed store for root maps, states, counties, properties, data sources and runs.

    DuckDB gives snapshot isolation with write-write conflict detection: two transactions
    updating the same county row cannot both commit. run_in_transaction retries the loser.
    """

    def __init__(
        self,
        db_path: Path | str,
        transaction_retries: int = 3,
        retry_backoff: float = 0.05,
        max_backoff: float = 1.0,
    ):
        """
        Open (or create) the store.

        Args:
            db_path: Path to the DuckDB database file, or ":memory:".
            transaction_retries: Retries after a conflict before TransactionAbortedError is surfaced.
            retry_backoff: Base wait in seconds before the first retry; doubles on each attempt.
            max_backoff: Cap on the exponential wait; up to the same amount again is added as jitter.
        """
        self.db_path = str(db_path)
        if self.db_path != MEMORY:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self.conn = duckdb.connect(self.db_path)
        self.transaction_retries = transaction_retries
        self.retry_backoff = retry_backoff
        self.max_backoff = max_backoff
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        """Create tables if they don't exist."""
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS us_maps (
                id VARCHAR PRIMARY KEY,
                doc VARCHAR NOT NULL
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS states (
                id VARCHAR PRIMARY KEY,
                parent_id VARCHAR NOT NULL,
                doc VARCHAR NOT NULL
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS counties (
                id VARCHAR PRIMARY KEY,
                parent_id VARCHAR NOT NULL,
                doc VARCHAR NOT NULL
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS properties (
                id VARCHAR PRIMARY KEY,
                parent_id VARCHAR NOT NULL,
                state_id VARCHAR,
                doc VARCHAR NOT NULL
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS data_sources (
                id VARCHAR PRIMARY KEY,
                status VARCHAR NOT NULL,
                doc VARCHAR NOT NULL
            )
        """)
        self.conn.execute("CREATE SEQUENCE IF NOT EXISTS collection_run_seq")
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS collection_runs (
                id VARCHAR PRIMARY KEY,
                seq BIGINT DEFAULT nextval('collection_run_seq'),
                source_id VARCHAR NOT NULL,
                ts DOUBLE NOT NULL,
                status VARCHAR NOT NULL,
                doc VARCHAR NOT NULL
            )
        """)

        # Only columns that are never updated get secondary indexes
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_runs_source ON collection_runs(source_id)")

        logger.debug("DuckDB schema ensured at {}", self.db_path)

    # ---- transactions ----

    @contextmanager
    def transaction(self) -> Iterator[Transaction]:
        """
        Open one atomic transaction. Commits on clean exit; on any exception rolls back and re-raises.

        duckdb errors (write conflicts, constraint or I/O failures, failed commits) surface as
        TransactionAbortedError; anything else raised by the unit of work is re-raised unchanged.
        """
        cur = self.conn.cursor()
        tx = Transaction(cur)
        try:
            cur.begin()
            yield tx
            cur.commit()
        except duckdb.Error as e:
            self._rollback(tx)
            raise TransactionAbortedError(f"Transaction aborted: {e}") from e
        except BaseException:
            self._rollback(tx)
            raise
        finally:
            tx.closed = True
            cur.close()

    def _rollback(self, tx: Transaction) -> None:
        try:
            tx.cursor.rollback()
        except duckdb.Error as e:
            # A failed commit has already been rolled back by DuckDB
            logger.debug("Rollback after abort was a no-op: {}", e)

    def run_in_transaction(self, work: Callable[[Transaction], T], retries: int | None = None) -> T:
        """
        Run work(tx) inside a transaction, retrying on TransactionAbortedError.

        work must re-read everything it depends on through tx; it is called again from
        scratch on each attempt. Attempts are spaced with exponential backoff plus jitter
        so contending writers do not collide again in lockstep.
        """
        attempts = (self.transaction_retries if retries is None else retries) + 1
        for attempt in range(1, attempts + 1):
            try:
                with self.transaction() as tx:
                    return work(tx)
            except TransactionAbortedError as e:
                if attempt >= attempts:
                    logger.error("Transaction aborted after {} attempt(s): {}", attempt, e)
                    raise
                wait_time = self._backoff(attempt)
                logger.warning(
                    "Transaction conflict (attempt {}/{}), retrying after {:.3f}s: {}",
                    attempt,
                    attempts,
                    wait_time,
                    e,
                )
                time.sleep(wait_time)
        raise RuntimeError("run_in_transaction exhausted without result")

    def _backoff(self, attempt: int) -> float:
        """Wait before retry number `attempt` (1-based)."""
        base = min(self.retry_backoff * 2 ** (attempt - 1), self.max_backoff)
        return base + random.uniform(0, base)

    @contextmanager
    def _cursor(self, tx: Optional[Transaction]) -> Iterator[duckdb.DuckDBPyConnection]:
        if tx is not None:
            if tx.closed:
                raise TransactionAbortedError("Transaction is no longer active")
            yield tx.cursor
            return
        cur = self.conn.cursor()
        try:
            yield cur
        finally:
            cur.close()

    # ---- generic document helpers ----

    def _get(self, table: str, model: Type[M], record_id: str, tx: Optional[Transaction]) -> Optional[M]:
        with self._cursor(tx) as cur:
            row = cur.execute(f"SELECT doc FROM {table} WHERE id = ?", [record_id]).fetchone()
        if not row:
            return None
        return model.model_validate_json(row[0])

    def _list(
        self,
        table: str,
        model: Type[M],
        tx: Optional[Transaction],
        where: Optional[dict[str, Any]] = None,
        order_by: str = "id",
    ) -> List[M]:
        filters = {k: v for k, v in (where or {}).items() if v is not None}
        sql = f"SELECT doc FROM {table}"
        if filters:
            sql += " WHERE " + " AND ".join(f"{col} = ?" for col in filters)
        sql += f" ORDER BY {order_by}"
        with self._cursor(tx) as cur:
            rows = cur.execute(sql, list(filters.values())).fetchall()
        return [model.model_validate_json(row[0]) for row in rows]

    def _upsert(self, table: str, record_id: str, columns: dict[str, Any], tx: Optional[Transaction]) -> None:
        # UPDATE in place rather than INSERT OR REPLACE: DuckDB turns replace into delete+insert,
        # which trips unique checks when the same row is written twice in one transaction
        with self._cursor(tx) as cur:
            exists = cur.execute(f"SELECT 1 FROM {table} WHERE id = ?", [record_id]).fetchone()
            if exists:
                assignments = ", ".join(f"{col} = ?" for col in columns)
                cur.execute(
                    f"UPDATE {table} SET {assignments} WHERE id = ?",
                    [*columns.values(), record_id],
                )
            else:
                names = ["id", *columns]
                placeholders = ", ".join("?" for _ in names)
                cur.execute(
                    f"INSERT INTO {table} ({', '.join(names)}) VALUES ({placeholders})",
                    [record_id, *columns.values()],
                )

    def _delete(self, table: str, record_id: str, tx: Optional[Transaction]) -> bool:
        with self._cursor(tx) as cur:
            exists = cur.execute(f"SELECT 1 FROM {table} WHERE id = ?", [record_id]).fetchone()
            if not exists:
                return False
            cur.execute(f"DELETE FROM {table} WHERE id = ?", [record_id])
        return True

    # ---- hierarchy ----

    def save_root(self, root: RootMap, tx: Optional[Transaction] = None) -> None:
        self._upsert("us_maps", root.id, {"doc": root.model_dump_json()}, tx)
        logger.debug("Saved root map {}", root.id)

    def get_root(self, root_id: str, tx: Optional[Transaction] = None) -> Optional[RootMap]:
        return self._get("us_maps", RootMap, root_id, tx)

    def list_roots(self, tx: Optional[Transaction] = None) -> List[RootMap]:
        return self._list("us_maps", RootMap, tx)

    def save_state(self, state: State, tx: Optional[Transaction] = None) -> None:
        self._upsert("states", state.id, {"parent_id": state.parent_id, "doc": state.model_dump_json()}, tx)
        logger.debug("Saved state {}", state.id)

    def get_state(self, state_id: str, tx: Optional[Transaction] = None) -> Optional[State]:
        return self._get("states", State, state_id, tx)

    def list_states(self, parent_id: Optional[str] = None, tx: Optional[Transaction] = None) -> List[State]:
        return self._list("states", State, tx, where={"parent_id": parent_id})

    def save_county(self, county: County, tx: Optional[Transaction] = None) -> None:
        self._upsert("counties", county.id, {"parent_id": county.parent_id, "doc": county.model_dump_json()}, tx)
        logger.debug("Saved county {}", county.id)

    def get_county(self, county_id: str, tx: Optional[Transaction] = None) -> Optional[County]:
        return self._get("counties", County, county_id, tx)

    def list_counties(self, state_id: Optional[str] = None, tx: Optional[Transaction] = None) -> List[County]:
        return self._list("counties", County, tx, where={"parent_id": state_id})

    def save_property(self, prop: Property, tx: Optional[Transaction] = None) -> None:
        self._upsert(
            "properties",
            prop.id,
            {"parent_id": prop.parent_id, "state_id": prop.state_id, "doc": prop.model_dump_json()},
            tx,
        )
        logger.debug("Saved property {}", prop.id)

    def get_property(self, property_id: str, tx: Optional[Transaction] = None) -> Optional[Property]:
        return self._get("properties", Property, property_id, tx)

    def list_properties(
        self,
        county_id: Optional[str] = None,
        state_id: Optional[str] = None,
        tx: Optional[Transaction] = None,
    ) -> List[Property]:
        return self._list("properties", Property, tx, where={"parent_id": county_id, "state_id": state_id})

    def delete_property(self, property_id: str, tx: Optional[Transaction] = None) -> bool:
        return self._delete("properties", property_id, tx)

    # ---- collection ----

    def save_data_source(self, source: DataSource, tx: Optional[Transaction] = None) -> None:
        self._upsert("data_sources", source.id, {"status": source.status, "doc": source.model_dump_json()}, tx)
        logger.debug("Saved data source {} (status={})", source.id, source.status)

    def get_data_source(self, source_id: str, tx: Optional[Transaction] = None) -> Optional[DataSource]:
        return self._get("data_sources", DataSource, source_id, tx)

    def list_data_sources(
        self,
        status: Optional[str] = None,
        exclude_status: Optional[str] = None,
        tx: Optional[Transaction] = None,
    ) -> List[DataSource]:
        sources = self._list("data_sources", DataSource, tx, where={"status": status})
        if exclude_status:
            sources = [s for s in sources if s.status != exclude_status]
        return sources

    def insert_run(self, run: CollectionRun, tx: Optional[Transaction] = None) -> None:
        with self._cursor(tx) as cur:
            cur.execute(
                "INSERT INTO collection_runs (id, source_id, ts, status, doc) VALUES (?, ?, ?, ?, ?)",
                [run.id, run.source_id, run.timestamp.timestamp(), run.status, run.model_dump_json()],
            )
        logger.debug("Inserted collection run {} for source {}", run.id, run.source_id)

    def update_run(self, run: CollectionRun, tx: Optional[Transaction] = None) -> None:
        with self._cursor(tx) as cur:
            cur.execute(
                "UPDATE collection_runs SET status = ?, doc = ? WHERE id = ?",
                [run.status, run.model_dump_json(), run.id],
            )

    def get_run(self, run_id: str, tx: Optional[Transaction] = None) -> Optional[CollectionRun]:
        return self._get("collection_runs", CollectionRun, run_id, tx)

    def list_runs(
        self,
        source_id: str,
        limit: Optional[int] = None,
        tx: Optional[Transaction] = None,
    ) -> List[CollectionRun]:
        """Runs for a source, newest first."""
        sql = "SELECT doc FROM collection_runs WHERE source_id = ? ORDER BY ts DESC, seq DESC"
        params: list[Any] = [source_id]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self._cursor(tx) as cur:
            rows = cur.execute(sql, params).fetchall()
        return [CollectionRun.model_validate_json(row[0]) for row in rows]

    def get_stats(self) -> dict:
        """Row counts per table."""
        stats = {}
        with self._cursor(None) as cur:
            for table in ("us_maps", "states", "counties", "properties", "data_sources", "collection_runs"):
                stats[table] = cur.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
        return stats

    def close(self) -> None:
        self.conn.close()
