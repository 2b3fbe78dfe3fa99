"""Collection recorder: append-only run history and the data source's live status.

Writing a run and updating its source happen in the same transaction.
"""

import sys
from datetime import datetime
from typing import Any, Callable, List, Optional, Sequence

from loguru import logger

from inventory.errors import InvalidArgumentError, NotFoundError
from inventory.schemas.collection import CollectionRun, CollectionStats, DataSource, ErrorLogItem, RunStats
from inventory.schemas.entities import Property, utc_now
from inventory.storage.duckdb_store import InventoryStore, Transaction

try:
    import resource
except ImportError:
    # POSIX only; memory usage is reported as 0.0 elsewhere
    resource = None

DEFAULT_ERROR_MESSAGE = "Collection failed"


def _memory_usage_mb() -> float:
    """Peak RSS of this process in MB, or 0.0 where getrusage is unavailable."""
    if resource is None:
        return 0.0
    peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # ru_maxrss is bytes on macOS, KiB on Linux
    divisor = 1024 * 1024 if sys.platform == "darwin" else 1024
    return round(peak / divisor, 2)


def _property_ids(properties: Sequence[Any]) -> List[str]:
    """Ids of collected items; items may be ids, Property models or payload dicts."""
    ids: List[str] = []
    for p in properties:
        if isinstance(p, str):
            ids.append(p)
        elif isinstance(p, Property):
            ids.append(p.id)
        elif isinstance(p, dict) and p.get("id"):
            ids.append(str(p["id"]))
    return ids


class CollectionRecorder:
    """Persists CollectionRun records and reflects each outcome onto the DataSource."""

    def __init__(
        self,
        store: InventoryStore,
        clock: Optional[Callable[[], datetime]] = None,
        retries: Optional[int] = None,
    ):
        self.store = store
        self.clock = clock or utc_now
        self.retries = retries

    def _load_source(self, source_id: str, tx: Transaction) -> DataSource:
        source = self.store.get_data_source(source_id, tx)
        if source is None:
            logger.warning("Data source not found: {}", source_id)
            raise NotFoundError(f"Data source not found: {source_id}")
        return source

    def _outcome(
        self,
        properties: Sequence[Any],
        duration: float,
        success: bool,
        error_details: Optional[str],
        now: datetime,
    ) -> tuple[CollectionStats, list[ErrorLogItem]]:
        count = len(properties)
        stats = CollectionStats(
            duration=duration,
            item_count=count,
            success_count=count if success else 0,
            error_count=0 if success else count,
            memory_usage=_memory_usage_mb(),
        )
        error_log = (
            []
            if success
            else [
                ErrorLogItem(
                    message=error_details or DEFAULT_ERROR_MESSAGE,
                    timestamp=now,
                    details={"error": error_details} if error_details else None,
                )
            ]
        )
        return stats, error_log

    def _reflect_on_source(self, source: DataSource, success: bool, error_details: Optional[str], now: datetime,
                           tx: Transaction) -> None:
        updated = source.model_copy(
            update={
                "last_collected": now,
                "status": "active" if success else "error",
                "error_message": None if success else (error_details or DEFAULT_ERROR_MESSAGE),
                "updated_at": now,
            }
        )
        self.store.save_data_source(updated, tx)

    def record_run(
        self,
        source_id: str,
        properties: Sequence[Any],
        duration: float,
        success: bool,
        error_details: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> str:
        """
        Append a completed run and update the source's last_collected, status and error_message.

        Args:
            source_id: Data source that was collected.
            properties: Collected items (ids, Property models, or payload dicts).
            duration: Run duration in milliseconds.
            success: Whether the collection succeeded.
            error_details: Failure message, if any.
            now: Override the clock (scheduler ticks pass their own now).

        Returns:
            The new run's id.

        Raises:
            NotFoundError: the data source does not exist.
        """

        def work(tx: Transaction) -> str:
            ts = now or self.clock()
            source = self._load_source(source_id, tx)
            stats, error_log = self._outcome(properties, duration, success, error_details, ts)
            run = CollectionRun(
                source_id=source_id,
                timestamp=ts,
                status="success" if success else "error",
                stats=stats,
                error_log=error_log,
                property_ids=_property_ids(properties),
            )
            self.store.insert_run(run, tx)
            self._reflect_on_source(source, success, error_details, ts, tx)
            return run.id

        run_id = self.store.run_in_transaction(work, self.retries)
        logger.info(
            "Collection run recorded: {} for source: {}, status: {}",
            run_id,
            source_id,
            "success" if success else "error",
        )
        return run_id

    def start_run(self, source_id: str, now: Optional[datetime] = None) -> str:
        """Open an in-progress run and mark the source as syncing. Returns the run id."""

        def work(tx: Transaction) -> str:
            ts = now or self.clock()
            source = self._load_source(source_id, tx)
            run = CollectionRun(source_id=source_id, timestamp=ts, status="in-progress")
            self.store.insert_run(run, tx)
            self.store.save_data_source(source.model_copy(update={"status": "syncing", "updated_at": ts}), tx)
            return run.id

        run_id = self.store.run_in_transaction(work, self.retries)
        logger.info("Collection run started: {} for source: {}", run_id, source_id)
        return run_id

    def finish_run(
        self,
        run_id: str,
        properties: Sequence[Any],
        duration: float,
        success: bool,
        error_details: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CollectionRun:
        """
        Complete an in-progress run exactly once and update its source.

        Raises:
            NotFoundError: the run or its source does not exist.
            InvalidArgumentError: the run is no longer in progress.
        """

        def work(tx: Transaction) -> CollectionRun:
            ts = now or self.clock()
            run = self.store.get_run(run_id, tx)
            if run is None:
                raise NotFoundError(f"Collection run not found: {run_id}")
            if run.status != "in-progress":
                raise InvalidArgumentError(f"Collection run {run_id} already finished with status {run.status}")
            source = self._load_source(run.source_id, tx)
            stats, error_log = self._outcome(properties, duration, success, error_details, ts)
            finished = run.model_copy(
                update={
                    "status": "success" if success else "error",
                    "stats": stats,
                    "error_log": error_log,
                    "property_ids": _property_ids(properties),
                }
            )
            self.store.update_run(finished, tx)
            self._reflect_on_source(source, success, error_details, ts, tx)
            return finished

        finished = self.store.run_in_transaction(work, self.retries)
        logger.info("Collection run finished: {} status: {}", run_id, finished.status)
        return finished

    def get_latest_run(self, source_id: str) -> Optional[CollectionRun]:
        runs = self.store.list_runs(source_id, limit=1)
        return runs[0] if runs else None

    def list_runs(self, source_id: str, limit: Optional[int] = None) -> List[CollectionRun]:
        return self.store.list_runs(source_id, limit=limit)

    def get_run_stats(self, source_id: str, limit: int = 10) -> Optional[RunStats]:
        """Success rate (percent), average duration and average item count over the last `limit` runs."""
        runs = self.store.list_runs(source_id, limit=limit)
        total = len(runs)
        if total == 0:
            return None
        successes = sum(1 for r in runs if r.status == "success")
        return RunStats(
            total_runs=total,
            success_rate=successes / total * 100,
            average_duration=sum(r.stats.duration for r in runs) / total,
            average_items=sum(r.stats.item_count for r in runs) / total,
            last_run=runs[0],
        )
