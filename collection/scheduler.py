"""Collection scheduler: decide which data sources are due and run their collections.

# Cadence policy
A source is due when `now >= next_run(last_collected)`. After every run, success or
failure, the next run is computed from the run time on the normal cadence; failures set
status "error" but never shorten or stretch the schedule.

The periodic trigger itself is external: whatever owns the timer calls tick(now).
"""

import calendar
from concurrent.futures import ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeout
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from loguru import logger
from pydantic import ValidationError

from collection.collector_factory import CollectFn, get_collector
from collection.recorder import DEFAULT_ERROR_MESSAGE, CollectionRecorder
from inventory.errors import (
    CollectorFailure,
    InvalidArgumentError,
    InventoryError,
    NotFoundError,
    TransactionAbortedError,
)
from inventory.hierarchy.mutator import HierarchyMutator
from inventory.schemas.collection import CollectionResult, DataSource, Schedule, SourceRunResult
from inventory.schemas.entities import Property, utc_now
from inventory.storage.duckdb_store import InventoryStore, Transaction

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Fields a collector cannot overwrite on an existing property
_NON_PATCHABLE = {"id", "type", "parent_id", "state_id", "created_at", "updated_at"}

RecordFn = Callable[[Sequence[Any], float, bool, Optional[str]], str]


def as_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def sunday_based_weekday(dt: datetime) -> int:
    """0 = Sunday ... 6 = Saturday, matching Schedule.day_of_week."""
    return (dt.weekday() + 1) % 7


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def add_months(dt: datetime, months: int) -> datetime:
    """Calendar-month arithmetic; the day is clamped to the target month's length."""
    index = dt.month - 1 + months
    year, month = dt.year + index // 12, index % 12 + 1
    return dt.replace(year=year, month=month, day=min(dt.day, days_in_month(year, month)))


def compute_next_run(schedule: Schedule, base: datetime) -> Optional[datetime]:
    """
    Next run time after `base` for the schedule; None for manual sources.

    weekly: +7 days, then forward (never backward) to day_of_week if set.
    monthly: +1 calendar month, then day = min(day_of_month, days in that month) if set.
    """
    base = as_utc(base)
    frequency = schedule.frequency

    if frequency == "hourly":
        return base + timedelta(hours=1)
    if frequency == "daily":
        return base + timedelta(days=1)
    if frequency == "weekly":
        next_run = base + timedelta(days=7)
        if schedule.day_of_week is not None:
            next_run += timedelta(days=(schedule.day_of_week - sunday_based_weekday(next_run)) % 7)
        return next_run
    if frequency == "monthly":
        next_run = add_months(base, 1)
        if schedule.day_of_month is not None:
            next_run = next_run.replace(
                day=min(schedule.day_of_month, days_in_month(next_run.year, next_run.month))
            )
        return next_run
    return None


def is_due(source: DataSource, now: datetime) -> bool:
    """True when an automatic collection should run for source at `now`."""
    if source.status == "inactive":
        return False
    next_run = compute_next_run(source.schedule, source.last_collected or EPOCH)
    if next_run is None:
        return False
    return as_utc(now) >= next_run


class CollectionScheduler:
    """
    Selects due sources and runs their collectors with bounded parallelism.

    Each source is isolated: a collector that raises, times out or reports failure is
    recorded as an error run, rescheduled, and never affects the other sources.
    """

    def __init__(
        self,
        store: InventoryStore,
        recorder: Optional[CollectionRecorder] = None,
        mutator: Optional[HierarchyMutator] = None,
        clock: Optional[Callable[[], datetime]] = None,
        max_workers: int = 4,
        collector_timeout: float = 300.0,
    ):
        self.store = store
        self.clock = clock or utc_now
        self.recorder = recorder or CollectionRecorder(store, clock=self.clock)
        self.mutator = mutator or HierarchyMutator(store, clock=self.clock)
        self.max_workers = max_workers
        self.collector_timeout = collector_timeout

    def find_due_sources(self, now: Optional[datetime] = None) -> List[DataSource]:
        ts = as_utc(now) if now else self.clock()
        sources = self.store.list_data_sources(exclude_status="inactive")
        due = [s for s in sources if is_due(s, ts)]
        logger.info(
            "Found {} data sources due for collection out of {} active sources",
            len(due),
            len(sources),
        )
        return due

    def schedule_next(self, source: DataSource, success: bool, now: Optional[datetime] = None) -> Optional[DataSource]:
        """
        Persist next_scheduled_run computed from `now`; set status "error" when success is False.

        Manual and inactive sources are returned unchanged. Returns None if the source is gone.
        """
        ts = as_utc(now) if now else self.clock()

        def work(tx: Transaction) -> Optional[DataSource]:
            current = self.store.get_data_source(source.id, tx)
            if current is None:
                return None
            if current.schedule.frequency == "manual" or current.status == "inactive":
                return current
            update: Dict[str, Any] = {
                "next_scheduled_run": compute_next_run(current.schedule, ts),
                "updated_at": ts,
            }
            if not success:
                update["status"] = "error"
            updated = current.model_copy(update=update)
            self.store.save_data_source(updated, tx)
            return updated

        updated = self.store.run_in_transaction(work)
        if updated is None:
            logger.warning("Data source not found: {}", source.id)
        elif updated.next_scheduled_run is not None:
            logger.info("Scheduled next run for source {} at {}", source.id, updated.next_scheduled_run.isoformat())
        return updated

    def run_scheduled_collections(
        self,
        collect_fn: Optional[CollectFn] = None,
        now: Optional[datetime] = None,
    ) -> List[SourceRunResult]:
        """
        Collect every due source and return one result per source, in due order.

        Args:
            collect_fn: Collector for every source; default resolves by source.collector_type.
            now: Tick time used for due checks, run timestamps and rescheduling.
        """
        ts = as_utc(now) if now else self.clock()
        due = self.find_due_sources(ts)
        if not due:
            logger.info("No data sources due for collection")
            return []

        logger.info("Running scheduled collections for {} data sources", len(due))
        results: Dict[str, SourceRunResult] = {}

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(due))) as executor:
            future_to_source = {executor.submit(self._process_source, s, collect_fn, ts): s for s in due}
            for future in as_completed(future_to_source):
                source = future_to_source[future]
                try:
                    results[source.id] = future.result()
                except Exception as e:
                    # Recording or rescheduling itself failed; still isolated to this source
                    logger.error("Error processing data source {}: {}", source.id, e)
                    results[source.id] = SourceRunResult(
                        source_id=source.id,
                        source_name=source.name,
                        success=False,
                        error=str(e),
                    )

        ordered = [results[s.id] for s in due]
        succeeded = sum(1 for r in ordered if r.success)
        logger.info(
            "Completed scheduled collections: {} succeeded, {} failed",
            succeeded,
            len(ordered) - succeeded,
        )
        return ordered

    def tick(self, now: datetime, collect_fn: Optional[CollectFn] = None) -> List[SourceRunResult]:
        """Poll entry point for an external timer."""
        logger.debug("Scheduler tick at {}", as_utc(now).isoformat())
        return self.run_scheduled_collections(collect_fn=collect_fn, now=now)

    def trigger_collection(
        self,
        source_id: str,
        collect_fn: Optional[CollectFn] = None,
        now: Optional[datetime] = None,
    ) -> SourceRunResult:
        """
        Operator-initiated collection for one source, regardless of cadence (manual sources included).

        The run is opened as in-progress with the source marked syncing, then finished.

        Raises:
            NotFoundError: the source does not exist.
            InvalidArgumentError: the source is inactive.
        """
        ts = as_utc(now) if now else self.clock()
        source = self.store.get_data_source(source_id)
        if source is None:
            raise NotFoundError(f"Data source not found: {source_id}")
        if source.status == "inactive":
            raise InvalidArgumentError(f"Data source {source_id} is inactive")

        run_id = self.recorder.start_run(source_id, now=ts)

        def record(properties: Sequence[Any], duration: float, success: bool, error: Optional[str]) -> str:
            self.recorder.finish_run(run_id, properties, duration, success, error, now=ts)
            return run_id

        try:
            return self._run_source(source, collect_fn, ts, record)
        except Exception as e:
            self._close_abandoned_run(run_id, e, ts)
            raise

    def _close_abandoned_run(self, run_id: str, error: Exception, now: datetime) -> None:
        """Finish a run left in-progress by a failed trigger so it never stays open."""
        run = self.store.get_run(run_id)
        if run is None or run.status != "in-progress":
            return
        try:
            self.recorder.finish_run(run_id, [], 0.0, False, f"Internal error: {error}", now=now)
        except InventoryError as finish_error:
            logger.error("Could not close collection run {}: {}", run_id, finish_error)

    def _process_source(self, source: DataSource, collect_fn: Optional[CollectFn], now: datetime) -> SourceRunResult:
        def record(properties: Sequence[Any], duration: float, success: bool, error: Optional[str]) -> str:
            return self.recorder.record_run(source.id, properties, duration, success, error, now=now)

        return self._run_source(source, collect_fn, now, record)

    def _run_source(
        self,
        source: DataSource,
        collect_fn: Optional[CollectFn],
        now: datetime,
        record: RecordFn,
    ) -> SourceRunResult:
        logger.info("Running collection for source: {} ({})", source.name, source.id)
        try:
            result = self._collect(source, collect_fn)
        except CollectorFailure as e:
            logger.error("Collector failure for source {}: {}", source.id, e.message)
            run_id = record([], 0.0, False, f"Internal error: {e.message}")
            self.schedule_next(source, False, now)
            return SourceRunResult(
                source_id=source.id,
                source_name=source.name,
                success=False,
                run_id=run_id,
                error=e.message,
            )

        applied, apply_errors = 0, 0
        if result.success and result.properties:
            applied, apply_errors = self._apply_properties(source, result.properties)

        run_id = record(result.properties, result.duration, result.success, result.error_message)
        self.schedule_next(source, result.success, now)
        return SourceRunResult(
            source_id=source.id,
            source_name=source.name,
            success=result.success,
            run_id=run_id,
            property_count=len(result.properties),
            applied_count=applied,
            apply_errors=apply_errors,
            duration=result.duration,
            error=None if result.success else (result.error_message or DEFAULT_ERROR_MESSAGE),
        )

    def _collect(self, source: DataSource, collect_fn: Optional[CollectFn]) -> CollectionResult:
        """Run the collector under the timeout; every failure mode becomes CollectorFailure."""
        fn = collect_fn or get_collector(source.collector_type)
        if fn is None:
            raise CollectorFailure(source.id, f"no collector registered for type {source.collector_type!r}")

        # A timed-out collector thread cannot be killed; it is abandoned and its result discarded
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="collector")
        future = executor.submit(fn, source)
        try:
            raw = future.result(timeout=self.collector_timeout)
        except FuturesTimeout as e:
            raise CollectorFailure(source.id, f"timed out after {self.collector_timeout}s") from e
        except Exception as e:
            raise CollectorFailure(source.id, str(e) or type(e).__name__) from e
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        if isinstance(raw, CollectionResult):
            return raw
        try:
            return CollectionResult.model_validate(raw)
        except ValidationError as e:
            raise CollectorFailure(source.id, f"invalid collector result: {e}") from e

    def _apply_properties(self, source: DataSource, properties: Sequence[Any]) -> Tuple[int, int]:
        """
        Apply collected payloads through the hierarchy mutator. Plain ids are references to
        already-stored properties and are skipped. Items whose transaction was aborted after
        all store retries get one more pass once the rest are applied. Returns (applied, failed).
        """
        applied, failed = 0, 0
        aborted: List[Property] = []
        for item in properties:
            if isinstance(item, str):
                continue
            try:
                prop = item if isinstance(item, Property) else Property.model_validate(item)
            except ValidationError as e:
                failed += 1
                logger.warning("Skipping invalid collected property from source {}: {}", source.id, e)
                continue
            try:
                self._apply_one(prop)
                applied += 1
            except TransactionAbortedError as e:
                logger.warning("Deferring property {} from source {}: {}", prop.id, source.id, e)
                aborted.append(prop)
            except InventoryError as e:
                failed += 1
                logger.warning("Skipping collected property from source {}: {}", source.id, e)

        for prop in aborted:
            try:
                self._apply_one(prop)
                applied += 1
            except InventoryError as e:
                failed += 1
                logger.warning("Giving up on property {} from source {}: {}", prop.id, source.id, e)
        if failed:
            logger.warning("Source {}: applied {} properties, {} failed", source.id, applied, failed)
        return applied, failed

    def _apply_one(self, prop: Property) -> None:
        existing = self.store.get_property(prop.id)
        if existing is None:
            self.mutator.create_property(prop)
            return
        if existing.parent_id != prop.parent_id:
            self.mutator.move_property(prop.id, prop.parent_id)
        patch = prop.model_dump(exclude=_NON_PATCHABLE)
        self.mutator.update_property(prop.id, patch)
