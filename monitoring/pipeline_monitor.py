"""Collection health summary over data sources and their run history."""

from datetime import datetime
from typing import Callable, List, Optional

from loguru import logger
from pydantic import BaseModel, Field

from collection.recorder import CollectionRecorder
from collection.scheduler import as_utc, is_due
from inventory.schemas.entities import utc_now
from inventory.storage.duckdb_store import InventoryStore


class HealthReport(BaseModel):
    """Aggregated health of the collection pipeline."""

    total_sources: int = Field(default=0, ge=0)
    active_sources: int = Field(default=0, ge=0)
    inactive_sources: int = Field(default=0, ge=0)
    error_sources: int = Field(default=0, ge=0)
    syncing_sources: int = Field(default=0, ge=0)
    due_sources: int = Field(default=0, ge=0)
    avg_success_rate: float = Field(default=0.0, ge=0.0, le=100.0)
    last_collection_time: Optional[str] = Field(default=None)
    failing_source_ids: List[str] = Field(default_factory=list)


class CollectionMonitor:
    """Builds a HealthReport from the store."""

    def __init__(
        self,
        store: InventoryStore,
        recorder: Optional[CollectionRecorder] = None,
        clock: Optional[Callable[[], datetime]] = None,
        run_stats_limit: int = 10,
    ):
        self.store = store
        self.recorder = recorder or CollectionRecorder(store)
        self.clock = clock or utc_now
        self.run_stats_limit = run_stats_limit

    def get_collection_health(self, now: Optional[datetime] = None) -> HealthReport:
        ts = as_utc(now) if now else self.clock()
        sources = self.store.list_data_sources()

        rates: List[float] = []
        last_collected: Optional[datetime] = None
        for source in sources:
            stats = self.recorder.get_run_stats(source.id, limit=self.run_stats_limit)
            if stats is not None:
                rates.append(stats.success_rate)
            if source.last_collected is not None:
                collected = as_utc(source.last_collected)
                if last_collected is None or collected > last_collected:
                    last_collected = collected

        by_status = {s: sum(1 for src in sources if src.status == s) for s in ("active", "inactive", "error", "syncing")}
        report = HealthReport(
            total_sources=len(sources),
            active_sources=by_status["active"],
            inactive_sources=by_status["inactive"],
            error_sources=by_status["error"],
            syncing_sources=by_status["syncing"],
            due_sources=sum(1 for s in sources if is_due(s, ts)),
            avg_success_rate=round(sum(rates) / len(rates), 2) if rates else 0.0,
            last_collection_time=last_collected.isoformat() if last_collected else None,
            failing_source_ids=[s.id for s in sources if s.status == "error"],
        )
        logger.info(
            "Collection health: {} sources, {} due, {} failing",
            report.total_sources,
            report.due_sources,
            report.error_sources,
        )
        return report
