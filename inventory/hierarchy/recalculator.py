"""Statistics recalculator: authoritative rebuild of aggregates from children.

Used for repair after bulk loads or when the drift detector reports a mismatch.
"""

from datetime import datetime
from typing import Callable, List, Optional

from loguru import logger
from pydantic import BaseModel, Field

from inventory.hierarchy.aggregates import sum_properties, sum_statistics, totals_as_statistics
from inventory.schemas.entities import County, RootMap, State, utc_now
from inventory.storage.duckdb_store import InventoryStore, Transaction


class RecalculationSummary(BaseModel):
    """Result of a full rebuild."""

    counties: int = Field(default=0, ge=0)
    states: int = Field(default=0, ge=0)
    roots: int = Field(default=0, ge=0)
    total_properties: int = Field(default=0, ge=0)
    total_value: float = Field(default=0.0)


class StatisticsRecalculator:
    """Recomputes county, state and root statistics by scanning children."""

    def __init__(
        self,
        store: InventoryStore,
        clock: Optional[Callable[[], datetime]] = None,
        retries: Optional[int] = None,
    ):
        self.store = store
        self.clock = clock or utc_now
        self.retries = retries

    def _rebuild_county(self, county: County, tx: Transaction, now: datetime) -> County:
        properties = self.store.list_properties(county_id=county.id, tx=tx)
        totals = sum_properties(properties)
        rebuilt = county.model_copy(
            update={
                "statistics": totals_as_statistics(totals, county.statistics, now),
                "property_ids": [p.id for p in properties],
                "updated_at": now,
            }
        )
        self.store.save_county(rebuilt, tx)
        return rebuilt

    def _rebuild_state(self, state: State, counties: List[County], tx: Transaction, now: datetime) -> State:
        totals = sum_statistics(c.statistics for c in counties)
        stats = totals_as_statistics(totals, state.statistics, now).model_copy(
            update={"total_counties": len(counties)}
        )
        rebuilt = state.model_copy(
            update={"statistics": stats, "county_ids": [c.id for c in counties], "updated_at": now}
        )
        self.store.save_state(rebuilt, tx)
        return rebuilt

    def recalculate_county(self, county_id: str) -> Optional[County]:
        """Sum a county's properties into its statistics. Returns None if the county does not exist."""

        def work(tx: Transaction) -> Optional[County]:
            county = self.store.get_county(county_id, tx)
            if county is None:
                return None
            return self._rebuild_county(county, tx, self.clock())

        county = self.store.run_in_transaction(work, self.retries)
        if county is None:
            logger.warning("Cannot recalculate, county not found: {}", county_id)
        else:
            logger.info(
                "Recalculated county {}: {} properties, value {}",
                county_id,
                county.statistics.total_properties,
                county.statistics.total_value,
            )
        return county

    def recalculate_state(self, state_id: str) -> Optional[State]:
        """
        Sum a state's county statistics into the state. Returns None if the state does not exist.

        County statistics are taken as stored; use recalculate_all to rebuild from properties.
        """

        def work(tx: Transaction) -> Optional[State]:
            state = self.store.get_state(state_id, tx)
            if state is None:
                return None
            counties = self.store.list_counties(state_id=state_id, tx=tx)
            return self._rebuild_state(state, counties, tx, self.clock())

        state = self.store.run_in_transaction(work, self.retries)
        if state is None:
            logger.warning("Cannot recalculate, state not found: {}", state_id)
        else:
            logger.info(
                "Recalculated state {}: {} counties, {} properties, value {}",
                state_id,
                state.statistics.total_counties,
                state.statistics.total_properties,
                state.statistics.total_value,
            )
        return state

    def recalculate_root(self, root_id: str) -> Optional[RootMap]:
        """Sum state statistics into the root map. Returns None if the root does not exist."""

        def work(tx: Transaction) -> Optional[RootMap]:
            now = self.clock()
            root = self.store.get_root(root_id, tx)
            if root is None:
                return None
            states = self.store.list_states(parent_id=root_id, tx=tx)
            totals = sum_statistics(s.statistics for s in states)
            stats = totals_as_statistics(totals, root.statistics, now).model_copy(
                update={
                    "total_states": len(states),
                    "total_counties": sum(s.statistics.total_counties for s in states),
                }
            )
            rebuilt = root.model_copy(
                update={"statistics": stats, "state_ids": [s.id for s in states], "updated_at": now}
            )
            self.store.save_root(rebuilt, tx)
            return rebuilt

        root = self.store.run_in_transaction(work, self.retries)
        if root is None:
            logger.warning("Cannot recalculate, root map not found: {}", root_id)
        return root

    def recalculate_all(self) -> RecalculationSummary:
        """
        Rebuild everything bottom-up: each state's counties from their properties and then
        the state itself (one transaction per state), then every root map.
        """
        summary = RecalculationSummary()

        for state in self.store.list_states():

            def work(tx: Transaction, state_id: str = state.id) -> Optional[State]:
                now = self.clock()
                current = self.store.get_state(state_id, tx)
                if current is None:
                    return None
                counties = [
                    self._rebuild_county(c, tx, now) for c in self.store.list_counties(state_id=state_id, tx=tx)
                ]
                return self._rebuild_state(current, counties, tx, now)

            rebuilt = self.store.run_in_transaction(work, self.retries)
            if rebuilt is None:
                continue
            summary.states += 1
            summary.counties += rebuilt.statistics.total_counties
            summary.total_properties += rebuilt.statistics.total_properties
            summary.total_value += rebuilt.statistics.total_value

        for root in self.store.list_roots():
            if self.recalculate_root(root.id) is not None:
                summary.roots += 1

        logger.info(
            "Full recalculation complete: {} states, {} counties, {} properties",
            summary.states,
            summary.counties,
            summary.total_properties,
        )
        return summary
