"""Drift detection for stored aggregate statistics.

Incremental deltas keep county and state statistics in step with their children; drift
means a bulk load, a manual edit or a bug bypassed them. The detector only reports, and
StatisticsRecalculator repairs.
"""

from typing import List, Literal, Optional

from loguru import logger
from pydantic import BaseModel, Field

from inventory.hierarchy.aggregates import PropertyDelta, sum_properties, sum_statistics
from inventory.schemas.entities import County, State, Statistics
from inventory.storage.duckdb_store import InventoryStore

# Stored statistics field -> PropertyDelta field
METRICS = {
    "total_properties": "properties",
    "total_tax_liens": "tax_liens",
    "total_properties_with_liens": "properties_with_liens",
    "total_value": "value",
}

# Float sums of assessed values are not exact
VALUE_TOLERANCE = 1e-6


class DriftResult(BaseModel):
    """One drifted metric on one entity."""

    entity_id: str = Field(...)
    entity_type: Literal["county", "state"] = Field(...)
    metric: str = Field(...)
    stored: float = Field(default=0.0)
    expected: float = Field(default=0.0)
    severity: Literal["low", "medium", "high"] = Field(default="low")


def _severity(ratio: float, threshold: float) -> Literal["low", "medium", "high"]:
    """Map deviation ratio to severity."""
    if ratio < threshold:
        return "low"
    if ratio < threshold * 1.5:
        return "medium"
    return "high"


class StatisticsDriftDetector:
    """
    Compares stored statistics with what the children say they should be.

    Counties are checked against their properties; states against the stored statistics
    of their counties (so a drifted county shows up once, not twice).
    """

    def __init__(self, store: InventoryStore, high_drift_threshold: float = 0.10):
        self.store = store
        self.high_drift_threshold = high_drift_threshold

    def _compare(
        self,
        entity_id: str,
        entity_type: Literal["county", "state"],
        stats: Statistics,
        expected: PropertyDelta,
    ) -> List[DriftResult]:
        results: List[DriftResult] = []
        for metric, delta_field in METRICS.items():
            stored_value = float(getattr(stats, metric))
            expected_value = float(getattr(expected, delta_field))
            if abs(stored_value - expected_value) <= VALUE_TOLERANCE:
                continue
            ratio = abs(stored_value - expected_value) / max(abs(expected_value), 1.0)
            results.append(
                DriftResult(
                    entity_id=entity_id,
                    entity_type=entity_type,
                    metric=metric,
                    stored=stored_value,
                    expected=expected_value,
                    severity=_severity(ratio, self.high_drift_threshold),
                )
            )
        return results

    def check_county(self, county: County) -> List[DriftResult]:
        properties = self.store.list_properties(county_id=county.id)
        return self._compare(county.id, "county", county.statistics, sum_properties(properties))

    def check_state(self, state: State) -> List[DriftResult]:
        counties = self.store.list_counties(state_id=state.id)
        results = self._compare(state.id, "state", state.statistics, sum_statistics(c.statistics for c in counties))
        if state.statistics.total_counties != len(counties):
            results.append(
                DriftResult(
                    entity_id=state.id,
                    entity_type="state",
                    metric="total_counties",
                    stored=float(state.statistics.total_counties),
                    expected=float(len(counties)),
                    severity=_severity(
                        abs(state.statistics.total_counties - len(counties)) / max(len(counties), 1),
                        self.high_drift_threshold,
                    ),
                )
            )
        return results

    def scan(self, state_id: Optional[str] = None) -> List[DriftResult]:
        """Check every county and state (or only one state and its counties)."""
        if state_id is not None:
            state = self.store.get_state(state_id)
            states = [state] if state is not None else []
        else:
            states = self.store.list_states()

        results: List[DriftResult] = []
        for state in states:
            for county in self.store.list_counties(state_id=state.id):
                results.extend(self.check_county(county))
            results.extend(self.check_state(state))

        if results:
            logger.warning(
                "Statistics drift: {} metrics on {} entities",
                len(results),
                len({r.entity_id for r in results}),
            )
        else:
            logger.info("No statistics drift across {} states", len(states))
        return results
