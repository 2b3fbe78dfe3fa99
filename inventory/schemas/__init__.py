"""
Inventory schemas: Pydantic v2 models for the entity hierarchy and the collection subsystem.
"""

from inventory.schemas.collection import (
    CollectionResult,
    CollectionRun,
    CollectionStats,
    DataSource,
    ErrorLogItem,
    RunStats,
    Schedule,
    SourceRegion,
    SourceRunResult,
)
from inventory.schemas.entities import (
    ACTIVE_LIEN,
    County,
    Property,
    RootMap,
    RootStatistics,
    State,
    StateStatistics,
    Statistics,
    TaxStatus,
)

__all__ = [
    "ACTIVE_LIEN",
    "CollectionResult",
    "CollectionRun",
    "CollectionStats",
    "County",
    "DataSource",
    "ErrorLogItem",
    "Property",
    "RootMap",
    "RootStatistics",
    "RunStats",
    "Schedule",
    "SourceRegion",
    "SourceRunResult",
    "State",
    "StateStatistics",
    "Statistics",
    "TaxStatus",
]
