"""
Pydantic v2 models for data sources, collection runs, and collector results.
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from inventory.schemas.entities import new_id, utc_now

Frequency = Literal["hourly", "daily", "weekly", "monthly", "manual"]
SourceStatus = Literal["active", "inactive", "error", "syncing"]
RunStatus = Literal["in-progress", "success", "error"]
SourceType = Literal["county-website", "state-records", "tax-database", "api", "pdf"]


class Schedule(BaseModel):
    """Collection cadence for a data source."""

    frequency: Frequency = "daily"
    day_of_week: int | None = Field(None, ge=0, le=6, description="0 = Sunday ... 6 = Saturday")
    day_of_month: int | None = Field(None, ge=1, le=31)


class SourceRegion(BaseModel):
    state: str = Field(..., min_length=1)
    county: str | None = Field(None)


class DataSource(BaseModel):
    """External collection configuration plus its live status."""

    id: str = Field(default_factory=new_id)
    name: str = Field(..., min_length=1)
    source_type: SourceType = "county-website"
    url: str = Field(default="")
    region: SourceRegion
    collector_type: str = Field(..., min_length=1)
    schedule: Schedule = Field(default_factory=Schedule)
    status: SourceStatus = "inactive"
    last_collected: datetime | None = Field(None)
    next_scheduled_run: datetime | None = Field(None)
    error_message: str | None = Field(None)
    metadata: dict = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    model_config = {"str_strip_whitespace": True}


class CollectionStats(BaseModel):
    duration: float = Field(default=0.0, ge=0.0, description="Milliseconds")
    item_count: int = Field(default=0, ge=0)
    success_count: int = Field(default=0, ge=0)
    error_count: int = Field(default=0, ge=0)
    memory_usage: float = Field(default=0.0, ge=0.0, description="Peak RSS in MB")


class ErrorLogItem(BaseModel):
    message: str
    timestamp: datetime = Field(default_factory=utc_now)
    details: dict | None = Field(None)


class CollectionRun(BaseModel):
    """
    History record for one collection run. Append-only: only an in-progress run
    may transition, once, to success or error.
    """

    id: str = Field(default_factory=new_id)
    source_id: str = Field(..., min_length=1)
    timestamp: datetime = Field(default_factory=utc_now)
    status: RunStatus = "in-progress"
    stats: CollectionStats = Field(default_factory=CollectionStats)
    error_log: list[ErrorLogItem] = Field(default_factory=list)
    property_ids: list[str] = Field(default_factory=list)


class RunStats(BaseModel):
    """Summary over the most recent runs of a source."""

    total_runs: int = Field(..., ge=1)
    success_rate: float = Field(..., ge=0.0, le=100.0, description="Percent")
    average_duration: float = Field(default=0.0, ge=0.0)
    average_items: float = Field(default=0.0, ge=0.0)
    last_run: CollectionRun


class CollectionResult(BaseModel):
    """What a collector function returns for one source."""

    properties: list[Any] = Field(default_factory=list)
    duration: float = Field(default=0.0, ge=0.0)
    success: bool = Field(...)
    error_message: str | None = Field(None)


class SourceRunResult(BaseModel):
    """Outcome of processing one due source in a scheduler tick."""

    source_id: str
    source_name: str = Field(default="")
    success: bool = Field(...)
    run_id: str | None = Field(None)
    property_count: int = Field(default=0, ge=0)
    applied_count: int = Field(default=0, ge=0)
    apply_errors: int = Field(default=0, ge=0)
    duration: float = Field(default=0.0, ge=0.0)
    error: str | None = Field(None)
