"""
Pydantic v2 models for the containment hierarchy: root map -> state -> county -> property.
"""

from datetime import datetime, timezone
from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, Field, computed_field

ACTIVE_LIEN = "Active"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class Statistics(BaseModel):
    """
    Aggregate statistics stored on a county (and extended for states and the root map).

    average_property_value is derived on read so it can never go stale.
    """

    total_properties: int = Field(default=0)
    total_tax_liens: int = Field(default=0)
    total_value: float = Field(default=0.0)
    total_properties_with_liens: int = Field(default=0)
    last_updated: datetime | None = Field(None)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def average_property_value(self) -> float:
        if self.total_properties > 0:
            return self.total_value / self.total_properties
        return 0.0


class StateStatistics(Statistics):
    """County statistics plus the number of counties in the state."""

    total_counties: int = Field(default=0)


class RootStatistics(StateStatistics):
    """State statistics plus the number of states on the map."""

    total_states: int = Field(default=0)


class TaxStatus(BaseModel):
    """Tax record for a property. Only tax_lien_status == "Active" counts as a lien."""

    tax_lien_status: str = Field(default="None")
    assessed_value: float = Field(default=0.0, ge=0.0)
    market_value: float = Field(default=0.0, ge=0.0)
    lien_amount: float | None = Field(None, ge=0.0)
    tax_year: int | None = Field(None)
    last_updated: datetime | None = Field(None)

    @property
    def has_active_lien(self) -> bool:
        return self.tax_lien_status == ACTIVE_LIEN


class RootMap(BaseModel):
    """Top of the hierarchy; owns states."""

    id: str = Field(default_factory=new_id)
    type: Literal["us_map"] = "us_map"
    name: str = Field(default="United States", min_length=1)
    geometry: dict | None = Field(None, description="Opaque GeoJSON geometry")
    state_ids: list[str] = Field(default_factory=list)
    statistics: RootStatistics = Field(default_factory=RootStatistics)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    model_config = {"str_strip_whitespace": True}


class State(BaseModel):
    """State entry; parent is the root map, children are counties."""

    id: str = Field(default_factory=new_id)
    type: Literal["state"] = "state"
    name: str = Field(..., min_length=1)
    abbreviation: str = Field(..., min_length=2, max_length=2)
    parent_id: str = Field(..., description="Root map id")
    geometry: dict | None = Field(None)
    county_ids: list[str] = Field(default_factory=list)
    statistics: StateStatistics = Field(default_factory=StateStatistics)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    model_config = {"str_strip_whitespace": True}


class County(BaseModel):
    """County entry; parent is a state, children are properties."""

    id: str = Field(default_factory=new_id)
    type: Literal["county"] = "county"
    name: str = Field(..., min_length=1)
    fips: str | None = Field(None, min_length=5, max_length=5, description="5-digit FIPS code")
    parent_id: str = Field(..., description="State id")
    geometry: dict | None = Field(None)
    property_ids: list[str] = Field(default_factory=list)
    statistics: Statistics = Field(default_factory=Statistics)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    model_config = {"str_strip_whitespace": True}


class Property(BaseModel):
    """
    Leaf entity, owned by exactly one county.

    state_id is maintained by the hierarchy mutator; callers only supply parent_id.
    """

    id: str = Field(default_factory=new_id)
    type: Literal["property"] = "property"
    parent_id: str = Field(..., description="County id")
    state_id: str | None = Field(None)
    parcel_id: str | None = Field(None)
    address: str | None = Field(None)
    owner_name: str | None = Field(None)
    property_type: str | None = Field(None)
    tax_status: TaxStatus = Field(default_factory=TaxStatus)
    geometry: dict | None = Field(None)
    metadata: dict = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    model_config = {"str_strip_whitespace": True}
