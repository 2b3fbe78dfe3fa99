"""
Pure statistic arithmetic shared by the mutator, the recalculator and the drift detector.

A property contributes one PropertyDelta to its county and to its state. Create adds it,
delete subtracts it, move subtracts it from the old chain and adds it to the new one, and
update applies the difference between the old and new contribution.
"""

from datetime import datetime
from typing import Iterable, Literal, TypeVar

from pydantic import BaseModel, Field

from inventory.schemas.entities import County, Property, State, Statistics

S = TypeVar("S", bound=Statistics)

Direction = Literal[1, -1]


class PropertyDelta(BaseModel):
    """What a single property contributes to its ancestors' statistics."""

    properties: int = Field(default=0)
    tax_liens: int = Field(default=0)
    properties_with_liens: int = Field(default=0)
    value: float = Field(default=0.0)

    def scaled(self, direction: int) -> "PropertyDelta":
        return PropertyDelta(
            properties=self.properties * direction,
            tax_liens=self.tax_liens * direction,
            properties_with_liens=self.properties_with_liens * direction,
            value=self.value * direction,
        )

    def minus(self, other: "PropertyDelta") -> "PropertyDelta":
        return PropertyDelta(
            properties=self.properties - other.properties,
            tax_liens=self.tax_liens - other.tax_liens,
            properties_with_liens=self.properties_with_liens - other.properties_with_liens,
            value=self.value - other.value,
        )

    @property
    def is_zero(self) -> bool:
        return (
            self.properties == 0
            and self.tax_liens == 0
            and self.properties_with_liens == 0
            and self.value == 0
        )


def property_contribution(prop: Property) -> PropertyDelta:
    lien = 1 if prop.tax_status.has_active_lien else 0
    return PropertyDelta(
        properties=1,
        tax_liens=lien,
        properties_with_liens=lien,
        value=prop.tax_status.assessed_value,
    )


def apply_delta(stats: S, delta: PropertyDelta, now: datetime) -> S:
    """Return a copy of stats with delta added; extra fields (total_counties etc.) are preserved."""
    return stats.model_copy(
        update={
            "total_properties": stats.total_properties + delta.properties,
            "total_tax_liens": stats.total_tax_liens + delta.tax_liens,
            "total_properties_with_liens": stats.total_properties_with_liens + delta.properties_with_liens,
            "total_value": stats.total_value + delta.value,
            "last_updated": now,
        }
    )


def apply_property_delta(
    direction: Direction,
    prop: Property,
    county: County,
    state: State,
    now: datetime,
) -> tuple[County, State]:
    """
    Add (direction=1) or remove (direction=-1) prop's contribution to county and state.

    Pure: returns updated copies and never touches property_ids or the store.
    """
    delta = property_contribution(prop).scaled(direction)
    return apply_delta_to_chain(delta, county, state, now)


def apply_delta_to_chain(delta: PropertyDelta, county: County, state: State, now: datetime) -> tuple[County, State]:
    new_county = county.model_copy(
        update={"statistics": apply_delta(county.statistics, delta, now), "updated_at": now}
    )
    new_state = state.model_copy(
        update={"statistics": apply_delta(state.statistics, delta, now), "updated_at": now}
    )
    return new_county, new_state


def sum_properties(properties: Iterable[Property]) -> PropertyDelta:
    total = PropertyDelta()
    for prop in properties:
        c = property_contribution(prop)
        total = PropertyDelta(
            properties=total.properties + c.properties,
            tax_liens=total.tax_liens + c.tax_liens,
            properties_with_liens=total.properties_with_liens + c.properties_with_liens,
            value=total.value + c.value,
        )
    return total


def sum_statistics(children: Iterable[Statistics]) -> PropertyDelta:
    total = PropertyDelta()
    for stats in children:
        total = PropertyDelta(
            properties=total.properties + stats.total_properties,
            tax_liens=total.tax_liens + stats.total_tax_liens,
            properties_with_liens=total.properties_with_liens + stats.total_properties_with_liens,
            value=total.value + stats.total_value,
        )
    return total


def totals_as_statistics(totals: PropertyDelta, template: S, now: datetime) -> S:
    """Overwrite the summed fields of template with totals (authoritative rebuild)."""
    return template.model_copy(
        update={
            "total_properties": totals.properties,
            "total_tax_liens": totals.tax_liens,
            "total_properties_with_liens": totals.properties_with_liens,
            "total_value": totals.value,
            "last_updated": now,
        }
    )
