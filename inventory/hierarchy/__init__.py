"""Hierarchy mutation and statistics recalculation."""

from inventory.hierarchy.aggregates import PropertyDelta, apply_property_delta, property_contribution
from inventory.hierarchy.mutator import HierarchyMutator
from inventory.hierarchy.recalculator import RecalculationSummary, StatisticsRecalculator

__all__ = [
    "HierarchyMutator",
    "PropertyDelta",
    "RecalculationSummary",
    "StatisticsRecalculator",
    "apply_property_delta",
    "property_contribution",
]
