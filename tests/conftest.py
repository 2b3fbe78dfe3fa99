"""Shared fixtures: in-memory store, fixed clock, and a small two-state hierarchy."""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from inventory.hierarchy.aggregates import sum_properties, sum_statistics
from inventory.schemas.entities import County, RootMap, State, StateStatistics
from inventory.storage.duckdb_store import InventoryStore

# In-memory DuckDB path for all tests
MEMORY_DB = ":memory:"

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeClock:
    """Injectable clock; call it for the current time, advance() to move it."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def make_contended_store() -> InventoryStore:
    """Store for threaded tests: many retries, short backoff."""
    return InventoryStore(MEMORY_DB, transaction_retries=30, retry_backoff=0.002, max_backoff=0.05)


def make_hierarchy(store: InventoryStore) -> SimpleNamespace:
    """
    US map with Alabama (Autauga, Baldwin) and Georgia (Fulton), all empty.
    """
    root = RootMap(id="us")
    al = State(id="state-al", name="Alabama", abbreviation="AL", parent_id=root.id)
    ga = State(id="state-ga", name="Georgia", abbreviation="GA", parent_id=root.id)
    autauga = County(id="county-autauga", name="Autauga", fips="01001", parent_id=al.id)
    baldwin = County(id="county-baldwin", name="Baldwin", fips="01003", parent_id=al.id)
    fulton = County(id="county-fulton", name="Fulton", fips="13121", parent_id=ga.id)

    al = al.model_copy(
        update={"county_ids": [autauga.id, baldwin.id], "statistics": StateStatistics(total_counties=2)}
    )
    ga = ga.model_copy(update={"county_ids": [fulton.id], "statistics": StateStatistics(total_counties=1)})
    root = root.model_copy(update={"state_ids": [al.id, ga.id]})

    store.save_root(root)
    for state in (al, ga):
        store.save_state(state)
    for county in (autauga, baldwin, fulton):
        store.save_county(county)
    return SimpleNamespace(root=root, al=al, ga=ga, autauga=autauga, baldwin=baldwin, fulton=fulton)


def check_consistent(store: InventoryStore) -> None:
    """Assert every county and state equals the sum of its children."""
    for state in store.list_states():
        counties = store.list_counties(state_id=state.id)
        for county in counties:
            props = store.list_properties(county_id=county.id)
            expected = sum_properties(props)
            assert county.statistics.total_properties == expected.properties, county.id
            assert county.statistics.total_tax_liens == expected.tax_liens, county.id
            assert county.statistics.total_properties_with_liens == expected.properties_with_liens, county.id
            assert county.statistics.total_value == pytest.approx(expected.value), county.id
            assert sorted(county.property_ids) == sorted(p.id for p in props), county.id
        expected = sum_statistics(c.statistics for c in counties)
        assert state.statistics.total_properties == expected.properties, state.id
        assert state.statistics.total_tax_liens == expected.tax_liens, state.id
        assert state.statistics.total_properties_with_liens == expected.properties_with_liens, state.id
        assert state.statistics.total_value == pytest.approx(expected.value), state.id


@pytest.fixture
def store():
    s = InventoryStore(MEMORY_DB, transaction_retries=0)
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def hierarchy(store: InventoryStore) -> SimpleNamespace:
    return make_hierarchy(store)


@pytest.fixture
def assert_consistent(store: InventoryStore):
    """Return a checker bound to the test's store."""
    return lambda: check_consistent(store)
