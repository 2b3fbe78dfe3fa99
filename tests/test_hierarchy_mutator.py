"""Tests for HierarchyMutator: statistic propagation, atomicity and error kinds."""

from concurrent.futures import ThreadPoolExecutor, as_completed
from unittest.mock import patch

import pytest

from inventory.errors import InvalidArgumentError, NotFoundError
from inventory.hierarchy.aggregates import apply_property_delta
from inventory.hierarchy.mutator import HierarchyMutator
from inventory.schemas.entities import ACTIVE_LIEN, Property, TaxStatus

from conftest import T0, check_consistent, make_contended_store, make_hierarchy


def make_property(county_id: str, value: float = 100_000.0, lien: bool = False, **kwargs) -> Property:
    """Create a Property for testing."""
    return Property(
        parent_id=county_id,
        parcel_id=kwargs.pop("parcel_id", "01-001-0001"),
        address=kwargs.pop("address", "100 Main St"),
        tax_status=TaxStatus(
            tax_lien_status=ACTIVE_LIEN if lien else "None",
            assessed_value=value,
            lien_amount=1_250.0 if lien else None,
        ),
        **kwargs,
    )


@pytest.fixture
def mutator(store, clock) -> HierarchyMutator:
    return HierarchyMutator(store, clock=clock, retries=0)


def test_apply_property_delta_is_pure(hierarchy) -> None:
    prop = make_property(hierarchy.autauga.id, value=500.0, lien=True)
    county, state = apply_property_delta(1, prop, hierarchy.autauga, hierarchy.al, T0)
    assert county.statistics.total_properties == 1
    assert county.statistics.total_tax_liens == 1
    assert state.statistics.total_value == 500.0
    assert state.statistics.total_counties == 2
    assert hierarchy.autauga.statistics.total_properties == 0
    county, state = apply_property_delta(-1, prop, county, state, T0)
    assert county.statistics.total_properties == 0
    assert state.statistics.total_value == 0.0


class TestCreate:
    def test_create_updates_county_and_state(self, store, hierarchy, mutator, clock) -> None:
        created = mutator.create_property(make_property(hierarchy.autauga.id, value=120_000.0, lien=True))

        county = store.get_county(hierarchy.autauga.id)
        state = store.get_state(hierarchy.al.id)
        assert created.state_id == hierarchy.al.id
        assert county.property_ids == [created.id]
        assert county.statistics.total_properties == 1
        assert county.statistics.total_tax_liens == 1
        assert county.statistics.total_properties_with_liens == 1
        assert county.statistics.total_value == 120_000.0
        assert county.statistics.average_property_value == 120_000.0
        assert county.statistics.last_updated == clock.now
        assert state.statistics.total_properties == 1
        assert state.statistics.total_counties == 2

    def test_create_accepts_dict(self, store, hierarchy, mutator) -> None:
        created = mutator.create_property(
            {"parent_id": hierarchy.fulton.id, "tax_status": {"assessed_value": 10.0}}
        )
        assert store.get_property(created.id).state_id == hierarchy.ga.id

    def test_create_missing_county(self, store, hierarchy, mutator) -> None:
        with pytest.raises(NotFoundError):
            mutator.create_property(make_property("county-missing"))
        assert store.list_properties() == []

    def test_create_duplicate_id(self, store, hierarchy, mutator) -> None:
        prop = make_property(hierarchy.autauga.id)
        mutator.create_property(prop)
        with pytest.raises(InvalidArgumentError):
            mutator.create_property(prop)
        assert store.get_county(hierarchy.autauga.id).statistics.total_properties == 1

    def test_root_not_updated_incrementally(self, store, hierarchy, mutator) -> None:
        mutator.create_property(make_property(hierarchy.autauga.id))
        assert store.get_root(hierarchy.root.id).statistics.total_properties == 0


class TestDelete:
    def test_delete_missing_returns_false(self, hierarchy, mutator) -> None:
        assert mutator.delete_property("nope") is False

    def test_delete_then_create_restores_statistics(self, store, hierarchy, mutator, assert_consistent) -> None:
        mutator.create_property(make_property(hierarchy.autauga.id, value=50.0))
        prop = mutator.create_property(make_property(hierarchy.autauga.id, value=75.0, lien=True))
        before_county = store.get_county(hierarchy.autauga.id).statistics
        before_state = store.get_state(hierarchy.al.id).statistics

        assert mutator.delete_property(prop.id) is True
        assert store.get_property(prop.id) is None
        assert prop.id not in store.get_county(hierarchy.autauga.id).property_ids
        mutator.create_property(prop)

        after_county = store.get_county(hierarchy.autauga.id).statistics
        after_state = store.get_state(hierarchy.al.id).statistics
        assert after_county.total_properties == before_county.total_properties
        assert after_county.total_value == before_county.total_value
        assert after_county.total_tax_liens == before_county.total_tax_liens
        assert after_state.total_properties == before_state.total_properties
        assert after_state.total_value == before_state.total_value
        assert_consistent()

    def test_delete_orphaned_property(self, store, hierarchy, mutator) -> None:
        store.save_property(make_property("county-gone", id="orphan"))
        assert mutator.delete_property("orphan") is True
        assert store.get_property("orphan") is None


class TestMove:
    def test_move_within_state_keeps_state_totals(self, store, hierarchy, mutator, assert_consistent) -> None:
        prop = mutator.create_property(make_property(hierarchy.autauga.id, value=200.0, lien=True))
        before = store.get_state(hierarchy.al.id).statistics

        moved = mutator.move_property(prop.id, hierarchy.baldwin.id)

        after = store.get_state(hierarchy.al.id).statistics
        assert moved.parent_id == hierarchy.baldwin.id
        assert after.total_properties == before.total_properties
        assert after.total_value == before.total_value
        assert after.total_tax_liens == before.total_tax_liens
        assert store.get_county(hierarchy.autauga.id).statistics.total_properties == 0
        assert store.get_county(hierarchy.baldwin.id).statistics.total_properties == 1
        assert store.get_county(hierarchy.baldwin.id).property_ids == [prop.id]
        assert_consistent()

    def test_move_across_states_transfers_contribution(self, store, hierarchy, mutator, assert_consistent) -> None:
        prop = mutator.create_property(make_property(hierarchy.autauga.id, value=300.0, lien=True))
        al_before = store.get_state(hierarchy.al.id).statistics
        ga_before = store.get_state(hierarchy.ga.id).statistics

        moved = mutator.move_property(prop.id, hierarchy.fulton.id)

        al_after = store.get_state(hierarchy.al.id).statistics
        ga_after = store.get_state(hierarchy.ga.id).statistics
        assert moved.state_id == hierarchy.ga.id
        assert al_after.total_properties == al_before.total_properties - 1
        assert ga_after.total_properties == ga_before.total_properties + 1
        assert al_after.total_value == al_before.total_value - 300.0
        assert ga_after.total_value == ga_before.total_value + 300.0
        assert ga_after.total_tax_liens == 1
        assert al_after.total_tax_liens == 0
        assert_consistent()

    def test_move_to_same_county_is_noop(self, store, hierarchy, mutator) -> None:
        prop = mutator.create_property(make_property(hierarchy.autauga.id))
        mutator.move_property(prop.id, hierarchy.autauga.id)
        county = store.get_county(hierarchy.autauga.id)
        assert county.statistics.total_properties == 1
        assert county.property_ids == [prop.id]

    def test_move_missing_property_returns_none(self, hierarchy, mutator) -> None:
        assert mutator.move_property("nope", hierarchy.fulton.id) is None

    def test_move_to_missing_county(self, store, hierarchy, mutator) -> None:
        prop = mutator.create_property(make_property(hierarchy.autauga.id))
        with pytest.raises(NotFoundError):
            mutator.move_property(prop.id, "county-missing")
        assert store.get_property(prop.id).parent_id == hierarchy.autauga.id
        assert store.get_county(hierarchy.autauga.id).statistics.total_properties == 1


class TestUpdate:
    def test_update_plain_fields(self, store, hierarchy, mutator) -> None:
        prop = mutator.create_property(make_property(hierarchy.autauga.id))
        updated = mutator.update_property(prop.id, {"owner_name": "J. Smith"})
        assert updated.owner_name == "J. Smith"
        assert store.get_property(prop.id).owner_name == "J. Smith"

    def test_update_parent_rejected(self, store, hierarchy, mutator) -> None:
        prop = mutator.create_property(make_property(hierarchy.autauga.id))
        with pytest.raises(InvalidArgumentError):
            mutator.update_property(prop.id, {"parent_id": hierarchy.baldwin.id})
        assert store.get_property(prop.id).parent_id == hierarchy.autauga.id

    def test_update_same_parent_allowed(self, hierarchy, mutator) -> None:
        prop = mutator.create_property(make_property(hierarchy.autauga.id))
        assert mutator.update_property(prop.id, {"parent_id": hierarchy.autauga.id, "address": "1 Elm"}) is not None

    def test_update_missing_returns_none(self, hierarchy, mutator) -> None:
        assert mutator.update_property("nope", {"owner_name": "x"}) is None

    def test_update_value_and_lien_propagates(self, store, hierarchy, mutator, assert_consistent) -> None:
        prop = mutator.create_property(make_property(hierarchy.autauga.id, value=100.0))
        mutator.update_property(prop.id, {"tax_status": {"assessed_value": 250.0, "tax_lien_status": ACTIVE_LIEN}})

        stored = store.get_property(prop.id)
        county = store.get_county(hierarchy.autauga.id).statistics
        state = store.get_state(hierarchy.al.id).statistics
        assert stored.tax_status.assessed_value == 250.0
        assert stored.tax_status.lien_amount is None
        assert county.total_value == 250.0
        assert county.total_tax_liens == 1
        assert county.total_properties == 1
        assert state.total_value == 250.0
        assert state.total_properties_with_liens == 1
        assert_consistent()

    def test_update_lien_released(self, store, hierarchy, mutator, assert_consistent) -> None:
        prop = mutator.create_property(make_property(hierarchy.autauga.id, value=100.0, lien=True))
        mutator.update_property(prop.id, {"tax_status": {"tax_lien_status": "Redeemed"}})
        assert store.get_county(hierarchy.autauga.id).statistics.total_tax_liens == 0
        assert_consistent()


class TestAtomicity:
    def test_state_write_failure_rolls_back_create(self, store, hierarchy, mutator) -> None:
        prop = make_property(hierarchy.autauga.id)
        with patch.object(store, "save_state", side_effect=RuntimeError("disk full")):
            with pytest.raises(RuntimeError, match="disk full"):
                mutator.create_property(prop)

        county = store.get_county(hierarchy.autauga.id)
        assert store.get_property(prop.id) is None
        assert county.statistics.total_properties == 0
        assert county.property_ids == []

    def test_state_write_failure_rolls_back_move(self, store, hierarchy, mutator, assert_consistent) -> None:
        prop = mutator.create_property(make_property(hierarchy.autauga.id, value=10.0))
        with patch.object(store, "save_state", side_effect=RuntimeError("disk full")):
            with pytest.raises(RuntimeError):
                mutator.move_property(prop.id, hierarchy.fulton.id)

        assert store.get_property(prop.id).parent_id == hierarchy.autauga.id
        assert store.get_county(hierarchy.fulton.id).statistics.total_properties == 0
        assert store.get_county(hierarchy.autauga.id).statistics.total_properties == 1
        assert_consistent()


def test_mixed_sequence_keeps_sums(store, hierarchy, mutator, assert_consistent) -> None:
    props = [
        mutator.create_property(make_property(c, value=v, lien=lien))
        for c, v, lien in [
            (hierarchy.autauga.id, 10.0, False),
            (hierarchy.autauga.id, 20.0, True),
            (hierarchy.baldwin.id, 30.0, True),
            (hierarchy.fulton.id, 40.0, False),
        ]
    ]
    mutator.move_property(props[0].id, hierarchy.fulton.id)
    mutator.update_property(props[3].id, {"tax_status": {"assessed_value": 5.0}})
    mutator.delete_property(props[1].id)
    mutator.move_property(props[2].id, hierarchy.autauga.id)
    assert_consistent()
    assert store.get_state(hierarchy.al.id).statistics.total_properties == 1
    assert store.get_state(hierarchy.ga.id).statistics.total_value == 15.0


class TestInvalidData:
    def test_create_with_invalid_data(self, store, hierarchy, mutator) -> None:
        with pytest.raises(InvalidArgumentError):
            mutator.create_property({"parent_id": hierarchy.autauga.id, "tax_status": {"assessed_value": -5}})
        assert store.list_properties() == []

    def test_update_with_invalid_patch(self, store, hierarchy, mutator) -> None:
        prop = mutator.create_property(make_property(hierarchy.autauga.id, value=100.0))
        with pytest.raises(InvalidArgumentError):
            mutator.update_property(prop.id, {"tax_status": {"assessed_value": -5}})
        assert store.get_property(prop.id).tax_status.assessed_value == 100.0
        assert store.get_county(hierarchy.autauga.id).statistics.total_value == 100.0


def test_concurrent_creates_on_one_county() -> None:
    store = make_contended_store()
    try:
        hierarchy = make_hierarchy(store)
        mutator = HierarchyMutator(store)
        props = [make_property(hierarchy.autauga.id, value=10.0, lien=i % 2 == 0) for i in range(40)]

        with ThreadPoolExecutor(max_workers=8) as executor:
            futures = [executor.submit(mutator.create_property, p) for p in props]
            created = [future.result() for future in as_completed(futures)]

        assert len(created) == 40
        county = store.get_county(hierarchy.autauga.id)
        state = store.get_state(hierarchy.al.id)
        assert county.statistics.total_properties == 40
        assert county.statistics.total_tax_liens == 20
        assert county.statistics.total_value == pytest.approx(400.0)
        assert state.statistics.total_properties == 40
        check_consistent(store)
    finally:
        store.close()
