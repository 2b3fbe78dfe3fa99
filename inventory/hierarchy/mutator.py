"""Hierarchy mutator: structural property changes with transactional statistic propagation.

Every operation is one unit of work: the property write and both ancestor writes commit
together or not at all.
"""

from datetime import datetime
from typing import Any, Callable, Optional

from loguru import logger
from pydantic import ValidationError

from inventory.errors import InvalidArgumentError, NotFoundError
from inventory.hierarchy.aggregates import (
    apply_delta_to_chain,
    apply_property_delta,
    property_contribution,
)
from inventory.schemas.entities import County, Property, State, utc_now
from inventory.storage.duckdb_store import InventoryStore, Transaction

# Fields a plain update may never change; parent changes go through move_property
_IMMUTABLE_FIELDS = ("id", "type", "parent_id", "state_id", "created_at")


class HierarchyMutator:
    """
    Creates, deletes, moves and updates properties while keeping county and state
    statistics equal to the sum of their children.
    """

    def __init__(
        self,
        store: InventoryStore,
        clock: Optional[Callable[[], datetime]] = None,
        retries: Optional[int] = None,
    ):
        self.store = store
        self.clock = clock or utc_now
        self.retries = retries

    def _load_chain(self, county_id: str, tx: Transaction) -> tuple[County, State]:
        county = self.store.get_county(county_id, tx)
        if county is None:
            raise NotFoundError(f"County not found: {county_id}")
        state = self.store.get_state(county.parent_id, tx)
        if state is None:
            raise NotFoundError(f"State not found for county {county_id}: {county.parent_id}")
        return county, state

    def create_property(self, data: Property | dict[str, Any]) -> Property:
        """
        Insert a property under its parent county and add its contribution to county and state.

        Raises:
            NotFoundError: parent county (or its state) does not exist.
            InvalidArgumentError: a property with the same id already exists, or data is invalid.
        """
        try:
            prop = data if isinstance(data, Property) else Property.model_validate(data)
        except ValidationError as e:
            raise InvalidArgumentError(f"Invalid property data: {e}") from e

        def work(tx: Transaction) -> Property:
            now = self.clock()
            if self.store.get_property(prop.id, tx) is not None:
                raise InvalidArgumentError(f"Property already exists: {prop.id}")
            county, state = self._load_chain(prop.parent_id, tx)

            created = prop.model_copy(update={"state_id": state.id, "created_at": now, "updated_at": now})
            county, state = apply_property_delta(1, created, county, state, now)
            county = county.model_copy(update={"property_ids": [*county.property_ids, created.id]})

            self.store.save_property(created, tx)
            self.store.save_county(county, tx)
            self.store.save_state(state, tx)
            return created

        created = self.store.run_in_transaction(work, self.retries)
        logger.info("Created property {} in county {}", created.id, created.parent_id)
        return created

    def delete_property(self, property_id: str) -> bool:
        """
        Remove a property and subtract its contribution from county and state.

        Returns False (no error) if the property does not exist.
        """

        def work(tx: Transaction) -> bool:
            now = self.clock()
            prop = self.store.get_property(property_id, tx)
            if prop is None:
                return False

            county = self.store.get_county(prop.parent_id, tx)
            state = self.store.get_state(county.parent_id, tx) if county else None
            if county is None or state is None:
                # Orphaned property: nothing to decrement, but it must still be removable
                logger.warning(
                    "Deleting property {} with missing ancestor (county={}, state={})",
                    property_id,
                    prop.parent_id,
                    county.parent_id if county else None,
                )
            else:
                county, state = apply_property_delta(-1, prop, county, state, now)
                county = county.model_copy(
                    update={"property_ids": [pid for pid in county.property_ids if pid != property_id]}
                )
                self.store.save_county(county, tx)
                self.store.save_state(state, tx)

            self.store.delete_property(property_id, tx)
            return True

        deleted = self.store.run_in_transaction(work, self.retries)
        if deleted:
            logger.info("Deleted property {}", property_id)
        else:
            logger.debug("Delete skipped, property {} not found", property_id)
        return deleted

    def move_property(self, property_id: str, new_county_id: str) -> Optional[Property]:
        """
        Move a property to another county, transferring its whole contribution
        (count, value, liens) from the old county/state to the new ones.

        Returns None if the property does not exist.

        Raises:
            NotFoundError: either county (or either state) does not exist.
        """

        def work(tx: Transaction) -> Optional[Property]:
            now = self.clock()
            prop = self.store.get_property(property_id, tx)
            if prop is None:
                return None
            # Both counties are re-read on every attempt, so a retried move re-checks they exist
            old_county, old_state = self._load_chain(prop.parent_id, tx)
            new_county, new_state = self._load_chain(new_county_id, tx)
            if old_county.id == new_county.id:
                return prop

            old_county, old_state = apply_property_delta(-1, prop, old_county, old_state, now)
            if new_state.id == old_state.id:
                new_state = old_state
            new_county, new_state = apply_property_delta(1, prop, new_county, new_state, now)

            old_county = old_county.model_copy(
                update={"property_ids": [pid for pid in old_county.property_ids if pid != property_id]}
            )
            new_county = new_county.model_copy(update={"property_ids": [*new_county.property_ids, property_id]})
            moved = prop.model_copy(update={"parent_id": new_county.id, "state_id": new_state.id, "updated_at": now})

            self.store.save_property(moved, tx)
            self.store.save_county(old_county, tx)
            self.store.save_county(new_county, tx)
            if new_state.id != old_state.id:
                self.store.save_state(old_state, tx)
            self.store.save_state(new_state, tx)
            return moved

        moved = self.store.run_in_transaction(work, self.retries)
        if moved is None:
            logger.debug("Move skipped, property {} not found", property_id)
        else:
            logger.info("Moved property {} to county {}", property_id, new_county_id)
        return moved

    def update_property(self, property_id: str, patch: dict[str, Any]) -> Optional[Property]:
        """
        Patch a property's fields. tax_status patches are merged into the existing record.

        If the patch changes the property's contribution (assessed value or lien status),
        the difference is applied to county and state in the same transaction.
        Returns None if the property does not exist.

        Raises:
            InvalidArgumentError: the patch tries to change parent_id (use move_property)
                or another immutable field, or the merged record is invalid.
        """

        def work(tx: Transaction) -> Optional[Property]:
            now = self.clock()
            current = self.store.get_property(property_id, tx)
            if current is None:
                return None

            for field in _IMMUTABLE_FIELDS:
                if field in patch and patch[field] != getattr(current, field):
                    if field == "parent_id":
                        raise InvalidArgumentError("parent_id cannot be changed by update; use move_property")
                    raise InvalidArgumentError(f"{field} cannot be changed by update")

            merged = current.model_dump()
            for key, value in patch.items():
                if key == "tax_status" and isinstance(value, dict):
                    merged["tax_status"] = {**merged["tax_status"], **value, "last_updated": now}
                else:
                    merged[key] = value
            merged["updated_at"] = now
            try:
                updated = Property.model_validate(merged)
            except ValidationError as e:
                raise InvalidArgumentError(f"Invalid property patch: {e}") from e

            delta = property_contribution(updated).minus(property_contribution(current))
            if not delta.is_zero:
                county, state = self._load_chain(current.parent_id, tx)
                county, state = apply_delta_to_chain(delta, county, state, now)
                self.store.save_county(county, tx)
                self.store.save_state(state, tx)

            self.store.save_property(updated, tx)
            return updated

        updated = self.store.run_in_transaction(work, self.retries)
        if updated is not None:
            logger.info("Updated property {}", property_id)
        return updated
