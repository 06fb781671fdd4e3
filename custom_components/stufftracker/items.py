"""Item service: CRUD for the items stored at locations."""

from __future__ import annotations

import logging
import uuid

from .const import DOMAIN
from .models import (
    Item,
    ItemCreate,
    ItemDetail,
    ItemUpdate,
    OwnerId,
    apply_item_update,
    create_item_from_create,
    move_item_to,
)
from .repository import ItemRepository, LocationRepository

LOGGER = logging.getLogger(__name__)


class ItemService:
    """Owner-scoped item operations on top of the repository contracts."""

    def __init__(self, locations: LocationRepository, items: ItemRepository) -> None:
        self._locations = locations
        self._items = items

    def create(
        self,
        owner_id: OwnerId,
        name: str,
        location_id: uuid.UUID | str,
        description: str | None = None,
        quantity: int = 1,
    ) -> Item:
        loc = self._locations.get_location(owner_id, location_id)
        payload: ItemCreate = {
            "name": name,
            "location_id": loc.id,
            "description": description,
            "quantity": quantity,
        }
        item = create_item_from_create(payload, owner_id=owner_id, location_id=loc.id)
        self._items.add_item(item)
        LOGGER.debug(
            "Item created",
            extra={
                "domain": DOMAIN,
                "op": "item_create",
                "item_id": str(item.id),
                "location_id": str(loc.id),
            },
        )
        return item

    def get(self, owner_id: OwnerId, item_id: uuid.UUID | str) -> Item:
        return self._items.get_item(owner_id, item_id)

    def get_detail(self, owner_id: OwnerId, item_id: uuid.UUID | str) -> ItemDetail:
        """Item together with the name and breadcrumbs of its location."""

        item = self._items.get_item(owner_id, item_id)
        loc = self._locations.get_location(owner_id, item.location_id)
        return ItemDetail(item=item, location_name=loc.name, location_path=loc.path_names)

    def update(self, owner_id: OwnerId, item_id: uuid.UUID | str, patch: ItemUpdate) -> Item:
        """Apply a partial update.

        Keys absent from ``patch`` are left unchanged. An explicit None is
        ignored for ``name`` and ``quantity`` and clears ``description``.
        """

        item = self._items.get_item(owner_id, item_id)
        updated = apply_item_update(item, patch)
        self._items.update_item(updated)
        LOGGER.debug(
            "Item updated",
            extra={
                "domain": DOMAIN,
                "op": "item_update",
                "item_id": str(item.id),
                "fields": sorted(patch.keys()),
            },
        )
        return updated

    def move(
        self, owner_id: OwnerId, item_id: uuid.UUID | str, location_id: uuid.UUID | str
    ) -> Item:
        item = self._items.get_item(owner_id, item_id)
        loc = self._locations.get_location(owner_id, location_id)
        if loc.id == item.location_id:
            return item
        moved = move_item_to(item, loc.id)
        self._items.update_item(moved)
        LOGGER.debug(
            "Item moved",
            extra={
                "domain": DOMAIN,
                "op": "item_move",
                "item_id": str(item.id),
                "location_id": str(loc.id),
            },
        )
        return moved

    def delete(self, owner_id: OwnerId, item_id: uuid.UUID | str) -> None:
        item = self._items.get_item(owner_id, item_id)
        self._items.delete_item(owner_id, item.id)
        LOGGER.debug(
            "Item deleted",
            extra={"domain": DOMAIN, "op": "item_delete", "item_id": str(item.id)},
        )
