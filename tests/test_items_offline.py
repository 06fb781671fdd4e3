"""Offline tests for the ItemService."""

from __future__ import annotations

import uuid

import pytest
from custom_components.stufftracker.exceptions import NotFoundError, ValidationError
from custom_components.stufftracker.items import ItemService
from custom_components.stufftracker.locations import LocationService
from custom_components.stufftracker.repository import Repository

OWNER = "owner-a"
OTHER_OWNER = "owner-b"


@pytest.mark.asyncio
async def test_create_and_get_detail_with_breadcrumbs(
    location_service: LocationService, item_service: ItemService
) -> None:
    garage = location_service.create(OWNER, "Garage")
    shelf = location_service.create(OWNER, "Shelf", garage.id)

    item = item_service.create(OWNER, "  Drill ", str(shelf.id), description="Cordless")

    assert item.name == "Drill"
    assert item.quantity == 1
    detail = item_service.get_detail(OWNER, item.id)
    assert detail.item == item
    assert detail.location_name == "Shelf"
    assert detail.location_path == ("Garage", "Shelf")


@pytest.mark.asyncio
async def test_breadcrumbs_follow_location_rename(
    location_service: LocationService, item_service: ItemService
) -> None:
    garage = location_service.create(OWNER, "Garage")
    shelf = location_service.create(OWNER, "Shelf", garage.id)
    item = item_service.create(OWNER, "Drill", shelf.id)

    location_service.rename(OWNER, garage.id, "Workshop")

    assert item_service.get_detail(OWNER, item.id).location_path == ("Workshop", "Shelf")


@pytest.mark.asyncio
async def test_create_requires_owned_location(
    repo: Repository, location_service: LocationService, item_service: ItemService
) -> None:
    foreign = location_service.create(OTHER_OWNER, "Foreign")

    with pytest.raises(NotFoundError):
        item_service.create(OWNER, "Drill", foreign.id)
    with pytest.raises(NotFoundError):
        item_service.create(OWNER, "Drill", uuid.uuid4())
    with pytest.raises(ValidationError):
        item_service.create(OTHER_OWNER, "Drill", foreign.id, quantity=0)
    assert repo.get_counts()["items_total"] == 0


@pytest.mark.asyncio
async def test_update_applies_patch_semantics(
    location_service: LocationService, item_service: ItemService
) -> None:
    box = location_service.create(OWNER, "Box")
    item = item_service.create(OWNER, "Cable", box.id, description="USB-C", quantity=3)

    renamed = item_service.update(OWNER, item.id, {"name": "USB Cable", "quantity": None})
    assert renamed.name == "USB Cable"
    assert renamed.quantity == 3  # noqa: PLR2004
    assert renamed.description == "USB-C"

    cleared = item_service.update(OWNER, item.id, {"description": None})
    assert cleared.description is None
    assert item_service.get(OWNER, item.id) == cleared


@pytest.mark.asyncio
async def test_move_between_locations(
    repo: Repository, location_service: LocationService, item_service: ItemService
) -> None:
    a = location_service.create(OWNER, "A")
    b = location_service.create(OWNER, "B")
    item = item_service.create(OWNER, "Tape", a.id)

    moved = item_service.move(OWNER, item.id, b.id)

    assert moved.location_id == b.id
    assert repo.get_items_at(OWNER, a.id) == []
    assert repo.get_items_at(OWNER, b.id) == [moved]

    generation = repo.generation
    assert item_service.move(OWNER, item.id, b.id) == moved
    assert repo.generation == generation

    with pytest.raises(NotFoundError):
        item_service.move(OWNER, item.id, uuid.uuid4())


@pytest.mark.asyncio
async def test_delete_and_ownership_isolation(
    location_service: LocationService, item_service: ItemService
) -> None:
    box = location_service.create(OWNER, "Box")
    item = item_service.create(OWNER, "Tape", box.id)

    with pytest.raises(NotFoundError):
        item_service.get(OTHER_OWNER, item.id)
    with pytest.raises(NotFoundError):
        item_service.update(OTHER_OWNER, item.id, {"name": "Mine"})
    with pytest.raises(NotFoundError):
        item_service.delete(OTHER_OWNER, item.id)

    item_service.delete(OWNER, item.id)
    with pytest.raises(NotFoundError):
        item_service.get(OWNER, item.id)
