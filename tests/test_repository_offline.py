"""Offline tests for the in-memory Repository.

Verify owner scoping, cascading removal, content counts, ordering, snapshot
transactions and export/import of persisted state.
"""

from __future__ import annotations

import uuid

import pytest
from custom_components.stufftracker.exceptions import NotFoundError
from custom_components.stufftracker.items import ItemService
from custom_components.stufftracker.locations import LocationService
from custom_components.stufftracker.repository import (
    Repository,
    trigram_similarity,
    trigrams,
)
from custom_components.stufftracker.tree import find_invariant_violations

OWNER = "owner-a"
OTHER_OWNER = "owner-b"


def test_get_location_scopes_by_owner_and_tolerates_bad_ids(
    repo: Repository, location_service: LocationService
) -> None:
    garage = location_service.create(OWNER, "Garage")

    assert repo.get_location(OWNER, garage.id) == garage
    assert repo.get_location(OWNER, str(garage.id)) == garage
    for owner, lookup in ((OTHER_OWNER, garage.id), (OWNER, "nope"), (OWNER, uuid.uuid4())):
        with pytest.raises(NotFoundError):
            repo.get_location(owner, lookup)


def test_roots_are_bucketed_per_owner(repo: Repository, location_service: LocationService) -> None:
    location_service.create(OWNER, "Garage")
    location_service.create(OTHER_OWNER, "Basement")

    assert [loc.name for loc in repo.get_children(OWNER, None)] == ["Garage"]
    assert [loc.name for loc in repo.get_children(OTHER_OWNER, None)] == ["Basement"]
    assert [s.name for s in repo.get_top_level(OTHER_OWNER)] == ["Basement"]


def test_counts_and_summaries(
    repo: Repository, location_service: LocationService, item_service: ItemService
) -> None:
    house = location_service.create(OWNER, "House")
    kitchen = location_service.create(OWNER, "Kitchen", house.id)
    drawer = location_service.create(OWNER, "Drawer", kitchen.id)
    item_service.create(OWNER, "Radio", house.id)
    item_service.create(OWNER, "Spoon", drawer.id)
    item_service.create(OWNER, "Fork", drawer.id)

    counts = repo.count_children_and_items(OWNER, house.id)
    assert (counts.child_count, counts.item_count, counts.total_descendant_items) == (1, 1, 3)

    summaries = repo.get_child_summaries(OWNER, kitchen.id)
    assert [(s.name, s.child_count, s.item_count) for s in summaries] == [("Drawer", 0, 2)]
    assert [i.name for i in repo.get_items_at(OWNER, drawer.id)] == ["Fork", "Spoon"]


def test_full_tree_is_ordered_by_depth_then_name(
    repo: Repository, location_service: LocationService
) -> None:
    b = location_service.create(OWNER, "b")
    location_service.create(OWNER, "A")
    location_service.create(OWNER, "child", b.id)
    location_service.create(OTHER_OWNER, "foreign")

    assert [loc.name for loc in repo.get_full_tree(OWNER)] == ["A", "b", "child"]


def test_delete_locations_removes_items_and_child_buckets(
    repo: Repository, location_service: LocationService, item_service: ItemService
) -> None:
    shed = location_service.create(OWNER, "Shed")
    rack = location_service.create(OWNER, "Rack", shed.id)
    item_service.create(OWNER, "Rake", rack.id)
    item_service.create(OWNER, "Hoe", shed.id)

    removed = repo.delete_locations(OWNER, [shed.id, rack.id])

    assert removed == 2  # noqa: PLR2004
    assert repo.get_counts() == {"owners_total": 0, "locations_total": 0, "items_total": 0}
    assert repo.get_children(OWNER, None) == []


def test_add_location_requires_same_owner_parent(
    repo: Repository, location_service: LocationService
) -> None:
    foreign = location_service.create(OTHER_OWNER, "Foreign")

    with pytest.raises(NotFoundError):
        location_service.create(OWNER, "Sneaky", foreign.id)
    assert repo.get_counts()["locations_total"] == 1


def test_transaction_restores_state_on_error(
    repo: Repository, location_service: LocationService, item_service: ItemService
) -> None:
    garage = location_service.create(OWNER, "Garage")
    item_service.create(OWNER, "Drill", garage.id)
    before = repo.export_state()
    generation = repo.generation

    with pytest.raises(RuntimeError), repo.transaction():
        location_service.create(OWNER, "Attic")
        repo.delete_locations(OWNER, [garage.id])
        raise RuntimeError("boom")

    assert repo.export_state() == before
    assert repo.generation == generation
    assert [loc.name for loc in repo.get_children(OWNER, None)] == ["Garage"]


def test_export_and_reload_preserves_tree(
    repo: Repository, location_service: LocationService, item_service: ItemService
) -> None:
    house = location_service.create(OWNER, "House")
    room = location_service.create(OWNER, "Room", house.id)
    item = item_service.create(OWNER, "Lamp", room.id, description="Desk lamp", quantity=2)

    clone = Repository.from_state(repo.export_state())

    assert clone.get_location(OWNER, room.id) == room
    assert clone.get_item(OWNER, item.id) == item
    assert clone.get_descendant_ids(OWNER, house.id) == {room.id}
    assert clone.export_state() == repo.export_state()


def test_load_state_skips_malformed_rows(caplog) -> None:
    good_id = str(uuid.uuid4())
    orphan_item_id = str(uuid.uuid4())
    payload = {
        "locations": {
            good_id: {
                "id": good_id,
                "owner_id": OWNER,
                "parent_id": None,
                "name": "Garage",
                "path_ids": [good_id],
                "path_names": ["Garage"],
                "created_at": "2024-01-01T00:00:00Z",
                "updated_at": "2024-01-01T00:00:00Z",
            },
            "broken": {"id": "not-a-uuid", "owner_id": OWNER},
        },
        "items": {
            orphan_item_id: {
                "id": orphan_item_id,
                "owner_id": OWNER,
                "location_id": str(uuid.uuid4()),
                "name": "Ghost",
            },
        },
    }

    repo = Repository.from_state(payload)

    assert repo.get_counts() == {"owners_total": 1, "locations_total": 1, "items_total": 0}
    assert any("Failed to load location" in r.message for r in caplog.records)
    assert any("Failed to load item" in r.message for r in caplog.records)


def test_search_ranks_substring_before_fuzzy_and_orders_by_name(
    repo: Repository, location_service: LocationService, item_service: ItemService
) -> None:
    box = location_service.create(OWNER, "Box")
    for name in ("Sledge Hammer", "hamer", "Claw hammer", "Battery", "hammock"):
        item_service.create(OWNER, name, box.id)
    item_service.create(OTHER_OWNER, "Hammer", location_service.create(OTHER_OWNER, "X").id)

    items, total = repo.search_by_name(OWNER, "HAMMER", None, 10, 0)

    # Substring hits first, then approximate ones by similarity
    assert [i.name for i in items] == ["Claw hammer", "Sledge Hammer", "hamer", "hammock"]
    assert total == 4  # noqa: PLR2004

    everything, total_all = repo.search_by_name(OWNER, "  ", None, 2, 1)
    assert [i.name for i in everything] == ["Claw hammer", "Sledge Hammer"]
    assert total_all == 5  # noqa: PLR2004


def test_trigram_similarity_uses_padded_words() -> None:
    assert "  h" in trigrams("Hammer")
    assert "er " in trigrams("Hammer")
    assert trigram_similarity(trigrams("hamer"), trigrams("hammer")) == pytest.approx(5 / 8)
    assert trigram_similarity(set(), trigrams("x")) == 0.0


def _stored_location(
    loc_id: str, owner_id: str, name: str, parent_id: str | None, path_ids: list[str]
) -> dict:
    return {
        "id": loc_id,
        "owner_id": owner_id,
        "parent_id": parent_id,
        "name": name,
        "path_ids": path_ids,
        "path_names": [name] * len(path_ids),
        "created_at": "2024-01-01T00:00:00Z",
        "updated_at": "2024-01-01T00:00:00Z",
    }


def test_load_state_detaches_foreign_and_missing_parents(caplog) -> None:
    """Stored rows never link one owner's location under another owner's."""

    attic, secret, secret_box, lost, lost_child = (str(uuid.uuid4()) for _ in range(5))
    missing = str(uuid.uuid4())
    payload = {
        "locations": {
            attic: _stored_location(attic, OWNER, "Attic", None, [attic]),
            secret: _stored_location(secret, OTHER_OWNER, "Secret", attic, [attic, secret]),
            secret_box: _stored_location(
                secret_box, OTHER_OWNER, "Box", secret, [attic, secret, secret_box]
            ),
            lost: _stored_location(lost, OWNER, "Lost", missing, [missing, lost]),
            lost_child: _stored_location(
                lost_child, OWNER, "Shelf", lost, [missing, lost, lost_child]
            ),
        },
        "items": {},
    }

    repo = Repository.from_state(payload)
    service = LocationService(repo, repo)

    # The other owner's rows are not reachable from the owner's location
    assert repo.get_children(OWNER, uuid.UUID(attic)) == []
    assert repo.get_descendant_ids(OWNER, uuid.UUID(attic)) == set()
    assert repo.count_children_and_items(OWNER, uuid.UUID(attic)).is_empty

    # The other owner's subtree is now a root with rebuilt paths
    secret_loc = repo.get_location(OTHER_OWNER, secret)
    assert secret_loc.parent_id is None
    assert secret_loc.depth == 0
    box_loc = repo.get_location(OTHER_OWNER, secret_box)
    assert [str(x) for x in box_loc.path_ids] == [secret, secret_box]
    assert box_loc.path_names == ("Secret", "Box")

    # A missing parent also turns into a root that both views agree on
    assert [loc.name for loc in repo.get_children(OWNER, None)] == ["Attic", "Lost"]
    assert [n.name for n in service.get_tree(OWNER)] == ["Attic", "Lost"]
    assert [str(x) for x in repo.get_location(OWNER, lost_child).path_ids] == [lost, lost_child]
    for owner in (OWNER, OTHER_OWNER):
        assert find_invariant_violations(repo.get_full_tree(owner)) == []

    result = service.delete(OWNER, attic, force=True)
    assert result.location_ids == frozenset({uuid.UUID(attic)})
    assert repo.get_location(OTHER_OWNER, secret) == secret_loc
    assert any("Detached location" in r.message for r in caplog.records)


def test_load_state_replaces_previous_content(
    repo: Repository, location_service: LocationService
) -> None:
    location_service.create(OWNER, "Old")
    generation = repo.generation

    kept = str(uuid.uuid4())
    repo.load_state({"locations": {kept: _stored_location(kept, OWNER, "New", None, [kept])}})

    assert [loc.name for loc in repo.get_children(OWNER, None)] == ["New"]
    assert repo.get_counts()["locations_total"] == 1
    assert generation > 0
    assert repo.generation == 0
