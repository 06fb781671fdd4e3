"""Persistence contracts and the in-memory repository for StuffTracker.

``LocationRepository`` and ``ItemRepository`` describe the persistence
operations the services depend on. Every read and write is scoped by an
explicit ``owner_id``; an entity owned by someone else is reported exactly like
a missing one.

``Repository`` implements both contracts with in-memory, id-keyed indexes
(locations and items live in flat maps; the tree is expressed by parent id
buckets). It offers snapshot-based transactions so that multi-step writes are
all-or-nothing, name search with trigram similarity, and export/import of the
persisted payload.
"""

from __future__ import annotations

import logging
import re
import uuid
from abc import ABC, abstractmethod
from collections.abc import Iterable, Iterator
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass, replace
from typing import Any

from .const import DOMAIN, TRIGRAM_SIMILARITY_THRESHOLD
from .exceptions import NotFoundError
from .models import (
    Item,
    Location,
    LocationContentsCount,
    LocationPath,
    LocationSummary,
    OwnerId,
    coerce_uuid,
)
from .tree import compute_path, enumerate_descendant_ids, rebuild_subtree_paths

LOGGER = logging.getLogger(__name__)

_WORD_SPLIT_RE = re.compile(r"[^\w]+")


# -----------------------------
# Contracts
# -----------------------------


class LocationRepository(ABC):
    """Persistence operations for storage locations."""

    @abstractmethod
    def get_location(self, owner_id: OwnerId, location_id: uuid.UUID | str) -> Location:
        """Return the location or raise NotFoundError."""

    @abstractmethod
    def add_location(self, location: Location) -> None:
        """Persist a new location."""

    @abstractmethod
    def update_locations(self, locations: Iterable[Location]) -> None:
        """Replace existing locations (name, parent, path, timestamps)."""

    @abstractmethod
    def delete_locations(self, owner_id: OwnerId, location_ids: Iterable[uuid.UUID]) -> int:
        """Remove locations and every item stored at them.

        Returns the number of removed items.
        """

    @abstractmethod
    def get_children(self, owner_id: OwnerId, parent_id: uuid.UUID | None) -> list[Location]:
        """Direct children of ``parent_id`` (roots for None), ordered by name."""

    @abstractmethod
    def get_descendant_ids(self, owner_id: OwnerId, location_id: uuid.UUID) -> set[uuid.UUID]:
        """Transitive descendants of a location, excluding the location itself."""

    @abstractmethod
    def count_children_and_items(
        self, owner_id: OwnerId, location_id: uuid.UUID
    ) -> LocationContentsCount:
        """Direct child count, direct item count and items in the whole subtree."""

    @abstractmethod
    def get_child_summaries(
        self, owner_id: OwnerId, parent_id: uuid.UUID | None
    ) -> list[LocationSummary]:
        """Children of ``parent_id`` with their own direct content counts."""

    def get_top_level(self, owner_id: OwnerId) -> list[LocationSummary]:
        return self.get_child_summaries(owner_id, None)

    @abstractmethod
    def get_full_tree(self, owner_id: OwnerId) -> list[Location]:
        """Every location of an owner, ordered by depth then name."""

    @abstractmethod
    def transaction(self) -> AbstractContextManager[None]:
        """Context manager making the enclosed writes all-or-nothing."""


class ItemRepository(ABC):
    """Persistence operations for items."""

    @abstractmethod
    def get_item(self, owner_id: OwnerId, item_id: uuid.UUID | str) -> Item:
        """Return the item or raise NotFoundError."""

    @abstractmethod
    def add_item(self, item: Item) -> None: ...

    @abstractmethod
    def update_item(self, item: Item) -> None: ...

    @abstractmethod
    def delete_item(self, owner_id: OwnerId, item_id: uuid.UUID | str) -> None: ...

    @abstractmethod
    def get_items_at(self, owner_id: OwnerId, location_id: uuid.UUID) -> list[Item]:
        """Items stored directly at a location, ordered by name."""

    @abstractmethod
    def search_by_name(
        self,
        owner_id: OwnerId,
        query: str | None,
        location_ids: set[uuid.UUID] | None,
        limit: int,
        offset: int,
    ) -> tuple[list[Item], int]:
        """Items whose name matches ``query``, ranked by relevance.

        Restricted to ``location_ids`` when given. Returns the requested page
        and the total number of matches.
        """


# -----------------------------
# In-memory implementation
# -----------------------------


@dataclass(frozen=True)
class _Snapshot:
    locations_by_id: dict[str, Location]
    root_ids_by_owner: dict[str, set[str]]
    children_ids_by_parent_id: dict[str, set[str]]
    location_ids_by_owner: dict[str, set[str]]
    items_by_id: dict[str, Item]
    item_ids_by_location_id: dict[str, set[str]]
    generation: int


def _copy_buckets(buckets: dict[str, set[str]]) -> dict[str, set[str]]:
    return {k: set(v) for k, v in buckets.items()}


class Repository(LocationRepository, ItemRepository):
    """In-memory repository maintaining id-keyed indexes.

    Notes:
        - Entities are frozen dataclasses; writes always replace map entries,
          which keeps snapshots cheap (shallow map copies).
        - ``generation`` increases with every committed mutation.
    """

    # -----------------------------
    # Lifecycle
    # -----------------------------

    def __init__(self) -> None:
        self._reset()

    def _reset(self) -> None:
        # Primary stores
        self._locations_by_id: dict[str, Location] = {}
        self._items_by_id: dict[str, Item] = {}

        # Location tree indexes; roots are bucketed per owner
        self._root_ids_by_owner: dict[str, set[str]] = {}
        self._children_ids_by_parent_id: dict[str, set[str]] = {}
        self._location_ids_by_owner: dict[str, set[str]] = {}

        # Item indexes
        self._item_ids_by_location_id: dict[str, set[str]] = {}

        self.generation = 0

    # -----------------------------
    # Transactions
    # -----------------------------

    def snapshot(self) -> _Snapshot:
        return _Snapshot(
            locations_by_id=dict(self._locations_by_id),
            root_ids_by_owner=_copy_buckets(self._root_ids_by_owner),
            children_ids_by_parent_id=_copy_buckets(self._children_ids_by_parent_id),
            location_ids_by_owner=_copy_buckets(self._location_ids_by_owner),
            items_by_id=dict(self._items_by_id),
            item_ids_by_location_id=_copy_buckets(self._item_ids_by_location_id),
            generation=self.generation,
        )

    def restore(self, snapshot: _Snapshot) -> None:
        self._locations_by_id = snapshot.locations_by_id
        self._root_ids_by_owner = snapshot.root_ids_by_owner
        self._children_ids_by_parent_id = snapshot.children_ids_by_parent_id
        self._location_ids_by_owner = snapshot.location_ids_by_owner
        self._items_by_id = snapshot.items_by_id
        self._item_ids_by_location_id = snapshot.item_ids_by_location_id
        self.generation = snapshot.generation

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Run the enclosed writes atomically; any exception restores prior state."""

        snapshot = self.snapshot()
        try:
            yield
        except BaseException:
            self.restore(snapshot)
            LOGGER.debug(
                "Repository transaction rolled back",
                extra={"domain": DOMAIN, "op": "transaction_rollback"},
            )
            raise

    # -----------------------------
    # Internal helpers: indexing
    # -----------------------------

    def _add_to_bucket(self, bucket: dict[str, set[str]], key: str, value: str) -> None:
        if key not in bucket:
            bucket[key] = set()
        bucket[key].add(value)

    def _remove_from_bucket(self, bucket: dict[str, set[str]], key: str, value: str) -> None:
        s = bucket.get(key)
        if not s:
            return
        s.discard(value)
        if not s:
            bucket.pop(key, None)

    def _siblings_bucket(
        self, owner_id: OwnerId, parent_id: uuid.UUID | None
    ) -> tuple[dict[str, set[str]], str]:
        if parent_id is None:
            return self._root_ids_by_owner, owner_id
        return self._children_ids_by_parent_id, str(parent_id)

    def _index_location(self, loc: Location) -> None:
        key = str(loc.id)
        self._locations_by_id[key] = loc
        bucket, bucket_key = self._siblings_bucket(loc.owner_id, loc.parent_id)
        self._add_to_bucket(bucket, bucket_key, key)
        self._add_to_bucket(self._location_ids_by_owner, loc.owner_id, key)

    def _unindex_location(self, loc: Location) -> None:
        key = str(loc.id)
        self._locations_by_id.pop(key, None)
        bucket, bucket_key = self._siblings_bucket(loc.owner_id, loc.parent_id)
        self._remove_from_bucket(bucket, bucket_key, key)
        self._remove_from_bucket(self._location_ids_by_owner, loc.owner_id, key)

    def _index_item(self, item: Item) -> None:
        key = str(item.id)
        self._items_by_id[key] = item
        self._add_to_bucket(self._item_ids_by_location_id, str(item.location_id), key)

    def _unindex_item(self, item: Item) -> None:
        key = str(item.id)
        self._items_by_id.pop(key, None)
        self._remove_from_bucket(self._item_ids_by_location_id, str(item.location_id), key)

    def _owned_child_keys(self, owner_id: OwnerId, parent_key: str) -> list[str]:
        keys = self._children_ids_by_parent_id.get(parent_key, set())
        return [k for k in keys if self._locations_by_id[k].owner_id == owner_id]

    def _child_ids(self, location_id: uuid.UUID) -> list[uuid.UUID]:
        parent = self._locations_by_id.get(str(location_id))
        if parent is None:
            return []
        keys = self._owned_child_keys(parent.owner_id, str(location_id))
        return [self._locations_by_id[k].id for k in keys]

    def _items_at(self, location_id: uuid.UUID) -> list[Item]:
        keys = self._item_ids_by_location_id.get(str(location_id), set())
        return [self._items_by_id[k] for k in keys]

    # -----------------------------
    # LocationRepository
    # -----------------------------

    def get_location(self, owner_id: OwnerId, location_id: uuid.UUID | str) -> Location:
        parsed = coerce_uuid(location_id)
        loc = self._locations_by_id.get(str(parsed)) if parsed is not None else None
        if loc is None or loc.owner_id != owner_id:
            raise NotFoundError("location not found")
        return loc

    def add_location(self, location: Location) -> None:
        if location.parent_id is not None:
            # Parent must exist for the same owner
            self.get_location(location.owner_id, location.parent_id)
        self._index_location(location)
        self.generation += 1

    def update_locations(self, locations: Iterable[Location]) -> None:
        for loc in locations:
            old = self.get_location(loc.owner_id, loc.id)
            if loc.parent_id is not None:
                self.get_location(loc.owner_id, loc.parent_id)
            self._unindex_location(old)
            self._index_location(loc)
        self.generation += 1

    def delete_locations(self, owner_id: OwnerId, location_ids: Iterable[uuid.UUID]) -> int:
        doomed = [self.get_location(owner_id, lid) for lid in location_ids]
        removed_items = 0
        for loc in doomed:
            for item in self._items_at(loc.id):
                self._unindex_item(item)
                removed_items += 1
            self._unindex_location(loc)
        for loc in doomed:
            self._children_ids_by_parent_id.pop(str(loc.id), None)
        self.generation += 1
        LOGGER.debug(
            "Locations deleted",
            extra={
                "domain": DOMAIN,
                "op": "delete_locations",
                "locations_count": len(doomed),
                "items_count": removed_items,
            },
        )
        return removed_items

    def get_children(self, owner_id: OwnerId, parent_id: uuid.UUID | None) -> list[Location]:
        if parent_id is not None:
            self.get_location(owner_id, parent_id)
        if parent_id is None:
            keys = list(self._root_ids_by_owner.get(owner_id, set()))
        else:
            keys = self._owned_child_keys(owner_id, str(parent_id))
        children = [self._locations_by_id[k] for k in keys]
        children.sort(key=lambda loc: (loc.name, str(loc.id)))
        return children

    def get_descendant_ids(self, owner_id: OwnerId, location_id: uuid.UUID) -> set[uuid.UUID]:
        loc = self.get_location(owner_id, location_id)
        return enumerate_descendant_ids(loc.id, self._child_ids)

    def count_children_and_items(
        self, owner_id: OwnerId, location_id: uuid.UUID
    ) -> LocationContentsCount:
        loc = self.get_location(owner_id, location_id)
        key = str(loc.id)
        child_count = len(self._owned_child_keys(owner_id, key))
        item_count = len(self._item_ids_by_location_id.get(key, set()))
        total = item_count
        for descendant_id in enumerate_descendant_ids(loc.id, self._child_ids):
            total += len(self._item_ids_by_location_id.get(str(descendant_id), set()))
        return LocationContentsCount(
            child_count=child_count, item_count=item_count, total_descendant_items=total
        )

    def get_child_summaries(
        self, owner_id: OwnerId, parent_id: uuid.UUID | None
    ) -> list[LocationSummary]:
        return [
            LocationSummary(
                id=loc.id,
                name=loc.name,
                child_count=len(self._owned_child_keys(owner_id, str(loc.id))),
                item_count=len(self._item_ids_by_location_id.get(str(loc.id), set())),
            )
            for loc in self.get_children(owner_id, parent_id)
        ]

    def get_full_tree(self, owner_id: OwnerId) -> list[Location]:
        keys = self._location_ids_by_owner.get(owner_id, set())
        locations = [self._locations_by_id[k] for k in keys]
        locations.sort(key=lambda loc: (loc.depth, loc.name, str(loc.id)))
        return locations

    # -----------------------------
    # ItemRepository
    # -----------------------------

    def get_item(self, owner_id: OwnerId, item_id: uuid.UUID | str) -> Item:
        parsed = coerce_uuid(item_id)
        item = self._items_by_id.get(str(parsed)) if parsed is not None else None
        if item is None or item.owner_id != owner_id:
            raise NotFoundError("item not found")
        return item

    def add_item(self, item: Item) -> None:
        self.get_location(item.owner_id, item.location_id)
        self._index_item(item)
        self.generation += 1

    def update_item(self, item: Item) -> None:
        old = self.get_item(item.owner_id, item.id)
        self.get_location(item.owner_id, item.location_id)
        self._unindex_item(old)
        self._index_item(item)
        self.generation += 1

    def delete_item(self, owner_id: OwnerId, item_id: uuid.UUID | str) -> None:
        item = self.get_item(owner_id, item_id)
        self._unindex_item(item)
        self.generation += 1

    def get_items_at(self, owner_id: OwnerId, location_id: uuid.UUID) -> list[Item]:
        loc = self.get_location(owner_id, location_id)
        items = self._items_at(loc.id)
        items.sort(key=lambda it: (it.name, str(it.id)))
        return items

    def search_by_name(
        self,
        owner_id: OwnerId,
        query: str | None,
        location_ids: set[uuid.UUID] | None,
        limit: int,
        offset: int,
    ) -> tuple[list[Item], int]:
        if location_ids is None:
            candidates = [it for it in self._items_by_id.values() if it.owner_id == owner_id]
        else:
            candidates = [
                it
                for lid in location_ids
                for it in self._items_at(lid)
                if it.owner_id == owner_id
            ]

        needle = (query or "").strip().casefold()
        if not needle:
            ranked = sorted(candidates, key=lambda it: (it.name, str(it.id)))
        else:
            needle_grams = trigrams(needle)
            scored: list[tuple[int, float, str, str, Item]] = []
            for it in candidates:
                haystack = it.name.casefold()
                if needle in haystack:
                    scored.append((0, 0.0, it.name, str(it.id), it))
                    continue
                score = trigram_similarity(needle_grams, trigrams(haystack))
                if score >= TRIGRAM_SIMILARITY_THRESHOLD:
                    scored.append((1, -score, it.name, str(it.id), it))
            scored.sort(key=lambda row: row[:4])
            ranked = [row[4] for row in scored]

        total = len(ranked)
        return ranked[offset : offset + limit], total

    # -----------------------------
    # Counts
    # -----------------------------

    def get_counts(self) -> dict[str, int]:
        return {
            "owners_total": len(self._location_ids_by_owner),
            "locations_total": len(self._locations_by_id),
            "items_total": len(self._items_by_id),
        }

    # -----------------------------
    # Persistence: export/import
    # -----------------------------

    def export_state(self) -> dict[str, Any]:
        """Serialize the repository to a plain dict for storage.

        Shape:
            {"locations": {id -> LocationDict}, "items": {id -> ItemDict}}
        """

        locations_dict: dict[str, Any] = {}
        for loc_id in sorted(self._locations_by_id.keys()):
            locations_dict[loc_id] = serialize_location(self._locations_by_id[loc_id])

        items_dict: dict[str, Any] = {}
        for item_id in sorted(self._items_by_id.keys()):
            items_dict[item_id] = serialize_item(self._items_by_id[item_id])

        return {"locations": locations_dict, "items": items_dict}

    def load_state(self, data: dict[str, Any]) -> None:
        """Load repository content from a persisted payload.

        Replaces current maps and rebuilds all indexes deterministically.
        Records that cannot be parsed, and items whose location is unknown or
        belongs to another owner, are skipped with a warning. Locations whose
        parent is unknown or belongs to another owner become roots.
        """

        self._reset()

        if not isinstance(data, dict):
            return

        # Load locations first so items can reference them
        parsed: dict[str, Location] = {}
        locations = data.get("locations") or {}
        if isinstance(locations, dict):
            for loc_id, loc_data in locations.items():
                try:
                    loc = deserialize_location(loc_data, fallback_id=loc_id)
                except (AttributeError, TypeError, ValueError):
                    LOGGER.warning(
                        "Failed to load location from persisted state",
                        extra={
                            "domain": DOMAIN,
                            "op": "load_state_locations",
                            "location_id": str(loc_id),
                        },
                        exc_info=True,
                    )
                    continue
                parsed[str(loc.id)] = loc

        detached = self._index_loaded_locations(parsed)
        for original in detached:
            self._rebuild_loaded_subtree(original)

        items = data.get("items") or {}
        if isinstance(items, dict):
            for item_id, item_data in items.items():
                try:
                    item = deserialize_item(item_data, fallback_id=item_id)
                    self.get_location(item.owner_id, item.location_id)
                except (AttributeError, TypeError, ValueError, NotFoundError):
                    LOGGER.warning(
                        "Failed to load item from persisted state",
                        extra={
                            "domain": DOMAIN,
                            "op": "load_state_items",
                            "item_id": str(item_id),
                        },
                        exc_info=True,
                    )
                    continue
                self._index_item(item)

    def _index_loaded_locations(self, parsed: dict[str, Location]) -> list[Location]:
        """Index loaded locations, turning rows with an unusable parent into roots.

        A parent that is missing or belongs to another owner is cut. Returns
        the detached rows as they were stored.
        """

        detached: list[Location] = []
        for key, loc in parsed.items():
            if loc.parent_id is not None:
                parent = parsed.get(str(loc.parent_id))
                if parent is None or parent.owner_id != loc.owner_id:
                    LOGGER.warning(
                        "Detached location with unknown or foreign parent",
                        extra={
                            "domain": DOMAIN,
                            "op": "load_state_detach",
                            "location_id": key,
                        },
                    )
                    detached.append(loc)
                    loc = replace(
                        loc, parent_id=None, path=compute_path(None, loc.id, loc.name)
                    )
            self._index_location(loc)
        return detached

    def _rebuild_loaded_subtree(self, original: Location) -> None:
        root = self._locations_by_id[str(original.id)]
        descendant_ids = enumerate_descendant_ids(root.id, self._child_ids)
        descendants = [self._locations_by_id[str(d)] for d in descendant_ids]
        paths = rebuild_subtree_paths(original, root.path, descendants)
        for desc in descendants:
            new_path = paths.get(desc.id)
            if new_path is not None and new_path != desc.path:
                self._locations_by_id[str(desc.id)] = replace(desc, path=new_path)

    @staticmethod
    def from_state(data: dict[str, Any]) -> Repository:
        """Create a Repository instance from a persisted payload."""

        repo = Repository()
        repo.load_state(data)
        return repo


# -----------------------------
# Serialization helpers
# -----------------------------


def serialize_location(loc: Location) -> dict[str, Any]:
    return {
        "id": str(loc.id),
        "owner_id": loc.owner_id,
        "parent_id": str(loc.parent_id) if loc.parent_id is not None else None,
        "name": loc.name,
        "path_ids": [str(x) for x in loc.path_ids],
        "path_names": list(loc.path_names),
        "depth": loc.depth,
        "created_at": loc.created_at,
        "updated_at": loc.updated_at,
    }


def deserialize_location(data: dict[str, Any], *, fallback_id: str) -> Location:
    parent_raw = data.get("parent_id")
    return Location(
        id=uuid.UUID(str(data.get("id", fallback_id))),
        owner_id=str(data["owner_id"]),
        parent_id=uuid.UUID(str(parent_raw)) if parent_raw is not None else None,
        name=str(data.get("name", "")),
        path=LocationPath(
            ids=tuple(uuid.UUID(str(x)) for x in data.get("path_ids") or []),
            names=tuple(str(x) for x in data.get("path_names") or []),
        ),
        created_at=str(data.get("created_at", "")),
        updated_at=str(data.get("updated_at", "")),
    )


def serialize_item(item: Item) -> dict[str, Any]:
    return {
        "id": str(item.id),
        "owner_id": item.owner_id,
        "location_id": str(item.location_id),
        "name": item.name,
        "description": item.description,
        "quantity": int(item.quantity),
        "created_at": item.created_at,
        "updated_at": item.updated_at,
    }


def deserialize_item(data: dict[str, Any], *, fallback_id: str) -> Item:
    return Item(
        id=uuid.UUID(str(data.get("id", fallback_id))),
        owner_id=str(data["owner_id"]),
        location_id=uuid.UUID(str(data["location_id"])),
        name=str(data.get("name", "")),
        description=data.get("description"),
        quantity=int(data.get("quantity", 1)),
        created_at=str(data.get("created_at", "")),
        updated_at=str(data.get("updated_at", "")),
    )


# -----------------------------
# Text matching
# -----------------------------


def trigrams(text: str) -> set[str]:
    """Return the trigram set of ``text`` using pg_trgm padding rules.

    Each word is lowercased, prefixed with two spaces and suffixed with one.
    """

    grams: set[str] = set()
    for word in _WORD_SPLIT_RE.split(text.casefold()):
        if not word:
            continue
        padded = f"  {word} "
        for idx in range(len(padded) - 2):
            grams.add(padded[idx : idx + 3])
    return grams


def trigram_similarity(a: set[str], b: set[str]) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)
