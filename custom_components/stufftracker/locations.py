"""Location service: the tree-mutating operations of StuffTracker.

Every operation takes an explicit ``owner_id``; a location owned by someone
else is reported exactly like a missing one. Structural writes (create, rename,
move, delete) keep the materialized paths consistent by recomputing them in the
same repository transaction as the write itself.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import replace

from .const import DOMAIN
from .exceptions import InvalidOperationError, LocationNotEmptyError
from .models import (
    DeleteResult,
    Location,
    LocationContentsCount,
    LocationDetail,
    LocationPath,
    LocationSummary,
    LocationTreeNode,
    OwnerId,
    coerce_uuid,
    create_location,
    new_uuid4,
    touch_location,
    validate_name,
)
from .repository import ItemRepository, LocationRepository
from .tree import (
    ChildrenLookup,
    build_tree,
    compute_path,
    rebuild_subtree_paths,
    would_create_cycle,
)

LOGGER = logging.getLogger(__name__)


class LocationService:
    """Owner-scoped location operations on top of the repository contracts."""

    def __init__(self, locations: LocationRepository, items: ItemRepository) -> None:
        self._locations = locations
        self._items = items

    # -----------------------------
    # Reads
    # -----------------------------

    def get(self, owner_id: OwnerId, location_id: uuid.UUID | str) -> Location:
        return self._locations.get_location(owner_id, location_id)

    def get_detail(self, owner_id: OwnerId, location_id: uuid.UUID | str) -> LocationDetail:
        """Location with its direct children (with counts) and its direct items."""

        loc = self._locations.get_location(owner_id, location_id)
        return LocationDetail(
            location=loc,
            children=self._locations.get_child_summaries(owner_id, loc.id),
            items=self._items.get_items_at(owner_id, loc.id),
        )

    def list_top_level(self, owner_id: OwnerId) -> list[LocationSummary]:
        return self._locations.get_top_level(owner_id)

    def get_tree(self, owner_id: OwnerId) -> list[LocationTreeNode]:
        return build_tree(self._locations.get_full_tree(owner_id))

    def get_descendant_ids(
        self, owner_id: OwnerId, location_id: uuid.UUID | str
    ) -> set[uuid.UUID]:
        loc = self._locations.get_location(owner_id, location_id)
        return self._locations.get_descendant_ids(owner_id, loc.id)

    def count_contents(
        self, owner_id: OwnerId, location_id: uuid.UUID | str
    ) -> LocationContentsCount:
        loc = self._locations.get_location(owner_id, location_id)
        return self._locations.count_children_and_items(owner_id, loc.id)

    # -----------------------------
    # Writes
    # -----------------------------

    def create(
        self, owner_id: OwnerId, name: str, parent_id: uuid.UUID | str | None = None
    ) -> Location:
        """Create a location under ``parent_id`` (a root when None)."""

        parent = None
        if parent_id is not None:
            parent = self._locations.get_location(owner_id, parent_id)

        loc = create_location(
            owner_id=owner_id,
            name=name,
            parent_id=parent.id if parent is not None else None,
            location_id=new_uuid4(),
        )
        loc = replace(
            loc, path=compute_path(parent.path if parent is not None else None, loc.id, loc.name)
        )
        self._locations.add_location(loc)
        LOGGER.debug(
            "Location created",
            extra={
                "domain": DOMAIN,
                "op": "location_create",
                "location_id": str(loc.id),
                "depth": loc.depth,
            },
        )
        return loc

    def rename(
        self, owner_id: OwnerId, location_id: uuid.UUID | str, new_name: str
    ) -> Location:
        """Rename a location and refresh the breadcrumbs of its whole subtree."""

        loc = self._locations.get_location(owner_id, location_id)
        name = validate_name(new_name)
        if name == loc.name:
            return loc

        parent_path = None
        if loc.parent_id is not None:
            parent_path = self._locations.get_location(owner_id, loc.parent_id).path
        new_path = compute_path(parent_path, loc.id, name)

        with self._locations.transaction():
            renamed = self._apply_subtree_paths(
                owner_id, loc, new_path, touch_location(loc, name=name, path=new_path)
            )
        LOGGER.debug(
            "Location renamed",
            extra={"domain": DOMAIN, "op": "location_rename", "location_id": str(loc.id)},
        )
        return renamed

    def move(
        self,
        owner_id: OwnerId,
        location_id: uuid.UUID | str,
        new_parent_id: uuid.UUID | str | None,
    ) -> Location:
        """Re-parent a location (to the root level for None), carrying its subtree.

        Raises:
            NotFoundError: the location or the target parent does not exist.
            InvalidOperationError: the target is the location itself or one of
                its descendants.
        """

        loc = self._locations.get_location(owner_id, location_id)
        if new_parent_id is not None and coerce_uuid(new_parent_id) == loc.id:
            raise InvalidOperationError("location cannot be its own parent", reason="self-move")

        parent = None
        if new_parent_id is not None:
            parent = self._locations.get_location(owner_id, new_parent_id)
            if would_create_cycle(loc.id, parent.id, self._child_ids(owner_id)):
                raise InvalidOperationError(
                    "cannot move a location into its own subtree", reason="cycle"
                )

        new_parent = parent.id if parent is not None else None
        if new_parent == loc.parent_id:
            return loc

        new_path = compute_path(parent.path if parent is not None else None, loc.id, loc.name)
        with self._locations.transaction():
            moved = self._apply_subtree_paths(
                owner_id, loc, new_path, touch_location(loc, parent_id=new_parent, path=new_path)
            )
        LOGGER.debug(
            "Location moved",
            extra={
                "domain": DOMAIN,
                "op": "location_move",
                "location_id": str(loc.id),
                "new_parent_id": str(new_parent) if new_parent is not None else None,
            },
        )
        return moved

    def delete(
        self, owner_id: OwnerId, location_id: uuid.UUID | str, *, force: bool = False
    ) -> DeleteResult:
        """Delete a location.

        Without ``force`` only an empty location (no children, no items) may be
        deleted; otherwise LocationNotEmptyError carries the impact counts and
        nothing is written. With ``force`` the location, every descendant
        location and all their items are removed together.
        """

        loc = self._locations.get_location(owner_id, location_id)
        counts = self._locations.count_children_and_items(owner_id, loc.id)
        if not force and not counts.is_empty:
            raise LocationNotEmptyError(
                "location is not empty",
                child_count=counts.child_count,
                item_count=counts.item_count,
                total_descendant_items=counts.total_descendant_items,
            )

        doomed = {loc.id, *self._locations.get_descendant_ids(owner_id, loc.id)}
        with self._locations.transaction():
            removed_items = self._locations.delete_locations(owner_id, doomed)
        LOGGER.debug(
            "Location deleted",
            extra={
                "domain": DOMAIN,
                "op": "location_delete",
                "location_id": str(loc.id),
                "locations_count": len(doomed),
                "items_count": removed_items,
                "force": force,
            },
        )
        return DeleteResult(location_ids=frozenset(doomed), item_count=removed_items)

    # -----------------------------
    # Internal helpers
    # -----------------------------

    def _child_ids(self, owner_id: OwnerId) -> ChildrenLookup:
        def children_of(location_id: uuid.UUID) -> list[uuid.UUID]:
            return [c.id for c in self._locations.get_children(owner_id, location_id)]

        return children_of

    def _apply_subtree_paths(
        self,
        owner_id: OwnerId,
        old_root: Location,
        new_root_path: LocationPath,
        new_root: Location,
    ) -> Location:
        """Write ``new_root`` and the rebuilt paths of all its descendants."""

        descendant_ids = self._locations.get_descendant_ids(owner_id, old_root.id)
        descendants = [self._locations.get_location(owner_id, d) for d in descendant_ids]
        paths = rebuild_subtree_paths(old_root, new_root_path, descendants)

        updated = [new_root]
        for desc in descendants:
            new_path = paths[desc.id]
            if new_path != desc.path:
                updated.append(touch_location(desc, path=new_path))
        self._locations.update_locations(updated)
        return new_root
