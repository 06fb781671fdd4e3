"""Typed models and validation helpers for StuffTracker.

This module defines the persisted shapes for Location and Item, the
materialized breadcrumb path carried by every location, lightweight input
shapes for item create/update, and the read models returned by the services.
It also provides the validation and normalization helpers that enforce field
constraints.

The intent is to keep these models framework-agnostic and free of I/O. Higher
layers (services, WebSocket API, storage) compose these helpers.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from typing import Final, TypedDict

from .const import DESCRIPTION_MAX_LENGTH, NAME_MAX_LENGTH
from .exceptions import ValidationError

# Opaque owner key; a Home Assistant user id in practice.
OwnerId = str


@dataclass(frozen=True)
class LocationPath:
    """Materialized breadcrumb path of a location, root first and self last.

    Attributes:
        ids: Location ids from the root down to (and including) the location.
        names: Location names matching ``ids`` one to one.
    """

    ids: tuple[uuid.UUID, ...] = ()
    names: tuple[str, ...] = ()

    @property
    def depth(self) -> int:
        """Zero-based depth; -1 for the empty path of a virtual root."""

        return len(self.ids) - 1

    @property
    def display_path(self) -> str:
        return " / ".join(self.names)

    def __len__(self) -> int:
        return len(self.ids)


EMPTY_LOCATION_PATH = LocationPath()


@dataclass(frozen=True)
class Location:
    """Persisted shape for a storage location node."""

    id: uuid.UUID
    owner_id: OwnerId
    parent_id: uuid.UUID | None
    name: str
    path: LocationPath = EMPTY_LOCATION_PATH
    created_at: str = field(default_factory=lambda: iso_utc_now())
    updated_at: str = field(default_factory=lambda: iso_utc_now())

    @property
    def path_ids(self) -> tuple[uuid.UUID, ...]:
        return self.path.ids

    @property
    def path_names(self) -> tuple[str, ...]:
        return self.path.names

    @property
    def depth(self) -> int:
        return self.path.depth


@dataclass(frozen=True)
class Item:
    """Persisted shape for an inventory item; always attached to a location."""

    id: uuid.UUID
    owner_id: OwnerId
    location_id: uuid.UUID
    name: str
    description: str | None = None
    quantity: int = 1
    created_at: str = field(default_factory=lambda: iso_utc_now())
    updated_at: str = field(default_factory=lambda: iso_utc_now())


class ItemCreate(TypedDict, total=False):
    """Creation input for Item. 'name' and 'location_id' are required."""

    name: str
    location_id: str | uuid.UUID
    description: str | None
    quantity: int


class ItemUpdate(TypedDict, total=False):
    """Patch input for Item.

    An absent key leaves the field unchanged. ``None`` is ignored for the
    required fields ``name`` and ``quantity`` and clears ``description``.
    """

    name: str | None
    description: str | None
    quantity: int | None


# -----------------------------
# Read models
# -----------------------------


@dataclass(frozen=True)
class LocationSummary:
    """Compact location listing entry with direct content counts."""

    id: uuid.UUID
    name: str
    child_count: int
    item_count: int


@dataclass(frozen=True)
class LocationContentsCount:
    """Impact of deleting a location.

    ``total_descendant_items`` includes the items stored directly at the
    location as well as those at every descendant location.
    """

    child_count: int
    item_count: int
    total_descendant_items: int

    @property
    def is_empty(self) -> bool:
        return self.child_count == 0 and self.item_count == 0


@dataclass(frozen=True)
class LocationDetail:
    location: Location
    children: list[LocationSummary]
    items: list[Item]


@dataclass
class LocationTreeNode:
    """Display tree node for locations."""

    id: uuid.UUID
    name: str
    depth: int
    children: list[LocationTreeNode] = field(default_factory=list)


@dataclass(frozen=True)
class ItemDetail:
    item: Item
    location_name: str
    location_path: tuple[str, ...]


@dataclass(frozen=True)
class SearchHit:
    """An item matched by search, with the breadcrumbs of its location."""

    item: Item
    location_path: tuple[str, ...]


@dataclass(frozen=True)
class SearchPage:
    items: list[SearchHit]
    total: int
    has_more: bool


@dataclass(frozen=True)
class DeleteResult:
    """Outcome of a committed location delete."""

    location_ids: frozenset[uuid.UUID]
    item_count: int


# -----------------------------
# Utility helpers
# -----------------------------


def parse_uuid4(value: str | uuid.UUID, *, field_name: str = "id") -> uuid.UUID:
    """Parse a UUID value and ensure it is version 4.

    Accepts an existing uuid.UUID and returns it unchanged.
    Raises ValidationError when parsing fails or version is not 4.
    """

    UUID_VERSION_V4: Final[int] = 4
    if isinstance(value, uuid.UUID):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = uuid.UUID(value)
        except ValueError as exc:
            raise ValidationError(f"{field_name} must be a UUID v4 string") from exc
    else:
        raise ValidationError(f"{field_name} must be a UUID v4 string")
    if parsed.version != UUID_VERSION_V4:
        raise ValidationError(f"{field_name} must be a UUID v4")
    return parsed


def coerce_uuid(value: object) -> uuid.UUID | None:
    """Return ``value`` as a UUID, or None when it cannot reference anything.

    Lookups use this instead of ``parse_uuid4`` so that malformed ids behave
    exactly like unknown ids.
    """

    if isinstance(value, uuid.UUID):
        return value
    if isinstance(value, str):
        try:
            return uuid.UUID(value)
        except ValueError:
            return None
    return None


def iso_utc_now() -> str:
    """Return ISO-8601 UTC timestamp string with 'Z'."""

    now = datetime.now(tz=UTC)
    # No microseconds to keep it compact and stable
    return now.replace(microsecond=0).isoformat().replace("+00:00", "Z")


def new_uuid4() -> uuid.UUID:
    """Generate a UUID v4 object."""

    return uuid.uuid4()


def monotonic_timestamp_after(previous_ts: str) -> str:
    """Return a UTC ISO-8601 'Z' timestamp strictly after previous_ts.

    If iso_utc_now() is not greater than the previous timestamp (due to second
    resolution), bump by one second to maintain monotonicity.
    """

    now_dt = datetime.now(tz=UTC).replace(microsecond=0)
    try:
        prev_dt = parse_iso8601_utc(previous_ts, field_name="previous_ts")
    except ValidationError:
        # If previous_ts is malformed, fall back to current time
        prev_dt = now_dt - timedelta(seconds=1)
    if now_dt <= prev_dt:
        now_dt = prev_dt + timedelta(seconds=1)
    return now_dt.isoformat().replace("+00:00", "Z")


def parse_iso8601_utc(ts: str, *, field_name: str) -> datetime:
    """Parse a UTC ISO-8601 with trailing 'Z' into datetime.

    Raises ValidationError on bad format.
    """

    try:
        if not isinstance(ts, str) or not ts.endswith("Z"):
            raise ValueError
        return datetime.strptime(ts, "%Y-%m-%dT%H:%M:%SZ").replace(tzinfo=UTC)
    except ValueError as exc:
        raise ValidationError(f"{field_name} must be an ISO-8601 UTC timestamp with 'Z'") from exc


def validate_name(name: object, *, field_name: str = "name") -> str:
    """Validate a location or item name and return the trimmed value."""

    if not isinstance(name, str):
        raise ValidationError(f"{field_name} is required and must be a non-empty string")
    trimmed = name.strip()
    if len(trimmed) == 0:
        raise ValidationError(f"{field_name} is required and must be a non-empty string")
    if len(trimmed) > NAME_MAX_LENGTH:
        raise ValidationError(f"{field_name} must be at most {NAME_MAX_LENGTH} characters")
    return trimmed


def validate_description(description: object) -> str | None:
    if description is None:
        return None
    if not isinstance(description, str):
        raise ValidationError("description must be a string or null")
    if len(description) > DESCRIPTION_MAX_LENGTH:
        raise ValidationError(
            f"description must be at most {DESCRIPTION_MAX_LENGTH} characters"
        )
    return description


def validate_quantity(quantity: object) -> int:
    # bool is an int subclass; reject it explicitly
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
        raise ValidationError("quantity must be an integer >= 1")
    return quantity


# -----------------------------
# Creation and update helpers
# -----------------------------


def create_location(
    *, owner_id: OwnerId, name: str, parent_id: uuid.UUID | None, location_id: uuid.UUID
) -> Location:
    """Create a Location with timestamps set and an empty path.

    The caller materializes ``path`` through the tree engine.
    """

    created_ts = iso_utc_now()
    return Location(
        id=location_id,
        owner_id=owner_id,
        parent_id=parent_id,
        name=validate_name(name),
        path=EMPTY_LOCATION_PATH,
        created_at=created_ts,
        updated_at=created_ts,
    )


def touch_location(location: Location, **changes: object) -> Location:
    """Return a copy of ``location`` with ``changes`` applied and updated_at bumped."""

    return replace(
        location, **changes, updated_at=monotonic_timestamp_after(location.updated_at)
    )


def create_item_from_create(
    payload: ItemCreate, *, owner_id: OwnerId, location_id: uuid.UUID
) -> Item:
    """Create a validated Item from an ItemCreate payload.

    Args:
        payload: Input fields from the client.
        owner_id: Owner of the new item.
        location_id: Already resolved and ownership-checked location id.

    Returns:
        A fully-populated Item instance with defaults applied.
    """

    name = validate_name(payload.get("name"))
    description = validate_description(payload.get("description"))
    quantity = payload.get("quantity")
    quantity = 1 if quantity is None else validate_quantity(quantity)

    created_ts = iso_utc_now()
    return Item(
        id=new_uuid4(),
        owner_id=owner_id,
        location_id=location_id,
        name=name,
        description=description,
        quantity=quantity,
        created_at=created_ts,
        updated_at=created_ts,
    )


def apply_item_update(item: Item, update: ItemUpdate) -> Item:
    """Apply a patch to an Item and return a new updated instance."""

    changes: dict[str, object] = {}
    if update.get("name") is not None:
        changes["name"] = validate_name(update["name"])
    if "description" in update:
        changes["description"] = validate_description(update["description"])
    if update.get("quantity") is not None:
        changes["quantity"] = validate_quantity(update["quantity"])

    # Ensure updated_at is strictly monotonic to avoid equality within same second
    return replace(item, **changes, updated_at=monotonic_timestamp_after(item.updated_at))


def move_item_to(item: Item, location_id: uuid.UUID) -> Item:
    return replace(
        item, location_id=location_id, updated_at=monotonic_timestamp_after(item.updated_at)
    )
