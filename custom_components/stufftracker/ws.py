"""WebSocket command handlers for StuffTracker.

Implements the location tree, item and search commands.
Adheres to the envelope: input {id, type, ...payload}, output result_message/error_message.

The authenticated Home Assistant user of the connection is the owner of every
location and item a command reads or writes.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

import voluptuous as vol
from homeassistant.components import websocket_api
from homeassistant.core import HomeAssistant

from .const import DOMAIN, INTEGRATION_VERSION, SEARCH_DEFAULT_LIMIT
from .exceptions import (
    ConflictError,
    InvalidOperationError,
    NotFoundError,
    StorageError,
    StuffTrackerError,
    ValidationError,
)
from .items import ItemService
from .locations import LocationService
from .models import (
    Item,
    ItemUpdate,
    Location,
    LocationSummary,
    LocationTreeNode,
    OwnerId,
)
from .repository import Repository
from .search import SearchService
from .storage import CURRENT_SCHEMA_VERSION, async_write_transaction
from .tree import find_invariant_violations

LOGGER = logging.getLogger(__name__)


def _repo(hass: HomeAssistant) -> Repository:
    bucket = hass.data.get(DOMAIN) or {}
    repo = bucket.get("repository")
    if repo is None:
        raise StorageError("repository not initialized; run integration setup")
    return repo


def _owner(conn) -> OwnerId:
    return str(conn.user.id)


def _error_code(exc: Exception) -> str:
    if isinstance(exc, ValidationError):
        return "validation_error"
    if isinstance(exc, NotFoundError):
        return "not_found"
    if isinstance(exc, InvalidOperationError):
        return "invalid_operation"
    if isinstance(exc, ConflictError):
        return "conflict"
    if isinstance(exc, StorageError):
        return "storage_error"
    return "unknown_error"


def _ctx(op: str, **extra: Any) -> dict[str, Any]:
    """Build a structured logging context for WS operations.

    Ensures the `op` field is always present and merges any additional fields.
    """
    base: dict[str, Any] = {"op": op}
    if extra:
        base.update(extra)
    return base


def _error_message(_id: int, exc: StuffTrackerError, *, context: dict[str, Any]) -> dict[str, Any]:
    level = logging.WARNING
    if isinstance(exc, ConflictError | StorageError):
        level = logging.ERROR
    LOGGER.log(level, str(exc), extra={"domain": DOMAIN, **context}, exc_info=True)
    message = websocket_api.error_message(_id, _error_code(exc), str(exc))
    if isinstance(exc, ConflictError):
        message["error"]["data"] = exc.as_data()
    elif isinstance(exc, InvalidOperationError):
        message["error"]["data"] = {"reason": exc.reason}
    return message


# -----------------------------
# Unified exception handling for WS handlers
# -----------------------------

_WSHandler = Callable[[HomeAssistant, Any, dict], Awaitable[Any]]


def _context_from_msg(op: str, msg: dict, fields: tuple[str, ...]) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for field in fields:
        if field not in msg:
            continue
        value = msg.get(field)
        key = field
        # Avoid reserved LogRecord key 'name' by using domain-specific names
        if field == "name":
            key = "item_name" if op.startswith("item_") else "location_name"
        payload[key] = value
    return _ctx(op, **payload)


def ws_guard(op: str, context_fields: tuple[str, ...] = ()) -> Callable[[_WSHandler], _WSHandler]:
    """Decorator to map domain exceptions to unified WS errors.

    Builds a structured context from selected fields in the incoming message and
    sends a Home Assistant websocket error envelope with {code, message, data}.
    """

    def decorator(func: _WSHandler) -> _WSHandler:
        async def wrapper(hass: HomeAssistant, conn, msg):
            try:
                return await func(hass, conn, msg)
            except StuffTrackerError as exc:
                ctx = _context_from_msg(op, msg, context_fields)
                conn.send_message(_error_message(msg.get("id", 0), exc, context=ctx))
                return None

        return wrapper

    return decorator


# -----------------------------
# Utility commands
# -----------------------------


def _schema_version_from_hass(hass: HomeAssistant) -> int:
    bucket = hass.data.get(DOMAIN) or {}
    ver = getattr(bucket.get("store"), "schema_version", None)
    return ver if isinstance(ver, int) else int(CURRENT_SCHEMA_VERSION)


@websocket_api.websocket_command({vol.Required("type"): "stufftracker/version"})
@websocket_api.async_response
async def ws_version(hass: HomeAssistant, conn, msg):
    result = {
        "integration_version": INTEGRATION_VERSION,
        "schema_version": _schema_version_from_hass(hass),
    }
    conn.send_message(websocket_api.result_message(msg.get("id", 0), result))


@websocket_api.websocket_command({vol.Required("type"): "stufftracker/health"})
@websocket_api.async_response
@ws_guard("health")
async def ws_health(hass: HomeAssistant, conn, msg):
    locations = _repo(hass).get_full_tree(_owner(conn))
    issues = find_invariant_violations(locations)
    result = {
        "healthy": len(issues) == 0,
        "issues": issues,
        "counts": {"locations_total": len(locations)},
    }
    conn.send_message(websocket_api.result_message(msg.get("id", 0), result))


# -----------------------------
# Locations
# -----------------------------


@websocket_api.websocket_command(
    {
        vol.Required("type"): "stufftracker/location/create",
        vol.Required("name"): str,
        vol.Optional("parent_id"): vol.Any(None, str),
    }
)
@websocket_api.async_response
@ws_guard("location_create", ("name", "parent_id"))
async def ws_location_create(hass: HomeAssistant, conn, msg):
    async with async_write_transaction(hass) as repo:
        loc = LocationService(repo, repo).create(
            _owner(conn), msg["name"], parent_id=msg.get("parent_id")
        )
    conn.send_message(websocket_api.result_message(msg.get("id", 0), _serialize_location(loc)))


@websocket_api.websocket_command(
    {vol.Required("type"): "stufftracker/location/get", vol.Required("location_id"): str}
)
@websocket_api.async_response
@ws_guard("location_get", ("location_id",))
async def ws_location_get(hass: HomeAssistant, conn, msg):
    repo = _repo(hass)
    detail = LocationService(repo, repo).get_detail(_owner(conn), msg["location_id"])
    result = {
        **_serialize_location(detail.location),
        "children": [_serialize_summary(s) for s in detail.children],
        "items": [_serialize_item(i) for i in detail.items],
    }
    conn.send_message(websocket_api.result_message(msg.get("id", 0), result))


@websocket_api.websocket_command(
    {
        vol.Required("type"): "stufftracker/location/rename",
        vol.Required("location_id"): str,
        vol.Required("name"): str,
    }
)
@websocket_api.async_response
@ws_guard("location_rename", ("location_id", "name"))
async def ws_location_rename(hass: HomeAssistant, conn, msg):
    async with async_write_transaction(hass) as repo:
        loc = LocationService(repo, repo).rename(_owner(conn), msg["location_id"], msg["name"])
    conn.send_message(websocket_api.result_message(msg.get("id", 0), _serialize_location(loc)))


@websocket_api.websocket_command(
    {
        vol.Required("type"): "stufftracker/location/move",
        vol.Required("location_id"): str,
        vol.Required("new_parent_id"): vol.Any(None, str),
    }
)
@websocket_api.async_response
@ws_guard("location_move", ("location_id", "new_parent_id"))
async def ws_location_move(hass: HomeAssistant, conn, msg):
    async with async_write_transaction(hass) as repo:
        loc = LocationService(repo, repo).move(
            _owner(conn), msg["location_id"], msg["new_parent_id"]
        )
    conn.send_message(websocket_api.result_message(msg.get("id", 0), _serialize_location(loc)))


@websocket_api.websocket_command(
    {
        vol.Required("type"): "stufftracker/location/delete",
        vol.Required("location_id"): str,
        vol.Optional("force", default=False): bool,
    }
)
@websocket_api.async_response
@ws_guard("location_delete", ("location_id", "force"))
async def ws_location_delete(hass: HomeAssistant, conn, msg):
    async with async_write_transaction(hass) as repo:
        outcome = LocationService(repo, repo).delete(
            _owner(conn), msg["location_id"], force=msg["force"]
        )
    result = {
        "deleted_location_ids": sorted(str(x) for x in outcome.location_ids),
        "deleted_item_count": outcome.item_count,
    }
    conn.send_message(websocket_api.result_message(msg.get("id", 0), result))


@websocket_api.websocket_command({vol.Required("type"): "stufftracker/location/top_level"})
@websocket_api.async_response
@ws_guard("location_top_level")
async def ws_location_top_level(hass: HomeAssistant, conn, msg):
    repo = _repo(hass)
    summaries = LocationService(repo, repo).list_top_level(_owner(conn))
    data = [_serialize_summary(s) for s in summaries]
    conn.send_message(websocket_api.result_message(msg.get("id", 0), data))


@websocket_api.websocket_command({vol.Required("type"): "stufftracker/location/tree"})
@websocket_api.async_response
@ws_guard("location_tree")
async def ws_location_tree(hass: HomeAssistant, conn, msg):
    repo = _repo(hass)
    roots = LocationService(repo, repo).get_tree(_owner(conn))
    data = [_serialize_tree_node(node) for node in roots]
    conn.send_message(websocket_api.result_message(msg.get("id", 0), data))


@websocket_api.websocket_command(
    {vol.Required("type"): "stufftracker/location/descendants", vol.Required("location_id"): str}
)
@websocket_api.async_response
@ws_guard("location_descendants", ("location_id",))
async def ws_location_descendants(hass: HomeAssistant, conn, msg):
    repo = _repo(hass)
    ids = LocationService(repo, repo).get_descendant_ids(_owner(conn), msg["location_id"])
    conn.send_message(
        websocket_api.result_message(msg.get("id", 0), sorted(str(x) for x in ids))
    )


# -----------------------------
# Items
# -----------------------------


@websocket_api.websocket_command(
    {
        vol.Required("type"): "stufftracker/item/create",
        vol.Required("name"): str,
        vol.Required("location_id"): str,
        vol.Optional("description"): vol.Any(None, str),
        vol.Optional("quantity"): int,
    }
)
@websocket_api.async_response
@ws_guard("item_create", ("name", "location_id"))
async def ws_item_create(hass: HomeAssistant, conn, msg):
    async with async_write_transaction(hass) as repo:
        item = ItemService(repo, repo).create(
            _owner(conn),
            msg["name"],
            msg["location_id"],
            description=msg.get("description"),
            quantity=msg.get("quantity", 1),
        )
    conn.send_message(websocket_api.result_message(msg.get("id", 0), _serialize_item(item)))


@websocket_api.websocket_command(
    {vol.Required("type"): "stufftracker/item/get", vol.Required("item_id"): str}
)
@websocket_api.async_response
@ws_guard("item_get", ("item_id",))
async def ws_item_get(hass: HomeAssistant, conn, msg):
    repo = _repo(hass)
    detail = ItemService(repo, repo).get_detail(_owner(conn), msg["item_id"])
    result = {
        **_serialize_item(detail.item),
        "location_name": detail.location_name,
        "location_path": list(detail.location_path),
    }
    conn.send_message(websocket_api.result_message(msg.get("id", 0), result))


@websocket_api.websocket_command(
    {
        vol.Required("type"): "stufftracker/item/update",
        vol.Required("item_id"): str,
        vol.Optional("name"): vol.Any(None, str),
        vol.Optional("description"): vol.Any(None, str),
        vol.Optional("quantity"): vol.Any(None, int),
    }
)
@websocket_api.async_response
@ws_guard("item_update", ("item_id",))
async def ws_item_update(hass: HomeAssistant, conn, msg):
    patch: ItemUpdate = {}
    for key in ("name", "description", "quantity"):
        if key in msg:
            patch[key] = msg[key]  # type: ignore[literal-required]
    async with async_write_transaction(hass) as repo:
        item = ItemService(repo, repo).update(_owner(conn), msg["item_id"], patch)
    conn.send_message(websocket_api.result_message(msg.get("id", 0), _serialize_item(item)))


@websocket_api.websocket_command(
    {
        vol.Required("type"): "stufftracker/item/move",
        vol.Required("item_id"): str,
        vol.Required("location_id"): str,
    }
)
@websocket_api.async_response
@ws_guard("item_move", ("item_id", "location_id"))
async def ws_item_move(hass: HomeAssistant, conn, msg):
    async with async_write_transaction(hass) as repo:
        item = ItemService(repo, repo).move(_owner(conn), msg["item_id"], msg["location_id"])
    conn.send_message(websocket_api.result_message(msg.get("id", 0), _serialize_item(item)))


@websocket_api.websocket_command(
    {vol.Required("type"): "stufftracker/item/delete", vol.Required("item_id"): str}
)
@websocket_api.async_response
@ws_guard("item_delete", ("item_id",))
async def ws_item_delete(hass: HomeAssistant, conn, msg):
    async with async_write_transaction(hass) as repo:
        ItemService(repo, repo).delete(_owner(conn), msg["item_id"])
    conn.send_message(websocket_api.result_message(msg.get("id", 0), None))


# -----------------------------
# Search
# -----------------------------


@websocket_api.websocket_command(
    {
        vol.Required("type"): "stufftracker/search/items",
        vol.Optional("query"): vol.Any(None, str),
        vol.Optional("location_id"): vol.Any(None, str),
        vol.Optional("limit", default=SEARCH_DEFAULT_LIMIT): int,
        vol.Optional("offset", default=0): int,
    }
)
@websocket_api.async_response
@ws_guard("search_items", ("query", "location_id", "limit", "offset"))
async def ws_search_items(hass: HomeAssistant, conn, msg):
    repo = _repo(hass)
    page = SearchService(repo, repo).search(
        _owner(conn),
        query=msg.get("query"),
        location_id=msg.get("location_id"),
        limit=msg["limit"],
        offset=msg["offset"],
    )
    result = {
        "items": [
            {**_serialize_item(hit.item), "location_path": list(hit.location_path)}
            for hit in page.items
        ],
        "total": page.total,
        "has_more": page.has_more,
    }
    conn.send_message(websocket_api.result_message(msg.get("id", 0), result))


# -----------------------------
# Serialization helpers
# -----------------------------


def _serialize_item(item: Item) -> dict[str, Any]:
    return {
        "id": str(item.id),
        "location_id": str(item.location_id),
        "name": item.name,
        "description": item.description,
        "quantity": item.quantity,
        "created_at": item.created_at,
        "updated_at": item.updated_at,
    }


def _serialize_location(loc: Location) -> dict[str, Any]:
    return {
        "id": str(loc.id),
        "name": loc.name,
        "parent_id": str(loc.parent_id) if loc.parent_id is not None else None,
        "path_ids": [str(x) for x in loc.path_ids],
        "path_names": list(loc.path_names),
        "display_path": loc.path.display_path,
        "depth": loc.depth,
        "created_at": loc.created_at,
        "updated_at": loc.updated_at,
    }


def _serialize_summary(summary: LocationSummary) -> dict[str, Any]:
    return {
        "id": str(summary.id),
        "name": summary.name,
        "child_count": summary.child_count,
        "item_count": summary.item_count,
    }


def _serialize_tree_node(node: LocationTreeNode) -> dict[str, Any]:
    return {
        "id": str(node.id),
        "name": node.name,
        "depth": node.depth,
        "children": [_serialize_tree_node(child) for child in node.children],
    }


# -----------------------------
# Registration
# -----------------------------


def setup(hass: HomeAssistant) -> None:
    # Idempotent: avoid duplicate registration across reloads
    bucket = hass.data.setdefault(DOMAIN, {})
    if bucket.get("ws_registered"):
        return

    handlers = [
        ws_version,
        ws_health,
        ws_location_create,
        ws_location_get,
        ws_location_rename,
        ws_location_move,
        ws_location_delete,
        ws_location_top_level,
        ws_location_tree,
        ws_location_descendants,
        ws_item_create,
        ws_item_get,
        ws_item_update,
        ws_item_move,
        ws_item_delete,
        ws_search_items,
    ]

    for h in handlers:
        websocket_api.async_register_command(hass, h)

    bucket["ws_registered"] = True
