"""StuffTracker integration bootstrap.

This module initializes the integration, prepares persistent storage, and sets up
the in-memory repository and WebSocket API in hass.data.
"""

from __future__ import annotations

import logging
from typing import Any

from homeassistant.config_entries import ConfigEntry
from homeassistant.core import HomeAssistant
from homeassistant.exceptions import ConfigEntryNotReady
from homeassistant.helpers import config_validation as cv

from . import ws as ws_mod
from .const import DOMAIN
from .exceptions import StorageError
from .repository import Repository
from .storage import DomainStore, async_persist_repo

LOGGER = logging.getLogger(__name__)


# This integration is config-entry only; no YAML configuration is accepted.
CONFIG_SCHEMA = cv.config_entry_only_config_schema(DOMAIN)


async def async_setup(hass: HomeAssistant, _config: dict) -> bool:
    """Set up the StuffTracker domain at Home Assistant startup.

    Initializes an empty domain bucket in hass.data with no side effects.
    """
    hass.data.setdefault(DOMAIN, {})
    return True


async def async_setup_entry(hass: HomeAssistant, entry: ConfigEntry) -> bool:
    """Set up StuffTracker from a config entry."""
    bucket = hass.data.setdefault(DOMAIN, {})

    store = DomainStore(hass)
    bucket["store"] = store

    try:
        payload = await store.async_load()
        _validate_storage_payload(payload, schema_version=store.schema_version)
    except StorageError as exc:
        LOGGER.error(
            "Storage validation failed during setup",
            extra={"domain": DOMAIN, "op": "setup_storage", "schema_version": store.schema_version},
            exc_info=True,
        )
        raise ConfigEntryNotReady("storage validation failed") from exc

    repo = Repository.from_state(payload)
    bucket["repository"] = repo
    _log_storage_health(repo, schema_version=store.schema_version)

    ws_mod.setup(hass)

    return True


async def async_unload_entry(hass: HomeAssistant, entry: ConfigEntry) -> bool:
    """Unload a config entry.

    Persists the repository one last time and drops it from hass.data. WebSocket
    commands stay registered with Home Assistant; the registration flag is kept
    so a reload does not register them twice.
    """

    bucket = hass.data.get(DOMAIN) or {}

    try:
        await async_persist_repo(hass)
    except StorageError:
        LOGGER.warning(
            "Failed to persist during unload",
            extra={"domain": DOMAIN, "op": "unload"},
            exc_info=True,
        )

    bucket.pop("repository", None)
    bucket.pop("store", None)

    return True


def _validate_storage_payload(payload: dict[str, Any], *, schema_version: int) -> None:
    """Validate loaded storage payload shape and version."""

    if not isinstance(payload, dict):
        raise StorageError("storage payload is not a dict")

    if int(payload.get("schema_version", -1)) != int(schema_version):
        raise StorageError("storage payload schema_version mismatch")

    items = payload.get("items")
    locations = payload.get("locations")
    if not isinstance(items, dict) or not isinstance(locations, dict):
        raise StorageError("storage payload missing required collections")


def _log_storage_health(repo: Repository, *, schema_version: int) -> None:
    """Log storage health summary after loading."""

    counts = repo.get_counts()
    empty = counts["items_total"] == 0 and counts["locations_total"] == 0
    level = logging.INFO if empty else logging.DEBUG
    LOGGER.log(
        level,
        "Storage health: schema_version=%s owners=%s locations=%s items=%s",
        schema_version,
        counts["owners_total"],
        counts["locations_total"],
        counts["items_total"],
        extra={
            "domain": DOMAIN,
            "op": "setup_storage_health",
            "schema_version": schema_version,
            "owners_count": counts["owners_total"],
            "locations_count": counts["locations_total"],
            "items_count": counts["items_total"],
        },
    )
