"""Persistent storage manager for StuffTracker.

Wraps Home Assistant's Store with schema-aware load/save and migrations, and
provides the write transaction every mutating API call runs in.

Data shape persisted:
    {
        "schema_version": int,
        "locations": {id -> LocationDict},
        "items": {id -> ItemDict},
    }

The manager ensures first load initializes an empty dataset and applies
forward-only migrations when an older schema payload is encountered. The
schema version lives inside the payload; the Home Assistant ``Store`` envelope
version stays fixed so that its own migrate hook is never involved.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from copy import deepcopy
from typing import Any, Final

from homeassistant.core import HomeAssistant
from homeassistant.helpers.storage import Store

from . import migrations
from .const import DOMAIN
from .exceptions import StorageError
from .repository import Repository

_LOGGER = logging.getLogger(__name__)

# Current schema version for persisted payloads
CURRENT_SCHEMA_VERSION: Final[int] = 2

# Envelope version handed to Home Assistant's Store
STORE_VERSION: Final[int] = 1

# Storage key under which the persisted dataset is saved
STORAGE_KEY: Final[str] = "stufftracker_store"


def _empty_payload() -> dict[str, Any]:
    """Create a new empty payload matching the current schema."""

    return {"schema_version": CURRENT_SCHEMA_VERSION, "locations": {}, "items": {}}


def _get_persist_lock(hass: HomeAssistant) -> asyncio.Lock:
    """Get or create the persistence lock for this hass instance.

    The lock serializes every write transaction and direct persist call.
    """
    bucket = hass.data.setdefault(DOMAIN, {})
    if "persist_lock" not in bucket:
        bucket["persist_lock"] = asyncio.Lock()
    return bucket["persist_lock"]


class DomainStore:
    """Schema-aware wrapper around Home Assistant's Store for StuffTracker.

    Exposed via ``hass.data[DOMAIN]["store"]``.
    """

    def __init__(
        self,
        hass: HomeAssistant,
        *,
        key: str = STORAGE_KEY,
        schema_version: int = CURRENT_SCHEMA_VERSION,
    ) -> None:
        self._hass = hass
        self._key = key
        self._store: Store[dict[str, Any]] = Store(hass, STORE_VERSION, key)
        self._schema_version = schema_version

    @property
    def schema_version(self) -> int:
        return self._schema_version

    @property
    def key(self) -> str:
        return self._key

    async def async_load(self) -> dict[str, Any]:
        """Load the persisted dataset, applying migrations if needed.

        Returns a copy of the data to prevent external mutation of the cached
        object inside the storage layer.
        """

        raw = await self._store.async_load()
        if raw is None:
            return _empty_payload()
        migrated = await self.async_migrate_if_needed(raw)
        return deepcopy(migrated)

    async def async_save(self, data: dict[str, Any]) -> None:
        """Persist the dataset ensuring schema_version is up-to-date."""

        payload = deepcopy(data) if isinstance(data, dict) else {}
        payload["schema_version"] = self._schema_version
        payload.setdefault("locations", {})
        payload.setdefault("items", {})
        await self._store.async_save(payload)

    async def async_migrate_if_needed(self, raw: Any) -> dict[str, Any]:
        """Migrate ``raw`` payload to the current schema iff needed.

        If a migration occurs, persist the migrated payload back to storage.
        Returns the migrated (or normalized) payload.
        """

        if not isinstance(raw, dict):
            _LOGGER.error(
                "Corrupted storage payload: expected dict, got %s",
                type(raw).__name__,
                extra={
                    "domain": DOMAIN,
                    "op": "migrate",
                    "from_version": None,
                    "to_version": self._schema_version,
                    "storage_key": self.key,
                },
            )
            raise StorageError("corrupted storage payload: not a dict")

        try:
            from_version = int(raw.get("schema_version", 0))
        except (TypeError, ValueError) as exc:
            raise StorageError("corrupted storage payload: bad schema_version") from exc
        to_version = self._schema_version

        if from_version > to_version:
            _LOGGER.error(
                "Storage payload is newer than this integration",
                extra={
                    "domain": DOMAIN,
                    "op": "migrate",
                    "from_version": from_version,
                    "to_version": to_version,
                    "storage_key": self.key,
                },
            )
            raise StorageError("storage payload schema_version is newer than supported")

        if from_version == to_version:
            normalized = _empty_payload()
            normalized.update(raw)
            return normalized

        try:
            migrated = migrations.migrate(raw, from_version=from_version, to_version=to_version)
        except Exception as exc:
            # Do not overwrite on-disk payload; surface as a typed error
            _LOGGER.error(
                "Storage migration failed",
                extra={
                    "domain": DOMAIN,
                    "op": "migrate",
                    "from_version": from_version,
                    "to_version": to_version,
                    "storage_key": self.key,
                },
                exc_info=True,
            )
            raise StorageError("storage migration failed") from exc
        migrated.setdefault("locations", {})
        migrated.setdefault("items", {})
        migrated["schema_version"] = to_version

        _LOGGER.info(
            "Storage migrated from schema %s to %s",
            from_version,
            to_version,
            extra={
                "domain": DOMAIN,
                "op": "migrate",
                "from_version": from_version,
                "to_version": to_version,
                "storage_key": self.key,
            },
        )
        await self._store.async_save(migrated)
        return migrated


def _require_store_and_repo(hass: HomeAssistant) -> tuple[DomainStore, Repository]:
    bucket = hass.data.get(DOMAIN) or {}
    store = bucket.get("store")
    repo = bucket.get("repository")
    if store is None:
        raise StorageError("storage manager not initialized; run integration setup")
    if repo is None:
        raise StorageError("repository not initialized; run integration setup")
    return store, repo


async def _async_save_state(store: DomainStore, repo: Repository) -> None:
    start_time = time.monotonic()
    generation = repo.generation
    _LOGGER.debug(
        "Persisting repository state",
        extra={"domain": DOMAIN, "op": "persist_start", "generation": generation},
    )
    try:
        await store.async_save(repo.export_state())
    except Exception as exc:
        elapsed = time.monotonic() - start_time
        _LOGGER.error(
            "Failed to persist repository",
            extra={
                "domain": DOMAIN,
                "op": "persist_failed",
                "generation": generation,
                "elapsed_ms": int(elapsed * 1000),
            },
            exc_info=True,
        )
        raise StorageError("failed to persist repository") from exc
    elapsed = time.monotonic() - start_time
    _LOGGER.debug(
        "Repository persisted successfully",
        extra={
            "domain": DOMAIN,
            "op": "persist_complete",
            "generation": generation,
            "elapsed_ms": int(elapsed * 1000),
        },
    )


@asynccontextmanager
async def async_write_transaction(hass: HomeAssistant) -> AsyncIterator[Repository]:
    """Run a repository mutation and persist it as one all-or-nothing unit.

    Holds the persist lock for the whole unit, so writers are serialized and
    every check a service performs sees the state its writes apply to. If the
    body raises, or the save fails, the repository is restored to the state it
    had on entry. Cancellation before the save starts rolls back; once the save
    has started it is allowed to finish and the in-memory state is kept only if
    it was written.
    """

    lock = _get_persist_lock(hass)
    async with lock:
        store, repo = _require_store_and_repo(hass)
        snapshot = repo.snapshot()
        try:
            yield repo
        except BaseException:
            repo.restore(snapshot)
            raise

        save_task = asyncio.ensure_future(_async_save_state(store, repo))
        try:
            await asyncio.shield(save_task)
        except asyncio.CancelledError:
            try:
                await save_task
            except StorageError:
                repo.restore(snapshot)
            raise
        except StorageError:
            repo.restore(snapshot)
            raise


async def async_persist_repo(hass: HomeAssistant) -> None:
    """Persist the current repository state via DomainStore with exclusive locking.

    Fails fast with StorageError if prerequisites are missing to avoid silent
    data loss. Callers should ensure setup completed successfully.
    """

    lock = _get_persist_lock(hass)
    async with lock:
        store, repo = _require_store_and_repo(hass)
        await _async_save_state(store, repo)
