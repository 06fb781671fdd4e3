"""Tests for write transactions, locking and cancellation.

Verifies that mutations and their persistence form one all-or-nothing unit,
that concurrent writers are serialized by the persist lock, and that
cancellation never leaves the in-memory state ahead of or behind storage.
"""

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest
from custom_components.stufftracker.const import DOMAIN
from custom_components.stufftracker.exceptions import NotFoundError, StorageError
from custom_components.stufftracker.items import ItemService
from custom_components.stufftracker.locations import LocationService
from custom_components.stufftracker.repository import Repository
from custom_components.stufftracker.storage import (
    DomainStore,
    async_persist_repo,
    async_write_transaction,
)

OWNER = "owner-a"


def _hass_with(repo: Repository, store) -> MagicMock:
    hass = MagicMock()
    hass.data = {DOMAIN: {"store": store, "repository": repo}}
    return hass


def _root_names(repo: Repository) -> list[str]:
    return [loc.name for loc in repo.get_children(OWNER, None)]


@pytest.mark.asyncio
async def test_write_transaction_commits_and_saves_exported_state() -> None:
    repo = Repository()
    mock_store = AsyncMock(spec=DomainStore)
    hass = _hass_with(repo, mock_store)

    async with async_write_transaction(hass) as tx_repo:
        assert tx_repo is repo
        LocationService(repo, repo).create(OWNER, "Garage")

    mock_store.async_save.assert_awaited_once_with(repo.export_state())
    assert _root_names(repo) == ["Garage"]


@pytest.mark.asyncio
async def test_concurrent_transactions_are_serialized() -> None:
    """Each unit finishes saving before the next one starts mutating."""

    repo = Repository()
    mock_store = AsyncMock(spec=DomainStore)
    events: list[str] = []

    async def slow_save(data):
        events.append("save_start")
        await asyncio.sleep(0.02)
        events.append("save_end")

    mock_store.async_save = slow_save
    hass = _hass_with(repo, mock_store)

    async def create(name: str) -> None:
        async with async_write_transaction(hass) as tx_repo:
            events.append(f"mutate_{name}")
            LocationService(tx_repo, tx_repo).create(OWNER, name)

    await asyncio.gather(create("A"), create("B"), create("C"))

    assert events == [
        "mutate_A",
        "save_start",
        "save_end",
        "mutate_B",
        "save_start",
        "save_end",
        "mutate_C",
        "save_start",
        "save_end",
    ]


@pytest.mark.asyncio
async def test_body_error_rolls_back_without_saving() -> None:
    repo = Repository()
    mock_store = AsyncMock(spec=DomainStore)
    hass = _hass_with(repo, mock_store)

    with pytest.raises(NotFoundError):
        async with async_write_transaction(hass) as tx_repo:
            service = LocationService(tx_repo, tx_repo)
            garage = service.create(OWNER, "Garage")
            ItemService(tx_repo, tx_repo).create(OWNER, "Drill", garage.id)
            service.get(OWNER, "missing")

    mock_store.async_save.assert_not_awaited()
    assert repo.get_counts()["locations_total"] == 0
    assert repo.get_counts()["items_total"] == 0


@pytest.mark.asyncio
async def test_save_failure_rolls_back_and_raises_storage_error(caplog) -> None:
    repo = Repository()
    LocationService(repo, repo).create(OWNER, "Existing")
    mock_store = AsyncMock(spec=DomainStore)
    mock_store.async_save.side_effect = OSError("disk full")
    hass = _hass_with(repo, mock_store)

    with pytest.raises(StorageError):
        async with async_write_transaction(hass) as tx_repo:
            LocationService(tx_repo, tx_repo).create(OWNER, "New")

    assert _root_names(repo) == ["Existing"]
    assert any(getattr(r, "op", None) == "persist_failed" for r in caplog.records)


@pytest.mark.asyncio
async def test_cancel_before_save_rolls_back() -> None:
    repo = Repository()
    mock_store = AsyncMock(spec=DomainStore)
    hass = _hass_with(repo, mock_store)
    entered = asyncio.Event()

    async def op() -> None:
        async with async_write_transaction(hass) as tx_repo:
            LocationService(tx_repo, tx_repo).create(OWNER, "Garage")
            entered.set()
            await asyncio.Event().wait()

    task = asyncio.create_task(op())
    await entered.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    mock_store.async_save.assert_not_awaited()
    assert _root_names(repo) == []


@pytest.mark.asyncio
async def test_cancel_during_save_lets_save_finish_and_keeps_state() -> None:
    repo = Repository()
    mock_store = AsyncMock(spec=DomainStore)
    started = asyncio.Event()
    release = asyncio.Event()
    saved: list[dict] = []

    async def gated_save(data):
        started.set()
        await release.wait()
        saved.append(data)

    mock_store.async_save = gated_save
    hass = _hass_with(repo, mock_store)

    async def op() -> None:
        async with async_write_transaction(hass) as tx_repo:
            LocationService(tx_repo, tx_repo).create(OWNER, "Garage")

    task = asyncio.create_task(op())
    await started.wait()
    task.cancel()
    await asyncio.sleep(0)
    release.set()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert len(saved) == 1
    assert _root_names(repo) == ["Garage"]
    assert saved[0] == repo.export_state()


@pytest.mark.asyncio
async def test_cancel_during_failing_save_rolls_back() -> None:
    repo = Repository()
    mock_store = AsyncMock(spec=DomainStore)
    started = asyncio.Event()
    release = asyncio.Event()

    async def gated_failing_save(data):
        started.set()
        await release.wait()
        raise OSError("disk full")

    mock_store.async_save = gated_failing_save
    hass = _hass_with(repo, mock_store)

    async def op() -> None:
        async with async_write_transaction(hass) as tx_repo:
            LocationService(tx_repo, tx_repo).create(OWNER, "Garage")

    task = asyncio.create_task(op())
    await started.wait()
    task.cancel()
    await asyncio.sleep(0)
    release.set()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert _root_names(repo) == []


@pytest.mark.asyncio
async def test_delete_wins_over_concurrent_move_of_descendant() -> None:
    """The writer that runs second sees the subtree gone and gets NotFoundError."""

    repo = Repository()
    service = LocationService(repo, repo)
    x = service.create(OWNER, "X")
    child = service.create(OWNER, "Child", x.id)
    other = service.create(OWNER, "Other")

    mock_store = AsyncMock(spec=DomainStore)

    async def slow_save(data):
        await asyncio.sleep(0.01)

    mock_store.async_save = slow_save
    hass = _hass_with(repo, mock_store)

    async def delete_x() -> None:
        async with async_write_transaction(hass) as tx_repo:
            LocationService(tx_repo, tx_repo).delete(OWNER, x.id, force=True)

    async def move_child() -> None:
        async with async_write_transaction(hass) as tx_repo:
            LocationService(tx_repo, tx_repo).move(OWNER, child.id, other.id)

    results = await asyncio.gather(delete_x(), move_child(), return_exceptions=True)

    assert results[0] is None
    assert isinstance(results[1], NotFoundError)
    assert _root_names(repo) == ["Other"]
    assert service.get_descendant_ids(OWNER, other.id) == set()


@pytest.mark.asyncio
async def test_missing_setup_fails_fast() -> None:
    hass = MagicMock()
    hass.data = {DOMAIN: {}}

    with pytest.raises(StorageError):
        async with async_write_transaction(hass):
            pass
    with pytest.raises(StorageError):
        await async_persist_repo(hass)


@pytest.mark.asyncio
async def test_persist_logs_timing(caplog) -> None:
    """Persistence operations log timing information for debugging."""
    caplog.set_level(logging.DEBUG)

    mock_store = AsyncMock(spec=DomainStore)
    hass = _hass_with(Repository(), mock_store)

    await async_persist_repo(hass)

    assert any("Persisting repository state" in rec.message for rec in caplog.records)
    assert any("Repository persisted successfully" in rec.message for rec in caplog.records)
    assert any(hasattr(rec, "elapsed_ms") for rec in caplog.records)
