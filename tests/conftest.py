"""Shared fixtures for StuffTracker tests.

Offline tests work on an in-memory Repository and the services directly. Tests
that need a running Home Assistant use the ``hass``, ``hass_storage`` and
``hass_ws_client`` fixtures from pytest-homeassistant-custom-component and
request ``enable_custom_integrations`` so the integration can be loaded.
"""

from __future__ import annotations

import pytest
from custom_components.stufftracker.const import DOMAIN
from custom_components.stufftracker.items import ItemService
from custom_components.stufftracker.locations import LocationService
from custom_components.stufftracker.repository import Repository
from custom_components.stufftracker.search import SearchService
from homeassistant.core import HomeAssistant
from pytest_homeassistant_custom_component.common import MockConfigEntry


@pytest.fixture
def repo() -> Repository:
    return Repository()


@pytest.fixture
def location_service(repo: Repository) -> LocationService:
    return LocationService(repo, repo)


@pytest.fixture
def item_service(repo: Repository) -> ItemService:
    return ItemService(repo, repo)


@pytest.fixture
def search_service(repo: Repository) -> SearchService:
    return SearchService(repo, repo)


@pytest.fixture
async def setup_integration(hass: HomeAssistant, enable_custom_integrations) -> MockConfigEntry:
    """Load the integration from a config entry into a test Home Assistant."""

    entry = MockConfigEntry(domain=DOMAIN, title="StuffTracker", data={})
    entry.add_to_hass(hass)
    assert await hass.config_entries.async_setup(entry.entry_id)
    await hass.async_block_till_done()
    return entry
