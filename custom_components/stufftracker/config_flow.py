"""Config flow for StuffTracker."""

from __future__ import annotations

from typing import Any

from homeassistant import config_entries

from .const import DOMAIN


class StuffTrackerConfigFlow(config_entries.ConfigFlow, domain=DOMAIN):
    """Handle a config flow for StuffTracker."""

    VERSION = 1

    async def async_step_user(
        self, user_input: dict[str, Any] | None = None
    ) -> config_entries.ConfigFlowResult:
        """Single-instance setup; the entry is created immediately."""
        if self._async_current_entries():
            return self.async_abort(reason="single_instance_allowed")

        return self.async_create_entry(title="StuffTracker", data={})
