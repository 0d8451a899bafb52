"""Config flow for Pocket Dimension."""

from __future__ import annotations

from typing import Any

from homeassistant import config_entries
from homeassistant.data_entry_flow import FlowResult

from .const import DOMAIN


class PocketDimensionConfigFlow(config_entries.ConfigFlow, domain=DOMAIN):
    """Handle a config flow for Pocket Dimension."""

    VERSION = 1

    async def async_step_user(
        self, user_input: dict[str, Any] | None = None
    ) -> FlowResult:
        """Handle the initial step.

        One inventory per Home Assistant instance; the entry carries no options.
        """
        if self._async_current_entries():
            return self.async_abort(reason="single_instance_allowed")

        return self.async_create_entry(title="Pocket Dimension", data={})
