"""Pocket Dimension integration bootstrap.

This module builds the storage context, loads the inventory, runs the one-time
legacy migration and only then registers the services, so no service can
observe a half-migrated store.
"""

from __future__ import annotations

import logging
from dataclasses import asdict

from homeassistant.config_entries import ConfigEntry
from homeassistant.core import HomeAssistant
from homeassistant.exceptions import ConfigEntryNotReady
from homeassistant.helpers import config_validation as cv

from . import services as services_mod
from .const import DOMAIN, EVENT_CHANGED
from .events import ChangeEvent
from .exceptions import StorageIOError
from .inventory import Inventory
from .storage import CURRENT_SCHEMA_VERSION, StorageContext, StoreFactory

LOGGER = logging.getLogger(__name__)


# This integration is config-entry only; no YAML configuration is accepted.
CONFIG_SCHEMA = cv.config_entry_only_config_schema(DOMAIN)


async def async_setup(hass: HomeAssistant, _config: dict) -> bool:
    """Set up the Pocket Dimension domain at Home Assistant startup.

    Initializes an empty domain bucket in hass.data with no side effects.
    """
    if DOMAIN not in hass.data:
        hass.data[DOMAIN] = {}
    return True


async def async_setup_entry(hass: HomeAssistant, entry: ConfigEntry) -> bool:
    """Set up Pocket Dimension from a config entry."""
    bucket = hass.data.setdefault(DOMAIN, {})

    # Tests may pre-seed a store factory to keep persistence in memory
    store_factory: StoreFactory | None = bucket.get("store_factory")
    context = StorageContext(hass, store_factory=store_factory)
    inventory = Inventory(context)

    try:
        outcomes = await inventory.async_setup()
    except StorageIOError as exc:
        LOGGER.error(
            "Storage load failed during setup",
            extra={"domain": DOMAIN, "op": "setup_storage", "schema_version": CURRENT_SCHEMA_VERSION},
            exc_info=True,
        )
        raise ConfigEntryNotReady("storage load failed") from exc

    _log_storage_health(inventory)
    for name, outcome in outcomes.items():
        LOGGER.debug(
            "Legacy migration state for %s: %s",
            name,
            outcome.state.value,
            extra={
                "domain": DOMAIN,
                "op": "setup_migration",
                "target": name,
                "migrated_now": outcome.migrated_now,
                "skipped": outcome.skipped,
            },
        )

    def _fire_changed(event: ChangeEvent) -> None:
        hass.bus.async_fire(EVENT_CHANGED, asdict(event))

    bucket["context"] = context
    bucket["inventory"] = inventory
    bucket["remove_listener"] = context.notifier.add_listener(_fire_changed)

    # Register services
    services_mod.setup(hass)

    return True


async def async_unload_entry(hass: HomeAssistant, entry: ConfigEntry) -> bool:
    """Unload a config entry.

    Removes services and the bus bridge, then flushes the inventory once more.
    """

    bucket = hass.data.get(DOMAIN) or {}

    services_mod.unload(hass)

    remove_listener = bucket.pop("remove_listener", None)
    if remove_listener is not None:
        remove_listener()

    inventory: Inventory | None = bucket.pop("inventory", None)
    bucket.pop("context", None)
    if inventory is not None:
        try:
            await inventory.async_persist()
        except StorageIOError:
            LOGGER.warning(
                "Failed to persist during unload",
                extra={"domain": DOMAIN, "op": "unload"},
                exc_info=True,
            )

    return True


def _log_storage_health(inventory: Inventory) -> None:
    """Log a storage health summary after setup."""

    item_count = inventory.items.count()
    location_count = inventory.locations.count()
    orphaned = inventory.items.counts()["orphaned_total"]

    level = logging.WARNING if item_count == 0 and location_count == 0 else logging.DEBUG
    LOGGER.log(
        level,
        "Storage health: schema_version=%s items=%s locations=%s orphaned=%s",
        CURRENT_SCHEMA_VERSION,
        item_count,
        location_count,
        orphaned,
        extra={
            "domain": DOMAIN,
            "op": "setup_storage_health",
            "schema_version": CURRENT_SCHEMA_VERSION,
            "items_count": item_count,
            "locations_count": location_count,
            "orphaned_count": orphaned,
        },
    )
