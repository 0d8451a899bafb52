"""Inventory facade wiring the stores, migration and persistence together.

``Inventory`` is what the Home Assistant layer talks to. Synchronous reads go
straight to ``locations``, ``items`` and ``isbn_mappings``; mutations go
through the ``async_*`` methods here, which commit in memory, persist the
structured payload and then mirror the touched collections back into the
legacy flat store.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Final, Generic, TypeVar

from .const import DEEP_LINK_SCHEME, DOMAIN
from .exceptions import StorageIOError
from .isbn_mappings import ISBNMappingService
from .item_repository import ItemRepository
from .location_store import LocationStore, RemovalResult
from .migration import MigrationCoordinator, MigrationOutcome, MigrationState, encode_blob
from .models import (
    InventoryItem,
    ISBNMapping,
    ItemCreate,
    ItemUpdate,
    StorageLocation,
    item_from_legacy,
    item_to_legacy,
    location_from_legacy,
    location_to_legacy,
    mapping_from_legacy,
    mapping_to_legacy,
)
from .rules import LocationType
from .storage import StorageContext, async_persist

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

LOCATION_LINK_PREFIX: Final[str] = f"{DEEP_LINK_SCHEME}://location/"

# Legacy flat-store keys: blob key, completion flag key
LEGACY_LOCATIONS_KEY: Final[str] = "savedLocations"
LEGACY_LOCATIONS_FLAG: Final[str] = "locationsMigrated"
LEGACY_ITEMS_KEY: Final[str] = "savedInventoryItems"
LEGACY_ITEMS_FLAG: Final[str] = "inventoryItemsMigrated"
LEGACY_ISBN_KEY: Final[str] = "isbnMappings"
LEGACY_ISBN_FLAG: Final[str] = "isbnMappingsMigrated"


@dataclass
class CollectionTarget(Generic[T]):
    """Adapts one in-memory collection to the migration coordinator."""

    name: str
    legacy_key: str
    flag_key: str
    decode_record: Callable[[dict[str, Any]], T]
    encode_record: Callable[[T], dict[str, Any]]
    replace: Callable[[list[T]], None]
    snapshot: Callable[[], list[T]]
    persist: Callable[[], Awaitable[None]]

    async def async_replace_all(self, records: list[T]) -> None:
        # Replacing wholesale also clears anything an interrupted run left behind
        self.replace(records)
        await self.persist()

    async def async_load_all(self) -> list[T]:
        return self.snapshot()

    def encode_all(self) -> str:
        return encode_blob([self.encode_record(r) for r in self.snapshot()])


class Inventory:
    """Locations, items and ISBN mappings behind one persistence boundary."""

    def __init__(self, context: StorageContext) -> None:
        self.context = context
        self.locations = LocationStore(context)
        self.items = ItemRepository(context, self.locations.exists)
        self.locations.attach_orphaner(self.items)
        self.isbn_mappings = ISBNMappingService(
            context, persist=lambda: self._async_commit("isbn_mappings")
        )
        self.migration = MigrationCoordinator(context.legacy)
        self._legacy_readable: dict[str, bool] = {}
        self._targets: dict[str, CollectionTarget[Any]] = {
            "locations": CollectionTarget(
                name="locations",
                legacy_key=LEGACY_LOCATIONS_KEY,
                flag_key=LEGACY_LOCATIONS_FLAG,
                decode_record=location_from_legacy,
                encode_record=location_to_legacy,
                replace=self.locations.load_state,
                snapshot=self.locations.all_locations,
                persist=self.async_persist,
            ),
            "items": CollectionTarget(
                name="items",
                legacy_key=LEGACY_ITEMS_KEY,
                flag_key=LEGACY_ITEMS_FLAG,
                decode_record=item_from_legacy,
                encode_record=item_to_legacy,
                replace=self.items.load_state,
                snapshot=self.items.all_items,
                persist=self.async_persist,
            ),
            "isbn_mappings": CollectionTarget(
                name="isbn_mappings",
                legacy_key=LEGACY_ISBN_KEY,
                flag_key=LEGACY_ISBN_FLAG,
                decode_record=mapping_from_legacy,
                encode_record=mapping_to_legacy,
                replace=self.isbn_mappings.load_state,
                snapshot=self.isbn_mappings.all_mappings,
                persist=self.async_persist,
            ),
        }

    # -----------------------------
    # Lifecycle
    # -----------------------------

    async def async_setup(self) -> dict[str, MigrationOutcome[Any]]:
        """Load the structured store and run the legacy migration.

        Every collection is loaded before any target runs, because a migrating
        target persists the whole payload. Targets then run locations first so
        items are checked against the final location tree. Raises
        StorageIOError when the structured store cannot be read; migration
        problems are reported on the returned outcomes instead.
        """

        payload = await self.context.structured.async_load()
        for name, target in self._targets.items():
            target.replace(list(payload.get(name, {}).values()))

        outcomes: dict[str, MigrationOutcome[Any]] = {}
        for name, target in self._targets.items():
            outcome = await self.migration.async_run(target)
            self._legacy_readable[name] = outcome.legacy_readable
            outcomes[name] = outcome
            if outcome.error is not None:
                LOGGER.warning(
                    "Legacy migration for %s did not complete: %s",
                    name,
                    outcome.error,
                    extra={
                        "domain": DOMAIN,
                        "op": "setup_migration",
                        "target": name,
                        "state": outcome.state.value,
                        "source": outcome.source,
                    },
                )
        await self._async_reconcile_items(outcomes)
        LOGGER.debug(
            "Inventory ready",
            extra={
                "domain": DOMAIN,
                "op": "setup_inventory",
                "locations_count": self.locations.count(),
                "items_count": self.items.count(),
                "isbn_mappings_count": len(self.isbn_mappings.all_mappings()),
            },
        )
        return outcomes

    async def _async_reconcile_items(self, outcomes: dict[str, MigrationOutcome[Any]]) -> None:
        """Orphan items that point outside a location tree replaced during setup."""

        if not outcomes["locations"].migrated_now or outcomes["items"].migrated_now:
            return
        orphaned = self.items.load_state(self.items.all_items())
        if not orphaned:
            return
        LOGGER.info(
            "Orphaned %s item(s) after the location tree was migrated",
            len(orphaned),
            extra={
                "domain": DOMAIN,
                "op": "setup_reconcile",
                "orphaned_item_ids": [str(i) for i in orphaned],
            },
        )
        try:
            await self.async_persist()
        except StorageIOError:
            # Loading orphans the same references again on the next start
            LOGGER.warning(
                "Could not persist reconciled items",
                extra={"domain": DOMAIN, "op": "setup_reconcile"},
                exc_info=True,
            )

    def migration_state(self, name: str) -> MigrationState:
        return self.migration.state(name)

    def export_state(self) -> dict[str, Any]:
        return {
            "locations": self.locations.export_state(),
            "items": self.items.export_state(),
            "isbn_mappings": self.isbn_mappings.export_state(),
        }

    async def async_persist(self) -> None:
        """Write the whole structured payload; raises StorageIOError on failure."""

        await async_persist(self.context, self.export_state())

    async def _async_commit(self, *collections: str) -> None:
        await self.async_persist()
        for name in collections:
            await self._async_mirror_legacy(name)

    async def _async_mirror_legacy(self, name: str) -> None:
        """Best-effort copy of one collection back into the legacy blob.

        Skipped when the legacy store could not be read at startup, so an
        unreadable blob is never overwritten.
        """

        if not self._legacy_readable.get(name, False):
            return
        target = self._targets[name]
        try:
            await self.context.legacy.async_set_blob(target.legacy_key, target.encode_all())
        except StorageIOError:
            LOGGER.warning(
                "Legacy mirror write failed for %s",
                name,
                extra={"domain": DOMAIN, "op": "legacy_mirror", "target": name},
                exc_info=True,
            )

    # -----------------------------
    # Locations
    # -----------------------------

    async def async_add_location(
        self,
        *,
        name: str,
        type: str | LocationType,
        parent_id: str | uuid.UUID | None = None,
    ) -> StorageLocation:
        location = self.locations.add(name=name, type=type, parent_id=parent_id)
        await self._async_commit("locations")
        return location

    async def async_remove_location(self, location_id: str | uuid.UUID) -> RemovalResult:
        result = self.locations.remove(location_id)
        if result.orphaned_item_ids:
            await self._async_commit("locations", "items")
        else:
            await self._async_commit("locations")
        return result

    async def async_move_location(
        self, location_id: str | uuid.UUID, new_parent_id: str | uuid.UUID | None
    ) -> StorageLocation:
        location = self.locations.update_parent(location_id, new_parent_id)
        await self._async_commit("locations")
        return location

    async def async_rename_location(self, location_id: str | uuid.UUID, name: str) -> StorageLocation:
        location = self.locations.rename(location_id, name)
        await self._async_commit("locations")
        return location

    async def async_retype_location(
        self, location_id: str | uuid.UUID, new_type: str | LocationType
    ) -> StorageLocation:
        location = self.locations.update_type(location_id, new_type)
        await self._async_commit("locations")
        return location

    def location_from_link(self, raw: Any) -> StorageLocation | None:
        """Resolve a scanned label: a bare id or ``pocketdimension://location/<id>``.

        Unknown or malformed input returns None.
        """

        if not isinstance(raw, str):
            return None
        text = raw.strip()
        if text.lower().startswith(LOCATION_LINK_PREFIX):
            text = text[len(LOCATION_LINK_PREFIX) :].strip("/")
        elif "://" in text:
            return None
        return self.locations.location(text)

    # -----------------------------
    # Items
    # -----------------------------

    async def async_add_item(self, payload: ItemCreate) -> InventoryItem:
        item = self.items.add(payload)
        await self._async_commit("items")
        return item

    async def async_update_item(self, item_id: str | uuid.UUID, changes: ItemUpdate) -> InventoryItem:
        item = self.items.update(item_id, changes)
        await self._async_commit("items")
        return item

    async def async_delete_item(self, item_id: str | uuid.UUID) -> None:
        self.items.delete(item_id)
        await self._async_commit("items")

    async def async_bulk_delete_items(self, item_ids: list[str | uuid.UUID]) -> list[uuid.UUID]:
        deleted = self.items.bulk_delete(item_ids)
        if deleted:
            await self._async_commit("items")
        return deleted

    # -----------------------------
    # ISBN mappings
    # -----------------------------

    async def async_add_isbn_mapping(
        self,
        *,
        incorrect_isbn: str,
        correct_google_books_id: str,
        title: str,
        is_reprint: bool = True,
    ) -> ISBNMapping:
        return await self.isbn_mappings.async_add(
            incorrect_isbn=incorrect_isbn,
            correct_google_books_id=correct_google_books_id,
            title=title,
            is_reprint=is_reprint,
        )
