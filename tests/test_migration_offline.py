"""Offline tests for the legacy -> structured migration coordinator.

Scenarios:
- First run moves every record and sets the flag last
- A second run (same process or a restart) changes nothing
- A crash after the write but before the flag re-runs to the same result
- A structured write failure keeps the flag unset and the legacy blob intact
- Unreadable legacy data is reported, never raised
- Empty or missing legacy data is a successful zero-record migration
- Malformed individual records are skipped and logged
- Migrating one collection never clears another that is already flagged
"""

from __future__ import annotations

import json
import logging
from copy import deepcopy

import pytest
from custom_components.pocket_dimension.exceptions import MigrationError
from custom_components.pocket_dimension.inventory import (
    LEGACY_ISBN_FLAG,
    LEGACY_ISBN_KEY,
    LEGACY_ITEMS_FLAG,
    LEGACY_ITEMS_KEY,
    LEGACY_LOCATIONS_FLAG,
    LEGACY_LOCATIONS_KEY,
    Inventory,
)
from custom_components.pocket_dimension.migration import MigrationState
from custom_components.pocket_dimension.storage import (
    LEGACY_STORAGE_KEY,
    STORAGE_KEY,
    StorageContext,
)

ROOM_ID = "6F9619FF-8B86-4011-B42D-00C04FC964FF"
SHELF_ID = "7C9E6679-7425-40DE-944B-E07FC1F90AE7"
ITEM_ID = "9B2D3C3E-2A52-4E0B-9F0A-3B3A7D1E6C11"


def _seed_legacy(backend) -> None:
    legacy = backend.legacy()
    legacy[LEGACY_LOCATIONS_KEY] = json.dumps(
        [
            {"id": ROOM_ID, "name": "Living Room", "type": "room", "parentId": None},
            {"id": SHELF_ID, "name": "Bookcase", "type": "shelf", "parentId": ROOM_ID},
        ]
    )
    legacy[LEGACY_ITEMS_KEY] = json.dumps(
        [
            {
                "id": ITEM_ID,
                "title": "Test Book",
                "type": "books",
                "locationId": SHELF_ID,
                "condition": "Like New",
                "author": "Someone",
                "price": 9.99,
                "dateAdded": 700000000.0,
                "purchaseDate": 699999999.0,
            }
        ]
    )
    legacy[LEGACY_ISBN_KEY] = json.dumps(
        [
            {
                "incorrectISBN": "9780000000001",
                "correctGoogleBooksID": "abcDEF",
                "title": "Reprint",
                "isReprint": True,
                "dateAdded": 700000000.0,
            }
        ]
    )


async def _start(backend) -> Inventory:
    inventory = Inventory(StorageContext(store_factory=backend.factory))
    await inventory.async_setup()
    return inventory


@pytest.mark.asyncio
async def test_first_run_migrates_everything_and_sets_flags(backend, caplog) -> None:
    _seed_legacy(backend)
    blobs_before = deepcopy(backend.legacy())

    caplog.set_level(logging.INFO)
    inventory = await _start(backend)

    assert inventory.migration_state("locations") is MigrationState.MIGRATED
    assert inventory.migration_state("items") is MigrationState.MIGRATED
    assert inventory.migration_state("isbn_mappings") is MigrationState.MIGRATED

    structured = backend.structured()
    assert len(structured["locations"]) == 2
    assert len(structured["items"]) == 1
    assert "9780000000001" in structured["isbn_mappings"]

    legacy = backend.data[LEGACY_STORAGE_KEY]
    assert legacy[LEGACY_LOCATIONS_FLAG] is True
    assert legacy[LEGACY_ITEMS_FLAG] is True
    assert legacy[LEGACY_ISBN_FLAG] is True
    # The legacy blobs are never deleted
    for key in (LEGACY_LOCATIONS_KEY, LEGACY_ITEMS_KEY, LEGACY_ISBN_KEY):
        assert legacy[key] == blobs_before[key]

    shelf = inventory.locations.get(SHELF_ID.lower())
    assert inventory.locations.breadcrumb_path(shelf.id) == "Living Room/Bookcase"
    book = inventory.items.get(ITEM_ID.lower())
    assert book.location_id == shelf.id
    assert book.purchase_date is not None
    assert inventory.isbn_mappings.google_books_id_for("9780000000001") == "abcDEF"
    assert any("Migrated" in r.message for r in caplog.records)


@pytest.mark.asyncio
async def test_second_run_is_idempotent(backend) -> None:
    _seed_legacy(backend)
    await _start(backend)
    after_first = deepcopy(backend.structured())

    # Restart: the flag sends every collection to the structured store
    inventory = await _start(backend)
    first = inventory.migration.outcome("items")
    assert first.migrated_now is False
    assert first.source == "structured"

    # Same process: the gate hands back the cached outcome
    again = await inventory.migration.async_run(inventory._targets["items"])
    assert again is first

    assert backend.structured() == after_first


@pytest.mark.asyncio
async def test_crash_before_flag_reruns_to_same_content(backend) -> None:
    _seed_legacy(backend)
    await _start(backend)
    expected = deepcopy(backend.structured())

    # Simulate a crash after the structured write but before the flags
    legacy = backend.legacy()
    for flag in (LEGACY_LOCATIONS_FLAG, LEGACY_ITEMS_FLAG, LEGACY_ISBN_FLAG):
        legacy.pop(flag)

    inventory = await _start(backend)

    assert inventory.migration_state("items") is MigrationState.MIGRATED
    assert inventory.migration.outcome("locations").migrated_now is True
    assert backend.structured() == expected


@pytest.mark.asyncio
async def test_structured_write_failure_keeps_flag_unset(backend, caplog) -> None:
    _seed_legacy(backend)
    blobs_before = deepcopy(backend.legacy())
    backend.fail_save.add(STORAGE_KEY)

    caplog.set_level(logging.ERROR)
    inventory = Inventory(StorageContext(store_factory=backend.factory))
    outcomes = await inventory.async_setup()

    items_outcome = outcomes["items"]
    assert items_outcome.state is MigrationState.NOT_MIGRATED
    assert items_outcome.source == "legacy"
    assert isinstance(items_outcome.error, MigrationError)
    # Session keeps working on the legacy records
    assert inventory.items.count() == 1
    assert inventory.locations.count() == 2

    legacy = backend.data[LEGACY_STORAGE_KEY]
    assert LEGACY_ITEMS_FLAG not in legacy
    assert LEGACY_LOCATIONS_FLAG not in legacy
    assert legacy[LEGACY_ITEMS_KEY] == blobs_before[LEGACY_ITEMS_KEY]
    assert any("Structured write failed" in r.message for r in caplog.records)

    # Next start with a healthy store completes the migration
    backend.fail_save.clear()
    restarted = await _start(backend)
    assert restarted.migration_state("items") is MigrationState.MIGRATED
    assert len(backend.structured()["items"]) == 1


@pytest.mark.asyncio
async def test_unreadable_legacy_store_is_reported(backend) -> None:
    backend.fail_load.add(LEGACY_STORAGE_KEY)

    inventory = Inventory(StorageContext(store_factory=backend.factory))
    outcomes = await inventory.async_setup()

    for outcome in outcomes.values():
        assert outcome.state is MigrationState.NOT_MIGRATED
        assert outcome.legacy_readable is False
        assert isinstance(outcome.error, MigrationError)
    assert inventory.items.count() == 0


@pytest.mark.asyncio
async def test_corrupt_blob_is_reported_and_left_alone(backend) -> None:
    backend.legacy()[LEGACY_ITEMS_KEY] = "{not json"

    inventory = await _start(backend)

    assert inventory.migration_state("items") is MigrationState.NOT_MIGRATED
    assert inventory.migration_state("locations") is MigrationState.MIGRATED
    assert backend.legacy()[LEGACY_ITEMS_KEY] == "{not json"
    assert LEGACY_ITEMS_FLAG not in backend.legacy()


@pytest.mark.asyncio
async def test_empty_legacy_is_successful_zero_record_migration(backend) -> None:
    backend.legacy()[LEGACY_ISBN_KEY] = "[]"

    inventory = await _start(backend)

    for name in ("locations", "items", "isbn_mappings"):
        assert inventory.migration_state(name) is MigrationState.MIGRATED
    legacy = backend.legacy()
    assert legacy[LEGACY_ISBN_FLAG] is True
    assert legacy[LEGACY_ITEMS_FLAG] is True
    assert inventory.items.count() == 0


@pytest.mark.asyncio
async def test_malformed_records_are_skipped(backend, caplog) -> None:
    backend.legacy()[LEGACY_ITEMS_KEY] = json.dumps(
        [
            {"id": ITEM_ID, "title": "Good", "type": "comics"},
            {"id": "not-a-uuid", "title": "Bad", "type": "comics"},
            {"id": "0D1E2F3A-4B5C-4D6E-8F70-8192A3B4C5D6", "title": "", "type": "comics"},
        ]
    )

    caplog.set_level(logging.WARNING)
    inventory = await _start(backend)

    outcome = inventory.migration.outcome("items")
    assert outcome is not None
    assert outcome.skipped == 2
    assert outcome.state is MigrationState.MIGRATED
    assert [i.title for i in inventory.items.all_items()] == ["Good"]
    assert sum("Skipping malformed legacy record" in r.message for r in caplog.records) == 2


@pytest.mark.asyncio
async def test_items_pointing_at_unknown_locations_are_orphaned(backend) -> None:
    backend.legacy()[LEGACY_ITEMS_KEY] = json.dumps(
        [{"id": ITEM_ID, "title": "Stray", "type": "books", "locationId": SHELF_ID}]
    )

    inventory = await _start(backend)

    assert inventory.items.get(ITEM_ID.lower()).location_id is None


@pytest.mark.asyncio
async def test_undated_legacy_records_rerun_to_same_content(backend) -> None:
    backend.legacy()[LEGACY_ITEMS_KEY] = json.dumps(
        [{"id": ITEM_ID, "title": "Undated", "type": "comics"}]
    )
    backend.legacy()[LEGACY_LOCATIONS_KEY] = json.dumps(
        [{"id": ROOM_ID, "name": "Attic", "type": "room", "parentId": None}]
    )
    await _start(backend)
    expected = deepcopy(backend.structured())
    assert expected["locations"][ROOM_ID.lower()]["created_at"] == "2001-01-01T00:00:00Z"
    assert expected["items"][ITEM_ID.lower()]["date_added"] == "2001-01-01T00:00:00Z"

    legacy = backend.legacy()
    for flag in (LEGACY_LOCATIONS_FLAG, LEGACY_ITEMS_FLAG, LEGACY_ISBN_FLAG):
        legacy.pop(flag)
    await _start(backend)

    assert backend.structured() == expected


@pytest.mark.asyncio
async def test_migrating_one_collection_keeps_flagged_collections(backend) -> None:
    inventory = await _start(backend)
    await inventory.async_add_isbn_mapping(
        incorrect_isbn="978", correct_google_books_id="g", title="Kept"
    )
    assert backend.legacy()[LEGACY_ISBN_FLAG] is True

    # Only the locations collection still has to be migrated
    legacy = backend.legacy()
    legacy[LEGACY_LOCATIONS_FLAG] = False
    legacy[LEGACY_LOCATIONS_KEY] = json.dumps(
        [{"id": ROOM_ID, "name": "Garage", "type": "room", "parentId": None}]
    )

    restarted = await _start(backend)
    assert restarted.migration.outcome("locations").migrated_now is True
    assert restarted.migration.outcome("isbn_mappings").source == "structured"
    assert list(backend.structured()["isbn_mappings"]) == ["978"]

    again = await _start(backend)
    assert again.isbn_mappings.google_books_id_for("978") == "g"
    assert again.locations.get(ROOM_ID.lower()).name == "Garage"


@pytest.mark.asyncio
async def test_flagged_items_are_orphaned_when_locations_migrate(backend, caplog) -> None:
    inventory = await _start(backend)
    attic = await inventory.async_add_location(name="Attic", type="room")
    kept = await inventory.async_add_item({"title": "Kept", "type": "tools"})
    stored = await inventory.async_add_item(
        {"title": "Stored", "type": "tools", "location_id": str(attic.id)}
    )

    # The legacy location tree no longer has the attic
    legacy = backend.legacy()
    legacy[LEGACY_LOCATIONS_FLAG] = False
    legacy[LEGACY_LOCATIONS_KEY] = json.dumps(
        [{"id": ROOM_ID, "name": "Garage", "type": "room", "parentId": None}]
    )

    caplog.set_level(logging.INFO)
    restarted = await _start(backend)

    assert restarted.items.count() == 2
    assert restarted.items.get(stored.id).location_id is None
    assert restarted.items.get(kept.id).title == "Kept"
    assert backend.structured()["items"][str(stored.id)]["location_id"] is None
    assert any("Orphaned 1 item(s)" in r.message for r in caplog.records)
