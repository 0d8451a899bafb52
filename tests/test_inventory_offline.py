"""Offline tests for the inventory facade.

Scenarios:
- Mutations persist the structured payload and survive a restart
- Mutations are mirrored into the legacy blobs while the legacy store is readable
- An unreadable legacy store is never overwritten
- Storage failures surface as StorageIOError
- Printed location labels resolve through location_from_link
"""

from __future__ import annotations

import json
import uuid

import pytest
from custom_components.pocket_dimension.exceptions import StorageIOError
from custom_components.pocket_dimension.inventory import (
    LEGACY_ITEMS_KEY,
    LEGACY_LOCATIONS_KEY,
    LOCATION_LINK_PREFIX,
    Inventory,
)
from custom_components.pocket_dimension.storage import (
    LEGACY_STORAGE_KEY,
    STORAGE_KEY,
    StorageContext,
)


async def _start(backend) -> Inventory:
    inventory = Inventory(StorageContext(store_factory=backend.factory))
    await inventory.async_setup()
    return inventory


@pytest.mark.asyncio
async def test_state_survives_restart(backend) -> None:
    # Arrange
    inventory = await _start(backend)
    room = await inventory.async_add_location(name="Living Room", type="room")
    shelf = await inventory.async_add_location(name="Bookcase", type="shelf", parent_id=room.id)
    book = await inventory.async_add_item(
        {"title": "Test Book", "type": "books", "location_id": str(shelf.id)}
    )
    await inventory.async_add_isbn_mapping(
        incorrect_isbn="9780000000003", correct_google_books_id="v1", title="Test Book"
    )

    # Act
    restarted = await _start(backend)

    # Assert
    assert restarted.locations.breadcrumb_path(shelf.id) == "Living Room/Bookcase"
    assert restarted.items.get(book.id).location_id == shelf.id
    assert restarted.isbn_mappings.google_books_id_for("9780000000003") == "v1"
    assert restarted.export_state() == inventory.export_state()


@pytest.mark.asyncio
async def test_mutations_are_mirrored_to_legacy(backend) -> None:
    inventory = await _start(backend)
    room = await inventory.async_add_location(name="Den", type="room")
    item = await inventory.async_add_item(
        {"title": "Lamp", "type": "electronics", "location_id": str(room.id)}
    )

    legacy_items = json.loads(backend.legacy()[LEGACY_ITEMS_KEY])
    assert [i["id"] for i in legacy_items] == [str(item.id).upper()]
    assert legacy_items[0]["locationId"] == str(room.id).upper()

    await inventory.async_remove_location(room.id)

    assert json.loads(backend.legacy()[LEGACY_LOCATIONS_KEY]) == []
    assert json.loads(backend.legacy()[LEGACY_ITEMS_KEY])[0]["locationId"] is None


@pytest.mark.asyncio
async def test_unreadable_legacy_is_not_overwritten(backend) -> None:
    backend.legacy()[LEGACY_LOCATIONS_KEY] = "corrupt"
    inventory = await _start(backend)

    await inventory.async_add_location(name="Shed", type="room")

    assert backend.legacy()[LEGACY_LOCATIONS_KEY] == "corrupt"
    assert inventory.locations.count() == 1


@pytest.mark.asyncio
async def test_structured_write_failure_surfaces(backend) -> None:
    inventory = await _start(backend)
    backend.fail_save.add(STORAGE_KEY)

    with pytest.raises(StorageIOError):
        await inventory.async_add_location(name="Attic", type="room")


@pytest.mark.asyncio
async def test_legacy_mirror_failure_is_tolerated(backend, caplog) -> None:
    inventory = await _start(backend)
    backend.fail_save.add(LEGACY_STORAGE_KEY)

    room = await inventory.async_add_location(name="Attic", type="room")

    assert str(room.id) in backend.structured()["locations"]
    assert any("Legacy mirror write failed" in r.message for r in caplog.records)


@pytest.mark.asyncio
async def test_unreadable_structured_store_raises(backend) -> None:
    backend.fail_load.add(STORAGE_KEY)

    with pytest.raises(StorageIOError):
        await _start(backend)


@pytest.mark.asyncio
async def test_location_from_link(backend) -> None:
    inventory = await _start(backend)
    room = await inventory.async_add_location(name="Pantry", type="room")

    assert inventory.location_from_link(str(room.id)) == room
    assert inventory.location_from_link(f"{LOCATION_LINK_PREFIX}{room.id}") == room
    assert inventory.location_from_link(f" {LOCATION_LINK_PREFIX.upper()}{room.id}/ ") == room
    assert inventory.location_from_link(f"{LOCATION_LINK_PREFIX}{uuid.uuid4()}") is None
    assert inventory.location_from_link(f"https://example.com/{room.id}") is None
    assert inventory.location_from_link("") is None
    assert inventory.location_from_link(None) is None


@pytest.mark.asyncio
async def test_bulk_delete_and_retype_persist(backend) -> None:
    inventory = await _start(backend)
    room = await inventory.async_add_location(name="Study", type="room")
    crate = await inventory.async_add_location(name="Crate", type="box", parent_id=room.id)
    a = await inventory.async_add_item({"title": "A", "type": "tools"})
    b = await inventory.async_add_item({"title": "B", "type": "tools"})

    await inventory.async_retype_location(crate.id, "drawer")
    await inventory.async_move_location(crate.id, None)
    await inventory.async_rename_location(crate.id, "Drawer Unit")
    deleted = await inventory.async_bulk_delete_items([a.id, b.id])

    stored = backend.structured()
    assert sorted(deleted) == sorted([a.id, b.id])
    assert stored["items"] == {}
    assert stored["locations"][str(crate.id)]["type"] == "drawer"
    assert stored["locations"][str(crate.id)]["parent_id"] is None
    assert stored["locations"][str(crate.id)]["name"] == "Drawer Unit"
