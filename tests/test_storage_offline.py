"""Offline tests for the structured and legacy stores.

Scenarios:
- Initial load returns an empty dataset with the current schema_version
- Save then load returns equal data (roundtrip)
- Older payloads are upgraded and written back
- Corrupted, newer or unreadable payloads raise StorageIOError
- Legacy store reads blobs and flags and only adopts durable writes
"""

from __future__ import annotations

import pytest
from custom_components.pocket_dimension.exceptions import StorageIOError
from custom_components.pocket_dimension.storage import (
    CURRENT_SCHEMA_VERSION,
    LEGACY_STORAGE_KEY,
    STORAGE_KEY,
    DomainStore,
    LegacyStore,
    StorageContext,
    async_persist,
)


def _domain_store(backend) -> DomainStore:
    return DomainStore(backend.factory(STORAGE_KEY, CURRENT_SCHEMA_VERSION))


def _legacy_store(backend) -> LegacyStore:
    return LegacyStore(backend.factory(LEGACY_STORAGE_KEY, 1))


@pytest.mark.asyncio
async def test_initial_load_returns_empty_dataset(backend) -> None:
    """First load initializes an empty dataset."""

    # Arrange
    store = _domain_store(backend)

    # Act
    data = await store.async_load()

    # Assert
    assert data == {
        "schema_version": CURRENT_SCHEMA_VERSION,
        "locations": {},
        "items": {},
        "isbn_mappings": {},
    }
    assert STORAGE_KEY not in backend.data


@pytest.mark.asyncio
async def test_save_then_load_roundtrip(backend) -> None:
    # Arrange
    store = _domain_store(backend)
    payload = {
        "schema_version": CURRENT_SCHEMA_VERSION,
        "locations": {"l1": {"id": "l1", "name": "Garage", "type": "room"}},
        "items": {"i1": {"id": "i1", "title": "Screws", "type": "tools"}},
        "isbn_mappings": {},
    }

    # Act
    await store.async_save(payload)
    loaded = await store.async_load()

    # Assert
    assert loaded == payload
    # Callers get a copy, not the cached object
    loaded["items"].clear()
    assert (await store.async_load())["items"]


@pytest.mark.asyncio
async def test_save_fills_missing_collections(backend) -> None:
    store = _domain_store(backend)

    await store.async_save({"items": {}})

    assert backend.structured()["isbn_mappings"] == {}
    assert backend.structured()["schema_version"] == CURRENT_SCHEMA_VERSION


@pytest.mark.asyncio
async def test_older_payload_is_upgraded_and_written_back(backend) -> None:
    # Arrange
    backend.data[STORAGE_KEY] = {
        "schema_version": 1,
        "locations": {
            "a": {"id": "a", "name": "Attic", "parent_id": None, "path": {"display_path": "Attic"}},
            "b": {"id": "b", "name": "Crate", "parent_id": "a"},
        },
        "items": {},
    }
    store = _domain_store(backend)

    # Act
    data = await store.async_load()

    # Assert
    assert data["schema_version"] == CURRENT_SCHEMA_VERSION
    assert data["locations"]["a"]["type"] == "room"
    assert data["locations"]["b"]["type"] == "box"
    assert "path" not in data["locations"]["a"]
    assert data["isbn_mappings"] == {}
    assert backend.structured()["schema_version"] == CURRENT_SCHEMA_VERSION
    assert backend.saves[STORAGE_KEY] == 1


@pytest.mark.asyncio
async def test_corrupted_payload_raises(backend) -> None:
    backend.data[STORAGE_KEY] = ["not", "a", "dict"]
    store = _domain_store(backend)

    with pytest.raises(StorageIOError):
        await store.async_load()


@pytest.mark.asyncio
async def test_newer_payload_raises_and_is_not_overwritten(backend) -> None:
    newer = {"schema_version": CURRENT_SCHEMA_VERSION + 1, "items": {}}
    backend.data[STORAGE_KEY] = dict(newer)
    store = _domain_store(backend)

    with pytest.raises(StorageIOError):
        await store.async_load()

    assert backend.structured() == newer


@pytest.mark.asyncio
async def test_read_and_write_failures_raise_storage_io_error(backend) -> None:
    store = _domain_store(backend)

    backend.fail_load.add(STORAGE_KEY)
    with pytest.raises(StorageIOError):
        await store.async_load()

    backend.fail_save.add(STORAGE_KEY)
    with pytest.raises(StorageIOError):
        await store.async_save({"items": {}})


@pytest.mark.asyncio
async def test_async_persist_uses_context_store(backend) -> None:
    context = StorageContext(store_factory=backend.factory)

    await async_persist(context, {"items": {"x": {"id": "x"}}})

    assert backend.structured()["items"] == {"x": {"id": "x"}}


def test_context_requires_hass_or_factory() -> None:
    with pytest.raises(ValueError):
        StorageContext()


@pytest.mark.asyncio
async def test_legacy_store_reads_blobs_and_flags(backend) -> None:
    # Arrange
    backend.legacy().update({"savedLocations": "[]", "locationsMigrated": True, "odd": 3})
    store = _legacy_store(backend)

    # Act / Assert
    assert await store.async_get_blob("savedLocations") == "[]"
    assert await store.async_get_blob("missing") is None
    assert await store.async_get_flag("locationsMigrated") is True
    assert await store.async_get_flag("inventoryItemsMigrated") is False
    with pytest.raises(StorageIOError):
        await store.async_get_blob("odd")


@pytest.mark.asyncio
async def test_legacy_store_write_keeps_other_keys(backend) -> None:
    backend.legacy()["savedLocations"] = "[]"
    store = _legacy_store(backend)

    await store.async_set_flag("locationsMigrated", True)
    await store.async_set_blob("isbnMappings", "[]")

    assert backend.legacy() == {
        "savedLocations": "[]",
        "locationsMigrated": True,
        "isbnMappings": "[]",
    }


@pytest.mark.asyncio
async def test_legacy_store_failed_write_is_not_adopted(backend) -> None:
    store = _legacy_store(backend)
    backend.fail_save.add(LEGACY_STORAGE_KEY)

    with pytest.raises(StorageIOError):
        await store.async_set_flag("locationsMigrated", True)

    assert await store.async_get_flag("locationsMigrated") is False


@pytest.mark.asyncio
async def test_legacy_store_unreadable_or_corrupted(backend) -> None:
    backend.fail_load.add(LEGACY_STORAGE_KEY)
    with pytest.raises(StorageIOError):
        await _legacy_store(backend).async_get_flag("locationsMigrated")

    backend.fail_load.clear()
    backend.data[LEGACY_STORAGE_KEY] = "garbage"
    with pytest.raises(StorageIOError):
        await _legacy_store(backend).async_get_blob("savedLocations")
