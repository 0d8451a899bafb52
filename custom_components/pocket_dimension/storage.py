"""Persistent storage for Pocket Dimension.

Two stores live behind Home Assistant's Store helper:

* the structured store (``DomainStore``): schema-aware, keyed collections,
  the authoritative source once migration has completed::

    {
        "schema_version": int,
        "locations": {id -> LocationDict},
        "items": {id -> ItemDict},
        "isbn_mappings": {isbn -> MappingDict},
    }

* the legacy flat store (``LegacyStore``): a flat mapping of key -> JSON blob
  plus boolean completion flags, read once per cold start and consumed only
  by the migration coordinator (and mirrored afterwards for rollback).

``StorageContext`` bundles both stores with the per-collection writer locks
and the change notifier. It is built once during setup and handed to every
component; nothing reaches for ambient global state.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Callable
from copy import deepcopy
from typing import Any, Final, Protocol

from homeassistant.core import HomeAssistant
from homeassistant.helpers.storage import Store

from . import migrations
from .const import DOMAIN
from .events import ChangeNotifier
from .exceptions import StorageIOError

_LOGGER = logging.getLogger(__name__)

# Current schema version for structured payloads
CURRENT_SCHEMA_VERSION: Final[int] = 2

# Storage keys
STORAGE_KEY: Final[str] = "pocket_dimension_store"
LEGACY_STORAGE_KEY: Final[str] = "pocket_dimension_legacy"
LEGACY_STORAGE_VERSION: Final[int] = 1

COLLECTION_KEYS: Final[tuple[str, ...]] = ("locations", "items", "isbn_mappings")


class StoreLike(Protocol):
    """The part of Home Assistant's Store used here."""

    async def async_load(self) -> Any: ...

    async def async_save(self, data: Any) -> None: ...


StoreFactory = Callable[[str, int], StoreLike]


def _empty_payload() -> dict[str, Any]:
    """Create a new empty payload matching the current schema.

    Returns a fresh dict each time to avoid shared mutation across callers.
    """

    return {
        "schema_version": CURRENT_SCHEMA_VERSION,
        "locations": {},
        "items": {},
        "isbn_mappings": {},
    }


def _with_collections(data: dict[str, Any], version: int) -> dict[str, Any]:
    normalized = _empty_payload()
    normalized.update(data)
    for key in COLLECTION_KEYS:
        if not isinstance(normalized.get(key), dict):
            normalized[key] = {}
    normalized["schema_version"] = version
    return normalized


class DomainStore:
    """Schema-aware wrapper around Home Assistant's Store for the structured data."""

    def __init__(
        self,
        store: StoreLike,
        *,
        key: str = STORAGE_KEY,
        version: int = CURRENT_SCHEMA_VERSION,
    ) -> None:
        self._store = store
        self._key = key
        self._schema_version = version

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

        try:
            raw = await self._store.async_load()
        except Exception as exc:
            _LOGGER.error(
                "Failed to read structured store",
                extra={"domain": DOMAIN, "op": "load", "storage_key": self.key},
                exc_info=True,
            )
            raise StorageIOError("failed to read structured store") from exc
        if raw is None:
            return _empty_payload()

        migrated = await self.async_migrate_if_needed(raw)
        return deepcopy(migrated)

    async def async_save(self, data: dict[str, Any]) -> None:
        """Persist the dataset ensuring schema_version and collections are present."""

        payload = deepcopy(data) if isinstance(data, dict) else {}
        payload = _with_collections(payload, self._schema_version)
        try:
            await self._store.async_save(payload)
        except Exception as exc:
            _LOGGER.error(
                "Failed to write structured store",
                extra={"domain": DOMAIN, "op": "save", "storage_key": self.key},
                exc_info=True,
            )
            raise StorageIOError("failed to write structured store") from exc

    async def async_migrate_if_needed(self, raw: Any) -> dict[str, Any]:
        """Migrate ``raw`` payload to the current schema iff needed.

        If a migration occurs, persist the migrated payload back to storage.
        Returns the migrated (or normalized) payload.
        """

        if not isinstance(raw, dict):  # Corrupted or unexpected
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
            raise StorageIOError("corrupted storage payload: not a dict")

        from_version = int(raw.get("schema_version", 0))
        to_version = self._schema_version
        if from_version == to_version:
            return _with_collections(raw, to_version)
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
            raise StorageIOError("storage payload was written by a newer version")

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
            raise StorageIOError("storage migration failed") from exc

        migrated = _with_collections(migrated, to_version)
        await self.async_save(migrated)
        _LOGGER.info(
            "Structured store upgraded from schema %s to %s",
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
        return migrated


class LegacyStore:
    """Flat key -> value store predating the structured store.

    Values are JSON string blobs of serialized records, or booleans for
    completion flags. Loaded once; every write saves the whole mapping.
    """

    def __init__(self, store: StoreLike, *, key: str = LEGACY_STORAGE_KEY) -> None:
        self._store = store
        self._key = key
        self._data: dict[str, Any] | None = None
        self._load_lock = asyncio.Lock()

    @property
    def key(self) -> str:
        return self._key

    async def async_ensure_loaded(self) -> None:
        async with self._load_lock:
            if self._data is not None:
                return
            try:
                raw = await self._store.async_load()
            except Exception as exc:
                _LOGGER.error(
                    "Failed to read legacy store",
                    extra={"domain": DOMAIN, "op": "legacy_load", "storage_key": self.key},
                    exc_info=True,
                )
                raise StorageIOError("failed to read legacy store") from exc
            if raw is None:
                self._data = {}
            elif isinstance(raw, dict):
                self._data = dict(raw)
            else:
                _LOGGER.error(
                    "Corrupted legacy payload: expected dict, got %s",
                    type(raw).__name__,
                    extra={"domain": DOMAIN, "op": "legacy_load", "storage_key": self.key},
                )
                raise StorageIOError("corrupted legacy payload: not a dict")

    async def async_get_blob(self, key: str) -> str | None:
        await self.async_ensure_loaded()
        value = self._data.get(key)  # type: ignore[union-attr]
        if value is None:
            return None
        if not isinstance(value, str):
            raise StorageIOError(f"legacy value for {key} is not a serialized blob")
        return value

    async def async_get_flag(self, key: str) -> bool:
        await self.async_ensure_loaded()
        return self._data.get(key) is True  # type: ignore[union-attr]

    async def async_set_blob(self, key: str, blob: str) -> None:
        await self._async_set(key, blob)

    async def async_set_flag(self, key: str, value: bool) -> None:
        await self._async_set(key, bool(value))

    async def _async_set(self, key: str, value: Any) -> None:
        await self.async_ensure_loaded()
        staged = dict(self._data or {})
        staged[key] = value
        try:
            await self._store.async_save(staged)
        except Exception as exc:
            _LOGGER.error(
                "Failed to write legacy store",
                extra={
                    "domain": DOMAIN,
                    "op": "legacy_save",
                    "storage_key": self.key,
                    "legacy_key": key,
                },
                exc_info=True,
            )
            raise StorageIOError("failed to write legacy store") from exc
        # Only adopt the new value once it is durable
        self._data = staged


class StorageContext:
    """Explicitly constructed bundle of storage handles shared by the core.

    Lock order for cross-collection work is ``locations_lock`` then
    ``items_lock``. ``persist_lock`` serializes structured-store saves.
    """

    def __init__(
        self,
        hass: HomeAssistant | None = None,
        *,
        store_factory: StoreFactory | None = None,
        key: str = STORAGE_KEY,
        legacy_key: str = LEGACY_STORAGE_KEY,
    ) -> None:
        if store_factory is None:
            if hass is None:
                raise ValueError("either hass or store_factory is required")

            def store_factory(store_key: str, version: int) -> StoreLike:
                return Store(hass, version, store_key)

        self.structured = DomainStore(store_factory(key, CURRENT_SCHEMA_VERSION), key=key)
        self.legacy = LegacyStore(
            store_factory(legacy_key, LEGACY_STORAGE_VERSION), key=legacy_key
        )
        self.locations_lock = threading.RLock()
        self.items_lock = threading.RLock()
        self.persist_lock = asyncio.Lock()
        self.notifier = ChangeNotifier()


async def async_persist(context: StorageContext, payload: dict[str, Any]) -> None:
    """Persist ``payload`` to the structured store with exclusive locking.

    Raises StorageIOError when the write fails; callers decide whether to
    surface or retry.
    """

    async with context.persist_lock:
        start_time = time.monotonic()
        _LOGGER.debug(
            "Persisting structured state",
            extra={"domain": DOMAIN, "op": "persist_start"},
        )
        await context.structured.async_save(payload)
        elapsed = time.monotonic() - start_time
        _LOGGER.debug(
            "Structured state persisted",
            extra={
                "domain": DOMAIN,
                "op": "persist_complete",
                "elapsed_ms": int(elapsed * 1000),
            },
        )
