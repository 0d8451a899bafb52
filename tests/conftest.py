"""Shared fixtures for offline tests.

Persistence is kept in memory by handing ``StorageContext`` a store factory
that returns ``MemoryStore`` doubles. A ``MemoryBackend`` holds the data for
every storage key and can be told to fail reads or writes for a key, which is
how storage and migration failure paths are exercised.
"""

from __future__ import annotations

import os
import sys
from copy import deepcopy
from pathlib import Path
from typing import Any

import pytest

# Only load pytest-asyncio explicitly when plugin auto-loading is disabled.
if os.environ.get("PYTEST_DISABLE_PLUGIN_AUTOLOAD") == "1":
    pytest_plugins = ("pytest_asyncio.plugin",)

# Ensure project root is on sys.path for module imports
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from custom_components.pocket_dimension.storage import (  # noqa: E402
    LEGACY_STORAGE_KEY,
    STORAGE_KEY,
    StorageContext,
)


class MemoryBackend:
    """Data for every storage key plus per-key failure switches."""

    def __init__(self) -> None:
        self.data: dict[str, Any] = {}
        self.fail_load: set[str] = set()
        self.fail_save: set[str] = set()
        self.saves: dict[str, int] = {}

    def factory(self, key: str, version: int) -> MemoryStore:
        return MemoryStore(self, key, version)

    def legacy(self) -> dict[str, Any]:
        return self.data.setdefault(LEGACY_STORAGE_KEY, {})

    def structured(self) -> dict[str, Any] | None:
        return self.data.get(STORAGE_KEY)


class MemoryStore:
    """Stand-in for Home Assistant's Store bound to one key of a MemoryBackend."""

    def __init__(self, backend: MemoryBackend, key: str, version: int) -> None:
        self.backend = backend
        self.key = key
        self.version = version

    async def async_load(self) -> Any:
        if self.key in self.backend.fail_load:
            raise OSError(f"simulated read failure for {self.key}")
        return deepcopy(self.backend.data.get(self.key))

    async def async_save(self, data: Any) -> None:
        if self.key in self.backend.fail_save:
            raise OSError(f"simulated write failure for {self.key}")
        self.backend.data[self.key] = deepcopy(data)
        self.backend.saves[self.key] = self.backend.saves.get(self.key, 0) + 1


@pytest.fixture
def backend() -> MemoryBackend:
    return MemoryBackend()


@pytest.fixture
def context(backend: MemoryBackend) -> StorageContext:
    return StorageContext(store_factory=backend.factory)
