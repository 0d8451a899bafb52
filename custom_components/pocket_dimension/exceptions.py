"""Exception taxonomy for the Pocket Dimension integration.

Defines a small hierarchy of exceptions used across the stores, the migration
coordinator and the services layer. These extend Home Assistant's
HomeAssistantError to ensure consistent behavior when surfaced through the
platform.

All exceptions accept a human-readable message. ``str(exception)`` returns the
message unchanged.
"""

from __future__ import annotations

from collections.abc import Iterable

from homeassistant.exceptions import HomeAssistantError


class PocketDimensionError(HomeAssistantError):
    """Base exception for Pocket Dimension errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class ValidationError(PocketDimensionError):
    """Raised when input fails validation or violates a nesting rule."""


class NotFoundError(PocketDimensionError):
    """Raised when an operation references an id that does not exist."""

    def __init__(self, message: str, *, missing_ids: Iterable[str] = ()) -> None:
        super().__init__(message)
        self.missing_ids: list[str] = list(missing_ids)


class InvalidLocationError(PocketDimensionError):
    """Raised when an item references a location that does not exist at write time."""


class CycleError(PocketDimensionError):
    """Raised when a re-parent would create a cycle, or stored parent links are broken."""


class StorageIOError(PocketDimensionError):
    """Raised when the underlying persistence fails or stored data is corrupted."""


class MigrationError(PocketDimensionError):
    """Raised when reading the legacy store or writing the structured store fails mid-migration."""
