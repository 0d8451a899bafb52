"""Nesting rules for storage location types.

A static policy: which location types may be placed inside which. Root
locations (no parent) are unconstrained. The table models physical nesting,
so a box can hold nothing and a shelf can only hold boxes.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Final

from .exceptions import ValidationError


class LocationType(StrEnum):
    """Kinds of storage location."""

    ROOM = "room"
    SHELF = "shelf"
    CABINET = "cabinet"
    DRAWER = "drawer"
    BOX = "box"

    @property
    def label(self) -> str:
        return self.value.capitalize()

    @property
    def allowed_child_types(self) -> frozenset[LocationType]:
        return ALLOWED_CHILD_TYPES[self]

    @property
    def can_have_children(self) -> bool:
        return bool(ALLOWED_CHILD_TYPES[self])


ALLOWED_CHILD_TYPES: Final[dict[LocationType, frozenset[LocationType]]] = {
    LocationType.ROOM: frozenset(
        {LocationType.SHELF, LocationType.CABINET, LocationType.DRAWER, LocationType.BOX}
    ),
    LocationType.SHELF: frozenset({LocationType.BOX}),
    LocationType.CABINET: frozenset({LocationType.DRAWER, LocationType.BOX}),
    LocationType.DRAWER: frozenset({LocationType.BOX}),
    LocationType.BOX: frozenset(),
}


def parse_location_type(value: str | LocationType, *, field_name: str = "type") -> LocationType:
    """Parse a location type, case-insensitively.

    Raises ValidationError for unknown values.
    """

    if isinstance(value, LocationType):
        return value
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be one of: {_choices()}")
    try:
        return LocationType(value.strip().lower())
    except ValueError as exc:
        raise ValidationError(f"{field_name} must be one of: {_choices()}") from exc


def can_contain(parent_type: LocationType | None, child_type: LocationType) -> bool:
    """Return True if ``child_type`` may be placed under ``parent_type``.

    ``None`` stands for the root level, which accepts every type.
    """

    if parent_type is None:
        return True
    return child_type in ALLOWED_CHILD_TYPES[parent_type]


def validate_nesting(parent_type: LocationType | None, child_type: LocationType) -> None:
    """Raise ValidationError when ``child_type`` cannot live under ``parent_type``."""

    if not can_contain(parent_type, child_type):
        raise ValidationError(f"a {parent_type} cannot contain a {child_type}")


def _choices() -> str:
    return ", ".join(t.value for t in LocationType)
