"""Typed models and validation helpers for Pocket Dimension.

This module defines the persisted shapes for StorageLocation, InventoryItem and
ISBNMapping, along with lightweight input schemas for create/update operations.
It also provides validation and normalization helpers to enforce field
invariants, and the converters between models and their persisted dicts (both
the structured shape and the camelCase shape found in the legacy flat store).

The intent is to keep these models framework-agnostic and free of I/O. The
stores compose these helpers; referential checks that need the location tree
are passed in as callables.
"""

from __future__ import annotations

import re
import unicodedata
import uuid
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from decimal import Decimal, InvalidOperation
from enum import StrEnum
from typing import Any, Final, TypedDict

from .exceptions import InvalidLocationError, ValidationError
from .rules import LocationType, parse_location_type

NAME_MAX_LENGTH: Final[int] = 120
TITLE_MAX_LENGTH: Final[int] = 500

# Legacy records store dates as seconds since 2001-01-01T00:00:00Z
APPLE_REFERENCE_EPOCH: Final[datetime] = datetime(2001, 1, 1, tzinfo=UTC)
# Stamp for legacy records that carry no usable date; fixed so reruns match
LEGACY_UNDATED: Final[str] = "2001-01-01T00:00:00Z"

LocationExists = Callable[[uuid.UUID], bool]


class CollectionType(StrEnum):
    """Item taxonomy, independent of location types."""

    BOOKS = "books"
    MANGA = "manga"
    COMICS = "comics"
    GAMES = "games"
    COLLECTIBLES = "collectibles"
    ELECTRONICS = "electronics"
    TOOLS = "tools"

    @property
    def label(self) -> str:
        return self.value.capitalize()

    @property
    def is_literature(self) -> bool:
        return self in LITERATURE_TYPES


LITERATURE_TYPES: Final[frozenset[CollectionType]] = frozenset(
    {CollectionType.BOOKS, CollectionType.MANGA, CollectionType.COMICS}
)


class ItemCondition(StrEnum):
    """Physical condition of an item."""

    NEW = "New"
    LIKE_NEW = "Like New"
    GOOD = "Good"
    FAIR = "Fair"
    POOR = "Poor"


@dataclass(frozen=True)
class StorageLocation:
    """Persisted shape for a storage location node."""

    id: uuid.UUID
    name: str
    type: LocationType
    parent_id: uuid.UUID | None = None
    created_at: str = ""
    updated_at: str = ""


@dataclass(frozen=True)
class InventoryItem:
    """Persisted shape for an inventory item.

    Only ``title``, ``type`` and ``location_id`` take part in invariants; the
    remaining attributes are descriptive payload.
    """

    id: uuid.UUID
    title: str
    type: CollectionType
    location_id: uuid.UUID | None = None
    condition: ItemCondition = ItemCondition.GOOD
    series: str | None = None
    volume: int | None = None
    author: str | None = None
    manufacturer: str | None = None
    publisher: str | None = None
    isbn: str | None = None
    barcode: str | None = None
    price: Decimal | None = None
    notes: str | None = None
    synopsis: str | None = None
    thumbnail_url: str | None = None
    purchase_date: str | None = None  # YYYY-MM-DD
    original_publish_date: str | None = None  # YYYY-MM-DD
    date_added: str = ""
    updated_at: str = ""

    @property
    def creator(self) -> str | None:
        if self.type.is_literature:
            return self.author
        if self.type is CollectionType.GAMES:
            return self.manufacturer
        return None


@dataclass(frozen=True)
class ISBNMapping:
    """Correction from a misprinted ISBN to the right Google Books volume."""

    incorrect_isbn: str
    correct_google_books_id: str
    title: str
    is_reprint: bool = False
    date_added: str = ""

    @property
    def id(self) -> str:
        return self.incorrect_isbn


class ItemCreate(TypedDict, total=False):
    """Creation input for InventoryItem. Only 'title' and 'type' are required."""

    title: str
    type: str
    location_id: str | None
    condition: str
    series: str | None
    volume: int | None
    author: str | None
    manufacturer: str | None
    publisher: str | None
    isbn: str | None
    barcode: str | None
    price: str | float | int | None
    notes: str | None
    synopsis: str | None
    thumbnail_url: str | None
    purchase_date: str | None
    original_publish_date: str | None


class ItemUpdate(ItemCreate, total=False):
    """Update input for InventoryItem. All fields optional; None clears nullable fields."""


# Optional text payload fields copied through after a None/str check
_TEXT_FIELDS: Final[tuple[str, ...]] = (
    "series",
    "author",
    "manufacturer",
    "publisher",
    "isbn",
    "barcode",
    "notes",
    "synopsis",
    "thumbnail_url",
)
_DATE_FIELDS: Final[tuple[str, ...]] = ("purchase_date", "original_publish_date")


# -----------------------------
# Utility helpers
# -----------------------------


def parse_uuid4(value: str | uuid.UUID, *, field_name: str = "id") -> uuid.UUID:
    """Parse a UUID value and ensure it is version 4.

    Accepts an existing uuid.UUID and returns it unchanged.
    Raises ValidationError when parsing fails or version is not 4.
    """

    UUID_VERSION_V4: Final[int] = 4
    if isinstance(value, uuid.UUID):
        if value.version != UUID_VERSION_V4:
            raise ValidationError(f"{field_name} must be a UUID v4")
        return value
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a UUID v4 string")
    try:
        parsed = uuid.UUID(value.strip())
    except ValueError as exc:
        raise ValidationError(f"{field_name} must be a UUID v4 string") from exc
    if parsed.version != UUID_VERSION_V4:
        raise ValidationError(f"{field_name} must be a UUID v4")
    return parsed


def parse_optional_uuid4(value: str | uuid.UUID | None, *, field_name: str) -> uuid.UUID | None:
    if value is None:
        return None
    return parse_uuid4(value, field_name=field_name)


def iso_utc_now() -> str:
    """Return ISO-8601 UTC timestamp string with 'Z'."""

    now = datetime.now(tz=UTC)
    # No microseconds to keep it compact and stable
    return now.replace(microsecond=0).isoformat().replace("+00:00", "Z")


def new_uuid4() -> uuid.UUID:
    """Generate a UUID v4 object."""

    return uuid.uuid4()


DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def normalize_date_yyyy_mm_dd(value: str, *, field_name: str = "date") -> str:
    """Validate and normalize a YYYY-MM-DD date string.

    Returns the normalized value or raises ValidationError.
    """

    if not isinstance(value, str) or not DATE_RE.match(value):
        raise ValidationError(f"{field_name} must be in 'YYYY-MM-DD' format")
    try:
        # This ensures the date components are valid (e.g., no Feb 30)
        datetime.strptime(value, "%Y-%m-%d")
    except ValueError as exc:
        raise ValidationError(f"{field_name} must be a valid calendar date (YYYY-MM-DD)") from exc
    return value


def normalize_text_for_sort(text: str) -> str:
    """Return a case-insensitive, accent-folded string for lexicographic sorting."""

    if not text:
        return ""
    nfkd = unicodedata.normalize("NFKD", text)
    ascii_text = nfkd.encode("ascii", "ignore").decode("ascii")
    collapsed = " ".join(ascii_text.split())
    return collapsed.casefold()


def validate_location_name(name: str) -> str:
    """Validate a location name and return a trimmed value."""

    if not isinstance(name, str):
        raise ValidationError("name is required and must be a non-empty string")
    trimmed = name.strip()
    if len(trimmed) == 0:
        raise ValidationError("name is required and must be a non-empty string")
    if len(trimmed) > NAME_MAX_LENGTH:
        raise ValidationError(f"name must be at most {NAME_MAX_LENGTH} characters")
    return trimmed


def validate_title(title: str) -> str:
    """Validate an item title and return a trimmed value."""

    if not isinstance(title, str) or len(title.strip()) == 0:
        raise ValidationError("title is required and must be a non-empty string")
    trimmed = title.strip()
    if len(trimmed) > TITLE_MAX_LENGTH:
        raise ValidationError(f"title must be at most {TITLE_MAX_LENGTH} characters")
    return trimmed


def parse_collection_type(value: str | CollectionType) -> CollectionType:
    if isinstance(value, CollectionType):
        return value
    if isinstance(value, str):
        try:
            return CollectionType(value.strip().lower())
        except ValueError:
            pass
    choices = ", ".join(t.value for t in CollectionType)
    raise ValidationError(f"type must be one of: {choices}")


def parse_condition(value: str | ItemCondition) -> ItemCondition:
    """Parse a condition by value or name, case-insensitively ("like new", "LIKE_NEW")."""

    if isinstance(value, ItemCondition):
        return value
    if isinstance(value, str):
        needle = value.strip().casefold().replace("_", " ")
        for condition in ItemCondition:
            if condition.value.casefold() == needle:
                return condition
    choices = ", ".join(c.value for c in ItemCondition)
    raise ValidationError(f"condition must be one of: {choices}")


def parse_price(value: Any) -> Decimal | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError("price must be a non-negative number")
    try:
        price = Decimal(str(value))
    except InvalidOperation as exc:
        raise ValidationError("price must be a non-negative number") from exc
    if not price.is_finite() or price < 0:
        raise ValidationError("price must be a non-negative number")
    return price


def _parse_volume(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError("volume must be an integer >= 0 or null")
    return value


def _parse_optional_text(value: Any, *, field_name: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string or null")
    trimmed = value.strip()
    return trimmed or None


def _parse_optional_date(value: Any, *, field_name: str) -> str | None:
    if value is None:
        return None
    return normalize_date_yyyy_mm_dd(value, field_name=field_name)


def _resolve_location(
    raw: str | uuid.UUID | None, location_exists: LocationExists | None
) -> uuid.UUID | None:
    """Parse ``raw`` and confirm the location exists.

    Malformed and unknown ids both raise InvalidLocationError: the caller asked
    to file the item somewhere that does not exist.
    """

    if raw is None:
        return None
    try:
        location_id = parse_uuid4(raw, field_name="location_id")
    except ValidationError as exc:
        raise InvalidLocationError("location_id must reference an existing location") from exc
    if location_exists is None or not location_exists(location_id):
        raise InvalidLocationError("location_id must reference an existing location")
    return location_id


def monotonic_timestamp_after(previous_ts: str) -> str:
    """Return a UTC ISO-8601 'Z' timestamp strictly after previous_ts.

    If iso_utc_now() is not greater than the previous timestamp (due to second
    resolution), bump by one second to maintain monotonicity.
    """

    now_dt = datetime.now(tz=UTC).replace(microsecond=0)
    try:
        prev_dt = _parse_iso8601_utc(previous_ts)
    except ValidationError:
        prev_dt = now_dt - timedelta(seconds=1)
    if now_dt <= prev_dt:
        now_dt = prev_dt + timedelta(seconds=1)
    return now_dt.isoformat().replace("+00:00", "Z")


def _parse_iso8601_utc(ts: str) -> datetime:
    try:
        if not isinstance(ts, str) or not ts.endswith("Z"):
            raise ValueError
        return datetime.strptime(ts, "%Y-%m-%dT%H:%M:%SZ").replace(tzinfo=UTC)
    except ValueError as exc:
        raise ValidationError("timestamp must be an ISO-8601 UTC timestamp with 'Z'") from exc


# -----------------------------
# Creation and update helpers
# -----------------------------


def create_location(
    *, name: str, type: str | LocationType, parent_id: uuid.UUID | None
) -> StorageLocation:
    """Build a new StorageLocation with field validation applied.

    Parent existence and nesting are checked by the store.
    """

    created = iso_utc_now()
    return StorageLocation(
        id=new_uuid4(),
        name=validate_location_name(name),
        type=parse_location_type(type),
        parent_id=parent_id,
        created_at=created,
        updated_at=created,
    )


def touch_location(location: StorageLocation, **changes: Any) -> StorageLocation:
    """Return a copy of ``location`` with ``changes`` and a bumped updated_at."""

    return replace(location, **changes, updated_at=monotonic_timestamp_after(location.updated_at))


def create_item_from_create(
    payload: ItemCreate, *, location_exists: LocationExists | None = None
) -> InventoryItem:
    """Create a validated InventoryItem from an ItemCreate payload.

    Args:
        payload: Input fields from the caller.
        location_exists: Predicate used to confirm ``location_id``. Required
            when the payload names a location.
    """

    title = validate_title(payload.get("title"))  # type: ignore[arg-type]
    if "type" not in payload:
        raise ValidationError("type is required")
    item_type = parse_collection_type(payload["type"])  # type: ignore[arg-type]
    condition = parse_condition(payload.get("condition", ItemCondition.GOOD))

    text = {
        name: _parse_optional_text(payload.get(name), field_name=name) for name in _TEXT_FIELDS
    }
    dates = {
        name: _parse_optional_date(payload.get(name), field_name=name) for name in _DATE_FIELDS
    }
    volume = _parse_volume(payload.get("volume"))
    price = parse_price(payload.get("price"))
    location_id = _resolve_location(payload.get("location_id"), location_exists)

    created = iso_utc_now()
    return InventoryItem(
        id=new_uuid4(),
        title=title,
        type=item_type,
        location_id=location_id,
        condition=condition,
        volume=volume,
        price=price,
        date_added=created,
        updated_at=created,
        **text,
        **dates,
    )


def apply_item_update(
    item: InventoryItem, update: ItemUpdate, *, location_exists: LocationExists | None = None
) -> InventoryItem:
    """Apply an update payload and return a new, fully validated item.

    The input item is never modified, so a failed validation leaves the caller's
    current value intact.
    """

    changes: dict[str, Any] = {}
    if "title" in update:
        changes["title"] = validate_title(update["title"])  # type: ignore[arg-type]
    if "type" in update:
        changes["type"] = parse_collection_type(update["type"])  # type: ignore[arg-type]
    if "condition" in update:
        changes["condition"] = parse_condition(update["condition"])  # type: ignore[arg-type]
    for name in _TEXT_FIELDS:
        if name in update:
            changes[name] = _parse_optional_text(update[name], field_name=name)  # type: ignore[literal-required]
    for name in _DATE_FIELDS:
        if name in update:
            changes[name] = _parse_optional_date(update[name], field_name=name)  # type: ignore[literal-required]
    if "volume" in update:
        changes["volume"] = _parse_volume(update["volume"])
    if "price" in update:
        changes["price"] = parse_price(update["price"])
    if "location_id" in update:
        changes["location_id"] = _resolve_location(update["location_id"], location_exists)

    return replace(item, **changes, updated_at=monotonic_timestamp_after(item.updated_at))


def orphan_item(item: InventoryItem) -> InventoryItem:
    """Return a copy of ``item`` with its location reference cleared."""

    return replace(item, location_id=None, updated_at=monotonic_timestamp_after(item.updated_at))


def create_isbn_mapping(
    *, incorrect_isbn: str, correct_google_books_id: str, title: str, is_reprint: bool = False
) -> ISBNMapping:
    isbn = (incorrect_isbn or "").strip() if isinstance(incorrect_isbn, str) else ""
    books_id = (
        (correct_google_books_id or "").strip() if isinstance(correct_google_books_id, str) else ""
    )
    if not isbn:
        raise ValidationError("incorrect_isbn must be a non-empty string")
    if not books_id:
        raise ValidationError("correct_google_books_id must be a non-empty string")
    return ISBNMapping(
        incorrect_isbn=isbn,
        correct_google_books_id=books_id,
        title=validate_title(title),
        is_reprint=bool(is_reprint),
        date_added=iso_utc_now(),
    )


# -----------------------------
# Structured (de)serialization
# -----------------------------


def location_to_dict(location: StorageLocation) -> dict[str, Any]:
    return {
        "id": str(location.id),
        "name": location.name,
        "type": location.type.value,
        "parent_id": str(location.parent_id) if location.parent_id is not None else None,
        "created_at": location.created_at,
        "updated_at": location.updated_at,
    }


def location_from_dict(data: dict[str, Any]) -> StorageLocation:
    """Rebuild a StorageLocation from its structured dict.

    Raises ValidationError for malformed records.
    """

    if not isinstance(data, dict):
        raise ValidationError("location record must be an object")
    return StorageLocation(
        id=parse_uuid4(data.get("id"), field_name="location.id"),  # type: ignore[arg-type]
        name=validate_location_name(data.get("name")),  # type: ignore[arg-type]
        type=parse_location_type(data.get("type"), field_name="location.type"),  # type: ignore[arg-type]
        parent_id=parse_optional_uuid4(data.get("parent_id"), field_name="location.parent_id"),
        created_at=str(data.get("created_at") or ""),
        updated_at=str(data.get("updated_at") or ""),
    )


def item_to_dict(item: InventoryItem) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": str(item.id),
        "title": item.title,
        "type": item.type.value,
        "location_id": str(item.location_id) if item.location_id is not None else None,
        "condition": item.condition.value,
        "volume": item.volume,
        "price": str(item.price) if item.price is not None else None,
        "date_added": item.date_added,
        "updated_at": item.updated_at,
    }
    for name in (*_TEXT_FIELDS, *_DATE_FIELDS):
        data[name] = getattr(item, name)
    return data


def item_from_dict(data: dict[str, Any]) -> InventoryItem:
    """Rebuild an InventoryItem from its structured dict.

    Location existence is not checked here; loaders decide what to do with
    dangling references.
    """

    if not isinstance(data, dict):
        raise ValidationError("item record must be an object")
    return InventoryItem(
        id=parse_uuid4(data.get("id"), field_name="item.id"),  # type: ignore[arg-type]
        title=validate_title(data.get("title")),  # type: ignore[arg-type]
        type=parse_collection_type(data.get("type")),  # type: ignore[arg-type]
        location_id=parse_optional_uuid4(data.get("location_id"), field_name="item.location_id"),
        condition=parse_condition(data.get("condition") or ItemCondition.GOOD),
        volume=_parse_volume(data.get("volume")),
        price=parse_price(data.get("price")),
        date_added=str(data.get("date_added") or ""),
        updated_at=str(data.get("updated_at") or ""),
        **{name: data.get(name) for name in (*_TEXT_FIELDS, *_DATE_FIELDS)},
    )


def mapping_to_dict(mapping: ISBNMapping) -> dict[str, Any]:
    return {
        "incorrect_isbn": mapping.incorrect_isbn,
        "correct_google_books_id": mapping.correct_google_books_id,
        "title": mapping.title,
        "is_reprint": mapping.is_reprint,
        "date_added": mapping.date_added,
    }


def mapping_from_dict(data: dict[str, Any]) -> ISBNMapping:
    if not isinstance(data, dict):
        raise ValidationError("isbn mapping record must be an object")
    isbn = data.get("incorrect_isbn")
    books_id = data.get("correct_google_books_id")
    if not isinstance(isbn, str) or not isbn or not isinstance(books_id, str) or not books_id:
        raise ValidationError("isbn mapping record is missing its isbn or volume id")
    return ISBNMapping(
        incorrect_isbn=isbn,
        correct_google_books_id=books_id,
        title=str(data.get("title") or ""),
        is_reprint=bool(data.get("is_reprint", False)),
        date_added=str(data.get("date_added") or ""),
    )


# -----------------------------
# Legacy flat-store (camelCase) conversion
# -----------------------------


def legacy_date_to_iso(value: Any) -> str:
    """Convert a legacy date (reference-epoch seconds or ISO string) to ISO 'Z'.

    Missing or unknown shapes fall back to LEGACY_UNDATED, so a record is never
    lost over its timestamp and a rerun converts it identically.
    """

    if isinstance(value, bool):
        return LEGACY_UNDATED
    if isinstance(value, int | float):
        moment = APPLE_REFERENCE_EPOCH + timedelta(seconds=float(value))
        return moment.replace(microsecond=0).isoformat().replace("+00:00", "Z")
    if isinstance(value, str) and value:
        try:
            moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return LEGACY_UNDATED
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=UTC)
        return moment.astimezone(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")
    return LEGACY_UNDATED


def iso_to_legacy_date(value: str) -> float:
    try:
        moment = _parse_iso8601_utc(value)
    except ValidationError:
        moment = datetime.now(tz=UTC)
    return (moment - APPLE_REFERENCE_EPOCH).total_seconds()


def _legacy_day(value: Any) -> str | None:
    if value is None:
        return None
    return legacy_date_to_iso(value)[:10]


def mapping_from_legacy(data: dict[str, Any]) -> ISBNMapping:
    if not isinstance(data, dict):
        raise ValidationError("legacy isbn mapping must be an object")
    return mapping_from_dict(
        {
            "incorrect_isbn": data.get("incorrectISBN"),
            "correct_google_books_id": data.get("correctGoogleBooksID"),
            "title": data.get("title"),
            "is_reprint": data.get("isReprint", False),
            "date_added": legacy_date_to_iso(data.get("dateAdded")),
        }
    )


def mapping_to_legacy(mapping: ISBNMapping) -> dict[str, Any]:
    return {
        "incorrectISBN": mapping.incorrect_isbn,
        "correctGoogleBooksID": mapping.correct_google_books_id,
        "title": mapping.title,
        "isReprint": mapping.is_reprint,
        "dateAdded": iso_to_legacy_date(mapping.date_added),
    }


def location_from_legacy(data: dict[str, Any]) -> StorageLocation:
    if not isinstance(data, dict):
        raise ValidationError("legacy location must be an object")
    # Legacy locations carry no timestamps
    stamp = LEGACY_UNDATED
    return location_from_dict(
        {
            "id": str(data.get("id", "")).lower(),
            "name": data.get("name"),
            "type": data.get("type"),
            "parent_id": str(data["parentId"]).lower() if data.get("parentId") else None,
            "created_at": stamp,
            "updated_at": stamp,
        }
    )


def location_to_legacy(location: StorageLocation) -> dict[str, Any]:
    return {
        "id": str(location.id).upper(),
        "name": location.name,
        "type": location.type.value,
        "parentId": str(location.parent_id).upper() if location.parent_id else None,
    }


def item_from_legacy(data: dict[str, Any]) -> InventoryItem:
    if not isinstance(data, dict):
        raise ValidationError("legacy item must be an object")
    added = legacy_date_to_iso(data.get("dateAdded"))
    return item_from_dict(
        {
            "id": str(data.get("id", "")).lower(),
            "title": data.get("title"),
            "type": data.get("type"),
            "location_id": str(data["locationId"]).lower() if data.get("locationId") else None,
            "condition": data.get("condition"),
            "series": data.get("series"),
            "volume": data.get("volume"),
            "author": data.get("author"),
            "manufacturer": data.get("manufacturer"),
            "publisher": data.get("publisher"),
            "isbn": data.get("isbn"),
            "barcode": data.get("barcode"),
            "price": data.get("price"),
            "notes": data.get("notes"),
            "synopsis": data.get("synopsis"),
            "thumbnail_url": data.get("thumbnailURL"),
            "purchase_date": _legacy_day(data.get("purchaseDate")),
            "original_publish_date": _legacy_day(data.get("originalPublishDate")),
            "date_added": added,
            "updated_at": added,
        }
    )


def item_to_legacy(item: InventoryItem) -> dict[str, Any]:
    return {
        "id": str(item.id).upper(),
        "title": item.title,
        "type": item.type.value,
        "locationId": str(item.location_id).upper() if item.location_id else None,
        "condition": item.condition.value,
        "series": item.series,
        "volume": item.volume,
        "author": item.author,
        "manufacturer": item.manufacturer,
        "publisher": item.publisher,
        "isbn": item.isbn,
        "barcode": item.barcode,
        "price": float(item.price) if item.price is not None else None,
        "notes": item.notes,
        "synopsis": item.synopsis,
        "thumbnailURL": item.thumbnail_url,
        "purchaseDate": _day_to_legacy(item.purchase_date),
        "originalPublishDate": _day_to_legacy(item.original_publish_date),
        "dateAdded": iso_to_legacy_date(item.date_added),
    }


def _day_to_legacy(value: str | None) -> float | None:
    if value is None:
        return None
    return iso_to_legacy_date(f"{value}T00:00:00Z")
