"""Item repository for Pocket Dimension.

Holds the inventory items and keeps every item's ``location_id`` consistent
with the location tree. Writes that name a location take the locations lock
then the items lock, so the location cannot disappear between the existence
check and the commit. The location store calls ``orphan_items`` when it
removes a subtree.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .const import DOMAIN
from .events import ChangeEvent
from .exceptions import NotFoundError, ValidationError
from .models import (
    CollectionType,
    InventoryItem,
    ItemCreate,
    ItemUpdate,
    apply_item_update,
    create_item_from_create,
    item_from_dict,
    item_to_dict,
    normalize_text_for_sort,
    orphan_item,
    parse_collection_type,
    parse_uuid4,
)
from .storage import StorageContext

LOGGER = logging.getLogger(__name__)

RECENT_ITEMS_DEFAULT_LIMIT: int = 5


@dataclass(frozen=True)
class _Snapshot:
    items_by_id: Mapping[str, InventoryItem] = field(default_factory=dict)
    item_ids_by_location_id: Mapping[str, frozenset[str]] = field(default_factory=dict)


def _index_locations(items: Iterable[InventoryItem]) -> dict[str, frozenset[str]]:
    buckets: dict[str, set[str]] = {}
    for item in items:
        if item.location_id is not None:
            buckets.setdefault(str(item.location_id), set()).add(str(item.id))
    return {k: frozenset(v) for k, v in buckets.items()}


def _title_key(item: InventoryItem) -> tuple[str, str]:
    return (normalize_text_for_sort(item.title), str(item.id))


def _volume_key(item: InventoryItem) -> tuple[int, int, str, str]:
    # Unnumbered volumes sort after numbered ones
    if item.volume is None:
        return (1, 0, *_title_key(item))
    return (0, item.volume, *_title_key(item))


def _group_by(items: list[InventoryItem], attr: str) -> list[tuple[str, list[InventoryItem]]]:
    """Group ``items`` by a text attribute, case-insensitively, sorted by group."""

    labels: dict[str, str] = {}
    groups: dict[str, list[InventoryItem]] = {}
    for item in items:
        value = getattr(item, attr)
        if not value:
            continue
        key = normalize_text_for_sort(value)
        labels.setdefault(key, value)
        groups.setdefault(key, []).append(item)
    return [(labels[key], groups[key]) for key in sorted(groups)]


class ItemRepository:
    """Inventory items with location referential integrity."""

    def __init__(
        self, context: StorageContext, location_exists: Callable[[uuid.UUID], bool]
    ) -> None:
        self._context = context
        self._location_exists = location_exists
        self._snapshot = _Snapshot()

    # -----------------------------
    # Internal helpers
    # -----------------------------

    def _require(self, snap: _Snapshot, item_id: str | uuid.UUID) -> InventoryItem:
        try:
            key = str(parse_uuid4(item_id, field_name="item_id"))
        except ValidationError:
            key = None
        item = snap.items_by_id.get(key) if key is not None else None
        if item is None:
            raise NotFoundError("item not found", missing_ids=[str(item_id)])
        return item

    def _commit(self, items_by_id: dict[str, InventoryItem]) -> None:
        self._snapshot = _Snapshot(
            items_by_id=items_by_id,
            item_ids_by_location_id=_index_locations(items_by_id.values()),
        )

    def _notify(self, action: str, ids: Iterable[uuid.UUID]) -> None:
        self._context.notifier.notify(
            ChangeEvent(collection="items", action=action, ids=tuple(str(i) for i in ids))
        )

    # -----------------------------
    # Public API: mutations
    # -----------------------------

    def add(self, payload: ItemCreate) -> InventoryItem:
        """Validate and append a new item.

        Raises ValidationError for malformed fields and InvalidLocationError
        when ``location_id`` does not name an existing location.
        """

        with self._context.locations_lock, self._context.items_lock:
            item = create_item_from_create(payload, location_exists=self._location_exists)
            staged = dict(self._snapshot.items_by_id)
            staged[str(item.id)] = item
            self._commit(staged)

        LOGGER.debug(
            "Item created",
            extra={
                "domain": DOMAIN,
                "op": "add_item",
                "item_id": str(item.id),
                "location_id": str(item.location_id) if item.location_id else None,
            },
        )
        self._notify("added", [item.id])
        return item

    def update(self, item_id: str | uuid.UUID, changes: ItemUpdate) -> InventoryItem:
        """Validate ``changes`` against the current item and swap in the result.

        On any error the stored item is left as it was.
        """

        with self._context.locations_lock, self._context.items_lock:
            snap = self._snapshot
            current = self._require(snap, item_id)
            updated = apply_item_update(current, changes, location_exists=self._location_exists)
            staged = dict(snap.items_by_id)
            staged[str(current.id)] = updated
            self._commit(staged)

        LOGGER.debug(
            "Item updated",
            extra={
                "domain": DOMAIN,
                "op": "update_item",
                "item_id": str(current.id),
                "fields": sorted(changes),
            },
        )
        self._notify("updated", [updated.id])
        return updated

    def delete(self, item_id: str | uuid.UUID) -> None:
        with self._context.items_lock:
            snap = self._snapshot
            current = self._require(snap, item_id)
            staged = dict(snap.items_by_id)
            staged.pop(str(current.id))
            self._commit(staged)

        LOGGER.debug(
            "Item deleted",
            extra={"domain": DOMAIN, "op": "delete_item", "item_id": str(current.id)},
        )
        self._notify("removed", [current.id])

    def bulk_delete(self, item_ids: Iterable[str | uuid.UUID]) -> list[uuid.UUID]:
        """Delete every listed item, or none of them.

        If any id is unknown nothing is deleted and NotFoundError is raised with
        the unknown ids on ``missing_ids``. Duplicate ids are collapsed.
        """

        requested = list(item_ids)
        with self._context.items_lock:
            snap = self._snapshot
            found: dict[str, InventoryItem] = {}
            missing: list[str] = []
            for raw in requested:
                try:
                    item = self._require(snap, raw)
                except NotFoundError:
                    missing.append(str(raw))
                    continue
                found[str(item.id)] = item
            if missing:
                LOGGER.warning(
                    "Bulk delete rejected: unknown item ids",
                    extra={
                        "domain": DOMAIN,
                        "op": "bulk_delete_items",
                        "requested": len(requested),
                        "missing_ids": missing,
                    },
                )
                raise NotFoundError(
                    f"{len(missing)} item(s) not found; nothing deleted", missing_ids=missing
                )
            staged = {k: v for k, v in snap.items_by_id.items() if k not in found}
            self._commit(staged)

        deleted = [item.id for item in found.values()]
        LOGGER.debug(
            "Items bulk deleted",
            extra={"domain": DOMAIN, "op": "bulk_delete_items", "count": len(deleted)},
        )
        if deleted:
            self._notify("removed", deleted)
        return deleted

    def orphan_items(self, location_ids: Iterable[uuid.UUID]) -> list[uuid.UUID]:
        """Clear ``location_id`` on every item stored in one of ``location_ids``.

        Items are never deleted here. Returns the ids of the orphaned items.
        """

        with self._context.items_lock:
            snap = self._snapshot
            affected: set[str] = set()
            for location_id in location_ids:
                affected |= snap.item_ids_by_location_id.get(str(location_id), frozenset())
            if not affected:
                return []
            staged = dict(snap.items_by_id)
            for key in affected:
                staged[key] = orphan_item(staged[key])
            self._commit(staged)

        orphaned = [snap.items_by_id[k].id for k in sorted(affected)]
        LOGGER.debug(
            "Items orphaned",
            extra={"domain": DOMAIN, "op": "orphan_items", "count": len(orphaned)},
        )
        self._notify("orphaned", orphaned)
        return orphaned

    # -----------------------------
    # Public API: reads
    # -----------------------------

    def get(self, item_id: str | uuid.UUID) -> InventoryItem:
        return self._require(self._snapshot, item_id)

    def all_items(self) -> list[InventoryItem]:
        return sorted(self._snapshot.items_by_id.values(), key=_title_key)

    def count(self) -> int:
        return len(self._snapshot.items_by_id)

    def items_in_location(self, location_id: str | uuid.UUID) -> list[InventoryItem]:
        snap = self._snapshot
        keys = snap.item_ids_by_location_id.get(str(location_id).lower(), frozenset())
        return sorted((snap.items_by_id[k] for k in keys), key=_title_key)

    def items_in_subtree(self, location_ids: Iterable[str | uuid.UUID]) -> list[InventoryItem]:
        """Items stored directly in any of ``location_ids``.

        Pass ``LocationStore.subtree_ids`` to cover a whole subtree.
        """

        snap = self._snapshot
        keys: set[str] = set()
        for location_id in location_ids:
            keys |= snap.item_ids_by_location_id.get(str(location_id).lower(), frozenset())
        return sorted((snap.items_by_id[k] for k in keys), key=_title_key)

    def has_items_in_location(self, location_id: str | uuid.UUID) -> bool:
        return bool(self._snapshot.item_ids_by_location_id.get(str(location_id).lower()))

    def orphaned_items(self) -> list[InventoryItem]:
        return [item for item in self.all_items() if item.location_id is None]

    def items_by_type(self, item_type: str | CollectionType) -> list[InventoryItem]:
        wanted = parse_collection_type(item_type)
        return [item for item in self.all_items() if item.type is wanted]

    def items_in_series(self, series: str) -> list[InventoryItem]:
        needle = normalize_text_for_sort(series)
        matches = [
            item
            for item in self._snapshot.items_by_id.values()
            if item.series and normalize_text_for_sort(item.series) == needle
        ]
        return sorted(matches, key=_volume_key)

    def items_by_author(self, author: str) -> list[InventoryItem]:
        needle = normalize_text_for_sort(author)
        return [
            item
            for item in self.all_items()
            if item.author and normalize_text_for_sort(item.author) == needle
        ]

    def series_groups(
        self, item_type: str | CollectionType = CollectionType.MANGA
    ) -> list[tuple[str, list[InventoryItem]]]:
        """Group items of ``item_type`` by series, volumes in order.

        Series names are matched case-insensitively; the group is labelled
        with the spelling of its first item by title. Items without a series
        are left out.
        """

        return [
            (label, sorted(members, key=_volume_key))
            for label, members in _group_by(self.items_by_type(item_type), "series")
        ]

    def author_groups(
        self, item_type: str | CollectionType = CollectionType.BOOKS
    ) -> list[tuple[str, list[InventoryItem]]]:
        return _group_by(self.items_by_type(item_type), "author")

    def recent_items(self, limit: int = RECENT_ITEMS_DEFAULT_LIMIT) -> list[InventoryItem]:
        """Most recently added items first."""

        if limit <= 0:
            return []
        ordered = sorted(
            self._snapshot.items_by_id.values(),
            key=lambda item: (item.date_added, str(item.id)),
            reverse=True,
        )
        return ordered[:limit]

    def counts(self) -> dict[str, int]:
        items = self._snapshot.items_by_id.values()
        counts = {"items_total": 0, "orphaned_total": 0}
        for item_type in CollectionType:
            counts[f"{item_type.value}_total"] = 0
        for item in items:
            counts["items_total"] += 1
            counts[f"{item.type.value}_total"] += 1
            if item.location_id is None:
                counts["orphaned_total"] += 1
        return counts

    # -----------------------------
    # Persistence: export/import
    # -----------------------------

    def export_state(self) -> dict[str, Any]:
        snap = self._snapshot
        return {k: item_to_dict(snap.items_by_id[k]) for k in sorted(snap.items_by_id)}

    def load_state(
        self,
        data: Mapping[str, Any] | Iterable[InventoryItem],
        location_exists: Callable[[uuid.UUID], bool] | None = None,
    ) -> list[uuid.UUID]:
        """Replace all items with persisted records.

        Malformed records are dropped with a warning. References to locations
        that do not exist are cleared (the item is orphaned, not dropped).
        Returns the ids of items orphaned during the load.
        """

        exists = location_exists or self._location_exists
        records = data.values() if isinstance(data, Mapping) else data
        loaded: dict[str, InventoryItem] = {}
        orphaned: list[uuid.UUID] = []
        for record in records:
            try:
                item = record if isinstance(record, InventoryItem) else item_from_dict(record)
            except ValidationError as exc:
                LOGGER.warning(
                    "Dropping malformed item record: %s",
                    exc,
                    extra={"domain": DOMAIN, "op": "load_items"},
                )
                continue
            if item.location_id is not None and not exists(item.location_id):
                LOGGER.warning(
                    "Item references a missing location; clearing it",
                    extra={
                        "domain": DOMAIN,
                        "op": "load_items",
                        "item_id": str(item.id),
                        "location_id": str(item.location_id),
                    },
                )
                item = orphan_item(item)
                orphaned.append(item.id)
            loaded[str(item.id)] = item

        with self._context.items_lock:
            self._commit(loaded)
        return orphaned
