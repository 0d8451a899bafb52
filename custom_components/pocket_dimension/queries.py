"""Read-only queries over the location tree and the items.

All functions work on the current committed snapshots and never mutate.
"""

from __future__ import annotations

import uuid
from collections import deque
from collections.abc import Iterable
from typing import TypedDict

from .exceptions import NotFoundError
from .location_store import LocationStore
from .models import (
    CollectionType,
    InventoryItem,
    ItemCondition,
    StorageLocation,
    normalize_text_for_sort,
    parse_collection_type,
    parse_condition,
)


class SearchFilter(TypedDict, total=False):
    """Item search options; absent keys impose no constraint.

    - q: case-insensitive substring of the title
    - types: item must have one of these collection types
    - location_id: item stored in this location
    - include_subtree: widen ``location_id`` to its descendants
    - condition: exact condition match
    """

    q: str
    types: Iterable[str | CollectionType]
    location_id: str | uuid.UUID
    include_subtree: bool
    condition: str | ItemCondition


def root_locations(store: LocationStore) -> list[StorageLocation]:
    return store.children(None)


def find_in_subtree(
    store: LocationStore, root_id: str | uuid.UUID, name: str
) -> StorageLocation | None:
    """Find a location named ``name`` (case-insensitive) under ``root_id``.

    The root itself is considered. The first match in breadth-first order wins;
    None when there is no match or ``root_id`` is unknown.
    """

    root = store.location(root_id)
    if root is None:
        return None
    needle = normalize_text_for_sort(name)
    queue: deque[StorageLocation] = deque([root])
    seen: set[uuid.UUID] = set()
    while queue:
        current = queue.popleft()
        if current.id in seen:
            continue
        seen.add(current.id)
        if normalize_text_for_sort(current.name) == needle:
            return current
        queue.extend(store.children(current.id))
    return None


def search_locations(store: LocationStore, query: str) -> list[StorageLocation]:
    """Case-insensitive substring search ranked exact, then prefix, then the rest.

    Ties are broken alphabetically. An empty query returns nothing.
    """

    needle = normalize_text_for_sort(query or "")
    if not needle:
        return []

    def _rank(loc: StorageLocation) -> tuple[int, str, str]:
        name = normalize_text_for_sort(loc.name)
        if name == needle:
            tier = 0
        elif name.startswith(needle):
            tier = 1
        else:
            tier = 2
        return (tier, name, str(loc.id))

    matches = [loc for loc in store.all_locations() if needle in normalize_text_for_sort(loc.name)]
    return sorted(matches, key=_rank)


def search_items(
    items: Iterable[InventoryItem],
    flt: SearchFilter | None = None,
    *,
    locations: LocationStore | None = None,
) -> list[InventoryItem]:
    """Filter ``items`` with every present criterion AND-combined.

    ``include_subtree`` needs ``locations`` to expand the location filter; an
    unknown ``location_id`` matches nothing.
    """

    if not flt:
        return list(items)

    q = normalize_text_for_sort(flt.get("q") or "")
    types = (
        {parse_collection_type(t) for t in flt["types"]} if flt.get("types") else set()
    )
    condition = parse_condition(flt["condition"]) if flt.get("condition") else None

    location_ids: set[uuid.UUID] | None = None
    if flt.get("location_id"):
        location_ids = _location_scope(
            flt["location_id"], bool(flt.get("include_subtree")), locations
        )

    results: list[InventoryItem] = []
    for it in items:
        matches_q = (not q) or q in normalize_text_for_sort(it.title)
        matches_type = (not types) or it.type in types
        matches_condition = condition is None or it.condition is condition
        matches_location = location_ids is None or it.location_id in location_ids
        if matches_q and matches_type and matches_condition and matches_location:
            results.append(it)
    return results


def _location_scope(
    raw: str | uuid.UUID, include_subtree: bool, locations: LocationStore | None
) -> set[uuid.UUID]:
    if locations is None:
        try:
            return {raw if isinstance(raw, uuid.UUID) else uuid.UUID(str(raw).strip())}
        except ValueError:
            return set()
    loc = locations.location(raw)
    if loc is None:
        return set()
    if not include_subtree:
        return {loc.id}
    try:
        return locations.subtree_ids(loc.id)
    except NotFoundError:
        # Removed between the lookup and the walk
        return set()
