"""Location tree store for Pocket Dimension.

Owns the storage locations and their parent/child edges and enforces the tree
invariants on every structural mutation:

- the parent graph is acyclic;
- a location's type is allowed under its parent's type (see ``rules``).

Mutations are serialized by ``StorageContext.locations_lock`` and commit by
swapping in a new immutable snapshot, so readers never see partial state and
do not need the lock. Removing a location cascades to its whole subtree and,
in the same critical section, orphans the items stored anywhere inside it.
"""

from __future__ import annotations

import logging
import uuid
from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Final, Protocol

from .const import DOMAIN
from .events import ChangeEvent
from .exceptions import CycleError, NotFoundError, ValidationError
from .models import (
    StorageLocation,
    create_location,
    location_from_dict,
    location_to_dict,
    normalize_text_for_sort,
    parse_uuid4,
    touch_location,
    validate_location_name,
)
from .rules import LocationType, can_contain, parse_location_type, validate_nesting
from .storage import StorageContext

LOGGER = logging.getLogger(__name__)

# The nesting table allows at most four levels (room > cabinet > drawer > box);
# anything deeper than this bound is corrupted data.
MAX_TREE_DEPTH: Final[int] = 16


class LocationOrphaner(Protocol):
    """Collaborator that clears item references into removed locations."""

    def orphan_items(self, location_ids: Iterable[uuid.UUID]) -> list[uuid.UUID]:
        """Clear ``location_id`` on every item stored in ``location_ids``."""


@dataclass(frozen=True)
class RemovalResult:
    """What a cascading removal did."""

    removed_location_ids: tuple[uuid.UUID, ...]
    orphaned_item_ids: tuple[uuid.UUID, ...] = ()


@dataclass(frozen=True)
class _Snapshot:
    locations_by_id: Mapping[str, StorageLocation] = field(default_factory=dict)
    children_ids_by_parent_id: Mapping[str | None, frozenset[str]] = field(default_factory=dict)


def _parent_key(location: StorageLocation) -> str | None:
    return str(location.parent_id) if location.parent_id is not None else None


def _index_children(locations: Iterable[StorageLocation]) -> dict[str | None, frozenset[str]]:
    buckets: dict[str | None, set[str]] = {}
    for loc in locations:
        buckets.setdefault(_parent_key(loc), set()).add(str(loc.id))
    return {k: frozenset(v) for k, v in buckets.items()}


class LocationStore:
    """Cycle-free, type-constrained tree of storage locations."""

    def __init__(self, context: StorageContext, orphaner: LocationOrphaner | None = None) -> None:
        self._context = context
        self._orphaner = orphaner
        self._snapshot = _Snapshot()

    def attach_orphaner(self, orphaner: LocationOrphaner) -> None:
        self._orphaner = orphaner

    # -----------------------------
    # Internal helpers
    # -----------------------------

    @staticmethod
    def _key(location_id: str | uuid.UUID) -> str | None:
        """Normalize an id to its map key; None when it cannot be a location id."""

        try:
            return str(parse_uuid4(location_id, field_name="location_id"))
        except ValidationError:
            return None

    def _require(self, snap: _Snapshot, location_id: str | uuid.UUID) -> StorageLocation:
        key = self._key(location_id)
        loc = snap.locations_by_id.get(key) if key is not None else None
        if loc is None:
            raise NotFoundError("location not found", missing_ids=[str(location_id)])
        return loc

    def _resolve_parent(
        self, snap: _Snapshot, parent_id: str | uuid.UUID | None, *, field_name: str
    ) -> StorageLocation | None:
        if parent_id is None:
            return None
        parsed = parse_uuid4(parent_id, field_name=field_name)
        parent = snap.locations_by_id.get(str(parsed))
        if parent is None:
            raise ValidationError(f"{field_name} must reference an existing location")
        return parent

    @staticmethod
    def _descendant_keys(snap: _Snapshot, root_key: str) -> list[str]:
        """Collect descendant keys breadth-first (excluding the root itself)."""

        result: list[str] = []
        seen: set[str] = {root_key}
        queue: deque[str] = deque([root_key])
        while queue:
            current = queue.popleft()
            for child_key in sorted(snap.children_ids_by_parent_id.get(current, ())):
                if child_key not in seen:
                    seen.add(child_key)
                    result.append(child_key)
                    queue.append(child_key)
        return result

    @staticmethod
    def _lineage(snap: _Snapshot, leaf: StorageLocation) -> list[StorageLocation]:
        """Return the chain root -> leaf by following parent links.

        The walk is bounded by MAX_TREE_DEPTH. A revisit, an overlong chain or a
        parent link to a missing location is reported as CycleError, never as a
        shortened chain.
        """

        chain: list[StorageLocation] = [leaf]
        seen: set[str] = {str(leaf.id)}
        cursor = leaf
        while cursor.parent_id is not None:
            if len(chain) > MAX_TREE_DEPTH:
                raise CycleError("location tree too deep or cyclic")
            parent_key = str(cursor.parent_id)
            if parent_key in seen:
                raise CycleError("location tree contains a cycle")
            parent = snap.locations_by_id.get(parent_key)
            if parent is None:
                LOGGER.warning(
                    "Location chain has a missing parent",
                    extra={
                        "domain": DOMAIN,
                        "op": "lineage",
                        "location_id": str(cursor.id),
                        "parent_id": parent_key,
                    },
                )
                raise CycleError("location chain references a missing parent")
            seen.add(parent_key)
            chain.append(parent)
            cursor = parent
        chain.reverse()
        return chain

    def _commit(self, locations_by_id: dict[str, StorageLocation]) -> None:
        self._snapshot = _Snapshot(
            locations_by_id=locations_by_id,
            children_ids_by_parent_id=_index_children(locations_by_id.values()),
        )

    def _notify(
        self, action: str, ids: Iterable[uuid.UUID], orphaned: Iterable[uuid.UUID] = ()
    ) -> None:
        self._context.notifier.notify(
            ChangeEvent(
                collection="locations",
                action=action,
                ids=tuple(str(i) for i in ids),
                orphaned_item_ids=tuple(str(i) for i in orphaned),
            )
        )

    # -----------------------------
    # Public API: mutations
    # -----------------------------

    def add(
        self,
        *,
        name: str,
        type: str | LocationType,
        parent_id: str | uuid.UUID | None = None,
    ) -> StorageLocation:
        """Validate and insert a new location.

        Raises ValidationError for an empty name, an unknown parent, or a type
        the parent cannot contain.
        """

        with self._context.locations_lock:
            snap = self._snapshot
            name = validate_location_name(name)
            loc_type = parse_location_type(type)
            parent = self._resolve_parent(snap, parent_id, field_name="parent_id")
            validate_nesting(parent.type if parent else None, loc_type)

            new_loc = create_location(
                name=name, type=loc_type, parent_id=parent.id if parent else None
            )
            staged = dict(snap.locations_by_id)
            staged[str(new_loc.id)] = new_loc
            self._commit(staged)

        LOGGER.debug(
            "Location created",
            extra={
                "domain": DOMAIN,
                "op": "add_location",
                "location_id": str(new_loc.id),
                "location_type": new_loc.type.value,
            },
        )
        self._notify("added", [new_loc.id])
        return new_loc

    def remove(self, location_id: str | uuid.UUID) -> RemovalResult:
        """Remove a location, its whole subtree, and orphan the items inside.

        Holds the locations lock then the items lock so no item write can slip
        a reference to a removed location in between.
        """

        with self._context.locations_lock, self._context.items_lock:
            snap = self._snapshot
            loc = self._require(snap, location_id)
            root_key = str(loc.id)
            subtree = [root_key, *self._descendant_keys(snap, root_key)]
            removed_ids = [snap.locations_by_id[k].id for k in subtree]

            # Orphan first: a lock-free reader may briefly see a location with
            # no items, never an item pointing at a removed location.
            orphaned: list[uuid.UUID] = []
            if self._orphaner is not None:
                orphaned = self._orphaner.orphan_items(removed_ids)

            staged = {k: v for k, v in snap.locations_by_id.items() if k not in set(subtree)}
            self._commit(staged)

        LOGGER.debug(
            "Location subtree removed",
            extra={
                "domain": DOMAIN,
                "op": "remove_location",
                "location_id": root_key,
                "removed_count": len(removed_ids),
                "orphaned_count": len(orphaned),
            },
        )
        if orphaned:
            LOGGER.info(
                "Orphaned %s item(s) while removing location %s",
                len(orphaned),
                loc.name,
                extra={
                    "domain": DOMAIN,
                    "op": "remove_location",
                    "location_id": root_key,
                    "orphaned_count": len(orphaned),
                },
            )
        self._notify("removed", removed_ids, orphaned)
        return RemovalResult(
            removed_location_ids=tuple(removed_ids), orphaned_item_ids=tuple(orphaned)
        )

    def update_parent(
        self, location_id: str | uuid.UUID, new_parent_id: str | uuid.UUID | None
    ) -> StorageLocation:
        """Move a location (and its subtree) under ``new_parent_id``; None moves it to root.

        Raises CycleError if the new parent is the location or one of its
        descendants, ValidationError if the new parent is unknown or cannot
        contain the location's type.
        """

        with self._context.locations_lock:
            snap = self._snapshot
            loc = self._require(snap, location_id)
            key = str(loc.id)
            parent = self._resolve_parent(snap, new_parent_id, field_name="new_parent_id")

            if parent is not None:
                parent_key = str(parent.id)
                if parent_key == key:
                    raise CycleError("cannot move a location under itself")
                if parent_key in set(self._descendant_keys(snap, key)):
                    raise CycleError("cannot move a location under one of its descendants")
                # The target's own chain must be sound before we hang a subtree on it
                if any(str(a.id) == key for a in self._lineage(snap, parent)):
                    raise CycleError("cannot move a location under one of its descendants")
            validate_nesting(parent.type if parent else None, loc.type)

            target_parent_id = parent.id if parent else None
            if target_parent_id == loc.parent_id:
                return loc

            moved = touch_location(loc, parent_id=target_parent_id)
            staged = dict(snap.locations_by_id)
            staged[key] = moved
            self._commit(staged)

        LOGGER.debug(
            "Location moved",
            extra={
                "domain": DOMAIN,
                "op": "update_parent",
                "location_id": key,
                "new_parent_id": str(target_parent_id) if target_parent_id else None,
            },
        )
        self._notify("moved", [moved.id])
        return moved

    def rename(self, location_id: str | uuid.UUID, name: str) -> StorageLocation:
        with self._context.locations_lock:
            snap = self._snapshot
            loc = self._require(snap, location_id)
            new_name = validate_location_name(name)
            if new_name == loc.name:
                return loc
            renamed = touch_location(loc, name=new_name)
            staged = dict(snap.locations_by_id)
            staged[str(loc.id)] = renamed
            self._commit(staged)

        LOGGER.debug(
            "Location renamed",
            extra={"domain": DOMAIN, "op": "rename_location", "location_id": str(loc.id)},
        )
        self._notify("renamed", [renamed.id])
        return renamed

    def update_type(
        self, location_id: str | uuid.UUID, new_type: str | LocationType
    ) -> StorageLocation:
        """Change a location's type.

        The new type must fit under the current parent and must still accept
        every existing child.
        """

        with self._context.locations_lock:
            snap = self._snapshot
            loc = self._require(snap, location_id)
            loc_type = parse_location_type(new_type)
            parent = snap.locations_by_id.get(_parent_key(loc)) if loc.parent_id else None
            validate_nesting(parent.type if parent else None, loc_type)
            for child_key in snap.children_ids_by_parent_id.get(str(loc.id), ()):
                child = snap.locations_by_id[child_key]
                if not can_contain(loc_type, child.type):
                    raise ValidationError(
                        f"a {loc_type} cannot contain its existing child {child.name!r} ({child.type})"
                    )
            if loc_type == loc.type:
                return loc
            retyped = touch_location(loc, type=loc_type)
            staged = dict(snap.locations_by_id)
            staged[str(loc.id)] = retyped
            self._commit(staged)

        LOGGER.debug(
            "Location re-typed",
            extra={
                "domain": DOMAIN,
                "op": "update_location_type",
                "location_id": str(loc.id),
                "location_type": loc_type.value,
            },
        )
        self._notify("retyped", [retyped.id])
        return retyped

    # -----------------------------
    # Public API: reads
    # -----------------------------

    def get(self, location_id: str | uuid.UUID) -> StorageLocation:
        """Strict lookup; raises NotFoundError."""

        return self._require(self._snapshot, location_id)

    def location(self, location_id: Any) -> StorageLocation | None:
        """Lenient lookup for untrusted ids (scanned labels, links).

        Returns None for unknown or malformed ids instead of raising.
        """

        if not isinstance(location_id, str | uuid.UUID):
            return None
        key = self._key(location_id)
        if key is None:
            return None
        return self._snapshot.locations_by_id.get(key)

    def exists(self, location_id: str | uuid.UUID) -> bool:
        return self.location(location_id) is not None

    def count(self) -> int:
        return len(self._snapshot.locations_by_id)

    def all_locations(self) -> list[StorageLocation]:
        return sorted(
            self._snapshot.locations_by_id.values(),
            key=lambda loc: (normalize_text_for_sort(loc.name), str(loc.id)),
        )

    def locations_of_type(self, location_type: str | LocationType) -> list[StorageLocation]:
        loc_type = parse_location_type(location_type)
        return [loc for loc in self.all_locations() if loc.type is loc_type]

    def children(self, location_id: str | uuid.UUID | None) -> list[StorageLocation]:
        """Immediate children, recomputed from the current snapshot on each call.

        ``None`` returns the root-level locations.
        """

        snap = self._snapshot
        if location_id is None:
            key: str | None = None
        else:
            key = str(self._require(snap, location_id).id)
        children = [snap.locations_by_id[k] for k in snap.children_ids_by_parent_id.get(key, ())]
        return sorted(children, key=lambda loc: (normalize_text_for_sort(loc.name), str(loc.id)))

    def descendants(self, location_id: str | uuid.UUID) -> list[StorageLocation]:
        """All descendants, breadth-first."""

        snap = self._snapshot
        loc = self._require(snap, location_id)
        return [snap.locations_by_id[k] for k in self._descendant_keys(snap, str(loc.id))]

    def subtree_ids(self, location_id: str | uuid.UUID) -> set[uuid.UUID]:
        """The location id plus every descendant id."""

        snap = self._snapshot
        loc = self._require(snap, location_id)
        keys = [str(loc.id), *self._descendant_keys(snap, str(loc.id))]
        return {snap.locations_by_id[k].id for k in keys}

    def ancestors(self, location_id: str | uuid.UUID) -> list[StorageLocation]:
        """Ancestors nearest-first (parent, grandparent, ...)."""

        snap = self._snapshot
        loc = self._require(snap, location_id)
        chain = self._lineage(snap, loc)
        return list(reversed(chain[:-1]))

    def breadcrumb_path(self, location_id: str | uuid.UUID, *, separator: str = "/") -> str | None:
        """Return ``Root/.../Parent/Name``, or None when the id is unknown.

        Raises CycleError if the stored chain is cyclic or deeper than
        MAX_TREE_DEPTH.
        """

        snap = self._snapshot
        key = self._key(location_id)
        loc = snap.locations_by_id.get(key) if key is not None else None
        if loc is None:
            return None
        return separator.join(node.name for node in self._lineage(snap, loc))

    # -----------------------------
    # Persistence: export/import
    # -----------------------------

    def export_state(self) -> dict[str, Any]:
        """Serialize to ``{id -> LocationDict}`` with stable key order."""

        snap = self._snapshot
        return {k: location_to_dict(snap.locations_by_id[k]) for k in sorted(snap.locations_by_id)}

    def load_state(self, data: Mapping[str, Any] | Iterable[StorageLocation]) -> None:
        """Replace the tree with persisted records.

        Malformed records are dropped. Records that would break an invariant
        (unknown parent, disallowed nesting, cycle) are kept but promoted to the
        root level, with a warning, so no location is lost on load.
        """

        parsed: dict[str, StorageLocation] = {}
        records = data.values() if isinstance(data, Mapping) else data
        for record in records:
            try:
                loc = record if isinstance(record, StorageLocation) else location_from_dict(record)
            except ValidationError as exc:
                LOGGER.warning(
                    "Dropping malformed location record: %s",
                    exc,
                    extra={"domain": DOMAIN, "op": "load_locations"},
                )
                continue
            parsed[str(loc.id)] = loc

        with self._context.locations_lock:
            self._commit(_repair_tree(parsed))


def _repair_tree(parsed: dict[str, StorageLocation]) -> dict[str, StorageLocation]:
    """Accept locations top-down; promote anything unreachable or mis-nested to root."""

    accepted: dict[str, StorageLocation] = {}
    pending = dict(parsed)

    def _promote(key: str, reason: str) -> None:
        loc = pending.pop(key)
        LOGGER.warning(
            "Promoting location to root on load: %s",
            reason,
            extra={
                "domain": DOMAIN,
                "op": "load_locations",
                "location_id": key,
                "parent_id": str(loc.parent_id) if loc.parent_id else None,
            },
        )
        accepted[key] = StorageLocation(
            id=loc.id,
            name=loc.name,
            type=loc.type,
            parent_id=None,
            created_at=loc.created_at,
            updated_at=loc.updated_at,
        )

    while pending:
        progressed = False
        for key in sorted(pending):
            loc = pending[key]
            parent_key = _parent_key(loc)
            if parent_key is None:
                accepted[key] = pending.pop(key)
                progressed = True
            elif parent_key in accepted:
                if can_contain(accepted[parent_key].type, loc.type):
                    accepted[key] = pending.pop(key)
                else:
                    _promote(key, "disallowed nesting")
                progressed = True
            elif parent_key not in pending:
                _promote(key, "unknown parent")
                progressed = True
        if not progressed:
            # Everything left is on a cycle; break it at the smallest id
            _promote(min(pending), "cycle")
    return accepted
