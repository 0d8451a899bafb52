"""Schema migrations for the structured store.

Forward-only, idempotent migration steps. Each step receives and returns the
entire persisted dict payload. Steps must tolerate being applied more than once
without changing the outcome.

These upgrade the shape of the structured payload between releases. Moving
records out of the legacy flat store is a different job, handled by
``migration.MigrationCoordinator``.
"""

from __future__ import annotations

from copy import deepcopy
from typing import Any


def migrate(payload: dict[str, Any], *, from_version: int, to_version: int) -> dict[str, Any]:
    """Migrate ``payload`` from ``from_version`` to ``to_version``.

    Steps are applied sequentially: vN -> vN+1 -> ... -> vM.
    """

    if from_version > to_version:
        # We do not support downgrades; return the original as-is
        return payload

    data: dict[str, Any] = deepcopy(payload) if isinstance(payload, dict) else {}
    version = int(from_version)
    while version < to_version:
        next_version = version + 1
        step_name = f"migrate_{version}_to_{next_version}"
        step = globals().get(step_name)
        if callable(step):
            data = step(data)  # type: ignore[misc]
        # If no step is defined, assume no-op for this transition
        version = next_version

    data["schema_version"] = to_version
    return data


def migrate_0_to_1(payload: dict[str, Any]) -> dict[str, Any]:
    """Initial migration to v1.

    Ensures required top-level keys exist and drops nothing.
    """

    data = deepcopy(payload) if isinstance(payload, dict) else {}
    data.setdefault("items", {})
    data.setdefault("locations", {})
    return data


def migrate_1_to_2(payload: dict[str, Any]) -> dict[str, Any]:
    """Add the isbn_mappings collection and give untyped locations a type.

    v1 locations had no ``type``. Roots become rooms, everything else a box,
    which every container type except a box accepts.
    """

    data = deepcopy(payload) if isinstance(payload, dict) else {}
    data.setdefault("isbn_mappings", {})
    locations = data.get("locations")
    if isinstance(locations, dict):
        for record in locations.values():
            if not isinstance(record, dict) or record.get("type"):
                continue
            record["type"] = "room" if record.get("parent_id") is None else "box"
            # v1 carried a denormalized path that is now computed on demand
            record.pop("path", None)
    return data
