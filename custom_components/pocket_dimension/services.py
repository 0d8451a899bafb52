"""Service registration and handlers for Pocket Dimension.

Exposes Home Assistant services under the ``pocket_dimension`` domain for
location and item maintenance plus a few read-only lookups that return a
response. Input is validated with voluptuous and operations are delegated to
the ``Inventory`` stored in ``hass.data``.

Domain errors (validation, not found, invalid location, cycles) are logged
with contextual fields and do not raise stack traces. Storage failures are
logged at ERROR.
"""

from __future__ import annotations

import logging
from typing import Any

import voluptuous as vol
from homeassistant.core import HomeAssistant, ServiceCall, SupportsResponse

from .const import DOMAIN
from .exceptions import (
    CycleError,
    InvalidLocationError,
    MigrationError,
    NotFoundError,
    PocketDimensionError,
    StorageIOError,
    ValidationError,
)
from .inventory import Inventory
from .models import StorageLocation, item_to_dict, location_to_dict, mapping_to_dict
from .queries import find_in_subtree, search_items, search_locations

LOGGER = logging.getLogger(__name__)

HANDLED_ERRORS = (
    ValidationError,
    NotFoundError,
    InvalidLocationError,
    CycleError,
    StorageIOError,
    vol.Invalid,
)


# -----------------------------
# Validation schemas
# -----------------------------

_OPTIONAL_TEXT = vol.Any(str, None)

_ITEM_FIELDS = {
    vol.Optional("location_id"): _OPTIONAL_TEXT,
    vol.Optional("condition"): str,
    vol.Optional("series"): _OPTIONAL_TEXT,
    vol.Optional("volume"): vol.Any(vol.All(int, vol.Range(min=0)), None),
    vol.Optional("author"): _OPTIONAL_TEXT,
    vol.Optional("manufacturer"): _OPTIONAL_TEXT,
    vol.Optional("publisher"): _OPTIONAL_TEXT,
    vol.Optional("isbn"): _OPTIONAL_TEXT,
    vol.Optional("barcode"): _OPTIONAL_TEXT,
    vol.Optional("price"): vol.Any(str, int, float, None),
    vol.Optional("notes"): _OPTIONAL_TEXT,
    vol.Optional("synopsis"): _OPTIONAL_TEXT,
    vol.Optional("thumbnail_url"): _OPTIONAL_TEXT,
    vol.Optional("purchase_date"): _OPTIONAL_TEXT,
    vol.Optional("original_publish_date"): _OPTIONAL_TEXT,
}

SCHEMA_ITEM_CREATE = vol.Schema(
    {vol.Required("title"): str, vol.Required("type"): str, **_ITEM_FIELDS}
)

SCHEMA_ITEM_UPDATE = vol.Schema(
    {
        vol.Required("item_id"): str,
        vol.Optional("title"): str,
        vol.Optional("type"): str,
        **_ITEM_FIELDS,
    }
)

SCHEMA_ITEM_DELETE = vol.Schema({vol.Required("item_id"): str})

SCHEMA_ITEM_BULK_DELETE = vol.Schema({vol.Required("item_ids"): vol.All([str], vol.Length(min=1))})

SCHEMA_LOCATION_CREATE = vol.Schema(
    {
        vol.Required("name"): str,
        vol.Required("type"): str,
        vol.Optional("parent_id"): _OPTIONAL_TEXT,
    }
)

SCHEMA_LOCATION_MOVE = vol.Schema(
    {vol.Required("location_id"): str, vol.Required("new_parent_id"): _OPTIONAL_TEXT}
)

SCHEMA_LOCATION_RENAME = vol.Schema({vol.Required("location_id"): str, vol.Required("name"): str})

SCHEMA_LOCATION_RETYPE = vol.Schema({vol.Required("location_id"): str, vol.Required("type"): str})

SCHEMA_LOCATION_DELETE = vol.Schema({vol.Required("location_id"): str})

SCHEMA_ISBN_MAPPING_ADD = vol.Schema(
    {
        vol.Required("incorrect_isbn"): str,
        vol.Required("correct_google_books_id"): str,
        vol.Required("title"): str,
        vol.Optional("is_reprint", default=True): bool,
    }
)

SCHEMA_ISBN_MAPPING_KEY = vol.Schema({vol.Required("isbn"): str})

SCHEMA_LOCATION_LOOKUP = vol.Schema({vol.Required("link"): str})

SCHEMA_LOCATION_CHILDREN = vol.Schema({vol.Optional("location_id"): _OPTIONAL_TEXT})

SCHEMA_LOCATION_SEARCH = vol.Schema(
    {vol.Required("query"): str, vol.Optional("within_location_id"): str}
)

SCHEMA_ITEM_SEARCH = vol.Schema(
    {
        vol.Optional("q"): str,
        vol.Optional("types"): [str],
        vol.Optional("location_id"): str,
        vol.Optional("include_subtree", default=False): bool,
        vol.Optional("condition"): str,
    }
)


# -----------------------------
# Internal helpers
# -----------------------------


def _get_inventory(hass: HomeAssistant) -> Inventory:
    bucket = hass.data.get(DOMAIN) or {}
    inventory = bucket.get("inventory")
    if inventory is None:
        raise PocketDimensionError("pocket_dimension is not set up")
    return inventory  # type: ignore[no-any-return]


def _log_domain_error(op: str, context: dict[str, Any], exc: Exception) -> None:
    level = logging.WARNING
    if isinstance(exc, StorageIOError | MigrationError):
        level = logging.ERROR
    extra: dict[str, Any] = {"domain": DOMAIN, "op": op, **context}
    if isinstance(exc, NotFoundError) and exc.missing_ids:
        extra["missing_ids"] = exc.missing_ids
    LOGGER.log(level, str(exc), extra=extra)


def _error_response(exc: PocketDimensionError) -> dict[str, Any]:
    return {"error": {"code": type(exc).__name__, "message": str(exc)}}


def _location_response(inventory: Inventory, location: StorageLocation) -> dict[str, Any]:
    data = location_to_dict(location)
    data["path"] = inventory.locations.breadcrumb_path(location.id)
    return data


# -----------------------------
# Service handlers (exported for tests)
# -----------------------------


async def service_location_create(hass: HomeAssistant, data: dict) -> None:
    op = "location_create"
    try:
        payload = SCHEMA_LOCATION_CREATE(data)
        inventory = _get_inventory(hass)
        loc = await inventory.async_add_location(
            name=payload["name"], type=payload["type"], parent_id=payload.get("parent_id")
        )
        LOGGER.debug(
            "Service location_create created location",
            extra={"domain": DOMAIN, "op": op, "location_id": str(loc.id)},
        )
    except HANDLED_ERRORS as exc:
        _log_domain_error(
            op, {"location_name": data.get("name"), "parent_id": data.get("parent_id")}, exc
        )


async def service_location_move(hass: HomeAssistant, data: dict) -> None:
    op = "location_move"
    location_id = data.get("location_id")
    try:
        payload = SCHEMA_LOCATION_MOVE(data)
        inventory = _get_inventory(hass)
        await inventory.async_move_location(payload["location_id"], payload["new_parent_id"])
    except HANDLED_ERRORS as exc:
        _log_domain_error(
            op, {"location_id": location_id, "new_parent_id": data.get("new_parent_id")}, exc
        )


async def service_location_rename(hass: HomeAssistant, data: dict) -> None:
    op = "location_rename"
    location_id = data.get("location_id")
    try:
        payload = SCHEMA_LOCATION_RENAME(data)
        inventory = _get_inventory(hass)
        await inventory.async_rename_location(payload["location_id"], payload["name"])
    except HANDLED_ERRORS as exc:
        _log_domain_error(op, {"location_id": location_id}, exc)


async def service_location_retype(hass: HomeAssistant, data: dict) -> None:
    op = "location_retype"
    location_id = data.get("location_id")
    try:
        payload = SCHEMA_LOCATION_RETYPE(data)
        inventory = _get_inventory(hass)
        await inventory.async_retype_location(payload["location_id"], payload["type"])
    except HANDLED_ERRORS as exc:
        _log_domain_error(op, {"location_id": location_id, "type": data.get("type")}, exc)


async def service_location_delete(hass: HomeAssistant, data: dict) -> None:
    op = "location_delete"
    location_id = data.get("location_id")
    try:
        payload = SCHEMA_LOCATION_DELETE(data)
        inventory = _get_inventory(hass)
        result = await inventory.async_remove_location(payload["location_id"])
        LOGGER.debug(
            "Service location_delete removed subtree",
            extra={
                "domain": DOMAIN,
                "op": op,
                "location_id": location_id,
                "removed_count": len(result.removed_location_ids),
                "orphaned_count": len(result.orphaned_item_ids),
            },
        )
    except HANDLED_ERRORS as exc:
        _log_domain_error(op, {"location_id": location_id}, exc)


async def service_item_create(hass: HomeAssistant, data: dict) -> None:
    op = "item_create"
    try:
        payload = SCHEMA_ITEM_CREATE(data)
        inventory = _get_inventory(hass)
        item = await inventory.async_add_item(payload)  # type: ignore[arg-type]
        LOGGER.debug(
            "Service item_create created item",
            extra={"domain": DOMAIN, "op": op, "item_id": str(item.id)},
        )
    except HANDLED_ERRORS as exc:
        _log_domain_error(
            op, {"title": data.get("title"), "location_id": data.get("location_id")}, exc
        )


async def service_item_update(hass: HomeAssistant, data: dict) -> None:
    op = "item_update"
    item_id = data.get("item_id")
    try:
        payload = SCHEMA_ITEM_UPDATE(data)
        changes = {k: v for k, v in payload.items() if k != "item_id"}
        inventory = _get_inventory(hass)
        await inventory.async_update_item(payload["item_id"], changes)  # type: ignore[arg-type]
    except HANDLED_ERRORS as exc:
        _log_domain_error(op, {"item_id": item_id, "location_id": data.get("location_id")}, exc)


async def service_item_delete(hass: HomeAssistant, data: dict) -> None:
    op = "item_delete"
    item_id = data.get("item_id")
    try:
        payload = SCHEMA_ITEM_DELETE(data)
        inventory = _get_inventory(hass)
        await inventory.async_delete_item(payload["item_id"])
    except HANDLED_ERRORS as exc:
        _log_domain_error(op, {"item_id": item_id}, exc)


async def service_item_bulk_delete(hass: HomeAssistant, data: dict) -> None:
    op = "item_bulk_delete"
    try:
        payload = SCHEMA_ITEM_BULK_DELETE(data)
        inventory = _get_inventory(hass)
        await inventory.async_bulk_delete_items(payload["item_ids"])
    except HANDLED_ERRORS as exc:
        _log_domain_error(op, {"requested": len(data.get("item_ids") or [])}, exc)


async def service_isbn_mapping_add(hass: HomeAssistant, data: dict) -> None:
    op = "isbn_mapping_add"
    try:
        payload = SCHEMA_ISBN_MAPPING_ADD(data)
        inventory = _get_inventory(hass)
        await inventory.async_add_isbn_mapping(**payload)
    except (ValidationError, StorageIOError, vol.Invalid) as exc:
        _log_domain_error(op, {"isbn": data.get("incorrect_isbn")}, exc)


async def service_isbn_mapping_remove(hass: HomeAssistant, data: dict) -> None:
    op = "isbn_mapping_remove"
    try:
        payload = SCHEMA_ISBN_MAPPING_KEY(data)
        inventory = _get_inventory(hass)
        removed = await inventory.isbn_mappings.async_remove(payload["isbn"])
        if not removed:
            _log_domain_error(
                op, {"isbn": payload["isbn"]}, NotFoundError("isbn mapping not found")
            )
    except (StorageIOError, vol.Invalid) as exc:
        _log_domain_error(op, {"isbn": data.get("isbn")}, exc)


# Read-only services returning a response


async def service_location_lookup(hass: HomeAssistant, data: dict) -> dict[str, Any]:
    """Resolve a scanned label or raw id to a location with its breadcrumb."""

    op = "location_lookup"
    try:
        payload = SCHEMA_LOCATION_LOOKUP(data)
        inventory = _get_inventory(hass)
        loc = inventory.location_from_link(payload["link"])
        if loc is None:
            raise NotFoundError("location not found", missing_ids=[payload["link"]])
        return {"location": _location_response(inventory, loc)}
    except (NotFoundError, CycleError) as exc:
        _log_domain_error(op, {"link": data.get("link")}, exc)
        return _error_response(exc)


async def service_location_children(hass: HomeAssistant, data: dict) -> dict[str, Any]:
    op = "location_children"
    try:
        payload = SCHEMA_LOCATION_CHILDREN(data)
        inventory = _get_inventory(hass)
        parent_id = payload.get("location_id")
        children = inventory.locations.children(parent_id)
        items = inventory.items.items_in_location(parent_id) if parent_id else []
        return {
            "locations": [location_to_dict(c) for c in children],
            "items": [item_to_dict(i) for i in items],
        }
    except (NotFoundError, CycleError) as exc:
        _log_domain_error(op, {"location_id": data.get("location_id")}, exc)
        return _error_response(exc)


async def service_location_search(hass: HomeAssistant, data: dict) -> dict[str, Any]:
    op = "location_search"
    try:
        payload = SCHEMA_LOCATION_SEARCH(data)
        inventory = _get_inventory(hass)
        within = payload.get("within_location_id")
        if within:
            found = find_in_subtree(inventory.locations, within, payload["query"])
            matches = [found] if found else []
        else:
            matches = search_locations(inventory.locations, payload["query"])
        return {"locations": [_location_response(inventory, loc) for loc in matches]}
    except CycleError as exc:
        _log_domain_error(op, {"query": data.get("query")}, exc)
        return _error_response(exc)


async def service_item_search(hass: HomeAssistant, data: dict) -> dict[str, Any]:
    op = "item_search"
    try:
        payload = SCHEMA_ITEM_SEARCH(data)
        inventory = _get_inventory(hass)
        results = search_items(
            inventory.items.all_items(), payload, locations=inventory.locations  # type: ignore[arg-type]
        )
        return {"items": [item_to_dict(i) for i in results]}
    except ValidationError as exc:
        _log_domain_error(op, {}, exc)
        return _error_response(exc)


async def service_isbn_mapping_get(hass: HomeAssistant, data: dict) -> dict[str, Any]:
    payload = SCHEMA_ISBN_MAPPING_KEY(data)
    mapping = _get_inventory(hass).isbn_mappings.mapping_for(payload["isbn"])
    return {"mapping": mapping_to_dict(mapping) if mapping else None}


# -----------------------------
# Registration
# -----------------------------

_MUTATION_SERVICES = (
    ("location_create", service_location_create, SCHEMA_LOCATION_CREATE),
    ("location_move", service_location_move, SCHEMA_LOCATION_MOVE),
    ("location_rename", service_location_rename, SCHEMA_LOCATION_RENAME),
    ("location_retype", service_location_retype, SCHEMA_LOCATION_RETYPE),
    ("location_delete", service_location_delete, SCHEMA_LOCATION_DELETE),
    ("item_create", service_item_create, SCHEMA_ITEM_CREATE),
    ("item_update", service_item_update, SCHEMA_ITEM_UPDATE),
    ("item_delete", service_item_delete, SCHEMA_ITEM_DELETE),
    ("item_bulk_delete", service_item_bulk_delete, SCHEMA_ITEM_BULK_DELETE),
    ("isbn_mapping_add", service_isbn_mapping_add, SCHEMA_ISBN_MAPPING_ADD),
    ("isbn_mapping_remove", service_isbn_mapping_remove, SCHEMA_ISBN_MAPPING_KEY),
)

_QUERY_SERVICES = (
    ("location_lookup", service_location_lookup, SCHEMA_LOCATION_LOOKUP),
    ("location_children", service_location_children, SCHEMA_LOCATION_CHILDREN),
    ("location_search", service_location_search, SCHEMA_LOCATION_SEARCH),
    ("item_search", service_item_search, SCHEMA_ITEM_SEARCH),
    ("isbn_mapping_get", service_isbn_mapping_get, SCHEMA_ISBN_MAPPING_KEY),
)

SERVICE_NAMES: tuple[str, ...] = tuple(n for n, _, _ in (*_MUTATION_SERVICES, *_QUERY_SERVICES))


def _bind(hass: HomeAssistant, handler):
    # A coroutine function, so Home Assistant awaits it in the event loop
    async def _handle(call: ServiceCall) -> Any:
        return await handler(hass, dict(call.data))

    return _handle


def setup(hass: HomeAssistant) -> None:
    """Register pocket_dimension.* services on Home Assistant."""

    # Idempotent: avoid duplicate registration across reloads
    bucket = hass.data.setdefault(DOMAIN, {})
    if bucket.get("services_registered"):
        return

    # Home Assistant validates inputs against these schemas before invoking the
    # handler; handlers validate again so they can be called directly.
    for name, handler, schema in _MUTATION_SERVICES:
        hass.services.async_register(DOMAIN, name, _bind(hass, handler), schema)
    for name, handler, schema in _QUERY_SERVICES:
        hass.services.async_register(
            DOMAIN,
            name,
            _bind(hass, handler),
            schema,
            supports_response=SupportsResponse.ONLY,
        )

    bucket["services_registered"] = True


def unload(hass: HomeAssistant) -> None:
    """Remove every registered pocket_dimension.* service."""

    bucket = hass.data.get(DOMAIN) or {}
    if not bucket.pop("services_registered", False):
        return
    for name in SERVICE_NAMES:
        hass.services.async_remove(DOMAIN, name)
