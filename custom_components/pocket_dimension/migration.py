"""One-time migration from the legacy flat store into the structured store.

The coordinator is an explicit two-state machine per record type::

    NOT_MIGRATED --(records written, flag persisted)--> MIGRATED

Protocol for one record type:

1. Read the persisted completion flag. If set, load from the structured store
   only.
2. Otherwise read every record from the legacy blob.
3. Replace the structured collection wholesale (which clears any partial state
   left by an interrupted attempt) and persist it.
4. Persist the completion flag, last.

A crash between 3 and 4 re-runs the migration on the next start, and since
step 3 is a replacement the end state is the same. The legacy blob is never
deleted. Failures are reported on the outcome, never raised: the session keeps
running on the legacy records and the next start retries.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Generic, Literal, Protocol, TypeVar

from .const import DOMAIN
from .exceptions import MigrationError, PocketDimensionError, StorageIOError, ValidationError
from .storage import LegacyStore

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class MigrationState(StrEnum):
    NOT_MIGRATED = "not_migrated"
    MIGRATED = "migrated"


class MigrationTarget(Protocol[T]):
    """A record type that can be moved from the legacy store."""

    name: str
    legacy_key: str
    flag_key: str
    decode_record: Callable[[dict[str, Any]], T]

    async def async_replace_all(self, records: list[T]) -> None:
        """Replace the structured collection with ``records`` and persist it."""

    async def async_load_all(self) -> list[T]:
        """Return the records currently held by the structured store."""


@dataclass(frozen=True)
class MigrationOutcome(Generic[T]):
    """Result of running (or skipping) the migration for one record type.

    ``source`` names where ``records`` came from. ``legacy_readable`` is False
    when the legacy blob could not be read; callers must not overwrite it then.
    """

    name: str
    state: MigrationState
    records: list[T]
    source: Literal["structured", "legacy"]
    migrated_now: bool = False
    skipped: int = 0
    legacy_readable: bool = True
    error: MigrationError | None = None


class MigrationCoordinator:
    """Runs each target's migration at most once per process."""

    def __init__(self, legacy: LegacyStore) -> None:
        self._legacy = legacy
        self._gate = asyncio.Lock()
        self._outcomes: dict[str, MigrationOutcome[Any]] = {}

    def state(self, name: str) -> MigrationState:
        outcome = self._outcomes.get(name)
        return outcome.state if outcome is not None else MigrationState.NOT_MIGRATED

    def outcome(self, name: str) -> MigrationOutcome[Any] | None:
        return self._outcomes.get(name)

    async def async_run(self, target: MigrationTarget[T]) -> MigrationOutcome[T]:
        async with self._gate:
            existing = self._outcomes.get(target.name)
            if existing is not None:
                return existing  # type: ignore[return-value]
            outcome = await self._async_run_once(target)
            self._outcomes[target.name] = outcome
            return outcome

    async def _async_run_once(self, target: MigrationTarget[T]) -> MigrationOutcome[T]:
        ctx = {"domain": DOMAIN, "op": "legacy_migration", "target": target.name}

        try:
            already = await self._legacy.async_get_flag(target.flag_key)
        except StorageIOError as exc:
            return await self._async_fail_unreadable(target, exc, ctx)

        if already:
            records = await target.async_load_all()
            LOGGER.debug(
                "Legacy migration already completed; loading structured records",
                extra={**ctx, "count": len(records)},
            )
            return MigrationOutcome(
                name=target.name,
                state=MigrationState.MIGRATED,
                records=records,
                source="structured",
            )

        try:
            blob = await self._legacy.async_get_blob(target.legacy_key)
            records, skipped = _decode_blob(blob, target, ctx)
        except (StorageIOError, MigrationError) as exc:
            return await self._async_fail_unreadable(target, exc, ctx)

        try:
            await target.async_replace_all(records)
        except PocketDimensionError as exc:
            LOGGER.error(
                "Structured write failed during legacy migration; will retry on next start",
                extra={**ctx, "count": len(records)},
                exc_info=True,
            )
            return MigrationOutcome(
                name=target.name,
                state=MigrationState.NOT_MIGRATED,
                records=records,
                source="legacy",
                skipped=skipped,
                error=_as_migration_error(exc, "structured write failed"),
            )

        try:
            await self._legacy.async_set_flag(target.flag_key, True)
        except StorageIOError as exc:
            # Records are durable; only the flag is missing, so the next start
            # repeats the same replacement.
            LOGGER.error(
                "Failed to persist migration flag; migration will re-run on next start",
                extra={**ctx, "count": len(records)},
                exc_info=True,
            )
            return MigrationOutcome(
                name=target.name,
                state=MigrationState.NOT_MIGRATED,
                records=records,
                source="legacy",
                skipped=skipped,
                error=_as_migration_error(exc, "failed to persist migration flag"),
            )

        LOGGER.info(
            "Migrated %s %s record(s) from the legacy store",
            len(records),
            target.name,
            extra={**ctx, "count": len(records), "skipped": skipped},
        )
        return MigrationOutcome(
            name=target.name,
            state=MigrationState.MIGRATED,
            records=records,
            source="structured",
            migrated_now=True,
            skipped=skipped,
        )

    async def _async_fail_unreadable(
        self, target: MigrationTarget[T], exc: Exception, ctx: dict[str, Any]
    ) -> MigrationOutcome[T]:
        LOGGER.error(
            "Legacy store unreadable; keeping structured records and retrying on next start",
            extra=ctx,
            exc_info=True,
        )
        try:
            records = await target.async_load_all()
        except PocketDimensionError:
            LOGGER.error("Structured fallback load failed", extra=ctx, exc_info=True)
            records = []
        return MigrationOutcome(
            name=target.name,
            state=MigrationState.NOT_MIGRATED,
            records=records,
            source="structured",
            legacy_readable=False,
            error=_as_migration_error(exc, "legacy read failed"),
        )


def _decode_blob(
    blob: str | None, target: MigrationTarget[T], ctx: dict[str, Any]
) -> tuple[list[T], int]:
    """Decode a legacy JSON array into records.

    A missing or empty blob is zero records. A blob that is not a JSON array
    raises MigrationError. Individual malformed records are skipped and logged;
    they stay in the legacy blob.
    """

    if blob is None or not blob.strip():
        return [], 0
    try:
        raw = json.loads(blob)
    except ValueError as exc:
        raise MigrationError(f"legacy {target.name} blob is not valid JSON") from exc
    if not isinstance(raw, list):
        raise MigrationError(f"legacy {target.name} blob is not a list")

    records: list[T] = []
    skipped = 0
    for index, entry in enumerate(raw):
        try:
            records.append(target.decode_record(entry))
        except ValidationError as exc:
            skipped += 1
            LOGGER.warning(
                "Skipping malformed legacy record: %s",
                exc,
                extra={**ctx, "index": index},
            )
    return records, skipped


def encode_blob(records: list[dict[str, Any]]) -> str:
    """Serialize records into the legacy JSON array blob."""

    return json.dumps(records, separators=(",", ":"))


def _as_migration_error(exc: Exception, message: str) -> MigrationError:
    if isinstance(exc, MigrationError):
        return exc
    error = MigrationError(f"{message}: {exc}")
    error.__cause__ = exc
    return error
