"""ISBN correction table.

Some printed ISBNs resolve to the wrong volume in Google Books. A mapping
records the right volume id for such an ISBN so later scans of the same barcode
go straight to it. Mappings live in the structured store; every write is
persisted through the ``persist`` callback handed in by the inventory.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Awaitable, Callable, Iterable, Mapping
from typing import Any

from .const import DOMAIN
from .events import ChangeEvent
from .exceptions import ValidationError
from .models import (
    ISBNMapping,
    create_isbn_mapping,
    mapping_from_dict,
    mapping_to_dict,
    normalize_text_for_sort,
)
from .storage import StorageContext

LOGGER = logging.getLogger(__name__)


async def _no_persist() -> None:
    return None


class ISBNMappingService:
    """Lookup and maintenance of ISBN -> Google Books volume corrections."""

    def __init__(
        self,
        context: StorageContext,
        persist: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self._context = context
        self._persist = persist or _no_persist
        self._lock = threading.RLock()
        self._mappings_by_isbn: Mapping[str, ISBNMapping] = {}

    @staticmethod
    def _normalize_isbn(isbn: str) -> str:
        return isbn.strip() if isinstance(isbn, str) else ""

    def _commit(self, staged: dict[str, ISBNMapping], action: str, ids: Iterable[str]) -> None:
        self._mappings_by_isbn = staged
        self._context.notifier.notify(
            ChangeEvent(collection="isbn_mappings", action=action, ids=tuple(ids))
        )

    # -----------------------------
    # Lookups
    # -----------------------------

    def mapping_for(self, isbn: str) -> ISBNMapping | None:
        return self._mappings_by_isbn.get(self._normalize_isbn(isbn))

    def google_books_id_for(self, isbn: str) -> str | None:
        mapping = self.mapping_for(isbn)
        return mapping.correct_google_books_id if mapping else None

    def all_mappings(self) -> list[ISBNMapping]:
        return sorted(
            self._mappings_by_isbn.values(), key=lambda m: (m.date_added, m.incorrect_isbn)
        )

    def mappings_matching_title(self, text: str) -> list[ISBNMapping]:
        needle = normalize_text_for_sort(text or "")
        return [m for m in self.all_mappings() if needle in normalize_text_for_sort(m.title)]

    # -----------------------------
    # Mutations
    # -----------------------------

    async def async_add(
        self,
        *,
        incorrect_isbn: str,
        correct_google_books_id: str,
        title: str,
        is_reprint: bool = True,
    ) -> ISBNMapping:
        """Record a correction for ``incorrect_isbn``.

        An ISBN that already has a mapping keeps it; the existing mapping is
        returned and nothing is written.
        """

        with self._lock:
            existing = self.mapping_for(incorrect_isbn)
            if existing is not None:
                LOGGER.debug(
                    "ISBN mapping already present",
                    extra={"domain": DOMAIN, "op": "add_isbn_mapping", "isbn": existing.incorrect_isbn},
                )
                return existing
            mapping = create_isbn_mapping(
                incorrect_isbn=incorrect_isbn,
                correct_google_books_id=correct_google_books_id,
                title=title,
                is_reprint=is_reprint,
            )
            staged = dict(self._mappings_by_isbn)
            staged[mapping.incorrect_isbn] = mapping
            self._commit(staged, "added", [mapping.incorrect_isbn])

        await self._persist()
        LOGGER.debug(
            "ISBN mapping added",
            extra={"domain": DOMAIN, "op": "add_isbn_mapping", "isbn": mapping.incorrect_isbn},
        )
        return mapping

    async def async_remove(self, isbn: str) -> bool:
        """Remove the mapping for ``isbn``; False when there was none."""

        key = self._normalize_isbn(isbn)
        with self._lock:
            if key not in self._mappings_by_isbn:
                return False
            staged = dict(self._mappings_by_isbn)
            staged.pop(key)
            self._commit(staged, "removed", [key])

        await self._persist()
        LOGGER.debug(
            "ISBN mapping removed",
            extra={"domain": DOMAIN, "op": "remove_isbn_mapping", "isbn": key},
        )
        return True

    async def async_clear(self) -> int:
        with self._lock:
            removed = sorted(self._mappings_by_isbn)
            if not removed:
                return 0
            self._commit({}, "cleared", removed)

        await self._persist()
        LOGGER.info(
            "Cleared %s ISBN mapping(s)",
            len(removed),
            extra={"domain": DOMAIN, "op": "clear_isbn_mappings", "count": len(removed)},
        )
        return len(removed)

    # -----------------------------
    # Persistence: export/import
    # -----------------------------

    def export_state(self) -> dict[str, Any]:
        current = self._mappings_by_isbn
        return {k: mapping_to_dict(current[k]) for k in sorted(current)}

    def load_state(self, data: Mapping[str, Any] | Iterable[ISBNMapping]) -> None:
        records = data.values() if isinstance(data, Mapping) else data
        loaded: dict[str, ISBNMapping] = {}
        for record in records:
            try:
                mapping = record if isinstance(record, ISBNMapping) else mapping_from_dict(record)
            except ValidationError as exc:
                LOGGER.warning(
                    "Dropping malformed ISBN mapping record: %s",
                    exc,
                    extra={"domain": DOMAIN, "op": "load_isbn_mappings"},
                )
                continue
            # First mapping for an ISBN wins, as with async_add
            loaded.setdefault(mapping.incorrect_isbn, mapping)
        with self._lock:
            self._mappings_by_isbn = loaded
