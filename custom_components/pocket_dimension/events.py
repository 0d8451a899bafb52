"""Change notifications for committed mutations.

The stores publish a ChangeEvent after every successful commit. Subscribers
(the Home Assistant bus bridge, caches in other layers) re-read the snapshot
they care about when notified; nothing here depends on a UI framework.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Literal

from .const import DOMAIN

LOGGER = logging.getLogger(__name__)

Collection = Literal["locations", "items", "isbn_mappings"]


@dataclass(frozen=True)
class ChangeEvent:
    """A committed change to one collection.

    ``orphaned_item_ids`` is only filled for location removals that cleared
    item references.
    """

    collection: Collection
    action: str
    ids: tuple[str, ...] = ()
    orphaned_item_ids: tuple[str, ...] = field(default_factory=tuple)


Listener = Callable[[ChangeEvent], None]


class ChangeNotifier:
    """Fan-out of ChangeEvents to registered listeners."""

    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` and return a callable that removes it."""

        with self._lock:
            self._listeners.append(listener)

        def _remove() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _remove

    def notify(self, event: ChangeEvent) -> None:
        """Deliver ``event`` to every listener.

        A failing listener is logged and skipped; the mutation it reports has
        already been committed.
        """

        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:  # pragma: no cover - listener bugs are not ours
                LOGGER.exception(
                    "Change listener failed",
                    extra={
                        "domain": DOMAIN,
                        "op": "notify",
                        "collection": event.collection,
                        "action": event.action,
                    },
                )
