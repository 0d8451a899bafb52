"""Offline tests for change notifications.

Scenarios:
- Every committed mutation publishes one ChangeEvent
- Failed mutations publish nothing
- Cascade removal reports orphaned items on both collections
- Removing a listener stops delivery; a failing listener does not block others
"""

from __future__ import annotations

import pytest
from custom_components.pocket_dimension.events import ChangeEvent, ChangeNotifier
from custom_components.pocket_dimension.exceptions import ValidationError
from custom_components.pocket_dimension.item_repository import ItemRepository
from custom_components.pocket_dimension.location_store import LocationStore


@pytest.mark.asyncio
async def test_mutations_publish_events(context) -> None:
    # Arrange
    seen: list[ChangeEvent] = []
    context.notifier.add_listener(seen.append)
    locations = LocationStore(context)
    items = ItemRepository(context, locations.exists)
    locations.attach_orphaner(items)

    # Act
    room = locations.add(name="Room", type="room")
    with pytest.raises(ValidationError):
        locations.add(name="Nested room", type="room", parent_id=room.id)
    item = items.add({"title": "Lamp", "type": "electronics", "location_id": str(room.id)})
    locations.rename(room.id, "Lounge")
    locations.remove(room.id)

    # Assert
    assert [(e.collection, e.action) for e in seen] == [
        ("locations", "added"),
        ("items", "added"),
        ("locations", "renamed"),
        ("items", "orphaned"),
        ("locations", "removed"),
    ]
    assert seen[-1].ids == (str(room.id),)
    assert seen[-1].orphaned_item_ids == (str(item.id),)
    assert seen[-2].ids == (str(item.id),)


def test_removed_listener_is_not_called() -> None:
    notifier = ChangeNotifier()
    seen: list[ChangeEvent] = []
    remove = notifier.add_listener(seen.append)

    notifier.notify(ChangeEvent(collection="items", action="added", ids=("a",)))
    remove()
    remove()
    notifier.notify(ChangeEvent(collection="items", action="added", ids=("b",)))

    assert [e.ids for e in seen] == [("a",)]


def test_failing_listener_does_not_block_others() -> None:
    notifier = ChangeNotifier()
    seen: list[ChangeEvent] = []

    def _broken(event: ChangeEvent) -> None:
        raise RuntimeError("boom")

    notifier.add_listener(_broken)
    notifier.add_listener(seen.append)

    notifier.notify(ChangeEvent(collection="locations", action="moved"))

    assert len(seen) == 1
