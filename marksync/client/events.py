"""Change notifications delivered by a subscription.

A change is exactly one of :class:`Insert`, :class:`Update` or
:class:`Delete`. Inserts and updates carry the full record; deletes carry
only the key, since the record no longer exists in the backing store.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from marksync.client.records import Bookmark


@dataclass(frozen=True)
class Insert:
    record: Bookmark


@dataclass(frozen=True)
class Update:
    record: Bookmark


@dataclass(frozen=True)
class Delete:
    bookmark_id: int


ChangeEvent = Union[Insert, Update, Delete]


def event_from_change(change: dict) -> ChangeEvent:
    """Build an event from one entry of the service's ``/changes`` feed."""
    action = (change.get("action") or "").lower()
    payload = change.get("payload") or {}
    if action == "insert":
        return Insert(Bookmark.from_dict(payload))
    if action == "update":
        return Update(Bookmark.from_dict(payload))
    if action == "delete":
        bookmark_id = change.get("bookmark_id")
        if bookmark_id is None:
            bookmark_id = payload["id"]
        return Delete(bookmark_id)
    raise ValueError(f"unsupported change action: {action!r}")
