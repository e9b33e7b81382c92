from __future__ import annotations

from marksync.extensions import db
from marksync.models import (
    CHANGE_ACTIONS,
    CHANGE_DELETE,
    Bookmark,
    ChangeEvent,
)


def serialize_bookmark_for_change(bookmark: Bookmark, action: str) -> dict:
    # A delete only needs to say which record went away.
    if action == CHANGE_DELETE:
        return {"id": bookmark.id, "user_id": bookmark.user_id}
    return bookmark.as_dict()


def log_change_event(user_id: int, action: str, bookmark: Bookmark) -> ChangeEvent:
    """Append a change to the user's log.

    The caller owns the transaction; the event becomes visible together with
    the write it describes.
    """
    if action not in CHANGE_ACTIONS:
        raise ValueError(f"unsupported change action: {action}")
    event = ChangeEvent(
        user_id=user_id,
        action=action,
        bookmark_id=bookmark.id,
        payload=serialize_bookmark_for_change(bookmark, action),
    )
    db.session.add(event)
    return event


def latest_cursor(user_id: int) -> int:
    return (
        db.session.query(db.func.max(ChangeEvent.id)).filter_by(user_id=user_id).scalar()
        or 0
    )


def events_since(user_id: int, since: int, limit: int) -> list[ChangeEvent]:
    return (
        ChangeEvent.query.filter_by(user_id=user_id)
        .filter(ChangeEvent.id > since)
        .order_by(ChangeEvent.id.asc())
        .limit(limit)
        .all()
    )
