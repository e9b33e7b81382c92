from __future__ import annotations

import logging

from marksync.client.controller import CollectionSyncController
from marksync.client.records import Bookmark
from marksync.errors import FetchError, WriteError
from marksync.services.common import clean_bookmark_input


logger = logging.getLogger(__name__)


class BookmarkSession:
    """One signed-in user's live bookmark list.

    Owns a :class:`CollectionSyncController` for the lifetime of the session
    and performs the store writes that its optimistic edits stand in for,
    rolling the edit back when the write fails.
    """

    def __init__(self, store, user_id):
        self.store = store
        self.user_id = user_id
        self.controller = CollectionSyncController(store, user_id)

    @property
    def records(self) -> tuple[Bookmark, ...]:
        return self.controller.records

    def start(self, on_event=None) -> None:
        # The feed is opened before the snapshot is taken; anything it delivers
        # in between is replayed onto the snapshot by the controller.
        self.controller.subscribe_to_changes(on_event)
        try:
            self.controller.initialize()
        except FetchError:
            self.controller.teardown()
            raise

    def add(self, title: str, url: str) -> Bookmark:
        title, url = clean_bookmark_input(title, url)
        record = self.store.create(self.user_id, title, url)
        self.controller.apply_local_create(record)
        return record

    def remove(self, bookmark_id) -> Bookmark | None:
        removed = self.controller.apply_local_delete(bookmark_id)
        try:
            self.store.delete(bookmark_id)
        except WriteError:
            if removed is not None:
                logger.warning("Restoring bookmark %s after failed delete", bookmark_id)
                self.controller.apply_local_create(removed)
            raise
        return removed

    def close(self) -> None:
        self.controller.teardown()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()
