from marksync.client.controller import CollectionSyncController
from marksync.client.events import ChangeEvent, Delete, Insert, Update
from marksync.client.records import Bookmark
from marksync.client.session import BookmarkSession
from marksync.client.store import BookmarkStore, ChangeSubscription, HttpBookmarkStore

__all__ = [
    "Bookmark",
    "BookmarkSession",
    "BookmarkStore",
    "ChangeEvent",
    "ChangeSubscription",
    "CollectionSyncController",
    "Delete",
    "HttpBookmarkStore",
    "Insert",
    "Update",
]
