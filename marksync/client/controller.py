"""Client-side view of one user's bookmark collection.

The controller merges three inputs into a single list ordered newest first:
the initial bulk fetch, optimistic local edits, and change events pushed by
the backing store. ``id`` is the only merge key, so a record reaching the
controller twice (once optimistically, once from the change feed) is
replaced in place rather than duplicated, whichever copy arrives first.

Change events are delivered on the subscription's thread, so every
operation takes the controller lock around its in-memory mutation. The lock
is never held across a call into the store. Listeners run outside it and
see snapshots in commit order; a snapshot superseded before delivery is
skipped.
"""

from __future__ import annotations

import logging
import threading
from operator import attrgetter
from typing import Callable

from marksync.client.events import ChangeEvent, Delete, Insert, Update
from marksync.client.records import Bookmark


logger = logging.getLogger(__name__)

STATE_IDLE = "idle"
STATE_LOADING = "loading"
STATE_READY = "ready"
STATE_CLOSED = "closed"


def _newest_first(records: list[Bookmark]) -> list[Bookmark]:
    # Stable, so records with equal timestamps keep their relative order.
    return sorted(records, key=attrgetter("created_at"), reverse=True)


def _unique(records: list[Bookmark]) -> list[Bookmark]:
    seen = set()
    unique = []
    for record in records:
        if record.id in seen:
            continue
        seen.add(record.id)
        unique.append(record)
    return unique


def _index_of(records: list[Bookmark], bookmark_id) -> int | None:
    for index, record in enumerate(records):
        if record.id == bookmark_id:
            return index
    return None


def merge_insert(records: list[Bookmark], record: Bookmark) -> list[Bookmark]:
    index = _index_of(records, record.id)
    if index is None:
        return _newest_first([record, *records])
    if records[index] == record:
        return records
    merged = list(records)
    merged[index] = record
    return _newest_first(merged)


def merge_update(records: list[Bookmark], record: Bookmark) -> list[Bookmark]:
    index = _index_of(records, record.id)
    if index is None or records[index] == record:
        return records
    merged = list(records)
    merged[index] = record
    return _newest_first(merged)


def merge_delete(records: list[Bookmark], bookmark_id) -> list[Bookmark]:
    if _index_of(records, bookmark_id) is None:
        return records
    return [record for record in records if record.id != bookmark_id]


def _journal_key(merge, argument):
    return argument if merge is merge_delete else argument.id


def _compact(pending, merge, argument):
    """Fold a new edit into the pending edit for the same record.

    Replaying the result has the same effect on any list as replaying both
    edits in order, so the journal holds at most one entry per ``id``.
    """
    if pending is None or merge is not merge_update:
        return merge, argument
    if pending[0] is merge_insert:
        return merge_insert, argument
    if pending[0] is merge_delete:
        return pending
    return merge, argument


class CollectionSyncController:
    """Session-scoped view of a user's bookmarks.

    Build one per signed-in session and call :meth:`teardown` when the
    session ends. Rendering code reads :attr:`records` or registers a
    listener with :meth:`add_listener`.
    """

    def __init__(self, store, user_id):
        self._store = store
        self.user_id = user_id
        self._lock = threading.Lock()
        self._records: list[Bookmark] = []
        self._state = STATE_IDLE
        # Edits applied before the bulk fetch lands, replayed on top of it.
        # One entry per id, in the order the ids were last touched.
        self._journal: dict[object, tuple[Callable, object]] | None = {}
        self._subscription = None
        self._listeners: list[Callable[[tuple[Bookmark, ...]], None]] = []
        # Snapshots are numbered under _lock and delivered in that order.
        self._version = 0
        self._delivered = 0
        self._notify_lock = threading.RLock()

    @property
    def records(self) -> tuple[Bookmark, ...]:
        with self._lock:
            return tuple(self._records)

    @property
    def ready(self) -> bool:
        with self._lock:
            return self._state == STATE_READY

    @property
    def state(self) -> str:
        with self._lock:
            return self._state

    def add_listener(self, callback: Callable[[tuple[Bookmark, ...]], None]) -> None:
        with self._lock:
            self._listeners.append(callback)

    def remove_listener(self, callback) -> None:
        with self._lock:
            if callback in self._listeners:
                self._listeners.remove(callback)

    def initialize(self) -> bool:
        """Load the user's bookmarks from the store.

        Returns ``True`` when this call committed the snapshot and ``False``
        when it was a no-op: a load is already in flight, a previous load
        succeeded, or the controller was torn down. Raises
        :class:`FetchError` on failure, leaving the controller unready so the
        call can be retried.
        """
        with self._lock:
            if self._state != STATE_IDLE:
                return False
            self._state = STATE_LOADING

        committed = False
        try:
            fetched = self._store.fetch_all(self.user_id)
            with self._lock:
                if self._state != STATE_LOADING:
                    logger.debug(
                        "Discarding bookmark snapshot for user %s after teardown",
                        self.user_id,
                    )
                    return False
                records = _unique(_newest_first(self._owned(fetched)))
                for merge, argument in (self._journal or {}).values():
                    records = merge(records, argument)
                self._journal = None
                self._state = STATE_READY
                version, snapshot, listeners = self._commit(records)
            committed = True
        finally:
            if not committed:
                self._reset_after_failed_load()

        logger.debug("Loaded %d bookmarks for user %s", len(snapshot), self.user_id)
        self._notify(version, listeners, snapshot)
        return True

    def subscribe_to_changes(self, on_event: Callable[[ChangeEvent], None] | None = None):
        """Open the change feed for this user and merge every event it delivers.

        ``on_event`` is called after each event has been applied, in the order
        the transport delivered them. Any subscription opened earlier is
        cancelled first. Returns the store's cancellation handle.
        """

        def handle(event: ChangeEvent) -> None:
            self.apply_remote_event(event)
            if on_event is not None:
                on_event(event)

        with self._lock:
            if self._state == STATE_CLOSED:
                raise RuntimeError("controller has been torn down")
            previous, self._subscription = self._subscription, None
        if previous is not None:
            previous.cancel()

        subscription = self._store.subscribe(self.user_id, handle)
        with self._lock:
            if self._state != STATE_CLOSED:
                self._subscription = subscription
                return subscription
        subscription.cancel()
        return subscription

    def apply_local_create(self, bookmark: Bookmark) -> None:
        if not self._is_owned(bookmark):
            return
        self._mutate(merge_insert, bookmark)

    def apply_local_delete(self, bookmark_id) -> Bookmark | None:
        """Remove a record optimistically and return it for a later rollback."""
        previous = self._mutate(merge_delete, bookmark_id)
        index = _index_of(previous, bookmark_id)
        return previous[index] if index is not None else None

    def apply_remote_event(self, event: ChangeEvent) -> None:
        if isinstance(event, Insert):
            if self._is_owned(event.record):
                self._mutate(merge_insert, event.record)
        elif isinstance(event, Update):
            if self._is_owned(event.record):
                self._mutate(merge_update, event.record)
        elif isinstance(event, Delete):
            self._mutate(merge_delete, event.bookmark_id)
        else:
            raise TypeError(f"unsupported change event: {event!r}")

    def teardown(self) -> None:
        with self._lock:
            subscription, self._subscription = self._subscription, None
            self._state = STATE_CLOSED
            self._journal = None
        if subscription is not None:
            subscription.cancel()

    def _mutate(self, merge, argument) -> list[Bookmark]:
        with self._lock:
            previous = self._records
            records = merge(previous, argument)
            if self._journal is not None:
                key = _journal_key(merge, argument)
                pending = self._journal.pop(key, None)
                self._journal[key] = _compact(pending, merge, argument)
            if records is previous:
                return previous
            version, snapshot, listeners = self._commit(records)
        self._notify(version, listeners, snapshot)
        return previous

    def _commit(self, records):
        # Caller holds _lock.
        self._records = records
        self._version += 1
        return self._version, tuple(records), list(self._listeners)

    def _reset_after_failed_load(self) -> None:
        with self._lock:
            if self._state != STATE_LOADING:
                return
            self._state = STATE_IDLE
            # The journal is kept for the next attempt, the partial view is not.
            if not self._records:
                return
            version, snapshot, listeners = self._commit([])
        self._notify(version, listeners, snapshot)

    def _is_owned(self, record: Bookmark) -> bool:
        if record.user_id == self.user_id:
            return True
        logger.warning(
            "Ignoring bookmark %s owned by user %s in session for user %s",
            record.id,
            record.user_id,
            self.user_id,
        )
        return False

    def _owned(self, records) -> list[Bookmark]:
        return [record for record in records if self._is_owned(record)]

    def _notify(self, version, listeners, snapshot) -> None:
        with self._notify_lock:
            if version <= self._delivered:
                return
            self._delivered = version
            for callback in listeners:
                # A listener that mutated the controller already delivered
                # a newer snapshot to everyone.
                if self._delivered != version:
                    return
                callback(snapshot)
