import random
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from marksync.client.controller import STATE_CLOSED, CollectionSyncController
from marksync.client.events import Delete, Insert, Update
from marksync.client.records import Bookmark
from marksync.errors import FetchError


T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
T1 = T0 + timedelta(minutes=1)
T2 = T0 + timedelta(minutes=2)
T3 = T0 + timedelta(minutes=3)


def _bookmark(bookmark_id, created_at, title=None, user_id="u1"):
    return Bookmark(
        id=bookmark_id,
        user_id=user_id,
        title=title or f"Bookmark {bookmark_id}",
        url=f"https://example.com/{bookmark_id}",
        created_at=created_at,
    )


class FakeSubscription:
    def __init__(self, handler):
        self.handler = handler
        self.cancel_calls = 0

    def cancel(self):
        self.cancel_calls += 1

    def push(self, event):
        self.handler(event)


class FakeStore:
    def __init__(self, records=None, error=None, on_fetch=None):
        self.records = list(records or [])
        self.error = error
        self.on_fetch = on_fetch
        self.fetch_calls = 0
        self.subscriptions = []

    def fetch_all(self, user_id):
        self.fetch_calls += 1
        if self.on_fetch:
            self.on_fetch()
        if self.error:
            raise self.error
        return list(self.records)

    def subscribe(self, user_id, handler):
        subscription = FakeSubscription(handler)
        self.subscriptions.append(subscription)
        return subscription


def _ids(controller):
    return [record.id for record in controller.records]


def _assert_consistent(controller):
    records = controller.records
    ids = [record.id for record in records]
    assert len(ids) == len(set(ids))
    stamps = [record.created_at for record in records]
    assert stamps == sorted(stamps, reverse=True)


@pytest.fixture
def store():
    return FakeStore([_bookmark(1, T2), _bookmark(2, T1)])


@pytest.fixture
def controller(store):
    controller = CollectionSyncController(store, "u1")
    controller.initialize()
    return controller


def test_initialize_keeps_fetched_order(controller):
    assert controller.ready
    assert _ids(controller) == [1, 2]


def test_initialize_sorts_and_dedupes_snapshot():
    store = FakeStore([_bookmark(2, T1), _bookmark(1, T2), _bookmark(2, T1)])
    controller = CollectionSyncController(store, "u1")
    controller.initialize()
    assert _ids(controller) == [1, 2]


def test_initialize_runs_once_after_success(controller, store):
    assert controller.initialize() is False
    assert store.fetch_calls == 1


def test_initialize_is_noop_while_in_flight():
    nested_results = []
    store = FakeStore([_bookmark(1, T2)])
    controller = CollectionSyncController(store, "u1")
    store.on_fetch = lambda: nested_results.append(controller.initialize())

    assert controller.initialize() is True
    assert nested_results == [False]
    assert store.fetch_calls == 1


def test_initialize_failure_leaves_controller_unready_and_retryable():
    store = FakeStore([_bookmark(1, T2)], error=FetchError("backend down"))
    controller = CollectionSyncController(store, "u1")

    with pytest.raises(FetchError):
        controller.initialize()
    assert not controller.ready
    assert controller.records == ()

    store.error = None
    assert controller.initialize() is True
    assert controller.ready
    assert _ids(controller) == [1]


def test_events_during_fetch_are_replayed_onto_snapshot():
    store = FakeStore([_bookmark(1, T2), _bookmark(2, T1)])
    controller = CollectionSyncController(store, "u1")
    subscription = controller.subscribe_to_changes()

    def deliver_during_fetch():
        subscription.push(Insert(_bookmark(3, T3)))
        subscription.push(Delete(2))

    store.on_fetch = deliver_during_fetch
    controller.initialize()

    assert _ids(controller) == [3, 1]


def test_events_before_initialize_are_not_lost():
    store = FakeStore([_bookmark(1, T2)])
    controller = CollectionSyncController(store, "u1")
    subscription = controller.subscribe_to_changes()
    subscription.push(Insert(_bookmark(3, T3)))

    controller.initialize()
    assert _ids(controller) == [3, 1]


def test_local_create_goes_to_head(controller):
    controller.apply_local_create(_bookmark(3, T3))
    assert controller.records[0].id == 3


def test_remote_delete_removes_exactly_one(controller):
    before = len(controller.records)
    controller.apply_remote_event(Delete(2))
    assert 2 not in _ids(controller)
    assert len(controller.records) == before - 1


def test_remote_delete_is_idempotent(controller):
    controller.apply_remote_event(Delete(2))
    once = controller.records
    controller.apply_remote_event(Delete(2))
    assert controller.records == once


def test_remote_delete_of_unknown_id_is_noop(controller):
    before = controller.records
    controller.apply_remote_event(Delete(999))
    assert controller.records == before


def test_remote_update_replaces_in_place(controller):
    controller.apply_remote_event(Update(_bookmark(1, T2, title="new")))
    assert _ids(controller) == [1, 2]
    assert controller.records[0].title == "new"


def test_remote_update_for_missing_record_is_ignored(controller):
    before = controller.records
    controller.apply_remote_event(Update(_bookmark(42, T3)))
    assert controller.records == before


def test_local_create_then_remote_insert_yields_one_record(controller):
    created = _bookmark(3, T3)
    controller.apply_local_create(created)
    controller.apply_remote_event(Insert(created))
    assert _ids(controller).count(3) == 1
    assert _ids(controller) == [3, 1, 2]


def test_remote_insert_then_local_create_yields_one_record(controller):
    created = _bookmark(3, T3)
    controller.apply_remote_event(Insert(created))
    controller.apply_local_create(created)
    assert _ids(controller) == [3, 1, 2]


def test_reconciling_insert_keeps_position_and_takes_server_copy(controller):
    controller.apply_local_create(_bookmark(3, T3, title="draft"))
    controller.apply_local_create(_bookmark(4, T3 + timedelta(seconds=1)))
    controller.apply_remote_event(Insert(_bookmark(3, T3, title="confirmed")))

    assert _ids(controller) == [4, 3, 1, 2]
    assert controller.records[1].title == "confirmed"


def test_local_delete_returns_removed_record(controller):
    removed = controller.apply_local_delete(1)
    assert removed.id == 1
    assert _ids(controller) == [2]
    assert controller.apply_local_delete(1) is None


def test_records_for_other_users_are_ignored(controller):
    controller.apply_remote_event(Insert(_bookmark(7, T3, user_id="u2")))
    controller.apply_local_create(_bookmark(8, T3, user_id="u2"))
    assert _ids(controller) == [1, 2]


def test_unknown_event_type_is_rejected(controller):
    with pytest.raises(TypeError):
        controller.apply_remote_event(("insert", _bookmark(3, T3)))


def test_listeners_receive_snapshot_after_each_change(controller):
    seen = []
    controller.add_listener(seen.append)

    controller.apply_local_create(_bookmark(3, T3))
    controller.apply_remote_event(Delete(999))
    controller.apply_remote_event(Delete(3))

    assert [[record.id for record in snapshot] for snapshot in seen] == [
        [3, 1, 2],
        [1, 2],
    ]

    controller.remove_listener(seen.append)
    controller.apply_local_delete(1)
    assert len(seen) == 2


def test_subscription_applies_events_before_callback(controller, store):
    observed = []
    controller.subscribe_to_changes(lambda event: observed.append(_ids(controller)))

    store.subscriptions[0].push(Insert(_bookmark(3, T3)))
    assert observed == [[3, 1, 2]]


def test_resubscribe_cancels_previous_subscription(controller, store):
    controller.subscribe_to_changes()
    controller.subscribe_to_changes()
    assert store.subscriptions[0].cancel_calls == 1
    assert store.subscriptions[1].cancel_calls == 0


def test_teardown_is_safe_without_subscription_and_repeatable(controller, store):
    controller.teardown()
    controller.teardown()
    assert controller.state == STATE_CLOSED

    with pytest.raises(RuntimeError):
        controller.subscribe_to_changes()


def test_teardown_cancels_subscription_once(controller, store):
    controller.subscribe_to_changes()
    controller.teardown()
    controller.teardown()
    assert store.subscriptions[0].cancel_calls == 1


def test_teardown_during_initialize_discards_snapshot():
    store = FakeStore([_bookmark(1, T2)])
    controller = CollectionSyncController(store, "u1")
    controller.subscribe_to_changes()
    store.on_fetch = controller.teardown

    assert controller.initialize() is False
    assert store.subscriptions[0].cancel_calls == 1
    assert controller.records == ()
    assert not controller.ready


def test_random_operation_sequences_keep_records_unique_and_sorted(controller):
    rng = random.Random(20240501)
    pool = [
        _bookmark(bookmark_id, T0 + timedelta(seconds=rng.randint(0, 30)))
        for bookmark_id in range(1, 16)
    ]

    for _ in range(500):
        record = rng.choice(pool)
        operation = rng.randrange(5)
        if operation == 0:
            controller.apply_local_create(record)
        elif operation == 1:
            controller.apply_local_delete(record.id)
        elif operation == 2:
            controller.apply_remote_event(Insert(record))
        elif operation == 3:
            controller.apply_remote_event(
                Update(
                    Bookmark(
                        id=record.id,
                        user_id=record.user_id,
                        title=f"{record.title} (edited)",
                        url=record.url,
                        created_at=record.created_at,
                    )
                )
            )
        else:
            controller.apply_remote_event(Delete(record.id))
        _assert_consistent(controller)


def test_listeners_end_on_latest_snapshot_across_threads(controller):
    release = threading.Event()
    seen = []

    def slow_listener(snapshot):
        if not seen:
            release.wait(timeout=5)
        seen.append([record.id for record in snapshot])

    controller.add_listener(slow_listener)

    local = threading.Thread(
        target=controller.apply_local_create, args=(_bookmark(3, T3),)
    )
    local.start()
    deadline = time.monotonic() + 5
    while 3 not in _ids(controller) and time.monotonic() < deadline:
        time.sleep(0.001)

    remote = threading.Thread(
        target=controller.apply_remote_event,
        args=(Insert(_bookmark(4, T3 + timedelta(seconds=1))),),
    )
    remote.start()
    while 4 not in _ids(controller) and time.monotonic() < deadline:
        time.sleep(0.001)

    release.set()
    local.join(timeout=5)
    remote.join(timeout=5)

    assert _ids(controller) == [4, 3, 1, 2]
    assert seen[-1] == [4, 3, 1, 2]
    assert [3, 1, 2] not in seen[1:]


def test_listener_that_mutates_does_not_resend_stale_snapshot(controller):
    first = []
    second = []

    def cascading(snapshot):
        first.append([record.id for record in snapshot])
        if len(first) == 1:
            controller.apply_remote_event(Delete(2))

    controller.add_listener(cascading)
    controller.add_listener(lambda snapshot: second.append([r.id for r in snapshot]))

    controller.apply_local_create(_bookmark(3, T3))

    assert first == [[3, 1, 2], [3, 1]]
    assert second == [[3, 1]]


def test_journal_keeps_one_entry_per_record():
    store = FakeStore([_bookmark(1, T2)])
    controller = CollectionSyncController(store, "u1")
    subscription = controller.subscribe_to_changes()

    for round_number in range(200):
        subscription.push(Insert(_bookmark(3, T3, title=f"draft {round_number}")))
        subscription.push(Update(_bookmark(3, T3, title=f"edit {round_number}")))
        subscription.push(Delete(3))
        subscription.push(Update(_bookmark(1, T2, title=f"one {round_number}")))
    subscription.push(Insert(_bookmark(3, T3, title="kept")))

    assert len(controller._journal) == 2

    controller.initialize()
    assert _ids(controller) == [3, 1]
    assert controller.records[0].title == "kept"
    assert controller.records[1].title == "one 199"
    assert controller._journal is None


def test_journaled_update_after_insert_replays_as_insert():
    store = FakeStore([_bookmark(1, T2)])
    controller = CollectionSyncController(store, "u1")
    subscription = controller.subscribe_to_changes()
    subscription.push(Insert(_bookmark(3, T3, title="draft")))
    subscription.push(Update(_bookmark(3, T3, title="final")))
    subscription.push(Delete(1))
    subscription.push(Update(_bookmark(1, T2, title="too late")))

    controller.initialize()
    assert _ids(controller) == [3]
    assert controller.records[0].title == "final"


def test_failed_initialize_drops_partial_view_but_keeps_pending_edits():
    store = FakeStore([_bookmark(1, T2)], error=FetchError("backend down"))
    controller = CollectionSyncController(store, "u1")
    seen = []
    controller.add_listener(seen.append)
    subscription = controller.subscribe_to_changes()

    store.on_fetch = lambda: subscription.push(Insert(_bookmark(3, T3)))
    with pytest.raises(FetchError):
        controller.initialize()

    assert controller.records == ()
    assert seen[-1] == ()

    store.error = None
    store.on_fetch = None
    assert controller.initialize() is True
    assert _ids(controller) == [3, 1]
