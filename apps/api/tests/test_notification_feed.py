from __future__ import annotations

import asyncio
import threading
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import pytest

from app.notifications.feed import FeedStatus, NotificationFeed
from app.notifications.live import LoopBoundFeedStore, serialize_feed_message
from app.notifications.schemas import NotificationRead

NOW = datetime(2026, 5, 4, 12, 0, tzinfo=timezone.utc)


def _item(title: str, *, read: bool = False) -> NotificationRead:
    return NotificationRead(
        id=uuid.uuid4(),
        type="task.assigned",
        title=title,
        body=f"{title} body",
        actor_id="u-actor",
        entity_type="task",
        entity_id="t-1",
        meta=None,
        created_at=NOW,
        read_at=NOW if read else None,
    )


class FakeStore:
    def __init__(self) -> None:
        self.handlers: dict[str, Callable[[list[NotificationRead]], None]] = {}
        self.initial: dict[str, list[NotificationRead]] = {}
        self.unsubscribed: list[str] = []
        self.writes: list[tuple[str, str, str | None]] = []
        self.fail_writes = False

    def subscribe(self, user_id: str, on_change: Callable[[list[NotificationRead]], None]) -> Callable[[], None]:
        self.handlers[user_id] = on_change
        on_change(self.initial.get(user_id, []))

        def unsubscribe() -> None:
            self.unsubscribed.append(user_id)

        return unsubscribe

    def push(self, user_id: str, items: list[NotificationRead]) -> None:
        self.handlers[user_id](items)

    def mark_read(self, user_id: str, notification_id: str) -> None:
        if self.fail_writes:
            raise RuntimeError("store offline")
        self.writes.append(("mark_read", user_id, notification_id))

    def mark_all_read(self, user_id: str) -> None:
        if self.fail_writes:
            raise RuntimeError("store offline")
        self.writes.append(("mark_all_read", user_id, None))


class FakeScheduler:
    def __init__(self) -> None:
        self.pending: dict[int, tuple[float, Callable[[], None]]] = {}
        self.cancelled: list[int] = []
        self._next = 0

    def call_later(self, delay: float, callback: Callable[[], None]) -> int:
        self._next += 1
        self.pending[self._next] = (delay, callback)
        return self._next

    def cancel(self, handle: int) -> None:
        self.cancelled.append(handle)
        self.pending.pop(handle, None)

    def fire_all(self) -> None:
        for handle in list(self.pending):
            _, callback = self.pending.pop(handle)
            callback()


@pytest.fixture()
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture()
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture()
def messages() -> list[tuple[str, dict[str, Any]]]:
    return []


@pytest.fixture()
def feed(store: FakeStore, scheduler: FakeScheduler, messages: list[tuple[str, dict[str, Any]]]) -> NotificationFeed:
    return NotificationFeed(store, scheduler, toast_duration=6.0, listener=lambda kind, payload: messages.append((kind, payload)))


def test_initial_snapshot_raises_no_toasts(feed: NotificationFeed, store: FakeStore) -> None:
    store.initial["u-1"] = [_item("Old one"), _item("Old two", read=True)]

    feed.start("u-1")

    assert feed.status == FeedStatus.SUBSCRIBED
    assert feed.state.initial_load_complete is True
    assert feed.toasts == {}
    assert feed.unread_count == 1


def test_new_unread_item_raises_one_toast(feed: NotificationFeed, store: FakeStore, scheduler: FakeScheduler) -> None:
    old = _item("Old")
    store.initial["u-1"] = [old]
    feed.start("u-1")

    new = _item("New")
    store.push("u-1", [new, old])
    store.push("u-1", [new, old])

    assert list(feed.toasts) == [str(new.id)]
    assert len(scheduler.pending) == 1
    delay, _ = next(iter(scheduler.pending.values()))
    assert delay == 6.0


def test_new_but_already_read_item_raises_no_toast(feed: NotificationFeed, store: FakeStore) -> None:
    feed.start("u-1")
    store.push("u-1", [_item("Seen elsewhere", read=True)])
    assert feed.toasts == {}


def test_toast_expires_after_timer(
    feed: NotificationFeed,
    store: FakeStore,
    scheduler: FakeScheduler,
    messages: list[tuple[str, dict[str, Any]]],
) -> None:
    feed.start("u-1")
    new = _item("New")
    store.push("u-1", [new])

    scheduler.fire_all()

    assert feed.toasts == {}
    assert ("toast_dismissed", {"id": str(new.id), "reason": "timeout"}) in messages


def test_dismiss_cancels_timer(feed: NotificationFeed, store: FakeStore, scheduler: FakeScheduler) -> None:
    feed.start("u-1")
    new = _item("New")
    store.push("u-1", [new])

    assert feed.dismiss_toast(str(new.id)) is True
    assert feed.dismiss_toast(str(new.id)) is False
    assert scheduler.cancelled == [1]
    assert scheduler.pending == {}


def test_switching_user_resets_state_and_ignores_stale_callbacks(
    feed: NotificationFeed,
    store: FakeStore,
    scheduler: FakeScheduler,
) -> None:
    feed.start("u-1")
    store.push("u-1", [_item("For u-1")])
    stale_handler = store.handlers["u-1"]

    store.initial["u-2"] = [_item("u-2 backlog")]
    feed.start("u-2")

    assert store.unsubscribed == ["u-1"]
    assert feed.user_id == "u-2"
    assert feed.toasts == {}
    assert scheduler.pending == {}

    stale_handler([_item("Late for u-1")])
    assert feed.toasts == {}
    assert [item.title for item in feed.notifications] == ["u-2 backlog"]


def test_start_same_user_twice_is_a_noop(feed: NotificationFeed, store: FakeStore) -> None:
    feed.start("u-1")
    feed.start("u-1")
    assert store.unsubscribed == []


def test_mark_read_is_optimistic_and_forwarded(feed: NotificationFeed, store: FakeStore) -> None:
    item = _item("Unread")
    store.initial["u-1"] = [item]
    feed.start("u-1")

    assert feed.mark_read(str(item.id)) is True
    assert feed.unread_count == 0
    assert store.writes == [("mark_read", "u-1", str(item.id))]
    assert feed.mark_read(str(item.id)) is False
    assert feed.mark_read(str(uuid.uuid4())) is False


def test_mark_all_read_skips_store_when_nothing_unread(feed: NotificationFeed, store: FakeStore) -> None:
    store.initial["u-1"] = [_item("One"), _item("Two")]
    feed.start("u-1")

    assert feed.mark_all_read() == 2
    assert feed.mark_all_read() == 0
    assert store.writes == [("mark_all_read", "u-1", None)]


def test_failed_write_keeps_local_state(feed: NotificationFeed, store: FakeStore) -> None:
    item = _item("Unread")
    store.initial["u-1"] = [item]
    feed.start("u-1")
    store.fail_writes = True

    assert feed.mark_read(str(item.id)) is True
    assert feed.unread_count == 0


def test_stop_unsubscribes_and_clears(feed: NotificationFeed, store: FakeStore, scheduler: FakeScheduler) -> None:
    feed.start("u-1")
    store.push("u-1", [_item("New")])

    feed.stop()

    assert feed.status == FeedStatus.UNSUBSCRIBED
    assert store.unsubscribed == ["u-1"]
    assert feed.toasts == {}
    assert scheduler.pending == {}


def test_serialize_feed_message_shapes() -> None:
    item = _item("New")
    snapshot = serialize_feed_message("snapshot", {"items": [item], "unread": 1})
    assert snapshot["type"] == "snapshot"
    assert snapshot["items"][0]["id"] == str(item.id)
    assert snapshot["unread"] == 1
    assert serialize_feed_message("toast_dismissed", {"id": "x", "reason": "dismissed"}) == {
        "type": "toast_dismissed",
        "id": "x",
        "reason": "dismissed",
    }


def test_unread_backlog_then_one_new_item_then_mark_all_read(
    feed: NotificationFeed,
    store: FakeStore,
    messages: list[tuple[str, dict[str, Any]]],
) -> None:
    backlog = [_item("First"), _item("Second"), _item("Third")]
    store.initial["u-1"] = backlog
    feed.start("u-1")

    assert feed.unread_count == 3
    assert feed.toasts == {}

    new = _item("Fourth")
    store.push("u-1", [new, *backlog])

    assert list(feed.toasts) == [str(new.id)]
    assert [kind for kind, _ in messages].count("toast") == 1
    assert feed.unread_count == 4

    assert feed.mark_all_read() == 4
    assert feed.unread_count == 0
    assert feed.mark_all_read() == 0
    assert feed.unread_count == 0
    assert store.writes == [("mark_all_read", "u-1", None)]


class ThreadRecordingStore:
    def __init__(self) -> None:
        self.calls: list[tuple[str, int]] = []

    def subscribe(self, user_id: str, on_change: Callable[[list[NotificationRead]], None]) -> Callable[[], None]:
        self.calls.append(("subscribe", threading.get_ident()))
        on_change([_item("Backlog")])
        return lambda: self.calls.append(("unsubscribe", threading.get_ident()))

    def mark_read(self, user_id: str, notification_id: str) -> None:
        self.calls.append(("mark_read", threading.get_ident()))

    def mark_all_read(self, user_id: str) -> None:
        raise RuntimeError("store offline")


def test_loop_bound_store_keeps_store_calls_off_the_loop() -> None:
    inner = ThreadRecordingStore()

    async def scenario() -> tuple[int, int]:
        loop = asyncio.get_running_loop()
        delivered: asyncio.Future[int] = loop.create_future()
        store = LoopBoundFeedStore(inner, loop)

        unsubscribe = store.subscribe("u-1", lambda items: delivered.set_result(threading.get_ident()))
        delivered_on = await asyncio.wait_for(delivered, timeout=2)
        store.mark_read("u-1", "n-1")
        store.mark_all_read("u-1")
        await store.drain()
        unsubscribe()
        await asyncio.sleep(0)
        return threading.get_ident(), delivered_on

    loop_thread, delivered_on = asyncio.run(scenario())

    assert delivered_on == loop_thread
    assert [name for name, _ in inner.calls] == ["subscribe", "mark_read", "unsubscribe"]
    subscribe_thread = inner.calls[0][1]
    mark_thread = inner.calls[1][1]
    assert subscribe_thread != loop_thread
    assert mark_thread != loop_thread
