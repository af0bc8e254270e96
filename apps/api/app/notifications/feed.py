"""Per-subscriber notification feed.

A feed follows exactly one user at a time. Every (re)subscription gets a fresh
``FeedState`` and a new generation number; callbacks from an older generation
(late snapshots or toast timers of a previous user) are ignored.

The first snapshot after subscribing only seeds ``seen_ids``; toasts are raised
for unread items that show up in later snapshots.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol

from app.core.config import get_settings
from app.core.database import SessionFactory, session_scope
from app.notifications.models import utcnow
from app.notifications.repository import NotificationRepository, SnapshotHandler, notification_repository
from app.notifications.schemas import NotificationRead


logger = logging.getLogger("app.notifications.feed")


class FeedStatus(StrEnum):
    UNINITIALIZED = "uninitialized"
    SUBSCRIBED = "subscribed"
    UNSUBSCRIBED = "unsubscribed"


@dataclass(slots=True)
class FeedState:
    seen_ids: set[str] = field(default_factory=set)
    initial_load_complete: bool = False


@dataclass(slots=True)
class Toast:
    id: str
    type: str
    title: str
    body: str
    entity_type: str | None = None
    entity_id: str | None = None


class FeedStore(Protocol):
    def subscribe(self, user_id: str, on_change: SnapshotHandler) -> Callable[[], None]: ...

    def mark_read(self, user_id: str, notification_id: str) -> None: ...

    def mark_all_read(self, user_id: str) -> None: ...


class ToastScheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> Any: ...

    def cancel(self, handle: Any) -> None: ...


class AsyncioToastScheduler:
    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(delay, callback)

    def cancel(self, handle: asyncio.TimerHandle) -> None:
        handle.cancel()


class RepositoryFeedStore:
    def __init__(
        self,
        repository: NotificationRepository | None = None,
        *,
        session_factory: SessionFactory | None = None,
        max_items: int | None = None,
    ) -> None:
        self._repository = repository or notification_repository
        self._session_factory = session_factory
        self._max_items = max_items

    def subscribe(self, user_id: str, on_change: SnapshotHandler) -> Callable[[], None]:
        return self._repository.subscribe_for_user(
            user_id,
            on_change,
            max_items=self._max_items,
            session_factory=self._session_factory,
        )

    def mark_read(self, user_id: str, notification_id: str) -> None:
        with session_scope(self._session_factory) as session:
            self._repository.mark_read(session, uuid.UUID(notification_id), user_id)

    def mark_all_read(self, user_id: str) -> None:
        with session_scope(self._session_factory) as session:
            self._repository.mark_all_read(session, user_id)


FeedListener = Callable[[str, dict[str, Any]], None]


class NotificationFeed:
    def __init__(
        self,
        store: FeedStore,
        scheduler: ToastScheduler | None = None,
        *,
        toast_duration: float | None = None,
        listener: FeedListener | None = None,
    ) -> None:
        self._store = store
        self._scheduler = scheduler or AsyncioToastScheduler()
        self._toast_duration = toast_duration if toast_duration is not None else get_settings().toast_duration_seconds
        self._listener = listener
        self._generation = 0
        self._unsubscribe: Callable[[], None] | None = None
        self._timers: dict[str, Any] = {}

        self.status = FeedStatus.UNINITIALIZED
        self.user_id: str | None = None
        self.state = FeedState()
        self.notifications: list[NotificationRead] = []
        self.toasts: dict[str, Toast] = {}

    @property
    def unread_count(self) -> int:
        return sum(1 for item in self.notifications if item.read_at is None)

    def start(self, user_id: str) -> None:
        if self.status == FeedStatus.SUBSCRIBED and self.user_id == user_id:
            return
        self._teardown()
        self._generation += 1
        generation = self._generation
        self.user_id = user_id
        self.status = FeedStatus.SUBSCRIBED

        def on_change(items: list[NotificationRead]) -> None:
            self._on_snapshot(generation, items)

        self._unsubscribe = self._store.subscribe(user_id, on_change)

    def stop(self) -> None:
        self._teardown()
        self._generation += 1
        self.status = FeedStatus.UNSUBSCRIBED

    def dismiss_toast(self, toast_id: str) -> bool:
        return self._remove_toast(toast_id, reason="dismissed")

    def mark_read(self, notification_id: str) -> bool:
        if self.user_id is None:
            return False
        for index, item in enumerate(self.notifications):
            if str(item.id) != notification_id:
                continue
            if item.read_at is not None:
                return False
            self.notifications[index] = item.model_copy(update={"read_at": utcnow()})
            self._forward(lambda: self._store.mark_read(self.user_id, notification_id), "mark_read")
            return True
        return False

    def mark_all_read(self) -> int:
        if self.user_id is None:
            return 0
        unread = [index for index, item in enumerate(self.notifications) if item.read_at is None]
        if not unread:
            return 0
        now = utcnow()
        for index in unread:
            self.notifications[index] = self.notifications[index].model_copy(update={"read_at": now})
        self._forward(lambda: self._store.mark_all_read(self.user_id), "mark_all_read")
        return len(unread)

    def _on_snapshot(self, generation: int, items: list[NotificationRead]) -> None:
        if generation != self._generation or self.status != FeedStatus.SUBSCRIBED:
            return

        fresh = [item for item in items if item.read_at is None and str(item.id) not in self.state.seen_ids]
        self.state.seen_ids.update(str(item.id) for item in items)
        self.notifications = list(items)

        if self.state.initial_load_complete:
            for item in fresh:
                self._raise_toast(generation, item)
        else:
            self.state.initial_load_complete = True

        self._notify("snapshot", {"items": self.notifications, "unread": self.unread_count})

    def _raise_toast(self, generation: int, item: NotificationRead) -> None:
        toast_id = str(item.id)
        if toast_id in self.toasts:
            return
        toast = Toast(
            id=toast_id,
            type=item.type,
            title=item.title,
            body=item.body,
            entity_type=item.entity_type,
            entity_id=item.entity_id,
        )
        self.toasts[toast_id] = toast
        self._timers[toast_id] = self._scheduler.call_later(
            self._toast_duration,
            lambda: self._expire_toast(generation, toast_id),
        )
        self._notify("toast", {"toast": toast})

    def _expire_toast(self, generation: int, toast_id: str) -> None:
        if generation != self._generation:
            return
        self._remove_toast(toast_id, reason="timeout")

    def _remove_toast(self, toast_id: str, *, reason: str) -> bool:
        handle = self._timers.pop(toast_id, None)
        if handle is not None and reason != "timeout":
            self._scheduler.cancel(handle)
        toast = self.toasts.pop(toast_id, None)
        if toast is None:
            return False
        self._notify("toast_dismissed", {"id": toast_id, "reason": reason})
        return True

    def _teardown(self) -> None:
        if self._unsubscribe is not None:
            unsubscribe, self._unsubscribe = self._unsubscribe, None
            unsubscribe()
        for handle in self._timers.values():
            self._scheduler.cancel(handle)
        self._timers.clear()
        self.toasts.clear()
        self.notifications = []
        self.state = FeedState()
        self.user_id = None

    def _forward(self, call: Callable[[], None], action: str) -> None:
        # Local state is already updated; the next snapshot reconciles a failed write.
        try:
            call()
        except Exception as exc:
            logger.warning("notification.feed_write_failed", extra={"user_id": self.user_id, "status": action, "error": str(exc)})

    def _notify(self, kind: str, payload: dict[str, Any]) -> None:
        if self._listener is not None:
            self._listener(kind, payload)
