"""Websocket transport for the live notification feed.

Each connection owns one ``NotificationFeed`` that runs on the connection's event
loop. Database work (the first load, read marks and the re-query after every
change) runs in the default executor; snapshots are handed back to the loop
with ``call_soon_threadsafe``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import asdict
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect

from app.core.database import SessionFactory
from app.metrics import observe_live_connections
from app.notifications.feed import AsyncioToastScheduler, FeedStore, NotificationFeed, RepositoryFeedStore
from app.notifications.repository import SnapshotHandler
from app.notifications.schemas import NotificationRead


logger = logging.getLogger("app.notifications.live")


class ConnectionManager:
    """Active websocket connections per user."""

    def __init__(self) -> None:
        self._connections: dict[str, set[WebSocket]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, user_id: str) -> None:
        await websocket.accept()
        async with self._lock:
            self._connections.setdefault(user_id, set()).add(websocket)
            observe_live_connections(self.total_connections())

    async def disconnect(self, websocket: WebSocket, user_id: str) -> None:
        async with self._lock:
            connections = self._connections.get(user_id)
            if connections is None:
                return
            connections.discard(websocket)
            if not connections:
                del self._connections[user_id]
            observe_live_connections(self.total_connections())

    def total_connections(self) -> int:
        return sum(len(connections) for connections in self._connections.values())


connection_manager = ConnectionManager()


class LoopBoundFeedStore:
    """Runs ``store`` calls in the executor and delivers snapshots on ``loop``."""

    def __init__(self, store: FeedStore, loop: asyncio.AbstractEventLoop) -> None:
        self._store = store
        self._loop = loop
        self._pending: set[asyncio.Future[Any]] = set()

    def subscribe(self, user_id: str, on_change: SnapshotHandler) -> Callable[[], None]:
        def hop(items: list[NotificationRead]) -> None:
            if self._loop.is_closed():
                return
            self._loop.call_soon_threadsafe(on_change, items)

        registration = self._offload("subscribe", self._store.subscribe, user_id, hop)

        def release(future: asyncio.Future[Any]) -> None:
            if future.cancelled() or future.exception() is not None:
                return
            future.result()()

        def unsubscribe() -> None:
            # The registration may still be in flight; release it once it lands.
            registration.add_done_callback(release)

        return unsubscribe

    def mark_read(self, user_id: str, notification_id: str) -> None:
        self._offload("mark_read", self._store.mark_read, user_id, notification_id)

    def mark_all_read(self, user_id: str) -> None:
        self._offload("mark_all_read", self._store.mark_all_read, user_id)

    async def drain(self) -> None:
        """Wait for store calls still running in the executor."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _offload(self, action: str, call: Callable[..., Any], *args: Any) -> asyncio.Future[Any]:
        future = self._loop.run_in_executor(None, call, *args)
        self._pending.add(future)

        def settle(done: asyncio.Future[Any]) -> None:
            self._pending.discard(done)
            if done.cancelled():
                return
            exc = done.exception()
            if exc is not None:
                # Local feed state is already updated; the next snapshot reconciles it.
                logger.warning(
                    "notification.feed_store_failed",
                    extra={"user_id": args[0], "status": action, "error": str(exc)},
                )

        future.add_done_callback(settle)
        return future

def serialize_feed_message(kind: str, payload: dict[str, Any]) -> dict[str, Any]:
    if kind == "snapshot":
        return {
            "type": "snapshot",
            "items": [item.model_dump(mode="json") for item in payload["items"]],
            "unread": payload["unread"],
        }
    if kind == "toast":
        return {"type": "toast", "toast": asdict(payload["toast"])}
    return {"type": kind, **payload}


class LiveFeedConnection:
    def __init__(self, websocket: WebSocket, user_id: str, *, session_factory: SessionFactory | None = None) -> None:
        self._websocket = websocket
        self._user_id = user_id
        self._session_factory = session_factory
        self._outbox: asyncio.Queue[dict[str, Any]] = asyncio.Queue()

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        store = LoopBoundFeedStore(RepositoryFeedStore(session_factory=self._session_factory), loop)
        feed = NotificationFeed(store, AsyncioToastScheduler(loop), listener=self._enqueue)
        feed.start(self._user_id)

        sender = asyncio.create_task(self._send_loop())
        try:
            await self._receive_loop(feed)
        finally:
            feed.stop()
            sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                pass
            await store.drain()

    def _enqueue(self, kind: str, payload: dict[str, Any]) -> None:
        self._outbox.put_nowait(serialize_feed_message(kind, payload))

    async def _send_loop(self) -> None:
        while True:
            message = await self._outbox.get()
            await self._websocket.send_json(message)

    async def _receive_loop(self, feed: NotificationFeed) -> None:
        while True:
            try:
                data = await self._websocket.receive_json()
            except WebSocketDisconnect:
                return
            if not isinstance(data, dict):
                continue
            action = data.get("action")
            if action == "mark_read" and isinstance(data.get("id"), str):
                feed.mark_read(data["id"])
            elif action == "mark_all_read":
                feed.mark_all_read()
            elif action == "dismiss_toast" and isinstance(data.get("id"), str):
                feed.dismiss_toast(data["id"])
            elif action == "ping":
                self._outbox.put_nowait({"type": "pong"})
            else:
                logger.info("notification.live_unknown_action", extra={"user_id": self._user_id, "status": str(action)})
