"""Room transport: join/leave named groups and emit frames to them."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, AsyncContextManager, AsyncIterator, Dict, Protocol, Sequence, Set, Tuple

from fastapi import WebSocket
from fastapi.websockets import WebSocketDisconnect
from starlette.websockets import WebSocketState

logger = logging.getLogger(__name__)

POLL_ROOM_PREFIX = "poll:"
LIVE_EVENT_NAME = "event"

Frame = Tuple[str, Dict[str, Any]]


def poll_room(poll_id: str) -> str:
    return f"{POLL_ROOM_PREFIX}{poll_id}"


class RoomTransport(Protocol):
    """Publish-to-group capability consumed by the connection manager and broadcaster."""

    async def join(self, socket_id: str, room: str) -> None:
        ...

    async def leave(self, socket_id: str, room: str) -> None:
        ...

    async def emit_to_room(self, room: str, event: str, payload: Dict[str, Any]) -> int:
        """Send to every member of ``room``; returns the number of deliveries."""
        ...

    async def emit(self, socket_id: str, event: str, payload: Dict[str, Any]) -> bool:
        ...

    async def emit_many(self, socket_id: str, frames: Sequence[Frame]) -> bool:
        """Send ``frames`` back to back with no other frame in between."""
        ...

    def exclusive(self, socket_id: str) -> AsyncContextManager[None]:
        """Hold the socket's send order; other senders queue until exit. Reentrant."""
        ...

    def set_replay_cursor(self, socket_id: str, event_id: str) -> None:
        """Skip live envelopes for ``socket_id`` whose eventId is not after ``event_id``."""
        ...

    async def disconnect(self, socket_id: str, *, code: int = 1000, reason: str = "") -> None:
        ...

    def is_connected(self, socket_id: str) -> bool:
        ...

    def room_members(self, room: str) -> Set[str]:
        ...


class WebSocketTransport:
    """Room transport over Starlette WebSockets.

    Frames are JSON objects ``{"event": name, "data": payload}``. A socket
    whose send fails is closed and dropped from every room.
    """

    def __init__(self) -> None:
        self._sockets: Dict[str, WebSocket] = {}
        self._send_locks: Dict[str, asyncio.Lock] = {}
        self._lock_owners: Dict[str, asyncio.Task[Any]] = {}
        self._replay_cursors: Dict[str, str] = {}
        self._rooms: Dict[str, Set[str]] = defaultdict(set)
        self._memberships: Dict[str, Set[str]] = defaultdict(set)

    def register(self, socket_id: str, websocket: WebSocket) -> None:
        self._sockets[socket_id] = websocket
        self._send_locks[socket_id] = asyncio.Lock()

    def unregister(self, socket_id: str) -> None:
        self._forget_rooms(socket_id)
        self._sockets.pop(socket_id, None)
        self._send_locks.pop(socket_id, None)
        self._lock_owners.pop(socket_id, None)
        self._replay_cursors.pop(socket_id, None)

    async def join(self, socket_id: str, room: str) -> None:
        if socket_id not in self._sockets:
            raise KeyError(f"Unknown socket {socket_id}")
        self._rooms[room].add(socket_id)
        self._memberships[socket_id].add(room)
        logger.debug("Socket %s joined room %s", socket_id, room)

    async def leave(self, socket_id: str, room: str) -> None:
        members = self._rooms.get(room)
        if members is not None:
            members.discard(socket_id)
            if not members:
                self._rooms.pop(room, None)
        rooms = self._memberships.get(socket_id)
        if rooms is not None:
            rooms.discard(room)
        logger.debug("Socket %s left room %s", socket_id, room)

    def room_members(self, room: str) -> Set[str]:
        return set(self._rooms.get(room, ()))

    def is_connected(self, socket_id: str) -> bool:
        websocket = self._sockets.get(socket_id)
        if websocket is None:
            return False
        return (
            websocket.client_state == WebSocketState.CONNECTED
            and websocket.application_state == WebSocketState.CONNECTED
        )

    def set_replay_cursor(self, socket_id: str, event_id: str) -> None:
        if socket_id in self._sockets:
            self._replay_cursors[socket_id] = event_id

    @asynccontextmanager
    async def exclusive(self, socket_id: str) -> AsyncIterator[None]:
        lock = self._send_locks.get(socket_id)
        current = asyncio.current_task()
        if lock is None or self._lock_owners.get(socket_id) is current:
            yield
            return
        async with lock:
            self._lock_owners[socket_id] = current  # type: ignore[assignment]
            try:
                yield
            finally:
                if self._lock_owners.get(socket_id) is current:
                    del self._lock_owners[socket_id]

    async def emit_to_room(self, room: str, event: str, payload: Dict[str, Any]) -> int:
        deliveries = 0
        for socket_id in list(self._rooms.get(room, ())):
            if await self._deliver(socket_id, [(event, payload)], live=True):
                deliveries += 1
        return deliveries

    async def emit(self, socket_id: str, event: str, payload: Dict[str, Any]) -> bool:
        return await self._deliver(socket_id, [(event, payload)])

    async def emit_many(self, socket_id: str, frames: Sequence[Frame]) -> bool:
        return await self._deliver(socket_id, frames)

    async def disconnect(self, socket_id: str, *, code: int = 1000, reason: str = "") -> None:
        websocket = self._sockets.get(socket_id)
        self._forget_rooms(socket_id)
        if websocket is None or websocket.application_state == WebSocketState.DISCONNECTED:
            return
        try:
            await websocket.close(code=code, reason=reason)
        except RuntimeError:
            logger.debug("Ignored error while closing websocket %s", socket_id, exc_info=True)

    async def close_all(self, *, code: int = 1001, reason: str = "") -> None:
        for socket_id in list(self._sockets):
            await self.disconnect(socket_id, code=code, reason=reason)

    async def _deliver(self, socket_id: str, frames: Sequence[Frame], *, live: bool = False) -> bool:
        if socket_id not in self._sockets:
            return False
        sent = False
        try:
            async with self.exclusive(socket_id):
                # Re-read after waiting: the socket may have gone away meanwhile.
                websocket = self._sockets.get(socket_id)
                if websocket is None:
                    return False
                for event, payload in frames:
                    if live and self._already_replayed(socket_id, event, payload):
                        logger.debug("Skipping replayed event %s for socket %s", payload.get("eventId"), socket_id)
                        continue
                    await websocket.send_json({"event": event, "data": payload})
                    sent = True
        except (RuntimeError, WebSocketDisconnect) as exc:
            logger.warning("Failed to send payload to socket %s: %s", socket_id, exc)
            await self.disconnect(socket_id, code=1011, reason="Send failed")
            return False
        return sent or not frames

    def _already_replayed(self, socket_id: str, event: str, payload: Dict[str, Any]) -> bool:
        cursor = self._replay_cursors.get(socket_id)
        if cursor is None or event != LIVE_EVENT_NAME:
            return False
        event_id = payload.get("eventId")
        return isinstance(event_id, str) and event_id <= cursor

    def _forget_rooms(self, socket_id: str) -> None:
        for room in self._memberships.pop(socket_id, set()):
            members = self._rooms.get(room)
            if members is None:
                continue
            members.discard(socket_id)
            if not members:
                self._rooms.pop(room, None)
