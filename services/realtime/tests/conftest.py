from __future__ import annotations

from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterator, List, Sequence, Set, Tuple

import pytest

from livepoll_realtime.config import get_settings


class FakeTransport:
    """Records every frame instead of writing to sockets."""

    def __init__(self) -> None:
        self.rooms: Dict[str, Set[str]] = defaultdict(set)
        self.sent: List[Tuple[str, str, Dict[str, Any]]] = []
        self.room_frames: List[Tuple[str, str, Dict[str, Any]]] = []
        self.closed: List[Tuple[str, int, str]] = []
        self.failing_rooms: Set[str] = set()
        self.fail_room_emits = False
        self.replay_cursors: Dict[str, str] = {}
        self.exclusive_entries: List[str] = []

    async def join(self, socket_id: str, room: str) -> None:
        if room in self.failing_rooms:
            raise RuntimeError(f"cannot join {room}")
        self.rooms[room].add(socket_id)

    async def leave(self, socket_id: str, room: str) -> None:
        if room in self.failing_rooms:
            raise RuntimeError(f"cannot leave {room}")
        self.rooms[room].discard(socket_id)

    async def emit_to_room(self, room: str, event: str, payload: Dict[str, Any]) -> int:
        if self.fail_room_emits:
            raise RuntimeError("transport down")
        self.room_frames.append((room, event, payload))
        members = sorted(self.rooms.get(room, ()))
        delivered = 0
        for socket_id in members:
            cursor = self.replay_cursors.get(socket_id)
            if event == "event" and cursor is not None and payload.get("eventId", "") <= cursor:
                continue
            self.sent.append((socket_id, event, payload))
            delivered += 1
        return delivered

    @asynccontextmanager
    async def exclusive(self, socket_id: str) -> AsyncIterator[None]:
        self.exclusive_entries.append(socket_id)
        yield

    def set_replay_cursor(self, socket_id: str, event_id: str) -> None:
        self.replay_cursors[socket_id] = event_id

    async def emit(self, socket_id: str, event: str, payload: Dict[str, Any]) -> bool:
        self.sent.append((socket_id, event, payload))
        return True

    async def emit_many(self, socket_id: str, frames: Sequence[Tuple[str, Dict[str, Any]]]) -> bool:
        for event, payload in frames:
            self.sent.append((socket_id, event, payload))
        return True

    async def disconnect(self, socket_id: str, *, code: int = 1000, reason: str = "") -> None:
        self.closed.append((socket_id, code, reason))
        for members in self.rooms.values():
            members.discard(socket_id)

    def is_connected(self, socket_id: str) -> bool:
        return all(item[0] != socket_id for item in self.closed)

    def room_members(self, room: str) -> Set[str]:
        return set(self.rooms.get(room, ()))

    def frames_for(self, socket_id: str) -> List[Tuple[str, Dict[str, Any]]]:
        return [(event, payload) for sid, event, payload in self.sent if sid == socket_id]

    def events_for(self, socket_id: str) -> List[str]:
        return [event for event, _ in self.frames_for(socket_id)]

    def room_events(self, room: str) -> List[Tuple[str, Dict[str, Any]]]:
        return [(event, payload) for name, event, payload in self.room_frames if name == room]


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture(autouse=True)
def reset_settings() -> Iterator[None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
