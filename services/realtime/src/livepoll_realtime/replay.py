"""Event logs backing reconnect replay."""

from __future__ import annotations

import logging
from collections import deque
from typing import Dict, List, Protocol

from .models import WireEnvelope

logger = logging.getLogger(__name__)


class EventLog(Protocol):
    """Store of delivered envelopes, queried by replay cursor."""

    def append(self, envelope: WireEnvelope) -> None:
        ...

    def since(self, session_id: str, from_event_id: str) -> List[WireEnvelope] | None:
        """Envelopes after ``from_event_id`` in id order, or None when unavailable."""
        ...


class NullEventLog:
    """No retention: every replay request is answered as unavailable."""

    def append(self, envelope: WireEnvelope) -> None:
        return None

    def since(self, session_id: str, from_event_id: str) -> List[WireEnvelope] | None:
        return None


class InMemoryEventLog:
    """Bounded per-session history kept for late or reconnecting clients."""

    def __init__(self, limit: int) -> None:
        self._limit = limit
        self._history: Dict[str, deque[WireEnvelope]] = {}
        self._evicted: Dict[str, str] = {}

    def append(self, envelope: WireEnvelope) -> None:
        history = self._history.setdefault(envelope.session_id, deque(maxlen=self._limit))
        if self._limit and len(history) == self._limit:
            # Remember the newest id that fell out so gaps can be detected.
            self._evicted[envelope.session_id] = history[0].event_id
        history.append(envelope)

    def since(self, session_id: str, from_event_id: str) -> List[WireEnvelope] | None:
        evicted = self._evicted.get(session_id)
        if evicted is not None and from_event_id < evicted:
            logger.info(
                "Replay cursor %s predates retained history for session %s",
                from_event_id,
                session_id,
            )
            return None
        history = self._history.get(session_id, ())
        return sorted(
            (item for item in history if item.event_id > from_event_id),
            key=lambda item: item.event_id,
        )
