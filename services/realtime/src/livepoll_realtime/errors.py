"""Exception hierarchy for the realtime core."""

from __future__ import annotations


class RealtimeError(RuntimeError):
    """Base class for realtime failures."""


class RealtimeConnectionError(RealtimeError):
    """Raised when a connection attempt is rejected.

    Fatal to that connection attempt: the transport socket is closed and no
    registry entry remains.
    """

    def __init__(self, message: str, socket_id: str | None = None) -> None:
        super().__init__(message)
        self.socket_id = socket_id


class ConnectionLimitError(RealtimeConnectionError):
    """Raised when a session room is at capacity."""


class BroadcastError(RealtimeError):
    """Raised when an envelope cannot be delivered to a room."""

    def __init__(
        self,
        message: str,
        *,
        event_id: str | None = None,
        session_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.event_id = event_id
        self.session_id = session_id

    def __str__(self) -> str:
        base = super().__str__()
        return f"{base} (eventId={self.event_id}, sessionId={self.session_id})"


class ReplayError(RealtimeError):
    """Reserved for durable replay backends that fail mid-replay."""

    def __init__(
        self,
        message: str,
        *,
        from_event_id: str | None = None,
        session_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.from_event_id = from_event_id
        self.session_id = session_id
