"""Wire and connection models for the realtime core."""

from __future__ import annotations

import itertools
import time
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .events import utcnow


class ConnectionStatus(str, Enum):
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"
    RECONNECTING = "RECONNECTING"
    ERROR = "ERROR"


# DISCONNECTED is terminal: the registry entry is deleted.
ALLOWED_TRANSITIONS: dict[ConnectionStatus, frozenset[ConnectionStatus]] = {
    ConnectionStatus.CONNECTED: frozenset(
        {ConnectionStatus.RECONNECTING, ConnectionStatus.ERROR, ConnectionStatus.DISCONNECTED}
    ),
    ConnectionStatus.RECONNECTING: frozenset(
        {ConnectionStatus.CONNECTED, ConnectionStatus.ERROR, ConnectionStatus.DISCONNECTED}
    ),
    ConnectionStatus.ERROR: frozenset({ConnectionStatus.RECONNECTING, ConnectionStatus.DISCONNECTED}),
    ConnectionStatus.DISCONNECTED: frozenset(),
}


class WireEnvelope(BaseModel):
    """Canonical envelope sent to clients under the ``event`` name."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    event_id: str = Field(..., alias="eventId", description="Unique, sortable id; replay cursor.")
    event_type: str = Field(..., alias="eventType", description="Wire event name, e.g. vote:accepted.")
    timestamp: str = Field(..., description="ISO-8601 emission time.")
    session_id: str = Field(..., alias="sessionId")
    payload: dict[str, Any] = Field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class ClientConnection(BaseModel):
    """Registry record for one live socket. Owned by the connection manager."""

    model_config = ConfigDict(populate_by_name=True)

    socket_id: str = Field(..., alias="socketId")
    session_id: str = Field(..., alias="sessionId")
    participant_id: str | None = Field(default=None, alias="participantId")
    status: ConnectionStatus = ConnectionStatus.CONNECTED
    connected_at: datetime = Field(default_factory=utcnow, alias="connectedAt")
    last_event_id: str | None = Field(default=None, alias="lastEventId")
    poll_ids: set[str] = Field(default_factory=set, alias="pollIds")


class ConnectionParams(BaseModel):
    """Query parameters supplied by a client when it connects."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    session_id: str = Field(..., alias="sessionId", min_length=1)
    participant_id: str | None = Field(default=None, alias="participantId")
    from_event_id: str | None = Field(default=None, alias="fromEventId")

    @field_validator("participant_id", "from_event_id", mode="before")
    @classmethod
    def _blank_as_missing(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class VoteBreakdownEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    option_id: str = Field(..., alias="optionId")
    vote_count: int = Field(..., alias="voteCount", ge=0)
    percentage: float = Field(..., ge=0.0)


class VoteSnapshot(BaseModel):
    """Tally computed once per accepted vote and reused for every delivery."""

    model_config = ConfigDict(frozen=True)

    total_votes: int = Field(..., ge=0)
    breakdown: tuple[VoteBreakdownEntry, ...] = ()

    def count_for(self, option_id: str) -> int:
        for entry in self.breakdown:
            if entry.option_id == option_id:
                return entry.vote_count
        return 0

    def breakdown_wire(self) -> list[dict[str, Any]]:
        return [entry.model_dump(by_alias=True) for entry in self.breakdown]


class PublishAck(BaseModel):
    """Response for the HTTP publish endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    accepted: bool = True
    event_type: str = Field(..., alias="eventType")
    session_id: str = Field(..., alias="sessionId")


class EventIdGenerator:
    """Produces ids that sort lexicographically in emission order.

    Format: 13-digit millisecond clock, dash, 10-digit sequence. The clock
    component never goes backwards even if the wall clock does.
    """

    def __init__(self) -> None:
        self._sequence = itertools.count(1)
        self._last_ms = 0

    def __call__(self) -> str:
        now_ms = int(time.time() * 1000)
        self._last_ms = max(self._last_ms, now_ms)
        return f"{self._last_ms:013d}-{next(self._sequence):010d}"


new_event_id = EventIdGenerator()


def isoformat(moment: datetime | None = None) -> str:
    return (moment or utcnow()).isoformat()
