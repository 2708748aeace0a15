"""Domain event taxonomy published by the session, poll, vote and participant modules."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class EventType(str, Enum):
    """Closed set of domain event types. Values double as wire event names."""

    SESSION_CREATED = "session:created"
    SESSION_STARTED = "session:started"
    SESSION_ENDED = "session:ended"
    POLL_CREATED = "poll:created"
    POLL_ACTIVATED = "poll:activated"
    POLL_CLOSED = "poll:closed"
    VOTE_ACCEPTED = "vote:accepted"
    VOTE_REJECTED = "vote:rejected"
    RESULTS_UPDATED = "results:updated"
    PARTICIPANT_JOINED = "participant:joined"
    PARTICIPANT_DISCONNECTED = "participant:disconnected"


class EventPayload(BaseModel):
    """Base for payload shapes; camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


# === Session payloads ===


class SessionCreatedPayload(EventPayload):
    session_id: str = Field(..., alias="sessionId", min_length=1)
    code: str
    presenter_name: str = Field(..., alias="presenterName")


class SessionStartedPayload(EventPayload):
    session_id: str = Field(..., alias="sessionId", min_length=1)
    started_at: datetime = Field(..., alias="startedAt")


class SessionEndedPayload(EventPayload):
    session_id: str = Field(..., alias="sessionId", min_length=1)
    ended_at: datetime = Field(..., alias="endedAt")


# === Poll payloads ===


class PollOption(EventPayload):
    id: str = Field(..., min_length=1)
    text: str


class PollCreatedPayload(EventPayload):
    poll_id: str = Field(..., alias="pollId", min_length=1)
    session_id: str = Field(..., alias="sessionId", min_length=1)
    question: str
    poll_type: str = Field(..., alias="pollType")
    options: list[PollOption] | None = None


class PollActivatedPayload(EventPayload):
    poll_id: str = Field(..., alias="pollId", min_length=1)
    session_id: str = Field(..., alias="sessionId", min_length=1)
    activated_at: datetime = Field(..., alias="activatedAt")


class PollClosedPayload(EventPayload):
    poll_id: str = Field(..., alias="pollId", min_length=1)
    session_id: str = Field(..., alias="sessionId", min_length=1)
    closed_at: datetime = Field(..., alias="closedAt")
    results: Any | None = None


# === Vote payloads ===


class VoteAcceptedPayload(EventPayload):
    vote_id: str = Field(..., alias="voteId", min_length=1)
    poll_id: str = Field(..., alias="pollId", min_length=1)
    participant_id: str = Field(..., alias="participantId")
    option_id: str | None = Field(default=None, alias="optionId")
    submitted_at: datetime = Field(..., alias="submittedAt")


class VoteRejectedPayload(EventPayload):
    poll_id: str = Field(..., alias="pollId", min_length=1)
    participant_id: str = Field(..., alias="participantId")
    reason: str


class ResultsUpdatedPayload(EventPayload):
    poll_id: str = Field(..., alias="pollId", min_length=1)
    session_id: str = Field(..., alias="sessionId", min_length=1)
    results: Any


# === Participant payloads ===


class ParticipantJoinedPayload(EventPayload):
    participant_id: str = Field(..., alias="participantId", min_length=1)
    session_id: str = Field(..., alias="sessionId", min_length=1)
    display_name: str = Field(..., alias="displayName")
    joined_at: datetime = Field(..., alias="joinedAt")


class ParticipantDisconnectedPayload(EventPayload):
    participant_id: str = Field(..., alias="participantId", min_length=1)
    session_id: str = Field(..., alias="sessionId", min_length=1)
    disconnected_at: datetime = Field(..., alias="disconnectedAt")


# === Events ===


class DomainEvent(BaseModel):
    """Immutable event routed to the session named by ``session_id``.

    Poll-scoped events still carry the session id; the poll id lives in the
    payload.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: EventType
    session_id: str = Field(..., alias="sessionId", min_length=1)
    timestamp: datetime = Field(default_factory=utcnow)
    payload: Any

    @model_validator(mode="after")
    def _payload_routes_to_same_session(self) -> "DomainEvent":
        payload_session = getattr(self.payload, "session_id", None)
        if payload_session is not None and payload_session != self.session_id:
            raise ValueError(
                f"payload sessionId {payload_session!r} does not match event sessionId {self.session_id!r}"
            )
        return self


class SessionCreatedEvent(DomainEvent):
    type: Literal[EventType.SESSION_CREATED] = EventType.SESSION_CREATED
    payload: SessionCreatedPayload


class SessionStartedEvent(DomainEvent):
    type: Literal[EventType.SESSION_STARTED] = EventType.SESSION_STARTED
    payload: SessionStartedPayload


class SessionEndedEvent(DomainEvent):
    type: Literal[EventType.SESSION_ENDED] = EventType.SESSION_ENDED
    payload: SessionEndedPayload


class PollCreatedEvent(DomainEvent):
    type: Literal[EventType.POLL_CREATED] = EventType.POLL_CREATED
    payload: PollCreatedPayload


class PollActivatedEvent(DomainEvent):
    type: Literal[EventType.POLL_ACTIVATED] = EventType.POLL_ACTIVATED
    payload: PollActivatedPayload


class PollClosedEvent(DomainEvent):
    type: Literal[EventType.POLL_CLOSED] = EventType.POLL_CLOSED
    payload: PollClosedPayload


class VoteAcceptedEvent(DomainEvent):
    type: Literal[EventType.VOTE_ACCEPTED] = EventType.VOTE_ACCEPTED
    payload: VoteAcceptedPayload


class VoteRejectedEvent(DomainEvent):
    type: Literal[EventType.VOTE_REJECTED] = EventType.VOTE_REJECTED
    payload: VoteRejectedPayload


class ResultsUpdatedEvent(DomainEvent):
    type: Literal[EventType.RESULTS_UPDATED] = EventType.RESULTS_UPDATED
    payload: ResultsUpdatedPayload


class ParticipantJoinedEvent(DomainEvent):
    type: Literal[EventType.PARTICIPANT_JOINED] = EventType.PARTICIPANT_JOINED
    payload: ParticipantJoinedPayload


class ParticipantDisconnectedEvent(DomainEvent):
    type: Literal[EventType.PARTICIPANT_DISCONNECTED] = EventType.PARTICIPANT_DISCONNECTED
    payload: ParticipantDisconnectedPayload


EVENT_MODELS: dict[EventType, type[DomainEvent]] = {
    EventType.SESSION_CREATED: SessionCreatedEvent,
    EventType.SESSION_STARTED: SessionStartedEvent,
    EventType.SESSION_ENDED: SessionEndedEvent,
    EventType.POLL_CREATED: PollCreatedEvent,
    EventType.POLL_ACTIVATED: PollActivatedEvent,
    EventType.POLL_CLOSED: PollClosedEvent,
    EventType.VOTE_ACCEPTED: VoteAcceptedEvent,
    EventType.VOTE_REJECTED: VoteRejectedEvent,
    EventType.RESULTS_UPDATED: ResultsUpdatedEvent,
    EventType.PARTICIPANT_JOINED: ParticipantJoinedEvent,
    EventType.PARTICIPANT_DISCONNECTED: ParticipantDisconnectedEvent,
}


def create_domain_event(
    event_type: EventType | str,
    session_id: str,
    payload: Mapping[str, Any] | EventPayload,
    *,
    timestamp: datetime | None = None,
) -> DomainEvent:
    """Build the typed event variant for ``event_type``.

    Raises:
        ValueError: Unknown event type.
        pydantic.ValidationError: Payload does not match the type's schema.
    """

    kind = EventType(event_type)
    model = EVENT_MODELS[kind]
    data: dict[str, Any] = {"type": kind, "session_id": session_id, "payload": payload}
    if timestamp is not None:
        data["timestamp"] = timestamp
    return model.model_validate(data)


def parse_domain_event(data: Mapping[str, Any]) -> DomainEvent:
    """Validate a JSON-shaped event (``type``, ``sessionId``, ``payload``)."""

    raw_type = data.get("type")
    try:
        kind = EventType(raw_type)
    except ValueError as exc:
        raise ValueError(f"Unknown domain event type: {raw_type!r}") from exc
    return EVENT_MODELS[kind].model_validate({**data, "type": kind})
