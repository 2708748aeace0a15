"""Bridges domain events to WebSocket rooms.

Each event type has exactly one handler. Handlers wrap the payload in the
canonical envelope and fan it out to the session room. Poll lifecycle and
accepted votes additionally push a minimal update to the poll room.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, Awaitable, Callable, Dict, Mapping

from jsonschema import ValidationError

from .bus import EventBus
from .errors import BroadcastError
from .events import DomainEvent, EventType, VoteAcceptedPayload
from .models import WireEnvelope, isoformat, new_event_id
from .replay import EventLog, NullEventLog
from .schemas import validate_envelope
from .tallies import VoteCountSource, compute_vote_breakdown
from .transport import RoomTransport, poll_room

logger = logging.getLogger(__name__)

BroadcastHandler = Callable[[DomainEvent], Awaitable[None]]

SESSION_EVENT_NAME = "event"


class EventBroadcaster:
    """Subscribes to every domain event type and delivers it to clients."""

    def __init__(
        self,
        bus: EventBus,
        transport: RoomTransport,
        *,
        vote_counts: VoteCountSource,
        event_log: EventLog | None = None,
        vote_dedupe_limit: int = 1000,
        id_factory: Callable[[], str] = new_event_id,
    ) -> None:
        self._bus = bus
        self._transport = transport
        self._vote_counts = vote_counts
        self._event_log: EventLog = event_log or NullEventLog()
        self._id_factory = id_factory
        self._delivered_votes: deque[str] = deque(maxlen=vote_dedupe_limit)
        self._subscribed = False
        self._routes: Dict[EventType, BroadcastHandler] = {
            EventType.SESSION_CREATED: self._forward,
            EventType.SESSION_STARTED: self._forward,
            EventType.SESSION_ENDED: self._forward,
            EventType.POLL_CREATED: self._forward,
            EventType.POLL_ACTIVATED: self._handle_poll_activated,
            EventType.POLL_CLOSED: self._handle_poll_closed,
            EventType.VOTE_ACCEPTED: self._handle_vote_accepted,
            EventType.VOTE_REJECTED: self._forward,
            EventType.RESULTS_UPDATED: self._forward,
            EventType.PARTICIPANT_JOINED: self._forward,
            EventType.PARTICIPANT_DISCONNECTED: self._forward,
        }

    @property
    def registered_handlers(self) -> Dict[EventType, BroadcastHandler]:
        return dict(self._routes) if self._subscribed else {}

    def subscribe(self) -> None:
        """Register one handler per event type with the bus. Call once at startup."""

        if self._subscribed:
            logger.warning("Broadcaster already subscribed to domain events")
            return
        missing = [event_type.value for event_type in EventType if event_type not in self._routes]
        if missing:
            raise RuntimeError(f"No broadcaster handler for event types: {', '.join(missing)}")
        for event_type, handler in self._routes.items():
            self._bus.subscribe(event_type, handler)
        self._subscribed = True
        logger.info("Broadcaster subscribed to %d domain event types", len(self._routes))

    def unsubscribe(self) -> None:
        if not self._subscribed:
            return
        for event_type, handler in self._routes.items():
            self._bus.unsubscribe(event_type, handler)
        self._subscribed = False

    def create_envelope(self, event_type: str, session_id: str, payload: Mapping[str, Any]) -> WireEnvelope:
        return WireEnvelope(
            event_id=self._id_factory(),
            event_type=event_type,
            timestamp=isoformat(),
            session_id=session_id,
            payload=dict(payload),
        )

    async def broadcast(self, session_id: str, envelope: WireEnvelope | Mapping[str, Any]) -> int:
        """Deliver ``envelope`` to the session room.

        Raises:
            BroadcastError: The envelope is malformed or the transport failed.
                Not retried.
        """

        wire = envelope.to_wire() if isinstance(envelope, WireEnvelope) else dict(envelope)
        event_id = wire.get("eventId") or None
        try:
            validate_envelope(wire)
        except ValidationError as exc:
            logger.error("Rejected envelope for session %s: %s", session_id, exc.message)
            raise BroadcastError(
                "Invalid event structure: missing required fields",
                event_id=event_id,
                session_id=session_id,
            ) from exc

        try:
            deliveries = await self._transport.emit_to_room(session_id, SESSION_EVENT_NAME, wire)
        except Exception as exc:  # pylint: disable=broad-except
            logger.error("Failed to broadcast event %s to session %s: %s", event_id, session_id, exc)
            raise BroadcastError(f"Broadcast failed: {exc}", event_id=event_id, session_id=session_id) from exc

        self._event_log.append(WireEnvelope.model_validate(wire))
        logger.info(
            "Broadcast event %s to session %s for %d receivers",
            wire["eventType"],
            session_id,
            deliveries,
        )
        return deliveries

    async def broadcast_to_poll(self, poll_id: str, event_name: str, payload: Mapping[str, Any]) -> int:
        """Emit a minimal update straight to the poll room, bypassing the envelope."""

        room = poll_room(poll_id)
        try:
            deliveries = await self._transport.emit_to_room(room, event_name, {**payload, "timestamp": isoformat()})
        except Exception as exc:  # pylint: disable=broad-except
            logger.error("Failed to broadcast %s to poll room %s: %s", event_name, room, exc)
            raise BroadcastError(f"Poll broadcast failed: {exc}") from exc
        logger.debug("Broadcast %s to poll room %s for %d receivers", event_name, room, deliveries)
        return deliveries

    async def broadcast_custom_event(self, event_type: str, session_id: str, payload: Mapping[str, Any]) -> int:
        return await self.broadcast(session_id, self.create_envelope(event_type, session_id, payload))

    # === Handlers ===

    async def _forward(self, event: DomainEvent) -> None:
        envelope = self.create_envelope(event.type.value, event.session_id, event.payload.to_wire())
        await self.broadcast(event.session_id, envelope)

    async def _handle_poll_activated(self, event: DomainEvent) -> None:
        await self._forward(event)
        await self._push_poll_status(event.payload.poll_id, "active")

    async def _handle_poll_closed(self, event: DomainEvent) -> None:
        await self._forward(event)
        await self._push_poll_status(event.payload.poll_id, "closed")

    async def _push_poll_status(self, poll_id: str, status: str) -> None:
        await self.broadcast_to_poll(poll_id, f"poll:{poll_id}:updated", {"pollId": poll_id, "status": status})

    async def _handle_vote_accepted(self, event: DomainEvent) -> None:
        payload: VoteAcceptedPayload = event.payload
        if payload.vote_id in self._delivered_votes:
            logger.info("Skipping already delivered vote %s", payload.vote_id)
            return

        try:
            counts = await self._vote_counts.vote_counts(payload.poll_id)
        except Exception as exc:  # pylint: disable=broad-except
            raise BroadcastError(
                f"Failed to fetch vote breakdown for poll {payload.poll_id}: {exc}",
                session_id=event.session_id,
            ) from exc
        # One snapshot feeds both deliveries.
        snapshot = compute_vote_breakdown(counts)

        enriched = {
            **payload.to_wire(),
            "currentVoteCount": snapshot.total_votes,
            "voteBreakdown": snapshot.breakdown_wire(),
        }
        envelope = self.create_envelope(event.type.value, event.session_id, enriched)
        await self.broadcast(event.session_id, envelope)
        self._delivered_votes.append(payload.vote_id)

        if payload.option_id:
            await self.broadcast_to_poll(
                payload.poll_id,
                f"poll:{payload.poll_id}:vote-submitted",
                {
                    "pollId": payload.poll_id,
                    "optionId": payload.option_id,
                    "newVoteCount": snapshot.count_for(payload.option_id),
                    "voteId": payload.vote_id,
                },
            )
