"""Composition root: wires bus, transport, broadcaster and connection manager."""

from __future__ import annotations

import json
import logging
from typing import Any
from uuid import uuid4

from fastapi import WebSocket
from fastapi.websockets import WebSocketDisconnect

from .broadcaster import EventBroadcaster
from .bus import EventBus
from .config import Settings
from .connections import ActivityCallback, ConnectionManager
from .errors import RealtimeConnectionError
from .events import DomainEvent
from .replay import EventLog, InMemoryEventLog, NullEventLog
from .tallies import InMemoryVoteLedger, VoteCountSource
from .transport import WebSocketTransport

logger = logging.getLogger(__name__)


class RealtimeModule:
    """Owns every realtime component for the lifetime of the application.

    The host application publishes domain events through :meth:`publish`
    and hands accepted sockets to :meth:`handle_websocket`.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        vote_counts: VoteCountSource | None = None,
        on_participant_activity: ActivityCallback | None = None,
    ) -> None:
        self._settings = settings
        self.bus = EventBus()
        self.transport = WebSocketTransport()
        self.event_log: EventLog = (
            InMemoryEventLog(settings.replay_history_limit) if settings.event_replay_enabled else NullEventLog()
        )
        # Injected sources own their own state; the ledger is fed from the bus.
        self.ledger: InMemoryVoteLedger | None = None
        if vote_counts is None:
            self.ledger = InMemoryVoteLedger(dedupe_limit=settings.vote_dedupe_limit)
            vote_counts = self.ledger
        self.broadcaster = EventBroadcaster(
            self.bus,
            self.transport,
            vote_counts=vote_counts,
            event_log=self.event_log,
            vote_dedupe_limit=settings.vote_dedupe_limit,
        )
        self.connections = ConnectionManager(
            self.transport,
            event_log=self.event_log,
            heartbeat_interval=settings.heartbeat_interval_seconds,
            connection_timeout=settings.connection_timeout_seconds,
            max_connections_per_session=settings.max_connections_per_session,
            on_participant_activity=on_participant_activity,
        )
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        if self.ledger is not None:
            self.ledger.attach(self.bus)
        if self._settings.log_domain_events:
            self.bus.subscribe_all(_log_domain_event)
        self.broadcaster.subscribe()
        self._started = True
        logger.info(
            "Realtime module started (replay=%s, heartbeat=%.1fs)",
            "on" if self._settings.event_replay_enabled else "off",
            self._settings.heartbeat_interval_seconds,
        )

    async def stop(self) -> None:
        if not self._started:
            return
        await self.connections.cleanup()
        await self.transport.close_all(code=1001, reason="Server shutting down")
        self.broadcaster.unsubscribe()
        await self.bus.close()
        self._started = False
        logger.info("Realtime module stopped")

    def publish(self, event: DomainEvent) -> None:
        self.bus.publish(event)

    async def handle_websocket(self, websocket: WebSocket) -> None:
        """Run one client socket from accept to teardown."""

        await websocket.accept()
        socket_id = uuid4().hex
        self.transport.register(socket_id, websocket)
        registered = False
        try:
            try:
                await self.connections.on_connection(socket_id, dict(websocket.query_params))
            except RealtimeConnectionError:
                return
            registered = True
            while True:
                text = await websocket.receive_text()
                await self.connections.handle_message(socket_id, _decode_frame(text))
        except WebSocketDisconnect:
            logger.debug("Socket %s closed by client", socket_id)
        except Exception as exc:  # pylint: disable=broad-except
            if not self.transport.is_connected(socket_id):
                # Closed from our side (heartbeat timeout, failed send).
                logger.debug("Socket %s already closed: %s", socket_id, exc)
                return
            logger.exception("Unhandled error on socket %s", socket_id)
            self.connections.mark_error(socket_id, str(exc))
            await self.transport.disconnect(socket_id, code=1011, reason="Internal error")
        finally:
            # A heartbeat timeout has already torn the connection down.
            if registered and self.connections.get_connection(socket_id) is not None:
                await self.connections.on_disconnect(socket_id)
            self.transport.unregister(socket_id)


def _decode_frame(text: str) -> Any:
    # Undecodable text is passed on as None so the manager answers message:error.
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None


def _log_domain_event(event: DomainEvent) -> None:
    logger.info("Domain event %s for session %s", event.type.value, event.session_id)
