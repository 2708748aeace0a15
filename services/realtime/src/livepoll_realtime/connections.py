"""Client connection lifecycle: rooms, heartbeat, control messages and replay."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping

from jsonschema import ValidationError as SchemaValidationError
from pydantic import ValidationError

from .errors import ConnectionLimitError, RealtimeConnectionError, ReplayError
from .events import utcnow
from .models import (
    ALLOWED_TRANSITIONS,
    ClientConnection,
    ConnectionParams,
    ConnectionStatus,
    WireEnvelope,
    isoformat,
    new_event_id,
)
from .replay import EventLog, NullEventLog
from .schemas import validate_control, validate_frame
from .transport import RoomTransport, poll_room

logger = logging.getLogger(__name__)

ActivityCallback = Callable[[str], Awaitable[None]]
ControlHandler = Callable[[ClientConnection, Dict[str, Any]], Awaitable[None]]

REPLAY_UNAVAILABLE_MESSAGE = "Event replay not available"


class ConnectionManager:
    """Tracks live sockets and owns the connection registry.

    Every connection belongs to exactly one session room and any number of
    poll rooms. Entries are created after parameter validation and deleted on
    disconnect; a later connect always creates a fresh entry.
    """

    def __init__(
        self,
        transport: RoomTransport,
        *,
        event_log: EventLog | None = None,
        heartbeat_interval: float = 30.0,
        connection_timeout: float | None = 60.0,
        max_connections_per_session: int | None = None,
        on_participant_activity: ActivityCallback | None = None,
    ) -> None:
        self._transport = transport
        self._event_log: EventLog = event_log or NullEventLog()
        self._heartbeat_interval = heartbeat_interval
        self._connection_timeout = connection_timeout
        self._max_per_session = max_connections_per_session
        self._on_activity = on_participant_activity
        self._connections: Dict[str, ClientConnection] = {}
        self._heartbeats: Dict[str, asyncio.Task[None]] = {}
        self._control_handlers: Dict[str, ControlHandler] = {
            "heartbeat:pong": self._on_pong,
            "poll:subscribe": self._on_poll_subscribe,
            "poll:unsubscribe": self._on_poll_unsubscribe,
            "reconnect": self._on_reconnect_message,
            "error": self._on_error_message,
        }

    # === Lifecycle ===

    async def on_connection(self, socket_id: str, params: Mapping[str, Any]) -> ClientConnection:
        """Validate parameters, join the session room and register the socket.

        Raises:
            RealtimeConnectionError: Parameters are invalid, the session is at
                capacity or the room could not be joined. The socket has been
                told why and closed; nothing is registered.
        """

        # Live room traffic for this socket waits until replay has been sent.
        async with self._transport.exclusive(socket_id):
            return await self._establish(socket_id, params)

    async def _establish(self, socket_id: str, params: Mapping[str, Any]) -> ClientConnection:
        try:
            parsed = self._parse_params(socket_id, params)
            self._check_capacity(socket_id, parsed.session_id)
            try:
                await self._transport.join(socket_id, parsed.session_id)
            except Exception as exc:  # pylint: disable=broad-except
                raise RealtimeConnectionError(
                    f"Failed to join session room: {parsed.session_id}", socket_id
                ) from exc
        except RealtimeConnectionError as exc:
            logger.warning("Connection failed for socket %s: %s", socket_id, exc)
            await self._reject(socket_id, exc)
            raise

        connection = ClientConnection(
            socket_id=socket_id,
            session_id=parsed.session_id,
            participant_id=parsed.participant_id,
            last_event_id=parsed.from_event_id,
        )
        self._connections[socket_id] = connection
        self._heartbeats[socket_id] = asyncio.create_task(
            self._heartbeat_loop(connection), name=f"heartbeat-{socket_id}"
        )
        logger.info(
            "New connection: socket=%s session=%s participant=%s",
            socket_id,
            parsed.session_id,
            parsed.participant_id,
        )

        established = WireEnvelope(
            event_id=new_event_id(),
            event_type="connection:established",
            timestamp=isoformat(),
            session_id=parsed.session_id,
            payload={
                "socketId": socket_id,
                "participantId": parsed.participant_id,
                "message": "WebSocket connection established",
            },
        )
        await self._transport.emit(socket_id, "connection:established", established.to_wire())

        if parsed.from_event_id:
            await self._replay(connection, parsed.from_event_id)
        return connection

    async def on_disconnect(self, socket_id: str) -> None:
        """Tear down a connection. Idempotent and never raises."""

        connection = self._connections.pop(socket_id, None)
        if connection is None:
            logger.warning("Disconnect called for unknown socket: %s", socket_id)
            return

        try:
            self._transition(connection, ConnectionStatus.DISCONNECTED)
            self._cancel_heartbeat(socket_id)
            await self._transport.leave(socket_id, connection.session_id)
            for poll_id in list(connection.poll_ids):
                await self._transport.leave(socket_id, poll_room(poll_id))
            connection.poll_ids.clear()
            logger.info("Disconnected: %s from session %s", socket_id, connection.session_id)
        except Exception:  # pylint: disable=broad-except
            logger.exception("Error during disconnect for %s", socket_id)

    async def on_reconnect(self, socket_id: str, from_event_id: str | None) -> None:
        connection = self._connections.get(socket_id)
        if connection is None:
            logger.warning("Reconnect for unknown socket: %s", socket_id)
            return

        logger.info("Socket %s reconnecting from event %s", socket_id, from_event_id)
        if not self._transition(connection, ConnectionStatus.RECONNECTING):
            return
        try:
            if from_event_id:
                await self._replay(connection, from_event_id)
        finally:
            if self._connections.get(socket_id) is connection:
                self._transition(connection, ConnectionStatus.CONNECTED)

    def mark_error(self, socket_id: str, message: str | None = None) -> None:
        connection = self._connections.get(socket_id)
        if connection is None:
            return
        logger.error("Socket %s error: %s", socket_id, message or "unknown error")
        self._transition(connection, ConnectionStatus.ERROR)

    async def cleanup(self) -> None:
        """Cancel every heartbeat, then disconnect every tracked socket."""

        logger.info("Cleaning up %d connections", len(self._connections))
        heartbeats = list(self._heartbeats.values())
        self._heartbeats.clear()
        for task in heartbeats:
            task.cancel()
        if heartbeats:
            await asyncio.gather(*heartbeats, return_exceptions=True)
        for socket_id in list(self._connections):
            await self.on_disconnect(socket_id)

    # === Queries ===

    def get_connection(self, socket_id: str) -> ClientConnection | None:
        return self._connections.get(socket_id)

    def get_session_connections(self, session_id: str) -> List[ClientConnection]:
        return [item for item in self._connections.values() if item.session_id == session_id]

    @property
    def total_connections(self) -> int:
        return len(self._connections)

    # === Client messages ===

    async def handle_message(self, socket_id: str, frame: Any) -> None:
        """Dispatch one client frame. Invalid input is answered, never fatal."""

        connection = self._connections.get(socket_id)
        if connection is None:
            logger.warning("Message from unknown socket: %s", socket_id)
            return
        try:
            validate_frame(frame)
        except SchemaValidationError as exc:
            await self._send_error(socket_id, "message:error", f"Invalid frame: {exc.message}")
            return

        event = frame["event"]
        data = frame.get("data") or {}
        handler = self._control_handlers.get(event)
        if handler is None:
            await self._send_error(socket_id, "message:error", f"Unsupported event: {event}")
            return
        try:
            validate_control(event, data)
        except SchemaValidationError as exc:
            logger.info("Rejected %s from %s: %s", event, socket_id, exc.message)
            if event.startswith("poll:"):
                await self._send_error(socket_id, f"{event}:error", "Invalid pollId parameter")
            else:
                await self._send_error(socket_id, "message:error", f"Invalid {event} payload")
            return
        await handler(connection, data)

    async def _on_pong(self, connection: ClientConnection, data: Dict[str, Any]) -> None:
        connection.connected_at = utcnow()
        if connection.participant_id is None or self._on_activity is None:
            return
        try:
            await self._on_activity(connection.participant_id)
        except Exception:  # pylint: disable=broad-except
            logger.exception("Failed to process heartbeat for participant %s", connection.participant_id)

    async def _on_poll_subscribe(self, connection: ClientConnection, data: Dict[str, Any]) -> None:
        poll_id = data["pollId"]
        try:
            await self._transport.join(connection.socket_id, poll_room(poll_id))
        except Exception as exc:  # pylint: disable=broad-except
            logger.error("Failed to subscribe socket %s to poll %s: %s", connection.socket_id, poll_id, exc)
            await self._send_error(connection.socket_id, "poll:subscribe:error", str(exc))
            return
        connection.poll_ids.add(poll_id)
        logger.debug("Socket %s subscribed to poll room %s", connection.socket_id, poll_room(poll_id))
        await self._transport.emit(
            connection.socket_id,
            "poll:subscribe:success",
            {"pollId": poll_id, "timestamp": isoformat()},
        )

    async def _on_poll_unsubscribe(self, connection: ClientConnection, data: Dict[str, Any]) -> None:
        poll_id = data["pollId"]
        try:
            await self._transport.leave(connection.socket_id, poll_room(poll_id))
        except Exception as exc:  # pylint: disable=broad-except
            logger.error("Failed to unsubscribe socket %s from poll %s: %s", connection.socket_id, poll_id, exc)
            await self._send_error(connection.socket_id, "poll:unsubscribe:error", str(exc))
            return
        connection.poll_ids.discard(poll_id)
        await self._transport.emit(
            connection.socket_id,
            "poll:unsubscribe:success",
            {"pollId": poll_id, "timestamp": isoformat()},
        )

    async def _on_reconnect_message(self, connection: ClientConnection, data: Dict[str, Any]) -> None:
        await self.on_reconnect(connection.socket_id, data.get("fromEventId"))

    async def _on_error_message(self, connection: ClientConnection, data: Dict[str, Any]) -> None:
        self.mark_error(connection.socket_id, data.get("message"))

    # === Internals ===

    def _parse_params(self, socket_id: str, params: Mapping[str, Any]) -> ConnectionParams:
        try:
            return ConnectionParams.model_validate(dict(params))
        except ValidationError as exc:
            fields = {str(error["loc"][0]) for error in exc.errors() if error.get("loc")}
            if not fields or "sessionId" in fields or "session_id" in fields:
                message = "Missing or invalid sessionId parameter"
            else:
                message = f"Invalid connection parameters: {', '.join(sorted(fields))}"
            raise RealtimeConnectionError(message, socket_id) from exc

    def _check_capacity(self, socket_id: str, session_id: str) -> None:
        if self._max_per_session is None:
            return
        if len(self.get_session_connections(session_id)) >= self._max_per_session:
            raise ConnectionLimitError(
                f"Too many connections for session {session_id} (limit={self._max_per_session})",
                socket_id,
            )

    async def _reject(self, socket_id: str, exc: RealtimeConnectionError) -> None:
        try:
            await self._send_error(socket_id, "connection:error", str(exc))
        finally:
            await self._transport.disconnect(socket_id, code=1008, reason=str(exc)[:120])

    async def _send_error(self, socket_id: str, event: str, message: str) -> None:
        await self._transport.emit(socket_id, event, {"error": message, "timestamp": isoformat()})

    def _transition(self, connection: ClientConnection, target: ConnectionStatus) -> bool:
        if target == connection.status:
            return True
        if target not in ALLOWED_TRANSITIONS[connection.status]:
            logger.warning(
                "Ignoring status change %s -> %s for socket %s",
                connection.status.value,
                target.value,
                connection.socket_id,
            )
            return False
        connection.status = target
        return True

    def _cancel_heartbeat(self, socket_id: str) -> None:
        task = self._heartbeats.pop(socket_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _heartbeat_loop(self, connection: ClientConnection) -> None:
        socket_id = connection.socket_id
        try:
            while True:
                await asyncio.sleep(self._heartbeat_interval)
                if self._connections.get(socket_id) is not connection:
                    return
                if not self._transport.is_connected(socket_id):
                    continue
                idle = (utcnow() - connection.connected_at).total_seconds()
                if self._connection_timeout is not None and idle > self._connection_timeout:
                    logger.warning("Heartbeat timeout for socket %s after %.1fs", socket_id, idle)
                    await self._transport.disconnect(socket_id, code=1001, reason="Heartbeat timeout")
                    await self.on_disconnect(socket_id)
                    return
                await self._transport.emit(socket_id, "heartbeat:ping", {"timestamp": isoformat()})
        except asyncio.CancelledError:
            logger.debug("Heartbeat cancelled for socket %s", socket_id)
            raise

    async def _replay(self, connection: ClientConnection, from_event_id: str) -> int:
        logger.info(
            "Event replay requested: socket=%s session=%s fromEventId=%s",
            connection.socket_id,
            connection.session_id,
            from_event_id,
        )
        connection.last_event_id = from_event_id
        frames: List[tuple[str, Dict[str, Any]]] = [
            ("event:replay:start", {"fromEventId": from_event_id, "timestamp": isoformat()})
        ]
        async with self._transport.exclusive(connection.socket_id):
            return await self._send_replay(connection, from_event_id, frames)

    async def _send_replay(
        self,
        connection: ClientConnection,
        from_event_id: str,
        frames: List[tuple[str, Dict[str, Any]]],
    ) -> int:
        try:
            envelopes = self._fetch_history(connection.session_id, from_event_id)
        except ReplayError as exc:
            logger.warning("Replay for socket %s degraded to unavailable: %s", connection.socket_id, exc)
            envelopes = None
        if envelopes is None:
            frames.append(
                (
                    "event:replay:unavailable",
                    {
                        "fromEventId": from_event_id,
                        "message": REPLAY_UNAVAILABLE_MESSAGE,
                        "timestamp": isoformat(),
                    },
                )
            )
            replayed = 0
        else:
            frames.extend(("event", envelope.to_wire()) for envelope in envelopes)
            replayed = len(envelopes)
        frames.append(
            (
                "event:replay:complete",
                {
                    "fromEventId": from_event_id,
                    "replayedCount": replayed,
                    "available": envelopes is not None,
                    "timestamp": isoformat(),
                },
            )
        )
        if await self._transport.emit_many(connection.socket_id, frames) and envelopes:
            connection.last_event_id = envelopes[-1].event_id
            self._transport.set_replay_cursor(connection.socket_id, connection.last_event_id)
        return replayed

    def _fetch_history(self, session_id: str, from_event_id: str) -> List[WireEnvelope] | None:
        try:
            return self._event_log.since(session_id, from_event_id)
        except Exception as exc:  # pylint: disable=broad-except
            raise ReplayError(
                f"Event log lookup failed: {exc}",
                from_event_id=from_event_id,
                session_id=session_id,
            ) from exc
