"""JSON Schema validation for realtime frames and envelopes."""

from __future__ import annotations

from typing import Any, Mapping

from jsonschema import Draft7Validator

_NON_EMPTY = {"type": "string", "minLength": 1}

ENVELOPE_SCHEMA = {
    "type": "object",
    "required": ["eventId", "eventType", "timestamp", "sessionId", "payload"],
    "properties": {
        "eventId": _NON_EMPTY,
        "eventType": _NON_EMPTY,
        "timestamp": _NON_EMPTY,
        "sessionId": {"type": "string"},
        "payload": {"type": "object"},
    },
}

FRAME_SCHEMA = {
    "type": "object",
    "required": ["event"],
    "properties": {
        "event": _NON_EMPTY,
        "data": {"type": "object"},
    },
}

_POLL_REF = {
    "type": "object",
    "required": ["pollId"],
    "properties": {"pollId": _NON_EMPTY},
}

CONTROL_SCHEMAS: dict[str, dict[str, Any]] = {
    "heartbeat:pong": {"type": "object"},
    "poll:subscribe": _POLL_REF,
    "poll:unsubscribe": _POLL_REF,
    "reconnect": {
        "type": "object",
        "properties": {"fromEventId": {"type": ["string", "null"]}},
    },
    "error": {
        "type": "object",
        "properties": {"message": {"type": "string"}},
    },
}

_VALIDATORS = {
    "envelope": Draft7Validator(ENVELOPE_SCHEMA),
    "frame": Draft7Validator(FRAME_SCHEMA),
    **{name: Draft7Validator(schema) for name, schema in CONTROL_SCHEMAS.items()},
}


def validate_envelope(instance: Mapping[str, Any]) -> None:
    """Raise ``jsonschema.ValidationError`` for a malformed wire envelope."""

    _VALIDATORS["envelope"].validate(instance)


def validate_frame(instance: Any) -> None:
    _VALIDATORS["frame"].validate(instance)


def validate_control(event: str, data: Mapping[str, Any]) -> None:
    """Validate the ``data`` of a client control message.

    Raises:
        KeyError: ``event`` is not a known control message.
        jsonschema.ValidationError: ``data`` does not match its schema.
    """

    if event not in CONTROL_SCHEMAS:
        raise KeyError(event)
    _VALIDATORS[event].validate(data)
