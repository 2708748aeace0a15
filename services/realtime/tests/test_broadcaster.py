from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Mapping

import pytest

from livepoll_realtime.broadcaster import EventBroadcaster
from livepoll_realtime.bus import EventBus
from livepoll_realtime.errors import BroadcastError
from livepoll_realtime.events import DomainEvent, EventType, create_domain_event
from livepoll_realtime.replay import InMemoryEventLog
from livepoll_realtime.tallies import InMemoryVoteLedger

NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)


def _poll_created(options=("o1", "o2")) -> DomainEvent:  # type: ignore[no-untyped-def]
    return create_domain_event(
        EventType.POLL_CREATED,
        "s1",
        {
            "pollId": "p1",
            "sessionId": "s1",
            "question": "Pick one",
            "pollType": "MULTIPLE_CHOICE",
            "options": [{"id": option, "text": option.upper()} for option in options],
        },
    )


def _vote(vote_id: str, option_id: str | None = "o1") -> DomainEvent:
    payload: Dict[str, Any] = {"voteId": vote_id, "pollId": "p1", "participantId": "u1", "submittedAt": NOW}
    if option_id is not None:
        payload["optionId"] = option_id
    return create_domain_event(EventType.VOTE_ACCEPTED, "s1", payload)


def _results() -> DomainEvent:
    return create_domain_event(
        EventType.RESULTS_UPDATED,
        "s1",
        {"pollId": "p1", "sessionId": "s1", "results": {"o1": 1}},
    )


class SlowCounts:
    def __init__(self, counts: Mapping[str, int]) -> None:
        self._counts = dict(counts)

    async def vote_counts(self, poll_id: str) -> Mapping[str, int]:
        await asyncio.sleep(0.02)
        return self._counts


class BrokenCounts:
    async def vote_counts(self, poll_id: str) -> Mapping[str, int]:
        raise ConnectionError("vote store unavailable")


def _wire(transport, bus: EventBus, **kwargs: Any) -> EventBroadcaster:  # type: ignore[no-untyped-def]
    ledger = kwargs.pop("ledger", None)
    if ledger is None and "vote_counts" not in kwargs:
        ledger = InMemoryVoteLedger()
    if ledger is not None:
        ledger.attach(bus)
        kwargs["vote_counts"] = ledger
    broadcaster = EventBroadcaster(bus, transport, **kwargs)
    broadcaster.subscribe()
    return broadcaster


def test_subscribe_registers_one_handler_per_type(transport, caplog: pytest.LogCaptureFixture) -> None:  # type: ignore[no-untyped-def]
    bus = EventBus()
    broadcaster = EventBroadcaster(bus, transport, vote_counts=InMemoryVoteLedger())
    assert broadcaster.registered_handlers == {}

    broadcaster.subscribe()
    assert set(broadcaster.registered_handlers) == set(EventType)
    assert all(bus.handler_count(event_type) == 1 for event_type in EventType)

    with caplog.at_level(logging.WARNING, logger="livepoll_realtime.broadcaster"):
        broadcaster.subscribe()
    assert "already subscribed" in caplog.text
    assert all(bus.handler_count(event_type) == 1 for event_type in EventType)

    broadcaster.unsubscribe()
    assert all(bus.handler_count(event_type) == 0 for event_type in EventType)


@pytest.mark.asyncio
async def test_broadcast_rejects_envelope_without_event_id(transport) -> None:  # type: ignore[no-untyped-def]
    broadcaster = EventBroadcaster(EventBus(), transport, vote_counts=InMemoryVoteLedger())
    transport.rooms["s1"].add("sock-1")

    with pytest.raises(BroadcastError) as exc_info:
        await broadcaster.broadcast(
            "s1",
            {"eventId": "", "eventType": "poll:created", "timestamp": "t", "sessionId": "s1", "payload": {}},
        )

    assert "Invalid event structure" in str(exc_info.value)
    assert exc_info.value.session_id == "s1"
    assert transport.sent == []


@pytest.mark.asyncio
async def test_transport_failure_raises_broadcast_error(transport) -> None:  # type: ignore[no-untyped-def]
    log = InMemoryEventLog(limit=10)
    broadcaster = EventBroadcaster(EventBus(), transport, vote_counts=InMemoryVoteLedger(), event_log=log)
    transport.fail_room_emits = True
    envelope = broadcaster.create_envelope("session:started", "s1", {"sessionId": "s1"})

    with pytest.raises(BroadcastError) as exc_info:
        await broadcaster.broadcast("s1", envelope)

    assert exc_info.value.event_id == envelope.event_id
    assert log.since("s1", "0") == []


@pytest.mark.asyncio
async def test_custom_event_reaches_session_room_and_log(transport) -> None:  # type: ignore[no-untyped-def]
    log = InMemoryEventLog(limit=10)
    broadcaster = EventBroadcaster(EventBus(), transport, vote_counts=InMemoryVoteLedger(), event_log=log)
    transport.rooms["s1"].update({"sock-1", "sock-2"})

    deliveries = await broadcaster.broadcast_custom_event("presenter:note", "s1", {"text": "Break in 5"})

    assert deliveries == 2
    [(event, wire)] = transport.room_events("s1")
    assert event == "event"
    assert wire["eventType"] == "presenter:note"
    assert wire["payload"] == {"text": "Break in 5"}
    assert [item.event_id for item in log.since("s1", "0") or []] == [wire["eventId"]]


@pytest.mark.asyncio
async def test_accepted_vote_is_enriched_from_one_snapshot(transport) -> None:  # type: ignore[no-untyped-def]
    bus = EventBus()
    _wire(transport, bus)

    bus.publish(_poll_created())
    bus.publish(_vote("v1", "o1"))
    bus.publish(_vote("v2", "o2"))
    bus.publish(_vote("v3", "o1"))
    await bus.drain()

    votes = [wire for event, wire in transport.room_events("s1") if wire["eventType"] == "vote:accepted"]
    assert len(votes) == 3
    last = votes[-1]["payload"]
    assert last["voteId"] == "v3"
    assert last["currentVoteCount"] == 3
    assert [entry["voteCount"] for entry in last["voteBreakdown"]] == [2, 1]

    submitted = transport.room_events("poll:p1")
    assert [name for name, _ in submitted] == ["poll:p1:vote-submitted"] * 3
    final = submitted[-1][1]
    assert final["voteId"] == "v3"
    assert final["optionId"] == "o1"
    o1_entry = next(entry for entry in last["voteBreakdown"] if entry["optionId"] == "o1")
    assert final["newVoteCount"] == o1_entry["voteCount"]
    assert "timestamp" in final


@pytest.mark.asyncio
async def test_breakdown_tracks_each_vote_as_it_lands(transport) -> None:  # type: ignore[no-untyped-def]
    bus = EventBus()
    _wire(transport, bus)
    bus.publish(_poll_created())
    await bus.drain()

    bus.publish(_vote("v1", "o1"))
    await bus.drain()
    bus.publish(_vote("v2", "o2"))
    await bus.drain()

    first, second = [wire["payload"] for _, wire in transport.room_events("s1") if wire["eventType"] == "vote:accepted"]
    assert first["currentVoteCount"] == 1
    assert first["voteBreakdown"] == [
        {"optionId": "o1", "voteCount": 1, "percentage": 100.0},
        {"optionId": "o2", "voteCount": 0, "percentage": 0.0},
    ]
    assert second["currentVoteCount"] == 2
    assert second["voteBreakdown"] == [
        {"optionId": "o1", "voteCount": 1, "percentage": 50.0},
        {"optionId": "o2", "voteCount": 1, "percentage": 50.0},
    ]


def _activated(poll_id: str) -> DomainEvent:
    return create_domain_event(
        EventType.POLL_ACTIVATED,
        "s1",
        {"pollId": poll_id, "sessionId": "s1", "activatedAt": NOW},
    )


@pytest.mark.asyncio
async def test_poll_updates_stay_in_their_poll_room(transport) -> None:  # type: ignore[no-untyped-def]
    bus = EventBus()
    _wire(transport, bus)
    transport.rooms["poll:p1"].add("sock-p")
    transport.rooms["s1"].add("sock-s")

    bus.publish(_activated("q1"))
    await bus.drain()
    assert transport.frames_for("sock-p") == []
    assert [name for name, _ in transport.room_events("poll:q1")] == ["poll:q1:updated"]

    bus.publish(_activated("p1"))
    await bus.drain()
    assert transport.events_for("sock-p") == ["poll:p1:updated"]
    assert transport.frames_for("sock-p")[0][1]["status"] == "active"
    assert transport.events_for("sock-s") == ["event", "event"]


@pytest.mark.asyncio
async def test_vote_without_option_skips_poll_room(transport) -> None:  # type: ignore[no-untyped-def]
    bus = EventBus()
    _wire(transport, bus)

    bus.publish(_poll_created())
    bus.publish(_vote("v1", option_id=None))
    await bus.drain()

    assert transport.room_events("poll:p1") == []
    [vote] = [wire for _, wire in transport.room_events("s1") if wire["eventType"] == "vote:accepted"]
    assert vote["payload"]["currentVoteCount"] == 0


@pytest.mark.asyncio
async def test_repeated_vote_id_is_delivered_once(transport) -> None:  # type: ignore[no-untyped-def]
    bus = EventBus()
    _wire(transport, bus)

    bus.publish(_poll_created())
    vote = _vote("v1")
    bus.publish(vote)
    bus.publish(vote)
    await bus.drain()

    votes = [wire for _, wire in transport.room_events("s1") if wire["eventType"] == "vote:accepted"]
    assert len(votes) == 1
    assert len(transport.room_events("poll:p1")) == 1


@pytest.mark.asyncio
async def test_failed_count_query_sends_nothing(transport, caplog: pytest.LogCaptureFixture) -> None:  # type: ignore[no-untyped-def]
    bus = EventBus()
    _wire(transport, bus, vote_counts=BrokenCounts())

    with caplog.at_level(logging.ERROR, logger="livepoll_realtime.bus"):
        bus.publish(_vote("v1"))
        await bus.drain()

    assert transport.room_frames == []
    assert "vote store unavailable" in caplog.text


@pytest.mark.asyncio
async def test_results_follow_the_vote_they_describe(transport) -> None:  # type: ignore[no-untyped-def]
    bus = EventBus()
    _wire(transport, bus, vote_counts=SlowCounts({"o1": 1}))

    bus.publish(_vote("v1"))
    bus.publish(_results())
    await bus.drain()

    assert [wire["eventType"] for _, wire in transport.room_events("s1")] == [
        "vote:accepted",
        "results:updated",
    ]


@pytest.mark.asyncio
async def test_poll_lifecycle_pushes_status_to_poll_room(transport) -> None:  # type: ignore[no-untyped-def]
    bus = EventBus()
    _wire(transport, bus)

    bus.publish(
        create_domain_event(
            EventType.POLL_ACTIVATED, "s1", {"pollId": "p1", "sessionId": "s1", "activatedAt": NOW}
        )
    )
    bus.publish(
        create_domain_event(
            EventType.POLL_CLOSED,
            "s1",
            {"pollId": "p1", "sessionId": "s1", "closedAt": NOW, "results": {"o1": 3}},
        )
    )
    await bus.drain()

    assert [wire["eventType"] for _, wire in transport.room_events("s1")] == ["poll:activated", "poll:closed"]
    statuses = transport.room_events("poll:p1")
    assert [name for name, _ in statuses] == ["poll:p1:updated", "poll:p1:updated"]
    assert [payload["status"] for _, payload in statuses] == ["active", "closed"]
    assert all(payload["pollId"] == "p1" for _, payload in statuses)


@pytest.mark.asyncio
async def test_other_events_only_reach_session_room(transport) -> None:  # type: ignore[no-untyped-def]
    bus = EventBus()
    _wire(transport, bus)

    bus.publish(
        create_domain_event(
            EventType.PARTICIPANT_DISCONNECTED,
            "s1",
            {"participantId": "u1", "sessionId": "s1", "disconnectedAt": NOW},
        )
    )
    await bus.drain()

    assert [room for room, _, _ in transport.room_frames] == ["s1"]
    _, _, wire = transport.room_frames[0]
    assert wire["eventType"] == "participant:disconnected"
    assert wire["sessionId"] == "s1"
    assert wire["payload"]["participantId"] == "u1"
    assert wire["eventId"] and wire["timestamp"]
