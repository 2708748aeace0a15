from __future__ import annotations

from livepoll_realtime.models import WireEnvelope
from livepoll_realtime.replay import InMemoryEventLog, NullEventLog


def _envelope(sequence: int, session_id: str = "s1") -> WireEnvelope:
    return WireEnvelope(
        event_id=f"{1700000000000:013d}-{sequence:010d}",
        event_type="results:updated",
        timestamp="2026-03-01T12:00:00+00:00",
        session_id=session_id,
        payload={"seq": sequence},
    )


def test_null_log_never_has_history() -> None:
    log = NullEventLog()
    log.append(_envelope(1))

    assert log.since("s1", _envelope(0).event_id) is None


def test_in_memory_log_returns_events_after_cursor_in_order() -> None:
    log = InMemoryEventLog(limit=10)
    for sequence in (1, 2, 3):
        log.append(_envelope(sequence))
    log.append(_envelope(4, session_id="other"))

    replayed = log.since("s1", _envelope(1).event_id)

    assert [item.payload["seq"] for item in replayed or []] == [2, 3]
    assert log.since("s1", _envelope(3).event_id) == []
    assert log.since("empty", _envelope(0).event_id) == []


def test_cursor_older_than_retained_history_is_unavailable() -> None:
    log = InMemoryEventLog(limit=2)
    for sequence in (1, 2, 3):
        log.append(_envelope(sequence))

    assert log.since("s1", _envelope(0).event_id) is None
    replayed = log.since("s1", _envelope(1).event_id)
    assert [item.payload["seq"] for item in replayed or []] == [2, 3]
