"""Vote breakdown computation and vote count sources."""

from __future__ import annotations

import logging
from collections import OrderedDict, deque
from typing import Dict, Mapping, Protocol

from .events import DomainEvent, EventType, PollCreatedPayload, VoteAcceptedPayload
from .models import VoteBreakdownEntry, VoteSnapshot

logger = logging.getLogger(__name__)


class VoteCountSource(Protocol):
    """Read side of the vote store consumed by the broadcaster."""

    async def vote_counts(self, poll_id: str) -> Mapping[str, int]:
        """Return ``optionId -> count`` for every option, zero counts included."""


def compute_vote_breakdown(counts: Mapping[str, int]) -> VoteSnapshot:
    """Build a breakdown from raw counts, preserving option order.

    Percentages are left unrounded so they sum to 100 when there are votes,
    and are all zero when there are none.
    """

    total = sum(counts.values())
    entries = tuple(
        VoteBreakdownEntry(
            option_id=option_id,
            vote_count=count,
            percentage=(count / total) * 100 if total > 0 else 0.0,
        )
        for option_id, count in counts.items()
    )
    return VoteSnapshot(total_votes=total, breakdown=entries)


class InMemoryVoteLedger:
    """Process-local vote counts fed by domain events.

    Subscribed to the bus as a plain handler, so it is up to date before any
    coroutine handler for the same event runs.
    """

    def __init__(self, *, dedupe_limit: int = 1000) -> None:
        self._counts: Dict[str, "OrderedDict[str, int]"] = {}
        self._seen_votes: deque[str] = deque(maxlen=dedupe_limit)

    def attach(self, bus) -> None:  # type: ignore[no-untyped-def]
        bus.subscribe(EventType.POLL_CREATED, self.on_poll_created)
        bus.subscribe(EventType.VOTE_ACCEPTED, self.on_vote_accepted)

    def register_poll(self, poll_id: str, option_ids: list[str]) -> None:
        counts = self._counts.setdefault(poll_id, OrderedDict())
        for option_id in option_ids:
            counts.setdefault(option_id, 0)

    def record_vote(self, poll_id: str, option_id: str | None, vote_id: str) -> bool:
        """Count a vote once; returns False for a repeated ``vote_id``."""

        if vote_id in self._seen_votes:
            logger.debug("Ignoring duplicate vote %s for poll %s", vote_id, poll_id)
            return False
        self._seen_votes.append(vote_id)
        counts = self._counts.setdefault(poll_id, OrderedDict())
        if option_id is not None:
            counts[option_id] = counts.get(option_id, 0) + 1
        return True

    def on_poll_created(self, event: DomainEvent) -> None:
        payload: PollCreatedPayload = event.payload
        self.register_poll(payload.poll_id, [option.id for option in payload.options or []])

    def on_vote_accepted(self, event: DomainEvent) -> None:
        payload: VoteAcceptedPayload = event.payload
        self.record_vote(payload.poll_id, payload.option_id, payload.vote_id)

    async def vote_counts(self, poll_id: str) -> Mapping[str, int]:
        return dict(self._counts.get(poll_id, {}))
