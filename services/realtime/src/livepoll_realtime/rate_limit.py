"""Per-publisher token buckets guarding ``POST /v1/events``."""

from __future__ import annotations

import hashlib
import math
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable

from fastapi import HTTPException, Request, status

from .config import Settings

Clock = Callable[[], float]


@dataclass
class _Bucket:
    tokens: float
    updated_at: float


class PublishRateLimiter:
    """Token bucket per publisher: ``burst`` events at once, refilled at ``rate`` per second.

    Publishers are keyed by bearer credential when one is sent, otherwise by
    client address. The least recently seen publisher is evicted once
    ``max_publishers`` buckets exist.
    """

    def __init__(
        self,
        *,
        rate: float,
        burst: int,
        enabled: bool = True,
        max_publishers: int = 10_000,
        clock: Clock = time.monotonic,
    ) -> None:
        self.rate = rate
        self.burst = float(burst)
        self.enabled = enabled
        self._max_publishers = max_publishers
        self._clock = clock
        self._buckets: "OrderedDict[str, _Bucket]" = OrderedDict()

    @classmethod
    def from_settings(cls, settings: Settings) -> "PublishRateLimiter":
        return cls(
            rate=settings.rate_limit_rps,
            burst=settings.rate_limit_burst,
            enabled=settings.rate_limit_enabled,
        )

    def __len__(self) -> int:
        return len(self._buckets)

    def acquire(self, publisher: str) -> float:
        """Take one token for ``publisher``.

        Returns 0.0 when the event may go through, otherwise the seconds until
        a token is available again.
        """

        if not self.enabled:
            return 0.0
        now = self._clock()
        bucket = self._buckets.pop(publisher, None)
        if bucket is None:
            bucket = _Bucket(tokens=self.burst, updated_at=now)
            while len(self._buckets) >= self._max_publishers:
                self._buckets.popitem(last=False)
        else:
            elapsed = max(0.0, now - bucket.updated_at)
            bucket.tokens = min(self.burst, bucket.tokens + elapsed * self.rate)
            bucket.updated_at = now
        self._buckets[publisher] = bucket

        if bucket.tokens >= 1.0:
            bucket.tokens -= 1.0
            return 0.0
        if self.rate <= 0:
            return math.inf
        return (1.0 - bucket.tokens) / self.rate


def publisher_key(request: Request) -> str:
    auth = request.headers.get("authorization")
    if auth:
        return "auth:" + hashlib.sha256(auth.encode("utf-8")).hexdigest()[:16]
    return f"ip:{request.client.host if request.client else 'unknown'}"


def rate_limit(request: Request) -> None:
    limiter: PublishRateLimiter | None = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        return
    wait = limiter.acquire(publisher_key(request))
    if wait > 0:
        retry_after = "3600" if math.isinf(wait) else str(max(1, math.ceil(wait)))
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Rate limit exceeded",
            headers={"Retry-After": retry_after},
        )
