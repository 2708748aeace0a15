"""Configuration for the realtime service."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    api_version: str = Field("1.0.0", description="Semantic version returned by health endpoints.")
    heartbeat_interval_seconds: float = Field(
        30.0,
        gt=0,
        alias="HEARTBEAT_INTERVAL_SECONDS",
        description="Interval between heartbeat pings sent to each socket.",
    )
    connection_timeout_seconds: float = Field(
        60.0,
        gt=0,
        alias="CONNECTION_TIMEOUT_SECONDS",
        description="Socket is considered dead after this long without a pong.",
    )
    max_connections_per_session: int = Field(
        500,
        ge=1,
        le=10000,
        description="Safety cap for simultaneous websocket connections per session.",
    )
    event_replay_enabled: bool = Field(
        False,
        alias="EVENT_REPLAY_ENABLED",
        description="Keep recent envelopes in memory so reconnecting clients can catch up.",
    )
    replay_history_limit: int = Field(
        500,
        ge=1,
        description="Max number of envelopes kept per session when replay is enabled.",
    )
    vote_dedupe_limit: int = Field(
        1000,
        ge=1,
        description="Max number of voteIds remembered for at-most-once fan-out.",
    )
    ws_api_key: str | None = Field(
        default=None,
        alias="WS_API_KEY",
        description="Static bearer token for WebSocket authentication.",
    )
    cors_origins: list[str] = Field(
        default_factory=lambda: [
            "http://localhost:5173",
            "http://localhost:3000",
            "http://127.0.0.1:5173",
            "http://127.0.0.1:3000",
        ],
        alias="CORS_ORIGINS",
        description="Origins allowed by the CORS middleware.",
    )
    log_domain_events: bool = Field(
        False,
        alias="LOG_DOMAIN_EVENTS",
        description="Log every published domain event.",
    )

    # Optional in-app rate limit (dev/staging)
    rate_limit_enabled: bool = Field(
        False,
        description="Enable in-app rate limit for the publish endpoint",
        alias="RATE_LIMIT_ENABLED",
    )
    rate_limit_rps: float = Field(
        20.0,
        ge=0.1,
        description="Requests per second per key",
        alias="RATE_LIMIT_RPS",
    )
    rate_limit_burst: int = Field(
        40,
        ge=1,
        description="Burst capacity for token bucket",
        alias="RATE_LIMIT_BURST",
    )


class HealthPayload(BaseModel):
    """Health-check response payload."""

    status: Literal["ok"]
    api_version: str


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance.

    Returns:
        Settings: Loaded environment settings.
    """

    return Settings()
