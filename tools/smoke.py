"""Lightweight smoke checks for a running realtime service.

Usage:
    python tools/smoke.py --realtime http://localhost:8001

The script performs non-destructive checks:
- GET /config and /health
- POST /v1/events with a participant event for a throwaway session
  (no WS clients required)

Exits with code 0 on success, non-zero on first failure.
"""

from __future__ import annotations

import argparse
import logging
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

import httpx


logger = logging.getLogger("smoke")


def _build_client(timeout: float = 5.0) -> httpx.Client:
    return httpx.Client(timeout=timeout)


def _get_json(client: httpx.Client, url: str) -> dict[str, Any]:
    resp = client.get(url)
    resp.raise_for_status()
    payload = resp.json()
    assert isinstance(payload, dict)
    return payload


def _post_json(client: httpx.Client, url: str, body: dict[str, Any]) -> dict[str, Any]:
    resp = client.post(url, json=body)
    resp.raise_for_status()
    payload = resp.json()
    assert isinstance(payload, dict)
    return payload


def check_realtime(client: httpx.Client, base: str) -> None:
    cfg = _get_json(client, f"{base}/config")
    logger.info(
        "realtime /config ok: %s",
        {k: cfg.get(k) for k in ("apiVersion", "heartbeatIntervalSeconds", "eventReplayEnabled")},
    )
    health = _get_json(client, f"{base}/health")
    assert health.get("status") == "ok"
    logger.info("realtime /health ok: %s", health)

    session_id = f"smoke-{uuid4().hex[:8]}"
    event = {
        "type": "participant:joined",
        "sessionId": session_id,
        "payload": {
            "participantId": "smoke-participant",
            "sessionId": session_id,
            "displayName": "Smoke",
            "joinedAt": datetime.now(tz=timezone.utc).isoformat(),
        },
    }
    ack = _post_json(client, f"{base}/v1/events", event)
    assert ack.get("accepted") is True
    assert ack.get("sessionId") == session_id
    logger.info("realtime publish ok: %s", ack)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run smoke checks for the Live Poll realtime service")
    parser.add_argument("--realtime", default="http://localhost:8001", help="Realtime service base URL")
    parser.add_argument("--timeout", type=float, default=5.0, help="HTTP timeout seconds")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s - %(message)s")

    try:
        with _build_client(timeout=args.timeout) as client:
            check_realtime(client, args.realtime.rstrip("/"))
    except Exception as exc:  # pylint: disable=broad-except
        logger.error("smoke failed: %s", exc)
        return 1
    logger.info("smoke passed")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
