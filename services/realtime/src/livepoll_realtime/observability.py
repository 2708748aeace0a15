"""Observability setup for the realtime service (logging, OTEL and Prometheus)."""

from __future__ import annotations

import json
import logging
import logging.config
import os
from pathlib import Path

from fastapi import FastAPI

logger = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes"}


def setup_logging(config_path: Path | None = None) -> None:
    """Load JSON logging config (``observability/logging.json``) if present."""

    path = config_path or Path.cwd() / "observability" / "logging.json"
    if not path.exists():
        return
    try:
        with path.open("r", encoding="utf-8") as fh:
            cfg = json.load(fh)
        logging.config.dictConfig(cfg)
    except (OSError, ValueError) as exc:
        logger.warning("Ignoring invalid logging config %s: %s", path, exc)


def setup_observability(app: FastAPI, *, service_name: str) -> None:
    """Enable tracing and metrics when switched on by environment."""

    if os.environ.get("ENABLE_OTEL", "false").lower() in _TRUTHY:
        try:
            _enable_tracing(app, service_name)
        except ImportError as exc:
            logger.warning("OpenTelemetry requested but not installed: %s", exc)
    if os.environ.get("ENABLE_METRICS", "false").lower() in _TRUTHY:
        try:
            _enable_metrics(app)
        except ImportError as exc:
            logger.warning("Prometheus metrics requested but not installed: %s", exc)


def _enable_tracing(app: FastAPI, service_name: str) -> None:
    from opentelemetry import trace
    from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
    from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT") or "http://localhost:4318"
    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)
    exporter = OTLPSpanExporter(endpoint=f"{endpoint}/v1/traces")
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    FastAPIInstrumentor.instrument_app(app)


def _enable_metrics(app: FastAPI) -> None:
    from prometheus_fastapi_instrumentator import Instrumentator

    Instrumentator().instrument(app).expose(app)
