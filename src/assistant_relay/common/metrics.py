"""
Метрики Prometheus для relay.

Назначение:
- Экспорт /metrics
- Счётчики relay-сессий, байтов и ошибок upstream
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import FastAPI, Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

# =============================================================================
# СЧЁТЧИКИ И МЕТРИКИ
# =============================================================================

REQUESTS_TOTAL = Counter(
    "relay_requests_total",
    "Общее количество HTTP запросов",
    ["service", "route", "method", "status"],
)

HTTP_REQUEST_LATENCY_MS = Histogram(
    "relay_http_request_latency_ms",
    "Задержка HTTP запроса до первого байта ответа (мс)",
    ["service", "route", "method"],
    buckets=(5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000),
)

RELAY_SESSIONS_TOTAL = Counter(
    "relay_sessions_total",
    "Завершённые relay-сессии",
    ["kind", "outcome"],  # kind=chat|transcription, outcome=completed|cancelled|failed
)

RELAY_ACTIVE_SESSIONS = Gauge(
    "relay_active_sessions",
    "Relay-сессии с открытым upstream",
    ["kind"],
)

RELAY_BYTES_TOTAL = Counter(
    "relay_bytes_total",
    "Байты, переданные от upstream клиенту",
)

UPSTREAM_ERRORS_TOTAL = Counter(
    "relay_upstream_errors_total",
    "Ошибки upstream-провайдеров",
    ["operation", "kind"],  # operation=chat|transcription
)

UPSTREAM_LATENCY_MS = Histogram(
    "relay_upstream_latency_ms",
    "Задержка upstream-вызова до заголовков ответа (мс)",
    ["operation"],
    buckets=(50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000),
)


@contextmanager
def track_upstream_latency(operation: str) -> Iterator[None]:
    started = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = (time.perf_counter() - started) * 1000
        UPSTREAM_LATENCY_MS.labels(operation=operation).observe(elapsed_ms)


def record_session_outcome(*, kind: str, outcome: str) -> None:
    RELAY_SESSIONS_TOTAL.labels(kind=kind, outcome=outcome).inc()


def record_upstream_error(*, operation: str, kind: str) -> None:
    UPSTREAM_ERRORS_TOTAL.labels(operation=operation, kind=kind).inc()


# =============================================================================
# ENDPOINT /metrics
# =============================================================================
def setup_metrics_endpoint(app: FastAPI, *, service: str = "assistant-relay") -> None:
    """
    Регистрирует endpoint /metrics для Prometheus.
    """

    @app.middleware("http")
    async def http_metrics(request: Request, call_next):
        route = request.url.path
        method = request.method
        started = time.perf_counter()

        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000
        status_code = str(response.status_code)

        REQUESTS_TOTAL.labels(
            service=service,
            route=route,
            method=method,
            status=status_code,
        ).inc()
        HTTP_REQUEST_LATENCY_MS.labels(
            service=service,
            route=route,
            method=method,
        ).observe(elapsed_ms)
        return response

    @app.get("/metrics")
    def metrics() -> Response:
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
