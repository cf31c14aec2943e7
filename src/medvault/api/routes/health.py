"""Health, readiness, and metrics endpoints."""

from __future__ import annotations

import time
from typing import Any

from fastapi import APIRouter, Request, Response
from starlette.responses import JSONResponse

from medvault.healthchecks import check_object_store, check_postgres, check_redis
from medvault.objectstore.pinata import PinataClient

router = APIRouter()

__all__ = ["router"]

# ──────────── In-process metrics counters ────────────
_metrics: dict[str, Any] = {
    "requests_total": 0,
    "requests_by_status": {},
    "record_reads_allow": 0,
    "record_reads_deny": 0,
    "object_store_errors": {},
    "start_time": time.time(),
}


def record_request(status: int) -> None:
    """Call from middleware to track request counts."""
    _metrics["requests_total"] += 1
    key = str(status)
    _metrics["requests_by_status"][key] = _metrics["requests_by_status"].get(key, 0) + 1


def record_read_decision(allowed: bool) -> None:
    if allowed:
        _metrics["record_reads_allow"] += 1
    else:
        _metrics["record_reads_deny"] += 1


def record_object_store_error(error_code: str) -> None:
    errors = _metrics["object_store_errors"]
    errors[error_code] = errors.get(error_code, 0) + 1


# ──────────── Endpoints ────────────


@router.get("/health", summary="Liveness probe", operation_id="health")
async def health() -> dict[str, str]:
    """Liveness: app process is running."""
    return {"status": "ok"}


@router.get("/ready", summary="Readiness probe", operation_id="ready")
async def ready(request: Request) -> JSONResponse:
    """Readiness: downstream dependencies reachable.

    Returns 200 when all checks pass, 503 otherwise.
    """
    services = request.app.state.services
    settings = services.settings
    backend = services.object_store.backend
    pg = await check_postgres(settings.pg_dsn)
    rd = await check_redis(settings.redis_url)
    store = await check_object_store(backend if isinstance(backend, PinataClient) else None)

    all_ok = pg and rd and store
    checks = {"postgres": pg, "redis": rd, "object_store": store}
    backends = {
        "persistence": "postgres" if settings.pg_dsn else "memory",
        "idempotency": "redis" if settings.redis_url else "memory",
    }

    return JSONResponse(
        status_code=200 if all_ok else 503,
        content={"ready": all_ok, "checks": checks, "backends": backends},
    )


@router.get("/metrics", summary="Prometheus metrics", operation_id="metrics")
async def metrics() -> Response:
    """Prometheus text exposition format."""
    uptime = time.time() - _metrics["start_time"]

    lines = [
        "# HELP medvault_up Custody service is up",
        "# TYPE medvault_up gauge",
        "medvault_up 1",
        "",
        "# HELP medvault_uptime_seconds Seconds since process start",
        "# TYPE medvault_uptime_seconds gauge",
        f"medvault_uptime_seconds {uptime:.1f}",
        "",
        "# HELP medvault_requests_total Total HTTP requests",
        "# TYPE medvault_requests_total counter",
        f"medvault_requests_total {_metrics['requests_total']}",
        "",
    ]

    for status, count in sorted(_metrics["requests_by_status"].items()):
        lines.append(f'medvault_requests_total{{status="{status}"}} {count}')

    lines += [
        "",
        "# HELP medvault_record_reads_total Record read authorization decisions",
        "# TYPE medvault_record_reads_total counter",
        f'medvault_record_reads_total{{result="allow"}} {_metrics["record_reads_allow"]}',
        f'medvault_record_reads_total{{result="deny"}} {_metrics["record_reads_deny"]}',
        "",
        "# HELP medvault_object_store_errors_total Classified object store failures",
        "# TYPE medvault_object_store_errors_total counter",
    ]
    for code, count in sorted(_metrics["object_store_errors"].items()):
        lines.append(f'medvault_object_store_errors_total{{error_code="{code}"}} {count}')
    lines.append("")

    return Response(content="\n".join(lines), media_type="text/plain; charset=utf-8")
