"""FastAPI application factory.

The HTTP boundary is the only place that holds the object-store credential;
callers reach the adapter through these routes.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager, suppress
from typing import TYPE_CHECKING, Any

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse

from medvault.api.deps import build_services
from medvault.api.routes import access_requests, auth, health, records, users
from medvault.errors import CustodyError
from medvault.logging import (
    configure_logging,
    correlation_id_var,
    get_logger,
    new_correlation_id,
)
from medvault.maintenance import run_periodic
from medvault.settings import Settings

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from medvault.api.deps import Services

__all__ = ["create_app"]

logger = logging.getLogger(__name__)
access_log = get_logger("medvault.access")

_ERROR_CODE_BY_STATUS: dict[int, str] = {
    401: "UNAUTHENTICATED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "INVALID_TRANSITION",
}


class ObservabilityMiddleware(BaseHTTPMiddleware):
    """Inject correlation_id and record request metrics."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        cid = request.headers.get("x-correlation-id") or new_correlation_id()
        correlation_id_var.set(cid)
        request.state.request_id = cid

        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start

        response.headers["x-correlation-id"] = cid
        response.headers["x-request-duration-ms"] = f"{duration * 1000:.1f}"

        health.record_request(response.status_code)
        access_log.info(
            "request",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=round(duration * 1000, 1),
        )

        return response


def _resolve_request_id(request: Request) -> str:
    state_request_id = getattr(request.state, "request_id", "")
    if state_request_id:
        return state_request_id
    header_request_id = request.headers.get("x-correlation-id", "")
    if header_request_id:
        request.state.request_id = header_request_id
        return header_request_id
    generated = new_correlation_id()
    request.state.request_id = generated
    return generated


def _error_payload(error_code: str, message: str, request_id: str, *, details: Any = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error_code": error_code,
        "message": message,
        "request_id": request_id,
    }
    if details is not None:
        payload["details"] = details
    return payload


async def _custody_exception_handler(request: Request, exc: CustodyError) -> JSONResponse:
    request_id = _resolve_request_id(request)
    if exc.retryable:
        logger.warning("%s: %s", exc.error_code, exc.message, exc_info=exc)
        details = None
    else:
        logger.info("%s: %s", exc.error_code, exc.message)
        details = exc.details or None
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_payload(exc.error_code, exc.public_message, request_id, details=details),
    )


async def _http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    request_id = _resolve_request_id(request)
    status_code = exc.status_code

    if status_code in _ERROR_CODE_BY_STATUS:
        error_code = _ERROR_CODE_BY_STATUS[status_code]
    elif 400 <= status_code < 500:
        error_code = "INVALID_REQUEST"
    else:
        error_code = "INTERNAL_ERROR"

    if isinstance(exc.detail, str):
        message = exc.detail
    else:
        message = "Request failed"

    return JSONResponse(
        status_code=status_code,
        content=_error_payload(error_code, message, request_id),
    )


async def _validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    request_id = _resolve_request_id(request)
    return JSONResponse(
        status_code=422,
        content=_error_payload(
            "VALIDATION_FAILED",
            "Request validation failed",
            request_id,
            details=[
                {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
                for err in exc.errors()
            ],
        ),
    )


async def _unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    request_id = _resolve_request_id(request)
    logger.exception("Unhandled application exception", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content=_error_payload("INTERNAL_ERROR", "Internal server error", request_id),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    # Services injected by create_app (tests) are left alone
    owned = getattr(app.state, "services", None) is None
    if owned:
        settings = Settings()
        configure_logging(json_output=settings.log_json, level=settings.log_level)
        app.state.services = build_services(settings)
        logger.info("medvault started (environment=%s)", settings.environment)

    services = app.state.services
    interval = services.settings.maintenance_interval_seconds
    sweeper = asyncio.create_task(run_periodic(services, interval)) if interval > 0 else None

    yield

    if sweeper is not None:
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper
    if owned:
        await services.close()


def create_app(services: Services | None = None) -> FastAPI:
    app = FastAPI(
        title="MedVault",
        version="0.1.0",
        description="Health record custody and time-boxed access grants.",
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services
    app.add_exception_handler(CustodyError, _custody_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _unhandled_exception_handler)
    app.add_middleware(ObservabilityMiddleware)
    app.include_router(health.router, tags=["health"])
    app.include_router(auth.router, tags=["auth"])
    app.include_router(users.router, tags=["users"])
    app.include_router(records.router, tags=["records"])
    app.include_router(access_requests.router, tags=["access-requests"])
    return app


app = create_app()
