from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastapi import FastAPI, status
from fastapi.responses import JSONResponse
from starlette.requests import Request

from app.context import get_correlation_id
from app.platform.security.errors import AnonymizationLeakError, ForbiddenError, SessionInvalid


logger = logging.getLogger("app.errors")


class UpstreamQueryFailed(Exception):
    """A warehouse query or pipeline call failed or timed out. Retryable."""

    def __init__(self, operation: str, detail: str | None = None) -> None:
        self.operation = operation
        self.detail = detail
        super().__init__(f"{operation} failed" + (f": {detail}" if detail else ""))


class CooldownActive(Exception):
    def __init__(self, minutes_remaining: int) -> None:
        self.minutes_remaining = minutes_remaining
        super().__init__(f"Cooldown active, {minutes_remaining} minute(s) remaining")


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _is_admin_request(request: Request) -> bool:
    permissions = getattr(request.state, "permissions", None)
    return bool(permissions is not None and permissions.is_admin)


async def _session_invalid_handler(request: Request, exc: SessionInvalid) -> JSONResponse:
    return error_response(request, status_code=status.HTTP_401_UNAUTHORIZED, code="UNAUTHENTICATED", message="Unauthorized")


async def _forbidden_handler(request: Request, exc: ForbiddenError) -> JSONResponse:
    return error_response(request, status_code=status.HTTP_403_FORBIDDEN, code="FORBIDDEN", message=exc.reason)


async def _anonymization_leak_handler(request: Request, exc: AnonymizationLeakError) -> JSONResponse:
    logger.error("anonymize.leak_blocked", extra={"reason": exc.resource, "error": ",".join(exc.fields)})
    return error_response(
        request,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )


async def _upstream_failed_handler(request: Request, exc: UpstreamQueryFailed) -> JSONResponse:
    logger.error("upstream.failed", extra={"function_id": exc.operation, "error": exc.detail})
    return error_response(
        request,
        status_code=status.HTTP_502_BAD_GATEWAY,
        code="UPSTREAM_FAILED",
        message="Failed to fetch data",
        details={"error": exc.detail} if _is_admin_request(request) else None,
    )


async def _cooldown_handler(request: Request, exc: CooldownActive) -> JSONResponse:
    response = error_response(
        request,
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        code="COOLDOWN_ACTIVE",
        message=f"Please wait {exc.minutes_remaining} minute(s) before triggering another refresh",
        details={"cooldown_minutes_remaining": exc.minutes_remaining},
    )
    response.headers["Retry-After"] = str(exc.minutes_remaining * 60)
    return response


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(SessionInvalid, _session_invalid_handler)  # type: ignore[arg-type]
    app.add_exception_handler(ForbiddenError, _forbidden_handler)  # type: ignore[arg-type]
    app.add_exception_handler(AnonymizationLeakError, _anonymization_leak_handler)  # type: ignore[arg-type]
    app.add_exception_handler(UpstreamQueryFailed, _upstream_failed_handler)  # type: ignore[arg-type]
    app.add_exception_handler(CooldownActive, _cooldown_handler)  # type: ignore[arg-type]
