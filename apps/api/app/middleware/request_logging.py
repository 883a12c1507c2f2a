from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("app.request")

# Metrics scrapes and health checks would drown the access log.
_QUIET_PATHS = frozenset({"/health", "/metrics"})


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One access line per request, carrying the resolved role once auth has run."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        path = resolve_http_path_label(request)
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            self._emit(request, path, 500, started, failed=True)
            raise

        self._emit(request, path, response.status_code, started)
        return response

    @staticmethod
    def _emit(request: Request, path: str, status_code: int, started: float, failed: bool = False) -> None:
        elapsed = time.perf_counter() - started
        observe_http_request(method=request.method, path=path, status=status_code, duration=elapsed)
        if path in _QUIET_PATHS and not failed:
            return

        permissions = getattr(request.state, "permissions", None)
        fields = {
            "method": request.method,
            "path": path,
            "status_code": status_code,
            "duration_ms": round(elapsed * 1000, 2),
            "role": permissions.role.value if permissions is not None else None,
        }
        if failed:
            logger.error("http.error", exc_info=True, extra=fields)
        else:
            logger.info("http.request", extra=fields)
