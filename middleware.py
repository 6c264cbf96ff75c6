# middleware.py
from __future__ import annotations

import logging
import time
import uuid

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from services import metrics
from services.platform_settings import get_settings_cache

logger = logging.getLogger("escrow.http")

SENSITIVE_HEADERS = {"authorization", "cookie", "x-api-key"}
REQUEST_ID_HEADER = "X-Request-ID"


def _safe_headers(headers: dict) -> dict:
    safe = {}
    for k, v in headers.items():
        lk = k.lower()
        if lk in SENSITIVE_HEADERS:
            safe[k] = "***"
        else:
            safe[k] = v
    return safe


def _route_label(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        req_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        start = time.time()

        # attach to request state
        request.state.request_id = req_id

        response = None
        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = req_id
            return response
        finally:
            duration_ms = int((time.time() - start) * 1000)
            status = getattr(response, "status_code", 500)
            metrics.increment_http_requests(_route_label(request), status)

            # one line per request, no PII
            logger.info(
                "http_request_end request_id=%s method=%s path=%s status=%s duration_ms=%s client=%s headers=%s",
                req_id,
                request.method,
                request.url.path,
                status,
                duration_ms,
                request.client.host if request.client else None,
                _safe_headers(dict(request.headers)),
            )


# ==========================================================
# Platform guard
# ==========================================================

MAINTENANCE_EXEMPT_PREFIXES = (
    "/health",
    "/healthz",
    "/readyz",
    "/metrics",
    "/payment/confirmation",
    "/admin",
    "/dispute/admin",
)
PAYMENT_PATHS = ("/api/requestPayment",)
PAYOUT_PREFIXES = (
    "/api/release-funds",
    "/api/verify-payout",
    "/api/release-milestone",
    "/referral/withdraw",
)


def _blocked(detail: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=503, content={"detail": detail, "message": message})


class PlatformGuardMiddleware(BaseHTTPMiddleware):
    """
    Kill switches read from platform settings. A settings read failure lets
    the request through so a store hiccup cannot take the platform down.
    """

    def __init__(self, app, cache=None):
        super().__init__(app)
        self._cache = cache

    def _flags(self) -> dict[str, str] | None:
        cache = self._cache or get_settings_cache()
        try:
            return cache.get_all()
        except Exception:
            logger.warning("platform settings unavailable; guard open")
            return None

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        flags = self._flags()
        if flags is None:
            return await call_next(request)

        if flags.get("maintenance_mode") == "true" and not path.startswith(MAINTENANCE_EXEMPT_PREFIXES):
            return _blocked(
                "MAINTENANCE_MODE",
                "The platform is undergoing maintenance. Please try again shortly.",
            )

        if flags.get("payments_blocked") == "true" and path in PAYMENT_PATHS:
            return _blocked("PAYMENTS_BLOCKED", "Payments are temporarily unavailable. Please try again later.")

        if (
            flags.get("payouts_blocked") == "true"
            and request.method == "POST"
            and path.startswith(PAYOUT_PREFIXES)
        ):
            return _blocked("PAYOUTS_BLOCKED", "Payouts are temporarily paused. Your funds remain safe in escrow.")

        return await call_next(request)
