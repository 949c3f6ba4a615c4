"""
Security Guard Middleware
=========================
Starlette middleware that gates every request through the rate limiter and
records it afterwards, feeding the abuse and DDoS analyses.
"""

from typing import Optional, Set

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
import structlog

from .exceptions import InvalidIPAddressError
from .guard import SecurityGuard
from .logging_config import request_id_var
from .models import Decision, RateLimitDecision

logger = structlog.get_logger(__name__)

DEFAULT_EXCLUDED_PATHS = {"/health", "/ready", "/metrics"}


class SecurityGuardMiddleware(BaseHTTPMiddleware):
    """
    Admission control for an ASGI service.

    Denied requests are answered directly (429 when rate limited, 403 when
    blacklisted). Admitted requests are recorded with their status code and
    user agent once the response is produced.
    """

    def __init__(
        self,
        app,
        guard: SecurityGuard,
        excluded_paths: Optional[Set[str]] = None,
        api_key_header: str = "X-API-Key",
        trust_forwarded_for: bool = False,
    ):
        super().__init__(app)
        self.guard = guard
        self.excluded_paths = excluded_paths if excluded_paths is not None else DEFAULT_EXCLUDED_PATHS
        self.api_key_header = api_key_header
        self.trust_forwarded_for = trust_forwarded_for

    def _get_client_ip(self, request: Request) -> Optional[str]:
        """Extract the client IP, honouring X-Forwarded-For only behind a trusted proxy."""
        if self.trust_forwarded_for:
            forwarded = request.headers.get("X-Forwarded-For")
            if forwarded:
                return forwarded.split(",")[0].strip()
        client = request.client
        return client.host if client else None

    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        # Allow health checks and metrics
        if path in self.excluded_paths:
            return await call_next(request)

        client_ip = self._get_client_ip(request)
        api_key = request.headers.get(self.api_key_header)
        request_id_var.set(request.headers.get("X-Request-ID", ""))

        try:
            decision = await self.guard.check(client_ip, endpoint=path, api_key=api_key)
        except InvalidIPAddressError:
            # Test clients and unix sockets have no routable peer address
            logger.debug("security_guard_skipped_unknown_ip", ip=client_ip, path=path)
            return await call_next(request)

        if not decision.allowed:
            return self._denied_response(decision)

        response = await call_next(request)
        await self.guard.record(
            client_ip,
            endpoint=path,
            api_key=api_key,
            status_code=response.status_code,
            user_agent=request.headers.get("User-Agent"),
        )
        return response

    def _denied_response(self, decision: RateLimitDecision) -> JSONResponse:
        if decision.decision == Decision.BLOCKED:
            return JSONResponse(
                status_code=403,
                content={
                    "error": "access_denied",
                    "message": "Your IP has been blocked.",
                    "code": "IP_BLACKLISTED",
                },
            )
        headers = {"Retry-After": str(decision.retry_after)} if decision.retry_after else None
        return JSONResponse(
            status_code=429,
            content={
                "error": "rate_limited",
                "message": "Too many requests.",
                "code": "RATE_LIMITED",
                "retry_after": decision.retry_after,
            },
            headers=headers,
        )
