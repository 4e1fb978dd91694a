"""
Gatekeeper - Gateway Middleware

Request/response middleware for:
- Request ID injection for tracing
- Per-IP and per-user rate limiting
- Security headers

Rate limiting runs before any handler. Requests carrying a valid bearer
access token are counted against the user limiter; everything else is
counted against the IP limiter.
"""

import logging
import time
import uuid
from typing import Callable, Iterable, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from gatekeeper.auth.errors import AuthError, RateLimitExceeded


logger = logging.getLogger("gatekeeper.gateway")


def client_ip(request: Request) -> str:
    """
    Client address, honouring proxy headers.

    First hop of X-Forwarded-For, then X-Real-IP, then the socket peer.
    """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()

    if request.client:
        return request.client.host
    return "unknown"


class SecurityMiddleware(BaseHTTPMiddleware):
    """
    Security-focused middleware for all incoming requests.

    Responsibilities:
    1. Inject X-Request-ID header for distributed tracing
    2. Add security headers to response
    3. Track request timing
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id

        start_time = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start_time) * 1000

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Cache-Control"] = "no-store"

        logger.debug(
            "request method=%s path=%s status=%d duration_ms=%.1f request_id=%s",
            request.method, request.url.path, response.status_code, duration_ms, request_id,
        )
        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Enforce the configured limiters before the request reaches a handler.

    Limiters and the token issuer are read from ``app.state`` at request
    time, so tests can swap them after the app is built.

    Every counted response carries X-RateLimit-Limit, X-RateLimit-Remaining
    and X-RateLimit-Reset. Rejected requests get 429 with the same headers.
    """

    def __init__(self, app, exempt_paths: Iterable[str] = ("/health",)):
        super().__init__(app)
        self.exempt_paths = frozenset(exempt_paths)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        limiters = getattr(request.app.state, "rate_limiters", None)
        if limiters is None or request.url.path in self.exempt_paths:
            return await call_next(request)

        user_id = self._user_id(request)
        ip_address = client_ip(request)

        try:
            decision = await limiters.enforce(user_id, ip_address)
        except RateLimitExceeded as e:
            return JSONResponse(
                status_code=e.status_code,
                content={
                    "detail": e.message,
                    "error_code": e.code,
                    "request_id": getattr(request.state, "request_id", None),
                },
                headers={**e.decision.headers(), "Retry-After": str(e.decision.reset)},
            )
        except AuthError as e:
            # Counter store down; the limiter cannot vouch for this request
            logger.error("ratelimit.store_failed error=%s", e.message)
            return JSONResponse(
                status_code=e.status_code,
                content={"detail": e.message, "error_code": e.code},
            )

        response = await call_next(request)
        response.headers.update(decision.headers())
        return response

    @staticmethod
    def _user_id(request: Request) -> Optional[str]:
        """Subject of a valid bearer access token, if any."""
        authorization = request.headers.get("authorization", "")
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token:
            return None

        service = getattr(request.app.state, "auth_service", None)
        if service is None:
            return None
        try:
            return str(service.validate(token.strip()).sub)
        except AuthError:
            return None
