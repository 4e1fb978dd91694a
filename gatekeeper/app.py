"""
Gatekeeper - FastAPI Application Entrypoint

This module initializes the FastAPI application with:
- CORS, security and rate-limit middleware
- Authentication routes
- Database lifecycle management
- A single error handler rendering every AuthError

Run locally:
    uvicorn gatekeeper.app:app --reload
"""

from contextlib import asynccontextmanager
from typing import Optional
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine

from gatekeeper import __version__
from gatekeeper.auth.database import get_engine, get_session_factory, init_db
from gatekeeper.auth.errors import AccountLockedError, AuthError, RateLimitExceeded
from gatekeeper.auth.routes import router as auth_router
from gatekeeper.auth.service import AuthService
from gatekeeper.config import Settings, configure_logging, settings as default_settings
from gatekeeper.gateway.middleware import RateLimitMiddleware, SecurityMiddleware
from gatekeeper.gateway.ratelimit import RateLimiters, RateLimitStore


logger = logging.getLogger("gatekeeper")


async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render an AuthError as {detail, error_code, request_id} with its status."""
    headers = {}
    if isinstance(exc, RateLimitExceeded):
        headers.update(exc.decision.headers())
        headers["Retry-After"] = str(exc.decision.reset)
    elif exc.status_code == 401:
        headers["WWW-Authenticate"] = "Bearer"

    content = {
        "detail": exc.message,
        "error_code": exc.code,
        "request_id": getattr(request.state, "request_id", None),
    }
    if isinstance(exc, AccountLockedError) and exc.locked_until:
        content["locked_until"] = exc.locked_until.isoformat()

    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[Engine] = None,
    rate_limit_store: Optional[RateLimitStore] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Override the process settings
        engine: Use an existing engine (tests pass an in-memory one)
        rate_limit_store: Use an existing counter store
    """
    settings = settings or default_settings
    owns_engine = engine is None
    engine = engine or get_engine(settings.DATABASE_URL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Startup:
            - Create auth tables if missing
        Shutdown:
            - Close rate-limit store connections
            - Dispose the engine if this app created it
        """
        init_db(engine)
        logger.info("gatekeeper started version=%s", __version__)
        yield
        await app.state.rate_limiters.aclose()
        if owns_engine:
            engine.dispose()

    app = FastAPI(
        title="Gatekeeper",
        description="Multi-tenant authentication and authorization service",
        version=__version__,
        lifespan=lifespan,
    )

    session_factory = get_session_factory(engine)
    app.state.settings = settings
    app.state.db_engine = engine
    app.state.db_session_factory = session_factory
    app.state.auth_service = AuthService.from_settings(session_factory, settings)
    app.state.rate_limiters = RateLimiters.from_settings(settings, store=rate_limit_store)

    # Added last runs first: security headers wrap the rate limiter
    app.add_middleware(RateLimitMiddleware)
    app.add_middleware(SecurityMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["Authorization", "Content-Type"],
        expose_headers=["X-Request-ID", "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset"],
    )

    app.add_exception_handler(AuthError, auth_error_handler)
    app.include_router(auth_router, prefix="/api/v1")

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "version": __version__}

    @app.get("/")
    async def root():
        """Root endpoint with API information."""
        return {
            "name": "Gatekeeper",
            "version": __version__,
            "docs": "/docs",
            "health": "/health",
        }

    return app


configure_logging()
app = create_app()
