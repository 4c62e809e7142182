"""calkeeper web API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- CORS middleware (configurable origins)
- Lifespan handler owning the shared ``httpx.AsyncClient``
- Health endpoint at GET /api/health and CSRF token at GET /api/csrf-token
- OAuth and calendar routers
"""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager

import httpx
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from calkeeper import __version__
from calkeeper.api.deps import RequestContext, get_request_context
from calkeeper.api.middleware import register_error_handlers
from calkeeper.api.models import ApiResponse, CsrfTokenResponse
from calkeeper.api.routers.calendar import router as calendar_router
from calkeeper.api.routers.oauth import router as oauth_router
from calkeeper.cache import CalendarListCache
from calkeeper.config import CalendarConfig
from calkeeper.core.logging import file_log_sink
from calkeeper.credential_store import CredentialStore
from calkeeper.security.session import SessionManager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the shared HTTP client (and optional log file) for the app's lifetime."""
    config: CalendarConfig = app.state.config
    async with AsyncExitStack() as stack:
        if config.logging.path and not getattr(app.state, "log_sink_active", False):
            stack.enter_context(
                file_log_sink(config.logging.path, config.storage.application_root)
            )
        if getattr(app.state, "http_client", None) is None:
            app.state.http_client = await stack.enter_async_context(
                httpx.AsyncClient(timeout=config.calendar.http_timeout_seconds)
            )
        logger.info("calkeeper API started")
        yield
    logger.info("calkeeper API stopped")


def create_app(
    config: CalendarConfig,
    *,
    http_client: httpx.AsyncClient | None = None,
    session_manager: SessionManager | None = None,
    log_sink_active: bool = False,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    config:
        Validated configuration; ``ConfigurationError`` is raised here when
        required OAuth settings are missing.
    http_client:
        Outbound client shared by every request.  When omitted, one is
        created by the lifespan handler with the configured timeout.
    session_manager:
        Web session manager; defaults to an in-memory store.
    log_sink_active:
        Set when the caller already attached the configured log file.
    """
    config.validate()

    app = FastAPI(
        title="calkeeper",
        version=__version__,
        lifespan=lifespan,
    )
    app.router.redirect_slashes = False

    app.state.config = config
    app.state.debug = config.web.debug
    app.state.http_client = http_client
    app.state.session_manager = session_manager or SessionManager()
    app.state.credential_store = CredentialStore(config.storage)
    app.state.calendar_cache = (
        CalendarListCache.from_config(config) if config.cache.enabled else None
    )
    app.state.log_sink_active = log_sink_active

    if config.web.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(config.web.cors_origins),
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    register_error_handlers(app)

    app.include_router(oauth_router)
    app.include_router(calendar_router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    @app.get("/api/csrf-token", response_model=ApiResponse[CsrfTokenResponse])
    async def csrf_token(
        ctx: RequestContext = Depends(get_request_context),
    ) -> ApiResponse[CsrfTokenResponse]:
        return ApiResponse[CsrfTokenResponse](data=CsrfTokenResponse(csrf_token=ctx.csrf.issue()))

    return app
