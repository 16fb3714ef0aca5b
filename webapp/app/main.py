"""
FastAPI Application Factory
===========================

Entry point of the multitenant Azure AD web app.

Routers:
    - {AZURE_AD_CALLBACK_PATH}, /Account/SignIn, /Account/SignOut : sign-in flow
    - /Account/Welcome, /Index, /Error                           : pages
    - /health                                                    : health check

Environment Variables Required:
    - AZURE_AD_CLIENT_ID: Application (client) ID
    - AZURE_AD_CLIENT_SECRET: Client secret used to redeem authorization codes
    - SESSION_SECRET_KEY: Secret for signing session cookies (32+ chars)
    - ONBOARDED_TENANT_IDS: Comma-separated tenant GUIDs allowed to sign in
    - LOG_LEVEL: Logging level (default: INFO)

Running the Service:
    Development:
        uvicorn app.main:create_app --factory --reload --app-dir webapp --port 8080

    Production:
        uvicorn app.main:create_app --factory --app-dir webapp --host 0.0.0.0 --port 8080 --workers 1

    The session and token caches are in-memory; run a single worker or
    inject shared stores.
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.sessions import SessionMiddleware
import uvicorn

from app import __version__
from app.auth import OpenIdConnectHandler, build_auth_router, build_openid_connect_options
from app.auth.ticket_store import MemoryCacheTicketStore
from app.auth.token_cache import MsalTokenAcquirer
from app.auth.utils import OidcMetadataClient
from app.config import Settings, get_settings, validate_configuration
from app.models import ErrorResponse, HealthResponse, Tenant
from app.pages import pages_router
from app.repositories import (
    InMemoryTenantRepository,
    InMemoryUserRepository,
    TenantRepository,
    UserRepository,
)
from app.stores import InMemoryTTLStore

# Lifetime of the signed session holding OIDC state/nonce between challenge and callback
CORRELATION_MAX_AGE_SECONDS = 15 * 60


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup tasks:
        - Configure logging
        - Report permissive security settings
    Shutdown tasks:
        - Clear session, token and metadata caches
    """
    settings: Settings = app.state.settings

    setup_logging(settings.LOG_LEVEL)
    logger = logging.getLogger("app.main")

    status = validate_configuration(settings)
    for warning in status["warnings"]:
        logger.warning(f"Configuration warning: {warning}")
    for error in status["errors"]:
        logger.error(f"Configuration error: {error}")

    logger.info(
        "Web app started",
        extra={
            "authority": settings.AZURE_AD_INSTANCE,
            "callback_path": settings.AZURE_AD_CALLBACK_PATH,
            "version": __version__,
        }
    )

    yield

    logger.info("Shutting down web app")
    app.state.session_store.clear()
    app.state.token_cache_store.clear()
    app.state.oidc_handler.metadata_client.clear()
    logger.info("Cleared session, token and metadata caches")


def create_app(
    settings: Optional[Settings] = None,
    tenant_repository: Optional[TenantRepository] = None,
    user_repository: Optional[UserRepository] = None,
    token_acquirer: Optional[MsalTokenAcquirer] = None,
    metadata_client: Optional[OidcMetadataClient] = None,
) -> FastAPI:
    """
    Application factory function.

    Collaborators default to in-memory implementations; pass real ones
    (or test doubles) to override.

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()
    options = settings.azure_ad_options

    if tenant_repository is None:
        tenant_repository = InMemoryTenantRepository(
            Tenant(tenant_id=tenant_id) for tenant_id in settings.onboarded_tenant_ids
        )
    if user_repository is None:
        user_repository = InMemoryUserRepository()

    session_store = InMemoryTTLStore(
        settings.SESSION_TTL_SECONDS,
        sliding=settings.SESSION_SLIDING_EXPIRATION,
        name="session_store",
    )
    token_cache_store = InMemoryTTLStore(settings.TOKEN_CACHE_TTL_SECONDS, name="token_cache")
    ticket_store = MemoryCacheTicketStore(session_store)

    oidc_options = build_openid_connect_options(
        options,
        tenant_repository,
        user_repository,
        token_cache_store,
        token_acquirer=token_acquirer,
        error_path=settings.ERROR_PATH,
        token_cache_ttl_seconds=settings.TOKEN_CACHE_TTL_SECONDS,
    )
    oidc_handler = OpenIdConnectHandler(oidc_options, ticket_store, settings, metadata_client)

    app = FastAPI(
        title="Multitenant Web App",
        description="Azure AD multitenant sign-in with a gated landing page",
        version=__version__,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.session_store = session_store
    app.state.token_cache_store = token_cache_store
    app.state.ticket_store = ticket_store
    app.state.oidc_handler = oidc_handler
    app.state.tenant_repository = tenant_repository
    app.state.user_repository = user_repository

    # Correlation session for state/nonce. The provider form_posts the
    # callback cross-site, which browsers only allow with SameSite=None.
    # SameSite=None requires Secure, so plain-http deployments cannot sign in.
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.SESSION_SECRET_KEY,
        session_cookie="webapp.oidc",
        max_age=CORRELATION_MAX_AGE_SECONDS,
        same_site="none" if settings.SESSION_COOKIE_SECURE else "lax",
        https_only=settings.SESSION_COOKIE_SECURE,
    )

    app.include_router(build_auth_router(settings.AZURE_AD_CALLBACK_PATH))
    app.include_router(pages_router)

    @app.get("/health", tags=["System"], response_model=HealthResponse)
    async def health_check() -> HealthResponse:
        """Health check endpoint."""
        return HealthResponse(status="ok", service="webapp", version=__version__)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled errors.

        Logs the error and returns a standardized error response.
        """
        logger = logging.getLogger("app.main")
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__
            },
            exc_info=True
        )

        error = ErrorResponse(
            error="internal_server_error",
            message="An unexpected error occurred",
            detail=str(exc) if settings.LOG_LEVEL == "DEBUG" else None,
        )
        return JSONResponse(status_code=500, content=error.model_dump())

    return app


if __name__ == "__main__":
    settings = get_settings()

    uvicorn.run(
        "app.main:create_app",
        factory=True,
        host=settings.HOST,
        port=settings.PORT,
        reload=True,
        log_level=settings.LOG_LEVEL.lower()
    )
