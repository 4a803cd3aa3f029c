"""FastAPI application factory."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from googleapiclient.errors import HttpError
from starlette.exceptions import HTTPException

from greenops_dashboard.gcp.oauth import OAuthConfigError, TokenRefreshError
from greenops_dashboard.routers import auth_gcp, diagnostics, gcp

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    from greenops_dashboard.scheduler import scheduler, start_scheduler
    try:
        start_scheduler()
    except Exception as e:
        logger.warning("Scheduler failed to start: %s", e)

    yield

    if scheduler.running:
        scheduler.shutdown(wait=False)


async def http_error_handler(request: Request, exc: HTTPException):
    return JSONResponse({"error": exc.detail}, status_code=exc.status_code,
                        headers=getattr(exc, "headers", None))


async def token_refresh_handler(request: Request, exc: TokenRefreshError):
    logger.warning("GCP token refresh failed on %s: %s", request.url.path, exc)
    return JSONResponse(
        {"error": "GCP authorization expired. Please reconnect your account.",
         "details": str(exc)},
        status_code=401,
    )


async def oauth_config_handler(request: Request, exc: OAuthConfigError):
    return JSONResponse({"error": str(exc)}, status_code=500)


async def google_api_handler(request: Request, exc: HttpError):
    logger.error("Google API error on %s: %s", request.url.path, exc)
    return JSONResponse({"error": "Google Cloud API request failed", "details": str(exc)},
                        status_code=500)


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s", request.url.path)
    return JSONResponse({"error": "Internal server error", "details": str(exc)},
                        status_code=500)


def create_app() -> FastAPI:
    app = FastAPI(
        title="GreenOps Dashboard API",
        description="FinOps and GreenOps data for connected Google Cloud accounts.",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(TokenRefreshError, token_refresh_handler)
    app.add_exception_handler(OAuthConfigError, oauth_config_handler)
    app.add_exception_handler(HttpError, google_api_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    @app.get("/health", include_in_schema=False)
    async def health():
        return {"status": "ok"}

    for r in [auth_gcp, gcp, diagnostics]:
        app.include_router(r.router)

    return app
