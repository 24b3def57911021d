"""
htmz-proxy - credential-injecting API broker for browser code.

Entry point for the FastAPI application.
"""
from __future__ import annotations

from contextlib import asynccontextmanager

import httpx
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from htmz_proxy.config import PROXY_VERSION, get_config
from htmz_proxy.errors import NOT_FOUND_BODY, InternalError, ProxyError
from htmz_proxy.logging import get_logger
from htmz_proxy.routers import internal, proxy
from htmz_proxy.services.proxy import CONNECT_TIMEOUT
from htmz_proxy.services.reloader import ConfigWatcher
from htmz_proxy.services.secret import load_or_create_secret
from htmz_proxy.state import app_state, load_snapshot

load_dotenv()

logger = get_logger(__name__)


def _init_config() -> None:
    """Load API profiles and derive the allow-list. ConfigError aborts startup."""
    config_path = get_config().htmz_config
    app_state.swap_snapshot(load_snapshot(config_path))
    logger.info(f"{len(app_state.snapshot.allow_list)} allowed origins from {config_path}")


def _init_secret() -> None:
    """Load or generate the HMAC secret for signature validation."""
    app_state.secret = load_or_create_secret(get_config().htmz_secret_file)


def _init_http_client() -> None:
    """Initialize shared HTTP client for upstream requests."""
    timeout = app_state.snapshot.config.proxy.timeout
    app_state.http_client = httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=CONNECT_TIMEOUT))
    logger.info("HTTP client initialized")


async def _shutdown_http_client() -> None:
    """Close the shared HTTP client."""
    if app_state.http_client:
        await app_state.http_client.aclose()
        logger.info("HTTP client closed")


def _init_watcher() -> ConfigWatcher | None:
    """Start polling the config file when running in dev mode."""
    settings = get_config()
    if not settings.htmz_dev:
        return None
    watcher = ConfigWatcher(
        settings.htmz_config,
        on_reload=app_state.swap_snapshot,
        current=lambda: app_state.snapshot,
        interval=settings.htmz_reload_interval,
    )
    watcher.start()
    return watcher


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager - handles startup and shutdown."""
    _init_config()
    _init_secret()
    _init_http_client()
    watcher = _init_watcher()

    yield

    if watcher is not None:
        await watcher.stop()
    await _shutdown_http_client()


def install_error_handlers(app: FastAPI) -> None:
    """Render every failure as `{success: false, error, type}` without internals."""

    @app.exception_handler(ProxyError)
    async def proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_envelope())

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code in (404, 405):
            return JSONResponse(status_code=404, content=NOT_FOUND_BODY)
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": "Request failed", "type": "REQUEST_ERROR"},
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.opt(exception=exc).error(f"Unhandled error on {request.url.path}")
        return JSONResponse(status_code=500, content=InternalError().to_envelope())


def create_app() -> FastAPI:
    app = FastAPI(
        title="htmz-proxy",
        description="Loopback-only broker that adds server-side credentials to browser API calls",
        version=PROXY_VERSION,
        lifespan=lifespan,
    )

    # Wildcard CORS is acceptable only because the socket is unreachable off-host.
    # Answers browser preflights (Origin plus Access-Control-Request-Method) and
    # adds CORS headers to responses. Bare OPTIONS falls through to the preflight route.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    install_error_handlers(app)
    app.include_router(proxy.router)
    app.include_router(internal.router)
    return app


app = create_app()
