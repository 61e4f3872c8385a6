"""SkyProxy FastAPI application.

This is the main application module that:
- Initializes the FastAPI application
- Configures exception handling (every error uses the OpenAI error shape)
- Registers all route handlers
- Manages application lifespan (startup/shutdown)
"""
import argparse
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from skyproxy import __version__
from skyproxy.app.dependencies import build_app_state, log_credential_status
from skyproxy.config.loader import DEFAULT_ENV_FILE, ConfigLoader, load_env_file
from skyproxy.config.schema import ProvidersConfig, RoutesConfig
from skyproxy.core.errors import ErrorType, ProxyError
from skyproxy.core.logging import setup_logging
from skyproxy.core.retry import RetryPolicy

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    Startup loads configuration (unless it was passed to create_app),
    configures logging and builds the router, pools, limiter and
    dispatchers. Shutdown closes every connection pool.
    """
    routes: Optional[RoutesConfig] = app.state.routes_config
    providers: Optional[ProvidersConfig] = app.state.providers_config

    if routes is None or providers is None:
        loader = ConfigLoader(app.state.config_dir)
        logger.info(f"Loading configuration from {loader.config_dir}")
        routes, providers = loader.load()

    setup_logging(providers.proxy.log_level, providers.proxy.log_file)

    state = build_app_state(
        routes,
        providers,
        transport=app.state.transport,
        retry_policy=app.state.retry_policy,
    )
    app.state.skyproxy = state
    log_credential_status(providers)

    logger.info(
        f"SkyProxy started with {len(providers.providers)} providers "
        f"and {len(routes.model_slots)} model slots",
        extra={
            "fields": {
                "model_slots": list(routes.model_slots.keys()),
                "fallback_to_default": routes.proxy.fallback_to_default,
            }
        },
    )

    yield

    # Shutdown
    logger.info("Shutting down SkyProxy...")
    await state.pool_manager.close_all()


def create_app(
    routes: Optional[RoutesConfig] = None,
    providers: Optional[ProvidersConfig] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    config_dir: Optional[str] = None,
    retry_policy: Optional[RetryPolicy] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        routes: Routing table; loaded from config_dir at startup if None
        providers: Provider table; loaded from config_dir at startup if None
        transport: httpx transport for upstream pools (tests use MockTransport)
        config_dir: Directory holding routes.yaml and providers.yaml
        retry_policy: Backoff settings for non-streaming dispatch

    Returns:
        Configured FastAPI application instance.
    """
    app = FastAPI(
        title="SkyProxy",
        version=__version__,
        description=(
            "Local reverse proxy for OpenAI-compatible chat completions: "
            "model aliases, per-provider request shaping, pooled upstream "
            "connections, bounded concurrency and retries."
        ),
        lifespan=lifespan,
    )
    app.state.routes_config = routes
    app.state.providers_config = providers
    app.state.transport = transport
    app.state.config_dir = config_dir
    app.state.retry_policy = retry_policy

    # Register exception handlers
    _register_exception_handlers(app)

    # Register routes
    _register_routes(app)

    return app


def _register_exception_handlers(app: FastAPI) -> None:
    """Register global exception handlers."""

    @app.exception_handler(ProxyError)
    async def proxy_error_handler(request: Request, exc: ProxyError):
        return JSONResponse(status_code=exc.client_status, content=exc.to_payload())

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        """Unknown paths and methods are reported as 404 in the error shape."""
        status_code = exc.status_code
        if status_code in (status.HTTP_404_NOT_FOUND, status.HTTP_405_METHOD_NOT_ALLOWED):
            status_code = status.HTTP_404_NOT_FOUND
            message = "Not Found"
        else:
            message = str(exc.detail)
        return JSONResponse(
            status_code=status_code,
            content={
                "error": {
                    "message": message,
                    "type": ErrorType.from_http_status(status_code).value,
                    "param": None,
                }
            },
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler for unhandled errors."""
        logger.error(
            f"Unhandled exception: {type(exc).__name__}: {str(exc)}",
            exc_info=True,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": {
                    "message": f"Internal server error: {str(exc)}",
                    "type": ErrorType.API_ERROR.value,
                    "param": None,
                    "code": "internal_error",
                }
            },
        )


def _register_routes(app: FastAPI) -> None:
    """Register all route handlers."""
    from skyproxy.app.routes import chat, dashboard, health

    app.include_router(health.router)
    app.include_router(chat.router)
    app.include_router(dashboard.router)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="skyproxy",
        description="Local reverse proxy for OpenAI-compatible chat completions",
    )
    parser.add_argument(
        "--config-dir",
        default=os.getenv("SKYPROXY_CONFIG_DIR", "config"),
        help="Directory containing routes.yaml and providers.yaml (default: ./config)",
    )
    parser.add_argument(
        "--env-file",
        default=os.getenv("SKYPROXY_ENV_FILE", DEFAULT_ENV_FILE),
        help="Path to dotenv file with provider credentials (default: .env)",
    )
    parser.add_argument("--host", help="Override proxy.listen_address")
    parser.add_argument("--port", type=int, help="Override proxy.listen_port")
    parser.add_argument("--log-level", help="Override proxy.log_level (ERROR, WARN, INFO, DEBUG, TRACE)")
    return parser.parse_args(argv)


def main(argv=None) -> None:
    """Console entry point: load config and serve with uvicorn."""
    args = parse_args(argv)
    env_loaded = load_env_file(args.env_file)
    routes, providers = ConfigLoader(args.config_dir).load()
    if args.log_level:
        providers.proxy.log_level = args.log_level
    setup_logging(providers.proxy.log_level, providers.proxy.log_file)
    if env_loaded:
        logger.info(f"Loaded environment from {args.env_file}")

    app = create_app(routes=routes, providers=providers, config_dir=args.config_dir)
    host = args.host or providers.proxy.listen_address
    port = args.port or providers.proxy.listen_port
    logger.info(f"Listening on http://{host}:{port}")
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
