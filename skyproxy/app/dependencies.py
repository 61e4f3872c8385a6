"""Shared state for the SkyProxy FastAPI application.

All long-lived components (router, pools, limiter, dispatchers) are built
once in the lifespan handler and attached to ``app.state.skyproxy``.
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import httpx
from fastapi import Request

from skyproxy.config.loader import credential_status
from skyproxy.config.schema import ProvidersConfig, RoutesConfig
from skyproxy.core.concurrency import ConcurrencyLimiter
from skyproxy.core.http_client import UpstreamClient
from skyproxy.core.logging import StructuredLogger, get_logger
from skyproxy.core.pool import ConnectionPoolManager, PoolSettings
from skyproxy.core.retry import RetryPolicy
from skyproxy.core.router import Router
from skyproxy.core.streaming import StreamingRelay

logger = logging.getLogger(__name__)


@dataclass
class AppState:
    """Application state container for all shared components."""

    routes: RoutesConfig
    providers: ProvidersConfig
    router: Router
    limiter: ConcurrencyLimiter
    pool_manager: ConnectionPoolManager
    upstream_client: UpstreamClient
    streaming_relay: StreamingRelay
    request_logger: StructuredLogger

    @property
    def max_request_bytes(self) -> int:
        return self.providers.proxy.max_request_bytes

    @property
    def dashboard_enabled(self) -> bool:
        return self.providers.proxy.dashboard_enabled


def build_app_state(
    routes: RoutesConfig,
    providers: ProvidersConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    pool_settings: Optional[PoolSettings] = None,
    retry_policy: Optional[RetryPolicy] = None,
) -> AppState:
    """Wire up the proxy components for one application instance.

    Args:
        routes: Validated routing table
        providers: Validated provider table
        transport: Optional httpx transport for every upstream pool
        pool_settings: Connection pool settings
        retry_policy: Backoff settings for non-streaming dispatch
    """
    limiter = ConcurrencyLimiter()
    pool_manager = ConnectionPoolManager(pool_settings, transport=transport)
    return AppState(
        routes=routes,
        providers=providers,
        router=Router(routes, providers),
        limiter=limiter,
        pool_manager=pool_manager,
        upstream_client=UpstreamClient(pool_manager, limiter, retry_policy),
        streaming_relay=StreamingRelay(pool_manager, limiter),
        request_logger=get_logger("requests"),
    )


def credential_report(providers: ProvidersConfig) -> List[Dict[str, object]]:
    """Credential status of every provider, without exposing values."""
    report = []
    for provider_id, provider_config in providers.providers.items():
        status = credential_status(provider_config.api_key_env)
        report.append(
            {
                "env_var": provider_config.api_key_env,
                "provider": provider_id,
                "configured": status["configured"],
                "has_prefix": status["has_prefix"],
            }
        )
    return report


def log_credential_status(providers: ProvidersConfig) -> None:
    for entry in credential_report(providers):
        if entry["configured"]:
            logger.info(
                f"API key configured for provider '{entry['provider']}'",
                extra={"fields": {"provider": entry["provider"], "source": entry["env_var"]}},
            )
        else:
            logger.warning(
                f"API key missing for provider '{entry['provider']}'",
                extra={"fields": {"provider": entry["provider"], "source": entry["env_var"]}},
            )


def get_app_state(request: Request) -> AppState:
    """Get the application state for the current request.

    Returns:
        AppState: The state built at startup.
    """
    return request.app.state.skyproxy
