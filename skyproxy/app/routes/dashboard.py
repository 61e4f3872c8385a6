"""Read-only provider and environment status for the local dashboard.

Credential values are never returned, only whether they are set.
"""
from typing import List

from fastapi import APIRouter, Depends

from skyproxy.app.dependencies import AppState, credential_report, get_app_state
from skyproxy.app.schemas import (
    ApiKeyStatus,
    EnvStatusResponse,
    EnvVarStatus,
    ProviderStatus,
    ProvidersResponse,
    ProxyConfigResponse,
    ProxySettingsView,
)
from skyproxy.config.loader import credential_status
from skyproxy.config.schema import ProviderConfig
from skyproxy.core.errors import InvalidRequestError
from skyproxy.core.transformer import resolve_cache_behavior

router = APIRouter(prefix="/api", tags=["Dashboard"])


def require_dashboard(state: AppState = Depends(get_app_state)) -> AppState:
    if not state.dashboard_enabled:
        raise InvalidRequestError("Not Found", status_code=404)
    return state


def _provider_status(provider_id: str, provider_config: ProviderConfig) -> ProviderStatus:
    status = credential_status(provider_config.api_key_env)
    return ProviderStatus(
        id=provider_id,
        name=provider_id[:1].upper() + provider_id[1:],
        base_url=provider_config.base_url,
        api_key=ApiKeyStatus(configured=status["configured"], source=status["source"]),
        allowed_fields=list(provider_config.allowed_fields),
        default_timeout=provider_config.default_timeout,
        max_retries=provider_config.max_retries,
        streaming_adapter=provider_config.streaming_adapter,
        cache_behavior=resolve_cache_behavior(provider_config).value,
    )


@router.get("/providers", response_model=ProvidersResponse)
async def list_providers(state: AppState = Depends(require_dashboard)) -> ProvidersResponse:
    """All configured providers with their credential status."""
    providers: List[ProviderStatus] = [
        _provider_status(provider_id, provider_config)
        for provider_id, provider_config in state.providers.providers.items()
    ]
    return ProvidersResponse(providers=providers)


@router.get("/providers/{provider_id}", response_model=ProviderStatus)
async def get_provider(
    provider_id: str, state: AppState = Depends(require_dashboard)
) -> ProviderStatus:
    provider_config = state.providers.providers.get(provider_id)
    if provider_config is None:
        raise InvalidRequestError("Provider not found", status_code=404)
    return _provider_status(provider_id, provider_config)


@router.get("/env", response_model=EnvStatusResponse)
async def env_status(state: AppState = Depends(require_dashboard)) -> EnvStatusResponse:
    """Credential environment variables and whether each is set."""
    return EnvStatusResponse(
        env_vars=[EnvVarStatus(**entry) for entry in credential_report(state.providers)]
    )


@router.get("/config", response_model=ProxyConfigResponse)
async def proxy_config(state: AppState = Depends(require_dashboard)) -> ProxyConfigResponse:
    proxy = state.providers.proxy
    return ProxyConfigResponse(
        proxy=ProxySettingsView(
            listen_address=proxy.listen_address,
            listen_port=proxy.listen_port,
            log_level=proxy.log_level,
            log_file=proxy.log_file,
        ),
        model_slots=list(state.routes.model_slots.keys()),
    )
