"""Configuration loading and validation."""
from skyproxy.config.loader import ConfigLoader, get_api_key
from skyproxy.config.schema import ProviderConfig, ProvidersConfig, RoutesConfig

__all__ = [
    "ConfigLoader",
    "ProviderConfig",
    "ProvidersConfig",
    "RoutesConfig",
    "get_api_key",
]
