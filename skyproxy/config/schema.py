"""Pydantic schemas for SkyProxy configuration validation."""
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from skyproxy.core.duration import parse_duration

DEFAULT_AUTH_HEADER = "Authorization: Bearer ${API_KEY}"
DEFAULT_MAX_REQUEST_BYTES = 10 * 1024 * 1024


class ModelSlotConfig(BaseModel):
    """Model slot: alias → provider + upstream model."""

    provider: str = Field(..., min_length=1, description="Provider identifier from providers.yaml")
    model: str = Field(..., min_length=1, description="Upstream model name")
    enable_reasoning: Optional[bool] = Field(default=None, description="Enable reasoning for this slot")


class RoutesProxyConfig(BaseModel):
    """Routing behavior switches."""

    fallback_to_default: bool = Field(
        default=False, description="Route unknown aliases to the 'default' slot instead of failing"
    )


class RoutesConfig(BaseModel):
    """Root model of routes.yaml."""

    model_config = ConfigDict(protected_namespaces=())

    model_slots: Dict[str, ModelSlotConfig] = Field(..., description="Slot name → slot config")
    proxy: RoutesProxyConfig = Field(default_factory=RoutesProxyConfig)

    @field_validator("model_slots")
    @classmethod
    def validate_model_slots(cls, v: Dict[str, ModelSlotConfig]) -> Dict[str, ModelSlotConfig]:
        """Require at least one slot."""
        if not v:
            raise ValueError("routes.yaml must contain at least one model_slot")
        return v


class ProviderConfig(BaseModel):
    """Upstream provider configuration."""

    base_url: str = Field(..., min_length=1, description="Provider base URL")
    api_key_env: str = Field(..., min_length=1, description="Environment variable holding the API key")
    auth_header: str = Field(
        default=DEFAULT_AUTH_HEADER,
        description="Header template, ${API_KEY} is replaced by the credential",
    )
    allowed_fields: List[str] = Field(..., description="Request fields this provider accepts")
    streaming_adapter: Literal["none", "rewrite"] = Field(
        default="none", description="Stream relay mode"
    )
    default_timeout: str = Field(default="60s", description="Per-attempt timeout, e.g. 60s or 2m")
    max_retries: int = Field(default=2, ge=0, le=10, description="Retries after the first attempt")
    cache_behavior: Optional[Literal["drop", "openrouter", "zai", "passthrough"]] = Field(
        default=None,
        description="Cache field rewrite; inferred from base_url when omitted",
    )
    max_concurrent: Optional[int] = Field(
        default=None, gt=0, description="In-flight request cap (default 25)"
    )

    @field_validator("default_timeout")
    @classmethod
    def validate_default_timeout(cls, v: str) -> str:
        """Ensure the timeout parses as a positive duration."""
        if parse_duration(v) <= 0:
            raise ValueError("default_timeout must be greater than zero")
        return v

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Require an http(s) URL and strip trailing slashes."""
        if not (v.startswith("http://") or v.startswith("https://")):
            raise ValueError(f"base_url must start with http:// or https:// (got {v})")
        return v.rstrip("/")

    @field_validator("auth_header")
    @classmethod
    def validate_auth_header(cls, v: str) -> str:
        """Require a 'Name: value' template."""
        if ":" not in v:
            raise ValueError("auth_header must look like 'Header-Name: value'")
        return v

    @property
    def timeout_ms(self) -> int:
        return parse_duration(self.default_timeout)


class ProxySettings(BaseModel):
    """Listener, logging and request limits."""

    listen_address: str = Field(default="127.0.0.1")
    listen_port: int = Field(default=8080, gt=0, le=65535)
    log_level: str = Field(default="INFO")
    log_file: Optional[str] = Field(default=None)
    max_request_bytes: int = Field(default=DEFAULT_MAX_REQUEST_BYTES, gt=0)
    dashboard_enabled: bool = Field(default=True)


class ProvidersConfig(BaseModel):
    """Root model of providers.yaml."""

    providers: Dict[str, ProviderConfig] = Field(..., description="Provider id → provider config")
    proxy: ProxySettings = Field(default_factory=ProxySettings)

    @field_validator("providers")
    @classmethod
    def validate_providers(cls, v: Dict[str, ProviderConfig]) -> Dict[str, ProviderConfig]:
        """Require at least one provider."""
        if not v:
            raise ValueError("providers.yaml must contain at least one provider")
        return v
