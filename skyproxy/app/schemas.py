"""Pydantic models for SkyProxy responses.

Chat completion requests are not modeled here: the request body is handled
as raw JSON so that unknown and extension fields reach the transformer
untouched.
"""
from typing import List, Optional

from pydantic import BaseModel, Field


class ErrorDetail(BaseModel):
    """Error object in the OpenAI-compatible error shape."""

    message: str = Field(..., description="Error message")
    type: str = Field(
        ..., description="invalid_request_error, api_error or rate_limit_error"
    )
    param: Optional[str] = Field(None, description="Always null")
    code: Optional[str] = Field(None, description="Machine-readable error code")


class ErrorResponse(BaseModel):
    """Body of every non-2xx JSON response."""

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    timestamp: int = Field(..., description="Unix epoch milliseconds")


class ApiKeyStatus(BaseModel):
    configured: bool
    source: str


class ProviderStatus(BaseModel):
    """Read-only provider view for the dashboard."""

    id: str
    name: str
    base_url: str
    api_key: ApiKeyStatus
    allowed_fields: List[str]
    default_timeout: str
    max_retries: int
    streaming_adapter: str
    cache_behavior: str


class EnvVarStatus(BaseModel):
    env_var: str
    provider: str
    configured: bool
    has_prefix: bool


class EnvStatusResponse(BaseModel):
    env_vars: List[EnvVarStatus]


class ProvidersResponse(BaseModel):
    providers: List[ProviderStatus]


class ProxySettingsView(BaseModel):
    """Listener and logging settings."""

    listen_address: str
    listen_port: int
    log_level: str
    log_file: Optional[str]


class ProxyConfigResponse(BaseModel):
    proxy: ProxySettingsView
    model_slots: List[str]
