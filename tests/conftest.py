"""Pytest configuration and fixtures."""
import json
from typing import Callable, List

import httpx
import pytest

from skyproxy.config.schema import ProviderConfig, ProvidersConfig, RoutesConfig
from skyproxy.core.errors import UpstreamError
from skyproxy.core.retry import RetryPolicy

OPENROUTER_FIELDS = ["model", "messages", "stream", "temperature", "max_tokens", "cache"]
OPENAI_FIELDS = ["model", "messages", "stream", "temperature", "max_tokens"]


def make_provider(**overrides) -> ProviderConfig:
    """Build a ProviderConfig with test defaults."""
    data = {
        "base_url": "https://openrouter.ai/api/v1",
        "api_key_env": "OPENROUTER_API_KEY",
        "allowed_fields": list(OPENROUTER_FIELDS),
        "default_timeout": "5s",
        "max_retries": 2,
    }
    data.update(overrides)
    return ProviderConfig(**data)


@pytest.fixture
def providers_config() -> ProvidersConfig:
    """Provider table with an OpenRouter-, a z.ai- and an OpenAI-class provider."""
    return ProvidersConfig(
        providers={
            "openrouter": make_provider(),
            "zai": make_provider(
                base_url="https://api.z.ai/api/paas/v4",
                api_key_env="ZAI_API_KEY",
                allowed_fields=list(OPENROUTER_FIELDS),
            ),
            "openai": make_provider(
                base_url="https://api.openai.com/v1",
                api_key_env="OPENAI_API_KEY",
                allowed_fields=OPENAI_FIELDS + ["cache"],
            ),
        },
        proxy={"max_request_bytes": 4096},
    )


@pytest.fixture
def routes_config() -> RoutesConfig:
    """Routing table with a default slot and a fast slot."""
    return RoutesConfig(
        model_slots={
            "default": {"provider": "openrouter", "model": "anthropic/claude-3.5-sonnet"},
            "fast": {"provider": "zai", "model": "glm-4.5-air", "enable_reasoning": False},
        },
        proxy={"fallback_to_default": False},
    )


@pytest.fixture
def api_keys(monkeypatch):
    """Set credentials for every test provider."""
    monkeypatch.setenv("OPENROUTER_API_KEY", "sk-or-test")
    monkeypatch.setenv("ZAI_API_KEY", "zai-test")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-openai-test")


@pytest.fixture
def recorded_sleeps() -> List[float]:
    return []


@pytest.fixture
def fast_retry_policy(recorded_sleeps) -> RetryPolicy:
    """Retry policy that records delays instead of sleeping."""

    async def fake_sleep(seconds: float) -> None:
        recorded_sleeps.append(seconds)

    return RetryPolicy(sleep=fake_sleep, retry_on=(UpstreamError,))


def chat_completion(model: str = "upstream-model", content: str = "hello") -> dict:
    """Minimal upstream chat completion body."""
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
    }


class UpstreamRecorder:
    """httpx.MockTransport handler that records requests and replays responses."""

    def __init__(self, responder: Callable[[httpx.Request], httpx.Response]):
        self.responder = responder
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)

    @property
    def json_bodies(self) -> List[dict]:
        return [json.loads(request.content) for request in self.requests]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def provider_factory() -> Callable[..., ProviderConfig]:
    return make_provider


@pytest.fixture
def completion_factory() -> Callable[..., dict]:
    return chat_completion


@pytest.fixture
def upstream() -> Callable[[Callable[[httpx.Request], httpx.Response]], UpstreamRecorder]:
    """Factory for recording mock upstreams."""
    return UpstreamRecorder
