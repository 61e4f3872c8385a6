"""Upstream HTTP client with pooling, concurrency limiting and retries."""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Optional

import httpx

from skyproxy.config.schema import ProviderConfig
from skyproxy.core.concurrency import ConcurrencyLimiter
from skyproxy.core.errors import UpstreamError
from skyproxy.core.pool import ConnectionPoolManager
from skyproxy.core.retry import RetryPolicy
from skyproxy.core.transformer import provider_label
from skyproxy.metrics.prometheus import upstream_retries_total

logger = logging.getLogger(__name__)

CHAT_COMPLETIONS_PATH = "/chat/completions"
API_KEY_PLACEHOLDER = "${API_KEY}"


def build_upstream_url(base_url: str) -> str:
    """Append /chat/completions unless the base URL already ends with it."""
    base_url = base_url.rstrip("/")
    if base_url.endswith(CHAT_COMPLETIONS_PATH):
        return base_url
    return f"{base_url}{CHAT_COMPLETIONS_PATH}"


def build_auth_headers(template: str, api_key: str) -> Dict[str, str]:
    """Render an auth header template such as ``Authorization: Bearer ${API_KEY}``.

    The rendered template is split on its first colon into name and value.
    """
    rendered = template.replace(API_KEY_PLACEHOLDER, api_key)
    name, _, value = rendered.partition(":")
    return {name.strip(): value.strip()}


def build_request_headers(provider_config: ProviderConfig, api_key: str) -> Dict[str, str]:
    headers = {"Content-Type": "application/json"}
    headers.update(build_auth_headers(provider_config.auth_header, api_key))
    return headers


def request_timeout(timeout_s: float, connect_timeout_s: float) -> httpx.Timeout:
    """httpx timeout for a single attempt; connect never exceeds the attempt budget."""
    return httpx.Timeout(timeout_s, connect=min(connect_timeout_s, timeout_s))


@dataclass
class UpstreamResult:
    """Successful (status < 400) upstream response."""

    status_code: int
    body: bytes
    headers: Dict[str, str] = field(default_factory=dict)


class UpstreamClient:
    """Non-streaming dispatcher.

    A concurrency permit is held for the whole call, across every retry
    attempt, and released on every exit path.
    """

    def __init__(
        self,
        pool_manager: ConnectionPoolManager,
        limiter: ConcurrencyLimiter,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        """
        Args:
            pool_manager: Source of pooled clients per provider origin
            limiter: Per-provider concurrency limiter
            retry_policy: Backoff settings; max_retries is taken from each
                provider's configuration
        """
        self.pool_manager = pool_manager
        self.limiter = limiter
        self.retry_policy = retry_policy or RetryPolicy(retry_on=(UpstreamError,))

    async def send_request(
        self,
        provider_id: str,
        provider_config: ProviderConfig,
        body: bytes,
        api_key: str,
    ) -> UpstreamResult:
        """Send a serialized chat completion request upstream.

        Args:
            provider_id: Provider identifier (concurrency key)
            provider_config: Provider configuration
            body: Serialized request body
            api_key: Provider credential

        Returns:
            UpstreamResult for a status < 400 response

        Raises:
            UpstreamError: Final failure after retries; status_code is the
                observed status, 504 on timeout, None on network failure
        """
        url = build_upstream_url(provider_config.base_url)
        headers = build_request_headers(provider_config, api_key)
        timeout_s = provider_config.timeout_ms / 1000.0
        timeout = request_timeout(timeout_s, self.pool_manager.settings.connect_timeout_s)
        label = provider_label(provider_config.base_url)
        client = self.pool_manager.get_client(url)
        policy = self.retry_policy.with_max_retries(provider_config.max_retries)

        async def _attempt() -> UpstreamResult:
            try:
                response = await asyncio.wait_for(
                    client.post(url, content=body, headers=headers, timeout=timeout),
                    timeout=timeout_s,
                )
            except (asyncio.TimeoutError, httpx.TimeoutException) as e:
                raise UpstreamError("Upstream request timed out", status_code=504) from e
            except httpx.TransportError as e:
                raise UpstreamError(f"Upstream request failed: {e}", status_code=None) from e

            if response.status_code >= 400:
                raise UpstreamError(
                    f"Upstream returned {response.status_code}",
                    status_code=response.status_code,
                    body=response.content,
                )

            return UpstreamResult(
                status_code=response.status_code,
                body=response.content,
                headers=dict(response.headers),
            )

        def _on_retry(attempt: int, error: Exception, delay_ms: float) -> None:
            upstream_retries_total.labels(provider=provider_id).inc()
            logger.warning(
                f"Upstream request failed, retrying (attempt {attempt}/{policy.max_retries})",
                extra={
                    "fields": {
                        "provider": provider_id,
                        "provider_label": label,
                        "error": str(error),
                        "status_code": getattr(error, "status_code", None),
                        "delay_ms": int(delay_ms),
                    }
                },
            )

        start = time.monotonic()
        release = await self.limiter.acquire(provider_id, provider_config.max_concurrent)
        try:
            result = await policy.execute(_attempt, on_retry=_on_retry)
        except UpstreamError as e:
            logger.error(
                "Upstream request failed after retries",
                extra={
                    "fields": {
                        "provider": provider_id,
                        "error": e.message,
                        "status_code": e.status_code,
                    }
                },
            )
            raise
        finally:
            release()

        logger.info(
            "Upstream request completed",
            extra={
                "fields": {
                    "provider": provider_id,
                    "provider_label": label,
                    "status_code": result.status_code,
                    "latency_ms": int((time.monotonic() - start) * 1000),
                }
            },
        )
        return result
