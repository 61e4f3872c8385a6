"""Connection pool manager: one keep-alive httpx client per provider origin."""
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional

import httpx

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PoolSettings:
    """Connection pool settings shared by every provider origin."""

    max_connections: int = 50
    max_keepalive_connections: int = 50
    keepalive_timeout_s: float = 60.0
    keepalive_max_timeout_s: float = 300.0
    connect_timeout_s: float = 10.0

    @property
    def keepalive_expiry(self) -> float:
        """Idle expiry handed to httpx, bounded by the max idle ceiling."""
        return min(self.keepalive_timeout_s, self.keepalive_max_timeout_s)

    def limits(self) -> httpx.Limits:
        return httpx.Limits(
            max_connections=self.max_connections,
            max_keepalive_connections=self.max_keepalive_connections,
            keepalive_expiry=self.keepalive_expiry,
        )


def origin_of(url: str) -> str:
    """Return scheme://host:port for a URL, with the default port filled in."""
    parsed = httpx.URL(url)
    port = parsed.port
    if port is None:
        port = 443 if parsed.scheme == "https" else 80
    return f"{parsed.scheme}://{parsed.host}:{port}"


class ConnectionPoolManager:
    """Lazily builds and owns one pooled AsyncClient per origin.

    Clients are never recreated once built. close_all() shuts every pool
    down and the manager cannot be used afterwards.
    """

    def __init__(
        self,
        settings: Optional[PoolSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            settings: Pool settings (defaults used if None)
            transport: Optional transport shared by all clients (tests use
                httpx.MockTransport)
        """
        self.settings = settings or PoolSettings()
        self._transport = transport
        self._clients: Dict[str, httpx.AsyncClient] = {}
        self._closed = False

    @property
    def pool_count(self) -> int:
        return len(self._clients)

    @property
    def closed(self) -> bool:
        return self._closed

    def get_client(self, url: str) -> httpx.AsyncClient:
        """Get or create the pooled client for the origin of url.

        Raises:
            RuntimeError: If called after close_all()
        """
        if self._closed:
            raise RuntimeError("Connection pool manager is closed")

        origin = origin_of(url)
        client = self._clients.get(origin)
        if client is None:
            client = httpx.AsyncClient(
                limits=self.settings.limits(),
                timeout=httpx.Timeout(None, connect=self.settings.connect_timeout_s),
                transport=self._transport,
            )
            self._clients[origin] = client
            logger.info(
                "Created connection pool for provider",
                extra={
                    "fields": {
                        "origin": origin,
                        "max_connections": self.settings.max_connections,
                        "keepalive_expiry_s": self.settings.keepalive_expiry,
                    }
                },
            )
        return client

    async def close_all(self) -> None:
        """Close every pool and wait for all of them to finish."""
        if self._closed:
            return
        self._closed = True

        origins = list(self._clients.keys())
        results = await asyncio.gather(
            *(self._clients[origin].aclose() for origin in origins),
            return_exceptions=True,
        )
        for origin, result in zip(origins, results):
            if isinstance(result, Exception):
                logger.error(
                    "Failed to close connection pool",
                    extra={"fields": {"pool": origin, "error": str(result)}},
                )
            else:
                logger.info("Closed connection pool", extra={"fields": {"pool": origin}})
        self._clients.clear()
