"""Per-provider concurrency limiting for upstream requests."""
import asyncio
import logging
from collections import deque
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Deque, Dict, Optional

from skyproxy.metrics.prometheus import inflight_requests, queued_requests

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT = 25


class ProviderSemaphore:
    """Counting semaphore with a strict FIFO wait queue.

    A released permit is handed directly to the oldest live waiter, so a
    newly arriving caller can never overtake one that is already queued.
    """

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._available = capacity
        self._waiters: Deque[asyncio.Future] = deque()

    @property
    def available(self) -> int:
        return self._available

    @property
    def in_use(self) -> int:
        return self.capacity - self._available

    @property
    def queued(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def acquire(self) -> None:
        """Acquire a permit, waiting in line if none is free."""
        if self._available > 0 and not self._waiters:
            self._available -= 1
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Permit was granted as we were cancelled, pass it on
                self.release()
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise

    def release(self) -> None:
        """Return a permit, waking the oldest waiter if any."""
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                # Permit moves straight to the waiter, available is unchanged
                waiter.set_result(None)
                return
        if self._available >= self.capacity:
            raise RuntimeError("Semaphore released more times than acquired")
        self._available += 1


class ConcurrencyLimiter:
    """Bounds in-flight upstream requests per provider identity.

    Semaphores are created lazily on first acquisition and never removed,
    so a provider keeps its capacity for the life of the process. Creation
    involves no await, so concurrent first use of the same key always sees
    a single semaphore.
    """

    def __init__(self, default_capacity: int = DEFAULT_MAX_CONCURRENT):
        self.default_capacity = default_capacity
        self._semaphores: Dict[str, ProviderSemaphore] = {}

    def get_semaphore(self, provider_id: str, capacity: Optional[int] = None) -> ProviderSemaphore:
        semaphore = self._semaphores.get(provider_id)
        if semaphore is None:
            semaphore = ProviderSemaphore(capacity or self.default_capacity)
            self._semaphores[provider_id] = semaphore
            logger.debug(
                "Created concurrency limiter",
                extra={"fields": {"provider": provider_id, "capacity": semaphore.capacity}},
            )
        return semaphore

    async def acquire(self, provider_id: str, capacity: Optional[int] = None) -> Callable[[], None]:
        """Acquire a permit for provider_id.

        Args:
            provider_id: Provider identifier
            capacity: Semaphore capacity, used only when the semaphore is created

        Returns:
            Release callback. It must be called once on every exit path;
            further calls are ignored.
        """
        semaphore = self.get_semaphore(provider_id, capacity)
        queued_requests.labels(provider=provider_id).inc()
        try:
            await semaphore.acquire()
        finally:
            queued_requests.labels(provider=provider_id).dec()
        inflight_requests.labels(provider=provider_id).inc()

        released = False

        def release() -> None:
            nonlocal released
            if released:
                logger.warning(
                    "Concurrency permit released twice",
                    extra={"fields": {"provider": provider_id}},
                )
                return
            released = True
            semaphore.release()
            inflight_requests.labels(provider=provider_id).dec()

        return release

    @asynccontextmanager
    async def slot(self, provider_id: str, capacity: Optional[int] = None) -> AsyncIterator[None]:
        """Hold a permit for the duration of the ``async with`` block."""
        release = await self.acquire(provider_id, capacity)
        try:
            yield
        finally:
            release()

    def get_stats(self, provider_id: str) -> Dict[str, int]:
        """Get current permit statistics for a provider."""
        semaphore = self._semaphores.get(provider_id)
        if semaphore is None:
            return {
                "capacity": self.default_capacity,
                "available": self.default_capacity,
                "queued": 0,
            }
        return {
            "capacity": semaphore.capacity,
            "available": semaphore.available,
            "queued": semaphore.queued,
        }

    def providers(self) -> list:
        return list(self._semaphores.keys())
