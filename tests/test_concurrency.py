"""Tests for the per-provider concurrency limiter."""
import asyncio

import pytest

from skyproxy.core.concurrency import DEFAULT_MAX_CONCURRENT, ConcurrencyLimiter, ProviderSemaphore


@pytest.mark.asyncio
async def test_acquire_within_capacity_does_not_wait():
    """Test that permits are granted immediately while capacity remains."""
    limiter = ConcurrencyLimiter(default_capacity=2)

    release_a = await limiter.acquire("p")
    release_b = await limiter.acquire("p")

    assert limiter.get_stats("p") == {"capacity": 2, "available": 0, "queued": 0}
    release_a()
    release_b()
    assert limiter.get_stats("p")["available"] == 2


@pytest.mark.asyncio
async def test_default_capacity_is_25():
    """Test the default semaphore capacity."""
    limiter = ConcurrencyLimiter()
    assert limiter.get_semaphore("p").capacity == DEFAULT_MAX_CONCURRENT == 25


@pytest.mark.asyncio
async def test_waiters_are_served_fifo():
    """Test that queued acquirers get permits in arrival order."""
    limiter = ConcurrencyLimiter(default_capacity=1)
    order = []

    first_release = await limiter.acquire("p")

    async def worker(name):
        release = await limiter.acquire("p")
        order.append(name)
        await asyncio.sleep(0)
        release()

    tasks = [asyncio.create_task(worker(name)) for name in ("a", "b", "c")]
    await asyncio.sleep(0)
    assert limiter.get_stats("p")["queued"] == 3

    first_release()
    await asyncio.gather(*tasks)

    assert order == ["a", "b", "c"]
    assert limiter.get_stats("p")["available"] == 1


@pytest.mark.asyncio
async def test_new_caller_cannot_overtake_waiter():
    """Test that a released permit goes to the waiter, not a late arrival."""
    semaphore = ProviderSemaphore(1)
    await semaphore.acquire()

    waiter = asyncio.create_task(semaphore.acquire())
    await asyncio.sleep(0)

    semaphore.release()
    late = asyncio.create_task(semaphore.acquire())
    await asyncio.sleep(0)

    assert waiter.done()
    assert not late.done()
    assert semaphore.available == 0

    semaphore.release()
    await late
    semaphore.release()
    assert semaphore.available == 1


@pytest.mark.asyncio
async def test_in_flight_never_exceeds_capacity():
    """Test that permits held never exceed capacity and never go negative."""
    limiter = ConcurrencyLimiter(default_capacity=3)
    semaphore = limiter.get_semaphore("p")
    in_flight = 0
    peak = 0

    async def worker():
        nonlocal in_flight, peak
        async with limiter.slot("p"):
            in_flight += 1
            peak = max(peak, in_flight)
            assert 0 <= semaphore.in_use <= semaphore.capacity
            await asyncio.sleep(0.001)
            in_flight -= 1

    await asyncio.gather(*(worker() for _ in range(20)))

    assert peak == 3
    assert semaphore.available == 3
    assert semaphore.in_use == 0


@pytest.mark.asyncio
async def test_release_callback_is_idempotent():
    """Test that calling release twice does not over-release the semaphore."""
    limiter = ConcurrencyLimiter(default_capacity=1)

    release = await limiter.acquire("p")
    release()
    release()

    assert limiter.get_stats("p")["available"] == 1


@pytest.mark.asyncio
async def test_slot_releases_on_exception():
    """Test that the context manager releases the permit when the body raises."""
    limiter = ConcurrencyLimiter(default_capacity=1)

    with pytest.raises(RuntimeError):
        async with limiter.slot("p"):
            raise RuntimeError("boom")

    assert limiter.get_stats("p")["available"] == 1


@pytest.mark.asyncio
async def test_cancelled_waiter_leaves_queue():
    """Test that cancelling a queued acquirer does not leak or steal a permit."""
    limiter = ConcurrencyLimiter(default_capacity=1)
    release = await limiter.acquire("p")

    waiter = asyncio.create_task(limiter.acquire("p"))
    await asyncio.sleep(0)
    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter

    assert limiter.get_stats("p")["queued"] == 0
    release()
    assert limiter.get_stats("p")["available"] == 1


@pytest.mark.asyncio
async def test_providers_are_isolated():
    """Test that saturating one provider does not block another."""
    limiter = ConcurrencyLimiter(default_capacity=1)
    await limiter.acquire("a")

    release_b = await asyncio.wait_for(limiter.acquire("b"), timeout=1)
    release_b()

    assert sorted(limiter.providers()) == ["a", "b"]


@pytest.mark.asyncio
async def test_capacity_override_applies_on_creation():
    """Test that a per-provider capacity is used when the semaphore is created."""
    limiter = ConcurrencyLimiter()
    release = await limiter.acquire("small", capacity=2)
    release()

    assert limiter.get_stats("small")["capacity"] == 2


@pytest.mark.asyncio
async def test_semaphore_kept_after_idle():
    """Test that an idle provider keeps the same semaphore and capacity."""
    limiter = ConcurrencyLimiter()
    release = await limiter.acquire("p", capacity=3)
    semaphore = limiter.get_semaphore("p")
    release()

    # Later capacity hints do not replace the existing semaphore
    async with limiter.slot("p", capacity=10):
        assert limiter.get_semaphore("p") is semaphore

    assert limiter.get_stats("p") == {"capacity": 3, "available": 3, "queued": 0}
    assert limiter.providers() == ["p"]


def test_over_release_raises():
    """Test that releasing an unacquired semaphore is an error."""
    semaphore = ProviderSemaphore(1)
    with pytest.raises(RuntimeError):
        semaphore.release()


def test_invalid_capacity():
    """Test that capacity must be positive."""
    with pytest.raises(ValueError):
        ProviderSemaphore(0)
