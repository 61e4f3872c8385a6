"""Tests for the SSE streaming relay."""
import asyncio

import httpx
import pytest

from skyproxy.core.concurrency import ConcurrencyLimiter
from skyproxy.core.errors import UpstreamError
from skyproxy.core.pool import ConnectionPoolManager
from skyproxy.core.streaming import (
    DONE_EVENT,
    RewriteLineRelay,
    SSELineRelay,
    StreamingRelay,
    make_line_relay,
)


def _run(relay, *chunks):
    output = []
    for chunk in chunks:
        output.extend(relay.feed(chunk))
    output.extend(relay.finish())
    return output


class TestSSELineRelay:
    def test_events_forwarded_and_done_appended(self):
        """Test that events pass through and the stream ends with one terminator."""
        relay = SSELineRelay()
        output = _run(relay, b'data: {"a": 1}\n\ndata: {"b": 2}\n\ndata: [DONE]\n\n')

        assert output == [b'data: {"a": 1}\n\n', b'data: {"b": 2}\n\n', DONE_EVENT]
        assert relay.terminators_seen == 1

    def test_lines_split_across_chunks(self):
        """Test that partial lines are buffered until complete."""
        relay = SSELineRelay()
        assert relay.feed(b"data: hel") == []
        assert relay.feed(b"lo\n") == []
        assert relay.feed(b"\n") == [b"data: hello\n\n"]

    def test_duplicate_terminator_emitted_once(self):
        """Test that repeated [DONE] lines yield a single terminator."""
        relay = SSELineRelay()
        output = _run(relay, b"data: x\n\ndata: [DONE]\n\n", b"data: [DONE]\n\n")

        assert output.count(DONE_EVENT) == 1
        assert output[-1] == DONE_EVENT
        assert relay.terminators_seen == 2

    def test_missing_terminator_is_added(self):
        """Test that a stream ending without [DONE] still gets one."""
        relay = SSELineRelay()
        output = _run(relay, b"data: x\n\n")

        assert output == [b"data: x\n\n", DONE_EVENT]
        assert relay.terminators_seen == 0

    def test_compact_terminator_forwarded_unmodified(self):
        """Test that data:[DONE] without a space is recognized and kept as sent."""
        relay = SSELineRelay()
        output = _run(relay, b"data: x\n\ndata:[DONE]\n\n")

        assert output == [b"data: x\n\n", b"data:[DONE]\n\n"]
        assert relay.terminators_seen == 1

    def test_crlf_terminator_forwarded_unmodified(self):
        """Test that a CRLF-framed terminator keeps its framing."""
        relay = SSELineRelay()
        output = _run(relay, b"data: x\r\n\r\ndata: [DONE]\r\n\r\n")

        assert output == [b"data: x\r\n\r\n", b"data: [DONE]\r\n\r\n"]

    def test_first_terminator_wins(self):
        """Test that only the first of several terminators is emitted."""
        relay = SSELineRelay()
        output = _run(relay, b"data:[DONE]\n\ndata: [DONE]\n\n")

        assert output == [b"data:[DONE]\n\n"]
        assert relay.terminators_seen == 2

    def test_multiline_event_kept_together(self):
        """Test that all lines of one event are emitted as a single chunk."""
        relay = SSELineRelay()
        output = _run(relay, b"event: message\nid: 7\ndata: y\n\n")
        assert output[0] == b"event: message\nid: 7\ndata: y\n\n"

    def test_crlf_preserved_without_adapter(self):
        """Test that CRLF framing passes through untouched by default."""
        relay = SSELineRelay()
        output = _run(relay, b"data: x\r\n\r\n")
        assert output == [b"data: x\r\n\r\n", DONE_EVENT]

    def test_trailing_partial_event_flushed(self):
        """Test that an unterminated last line is flushed before [DONE]."""
        relay = SSELineRelay()
        output = _run(relay, b"data: tail")
        assert output == [b"data: tail\n\n", DONE_EVENT]

    def test_empty_chunks_ignored(self):
        """Test that empty chunks produce nothing."""
        relay = SSELineRelay()
        assert relay.feed(b"") == []


class TestRewriteLineRelay:
    def test_normalizes_framing(self):
        """Test that CRLF and missing spaces after data: are normalized."""
        relay = RewriteLineRelay()
        output = _run(relay, b'data:{"a":1}\r\n\r\ndata:  {"b":2}\r\n\r\ndata:[DONE]\r\n\r\n')

        assert output == [b'data: {"a":1}\n\n', b'data: {"b":2}\n\n', DONE_EVENT]

    def test_each_data_line_is_an_event(self):
        """Test that data lines without blank separators still become events."""
        relay = RewriteLineRelay()
        output = _run(relay, b"data: one\ndata: two\n")
        assert output == [b"data: one\n\n", b"data: two\n\n", DONE_EVENT]

    def test_factory(self):
        """Test adapter selection."""
        assert isinstance(make_line_relay("rewrite"), RewriteLineRelay)
        assert type(make_line_relay("none")) is SSELineRelay


async def _chunks(*parts, error=None):
    for part in parts:
        yield part
    if error is not None:
        raise error


def _relay(handler, capacity=25):
    pool_manager = ConnectionPoolManager(transport=httpx.MockTransport(handler))
    limiter = ConcurrencyLimiter(default_capacity=capacity)
    return StreamingRelay(pool_manager, limiter), limiter, pool_manager


async def _collect(response):
    return [chunk async for chunk in response.body_iterator]


@pytest.mark.asyncio
async def test_open_relays_stream(provider_factory, upstream):
    """Test a successful stream is relayed with exactly one terminator."""
    recorder = upstream(
        lambda r: httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content=_chunks(b'data: {"c": "he', b'llo"}\n\n', b"data: [DONE]\n\n"),
        )
    )
    relay, limiter, pools = _relay(recorder)

    response = await relay.open("openrouter", provider_factory(), b'{"stream": true}', "sk-or-test")

    assert response.media_type == "text/event-stream"
    assert response.headers["cache-control"] == "no-cache"
    assert recorder.requests[0].headers["Accept"] == "text/event-stream"
    assert recorder.requests[0].headers["Authorization"] == "Bearer sk-or-test"
    # Permit is held while the stream is open
    assert limiter.get_stats("openrouter")["available"] == 24

    output = await _collect(response)

    assert output == [b'data: {"c": "hello"}\n\n', DONE_EVENT]
    assert limiter.get_stats("openrouter")["available"] == 25
    await pools.close_all()


@pytest.mark.asyncio
async def test_open_adds_missing_terminator(provider_factory):
    """Test that a stream without [DONE] is closed with one."""
    relay, limiter, pools = _relay(
        lambda r: httpx.Response(200, content=_chunks(b"data: x\n\n"))
    )

    response = await relay.open("openrouter", provider_factory(), b"{}", "k")
    output = await _collect(response)

    assert b"".join(output).endswith(DONE_EVENT)
    assert b"".join(output).count(b"[DONE]") == 1
    await pools.close_all()


@pytest.mark.asyncio
async def test_open_empty_stream(provider_factory):
    """Test that an empty upstream body yields just the terminator."""
    relay, limiter, pools = _relay(lambda r: httpx.Response(200, content=b""))

    response = await relay.open("openrouter", provider_factory(), b"{}", "k")

    assert await _collect(response) == [DONE_EVENT]
    assert limiter.get_stats("openrouter")["available"] == 25
    await pools.close_all()


@pytest.mark.asyncio
async def test_upstream_error_status_before_commit(provider_factory):
    """Test that an error status raises before any stream is returned."""
    relay, limiter, pools = _relay(
        lambda r: httpx.Response(500, json={"error": {"message": "boom"}})
    )

    with pytest.raises(UpstreamError) as exc_info:
        await relay.open("openrouter", provider_factory(), b"{}", "k")

    assert exc_info.value.status_code == 500
    assert b"boom" in exc_info.value.body
    assert limiter.get_stats("openrouter")["available"] == 25
    await pools.close_all()


@pytest.mark.asyncio
async def test_streaming_is_not_retried(provider_factory, upstream):
    """Test that a retryable status on a stream is surfaced after one attempt."""
    recorder = upstream(lambda r: httpx.Response(503))
    relay, limiter, pools = _relay(recorder)

    with pytest.raises(UpstreamError) as exc_info:
        await relay.open("openrouter", provider_factory(max_retries=3), b"{}", "k")

    assert exc_info.value.client_status == 503
    assert len(recorder.requests) == 1
    await pools.close_all()


@pytest.mark.asyncio
async def test_connect_failure_before_commit(provider_factory):
    """Test that a network failure opening the stream maps to 502."""

    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    relay, limiter, pools = _relay(handler)

    with pytest.raises(UpstreamError) as exc_info:
        await relay.open("openrouter", provider_factory(), b"{}", "k")

    assert exc_info.value.client_status == 502
    assert limiter.get_stats("openrouter")["available"] == 25
    await pools.close_all()


@pytest.mark.asyncio
async def test_failure_before_first_event(provider_factory):
    """Test that a stream dying before its first chunk is still a JSON-able error."""
    relay, limiter, pools = _relay(
        lambda r: httpx.Response(200, content=_chunks(error=httpx.ReadError("reset")))
    )

    with pytest.raises(UpstreamError) as exc_info:
        await relay.open("openrouter", provider_factory(), b"{}", "k")

    assert exc_info.value.client_status == 502
    assert limiter.get_stats("openrouter")["available"] == 25
    await pools.close_all()


@pytest.mark.asyncio
async def test_mid_stream_failure_cuts_stream(provider_factory):
    """Test that a failure after the first event ends the stream without [DONE]."""
    relay, limiter, pools = _relay(
        lambda r: httpx.Response(
            200, content=_chunks(b"data: a\n\n", error=httpx.ReadError("reset"))
        )
    )

    response = await relay.open("openrouter", provider_factory(), b"{}", "k")
    output = await _collect(response)

    assert output == [b"data: a\n\n"]
    assert limiter.get_stats("openrouter")["available"] == 25
    await pools.close_all()


@pytest.mark.asyncio
async def test_rewrite_adapter_applied(provider_factory):
    """Test that providers with streaming_adapter=rewrite get normalized framing."""
    relay, limiter, pools = _relay(
        lambda r: httpx.Response(200, content=_chunks(b"data:x\r\n\r\ndata:[DONE]\r\n\r\n"))
    )

    response = await relay.open(
        "openrouter", provider_factory(streaming_adapter="rewrite"), b"{}", "k"
    )

    assert await _collect(response) == [b"data: x\n\n", DONE_EVENT]
    await pools.close_all()


@pytest.mark.asyncio
async def test_background_close_is_idempotent(provider_factory):
    """Test that the response's background task and the relay both closing is safe."""
    relay, limiter, pools = _relay(lambda r: httpx.Response(200, content=_chunks(b"data: x\n\n")))

    response = await relay.open("openrouter", provider_factory(), b"{}", "k")
    await _collect(response)
    await response.background()

    assert limiter.get_stats("openrouter")["available"] == 25
    await pools.close_all()


@pytest.mark.asyncio
async def test_open_shares_one_timeout_budget(provider_factory):
    """Test that slow headers plus a slow first chunk exceed one timeout together."""

    async def slow_chunks():
        await asyncio.sleep(0.35)
        yield b"data: x\n\n"

    async def handler(request):
        await asyncio.sleep(0.35)
        return httpx.Response(200, content=slow_chunks())

    relay, limiter, pools = _relay(handler)

    with pytest.raises(UpstreamError) as exc_info:
        await relay.open("openrouter", provider_factory(default_timeout="500ms"), b"{}", "k")

    assert exc_info.value.client_status == 504
    assert limiter.get_stats("openrouter")["available"] == 25
    await pools.close_all()
