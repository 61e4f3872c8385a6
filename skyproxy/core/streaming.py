"""Server-Sent Events relay for streaming chat completions.

The upstream response status is checked, and its first chunk read, before
any client-facing headers are committed. Failures up to that point surface
as ordinary JSON errors. After that the stream is relayed line by line and
always ends with exactly one terminator event, unless the upstream fails
mid-stream, in which case the stream is simply cut. The whole pre-commit
phase (connect, headers, first chunk) shares one timeout budget.
"""
import asyncio
import logging
from typing import AsyncIterator, Callable, List, Optional

import httpx
from starlette.background import BackgroundTask
from starlette.responses import StreamingResponse

from skyproxy.config.schema import ProviderConfig
from skyproxy.core.concurrency import ConcurrencyLimiter
from skyproxy.core.errors import UpstreamError
from skyproxy.core.http_client import build_request_headers, build_upstream_url, request_timeout
from skyproxy.core.pool import ConnectionPoolManager
from skyproxy.core.transformer import provider_label
from skyproxy.metrics.prometheus import stream_terminations_total

logger = logging.getLogger(__name__)

DONE_EVENT = b"data: [DONE]\n\n"
TERMINATOR_LINES = (b"data: [DONE]", b"data:[DONE]")

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


class SSELineRelay:
    """Splits an upstream byte stream into SSE lines and re-frames events.

    Non-empty lines accumulate into the current event and are emitted when
    the blank separator line arrives. Terminator lines are never forwarded
    in place: finish() emits a single terminator as the final chunk, using
    the first terminator line the upstream sent, byte for byte, or
    ``data: [DONE]`` if it sent none.
    """

    def __init__(self):
        self._buffer = b""
        self._event: List[bytes] = []
        self._terminator: Optional[bytes] = None
        self.terminators_seen = 0

    @staticmethod
    def is_terminator(line: bytes) -> bool:
        return line.rstrip(b"\r") in TERMINATOR_LINES

    def feed(self, chunk: bytes) -> List[bytes]:
        """Consume a chunk and return the complete events it finished."""
        if not chunk:
            return []
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split(b"\n")
        output: List[bytes] = []
        for line in lines:
            output.extend(self.process_line(line))
        return output

    def finish(self) -> List[bytes]:
        """Flush what is left and append the terminator."""
        output: List[bytes] = []
        if self._buffer:
            output.extend(self.process_line(self._buffer))
            self._buffer = b""
        output.extend(self._flush())
        output.append(self._terminator or DONE_EVENT)
        return output

    def process_line(self, line: bytes) -> List[bytes]:
        if self.is_terminator(line):
            self.terminators_seen += 1
            if self._terminator is None:
                separator = b"\r\n" if line.endswith(b"\r") else b"\n"
                self._terminator = line + b"\n" + separator
            return self._flush()
        if not line.rstrip(b"\r"):
            return self._flush(separator=line + b"\n")
        self._event.append(line + b"\n")
        return []

    def _flush(self, separator: bytes = b"\n") -> List[bytes]:
        if not self._event:
            return []
        event = b"".join(self._event) + separator
        self._event = []
        return [event]


class RewriteLineRelay(SSELineRelay):
    """Relay for upstreams with non-conformant SSE framing.

    CRLF line endings are normalized, ``data:x`` becomes ``data: x``, every
    data line is emitted as its own event and the terminator is always
    ``data: [DONE]``.
    """

    def process_line(self, line: bytes) -> List[bytes]:
        line = line.rstrip(b"\r")
        if self.is_terminator(line):
            self.terminators_seen += 1
            return self._flush()
        if not line:
            return self._flush()
        if line.startswith(b"data:"):
            payload = line[len(b"data:"):].lstrip(b" ")
            self._event.append(b"data: " + payload + b"\n")
            return self._flush()
        self._event.append(line + b"\n")
        return []


def make_line_relay(streaming_adapter: str) -> SSELineRelay:
    if streaming_adapter == "rewrite":
        return RewriteLineRelay()
    return SSELineRelay()


class _StreamSession:
    """Owns the upstream response and the concurrency permit of one stream."""

    def __init__(self, response: httpx.Response, release: Callable[[], None], provider_id: str):
        self.response = response
        self.provider_id = provider_id
        self._release = release
        self._closed = False

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self.response.aclose()
        except httpx.HTTPError as e:
            logger.debug(
                "Error closing upstream stream",
                extra={"fields": {"provider": self.provider_id, "error": str(e)}},
            )
        finally:
            self._release()


class StreamingRelay:
    """Opens upstream event streams and relays them to the client."""

    def __init__(self, pool_manager: ConnectionPoolManager, limiter: ConcurrencyLimiter):
        self.pool_manager = pool_manager
        self.limiter = limiter

    async def open(
        self,
        provider_id: str,
        provider_config: ProviderConfig,
        body: bytes,
        api_key: str,
    ) -> StreamingResponse:
        """Open the upstream stream and return the client response.

        Args:
            provider_id: Provider identifier (concurrency key)
            provider_config: Provider configuration
            body: Serialized request body
            api_key: Provider credential

        Returns:
            StreamingResponse relaying the upstream events

        Raises:
            UpstreamError: Upstream failed before anything was committed
        """
        url = build_upstream_url(provider_config.base_url)
        headers = build_request_headers(provider_config, api_key)
        headers["Accept"] = "text/event-stream"
        timeout_s = provider_config.timeout_ms / 1000.0
        timeout = request_timeout(timeout_s, self.pool_manager.settings.connect_timeout_s)
        client = self.pool_manager.get_client(url)

        release = await self.limiter.acquire(provider_id, provider_config.max_concurrent)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_s

        def remaining() -> float:
            return max(deadline - loop.time(), 0.0)

        response: Optional[httpx.Response] = None
        committed = False
        try:
            request = client.build_request(
                "POST", url, content=body, headers=headers, timeout=timeout
            )
            try:
                response = await asyncio.wait_for(
                    client.send(request, stream=True), timeout=remaining()
                )
            except (asyncio.TimeoutError, httpx.TimeoutException) as e:
                raise UpstreamError("Upstream streaming request timed out", status_code=504) from e
            except httpx.TransportError as e:
                raise UpstreamError(f"Upstream streaming request failed: {e}") from e

            if response.status_code >= 400:
                try:
                    error_body = await asyncio.wait_for(response.aread(), timeout=remaining())
                except (asyncio.TimeoutError, httpx.HTTPError) as e:
                    logger.debug(
                        "Could not read upstream error body",
                        extra={"fields": {"provider": provider_id, "error": str(e)}},
                    )
                    error_body = b""
                raise UpstreamError(
                    f"Upstream streaming failed: {response.status_code}",
                    status_code=response.status_code,
                    body=error_body,
                )

            chunks = response.aiter_bytes()
            try:
                first_chunk = await asyncio.wait_for(chunks.__anext__(), timeout=remaining())
            except StopAsyncIteration:
                first_chunk = b""
            except (asyncio.TimeoutError, httpx.TimeoutException) as e:
                raise UpstreamError("Upstream stream timed out before first event", status_code=504) from e
            except httpx.HTTPError as e:
                raise UpstreamError(f"Upstream stream failed before first event: {e}") from e

            session = _StreamSession(response, release, provider_id)
            relay = make_line_relay(provider_config.streaming_adapter)
            committed = True
        finally:
            if not committed:
                try:
                    if response is not None:
                        await response.aclose()
                finally:
                    release()

        return StreamingResponse(
            self._relay(session, relay, first_chunk, chunks, provider_label(provider_config.base_url)),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
            background=BackgroundTask(session.close),
        )

    async def _relay(
        self,
        session: _StreamSession,
        relay: SSELineRelay,
        first_chunk: bytes,
        chunks: AsyncIterator[bytes],
        label: str,
    ) -> AsyncIterator[bytes]:
        provider_id = session.provider_id
        reason = "done"
        try:
            for event in relay.feed(first_chunk):
                yield event
            async for chunk in chunks:
                for event in relay.feed(chunk):
                    yield event
            for event in relay.finish():
                yield event
            if not relay.terminators_seen:
                reason = "missing_done"
                logger.debug(
                    "Upstream stream ended without terminator",
                    extra={"fields": {"provider": provider_id}},
                )
        except httpx.HTTPError as e:
            reason = "upstream_error"
            logger.error(
                "Streaming failed after response started",
                extra={"fields": {"provider": provider_id, "provider_label": label, "error": str(e)}},
            )
        except asyncio.CancelledError:
            reason = "client_disconnect"
            logger.debug(
                "Client disconnected during streaming",
                extra={"fields": {"provider": provider_id}},
            )
            raise
        finally:
            stream_terminations_total.labels(provider=provider_id, reason=reason).inc()
            await session.close()
