"""OpenAI-compatible chat completions endpoint.

This module provides:
- POST /v1/chat/completions - Routed, transformed and relayed chat completion

Per request: read body (size-limited) → parse → route → resolve credential →
transform → serialize → dispatch (JSON) or relay (event stream). The
client's model alias is echoed in JSON responses.
"""
import json
import logging
import time
import uuid
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response

from skyproxy.app.dependencies import AppState, get_app_state
from skyproxy.app.schemas import ErrorResponse
from skyproxy.config.loader import get_api_key
from skyproxy.core.errors import (
    ProxyError,
    RequestTooLargeError,
    SerializationError,
    UpstreamError,
    UpstreamStatus,
)
from skyproxy.core.http_client import UpstreamResult
from skyproxy.core.router import ResolvedRoute
from skyproxy.core.transformer import parse_request_body, serialize_request, transform_request
from skyproxy.metrics.prometheus import errors_total, request_latency_ms, requests_total

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Chat"])

REQUEST_ID_HEADER = "X-Request-ID"


async def read_body(request: Request, max_bytes: int) -> bytes:
    """Read the request body, aborting once it exceeds max_bytes.

    Raises:
        RequestTooLargeError: Declared or actual size exceeds the limit
    """
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > max_bytes:
        raise RequestTooLargeError(max_bytes)

    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > max_bytes:
            logger.error(
                "Request body too large",
                extra={"fields": {"size": len(body), "max_size": max_bytes}},
            )
            raise RequestTooLargeError(max_bytes)
    return bytes(body)


def build_json_response(result: UpstreamResult, alias: str) -> JSONResponse:
    """Decode the upstream JSON body and echo the client's model alias.

    Raises:
        SerializationError: Upstream body is not valid JSON
    """
    try:
        payload: Any = json.loads(result.body)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise SerializationError(f"Upstream returned invalid JSON: {e}") from e

    if isinstance(payload, dict):
        payload["model"] = alias
    return JSONResponse(content=payload, status_code=result.status_code)


def _record_error(exc: ProxyError, route: Optional[ResolvedRoute]) -> None:
    upstream_status = "none"
    if isinstance(exc, UpstreamError):
        upstream_status = UpstreamStatus.normalize(exc.status_code)
    errors_total.labels(
        provider=route.provider if route else "none",
        error_type=exc.error_type.value,
        upstream_status=upstream_status,
    ).inc()


@router.post(
    "/v1/chat/completions",
    responses={
        400: {"model": ErrorResponse},
        413: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
        504: {"model": ErrorResponse},
    },
)
async def chat_completions(request: Request, state: AppState = Depends(get_app_state)) -> Response:
    """Proxy a chat completion request to the provider its model resolves to."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or f"req_{uuid.uuid4().hex[:16]}"
    start = time.monotonic()
    alias: Optional[str] = None
    route: Optional[ResolvedRoute] = None
    stream = False
    error: Optional[ProxyError] = None

    try:
        raw = await read_body(request, state.max_request_bytes)
        payload = parse_request_body(raw)
        alias = payload["model"]
        stream = payload.get("stream") is True
        logger.info("Incoming request", extra={"fields": {"model": alias, "stream": stream}})

        route = state.router.resolve_route(payload)
        logger.info(
            "Route resolved",
            extra={
                "fields": {
                    "provider": route.provider,
                    "model": route.model,
                    "enable_reasoning": route.enable_reasoning,
                }
            },
        )

        api_key = get_api_key(route.provider_config.api_key_env)
        transformed = transform_request(payload, route.provider_config)
        transformed["model"] = route.model
        body = serialize_request(transformed)
        state.request_logger.trace(
            "Upstream request body",
            request_id=request_id,
            provider=route.provider,
            body=body.decode("utf-8"),
        )

        if stream:
            response: Response = await state.streaming_relay.open(
                route.provider, route.provider_config, body, api_key
            )
        else:
            result = await state.upstream_client.send_request(
                route.provider, route.provider_config, body, api_key
            )
            response = build_json_response(result, alias)
    except ProxyError as e:
        error = e
        _record_error(e, route)
        response = JSONResponse(status_code=e.client_status, content=e.to_payload())

    latency_ms = int((time.monotonic() - start) * 1000)
    provider = route.provider if route else "none"
    outcome = "error" if error else "success"
    requests_total.labels(provider=provider, stream=str(stream).lower(), outcome=outcome).inc()
    request_latency_ms.labels(provider=provider, stream=str(stream).lower()).observe(latency_ms)

    state.request_logger.log_request(
        request_id=request_id,
        model=alias,
        provider=route.provider if route else None,
        upstream_model=route.model if route else None,
        stream=stream,
        outcome=outcome,
        status_code=response.status_code,
        latency_ms=latency_ms,
        error_type=error.error_type.value if error else None,
    )
    if error is not None:
        logger.error(
            "Request processing failed",
            extra={
                "fields": {
                    "request_id": request_id,
                    "error": error.message,
                    "status_code": error.client_status,
                    "error_type": error.error_type.value,
                }
            },
        )

    response.headers[REQUEST_ID_HEADER] = request_id
    return response
