"""Request transformation pipeline: parse → filter/rewrite → reserialize.

Each provider declares the top-level request fields it accepts. Anything
else is dropped. The ``cache`` field is then rewritten according to the
provider's cache behavior:

    drop        field removed regardless of type
    openrouter  true → {"type": "random", "max_age": 300}, false → removed,
                object → unchanged
    zai         object → bool (type == "random"), bool → unchanged
    passthrough no rewrite
"""
import copy
import json
import logging
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

import httpx

from skyproxy.config.schema import ProviderConfig
from skyproxy.core.errors import InvalidRequestError, SerializationError

logger = logging.getLogger(__name__)

CACHE_FIELD = "cache"
OPENROUTER_CACHE_MAX_AGE = 300

# Host suffix → provider label, checked in order
KNOWN_PROVIDER_HOSTS = (
    ("openai.com", "openai"),
    ("openrouter.ai", "openrouter"),
    ("z.ai", "zai"),
    ("mistral.ai", "mistral"),
    ("groq.com", "groq"),
    ("cerebras.ai", "cerebras"),
    ("googleapis.com", "google"),
    ("anthropic.com", "anthropic"),
)


class CacheBehavior(str, Enum):
    """How a provider treats the ``cache`` request field."""
    DROP = "drop"
    OPENROUTER = "openrouter"
    ZAI = "zai"
    PASSTHROUGH = "passthrough"


_LABEL_CACHE_BEHAVIOR = {
    "openai": CacheBehavior.DROP,
    "openrouter": CacheBehavior.OPENROUTER,
    "zai": CacheBehavior.ZAI,
}


def _host_matches(host: str, suffix: str) -> bool:
    return host == suffix or host.endswith("." + suffix)


def provider_label(base_url: str) -> str:
    """Short provider label derived from the base URL host, for logs and metrics."""
    try:
        host = httpx.URL(base_url).host.lower()
    except (httpx.InvalidURL, TypeError):
        return "unknown"
    for suffix, label in KNOWN_PROVIDER_HOSTS:
        if _host_matches(host, suffix):
            return label
    return "unknown"


def resolve_cache_behavior(provider_config: ProviderConfig) -> CacheBehavior:
    """Cache behavior declared by the provider, else inferred from its host."""
    if provider_config.cache_behavior:
        return CacheBehavior(provider_config.cache_behavior)
    label = provider_label(provider_config.base_url)
    return _LABEL_CACHE_BEHAVIOR.get(label, CacheBehavior.PASSTHROUGH)


def parse_request_body(raw: bytes) -> Dict[str, Any]:
    """Decode and validate an incoming chat completion request body.

    Only ``model`` (non-empty string) and ``messages`` (list) are checked;
    message items are passed through as-is.

    Raises:
        InvalidRequestError: Body is not UTF-8 JSON or misses required fields
    """
    try:
        parsed = json.loads(raw.decode("utf-8") if isinstance(raw, bytes) else raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise InvalidRequestError(f"Invalid JSON in request body: {e}") from e

    if not isinstance(parsed, dict):
        raise InvalidRequestError("Invalid JSON in request body: expected an object")

    model = parsed.get("model")
    if not isinstance(model, str) or not model:
        raise InvalidRequestError("Request must contain 'model' field (string)")

    if not isinstance(parsed.get("messages"), list):
        raise InvalidRequestError("Request must contain 'messages' field (array)")

    return parsed


def apply_capability_filter(request: Dict[str, Any], allowed_fields: Iterable[str]) -> List[str]:
    """Remove top-level fields the provider does not accept, in place.

    Returns:
        Names of the dropped fields
    """
    allowed = set(allowed_fields)
    dropped = [field for field in request if field not in allowed]
    for field in dropped:
        del request[field]
    return dropped


def _rewrite_cache_field(request: Dict[str, Any], behavior: CacheBehavior) -> Optional[str]:
    """Apply the cache rewrite in place. Returns a description of the change, if any."""
    if CACHE_FIELD not in request:
        return None
    value = request[CACHE_FIELD]

    if behavior == CacheBehavior.DROP:
        del request[CACHE_FIELD]
        return "dropped"

    if behavior == CacheBehavior.OPENROUTER:
        if isinstance(value, bool):
            if value:
                request[CACHE_FIELD] = {"type": "random", "max_age": OPENROUTER_CACHE_MAX_AGE}
                return "bool true → object"
            del request[CACHE_FIELD]
            return "bool false → dropped"
        return None

    if behavior == CacheBehavior.ZAI:
        if isinstance(value, dict):
            request[CACHE_FIELD] = value.get("type") == "random"
            return f"object → {str(request[CACHE_FIELD]).lower()}"
        return None

    return None


def transform_request(
    request: Dict[str, Any],
    provider_config: ProviderConfig,
    log: Optional[logging.Logger] = None,
) -> Dict[str, Any]:
    """Produce the provider-specific copy of a request.

    The input is never mutated.

    Args:
        request: Parsed client request
        provider_config: Target provider configuration
        log: Logger receiving debug-level drop/rewrite diagnostics

    Returns:
        Transformed request
    """
    log = log or logger
    transformed = copy.deepcopy(request)

    for field in apply_capability_filter(transformed, provider_config.allowed_fields):
        log.debug(
            f"Dropped field '{field}' for provider (not supported)",
            extra={"fields": {"field": field, "base_url": provider_config.base_url}},
        )

    behavior = resolve_cache_behavior(provider_config)
    change = _rewrite_cache_field(transformed, behavior)
    if change:
        log.debug(
            f"Rewrote field '{CACHE_FIELD}': {change}",
            extra={"fields": {"cache_behavior": behavior.value}},
        )

    return transformed


def serialize_request(request: Dict[str, Any]) -> bytes:
    """Encode a request for upstream, verifying it decodes back.

    Raises:
        SerializationError: If the request is not JSON-serializable
    """
    try:
        encoded = json.dumps(request, ensure_ascii=False, allow_nan=False)
        json.loads(encoded)
    except (TypeError, ValueError) as e:
        raise SerializationError(f"Failed to serialize request: {e}") from e
    return encoded.encode("utf-8")
