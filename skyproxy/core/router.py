"""Model routing: alias → provider + upstream model."""
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from skyproxy.config.schema import ModelSlotConfig, ProviderConfig, ProvidersConfig, RoutesConfig
from skyproxy.core.errors import ErrorType, InvalidRequestError, RoutingError

logger = logging.getLogger(__name__)

DIRECT_MODEL_PATTERN = re.compile(r"^([^:]+):(.+)$")
DEFAULT_SLOT = "default"


@dataclass
class ResolvedRoute:
    """Result of routing a single request."""

    provider: str
    model: str
    provider_config: ProviderConfig
    enable_reasoning: Optional[bool] = None


class Router:
    """Resolves model aliases against the routing and provider tables.

    Resolution order:
    1. ``provider:model`` direct reference (slot table is not consulted)
    2. Slot lookup in routes.yaml
    3. ``default`` slot, if fallback_to_default is enabled
    4. RoutingError (invalid_request_error)
    """

    def __init__(self, routes: RoutesConfig, providers: ProvidersConfig):
        self.routes = routes
        self.providers = providers

    def resolve_route(self, request: Dict[str, Any]) -> ResolvedRoute:
        """Resolve the route for a parsed chat completion request.

        Raises:
            InvalidRequestError: If ``model`` is missing or not a string
            RoutingError: If the alias or provider cannot be resolved
        """
        model = request.get("model")
        if not isinstance(model, str) or not model:
            raise InvalidRequestError("Request must contain 'model' field (string)")

        direct = DIRECT_MODEL_PATTERN.match(model)
        if direct:
            provider, model_name = direct.group(1), direct.group(2)
            return self._resolve_direct(provider, model_name)

        slot = self.routes.model_slots.get(model)
        if slot is not None:
            return self._resolve_slot(model, slot)

        if self.routes.proxy.fallback_to_default:
            default_slot = self.routes.model_slots.get(DEFAULT_SLOT)
            if default_slot is not None:
                logger.warning(
                    f"Unknown model alias '{model}', falling back to '{DEFAULT_SLOT}' slot",
                    extra={"fields": {"alias": model}},
                )
                return self._resolve_slot(DEFAULT_SLOT, default_slot)

        raise RoutingError(
            f"Unknown model alias: {model}. Configure in routes.yaml or enable fallback_to_default.",
            ErrorType.INVALID_REQUEST,
        )

    def _resolve_direct(self, provider: str, model: str) -> ResolvedRoute:
        provider_config = self.providers.providers.get(provider)
        if provider_config is None:
            raise RoutingError(
                f"Unknown provider '{provider}' in direct model reference",
                ErrorType.INVALID_REQUEST,
            )
        return ResolvedRoute(provider=provider, model=model, provider_config=provider_config)

    def _resolve_slot(self, slot_name: str, slot: ModelSlotConfig) -> ResolvedRoute:
        provider_config = self.providers.providers.get(slot.provider)
        if provider_config is None:
            # Routing table points at a provider that was never configured
            raise RoutingError(
                f"Provider '{slot.provider}' configured for slot '{slot_name}' not found in providers.yaml",
                ErrorType.API_ERROR,
            )
        return ResolvedRoute(
            provider=slot.provider,
            model=slot.model,
            provider_config=provider_config,
            enable_reasoning=slot.enable_reasoning,
        )

    def get_model_slots(self) -> List[str]:
        return list(self.routes.model_slots.keys())

    def has_model_slot(self, slot: str) -> bool:
        return slot in self.routes.model_slots
