"""YAML configuration loader for SkyProxy."""
import os
from pathlib import Path
from typing import Dict, Optional, Tuple

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from skyproxy.config.schema import ProvidersConfig, RoutesConfig
from skyproxy.core.errors import ConfigurationError

DEFAULT_CONFIG_DIR = "config"
ROUTES_FILE = "routes.yaml"
PROVIDERS_FILE = "providers.yaml"
DEFAULT_ENV_FILE = ".env"


class ConfigLoader:
    """Load and validate routes.yaml and providers.yaml."""

    def __init__(self, config_dir: Optional[str] = None):
        """
        Args:
            config_dir: Directory holding the YAML files. Defaults to
                $SKYPROXY_CONFIG_DIR, then ./config
        """
        self.config_dir = Path(
            config_dir or os.getenv("SKYPROXY_CONFIG_DIR", DEFAULT_CONFIG_DIR)
        )
        self.routes: Optional[RoutesConfig] = None
        self.providers: Optional[ProvidersConfig] = None

    def _read_yaml(self, filename: str) -> Dict:
        path = self.config_dir / filename
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {path}", config_key=filename)

        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {path}: {e}", config_key=filename) from e

        if not isinstance(raw, dict):
            raise ConfigurationError(f"{path} must contain a mapping", config_key=filename)
        return raw

    def load_routes(self) -> RoutesConfig:
        """Load and validate routes.yaml."""
        raw = self._read_yaml(ROUTES_FILE)
        try:
            self.routes = RoutesConfig(**raw)
        except ValidationError as e:
            raise ConfigurationError(
                f"Configuration validation failed in {ROUTES_FILE}: {e}", config_key=ROUTES_FILE
            ) from e
        return self.routes

    def load_providers(self) -> ProvidersConfig:
        """Load and validate providers.yaml."""
        raw = self._read_yaml(PROVIDERS_FILE)
        try:
            self.providers = ProvidersConfig(**raw)
        except ValidationError as e:
            raise ConfigurationError(
                f"Configuration validation failed in {PROVIDERS_FILE}: {e}",
                config_key=PROVIDERS_FILE,
            ) from e
        return self.providers

    def load(self) -> Tuple[RoutesConfig, ProvidersConfig]:
        """Load both configuration files."""
        return self.load_routes(), self.load_providers()


def load_env_file(env_file: str = DEFAULT_ENV_FILE) -> bool:
    """Load provider credentials from a dotenv file into the environment.

    Variables already set in the environment win over the file. A missing
    file is not an error.

    Returns:
        True if the file existed and was loaded
    """
    if not Path(env_file).is_file():
        return False
    load_dotenv(env_file, override=False)
    return True


def get_api_key(env_var: str) -> str:
    """Read a provider credential from the environment.

    Raises:
        ConfigurationError: If the variable is unset or empty
    """
    value = os.environ.get(env_var)
    if not value:
        raise ConfigurationError(
            f"API key not found: Environment variable '{env_var}' is not set",
            config_key=env_var,
        )
    return value


def credential_status(env_var: str) -> Dict[str, object]:
    """Describe whether a credential is configured, without exposing it."""
    value = os.environ.get(env_var) or ""
    return {
        "configured": bool(value),
        "source": env_var,
        "has_prefix": value.startswith("sk-") or value.startswith("Bearer "),
    }
