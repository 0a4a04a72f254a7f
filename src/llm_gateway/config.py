"""YAML configuration for the LLM gateway.

Settings come from three layers:

    Environment Variables > YAML > Defaults

Example YAML configuration (llm_gateway.yaml):

    gateway:
      provider: anthropic
      fallback_provider: openai
      embed_provider: openai
      providers:
        openai:
          api_key: ${OPENAI_API_KEY}
          chat_model: gpt-4-turbo-preview
        anthropic:
          api_key: ${ANTHROPIC_API_KEY}
          timeout_seconds: 60
      tracing:
        project: compilar-v0.5
      circuit_breaker:
        enabled: true
        failure_threshold: 5

Credentials are best kept in the environment (or a ``.env`` file, loaded
with python-dotenv) and referenced with ``${VAR}`` if needed.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

KNOWN_PROVIDERS = ("openai", "anthropic")

_TRUTHY = ("true", "1", "yes")


# =============================================================================
# Configuration Models
# =============================================================================


class ProviderSettings(BaseModel):
    """Connection settings for one provider adapter."""

    api_key: Optional[str] = None
    chat_model: Optional[str] = None
    embed_model: Optional[str] = None
    base_url: Optional[str] = None
    timeout_seconds: float = Field(default=120.0, gt=0)

    def models(self) -> Dict[str, Optional[str]]:
        """Model overrides keyed by task name."""
        return {"chat": self.chat_model, "embed": self.embed_model}


class TracingSettings(BaseModel):
    """LangSmith tracing settings."""

    enabled: bool = False
    api_key: Optional[str] = None
    project: str = "compilar-v0.5"
    endpoint: str = "https://api.smith.langchain.com"
    output_char_limit: int = Field(default=500, ge=1)
    message_char_limit: int = Field(default=1000, ge=1)


class CircuitBreakerSettings(BaseModel):
    """Per-provider circuit breaker settings (off by default)."""

    enabled: bool = False
    failure_threshold: int = Field(default=5, ge=1)
    success_threshold: int = Field(default=3, ge=1)
    timeout_seconds: float = Field(default=60.0, gt=0)

    def breaker_kwargs(self) -> Dict[str, Any]:
        return {
            "failure_threshold": self.failure_threshold,
            "success_threshold": self.success_threshold,
            "timeout_seconds": self.timeout_seconds,
        }


class GatewayConfig(BaseModel):
    """Root gateway configuration."""

    provider: str = "anthropic"
    fallback_provider: Optional[str] = None
    embed_provider: str = "openai"
    providers: Dict[str, ProviderSettings] = Field(default_factory=dict)
    tracing: TracingSettings = Field(default_factory=TracingSettings)
    circuit_breaker: CircuitBreakerSettings = Field(default_factory=CircuitBreakerSettings)

    @field_validator("provider", "embed_provider")
    @classmethod
    def validate_provider_name(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in KNOWN_PROVIDERS:
            raise ValueError(f"invalid provider '{v}', must be one of {KNOWN_PROVIDERS}")
        return v

    @field_validator("fallback_provider")
    @classmethod
    def validate_fallback_name(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        v = v.strip().lower()
        if v not in KNOWN_PROVIDERS:
            raise ValueError(f"invalid provider '{v}', must be one of {KNOWN_PROVIDERS}")
        return v

    @model_validator(mode="after")
    def ensure_known_providers(self) -> "GatewayConfig":
        """Ensure every known provider has a settings entry."""
        for name in KNOWN_PROVIDERS:
            if name not in self.providers:
                self.providers[name] = ProviderSettings()
        return self

    def provider_settings(self, name: str) -> ProviderSettings:
        return self.providers.get(name) or ProviderSettings()

    def to_yaml(self) -> str:
        """Serialize configuration to YAML, without credentials."""
        data = self.to_dict()
        for settings in data.get("providers", {}).values():
            settings.pop("api_key", None)
        data.get("tracing", {}).pop("api_key", None)
        return yaml.dump({"gateway": data}, default_flow_style=False, sort_keys=False)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _substitute_env_vars(value: Any) -> Any:
    """Recursively substitute ``${VAR_NAME}`` references."""
    if isinstance(value, str):
        for var_name in re.findall(r"\$\{([^}]+)\}", value):
            value = value.replace(f"${{{var_name}}}", os.getenv(var_name, ""))
        return value
    elif isinstance(value, dict):
        return {k: _substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_substitute_env_vars(item) for item in value]
    return value


def load_config(
    config_path: Optional[Path] = None,
    strict: bool = False,
) -> GatewayConfig:
    """Load configuration from a YAML file.

    Args:
        config_path: Path to YAML configuration file. If None, uses defaults.
        strict: If True, raise ValueError on invalid configuration. If False,
                log a warning and fall back to defaults.

    Returns:
        GatewayConfig object

    Raises:
        ValueError: If strict=True and configuration is invalid
    """
    if config_path is None or not config_path.exists():
        return GatewayConfig()

    try:
        with open(config_path, "r") as f:
            raw_config = yaml.safe_load(f)

        if raw_config is None:
            return GatewayConfig()

        raw_config = _substitute_env_vars(raw_config)
        return GatewayConfig(**(raw_config.get("gateway") or {}))

    except yaml.YAMLError as e:
        if strict:
            raise ValueError(f"Invalid YAML: {e}")
        logger.warning(f"Ignoring invalid YAML in {config_path}: {e}")
        return GatewayConfig()
    except Exception as e:
        if strict:
            raise ValueError(f"Configuration error: {e}")
        logger.warning(f"Ignoring invalid configuration in {config_path}: {e}")
        return GatewayConfig()


def _find_config_file() -> Optional[Path]:
    """Find configuration file in standard locations.

    Search order:
    1. LLM_GATEWAY_CONFIG environment variable
    2. ./llm_gateway.yaml (current directory)
    3. ~/.config/llm-gateway/llm_gateway.yaml
    """
    env_path = os.getenv("LLM_GATEWAY_CONFIG")
    if env_path:
        path = Path(env_path)
        if path.exists():
            return path

    cwd_path = Path.cwd() / "llm_gateway.yaml"
    if cwd_path.exists():
        return cwd_path

    home_path = Path.home() / ".config" / "llm-gateway" / "llm_gateway.yaml"
    if home_path.exists():
        return home_path

    return None


def _parse_timeout(value: Optional[str]) -> Optional[float]:
    """Parse LLM_TIMEOUT_SECONDS, ignoring anything but a positive number."""
    if not value:
        return None
    try:
        timeout = float(value)
    except ValueError:
        timeout = 0.0
    if not timeout > 0:
        logger.warning(f"Ignoring invalid LLM_TIMEOUT_SECONDS={value!r}, expected a positive number")
        return None
    return timeout


def _apply_env_overrides(config: GatewayConfig) -> GatewayConfig:
    """Apply environment variable overrides to configuration."""
    config_dict = config.to_dict()
    providers = config_dict.setdefault("providers", {})

    # Provider selection
    for env_var, key in (
        ("LLM_PROVIDER", "provider"),
        ("LLM_FALLBACK_PROVIDER", "fallback_provider"),
        ("LLM_EMBED_PROVIDER", "embed_provider"),
    ):
        value = os.getenv(env_var)
        if value:
            config_dict[key] = value

    # Credentials (always from env when present)
    for name in KNOWN_PROVIDERS:
        api_key = os.getenv(f"{name.upper()}_API_KEY")
        if api_key:
            providers.setdefault(name, {})["api_key"] = api_key

    # Model overrides
    for env_var, name, key in (
        ("OPENAI_CHAT_MODEL", "openai", "chat_model"),
        ("OPENAI_EMBED_MODEL", "openai", "embed_model"),
        ("ANTHROPIC_CHAT_MODEL", "anthropic", "chat_model"),
    ):
        value = os.getenv(env_var)
        if value:
            providers.setdefault(name, {})[key] = value

    timeout = _parse_timeout(os.getenv("LLM_TIMEOUT_SECONDS"))
    if timeout is not None:
        for name in KNOWN_PROVIDERS:
            providers.setdefault(name, {})["timeout_seconds"] = timeout

    # Tracing: a LangSmith key turns tracing on unless LANGSMITH_TRACING says otherwise
    tracing = config_dict.setdefault("tracing", {})
    langsmith_key = os.getenv("LANGSMITH_API_KEY")
    if langsmith_key:
        tracing["api_key"] = langsmith_key
        tracing["enabled"] = True
    project_env = os.getenv("LANGSMITH_PROJECT")
    if project_env:
        tracing["project"] = project_env
    endpoint_env = os.getenv("LANGSMITH_ENDPOINT")
    if endpoint_env:
        tracing["endpoint"] = endpoint_env
    tracing_env = os.getenv("LANGSMITH_TRACING")
    if tracing_env:
        tracing["enabled"] = tracing_env.lower() in _TRUTHY

    breaker_env = os.getenv("LLM_CIRCUIT_BREAKER_ENABLED")
    if breaker_env:
        config_dict.setdefault("circuit_breaker", {})["enabled"] = breaker_env.lower() in _TRUTHY

    return GatewayConfig(**config_dict)


def get_effective_config(
    config_path: Optional[Path] = None,
    use_dotenv: bool = True,
) -> GatewayConfig:
    """Get the effective configuration with all overrides applied.

    Priority: Environment Variables > YAML > Defaults

    Args:
        config_path: Optional explicit path to configuration file.
                    If None, searches standard locations.
        use_dotenv: Load a ``.env`` file into the environment first.
                    Variables already set are not overwritten.

    Returns:
        GatewayConfig with all overrides applied
    """
    if use_dotenv:
        load_dotenv(find_dotenv(usecwd=True))

    if config_path is None:
        config_path = _find_config_file()

    config = load_config(config_path)
    return _apply_env_overrides(config)
