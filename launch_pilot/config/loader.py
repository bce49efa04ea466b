"""
Configuration management and loading.

Handles application settings and environment variables.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from launch_pilot.storage.db import DEFAULT_DB_PATH


class Provider(Enum):
    """OpenAI-compatible completion providers."""
    OPENROUTER = "openrouter"
    GROQ = "groq"


PROVIDER_BASE_URLS = {
    Provider.OPENROUTER: "https://openrouter.ai/api/v1",
    Provider.GROQ: "https://api.groq.com/openai/v1",
}

PROVIDER_KEY_ENV = {
    Provider.OPENROUTER: "OPENROUTER_API_KEY",
    Provider.GROQ: "GROQ_API_KEY",
}


@dataclass(frozen=True)
class AIConfig:
    """Completion client settings."""
    provider: Provider = Provider.OPENROUTER
    default_max_tokens: int = 512
    temperature: float = 0.7

    def __post_init__(self):
        """Validate generation parameters."""
        if self.default_max_tokens <= 0:
            raise ValueError("default_max_tokens must be > 0")
        if not 0 <= self.temperature <= 2:
            raise ValueError("temperature must be between 0 and 2")

    @property
    def base_url(self) -> str:
        return PROVIDER_BASE_URLS[self.provider]

    def api_key(self) -> Optional[str]:
        """Read the provider API key from the environment."""
        return os.environ.get(PROVIDER_KEY_ENV[self.provider])


@dataclass(frozen=True)
class LimitsConfig:
    """Usage gates applied before AI calls."""
    max_input_chars: int = 10000
    free_daily_ideas: int = 3
    free_min_credits: int = 1000
    deep_analysis_surcharge: int = 500
    warn_usage_ratio: float = 0.9

    def __post_init__(self):
        """Validate limit values are positive."""
        for name in ("max_input_chars", "free_daily_ideas", "free_min_credits"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")
        if self.deep_analysis_surcharge < 0:
            raise ValueError("deep_analysis_surcharge must be >= 0")
        if not 0 < self.warn_usage_ratio <= 1:
            raise ValueError("warn_usage_ratio must be in (0, 1]")


@dataclass(frozen=True)
class Settings:
    """Complete application settings."""
    database: str = DEFAULT_DB_PATH
    ai: AIConfig = field(default_factory=AIConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)


_AI_KEYS = {"provider", "default_max_tokens", "temperature"}
_LIMIT_INT_KEYS = {"max_input_chars", "free_daily_ideas", "free_min_credits", "deep_analysis_surcharge"}
_LIMIT_KEYS = _LIMIT_INT_KEYS | {"warn_usage_ratio"}


def load_settings(path: Optional[str] = None) -> Settings:
    """Load and validate settings from a YAML file.

    Every section is optional; omitted values use defaults. Unknown keys
    are rejected so typos never silently fall back to defaults.

    Args:
        path: Path to YAML configuration file, or None for defaults

    Returns:
        Validated Settings object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        return Settings()

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return Settings()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    allowed_top_keys = {'database', 'ai', 'limits'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    database = raw_config.get('database', DEFAULT_DB_PATH)
    if not isinstance(database, str) or not database.strip():
        raise ValueError("'database' must be a non-empty string")

    return Settings(
        database=database,
        ai=_parse_ai_config(raw_config.get('ai') or {}),
        limits=_parse_limits_config(raw_config.get('limits') or {}),
    )


def _check_section(data: Any, path: str, allowed: set) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
    return data


def _parse_ai_config(data: Any) -> AIConfig:
    """Parse and validate the ai section.

    Raises:
        ValueError: If configuration is invalid
    """
    data = _check_section(data, "ai", _AI_KEYS)
    kwargs: Dict[str, Any] = {}

    if 'provider' in data:
        provider = data['provider']
        if not isinstance(provider, str):
            raise ValueError("'provider' in ai must be a string")
        try:
            kwargs['provider'] = Provider(provider.lower())
        except ValueError:
            valid = [p.value for p in Provider]
            raise ValueError(f"'provider' in ai must be one of: {valid}")

    if 'default_max_tokens' in data:
        value = data['default_max_tokens']
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError("'default_max_tokens' in ai must be an integer")
        kwargs['default_max_tokens'] = value

    if 'temperature' in data:
        value = data['temperature']
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError("'temperature' in ai must be a number")
        kwargs['temperature'] = float(value)

    return AIConfig(**kwargs)


def _parse_limits_config(data: Any) -> LimitsConfig:
    """Parse and validate the limits section.

    Raises:
        ValueError: If configuration is invalid
    """
    data = _check_section(data, "limits", _LIMIT_KEYS)
    kwargs: Dict[str, Any] = {}

    for key in _LIMIT_INT_KEYS & data.keys():
        value = data[key]
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"'{key}' in limits must be an integer")
        kwargs[key] = value

    if 'warn_usage_ratio' in data:
        value = data['warn_usage_ratio']
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError("'warn_usage_ratio' in limits must be a number")
        kwargs['warn_usage_ratio'] = float(value)

    return LimitsConfig(**kwargs)
