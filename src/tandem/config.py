import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_SERVER_ENDPOINT = "http://localhost:3080"

MODEL_ALIASES = {
    "sonnet": "claude-sonnet-4-20250514",
    "opus": "claude-opus-4-20250514",
    "haiku": "claude-3-5-haiku-20241022",
    "4o": "gpt-4o",
    "mini": "gpt-4o-mini",
    "flash": "gemini/gemini-2.5-flash",
    "deepseek": "deepseek/deepseek-chat",
}

CONTEXT_MODES = ("keyword", "embeddings", "none")
TOKEN_COUNTERS = ("chars", "tiktoken")


class ConfigError(Exception):
    pass


def resolve_model_alias(name: str) -> str:
    return MODEL_ALIASES.get(name.lower(), name)


def get_optional_env(name: str, default: str) -> str:
    return os.environ.get(name, default)


def get_bool_env(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def get_int_env(name: str) -> int | None:
    value = os.environ.get(name)
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {value!r}")


def get_json_env(name: str, default: Any) -> Any:
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise ConfigError(f"{name} is not valid JSON: {e}")


def sanitize_server_endpoint(endpoint: str) -> str:
    if not endpoint:
        return DEFAULT_SERVER_ENDPOINT
    return endpoint.strip().rstrip("/")


def sanitize_codebase(codebase: str | None) -> str:
    if not codebase:
        return ""
    codebase = re.sub(r"^https?://", "", codebase)
    return codebase.strip().rstrip("/")


@dataclass
class TandemConfig:
    server_endpoint: str = field(
        default_factory=lambda: sanitize_server_endpoint(
            get_optional_env("TANDEM_SERVER_ENDPOINT", "")
        )
    )
    access_token: str | None = field(
        default_factory=lambda: os.environ.get("TANDEM_ACCESS_TOKEN") or None
    )
    custom_headers: dict[str, str] = field(
        default_factory=lambda: get_json_env("TANDEM_CUSTOM_HEADERS", {})
    )
    codebase: str = field(
        default_factory=lambda: sanitize_codebase(os.environ.get("TANDEM_CODEBASE"))
    )
    model: str = field(
        default_factory=lambda: resolve_model_alias(get_optional_env("TANDEM_MODEL", "gpt-4o"))
    )
    temperature: float = 0.2
    answer_tokens: int = 1000
    use_context: str = field(
        default_factory=lambda: get_optional_env("TANDEM_USE_CONTEXT", "keyword")
    )
    plugins_enabled: bool = field(
        default_factory=lambda: get_bool_env("TANDEM_PLUGINS_ENABLED", False)
    )
    plugins_config: dict[str, Any] = field(
        default_factory=lambda: get_json_env("TANDEM_PLUGINS_CONFIG", {})
    )
    experimental_guardrails: bool = field(
        default_factory=lambda: get_bool_env("TANDEM_EXPERIMENTAL_GUARDRAILS", False)
    )
    experimental_chat_predictions: bool = field(
        default_factory=lambda: get_bool_env("TANDEM_EXPERIMENTAL_CHAT_PREDICTIONS", False)
    )
    experimental_custom_recipes: bool = field(
        default_factory=lambda: get_bool_env("TANDEM_EXPERIMENTAL_CUSTOM_RECIPES", False)
    )
    prompt_token_limit: int | None = field(
        default_factory=lambda: get_int_env("TANDEM_PROVIDER_LIMIT_PROMPT")
    )
    solution_token_limit: int | None = field(
        default_factory=lambda: get_int_env("TANDEM_PROVIDER_LIMIT_SOLUTION")
    )
    token_counter: str = field(
        default_factory=lambda: get_optional_env("TANDEM_TOKEN_COUNTER", "chars")
    )
    idle_interval_s: float = 1.0
    history_path: Path = field(
        default_factory=lambda: Path(
            get_optional_env("TANDEM_HISTORY_PATH", ".tandem/history.json")
        )
    )
    custom_prompts_path: Path = field(
        default_factory=lambda: Path(
            get_optional_env("TANDEM_CUSTOM_PROMPTS_PATH", ".tandem/prompts.json")
        )
    )

    @classmethod
    def from_env(cls, **overrides: Any) -> "TandemConfig":
        config = cls()
        for key, value in overrides.items():
            if value is None:
                continue
            if not hasattr(config, key):
                raise ConfigError(f"Unknown configuration key: {key}")
            setattr(config, key, value)
        config.model = resolve_model_alias(config.model)
        return config

    def validate(self) -> None:
        if self.use_context not in CONTEXT_MODES:
            raise ConfigError(f"use_context must be one of {', '.join(CONTEXT_MODES)}")
        if self.token_counter not in TOKEN_COUNTERS:
            raise ConfigError(f"token_counter must be one of {', '.join(TOKEN_COUNTERS)}")
        if not isinstance(self.custom_headers, dict):
            raise ConfigError("custom_headers must be a JSON object")
        if not isinstance(self.plugins_config, dict):
            raise ConfigError("plugins_config must be a JSON object")
        if self.answer_tokens < 1:
            raise ConfigError("answer_tokens must be at least 1")
        if self.idle_interval_s <= 0:
            raise ConfigError("idle_interval_s must be > 0")
        for name in ("prompt_token_limit", "solution_token_limit"):
            value = getattr(self, name)
            if value is not None and value < 1:
                raise ConfigError(f"{name} must be at least 1 when set")
        if (
            self.prompt_token_limit is not None
            and self.solution_token_limit is not None
            and self.solution_token_limit >= self.prompt_token_limit
        ):
            raise ConfigError("solution_token_limit must be smaller than prompt_token_limit")
        logger.debug("Configuration validated successfully")
