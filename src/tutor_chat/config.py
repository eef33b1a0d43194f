"""Configuration loader with YAML parsing, env-var interpolation, and Pydantic validation."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])


class StorageConfig(BaseModel):
    account: str = ""  # drive account e-mail / username
    secret: str = ""
    api_url: str = "https://api.pcloud.com"  # EU accounts: https://eapi.pcloud.com
    timeout: float = 30.0
    folder_ready_timeout: float = 10.0
    poll_interval: float = 0.5


class ChatConfig(BaseModel):
    history_window: int = Field(default=20, ge=1)
    default_model: Optional[str] = None
    fallback_providers: list[str] = Field(default_factory=lambda: ["custom"])
    llm_timeout: float = 120.0


class ProviderConfig(BaseModel):
    api_key: str = ""
    base_url: Optional[str] = None


class ModelConfig(BaseModel):
    id: str
    name: str = ""
    display_name: str = ""
    provider: str  # "openai" | "anthropic" | "openrouter" | "deepseek" | "gemini" | "custom"
    model_id: str
    api_key: Optional[str] = None  # overrides the provider key
    base_url: Optional[str] = None
    max_tokens: int = 4000
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    system_prompt: str = "You are a helpful AI assistant."
    is_default: bool = False
    enabled: bool = True
    description: str = ""

    @model_validator(mode="after")
    def _fill_names(self) -> "ModelConfig":
        if not self.name:
            self.name = self.model_id
        if not self.display_name:
            self.display_name = self.name
        return self


class AppConfig(BaseModel):
    log_level: str = "INFO"
    log_format: str = "console"  # "console" | "json"
    server: ServerConfig = Field(default_factory=ServerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    chat: ChatConfig = Field(default_factory=ChatConfig)
    providers: dict[str, ProviderConfig] = Field(default_factory=dict)
    models: list[ModelConfig] = Field(default_factory=list)


_ENV_VAR_PATTERN = re.compile(r"\$\{(\w+)\}")

_PLACEHOLDER_PREFIXES = ("your_", "your-", "changeme", "change-me", "xxx")


def is_configured_secret(value: str | None) -> bool:
    """True when *value* looks like a real credential rather than a placeholder.

    Unresolved ``${VAR}`` references, empty strings and the usual
    ``your_api_key_here`` / ``you@example.com`` template values all count as
    not configured.
    """
    if not value:
        return False
    value = value.strip()
    if not value or _ENV_VAR_PATTERN.search(value):
        return False
    lowered = value.lower()
    if lowered.startswith(_PLACEHOLDER_PREFIXES) or lowered.endswith("@example.com"):
        return False
    return True


def _interpolate_env_vars(text: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""

    def _replace(match: re.Match) -> str:
        value = os.environ.get(match.group(1))
        if value is None:
            return match.group(0)
        return value

    return _ENV_VAR_PATTERN.sub(_replace, text)


def load_config(config_path: str | Path = "config.yaml", env_path: str | Path = ".env") -> AppConfig:
    """Load and validate configuration from YAML file with env-var interpolation."""
    env_file = Path(env_path)
    if env_file.exists():
        load_dotenv(env_file)

    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    raw_text = config_file.read_text(encoding="utf-8")
    data = yaml.safe_load(_interpolate_env_vars(raw_text)) or {}

    return AppConfig(**data)
