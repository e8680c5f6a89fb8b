"""Configuration utilities for the Ollama gateway service."""
from __future__ import annotations

import json
import os
from functools import lru_cache
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_CONTEXT_LIMIT = 4096
# Key in OLLAMA_CONTEXT_LIMITS that sets the limit for unlisted models.
DEFAULT_LIMIT_KEY = "default"

DEFAULT_CONTEXT_LIMITS: Dict[str, int] = {
    "llama2": 4096,
    "llama3": 8192,
    "gemma": 8192,
    "gemma2": 8192,
    "gemma3": 8192,
    "mistral": 8192,
    "codellama": 16384,
    "phi": 2048,
}


def _parse_context_limits(raw_value: Optional[str]) -> Dict[str, int]:
    """Merge a JSON object of ``model -> tokens`` over the built-in table."""

    limits = dict(DEFAULT_CONTEXT_LIMITS)
    if not raw_value:
        return limits
    try:
        parsed = json.loads(raw_value)
        if not isinstance(parsed, dict):
            raise ValueError("Context limits must be a JSON object")
        limits.update({str(key): int(value) for key, value in parsed.items()})
    except (ValueError, TypeError) as exc:
        raise RuntimeError("Invalid OLLAMA_CONTEXT_LIMITS value") from exc
    return limits


def _parse_bool(raw_value: Optional[str], default: bool) -> bool:
    if raw_value is None:
        return default
    return raw_value.strip().lower() in {"1", "true", "yes", "on"}


class Settings(BaseModel):
    """Application settings loaded from environment variables.

    Instances are frozen: the same settings object is shared by every
    request once the process has started.
    """

    model_config = ConfigDict(frozen=True)

    api_key: Optional[str] = None
    ollama_base_url: str = "http://localhost:11434"
    ollama_api_key: Optional[str] = None
    ollama_timeout_ms: int = Field(default=30000, ge=1)
    ollama_max_retries: int = Field(default=3, ge=1)
    default_model: str = "llama2"
    default_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    default_max_tokens: int = Field(default=2048, ge=1, le=32768)
    context_limits: Dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_CONTEXT_LIMITS)
    )
    openai_api_key: Optional[str] = None
    asr_model: str = "whisper-1"
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])
    rate_limit_default: str = "100/15minutes"
    rate_limit_enabled: bool = True
    max_file_size: int = Field(default=10 * 1024 * 1024, ge=1)

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def parse_origins(cls, value: List[str] | str) -> List[str]:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    def context_limit_for(self, model: str) -> int:
        fallback = self.context_limits.get(DEFAULT_LIMIT_KEY, DEFAULT_CONTEXT_LIMIT)
        return self.context_limits.get(model, fallback)

    @classmethod
    def from_env(cls) -> "Settings":
        data = {
            "api_key": os.getenv("GATEWAY_API_KEY") or os.getenv("API_KEY"),
            "ollama_base_url": os.getenv("OLLAMA_BASE_URL", "http://localhost:11434"),
            "ollama_api_key": os.getenv("OLLAMA_API_KEY"),
            "ollama_timeout_ms": int(os.getenv("OLLAMA_TIMEOUT", "30000")),
            "ollama_max_retries": int(os.getenv("OLLAMA_MAX_RETRIES", "3")),
            "default_model": os.getenv("DEFAULT_MODEL", "llama2"),
            "default_temperature": float(os.getenv("DEFAULT_TEMPERATURE", "0.7")),
            "default_max_tokens": int(os.getenv("DEFAULT_MAX_TOKENS", "2048")),
            "context_limits": _parse_context_limits(os.getenv("OLLAMA_CONTEXT_LIMITS")),
            "openai_api_key": os.getenv("OPENAI_API_KEY"),
            "asr_model": os.getenv("GATEWAY_ASR_MODEL", "whisper-1"),
            "allowed_origins": os.getenv("GATEWAY_ALLOWED_ORIGINS", "*"),
            "rate_limit_default": os.getenv("GATEWAY_RATE_LIMIT", "100/15minutes"),
            "rate_limit_enabled": _parse_bool(
                os.getenv("GATEWAY_RATE_LIMIT_ENABLED"), True
            ),
            "max_file_size": int(os.getenv("MAX_FILE_SIZE", str(10 * 1024 * 1024))),
        }
        return cls(**data)


@lru_cache()
def get_settings() -> Settings:
    """Return cached application settings."""

    settings = Settings.from_env()
    if not settings.api_key:
        raise ValueError(
            "Gateway API key must be provided via GATEWAY_API_KEY or API_KEY"
        )
    return settings
