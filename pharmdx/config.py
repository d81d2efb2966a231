"""Runtime settings for the diagnostic pipeline resolved from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


DEFAULT_AI_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_AI_MODEL = "deepseek/deepseek-chat-v3.1"

STANDARD_DISCLAIMER = (
    "This AI-generated analysis is for pharmacist consultation only and does not "
    "replace professional medical diagnosis. Final clinical decisions must always "
    "be made by qualified healthcare professionals."
)


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def _first_env(*names: str) -> Optional[str]:
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    return None


@dataclass(frozen=True)
class Settings:
    """Resolved configuration for the AI adapter, orchestrator and safety checks."""

    ai_base_url: str = DEFAULT_AI_BASE_URL
    ai_api_key: Optional[str] = None
    ai_model: str = DEFAULT_AI_MODEL
    ai_max_tokens: int = 4000
    ai_temperature: float = 0.1
    ai_timeout_seconds: float = 60.0
    ai_max_retries: int = 3
    ai_base_delay: float = 1.0
    ai_max_delay: float = 10.0
    ai_backoff_multiplier: float = 2.0
    max_request_retries: int = 3
    default_confidence: float = 75.0
    safety_max_workers: int = 4
    alert_channel: str = "in_app"
    interaction_api_url: Optional[str] = None
    interaction_timeout: float = 10.0
    prompt_version: str = "v1.0"

    @property
    def model_version(self) -> str:
        _, _, tail = self.ai_model.rpartition("-")
        return tail or self.ai_model


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the active settings derived from the environment."""

    return Settings(
        ai_base_url=os.getenv("PHARMDX_AI_BASE_URL", DEFAULT_AI_BASE_URL),
        ai_api_key=_first_env("PHARMDX_AI_API_KEY", "OPENROUTER_API_KEY", "OPENAI_API_KEY"),
        ai_model=os.getenv("PHARMDX_AI_MODEL", DEFAULT_AI_MODEL),
        ai_max_tokens=_env_int("PHARMDX_AI_MAX_TOKENS", 4000),
        ai_temperature=_env_float("PHARMDX_AI_TEMPERATURE", 0.1),
        ai_timeout_seconds=_env_float("PHARMDX_AI_TIMEOUT_SECONDS", 60.0),
        ai_max_retries=max(0, _env_int("PHARMDX_AI_MAX_RETRIES", 3)),
        ai_base_delay=_env_float("PHARMDX_AI_BASE_DELAY", 1.0),
        ai_max_delay=_env_float("PHARMDX_AI_MAX_DELAY", 10.0),
        ai_backoff_multiplier=_env_float("PHARMDX_AI_BACKOFF_MULTIPLIER", 2.0),
        max_request_retries=max(0, _env_int("PHARMDX_MAX_REQUEST_RETRIES", 3)),
        default_confidence=_env_float("PHARMDX_DEFAULT_CONFIDENCE", 75.0),
        safety_max_workers=max(1, _env_int("PHARMDX_SAFETY_MAX_WORKERS", 4)),
        alert_channel=os.getenv("PHARMDX_ALERT_CHANNEL", "in_app"),
        interaction_api_url=os.getenv("PHARMDX_INTERACTION_API_URL") or None,
        interaction_timeout=_env_float("PHARMDX_INTERACTION_TIMEOUT", 10.0),
    )


__all__ = ["STANDARD_DISCLAIMER", "Settings", "get_settings"]
