"""Pydantic settings for the mnemo context memory package.

This module defines the MnemoSettings class that loads configuration from
environment variables and .env files. It uses pydantic-settings for
automatic environment variable parsing and validation.

Settings Categories:
    - Core: log level and debug mode
    - Model: active provider and model (drives threshold maths)
    - Compaction: thresholds, protected window, summary prompt/model,
      memory store location and pin ceiling

Environment Variables:
    MNEMO_LOG_LEVEL: Logging level (default: INFO)
    MNEMO_PROVIDER: Active LLM provider (default: openrouter)
    MNEMO_MODEL: Active LLM model
    MNEMO_COMPACTION__MESSAGE_PERCENT: Per-message threshold fraction
    MNEMO_COMPACTION__CONVERSATION_PERCENT: Conversation threshold fraction
    MNEMO_COMPACTION__PROTECT_RECENT: Trailing messages never compacted
    MNEMO_COMPACTION__MEMORY_STORE_PATH: SQLite file for memory entries

Usage:
    from mnemo.config.settings import get_settings

    settings = get_settings()
    print(settings.compaction.conversation_percent)
    print(settings.compaction.summary_model_for(settings.provider))
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from mnemo.config.model_contexts import (
    calculate_conversation_threshold,
    calculate_message_threshold,
)


# =============================================================================
# Default Constants
# =============================================================================

DEFAULT_PROVIDER = "openrouter"
"""Provider used when none is configured."""

DEFAULT_COMPACTION_PROMPT = (
    "Summarize the following text in 20 words or fewer. Return only the summary."
)
"""System instruction sent with every summarization request."""

DEFAULT_MAX_PINS = 5
"""Maximum number of simultaneously pinned memories."""

PROVIDER_DEFAULTS: dict[str, dict[str, str]] = {
    "zai": {
        "main": "glm-4.6",
        "summary": "glm-4.5-air",
    },
    "openrouter": {
        "main": "deepseek/deepseek-chat-v3-0324",
        "summary": "qwen/qwen3-30b-a3b-instruct-2507",
    },
    "mock": {
        "main": "mock-model",
        "summary": "mock-summary-model",
    },
}
"""Default main and summary models per known provider."""


def known_providers() -> list[str]:
    """Return the provider keys with built-in defaults."""
    return list(PROVIDER_DEFAULTS)


# =============================================================================
# Nested Settings Models
# =============================================================================


class CompactionSettings(BaseModel):
    """Settings for conversation compaction and the memory store.

    Thresholds are fractions of the active model's context window; the
    absolute character budgets are derived with message_threshold() and
    conversation_threshold().

    Attributes:
        message_percent: Fraction of context allowed for a single message.
        conversation_percent: Fraction of context allowed for the whole
            conversation before compaction fires.
        protect_recent: Number of trailing messages never compacted.
        summary_prompt: System instruction for the summarizer.
        summary_model: Fallback summary model.
        provider_summary_models: Per-provider summary model overrides.
        memory_store_path: SQLite file holding memory entries.
        max_pins: Pin ceiling.
    """

    message_percent: float = Field(
        default=0.02,
        gt=0.0,
        le=0.10,
        description="Per-message threshold as a fraction of the context window"
    )
    conversation_percent: float = Field(
        default=0.80,
        gt=0.0,
        le=0.80,
        description="Conversation threshold as a fraction of the context window"
    )
    protect_recent: int = Field(
        default=2,
        ge=0,
        description="Trailing messages that are never compacted"
    )
    summary_prompt: str = Field(
        default=DEFAULT_COMPACTION_PROMPT,
        description="System instruction for summarization"
    )
    summary_model: str = Field(
        default=PROVIDER_DEFAULTS[DEFAULT_PROVIDER]["summary"],
        description="Fallback model used for summarization"
    )
    provider_summary_models: dict[str, str] = Field(
        default_factory=dict,
        description="Per-provider summary model overrides"
    )
    memory_store_path: Path = Field(
        default=Path("data/memory/memory.db"),
        description="SQLite file for memory entries and compaction events"
    )
    max_pins: int = Field(
        default=DEFAULT_MAX_PINS,
        ge=1,
        description="Maximum number of pinned memories"
    )

    @field_validator("memory_store_path", mode="before")
    @classmethod
    def convert_to_path(cls, v: Any) -> Path:
        """Convert string paths to Path objects."""
        if isinstance(v, str):
            return Path(v)
        return v

    @model_validator(mode="after")
    def check_percent_order(self) -> "CompactionSettings":
        """Reject a per-message fraction larger than the conversation fraction."""
        if self.message_percent > self.conversation_percent:
            raise ValueError(
                f"message_percent ({self.message_percent}) cannot exceed "
                f"conversation_percent ({self.conversation_percent})"
            )
        return self

    def summary_model_for(self, provider: str) -> str:
        """Resolve the summary model for a provider.

        Order: explicit per-provider override, built-in provider default,
        then the generic summary_model.

        Args:
            provider: Provider key (case-insensitive).

        Returns:
            Model name to use for summarization.
        """
        key = (provider or "").strip().lower()
        override = self.provider_summary_models.get(key, "").strip()
        if override:
            return override
        if key in PROVIDER_DEFAULTS:
            return PROVIDER_DEFAULTS[key]["summary"]
        return self.summary_model

    def message_threshold(self, provider: str, model: str) -> int:
        """Absolute per-message character threshold for a provider/model."""
        return calculate_message_threshold(provider, model, self.message_percent)

    def conversation_threshold(self, provider: str, model: str) -> int:
        """Absolute conversation character threshold for a provider/model."""
        return calculate_conversation_threshold(provider, model, self.conversation_percent)


# =============================================================================
# Main Settings Class
# =============================================================================


class MnemoSettings(BaseSettings):
    """Main settings class for mnemo configuration.

    Environment variables use the MNEMO_ prefix; nested groups use a double
    underscore (MNEMO_COMPACTION__PROTECT_RECENT=4).

    Attributes:
        debug: Enable debug mode for verbose logging.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        provider: Active LLM provider.
        model: Active LLM model.
        compaction: Compaction and memory store configuration.
    """

    model_config = SettingsConfigDict(
        env_prefix="MNEMO_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    debug: bool = Field(
        default=False,
        description="Enable debug mode"
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )
    provider: str = Field(
        default=DEFAULT_PROVIDER,
        description="Active LLM provider"
    )
    model: str = Field(
        default=PROVIDER_DEFAULTS[DEFAULT_PROVIDER]["main"],
        description="Active LLM model"
    )
    compaction: CompactionSettings = Field(
        default_factory=CompactionSettings,
        description="Compaction configuration"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        normalized = v.upper()
        if normalized not in valid_levels:
            raise ValueError(
                f"Invalid log level '{v}'. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        return normalized

    @field_validator("provider")
    @classmethod
    def normalize_provider(cls, v: str) -> str:
        """Providers are compared lower-case everywhere."""
        return v.strip().lower()

    def to_dict(self) -> dict[str, Any]:
        """Export settings as a JSON-friendly dictionary."""
        return self.model_dump(mode="json")


# =============================================================================
# Singleton Pattern
# =============================================================================

_settings_instance: Optional[MnemoSettings] = None


def get_settings() -> MnemoSettings:
    """Get the cached settings instance.

    The settings are created once and cached for subsequent calls.

    Returns:
        The cached MnemoSettings instance.
    """
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = MnemoSettings()
    return _settings_instance


def reload_settings() -> MnemoSettings:
    """Reload settings from environment, clearing the cache.

    Returns:
        A fresh MnemoSettings instance.
    """
    global _settings_instance
    _settings_instance = MnemoSettings()
    return _settings_instance


def clear_settings_cache() -> None:
    """Clear the settings cache without creating a new instance."""
    global _settings_instance
    _settings_instance = None


__all__ = [
    "MnemoSettings",
    "CompactionSettings",
    "get_settings",
    "reload_settings",
    "clear_settings_cache",
    "known_providers",
    "DEFAULT_PROVIDER",
    "DEFAULT_COMPACTION_PROMPT",
    "DEFAULT_MAX_PINS",
    "PROVIDER_DEFAULTS",
]
