"""Configuration module for mnemo.

Usage:
    from mnemo.config import get_settings

    settings = get_settings()
    threshold = settings.compaction.conversation_threshold(
        settings.provider, settings.model
    )
"""

from mnemo.config.settings import (
    MnemoSettings,
    CompactionSettings,
    get_settings,
    reload_settings,
    clear_settings_cache,
    known_providers,
    DEFAULT_PROVIDER,
    DEFAULT_COMPACTION_PROMPT,
    DEFAULT_MAX_PINS,
    PROVIDER_DEFAULTS,
)
from mnemo.config.model_contexts import (
    get_model_context_length,
    get_all_model_contexts,
    calculate_message_threshold,
    calculate_conversation_threshold,
    DEFAULT_CONTEXT_LENGTH,
)

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
    "get_model_context_length",
    "get_all_model_contexts",
    "calculate_message_threshold",
    "calculate_conversation_threshold",
    "DEFAULT_CONTEXT_LENGTH",
]
