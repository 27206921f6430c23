"""Model context lengths and compaction threshold maths.

Compaction thresholds are configured as fractions of the active model's
context window. This module knows the context length of common
``provider/model`` pairs and converts a fraction into an absolute character
budget using a conservative 3 characters per token.

Example:
    >>> from mnemo.config.model_contexts import get_model_context_length
    >>> get_model_context_length("zai", "glm-4.6")
    200000
    >>> calculate_conversation_threshold("zai", "glm-4.6", 0.5)
    300000
"""

from __future__ import annotations


# =============================================================================
# Constants
# =============================================================================

DEFAULT_CONTEXT_LENGTH = 65_536
"""Context length assumed for models missing from the table."""

CHARS_PER_TOKEN = 3
"""Conservative characters-per-token ratio used for thresholds."""

MIN_MESSAGE_THRESHOLD = 1_000
"""Fallback per-message threshold when the computed value is not positive."""

MIN_CONVERSATION_THRESHOLD = 10_000
"""Fallback conversation threshold when the computed value is not positive."""

MODEL_CONTEXTS: dict[str, int] = {
    # Z.AI
    "zai/glm-4.6": 200_000,
    "zai/glm-4.5": 128_000,
    "zai/glm-4.5-air": 128_000,
    "zai/glm-4.5v": 64_000,
    # OpenRouter
    "openrouter/anthropic/claude-3.5-sonnet": 200_000,
    "openrouter/anthropic/claude-sonnet-4": 200_000,
    "openrouter/deepseek/deepseek-chat-v3-0324": 163_840,
    "openrouter/qwen/qwen3-30b-a3b-instruct-2507": 262_144,
    "openrouter/qwen/qwen2.5-vl-32b-instruct": 128_000,
    "openrouter/openai/gpt-4o": 128_000,
    "openrouter/openai/gpt-4o-mini": 128_000,
    "openrouter/google/gemini-2.5-pro": 1_048_576,
    "openrouter/meta-llama/llama-3.1-70b-instruct": 131_072,
    # Mock provider used by tests and offline runs
    "mock/mock-model": 32_768,
}


def _lookup_key(provider: str, model: str) -> str:
    return f"{provider.strip().lower()}/{model.strip().lower()}"


def get_model_context_length(provider: str, model: str) -> int:
    """Return the context length in tokens for a provider/model pair.

    Lookup is case-insensitive. Unknown pairs return DEFAULT_CONTEXT_LENGTH.

    Args:
        provider: Provider key (e.g., "openrouter", "zai").
        model: Model name as the provider spells it.

    Returns:
        Context length in tokens.
    """
    length = MODEL_CONTEXTS.get(_lookup_key(provider or "", model or ""), 0)
    if length > 0:
        return length
    return DEFAULT_CONTEXT_LENGTH


def get_all_model_contexts() -> dict[str, int]:
    """Return a copy of the known model context table."""
    return dict(MODEL_CONTEXTS)


def calculate_message_threshold(provider: str, model: str, percent: float) -> int:
    """Absolute character threshold for compacting a single message.

    Args:
        provider: Active provider key.
        model: Active model name.
        percent: Fraction of the context window (e.g., 0.02).

    Returns:
        Threshold in characters, at least MIN_MESSAGE_THRESHOLD when the
        computed value is not positive.
    """
    chars = get_model_context_length(provider, model) * CHARS_PER_TOKEN
    threshold = int(chars * percent)
    if threshold <= 0:
        return MIN_MESSAGE_THRESHOLD
    return threshold


def calculate_conversation_threshold(provider: str, model: str, percent: float) -> int:
    """Absolute character threshold for compacting the whole conversation.

    Args:
        provider: Active provider key.
        model: Active model name.
        percent: Fraction of the context window (e.g., 0.80).

    Returns:
        Threshold in characters, at least MIN_CONVERSATION_THRESHOLD when
        the computed value is not positive.
    """
    chars = get_model_context_length(provider, model) * CHARS_PER_TOKEN
    threshold = int(chars * percent)
    if threshold <= 0:
        return MIN_CONVERSATION_THRESHOLD
    return threshold


__all__ = [
    "DEFAULT_CONTEXT_LENGTH",
    "CHARS_PER_TOKEN",
    "MIN_MESSAGE_THRESHOLD",
    "MIN_CONVERSATION_THRESHOLD",
    "MODEL_CONTEXTS",
    "get_model_context_length",
    "get_all_model_contexts",
    "calculate_message_threshold",
    "calculate_conversation_threshold",
]
