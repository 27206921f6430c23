"""Core building blocks shared across mnemo modules."""

from mnemo.core.exceptions import (
    MnemoError,
    ConfigurationError,
    MemoryStoreError,
    MemoryNotFoundError,
    PinLimitExceededError,
    StoreCorruptedError,
    CompactionError,
    SummarizationError,
    DeserializationError,
)

__all__ = [
    "MnemoError",
    "ConfigurationError",
    "MemoryStoreError",
    "MemoryNotFoundError",
    "PinLimitExceededError",
    "StoreCorruptedError",
    "CompactionError",
    "SummarizationError",
    "DeserializationError",
]
