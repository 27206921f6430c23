"""Custom exceptions for the mnemo context memory package.

This module defines the hierarchy of exceptions raised by the compaction
engine, the memory store and the recall/pin tools. All exceptions inherit
from MnemoError, enabling catch-all handling while still allowing callers
to react to specific failure kinds.

Exception Hierarchy:
    MnemoError (base)
    ├── ConfigurationError: Invalid or rejected configuration
    ├── MemoryStoreError: Memory store failures
    │   ├── MemoryNotFoundError: Unknown memory id
    │   ├── PinLimitExceededError: Pin ceiling reached
    │   └── StoreCorruptedError: Backing file unusable (handled internally)
    └── CompactionError: Compaction pipeline failures
        ├── SummarizationError: Empty or failing summary for one turn
        └── DeserializationError: Stored original messages unreadable

Features:
    - Error codes for programmatic handling
    - Context information attached to each exception
    - Structured logging support via to_log_dict method
"""

from typing import Any, Optional


class MnemoError(Exception):
    """Base exception for all mnemo errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        context: Additional context information about the error
        recoverable: Whether the error is potentially recoverable
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
        recoverable: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "MNEMO_ERROR"
        self.context = context or {}
        self.recoverable = recoverable

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"

    def to_log_dict(self) -> dict[str, Any]:
        """Return structured dict for logging.

        Returns:
            Dictionary with error details suitable for structured logging
        """
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.code,
            "message": self.message,
            "recoverable": self.recoverable,
            "context": self.context,
        }


class ConfigurationError(MnemoError):
    """Raised when configuration is invalid or a reload is rejected.

    Attributes:
        config_key: The configuration key that caused the error
        validation_details: Details about why validation failed
    """

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        validation_details: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.pop("context", {}) or {}
        if config_key:
            context["config_key"] = config_key
        if validation_details:
            context["validation_details"] = validation_details
        super().__init__(message, code="CONFIG_ERROR", context=context, **kwargs)
        self.config_key = config_key
        self.validation_details = validation_details


# =============================================================================
# Memory Store Errors
# =============================================================================


class MemoryStoreError(MnemoError):
    """Base exception for memory store errors.

    Attributes:
        memory_id: Identifier of the entry involved, when there is one
    """

    def __init__(
        self,
        message: str,
        memory_id: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.pop("context", {}) or {}
        if memory_id:
            context["memory_id"] = memory_id
        kwargs.setdefault("code", "MEMORY_STORE_ERROR")
        super().__init__(message, context=context, **kwargs)
        self.memory_id = memory_id


class MemoryNotFoundError(MemoryStoreError):
    """Raised when a memory id does not exist in the store."""

    def __init__(self, memory_id: str, **kwargs: Any) -> None:
        super().__init__(
            f"memory not found: {memory_id}",
            memory_id=memory_id,
            code="MEMORY_NOT_FOUND",
            recoverable=True,
            **kwargs,
        )


class PinLimitExceededError(MemoryStoreError):
    """Raised when pinning would exceed the pin ceiling.

    Attributes:
        max_pins: The configured pin ceiling
        pinned_count: Number of entries pinned when the request was rejected
    """

    def __init__(
        self,
        memory_id: str,
        max_pins: int,
        pinned_count: int,
        **kwargs: Any,
    ) -> None:
        context = kwargs.pop("context", {}) or {}
        context["max_pins"] = max_pins
        context["pinned_count"] = pinned_count
        super().__init__(
            f"pin limit reached ({pinned_count}/{max_pins}); unpin a memory first",
            memory_id=memory_id,
            code="PIN_LIMIT_EXCEEDED",
            context=context,
            recoverable=True,
            **kwargs,
        )
        self.max_pins = max_pins
        self.pinned_count = pinned_count


class StoreCorruptedError(MemoryStoreError):
    """Raised when the backing database file is unusable.

    Only raised and caught inside the store while it opens; callers never
    see it because the store recovers or recreates the file.

    Attributes:
        path: Path of the backing database file
        reason: What the health check found
    """

    def __init__(self, path: str, reason: str, **kwargs: Any) -> None:
        context = kwargs.pop("context", {}) or {}
        context["path"] = path
        context["reason"] = reason
        super().__init__(
            f"memory store at {path} is corrupted: {reason}",
            code="STORE_CORRUPTED",
            context=context,
            recoverable=True,
            **kwargs,
        )
        self.path = path
        self.reason = reason


# =============================================================================
# Compaction Errors
# =============================================================================


class CompactionError(MnemoError):
    """Base exception for compaction errors.

    Attributes:
        turn_range: Inclusive (start, end) message indices of the turn
    """

    def __init__(
        self,
        message: str,
        turn_range: Optional[tuple[int, int]] = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.pop("context", {}) or {}
        if turn_range is not None:
            context["turn_range"] = list(turn_range)
        kwargs.setdefault("code", "COMPACTION_ERROR")
        super().__init__(message, context=context, **kwargs)
        self.turn_range = turn_range


class SummarizationError(CompactionError):
    """Raised when the summarizer fails or returns nothing usable."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("recoverable", True)
        super().__init__(message, code="SUMMARIZATION_FAILED", **kwargs)


class DeserializationError(CompactionError):
    """Raised when stored original messages cannot be decoded.

    Attributes:
        memory_id: Entry whose blob failed to decode
    """

    def __init__(self, message: str, memory_id: Optional[str] = None, **kwargs: Any) -> None:
        context = kwargs.pop("context", {}) or {}
        if memory_id:
            context["memory_id"] = memory_id
        super().__init__(
            message,
            code="DESERIALIZATION_FAILED",
            context=context,
            recoverable=True,
            **kwargs,
        )
        self.memory_id = memory_id


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
