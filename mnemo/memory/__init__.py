"""Durable memory store for compacted conversation segments."""

from mnemo.memory.store import MemoryEntry, MemoryStore, StoreStats

__all__ = ["MemoryEntry", "MemoryStore", "StoreStats"]
