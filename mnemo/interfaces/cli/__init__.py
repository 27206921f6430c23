"""Command-line interface for inspecting a memory store."""
