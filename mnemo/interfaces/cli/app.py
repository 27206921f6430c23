"""mnemo CLI application.

Command-line tools for inspecting and curating a memory store written by
the memory context profile.

Commands:
    stats: Show entry totals and the most recently accessed memories
    events: Show recent compaction events
    show: Show one memory entry
    pin: Pin or unpin a memory

Usage:
    mnemo stats --limit 10
    mnemo events --store data/memory/memory.db
    mnemo show mem-1718000000000000000-0a1b
    mnemo pin mem-1718000000000000000-0a1b --unpin

Example:
    $ python -m mnemo.interfaces.cli stats
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

import click

from mnemo import __version__
from mnemo.config import get_settings
from mnemo.core.exceptions import MnemoError
from mnemo.memory.store import MemoryStore
from mnemo.state.conversation import messages_from_json
from mnemo.state.events import datetime_to_iso


# =============================================================================
# Module Logger
# =============================================================================

logger = logging.getLogger(__name__)


# =============================================================================
# Output Helpers
# =============================================================================

COLORS = {
    "reset": "\033[0m",
    "bold": "\033[1m",
    "dim": "\033[2m",
    "red": "\033[31m",
    "green": "\033[32m",
    "yellow": "\033[33m",
    "cyan": "\033[36m",
}


def colorize(text: str, color: str) -> str:
    """Apply ANSI color to text."""
    if not sys.stdout.isatty():
        return text
    return f"{COLORS.get(color, '')}{text}{COLORS['reset']}"


def _open_store(store_path: Optional[str]) -> MemoryStore:
    path = Path(store_path) if store_path else get_settings().compaction.memory_store_path
    return MemoryStore(path)


def _fail(message: str) -> None:
    click.echo(colorize(f"ERROR: {message}", "red"), err=True)
    raise SystemExit(1)


store_option = click.option(
    "--store",
    "store_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="SQLite memory store (defaults to MNEMO_COMPACTION__MEMORY_STORE_PATH)",
)


# =============================================================================
# CLI Group
# =============================================================================


@click.group()
@click.version_option(version=__version__, prog_name="mnemo")
@click.option("--debug/--no-debug", default=False, help="Enable debug output")
@click.pass_context
def cli(ctx: click.Context, debug: bool) -> None:
    """mnemo - inspect compacted conversation memory."""
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug

    log_level = logging.DEBUG if debug else get_settings().log_level
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@cli.command()
@store_option
@click.option("--limit", default=5, show_default=True, help="Recent entries to list")
def stats(store_path: Optional[str], limit: int) -> None:
    """Show entry totals and recently accessed memories."""
    try:
        with _open_store(store_path) as store:
            result = store.stats(limit)
    except MnemoError as e:
        _fail(e.message)
        return

    click.echo(f"{colorize('Store:', 'bold')} {store.path}")
    click.echo(f"{colorize('Memories:', 'bold')} {result.total}")
    click.echo(f"{colorize('Pinned:', 'bold')} {result.pinned}")
    if not result.entries:
        return
    click.echo()
    for entry in result.entries:
        marker = colorize("*", "yellow") if entry.pinned else " "
        click.echo(f"{marker} {entry.id}  {colorize(datetime_to_iso(entry.last_access), 'dim')}")
        click.echo(f"    {entry.summary}")


@cli.command()
@store_option
@click.option("--limit", default=10, show_default=True, help="Events to list")
def events(store_path: Optional[str], limit: int) -> None:
    """Show recent compaction events, newest first."""
    try:
        with _open_store(store_path) as store:
            history = store.load_compaction_events(limit)
    except MnemoError as e:
        _fail(e.message)
        return

    if not history:
        click.echo(colorize("No compaction events recorded.", "dim"))
        return
    for event in history:
        click.echo(
            f"{datetime_to_iso(event.timestamp)}  "
            f"{event.chars_before} -> {event.chars_after} chars  "
            f"{event.messages_compacted}/{event.messages_considered} turns  "
            f"{event.duration_ms}ms"
        )


@cli.command()
@click.argument("memory_id")
@store_option
def show(memory_id: str, store_path: Optional[str]) -> None:
    """Show one memory entry."""
    try:
        with _open_store(store_path) as store:
            entry = store.get(memory_id)
    except MnemoError as e:
        _fail(e.message)
        return

    restorable = "none"
    if entry.original_messages:
        try:
            restorable = str(len(messages_from_json(entry.original_messages)))
        except ValueError as e:
            logger.warning(f"Memory {memory_id} has undecodable original messages: {e}")
            restorable = "undecodable"

    click.echo(f"{colorize('Memory:', 'bold')} {entry.id}")
    click.echo(f"{colorize('Summary:', 'bold')} {entry.summary}")
    click.echo(f"{colorize('Pinned:', 'bold')} {'yes' if entry.pinned else 'no'}")
    click.echo(f"{colorize('Created:', 'bold')} {datetime_to_iso(entry.created_at)}")
    click.echo(f"{colorize('Last access:', 'bold')} {datetime_to_iso(entry.last_access)}")
    click.echo(f"{colorize('Original messages:', 'bold')} {restorable}")


@cli.command()
@click.argument("memory_id")
@click.option("--unpin", is_flag=True, default=False, help="Remove the pin instead")
@store_option
def pin(memory_id: str, unpin: bool, store_path: Optional[str]) -> None:
    """Pin (or unpin) a memory."""
    max_pins = get_settings().compaction.max_pins
    try:
        with _open_store(store_path) as store:
            entry = store.pin(memory_id, not unpin, max_pins)
            count = store.pinned_count()
    except MnemoError as e:
        _fail(e.message)
        return

    state = colorize("pinned", "green") if entry.pinned else "unpinned"
    click.echo(f"Memory {entry.id} {state} ({count}/{max_pins} pinned)")


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Main entry point for the CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
