"""Companion Link CLI: chat from the terminal, inspect history, run the relay."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from companion.config import Settings, get_settings

console = Console()


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """Companion Link: streaming chat and realtime voice relay."""
    level = logging.DEBUG if verbose else get_settings().log_level.upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )


def _build_chat(settings: Settings):
    from companion.chat import (
        ChatDispatcher,
        ConversationMemory,
        GatewaySummarizer,
        JsonFileStorage,
        MessageLog,
    )

    storage = JsonFileStorage(settings.storage_path)
    log = MessageLog(
        storage,
        max_stored=settings.max_stored_messages,
        undo_window=settings.undo_window_seconds,
    )
    memory = ConversationMemory(
        storage,
        summarizer=GatewaySummarizer(settings.gateway_chat_url, settings.gateway_key),
    )
    return log, memory, ChatDispatcher(log, memory, settings=settings)


# ======================================================================
# CHAT: talk to the companion
# ======================================================================
@main.command()
@click.argument("message", required=False)
@click.option("--image", default=None, help="Image URL (or data: URL) to attach")
def chat(message: str | None, image: str | None) -> None:
    """Send a message, or start an interactive chat when none is given."""
    settings = get_settings()
    _, _, dispatcher = _build_chat(settings)

    if message is None:
        asyncio.run(_interactive_loop(dispatcher, settings))
        return

    asyncio.run(_send_and_print(dispatcher, message, image))


async def _interactive_loop(dispatcher, settings: Settings) -> None:
    """Interactive chat loop."""
    transport = "custom endpoint" if settings.custom_api_active else "gateway"
    console.print(
        Panel(
            f"[bold magenta]{settings.character_name}[/] is listening ({transport}).\n"
            "Type a message and press Enter.\n"
            "/forget drops the last exchange, /undo brings it back, "
            "/star stars the last reply, /quit exits.",
            title="Companion Chat",
        )
    )
    log = dispatcher.log
    while True:
        try:
            text = console.input("\n[bold cyan]You>[/] ").strip()
        except (EOFError, KeyboardInterrupt):
            break
        command = text.lower()
        if command in ("/quit", "quit", "exit", "q"):
            break
        if command == "/forget":
            removed = log.delete(m.id for m in log.messages[-2:])
            console.print(f"[green]Forgot {removed} messages.[/] [dim](/undo within {log.undo_window:g}s)[/]")
            continue
        if command == "/undo":
            restored = log.undo()
            console.print("[green]Restored.[/]" if restored else "[yellow]Nothing to undo.[/]")
            continue
        if command == "/star":
            replies = [m for m in log.messages if m.role.value == "assistant"]
            if replies:
                log.toggle_star(replies[-1].id)
                console.print("[green]Toggled star on the last reply.[/]")
            continue
        if not text:
            continue
        await _send_and_print(dispatcher, text, None)


async def _send_and_print(dispatcher, text: str, image: Optional[str]) -> None:
    name = dispatcher.settings.character_name
    console.print(f"[bold magenta]{name}>[/] ", end="")
    streamed: list[str] = []

    def _on_delta(delta: str) -> None:
        streamed.append(delta)
        console.print(delta, end="", markup=False, highlight=False)

    reply = await dispatcher.send(text, image_url=image, on_delta=_on_delta)
    if not streamed and reply is not None:
        # Error turns arrive whole rather than as deltas.
        console.print(f"[red]{reply.content}[/]", end="")
    console.print()


# ======================================================================
# HISTORY: inspect the stored conversation
# ======================================================================
@main.command()
@click.option("--starred", is_flag=True, help="Only show starred messages")
@click.option("--limit", "-n", default=20, help="Number of most recent messages")
def history(starred: bool, limit: int) -> None:
    """Show the stored conversation."""
    log, _, _ = _build_chat(get_settings())
    messages = log.starred() if starred else log.messages
    messages = messages[-limit:]

    if not messages:
        console.print("[yellow]No messages.[/]")
        return

    table = Table(title="Conversation", show_lines=True)
    table.add_column("Time", width=16)
    table.add_column("Role", width=9)
    table.add_column("★", width=1)
    table.add_column("Message", max_width=80)
    table.add_column("ID", width=8)

    for m in messages:
        text = m.content[:200] + "..." if len(m.content) > 200 else m.content
        if m.image_url:
            text += " [image]"
        table.add_row(
            m.timestamp.strftime("%Y-%m-%d %H:%M"),
            m.role.value,
            "★" if m.starred else "",
            text,
            m.id[:8],
        )
    console.print(table)


@main.command()
@click.confirmation_option(prompt="Delete the whole conversation?")
def clear() -> None:
    """Clear the stored conversation."""
    log, _, _ = _build_chat(get_settings())
    count = len(log)
    log.clear()
    console.print(f"[green]Cleared {count} messages.[/]")


@main.command()
@click.option("--clear", "clear_memory", is_flag=True, help="Forget the memory summary")
@click.option("--set", "new_text", default=None, help="Replace the memory summary")
def memory(clear_memory: bool, new_text: str | None) -> None:
    """Show or edit the long-term memory summary."""
    _, mem, _ = _build_chat(get_settings())

    if clear_memory:
        mem.clear()
        console.print("[green]Memory cleared.[/]")
        return
    if new_text is not None:
        mem.update(new_text)
        console.print("[green]Memory updated.[/]")

    summary = mem.current_summary()
    if summary is None:
        console.print("[yellow]No memory summary yet.[/]")
        return
    console.print(Panel(
        summary.text,
        title="[bold cyan]Memory[/]",
        subtitle=(
            f"covers {summary.covered_count} turns | "
            f"updated {summary.last_updated:%Y-%m-%d %H:%M}"
        ),
    ))


# ======================================================================
# SERVE: realtime relay
# ======================================================================
@main.command()
@click.option("--host", default=None, help="Override host")
@click.option("--port", "-p", default=None, type=int, help="Override port")
def serve(host: str | None, port: int | None) -> None:
    """Start the realtime voice relay."""
    import uvicorn

    from companion.relay.ws_server import create_relay_app

    settings = get_settings()
    uvicorn.run(
        create_relay_app(settings),
        host=host or settings.host,
        port=port or settings.port,
    )


if __name__ == "__main__":
    main()
