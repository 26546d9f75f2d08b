"""
Chat Flow Orchestrator — Main CLI Entrypoint.

Wires all layers and runs the interactive chat loop, bot administration
commands and the HTTP server.
"""

import argparse
import asyncio
import json
import logging
import os
import sys

from dotenv import load_dotenv
from rich import box
from rich.console import Console
from rich.live import Live
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from models.selector import ModelSelector
from orchestrator.dispatcher import ChatDispatcher
from registry.bot_store import BotStore
from registry.seeds import seed_farm_bot
from sandbox.executor import SandboxExecutor
from shared.errors import OriginForbiddenError, ProtocolViolationError
from shared.framing import FrameDecoder
from shared.models import ConversationTurn, RequestContext

# ─── Configuration ──────────────────────────────────────────────

logger = logging.getLogger(__name__)

# Ensure local .env is loaded before reading runtime configuration.
load_dotenv(override=False)

OLLAMA_URL = os.getenv("OLLAMA_URL", "http://localhost:11434")
BOT_DB_PATH = os.getenv("BOT_DB_PATH", "bots.db")
API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("API_PORT", "8080"))
LOG_LEVEL = logging.INFO

# ─── Rich Console ───────────────────────────────────────────────

console = Console()


def setup_logging() -> None:
    """Configure logging."""
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def build_pipeline() -> tuple[ChatDispatcher, BotStore, ModelSelector]:
    """Wire all layers together. The caller owns ``await model_selector.close()``."""
    model_selector = ModelSelector(ollama_url=OLLAMA_URL)
    bot_store = BotStore(db_path=BOT_DB_PATH)
    sandbox_executor = SandboxExecutor()
    dispatcher = ChatDispatcher(
        bot_store=bot_store,
        model_selector=model_selector,
        sandbox_executor=sandbox_executor,
    )
    return dispatcher, bot_store, model_selector


# ─── Interactive chat ───────────────────────────────────────────

def render_quick_actions(config_text: str) -> None:
    try:
        actions = json.loads(config_text)
    except json.JSONDecodeError:
        console.print(Panel(config_text, title="Quick Actions", border_style="dim"))
        return
    if not isinstance(actions, list):
        console.print(Panel(json.dumps(actions, indent=2), title="Quick Actions", border_style="dim"))
        return

    table = Table(title="Quick Actions", box=box.SIMPLE_HEAVY, header_style="bold cyan")
    table.add_column("#", style="bold white")
    table.add_column("Action", style="cyan")
    table.add_column("Prompt", style="dim")
    for index, action in enumerate(actions, start=1):
        if isinstance(action, dict):
            table.add_row(str(index), str(action.get("displayName", "")), str(action.get("prompt", "")))
    console.print(table)


async def render_stream(chunks) -> list[str]:
    """Render message frames live as they stream in; returns the completed messages."""
    decoder = FrameDecoder()
    messages: list[str] = []
    with Live(Text(""), console=console, refresh_per_second=12, transient=True) as live:
        async for chunk in chunks:
            for frame in decoder.feed(chunk):
                if frame.kind == "message":
                    messages.append(frame.text)
                    live.console.print(Panel(Markdown(frame.text), border_style="green", box=box.ROUNDED))
                else:
                    render_quick_actions(frame.text)
            live.update(Text(decoder.pending_text(), style="green"))
    return messages


async def run_chat_loop(bot_id: str) -> None:
    """Interactive chat with one bot; history is kept in memory only."""
    dispatcher, _store, model_selector = build_pipeline()
    request_context = RequestContext(host="localhost", method="CLI", user_agent="chat-flow-cli")
    history: list[ConversationTurn] = []

    console.print(Panel(
        Text.from_markup(
            "[bold cyan]Chat Flow Orchestrator[/bold cyan]\n"
            f"[dim]Bot: {bot_id}[/dim]\n"
            "[dim]Type your message or 'exit' to quit[/dim]"
        ),
        title="🤖",
        border_style="cyan",
        box=box.DOUBLE,
    ))

    try:
        # Empty history returns the greeting and quick actions.
        await render_stream(dispatcher.process_chat(bot_id, [], request_context))
        while True:
            raw_input = (await asyncio.to_thread(console.input, "[bold cyan]You → [/]")).strip()
            if not raw_input:
                continue
            if raw_input.lower() in {"exit", "quit"}:
                break

            history.append(ConversationTurn(role="user", content=raw_input))
            try:
                replies = await render_stream(dispatcher.process_chat(bot_id, history, request_context))
            except (OriginForbiddenError, ProtocolViolationError) as e:
                console.print(f"[bold red]Rejected:[/] {e}")
                history.pop()
                continue
            if replies:
                history.append(ConversationTurn(role="assistant", content="\n".join(replies)))
    finally:
        await model_selector.close()


# ─── Bot administration ─────────────────────────────────────────

def admin_seed_bot(allowed_origins: list[str] | None = None) -> None:
    store = BotStore(db_path=BOT_DB_PATH)
    bot_id = seed_farm_bot(store, allowed_origins=allowed_origins)
    console.print(f"[bold green]Seeded example bot:[/] {bot_id}")


def admin_list_bots() -> None:
    store = BotStore(db_path=BOT_DB_PATH)
    table = Table(title="Bots")
    table.add_column("Id", style="cyan")
    table.add_column("Name", style="magenta")
    table.add_column("Intents", style="white")
    table.add_column("Strict", style="green")
    table.add_column("Allowed Origins", style="dim")
    for bot in store.list_bots():
        table.add_row(
            bot["id"],
            bot["name"],
            f"{bot['enabled_intent_count']}/{bot['intent_count']}",
            str(bot["strict_intent_detection"]),
            ", ".join(bot["allowed_origins"]) or "*",
        )
    console.print(table)


def serve(host: str, port: int) -> None:
    import uvicorn

    uvicorn.run("api.server:app", host=host, port=port, log_level="info")


def main() -> None:
    """Entrypoint with CLI args."""
    setup_logging()

    parser = argparse.ArgumentParser(description="Chat Flow Orchestrator")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    run_parser = subparsers.add_parser("run", help="Chat with a bot interactively")
    run_parser.add_argument("--bot-id", required=True, help="Bot id (see bot-list)")

    seed_parser = subparsers.add_parser("bot-seed", help="Create the example farm bot")
    seed_parser.add_argument("--allowed-origin", action="append", default=None, help="Allowed origin (repeatable)")

    subparsers.add_parser("bot-list", help="List bots")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP chat API")
    serve_parser.add_argument("--host", default=API_HOST)
    serve_parser.add_argument("--port", type=int, default=API_PORT)

    args = parser.parse_args()

    if args.command == "run":
        try:
            asyncio.run(run_chat_loop(args.bot_id))
        except KeyboardInterrupt:
            pass
    elif args.command == "bot-seed":
        admin_seed_bot(args.allowed_origin)
    elif args.command == "bot-list":
        admin_list_bots()
    elif args.command == "serve":
        serve(args.host, args.port)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
