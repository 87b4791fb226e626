#!/usr/bin/env python3
"""Ktulhu CLI - interactive terminal chat over the streaming session client.

Usage:
    ktulhu-client
    ktulhu-client --endpoint wss://inference.example.com --model mistral-7b-lora
    ktulhu-client --resume

Environment variables (alternative to args):
    KTULHU_WS_ENDPOINT   WebSocket endpoint
    KTULHU_TUNNEL_URL    Tunnel host, used when no endpoint is set
    KTULHU_API_BASE_URL  REST base for the chat summary snapshot
    KTULHU_MODEL         Model name sent with each prompt

Commands inside the session:
    /cancel  /new  /chats  /status  /help  /quit
"""

import argparse
import asyncio
import logging
import signal
import sys
import threading
from contextlib import suppress
from typing import Optional

import httpx
from rich.console import Console
from rich.table import Table

from .backoff import Backoff
from .chat import ChatSession
from .config import ClientSettings, get_config_value
from .connection import ConnectionManager, ConnectionState
from .dispatch import HandlerSet
from .endpoint import resolve_endpoint
from .errors import NotConnectedError
from .identity import IdentityProvider
from .summaries import ChatSummaries

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = logging.getLogger("ktulhu")
console = Console()

HELP_TEXT = (
    "/cancel  stop the current reply\n"
    "/new     start a new chat\n"
    "/chats   list recent chats\n"
    "/status  show connection state\n"
    "/quit    exit"
)


class ChatCLI:
    """Interactive chat loop on top of one ConnectionManager."""

    def __init__(
        self,
        endpoint: str,
        model: Optional[str],
        chat_id: Optional[str] = None,
        api_base_url: Optional[str] = None,
        settings: Optional[ClientSettings] = None,
    ):
        self.settings = settings or ClientSettings()
        self.api_base_url = api_base_url

        identity = IdentityProvider(chat_id=chat_id)
        self.manager = ConnectionManager(
            endpoint,
            identity=identity,
            backoff=Backoff(
                initial=get_config_value("BACKOFF_INITIAL", 0.5),
                maximum=get_config_value("BACKOFF_MAX", 8.0),
            ),
            send_timeout=get_config_value("SEND_TIMEOUT", 5.0),
            log_callback=self._log,
        )
        self.session = ChatSession(
            self.manager,
            model=model,
            done_timeout=get_config_value("DONE_TIMEOUT", 20.0),
        )
        self.summaries = ChatSummaries(current_device=identity.current.device_hash)

        self._lines: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._shutdown = asyncio.Event()

    async def run(self) -> int:
        """Run the chat loop. Returns exit code."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with suppress(NotImplementedError):  # Windows
                loop.add_signal_handler(sig, self._shutdown.set)

        self.manager.on_state_change = self._on_state_change
        self.session.attach()
        disposers = [
            self.summaries.attach(self.manager),
            self.manager.add_handlers(HandlerSet(
                on_token=self._print_token,
                on_done=self._print_done,
                on_system=self._print_system,
            )),
        ]

        log.info("Session %s, chat %s", self.manager.identity.session_id, self.session.chat_id)
        await self._load_summaries()

        try:
            async with self.manager:
                if not await self.manager.wait_until_open(timeout=10.0):
                    log.warning("Backend not reachable yet; still retrying in the background")

                self._start_reader(loop)
                console.print("[dim]Type a message, or /help[/dim]")
                while not self._shutdown.is_set():
                    line = await self._next_line()
                    if line is None:
                        break
                    if not self._handle_line(line):
                        break
        finally:
            self.session.detach()
            for dispose in disposers:
                dispose()
            self.settings.last_chat_id = self.session.chat_id
            try:
                self.settings.save()
            except OSError as e:
                log.warning("Could not save settings: %s", e)

        return 0

    def _handle_line(self, line: str) -> bool:
        """Handle one input line. Returns False to quit."""
        text = line.strip()
        if not text:
            return True

        if text.startswith("/"):
            command = text.lower()
            if command in ("/quit", "/exit"):
                return False
            if command == "/cancel":
                try:
                    cancelled = self.session.cancel()
                except NotConnectedError as e:
                    console.print(f"[red]{e}[/red]")
                    return True
                console.print("[yellow]Cancelled[/yellow]" if cancelled else "[dim]Nothing to cancel[/dim]")
            elif command == "/new":
                chat_id = self.session.new_chat()
                console.print(f"[cyan]New chat: {chat_id}[/cyan]")
            elif command == "/chats":
                self._print_chats()
            elif command == "/status":
                error = f" ({self.manager.last_error})" if self.manager.last_error else ""
                console.print(f"[cyan]{self.manager.state.value}{error}[/cyan]")
            else:
                console.print(HELP_TEXT)
            return True

        if self.session.is_sending:
            console.print("[dim]Still answering - /cancel to stop[/dim]")
            return True
        try:
            self.session.send(text)
        except NotConnectedError as e:
            console.print(f"[red]{e}[/red]")
        return True

    async def _load_summaries(self):
        if not self.api_base_url:
            return
        try:
            await self.summaries.load_snapshot(self.api_base_url)
        except httpx.HTTPError as e:
            log.warning("Failed to load chat summaries: %s", e)

    # =========================================================================
    # Output
    # =========================================================================

    def _print_token(self, token: str):
        console.print(token, end="", markup=False, highlight=False)

    def _print_done(self):
        console.print()

    def _print_system(self, message: dict):
        text = message.get("system") or message.get("message")
        if text:
            console.print(f"[dim]{text}[/dim]")

    def _print_chats(self):
        chats = self.summaries.chats
        if not chats:
            console.print("[dim]No recent chats[/dim]")
            return
        table = Table("Chat", "Preview")
        for chat in chats[:10]:
            marker = "*" if chat.chat_id == self.session.chat_id else ""
            table.add_row(f"{marker}{chat.chat_id[:8]}", chat.preview[:60])
        console.print(table)

    def _on_state_change(self, old: ConnectionState, new: ConnectionState):
        log.debug("Connection %s -> %s", old.value, new.value)

    def _log(self, message: str, level: str = "info"):
        levels = {"error": logging.ERROR, "warn": logging.WARNING}
        log.log(levels.get(level, logging.INFO), message)

    # =========================================================================
    # Input
    # =========================================================================

    def _start_reader(self, loop: asyncio.AbstractEventLoop):
        """Read stdin on a daemon thread so a blocked read never holds up shutdown."""

        def read():
            for line in sys.stdin:
                loop.call_soon_threadsafe(self._lines.put_nowait, line)
            loop.call_soon_threadsafe(self._lines.put_nowait, None)

        threading.Thread(target=read, name="ktulhu-stdin", daemon=True).start()

    async def _next_line(self) -> Optional[str]:
        line_task = asyncio.ensure_future(self._lines.get())
        stop_task = asyncio.ensure_future(self._shutdown.wait())
        done, pending = await asyncio.wait({line_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        if line_task in done:
            return line_task.result()
        return None


def resolve_model(explicit: Optional[str], settings: ClientSettings) -> str:
    """Pick the model to request. An explicit choice is stored in ``settings``."""
    if explicit:
        settings.model = explicit
        return explicit
    return settings.model or get_config_value("MODEL")

def main():
    """Main entry point."""
    settings = ClientSettings.load()

    parser = argparse.ArgumentParser(
        description="Ktulhu streaming chat client",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--endpoint",
        default=None,
        help="WebSocket endpoint (default: saved override, KTULHU_WS_ENDPOINT, KTULHU_TUNNEL_URL)",
    )
    parser.add_argument(
        "--model",
        default=None,
        help="Model name sent with each prompt (remembered for later runs)",
    )
    parser.add_argument(
        "--chat-id",
        default=None,
        help="Continue an existing chat",
    )
    parser.add_argument(
        "--resume",
        action="store_true",
        help="Continue the chat from the previous run",
    )
    parser.add_argument(
        "--api-base",
        default=get_config_value("API_BASE_URL"),
        help="REST base URL for the chat summary snapshot",
    )
    parser.add_argument(
        "--save-endpoint",
        action="store_true",
        help="Remember --endpoint for later runs",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.save_endpoint:
        if not args.endpoint:
            log.error("--save-endpoint requires --endpoint")
            sys.exit(1)
        settings.endpoint_override = args.endpoint

    chat_id = args.chat_id or (settings.last_chat_id if args.resume else None)
    model = resolve_model(args.model, settings)
    endpoint = resolve_endpoint(args.endpoint, settings)
    log.info("Endpoint: %s", endpoint)

    async def run() -> int:
        cli = ChatCLI(
            endpoint=endpoint,
            model=model,
            chat_id=chat_id,
            api_base_url=args.api_base,
            settings=settings,
        )
        return await cli.run()

    try:
        exit_code = asyncio.run(run())
    except KeyboardInterrupt:
        exit_code = 130
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
