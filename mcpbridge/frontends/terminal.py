"""Terminal front end: read lines from stdin, print replies to stdout."""

import logging
import sys
import threading
import time
from typing import IO, Optional

from rich.console import Console
from rich.markdown import Markdown
from rich.text import Text

from mcpbridge.frontends.base import ChatEvent, EventKind, UserFrontend, UserProfile

logger = logging.getLogger(__name__)

TERMINAL_CHANNEL = "Dterminal"
TERMINAL_USER = "Uterminal"
EXIT_COMMANDS = ("/exit", "/quit")


class TerminalFrontend(UserFrontend):
    """
    Single-user front end for local testing.

    Every line is a direct message in one conversation. ``/exit`` or EOF
    ends the session.
    """

    def __init__(
        self,
        stdin: Optional[IO[str]] = None,
        stdout: Optional[IO[str]] = None,
        user_name: str = "Terminal User",
        thinking_message: str = "Thinking...",
    ):
        super().__init__()
        self.thinking_message = thinking_message
        self.stdin = stdin or sys.stdin
        self.console = Console(file=stdout or sys.stdout, highlight=False)
        self.profile = UserProfile(user_id=TERMINAL_USER, real_name=user_name)
        self.thread_ts = ""
        self._reader: Optional[threading.Thread] = None
        self._closed = threading.Event()

    @property
    def name(self) -> str:
        return "terminal"

    def run(self) -> None:
        self.events.put(ChatEvent(kind=EventKind.CONNECTING))
        self._reader = threading.Thread(target=self._read_loop, name="terminal-reader", daemon=True)
        self._reader.start()
        self.events.put(ChatEvent(kind=EventKind.CONNECTED))
        self.console.print("[bold]mcpbridge[/bold] terminal session. Type /exit to quit.")

    def _read_loop(self) -> None:
        for line in self.stdin:
            if self._closed.is_set():
                return
            text = line.strip()
            if not text:
                continue
            if text.lower() in EXIT_COMMANDS:
                break
            ts = f"{time.time():.6f}"
            if not self.thread_ts:
                self.thread_ts = ts
            self.events.put(ChatEvent(
                kind=EventKind.MESSAGE,
                channel_id=TERMINAL_CHANNEL,
                channel_type="im",
                user_id=TERMINAL_USER,
                text=text,
                ts=ts,
                thread_ts=self.thread_ts,
            ))
        self.close()

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        logger.info("Terminal session ended")
        self.events.put(ChatEvent(kind=EventKind.DISCONNECTED))

    def post_message(self, channel_id: str, thread_ts: str, text: str) -> Optional[str]:
        if not text or not text.strip():
            return None
        if text == self.thinking_message:
            return self.post_notice(channel_id, thread_ts, text)
        self.console.print(Markdown(text))
        return f"{time.time():.6f}"

    def post_notice(self, channel_id: str, thread_ts: str, text: str) -> Optional[str]:
        self.console.print(Text(text, style="dim"))
        return None

    def remove_bot_mention(self, text: str) -> str:
        return text.strip()

    def resolve_user(self, user_id: str) -> UserProfile:
        return self.profile
