"""
Conversation history - bounded per-thread message rings.

Each conversation is keyed by ``(channel_id, thread_ts)``. Rings are capped
at the configured length (oldest evicted first) and deduplicated by the chat
platform's message timestamp so that reconciling with fetched thread replies
never inserts a message twice.
"""

import threading
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Deque, Dict, Iterable, List, NamedTuple, Optional, Set

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_TOOL = "tool"

_PREFIXES = {ROLE_ASSISTANT: "Assistant", ROLE_TOOL: "Tool Result"}


class ConversationKey(NamedTuple):
    channel_id: str
    thread_ts: str

    @classmethod
    def for_message(cls, channel_id: str, ts: str, thread_ts: Optional[str] = None) -> "ConversationKey":
        """Top-level messages start their own thread."""
        return cls(channel_id, thread_ts or ts)


@dataclass(frozen=True)
class Message:
    """One conversation turn."""

    role: str
    content: str
    platform_ts: str = ""
    user_id: str = ""
    real_name: str = ""
    email: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def sort_key(self) -> float:
        if self.platform_ts:
            try:
                return float(self.platform_ts)
            except ValueError:
                pass
        return self.timestamp.timestamp()


class HistoryStore:
    """
    Thread-safe map of ConversationKey to a bounded ring of Messages.

    Example:
        >>> store = HistoryStore(limit=50)
        >>> key = ConversationKey("C1", "1700000000.000100")
        >>> store.add(key, Message(role="user", content="hi", platform_ts=key.thread_ts))
        True
    """

    def __init__(self, limit: int = 50):
        if limit < 1:
            raise ValueError("history limit must be at least 1")
        self.limit = limit
        self._rings: Dict[ConversationKey, Deque[Message]] = {}
        self._ignored: Dict[ConversationKey, Set[str]] = {}
        self._lock = threading.Lock()

    def _ring(self, key: ConversationKey) -> Deque[Message]:
        ring = self._rings.get(key)
        if ring is None:
            ring = deque(maxlen=self.limit)
            self._rings[key] = ring
        return ring

    def add(self, key: ConversationKey, message: Message) -> bool:
        """Append ``message``. Returns False if its platform ts is already present."""
        with self._lock:
            ring = self._ring(key)
            if message.platform_ts and any(m.platform_ts == message.platform_ts for m in ring):
                return False
            ring.append(message)
            return True

    def stamp(self, key: ConversationKey, content: str, platform_ts: str) -> bool:
        """
        Attach the platform ts of a posted reply to its local assistant entry.

        The newest assistant message with matching content and no ts gets
        ``platform_ts``, so later reconciles recognise the posted copy.

        Returns:
            True if an entry was stamped.
        """
        with self._lock:
            return self._claim(self._ring(key), content, platform_ts)

    def ignore(self, key: ConversationKey, platform_ts: str) -> None:
        """Never insert the platform message ``platform_ts`` when reconciling."""
        with self._lock:
            self._ignored.setdefault(key, set()).add(platform_ts)

    @staticmethod
    def _claim(ring: Deque[Message], content: str, platform_ts: str) -> bool:
        for index in range(len(ring) - 1, -1, -1):
            message = ring[index]
            if message.role == ROLE_ASSISTANT and not message.platform_ts and message.content == content:
                ring[index] = replace(message, platform_ts=platform_ts)
                return True
        return False

    def reconcile(self, key: ConversationKey, replies: Iterable[Message]) -> int:
        """
        Merge thread replies fetched from the chat platform.

        Replies whose platform ts is already in the ring or ignored are
        skipped. A fetched assistant reply that matches a local assistant
        entry without a ts stamps that entry instead of being inserted. The
        rest are inserted in timestamp order and the ring is re-capped.

        Returns:
            Number of messages inserted.
        """
        with self._lock:
            ring = self._ring(key)
            seen = {m.platform_ts for m in ring if m.platform_ts}
            seen.update(self._ignored.get(key, ()))
            fresh = []
            for reply in replies:
                if not reply.platform_ts or reply.platform_ts in seen:
                    continue
                seen.add(reply.platform_ts)
                if reply.role == ROLE_ASSISTANT and self._claim(ring, reply.content, reply.platform_ts):
                    continue
                fresh.append(reply)
            if not fresh:
                return 0
            merged = sorted(list(ring) + fresh, key=Message.sort_key)
            self._rings[key] = deque(merged[-self.limit:], maxlen=self.limit)
            return len(fresh)

    def snapshot(self, key: ConversationKey) -> List[Message]:
        with self._lock:
            return list(self._rings.get(key, ()))

    def context(self, key: ConversationKey, current: Optional[Message] = None) -> List[Message]:
        """History for an LLM call, excluding the message being answered."""
        return [m for m in self.snapshot(key) if m is not current]

    def __len__(self) -> int:
        with self._lock:
            return len(self._rings)

    def clear(self, key: Optional[ConversationKey] = None) -> None:
        with self._lock:
            if key is None:
                self._rings.clear()
                self._ignored.clear()
            else:
                self._rings.pop(key, None)
                self._ignored.pop(key, None)


def format_history(messages: Iterable[Message]) -> str:
    """Render history as a role-prefixed transcript with newlines escaped."""
    messages = list(messages)
    if not messages:
        return ""
    lines = ["Previous conversation context:\n---\n"]
    for message in messages:
        prefix = _PREFIXES.get(message.role, "User")
        sanitized = message.content.replace("\n", " \\n ")
        lines.append(f"{prefix}: {sanitized}\n")
    lines.append("---\n")
    return "".join(lines)
