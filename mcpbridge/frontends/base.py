"""
mcpbridge Frontend Base - the capability set every chat front end provides.

A front end produces ``ChatEvent`` objects on its event queue and exposes the
operations the handler needs to answer them: posting, acknowledging,
resolving users and fetching thread replies.
"""

import queue
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from mcpbridge.core.history import Message


class EventKind(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    MENTION = "app_mention"
    MESSAGE = "message"
    OTHER = "other"


@dataclass
class ChatEvent:
    """One inbound event, normalized across front ends."""

    kind: EventKind
    channel_id: str = ""
    user_id: str = ""
    text: str = ""
    ts: str = ""
    thread_ts: str = ""
    channel_type: str = ""
    subtype: str = ""
    bot_id: str = ""
    envelope_id: str = ""
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_direct(self) -> bool:
        return self.channel_type == "im" or self.channel_id.startswith("D")


@dataclass
class UserProfile:
    user_id: str
    real_name: str = ""
    email: str = ""

    def as_dict(self) -> Dict[str, str]:
        return {"user_id": self.user_id, "real_name": self.real_name, "email": self.email}


class UserFrontend(ABC):
    """
    Abstract chat front end.

    ``run`` connects and starts feeding ``events``; it must not block.
    ``close`` stops the feed and puts a DISCONNECTED event on the queue.
    """

    def __init__(self):
        self.events: "queue.Queue[ChatEvent]" = queue.Queue()

    @property
    @abstractmethod
    def name(self) -> str:
        """Front end name used in logs."""
        pass

    @abstractmethod
    def run(self) -> None:
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    def ack(self, event: ChatEvent) -> None:
        """Acknowledge a dispatched event. Front ends without acks ignore it."""

    @abstractmethod
    def post_message(self, channel_id: str, thread_ts: str, text: str) -> Optional[str]:
        """
        Post ``text`` into a conversation.

        Returns:
            The platform timestamp of the posted message, or None if the
            post failed. Failures are logged, never raised.
        """
        pass

    def post_notice(self, channel_id: str, thread_ts: str, text: str) -> Optional[str]:
        """Post a short progress notice. Defaults to a normal message."""
        return self.post_message(channel_id, thread_ts, text)

    def delete_thinking(self, channel_id: str, thread_ts: str, text: str) -> bool:
        """Remove the most recent bot message equal to ``text``. Best effort."""
        return False

    @abstractmethod
    def remove_bot_mention(self, text: str) -> str:
        pass

    @abstractmethod
    def resolve_user(self, user_id: str) -> UserProfile:
        pass

    def fetch_thread_replies(self, channel_id: str, thread_ts: str) -> List[Message]:
        """Messages already in the thread on the platform, oldest first."""
        return []

    def is_valid_user(self, user_id: str) -> bool:
        return bool(user_id)
