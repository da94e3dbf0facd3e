"""
Slack front end over Socket Mode.

Inbound envelopes arrive on the SDK's websocket thread; they are normalized
into ``ChatEvent`` objects and queued for the handler, which acknowledges
events-API envelopes after dispatch. Outbound calls use the Web API client.
"""

import logging
import re
import threading
from typing import Any, Dict, List, Optional

from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError
from slack_sdk.socket_mode import SocketModeClient
from slack_sdk.socket_mode.request import SocketModeRequest
from slack_sdk.socket_mode.response import SocketModeResponse

from mcpbridge.core.errors import FrontendError
from mcpbridge.core.history import ROLE_ASSISTANT, ROLE_USER, Message
from mcpbridge.frontends.base import ChatEvent, EventKind, UserFrontend, UserProfile
from mcpbridge.frontends.formatter import context_block, format_message
from mcpbridge.validation.config import SlackConfig

logger = logging.getLogger(__name__)

# conversations.replies page size when reconciling history.
REPLIES_LIMIT = 200


class SlackFrontend(UserFrontend):
    """
    Socket-mode adapter.

    Args:
        config: The ``slack`` configuration section.
        web_client: Web API client; built from the bot token if omitted.
        socket_client: Socket Mode client; built from the app token if omitted.
    """

    def __init__(
        self,
        config: SlackConfig,
        web_client: Optional[WebClient] = None,
        socket_client: Optional[SocketModeClient] = None,
    ):
        super().__init__()
        self.config = config
        self.web = web_client or WebClient(token=config.bot_token)
        self.socket = socket_client or SocketModeClient(app_token=config.app_token, web_client=self.web)
        self.bot_user_id = ""
        self._profiles: Dict[str, UserProfile] = {}
        self._profiles_lock = threading.Lock()

    @property
    def name(self) -> str:
        return "slack"

    # ── Connection ────────────────────────────────────────────────────────

    def run(self) -> None:
        """Identify the bot user and open the socket connection."""
        try:
            auth = self.web.auth_test()
        except SlackApiError as exc:
            raise FrontendError(f"Slack auth.test failed: {exc.response['error']}", code="auth-failed", cause=exc)
        self.bot_user_id = auth.get("user_id", "")
        logger.info("Authenticated to Slack as %s (%s)", auth.get("user", ""), self.bot_user_id)

        self.socket.socket_mode_request_listeners.append(self._on_request)
        self.events.put(ChatEvent(kind=EventKind.CONNECTING))
        self.socket.connect()
        self.events.put(ChatEvent(kind=EventKind.CONNECTED))

    def close(self) -> None:
        try:
            self.socket.close()
        finally:
            self.events.put(ChatEvent(kind=EventKind.DISCONNECTED))

    def _on_request(self, client: SocketModeClient, req: SocketModeRequest) -> None:
        if req.type != "events_api":
            client.send_socket_mode_response(SocketModeResponse(envelope_id=req.envelope_id))
            self.events.put(ChatEvent(kind=EventKind.OTHER, raw={"type": req.type}))
            return
        self.events.put(self.to_event(req.envelope_id, req.payload or {}))

    @staticmethod
    def to_event(envelope_id: str, payload: Dict[str, Any]) -> ChatEvent:
        """Normalize an events-API payload."""
        inner = payload.get("event") or {}
        event_type = inner.get("type", "")
        if event_type == EventKind.MENTION.value:
            kind = EventKind.MENTION
        elif event_type == EventKind.MESSAGE.value:
            kind = EventKind.MESSAGE
        else:
            kind = EventKind.OTHER
        return ChatEvent(
            kind=kind,
            channel_id=inner.get("channel", ""),
            user_id=inner.get("user", ""),
            text=inner.get("text", ""),
            ts=inner.get("ts", ""),
            thread_ts=inner.get("thread_ts", ""),
            channel_type=inner.get("channel_type", ""),
            subtype=inner.get("subtype", ""),
            bot_id=inner.get("bot_id", ""),
            envelope_id=envelope_id,
            raw=inner,
        )

    def ack(self, event: ChatEvent) -> None:
        if not event.envelope_id:
            return
        self.socket.send_socket_mode_response(SocketModeResponse(envelope_id=event.envelope_id))

    # ── Posting ───────────────────────────────────────────────────────────

    def post_message(self, channel_id: str, thread_ts: str, text: str) -> Optional[str]:
        if not text or not text.strip():
            logger.warning("Attempted to send empty message to %s, skipping", channel_id)
            return None
        fallback, blocks = format_message(text)
        try:
            return self._post(channel_id, thread_ts, fallback, blocks)
        except SlackApiError as exc:
            if blocks is None:
                logger.error("Error posting message to %s: %s", channel_id, exc.response.get("error"))
                return None
            logger.info("Block Kit post to %s failed (%s), falling back to plain text",
                        channel_id, exc.response.get("error"))
        try:
            return self._post(channel_id, thread_ts, text, None)
        except SlackApiError as exc:
            logger.error("Error posting fallback message to %s: %s", channel_id, exc.response.get("error"))
            return None

    def post_notice(self, channel_id: str, thread_ts: str, text: str) -> Optional[str]:
        try:
            return self._post(channel_id, thread_ts, text, [context_block(text)])
        except SlackApiError as exc:
            logger.error("Error posting notice to %s: %s", channel_id, exc.response.get("error"))
            return None

    def _post(self, channel_id: str, thread_ts: str, text: str, blocks: Optional[List[Dict[str, Any]]]) -> str:
        kwargs: Dict[str, Any] = {"channel": channel_id, "text": text}
        if thread_ts:
            kwargs["thread_ts"] = thread_ts
        if blocks:
            kwargs["blocks"] = blocks
        response = self.web.chat_postMessage(**kwargs)
        return response.get("ts", "")

    def delete_thinking(self, channel_id: str, thread_ts: str, text: str) -> bool:
        """Delete the newest bot message in the thread whose text is ``text``."""
        try:
            if thread_ts:
                response = self.web.conversations_replies(channel=channel_id, ts=thread_ts, limit=REPLIES_LIMIT)
            else:
                response = self.web.conversations_history(channel=channel_id, limit=20)
            messages = response.get("messages", [])
            candidates = [m for m in messages if self._from_bot(m) and m.get("text") == text]
            if not candidates:
                logger.debug("No thinking message found in %s/%s", channel_id, thread_ts)
                return False
            newest = max(candidates, key=lambda m: float(m.get("ts", "0")))
            self.web.chat_delete(channel=channel_id, ts=newest["ts"])
            return True
        except SlackApiError as exc:
            logger.warning("Could not delete thinking message in %s: %s", channel_id, exc.response.get("error"))
            return False

    # ── Users and threads ─────────────────────────────────────────────────

    def remove_bot_mention(self, text: str) -> str:
        if not self.bot_user_id:
            return text.strip()
        return re.sub(rf"<@{re.escape(self.bot_user_id)}(\|[^>]*)?>", "", text).strip()

    def resolve_user(self, user_id: str) -> UserProfile:
        """Profile for ``user_id``, cached for the process lifetime."""
        with self._profiles_lock:
            cached = self._profiles.get(user_id)
        if cached is not None:
            return cached
        profile = UserProfile(user_id=user_id)
        try:
            user = self.web.users_info(user=user_id).get("user") or {}
            details = user.get("profile") or {}
            profile.real_name = user.get("real_name") or details.get("real_name", "")
            profile.email = details.get("email", "")
        except SlackApiError as exc:
            logger.warning("Could not resolve Slack user %s: %s", user_id, exc.response.get("error"))
            return profile
        with self._profiles_lock:
            self._profiles[user_id] = profile
        return profile

    def is_valid_user(self, user_id: str) -> bool:
        if not user_id:
            return False
        try:
            user = self.web.users_info(user=user_id).get("user") or {}
        except SlackApiError:
            return False
        return not user.get("deleted", False)

    def fetch_thread_replies(self, channel_id: str, thread_ts: str) -> List[Message]:
        try:
            response = self.web.conversations_replies(channel=channel_id, ts=thread_ts, limit=REPLIES_LIMIT)
        except SlackApiError as exc:
            logger.warning("Could not fetch replies for %s/%s: %s", channel_id, thread_ts, exc.response.get("error"))
            return []
        replies = []
        for item in response.get("messages", []):
            text = item.get("text", "")
            if not text or text == self.config.thinking_message:
                continue
            if self._from_bot(item):
                replies.append(Message(role=ROLE_ASSISTANT, content=text, platform_ts=item.get("ts", "")))
                continue
            user_id = item.get("user", "")
            profile = self.resolve_user(user_id) if user_id else UserProfile(user_id="")
            replies.append(Message(
                role=ROLE_USER,
                content=self.remove_bot_mention(text),
                platform_ts=item.get("ts", ""),
                user_id=user_id,
                real_name=profile.real_name,
                email=profile.email,
            ))
        return replies

    def _from_bot(self, message: Dict[str, Any]) -> bool:
        return bool(message.get("bot_id")) or (bool(self.bot_user_id) and message.get("user") == self.bot_user_id)
