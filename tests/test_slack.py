"""Tests for the Slack socket-mode front end."""

import json
from unittest.mock import MagicMock

import pytest
from slack_sdk.errors import SlackApiError
from slack_sdk.socket_mode.request import SocketModeRequest

from mcpbridge.core.errors import FrontendError
from mcpbridge.core.history import ROLE_ASSISTANT, ROLE_USER
from mcpbridge.frontends.base import EventKind
from mcpbridge.frontends.slack import SlackFrontend
from mcpbridge.validation.config import SlackConfig

BLOCKS_REPLY = json.dumps({
    "text": "Deploy finished",
    "blocks": [{"type": "section", "text": {"type": "mrkdwn", "text": "*Deploy* finished"}}],
})


def api_error(code):
    return SlackApiError(code, {"ok": False, "error": code})


@pytest.fixture
def web():
    client = MagicMock()
    client.users_info.return_value = {"user": {"real_name": "Alice Example", "profile": {"email": "alice@example.com"}}}
    return client


@pytest.fixture
def socket():
    client = MagicMock()
    client.socket_mode_request_listeners = []
    return client


@pytest.fixture
def slack(web, socket):
    frontend = SlackFrontend(
        SlackConfig(bot_token="xoxb-test", app_token="xapp-test"), web_client=web, socket_client=socket
    )
    frontend.bot_user_id = "UBOT"
    return frontend


class TestConnection:
    """Tests for run, request handling and acknowledgement."""

    def test_run_identifies_bot(self, slack, web, socket):
        """Test auth.test sets the bot user and the listener is registered."""
        slack.bot_user_id = ""
        web.auth_test.return_value = {"user_id": "UBOT", "user": "mcpbot"}

        slack.run()

        assert slack.bot_user_id == "UBOT"
        assert socket.socket_mode_request_listeners == [slack._on_request]
        socket.connect.assert_called_once_with()
        assert [slack.events.get_nowait().kind for _ in range(2)] == [EventKind.CONNECTING, EventKind.CONNECTED]

    def test_run_auth_failure(self, slack, web):
        """Test a rejected token surfaces as FrontendError."""
        web.auth_test.side_effect = api_error("invalid_auth")

        with pytest.raises(FrontendError, match="invalid_auth"):
            slack.run()

    def test_non_events_envelopes_acked_immediately(self, slack):
        """Test slash commands and the like are acknowledged on arrival."""
        client = MagicMock()
        request = SocketModeRequest(type="slash_commands", envelope_id="env-9", payload={})

        slack._on_request(client, request)

        response = client.send_socket_mode_response.call_args[0][0]
        assert response.envelope_id == "env-9"
        event = slack.events.get_nowait()
        assert event.kind == EventKind.OTHER
        assert event.raw == {"type": "slash_commands"}

    def test_events_api_acked_after_dispatch(self, slack, socket):
        """Test events-API envelopes are queued and acknowledged through ack."""
        client = MagicMock()
        payload = {"event": {"type": "message", "channel": "D1", "user": "U1", "text": "hi", "ts": "1.0"}}

        slack._on_request(client, SocketModeRequest(type="events_api", envelope_id="env-1", payload=payload))

        client.send_socket_mode_response.assert_not_called()
        event = slack.events.get_nowait()
        slack.ack(event)
        assert socket.send_socket_mode_response.call_args[0][0].envelope_id == "env-1"

    def test_ack_without_envelope(self, slack, socket):
        """Test events with no envelope send nothing."""
        slack.ack(SlackFrontend.to_event("", {"event": {"type": "message"}}))
        socket.send_socket_mode_response.assert_not_called()


class TestToEvent:
    """Tests for SlackFrontend.to_event."""

    def test_mention(self):
        """Test an app_mention payload is normalized."""
        event = SlackFrontend.to_event("env-1", {"event": {
            "type": "app_mention", "channel": "C1", "user": "U1", "text": "<@UBOT> hi",
            "ts": "2.0", "thread_ts": "1.0",
        }})

        assert event.kind == EventKind.MENTION
        assert (event.channel_id, event.user_id, event.ts, event.thread_ts) == ("C1", "U1", "2.0", "1.0")
        assert event.envelope_id == "env-1"

    def test_direct_message(self):
        """Test channel type, subtype and bot id are carried over."""
        event = SlackFrontend.to_event("env-2", {"event": {
            "type": "message", "channel": "D1", "channel_type": "im", "subtype": "bot_message", "bot_id": "B1",
        }})

        assert event.kind == EventKind.MESSAGE
        assert event.is_direct
        assert (event.subtype, event.bot_id) == ("bot_message", "B1")

    def test_other_and_empty(self):
        """Test unknown event types and empty payloads become OTHER."""
        assert SlackFrontend.to_event("e", {"event": {"type": "reaction_added"}}).kind == EventKind.OTHER
        assert SlackFrontend.to_event("e", {}).kind == EventKind.OTHER


class TestMentions:
    """Tests for remove_bot_mention."""

    @pytest.mark.parametrize("text, expected", [
        ("<@UBOT> what time is it", "what time is it"),
        ("<@UBOT|mcpbot> what time is it", "what time is it"),
        ("ask <@UBOT>", "ask"),
        ("<@UOTHER> hello", "<@UOTHER> hello"),
    ])
    def test_strip(self, slack, text, expected):
        """Test only the bot's own mention is removed, with or without a label."""
        assert slack.remove_bot_mention(text) == expected

    def test_unknown_bot_user(self, slack):
        """Test text is only trimmed before auth.test has run."""
        slack.bot_user_id = ""
        assert slack.remove_bot_mention(" <@UBOT> hi ") == "<@UBOT> hi"


class TestPosting:
    """Tests for post_message, post_notice and delete_thinking."""

    def test_plain_post(self, slack, web):
        """Test plain text is posted in-thread without blocks."""
        web.chat_postMessage.return_value = {"ts": "3.0"}

        assert slack.post_message("C1", "1.0", "hello") == "3.0"
        web.chat_postMessage.assert_called_once_with(channel="C1", text="hello", thread_ts="1.0")

    def test_empty_post_skipped(self, slack, web):
        """Test blank replies are never sent."""
        assert slack.post_message("C1", "1.0", "  ") is None
        web.chat_postMessage.assert_not_called()

    def test_block_kit_falls_back_to_text(self, slack, web):
        """Test a rejected Block Kit post is retried once as raw text."""
        web.chat_postMessage.side_effect = [api_error("invalid_blocks"), {"ts": "4.0"}]

        assert slack.post_message("C1", "1.0", BLOCKS_REPLY) == "4.0"

        first, second = [c.kwargs for c in web.chat_postMessage.call_args_list]
        assert first["text"] == "Deploy finished"
        assert first["blocks"][0]["type"] == "section"
        assert second == {"channel": "C1", "text": BLOCKS_REPLY, "thread_ts": "1.0"}

    def test_plain_failure_not_retried(self, slack, web):
        """Test a failed plain post gives up without a second call."""
        web.chat_postMessage.side_effect = api_error("channel_not_found")

        assert slack.post_message("C1", "", "hello") is None
        assert web.chat_postMessage.call_count == 1

    def test_notice_is_context_block(self, slack, web):
        """Test notices are posted as a context block."""
        web.chat_postMessage.return_value = {"ts": "5.0"}

        assert slack.post_notice("C1", "1.0", "Calling tool `search`...") == "5.0"
        assert web.chat_postMessage.call_args.kwargs["blocks"][0]["type"] == "context"

    def test_delete_thinking_picks_newest_bot_message(self, slack, web):
        """Test only the newest matching bot message is deleted."""
        web.conversations_replies.return_value = {"messages": [
            {"ts": "1700000000.000100", "user": "U1", "text": "question"},
            {"ts": "1700000000.000200", "bot_id": "B1", "text": "Thinking..."},
            {"ts": "1700000000.000300", "user": "UBOT", "text": "Thinking..."},
            {"ts": "1700000000.000500", "user": "U1", "text": "Thinking..."},
            {"ts": "1700000000.000400", "bot_id": "B1", "text": "answer"},
        ]}

        assert slack.delete_thinking("C1", "1700000000.000100", "Thinking...") is True
        web.chat_delete.assert_called_once_with(channel="C1", ts="1700000000.000300")

    def test_delete_thinking_top_level_uses_history(self, slack, web):
        """Test a post outside a thread is found in the channel history."""
        web.conversations_history.return_value = {"messages": []}

        assert slack.delete_thinking("D1", "", "Thinking...") is False
        web.conversations_history.assert_called_once_with(channel="D1", limit=20)
        web.chat_delete.assert_not_called()

    def test_delete_thinking_api_error(self, slack, web):
        """Test API failures are reported as not deleted."""
        web.conversations_replies.side_effect = api_error("ratelimited")
        assert slack.delete_thinking("C1", "1.0", "Thinking...") is False


class TestUsersAndThreads:
    """Tests for resolve_user, is_valid_user and fetch_thread_replies."""

    def test_profile_cached(self, slack, web):
        """Test users.info is called once per user."""
        first = slack.resolve_user("U1")
        second = slack.resolve_user("U1")

        assert first is second
        assert (first.real_name, first.email) == ("Alice Example", "alice@example.com")
        web.users_info.assert_called_once_with(user="U1")

    def test_failed_lookup_not_cached(self, slack, web):
        """Test a failed lookup returns a bare profile and is retried later."""
        web.users_info.side_effect = [api_error("user_not_found"), web.users_info.return_value]

        assert slack.resolve_user("U1").real_name == ""
        assert slack.resolve_user("U1").real_name == "Alice Example"

    def test_is_valid_user(self, slack, web):
        """Test deleted, unknown and empty users are invalid."""
        assert slack.is_valid_user("U1") is True
        assert slack.is_valid_user("") is False
        web.users_info.return_value = {"user": {"deleted": True}}
        assert slack.is_valid_user("U1") is False
        web.users_info.side_effect = api_error("user_not_found")
        assert slack.is_valid_user("U1") is False

    def test_fetch_thread_replies(self, slack, web):
        """Test roles are assigned and the thinking placeholder is dropped."""
        web.conversations_replies.return_value = {"messages": [
            {"ts": "1.0", "user": "U1", "text": "<@UBOT> what is up"},
            {"ts": "1.1", "bot_id": "B1", "text": "Thinking..."},
            {"ts": "1.2", "user": "UBOT", "text": "All systems normal."},
            {"ts": "1.3", "user": "U2", "text": ""},
            {"ts": "1.4", "user": "U1", "text": "<@UBOT|mcpbot> thanks"},
        ]}

        replies = slack.fetch_thread_replies("C1", "1.0")

        assert [(m.role, m.content, m.platform_ts) for m in replies] == [
            (ROLE_USER, "what is up", "1.0"),
            (ROLE_ASSISTANT, "All systems normal.", "1.2"),
            (ROLE_USER, "thanks", "1.4"),
        ]
        assert replies[0].real_name == "Alice Example"
        web.users_info.assert_called_once_with(user="U1")

    def test_fetch_failure_returns_nothing(self, slack, web):
        """Test an API error yields no replies."""
        web.conversations_replies.side_effect = api_error("thread_not_found")
        assert slack.fetch_thread_replies("C1", "1.0") == []
