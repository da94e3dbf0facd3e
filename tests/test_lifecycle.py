"""Tests for the application lifecycle and hot reload."""

import threading
import time
from unittest.mock import MagicMock

import pytest
from conftest import FakeProvider, make_config

from mcpbridge.core.agent import AgentBridge
from mcpbridge.core.bridge import Bridge
from mcpbridge.core.errors import ConfigError
from mcpbridge.core.history import ConversationKey, HistoryStore, Message
from mcpbridge.core.lifecycle import Application, Snapshot, build_snapshot
from mcpbridge.frontends.base import ChatEvent, EventKind, UserProfile
from mcpbridge.frontends.handler import ChatHandler
from mcpbridge.mcp.registry import ToolRegistry


class StubPool:
    def __init__(self, config):
        self.config = config
        self.closed = False
        self.reports = {}

    def start(self):
        return ToolRegistry()

    def close(self):
        self.closed = True


def stub_snapshot(config, history, generation=1):
    return Snapshot(
        config=config,
        pool=StubPool(config),
        registry=ToolRegistry(),
        provider=FakeProvider(),
        bridge=MagicMock(),
        security=MagicMock(),
        generation=generation,
    )


class BlockingBridge:
    """Bridge whose turn sits inside a tool call until released."""

    def __init__(self):
        self.started = threading.Event()
        self.release = threading.Event()

    def handle_prompt(self, text, key, profile=None, current=None, cancel=None, notify=None):
        self.started.set()
        self.release.wait(5)
        return "tool result summarised"


class SequenceLoader:
    """Returns the next item on each call; exceptions are raised."""

    def __init__(self, *items):
        self.items = list(items)

    def __call__(self):
        item = self.items.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class TestBuildSnapshot:
    """Tests for build_snapshot."""

    def test_scripted_mode(self):
        """Test the scripted bridge is wired with provider options."""
        factory = MagicMock(return_value=FakeProvider())
        config = make_config(timeouts={"httpRequestTimeout": "45s"})

        snapshot = build_snapshot(config, HistoryStore(), pool_factory=StubPool, provider_factory=factory)

        assert type(snapshot.bridge) is Bridge
        args, kwargs = factory.call_args
        assert args == (config.llm,)
        assert kwargs["timeout"] == 45.0
        assert kwargs["policy"].max_attempts == 3

    def test_agent_mode(self):
        """Test useAgent selects the agent bridge."""
        snapshot = build_snapshot(
            make_config(llm={"useAgent": True}),
            HistoryStore(),
            pool_factory=StubPool,
            provider_factory=lambda *a, **k: FakeProvider(),
        )
        assert isinstance(snapshot.bridge, AgentBridge)
        assert snapshot.security.enabled is False


class TestApplication:
    """Tests for Application start and reload."""

    def test_snapshot_before_start(self):
        """Test the snapshot is unavailable before start."""
        with pytest.raises(RuntimeError):
            Application(SequenceLoader()).snapshot

    def test_start_creates_history_from_config(self):
        """Test the history ring size follows slack.messageHistory."""
        app = Application(SequenceLoader(make_config(slack={"messageHistory": 7})), snapshot_builder=stub_snapshot)
        app.start()
        assert app.history.limit == 7
        assert app.snapshot.generation == 1

    def test_reload_swaps_and_closes_previous(self):
        """Test a good reload replaces the snapshot and closes the old pool."""
        first, second = make_config(), make_config(llm={"provider": "ollama"})
        app = Application(SequenceLoader(first, second), snapshot_builder=stub_snapshot)
        old = app.start()

        assert app.reload() is True

        assert app.snapshot is not old
        assert app.snapshot.generation == 2
        assert app.snapshot.config.llm.provider == "ollama"
        assert old.pool.closed is True

    def test_failed_reload_keeps_current(self):
        """Test an invalid configuration leaves the running snapshot in place."""
        app = Application(SequenceLoader(make_config(), ConfigError("bad file")), snapshot_builder=stub_snapshot)
        current = app.start()

        assert app.reload() is False

        assert app.snapshot is current
        assert current.pool.closed is False

    def test_history_survives_reload(self):
        """Test conversation history is shared across generations."""
        app = Application(SequenceLoader(make_config(), make_config()), snapshot_builder=stub_snapshot)
        app.start()
        key = ConversationKey("C1", "1")
        app.history.add(key, Message(role="user", content="remember me"))

        app.reload()

        assert [m.content for m in app.history.snapshot(key)] == ["remember me"]

    def test_reloader_disabled(self):
        """Test no thread is started when reload is off."""
        app = Application(SequenceLoader(make_config()), snapshot_builder=stub_snapshot)
        app.start()
        assert app.start_reloader() is None
        app.shutdown()

    def test_requested_reload_runs_on_reloader(self):
        """Test request_reload wakes the reload thread."""
        reload_config = make_config(reload={"enabled": True, "interval": "30m"})
        app = Application(SequenceLoader(reload_config, make_config()), snapshot_builder=stub_snapshot)
        app.start()
        thread = app.start_reloader()

        app.request_reload()
        for _ in range(50):
            if app.snapshot.generation == 2:
                break
            thread.join(0.05)

        assert app.snapshot.generation == 2
        app.shutdown()
        assert not thread.is_alive()
        assert app.snapshot.pool.closed is True

    def test_reload_waits_for_in_flight_turn(self):
        """Test the old pool stays open until a turn blocked in a tool call finishes."""
        bridge = BlockingBridge()

        def builder(config, history, generation=1):
            snapshot = stub_snapshot(config, history, generation)
            snapshot.bridge = bridge
            return snapshot

        app = Application(SequenceLoader(make_config(), make_config()), snapshot_builder=builder)
        old = app.start()
        frontend = MagicMock()
        frontend.post_message.return_value = None
        frontend.resolve_user.return_value = UserProfile(user_id="U1")
        handler = ChatHandler(frontend, lambda: app.snapshot, app.history)

        worker = handler.dispatch(ChatEvent(
            kind=EventKind.MESSAGE, channel_id="D1", channel_type="im", user_id="U1", text="look it up", ts="1.0",
        ))
        assert bridge.started.wait(5)

        assert app.reload() is True
        assert old.leases == 1
        assert old.pool.closed is False

        bridge.release.set()
        worker.join(5)
        handler.close()

        assert old.leases == 0
        assert old.pool.closed is True
        assert app.snapshot.pool.closed is False

    def test_retired_pool_closed_after_grace(self):
        """Test a lease that is never released cannot keep the old pool open forever."""
        config = make_config(timeouts={"bridgeOperationTimeout": "50ms"})
        app = Application(SequenceLoader(config, make_config()), snapshot_builder=stub_snapshot)
        old = app.start()
        assert old.acquire() is True

        app.reload()
        assert old.pool.closed is False
        for _ in range(50):
            if old.pool.closed:
                break
            time.sleep(0.02)

        assert old.pool.closed is True
        assert old.acquire() is False
        old.release()


class TestSnapshotLeases:
    """Tests for Snapshot lease counting."""

    def test_idle_retire_closes_immediately(self):
        """Test retiring an unused snapshot closes its pool right away."""
        snapshot = stub_snapshot(make_config(), HistoryStore())

        snapshot.retire(grace=60)

        assert snapshot.pool.closed is True

    def test_last_release_closes(self):
        """Test the pool closes on the last release, not the first."""
        snapshot = stub_snapshot(make_config(), HistoryStore())
        snapshot.acquire()
        snapshot.acquire()

        snapshot.retire(grace=60)
        snapshot.release()
        assert snapshot.pool.closed is False
        snapshot.release()
        assert snapshot.pool.closed is True

    def test_release_without_retire_keeps_pool(self):
        """Test the current snapshot is not closed when turns finish."""
        snapshot = stub_snapshot(make_config(), HistoryStore())
        snapshot.acquire()
        snapshot.release()
        assert snapshot.pool.closed is False
