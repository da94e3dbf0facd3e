"""
Application lifecycle - build the object graph, hot-reload it, shut it down.

Everything that depends on the configuration lives in one ``Snapshot``:
the client pool, the tool catalog, the LLM provider, the bridge and the
access controller. A reload builds a complete new snapshot and swaps the
single ``Application.snapshot`` reference. Turns already running keep the
snapshot they started with; the previous client pool is closed once the
last of them finishes, or after ``bridgeOperationTimeout`` at the latest.
Conversation history is not part of the snapshot and survives reloads.
"""

import logging
import signal
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional

from mcpbridge.core.agent import AgentBridge
from mcpbridge.core.bridge import Bridge
from mcpbridge.core.errors import BridgeError
from mcpbridge.core.history import HistoryStore
from mcpbridge.core.http import RetryPolicy
from mcpbridge.core.observers import build_observer
from mcpbridge.core.security import AccessController
from mcpbridge.mcp.registry import ClientPool, ToolRegistry
from mcpbridge.providers.base import Provider, ProviderFactory
from mcpbridge.validation.config import BridgeConfig, ConfigLoader

logger = logging.getLogger(__name__)


@dataclass
class Snapshot:
    """
    One consistent generation of configuration-derived objects.

    Turns hold a lease on the snapshot they run against. A retired snapshot
    closes its client pool when the last lease is released, or when the
    grace period runs out, whichever comes first.
    """

    config: BridgeConfig
    pool: ClientPool
    registry: ToolRegistry
    provider: Provider
    bridge: Bridge
    security: AccessController
    generation: int = 1
    _leases: int = field(default=0, init=False, repr=False, compare=False)
    _retired: bool = field(default=False, init=False, repr=False, compare=False)
    _closed: bool = field(default=False, init=False, repr=False, compare=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False, compare=False)

    @property
    def leases(self) -> int:
        return self._leases

    def acquire(self) -> bool:
        """Take a lease; False once the pool has been closed."""
        with self._lock:
            if self._closed:
                return False
            self._leases += 1
        return True

    def release(self) -> None:
        with self._lock:
            self._leases -= 1
            idle = self._retired and self._leases <= 0
        if idle:
            self.close()

    def retire(self, grace: float) -> None:
        """Close the pool now if idle, otherwise after the last lease or ``grace`` seconds."""
        with self._lock:
            self._retired = True
            busy = self._leases
        if not busy:
            self.close()
            return
        logger.info("Generation %d retired with %d turn(s) in flight", self.generation, busy)
        timer = threading.Timer(grace, self._expire)
        timer.daemon = True
        timer.start()

    def _expire(self) -> None:
        if not self._closed:
            logger.warning("Generation %d grace period over, closing MCP clients", self.generation)
        self.close()

    def close(self) -> None:
        """Close the client pool once."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        if self.pool is not None:
            self.pool.close()


def build_snapshot(
    config: BridgeConfig,
    history: HistoryStore,
    pool_factory: Callable[[BridgeConfig], ClientPool] = ClientPool,
    provider_factory: Callable[..., Provider] = ProviderFactory.create,
    generation: int = 1,
) -> Snapshot:
    """
    Start the MCP servers and wire a bridge around them.

    Raises:
        BridgeError: If the LLM provider cannot be created. MCP server
            failures do not raise; they are recorded in ``pool.reports``.
    """
    provider = provider_factory(
        config.llm,
        timeout=config.timeouts.http_request_timeout,
        policy=RetryPolicy.from_config(config.retry),
    )
    pool = pool_factory(config)
    registry = pool.start()
    observer = build_observer(config.observability)
    bridge_cls = AgentBridge if config.llm.use_agent else Bridge
    bridge = bridge_cls(config, provider, registry, history, observer=observer)
    logger.info(
        "Snapshot %d ready: provider=%s model=%s mode=%s tools=%d",
        generation,
        provider.provider_name,
        provider.model,
        "agent" if config.llm.use_agent else "scripted",
        len(registry),
    )
    return Snapshot(
        config=config,
        pool=pool,
        registry=registry,
        provider=provider,
        bridge=bridge,
        security=AccessController(config.security),
        generation=generation,
    )


class Application:
    """
    Owns the current snapshot and the reload timer.

    Example:
        >>> app = Application(lambda: load_config("config.json"))
        >>> snapshot = app.start()
        >>> app.start_reloader()
        >>> ...
        >>> app.shutdown()
    """

    def __init__(
        self,
        loader: ConfigLoader,
        history: Optional[HistoryStore] = None,
        snapshot_builder: Callable[..., Snapshot] = build_snapshot,
    ):
        self._loader = loader
        self._build = snapshot_builder
        self.history = history
        self._snapshot: Optional[Snapshot] = None
        self._swap_lock = threading.Lock()
        self._stop = threading.Event()
        self._reload_requested = threading.Event()
        self._reloader: Optional[threading.Thread] = None

    @property
    def snapshot(self) -> Snapshot:
        snapshot = self._snapshot
        if snapshot is None:
            raise RuntimeError("application has not been started")
        return snapshot

    # ── Lifecycle ─────────────────────────────────────────────────────────

    def start(self) -> Snapshot:
        """Load the configuration and build the first snapshot."""
        config = self._loader()
        if self.history is None:
            self.history = HistoryStore(limit=config.slack.message_history)
        self._snapshot = self._build(config, self.history, generation=1)
        return self._snapshot

    def reload(self) -> bool:
        """
        Rebuild the snapshot from a fresh configuration load.

        Returns:
            True if the new snapshot was swapped in. On failure the current
            snapshot stays active.
        """
        with self._swap_lock:
            previous = self._snapshot
            generation = previous.generation + 1 if previous else 1
            logger.info("Reloading configuration (generation %d)", generation)
            try:
                config = self._loader()
                fresh = self._build(config, self.history, generation=generation)
            except (BridgeError, OSError) as exc:
                logger.error("Reload failed, keeping current configuration: %s", exc)
                return False
            self._snapshot = fresh

        if previous is not None:
            previous.retire(grace=previous.config.timeouts.bridge_operation_timeout)
        logger.info("Configuration reloaded")
        return True

    def request_reload(self) -> None:
        """Ask the reload thread to reload at its next wake-up."""
        self._reload_requested.set()

    def start_reloader(self) -> Optional[threading.Thread]:
        """Start the periodic reload thread if ``reload.enabled`` is set."""
        reload = self.snapshot.config.reload
        if not reload.enabled:
            return None
        logger.info("Periodic reload every %.0fs", reload.interval)
        self._reloader = threading.Thread(
            target=self._reload_loop, args=(reload.interval,), name="config-reload", daemon=True
        )
        self._reloader.start()
        return self._reloader

    def _reload_loop(self, interval: float) -> None:
        while not self._stop.is_set():
            self._reload_requested.wait(interval)
            if self._stop.is_set():
                return
            self._reload_requested.clear()
            self.reload()

    def install_signal_handlers(self) -> None:
        """SIGHUP triggers a reload where the platform has it."""
        if hasattr(signal, "SIGHUP"):
            signal.signal(signal.SIGHUP, lambda signum, frame: self.request_reload())

    def shutdown(self) -> None:
        """Stop the reload thread and close every MCP client."""
        self._stop.set()
        self._reload_requested.set()
        if self._reloader is not None:
            self._reloader.join(timeout=5)
        snapshot = self._snapshot
        if snapshot is not None:
            snapshot.close()
        logger.info("Shutdown complete")
