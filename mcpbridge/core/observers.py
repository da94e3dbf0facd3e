"""Optional monitoring hooks around LLM and tool activity."""

import logging
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class BridgeObserver:
    """No-op base; override the hooks you care about."""

    def on_llm_request(self, provider: str, model: str, message_count: int) -> None:
        pass

    def on_llm_response(self, provider: str, model: str, token_usage: int, duration: float) -> None:
        pass

    def on_tool_start(self, tool: str, server: str, args: Dict[str, Any]) -> None:
        pass

    def on_tool_end(self, tool: str, server: str, duration: float, error: Optional[str] = None) -> None:
        pass

    def on_agent_step(self, iteration: int, notice: str) -> None:
        pass


class LoggingObserver(BridgeObserver):
    """Writes every hook to the ``mcpbridge.trace`` logger."""

    def __init__(self, name: str = "mcpbridge.trace"):
        self.log = logging.getLogger(name)

    def on_llm_request(self, provider, model, message_count):
        self.log.info("llm.request provider=%s model=%s messages=%d", provider, model, message_count)

    def on_llm_response(self, provider, model, token_usage, duration):
        self.log.info("llm.response provider=%s model=%s tokens=%d duration=%.2fs", provider, model, token_usage, duration)

    def on_tool_start(self, tool, server, args):
        self.log.info("tool.start tool=%s server=%s args=%s", tool, server, sorted(args))

    def on_tool_end(self, tool, server, duration, error=None):
        if error:
            self.log.info("tool.end tool=%s server=%s duration=%.2fs error=%s", tool, server, duration, error)
        else:
            self.log.info("tool.end tool=%s server=%s duration=%.2fs", tool, server, duration)

    def on_agent_step(self, iteration, notice):
        self.log.info("agent.step iteration=%d %s", iteration, notice)


class CompositeObserver(BridgeObserver):
    """Fans every hook out to a list of observers.

    A failing observer is logged and skipped.
    """

    def __init__(self, observers: Optional[List[BridgeObserver]] = None):
        self.observers = list(observers or [])

    def _emit(self, hook: str, *args, **kwargs) -> None:
        for observer in self.observers:
            try:
                getattr(observer, hook)(*args, **kwargs)
            except Exception:
                logger.exception("Observer %s failed in %s", type(observer).__name__, hook)

    def on_llm_request(self, *args, **kwargs):
        self._emit("on_llm_request", *args, **kwargs)

    def on_llm_response(self, *args, **kwargs):
        self._emit("on_llm_response", *args, **kwargs)

    def on_tool_start(self, *args, **kwargs):
        self._emit("on_tool_start", *args, **kwargs)

    def on_tool_end(self, *args, **kwargs):
        self._emit("on_tool_end", *args, **kwargs)

    def on_agent_step(self, *args, **kwargs):
        self._emit("on_agent_step", *args, **kwargs)


def build_observer(config: Any) -> BridgeObserver:
    """Observer for an ``observability`` config section."""
    if not config.enabled:
        return BridgeObserver()
    if config.provider == "simple":
        return LoggingObserver()
    logger.warning("Unknown observability provider '%s', tracing disabled", config.provider)
    return BridgeObserver()
