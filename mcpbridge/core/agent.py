"""
mcpbridge Agent - provider-native tool-calling loop.

The model sees the catalog as function definitions and may call tools
repeatedly. Every iteration is one LLM request; tool calls returned with it
run in order and their results are appended to the conversation before the
next request. The loop stops when the model answers without tool calls or
when ``llm.maxAgentIterations`` requests have been made, in which case the
last model output is the answer.
"""

import logging

from mcpbridge.core.bridge import Bridge, TurnContext
from mcpbridge.core.errors import BridgeError, ToolArgsError
from mcpbridge.core.history import ROLE_ASSISTANT, ROLE_TOOL
from mcpbridge.mcp.schema import ToolCall

logger = logging.getLogger(__name__)

AGENT_PROMPT = (
    "You are a helpful assistant with access to tools. Call a tool whenever it helps "
    "answer the user's request, then answer the user in plain language."
)


class AgentBridge(Bridge):
    """
    Agent-mode bridge.

    Shares prompt composition, dispatch and history handling with the
    scripted bridge; only the control flow differs.
    """

    @property
    def max_iterations(self) -> int:
        return self.config.llm.max_agent_iterations

    def system_prompt(self) -> str:
        custom = (self.config.llm.custom_prompt or "").strip()
        if custom and self.config.llm.replace_tool_prompt:
            return custom
        return "\n\n".join(s for s in (custom, AGENT_PROMPT) if s)

    def _respond(self, turn: TurnContext) -> str:
        tools = [tool.function_definition() for tool in self.registry]
        messages = self._messages(self.system_prompt(), turn)
        last_output = ""

        for iteration in range(1, self.max_iterations + 1):
            try:
                response = self._chat(messages, tools=tools or None)
            except BridgeError as exc:
                return self._llm_failure(exc)

            if not response.tool_calls:
                self.observer.on_agent_step(iteration, "final answer")
                return self._finish(turn, response.content)
            if response.content.strip():
                last_output = response.content

            messages.append({
                "role": "assistant",
                "content": response.content,
                "tool_calls": [call.to_message_part() for call in response.tool_calls],
            })
            for provider_call in response.tool_calls:
                call = ToolCall(tool=provider_call.name, args=provider_call.arguments)
                notice = f"Calling tool `{call.tool}`..."
                self.observer.on_agent_step(iteration, notice)
                if turn.notify is not None:
                    turn.notify(notice)
                output = self._run_tool(call, turn)
                messages.append({"role": "tool", "tool_call_id": provider_call.id, "content": output})

        logger.warning("Agent stopped after %d iterations without a final answer", self.max_iterations)
        return self._finish(turn, last_output)

    def _run_tool(self, call: ToolCall, turn: TurnContext) -> str:
        """Execute ``call`` and return the text the model sees as its result."""
        self._record(turn.key, ROLE_ASSISTANT, call.to_json())
        if call.tool not in self.registry:
            output = f"Error: unknown tool '{call.tool}'"
        else:
            try:
                output = self.execute(call, turn).content or "{}"
            except ToolArgsError as exc:
                output = "Error: invalid arguments: " + "; ".join(exc.problems or [exc.message])
            except BridgeError as exc:
                output = f"Error executing tool call: {exc.message} (code: {exc.code})"
        self._record(turn.key, ROLE_TOOL, output)
        return output

