"""
mcpbridge Bridge - LLM <-> MCP control loop (scripted mode).

One user turn flows through four steps:

1. Build the system prompt: operator instructions plus a manifest of every
   tool in the catalog.
2. Ask the LLM. In native-tool mode the catalog is passed as function
   definitions instead of the manifest.
3. Look for a ``{"tool": ..., "args": ...}`` object in the reply. If one
   names a catalog tool, validate its arguments and dispatch it.
4. Re-prompt the LLM with the tool result and return the synthesized text.

At most one tool runs per turn and at most one re-prompt follows it.
"""

import json
import logging
import re
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from mcpbridge.core.errors import (
    BridgeError,
    LLMError,
    ToolArgsError,
    ToolCallError,
    is_timeout,
    user_message,
)
from mcpbridge.core.history import (
    ROLE_ASSISTANT,
    ROLE_TOOL,
    ConversationKey,
    HistoryStore,
    Message,
    format_history,
)
from mcpbridge.core.observers import BridgeObserver
from mcpbridge.mcp.registry import ToolRegistry
from mcpbridge.mcp.schema import CallResult, ToolCall, ToolInfo
from mcpbridge.providers.base import Provider, ProviderResponse
from mcpbridge.validation.config import BridgeConfig
from mcpbridge.validation.schema import validate_args

logger = logging.getLogger(__name__)

EMPTY_RESPONSE = "(LLM returned an empty response)"
DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."
CONTEXT_PREFIX = "Previous conversation: "

# Arguments filled in from the conversation when a tool's schema asks for them.
CHANNEL_ARG = "channel_id"
THREAD_ARG = "thread_ts"

TOOL_INSTRUCTIONS = (
    "You have access to the following tools. Analyze the user's request to determine if a tool is needed.\n\n"
    "TOOL USAGE INSTRUCTIONS:\n"
    "1. If a tool is appropriate AND you have ALL required arguments from the user's request, "
    "respond with ONLY the JSON object.\n"
    "2. The JSON MUST be properly formatted with no additional text before or after.\n"
    "3. Do NOT include explanations, markdown formatting, or extra text with the JSON.\n"
    "4. If any required arguments are missing, do NOT generate the JSON. "
    "Instead, ask the user for the missing information.\n"
    "5. If no tool is needed, respond naturally to the user's request.\n\n"
    "Available Tools:\n"
)

TOOL_FORMAT = (
    "\nEXACT JSON FORMAT FOR TOOL CALLS:\n"
    "{\n"
    '  "tool": "<tool_name>",\n'
    "  \"args\": { <arguments matching the tool's input schema> }\n"
    "}\n\n"
    "EXAMPLE:\n"
    "If the user asks 'Show me the files in the current directory' and 'list_dir' is an available tool:\n"
    "{\n"
    '  "tool": "list_dir",\n'
    '  "args": { "relative_workspace_path": "." }\n'
    "}\n\n"
    "IMPORTANT: Return ONLY the raw JSON object with no explanations or formatting when using a tool.\n"
)

REPROMPT_TEMPLATE = (
    "The user asked: '{question}'\n\n"
    "I used a tool and received the following result:\n"
    "```\n{result}\n```\n"
    "Please formulate a concise and helpful natural language response to the user "
    "based *only* on the user's original question and the tool result provided."
)

CLARIFY_TEMPLATE = (
    "The user asked: '{question}'\n\n"
    "I tried to use the tool '{tool}' but its arguments were invalid:\n"
    "{problems}\n"
    "Ask the user, in one short message, for the missing or corrected information. "
    "Do not respond with JSON."
)

_CODE_BLOCK = re.compile(r"```(?:json)?\s*(\{[\s\S]*?\})\s*```")


# ── Prompt construction ──────────────────────────────────────────────────


def build_tool_prompt(tools: List[ToolInfo]) -> str:
    """Tool manifest and calling rules. Empty when there are no tools."""
    if not tools:
        return ""
    parts = [TOOL_INSTRUCTIONS]
    parts.extend(tool.manifest_text() for tool in tools)
    parts.append(TOOL_FORMAT)
    return "".join(parts)


def build_system_prompt(
    tools: List[ToolInfo],
    custom_prompt: str = "",
    replace_tool_prompt: bool = False,
) -> str:
    """
    Compose the operator's instructions with the tool manifest.

    Args:
        tools: Tools to describe. Pass an empty list in native-tool mode.
        custom_prompt: Operator instructions, placed first.
        replace_tool_prompt: Use ``custom_prompt`` alone, without the manifest.

    Returns:
        The system prompt. Never empty.
    """
    custom_prompt = (custom_prompt or "").strip()
    if custom_prompt and replace_tool_prompt:
        return custom_prompt
    tool_prompt = build_tool_prompt(tools)
    sections = [s for s in (custom_prompt, tool_prompt) if s]
    if not sections:
        return DEFAULT_SYSTEM_PROMPT
    return "\n\n".join(sections)


# ── Tool-call detection ──────────────────────────────────────────────────


def _balanced_objects(text: str) -> List[str]:
    """Every brace-balanced ``{...}`` substring, respecting JSON strings."""
    found = []
    for start, char in enumerate(text):
        if char != "{":
            continue
        depth = 0
        in_string = False
        escaped = False
        for end in range(start, len(text)):
            c = text[end]
            if in_string:
                if escaped:
                    escaped = False
                elif c == "\\":
                    escaped = True
                elif c == '"':
                    in_string = False
                continue
            if c == '"':
                in_string = True
            elif c == "{":
                depth += 1
            elif c == "}":
                depth -= 1
                if depth == 0:
                    found.append(text[start:end + 1])
                    break
    return found


def _as_call(candidate: str) -> Optional[Dict[str, Any]]:
    try:
        parsed = json.loads(candidate)
    except ValueError:
        return None
    if isinstance(parsed, dict) and "tool" in parsed:
        return parsed
    return None


def extract_tool_json(text: str) -> Optional[Dict[str, Any]]:
    """
    Find a JSON object with a ``tool`` key in free-form LLM text.

    Tries the whole text, then fenced code blocks, then every balanced
    object in the text; among the latter the longest one wins.
    """
    stripped = (text or "").strip()
    if not stripped:
        return None

    parsed = _as_call(stripped)
    if parsed is not None:
        return parsed

    for match in _CODE_BLOCK.finditer(stripped):
        parsed = _as_call(match.group(1))
        if parsed is not None:
            return parsed

    best: Optional[Dict[str, Any]] = None
    best_len = -1
    for candidate in _balanced_objects(stripped):
        parsed = _as_call(candidate)
        if parsed is not None and len(candidate) > best_len:
            best, best_len = parsed, len(candidate)
    return best


def detect_tool_call(text: str, registry: ToolRegistry) -> Optional[ToolCall]:
    """Return the tool call in ``text`` if it names a catalog tool."""
    parsed = extract_tool_json(text)
    if parsed is None:
        return None
    name = parsed.get("tool")
    args = parsed.get("args")
    if not isinstance(name, str) or not name:
        logger.debug("Ignoring tool JSON without a tool name")
        return None
    if args is None:
        logger.debug("Ignoring tool JSON for '%s' without args", name)
        return None
    if not isinstance(args, dict):
        logger.debug("Ignoring tool JSON for '%s' with non-object args", name)
        return None
    if name not in registry:
        logger.info("LLM asked for unknown tool '%s'", name)
        return None
    return ToolCall(tool=name, args=args, raw=text)


# ── Bridge ───────────────────────────────────────────────────────────────


@dataclass
class TurnContext:
    """Per-turn inputs shared by the prompt, dispatch and history steps."""

    text: str
    key: ConversationKey
    history: List[Message]
    profile: Optional[Dict[str, str]] = None
    cancel: Optional[threading.Event] = None
    notify: Optional[Callable[[str], None]] = None

    @property
    def context(self) -> str:
        return format_history(self.history)


class Bridge:
    """
    Scripted-mode bridge: one LLM call, at most one tool, one re-prompt.

    Example:
        >>> bridge = Bridge(config, provider, registry, history)
        >>> reply = bridge.handle_prompt("list files in /tmp", key)
    """

    def __init__(
        self,
        config: BridgeConfig,
        provider: Provider,
        registry: ToolRegistry,
        history: HistoryStore,
        observer: Optional[BridgeObserver] = None,
    ):
        self.config = config
        self.provider = provider
        self.registry = registry
        self.history = history
        self.observer = observer or BridgeObserver()

    @property
    def native_tools(self) -> bool:
        return self.config.llm.use_native_tools

    def system_prompt(self) -> str:
        llm = self.config.llm
        tools = [] if self.native_tools else list(self.registry)
        return build_system_prompt(tools, llm.custom_prompt, llm.replace_tool_prompt)

    def handle_prompt(
        self,
        text: str,
        key: ConversationKey,
        profile: Optional[Dict[str, str]] = None,
        current: Optional[Message] = None,
        cancel: Optional[threading.Event] = None,
        notify: Optional[Callable[[str], None]] = None,
    ) -> str:
        """
        Answer one user turn and record the assistant side in history.

        Args:
            text: The user's message, bot mention already removed.
            key: Conversation the turn belongs to.
            profile: Optional ``user_id`` / ``real_name`` / ``email``.
            current: The history entry for this turn, left out of the context.
            cancel: Set to abandon pending tool calls.
            notify: Receives progress notices (agent mode only).

        Returns:
            Text to post back to the user.
        """
        turn = TurnContext(
            text=text,
            key=key,
            history=self.history.context(key, current),
            profile=profile,
            cancel=cancel,
            notify=notify,
        )
        return self._respond(turn)

    # ── Scripted flow ────────────────────────────────────────────────────

    def _respond(self, turn: TurnContext) -> str:
        tools = [tool.function_definition() for tool in self.registry] if self.native_tools else None
        try:
            response = self._chat(self._messages(self.system_prompt(), turn), tools=tools or None)
        except BridgeError as exc:
            return self._llm_failure(exc)

        raw = response.content
        call = self._native_call(response) if self.native_tools else detect_tool_call(raw, self.registry)
        if call is None:
            return self._finish(turn, raw)

        if not raw:
            raw = call.to_json()
        try:
            result = self.execute(call, turn)
        except ToolArgsError as exc:
            return self._clarify(turn, call, raw, exc)
        except BridgeError as exc:
            return self._tool_failure(turn, raw, exc)

        content = result.content or "{}"
        self._record(turn.key, ROLE_ASSISTANT, raw)
        self._record(turn.key, ROLE_TOOL, content)

        prompt = REPROMPT_TEMPLATE.format(question=turn.text, result=content)
        try:
            final = self._chat(self._messages(self._synthesis_prompt(), turn, prompt)).content
        except BridgeError as exc:
            logger.error("Re-prompt after tool '%s' failed: %s", call.tool, exc)
            return f"Tool Result:\n```{content}```\n\n(Error re-prompting LLM: {user_message(exc)})"
        return self._finish(turn, final)

    def _native_call(self, response: ProviderResponse) -> Optional[ToolCall]:
        if not response.tool_calls:
            return None
        first = response.tool_calls[0]
        if first.name not in self.registry:
            logger.info("LLM asked for unknown tool '%s'", first.name)
            return None
        call = ToolCall(tool=first.name, args=first.arguments)
        call.raw = call.to_json()
        return call

    def _synthesis_prompt(self) -> str:
        return (self.config.llm.custom_prompt or "").strip() or DEFAULT_SYSTEM_PROMPT

    def _clarify(self, turn: TurnContext, call: ToolCall, raw: str, exc: ToolArgsError) -> str:
        logger.info("Arguments for tool '%s' rejected: %s", call.tool, "; ".join(exc.problems))
        self._record(turn.key, ROLE_ASSISTANT, raw)
        prompt = CLARIFY_TEMPLATE.format(
            question=turn.text,
            tool=call.tool,
            problems="\n".join(f"- {p}" for p in exc.problems) or exc.message,
        )
        try:
            reply = self._chat(self._messages(self._synthesis_prompt(), turn, prompt)).content
        except BridgeError as err:
            return self._llm_failure(err)
        return self._finish(turn, reply)

    def _tool_failure(self, turn: TurnContext, raw: str, exc: BridgeError) -> str:
        if is_timeout(exc):
            message = f"Error executing tool call: {user_message(exc)} (code: {exc.code})"
        else:
            message = f"Error executing tool call: {exc.message} (code: {exc.code})"
        self._record(turn.key, ROLE_ASSISTANT, raw)
        self._record(turn.key, ROLE_TOOL, message)
        return message

    def _llm_failure(self, exc: BridgeError) -> str:
        logger.error("LLM request failed: %s", exc)
        if is_timeout(exc):
            return user_message(exc)
        if isinstance(exc, LLMError) and exc.status_code is not None:
            return f"LLM request failed (status {exc.status_code}): {exc.message}"
        return f"LLM request failed: {exc.message}"

    def _finish(self, turn: TurnContext, text: str) -> str:
        text = (text or "").strip()
        if not text:
            logger.warning("LLM returned an empty response for %s", turn.key)
            return EMPTY_RESPONSE
        self._record(turn.key, ROLE_ASSISTANT, text)
        return text

    # ── Tool dispatch ────────────────────────────────────────────────────

    def execute(self, call: ToolCall, turn: TurnContext) -> CallResult:
        """
        Validate, enrich and dispatch one tool call.

        Raises:
            ToolArgsError: If the arguments do not fit the tool's schema.
            ToolCallError: If the tool is gone, failed, or reported an error.
        """
        tool = self.registry.get(call.tool)
        if tool is None or tool.client is None:
            raise ToolCallError(f"tool '{call.tool}' is not available", data={"tool": call.tool})

        args = dict(call.args)
        if tool.declares(CHANNEL_ARG):
            args.setdefault(CHANNEL_ARG, turn.key.channel_id)
        if tool.declares(THREAD_ARG):
            args.setdefault(THREAD_ARG, turn.key.thread_ts)
        args = validate_args(tool.input_schema, args)

        logger.info("Dispatching tool '%s' to server '%s'", tool.name, tool.server)
        self.observer.on_tool_start(tool.name, tool.server, args)
        started = time.monotonic()
        error = None
        try:
            result = tool.client.call_tool(
                tool.name,
                args,
                timeout=self.config.timeouts.tool_processing_timeout,
                cancel=turn.cancel,
            )
            if result.is_error:
                error = result.content or "tool reported an error"
                raise ToolCallError(error, data={"tool": tool.name, "server": tool.server})
            return result
        except BridgeError as exc:
            error = error or exc.message
            raise
        finally:
            self.observer.on_tool_end(tool.name, tool.server, time.monotonic() - started, error)

    # ── LLM plumbing ─────────────────────────────────────────────────────

    def _messages(self, system_prompt: str, turn: TurnContext, prompt: Optional[str] = None) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}]
        context = turn.context
        if context:
            messages.append({"role": "system", "content": CONTEXT_PREFIX + context})
        messages.append({"role": "user", "content": turn.text if prompt is None else prompt})
        return messages

    def _chat(self, messages: List[Dict[str, Any]], tools: Optional[List[Dict[str, Any]]] = None) -> ProviderResponse:
        provider = self.provider
        self.observer.on_llm_request(provider.provider_name, provider.model, len(messages))
        started = time.monotonic()
        response = provider.chat(messages, tools=tools)
        self.observer.on_llm_response(
            provider.provider_name, provider.model, response.token_usage, time.monotonic() - started
        )
        return response

    def _record(self, key: ConversationKey, role: str, content: str) -> None:
        self.history.add(key, Message(role=role, content=content))
