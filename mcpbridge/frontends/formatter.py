"""
Chat text formatting for Slack.

LLM output is usually GitHub-flavoured Markdown; Slack renders its own
"mrkdwn" dialect. Replies that are a complete Block Kit payload are posted as
blocks with their ``text`` as the notification fallback.
"""

import json
import re
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

# Header text must be plain_text; section fields are capped at 10 and action
# elements at 5 by the Block Kit API.
MAX_SECTION_FIELDS = 10
MAX_ACTION_ELEMENTS = 5


class MessageType(str, Enum):
    PLAIN = "plain"
    MARKDOWN = "markdown"
    BLOCKS = "blocks"


_MARKDOWN_PATTERNS = [
    re.compile(r"\*[^*\n]+\*"),
    re.compile(r"_[^_\n]+_"),
    re.compile(r"```[\s\S]*?```"),
    re.compile(r"`[^`\n]+`"),
    re.compile(r"^>\s.+$", re.MULTILINE),
    re.compile(r"^\s*[•\-*]\s+\w+", re.MULTILINE),
    re.compile(r"^\s*\d+\.\s+\w+", re.MULTILINE),
    re.compile(r"\[[^\]]+\]\([^)]+\)"),
    re.compile(r"^#{1,6}\s+\S", re.MULTILINE),
]

_CODE_SPAN = re.compile(r"(```[\s\S]*?```|`[^`\n]+`)")
_BOLD = re.compile(r"\*\*(.+?)\*\*|__(.+?)__")
_STRIKE = re.compile(r"~~(.+?)~~")
_LINK = re.compile(r"\[([^\]]+)\]\((https?://[^)\s]+)\)")
_HEADING = re.compile(r"^#{1,6}\s+(.+?)\s*#*\s*$", re.MULTILINE)
_BULLET = re.compile(r"^(\s*)[-*+]\s+", re.MULTILINE)


def _valid_block(block: Any) -> bool:
    if not isinstance(block, dict):
        return False
    block_type = block.get("type")
    if not isinstance(block_type, str) or not block_type:
        return False
    if block_type == "section":
        if "text" not in block and "fields" not in block:
            return False
        if "fields" in block:
            fields = block["fields"]
            return isinstance(fields, list) and 0 < len(fields) <= MAX_SECTION_FIELDS
    elif block_type == "header":
        text = block.get("text")
        return isinstance(text, dict) and text.get("type") == "plain_text"
    elif block_type == "actions":
        elements = block.get("elements")
        return isinstance(elements, list) and 0 < len(elements) <= MAX_ACTION_ELEMENTS
    return True


def parse_block_kit(content: str) -> Optional[Dict[str, Any]]:
    """Return the payload if ``content`` is a JSON object with valid ``blocks``."""
    content = (content or "").strip()
    if not (content.startswith("{") and content.endswith("}")):
        return None
    try:
        payload = json.loads(content)
    except ValueError:
        return None
    blocks = payload.get("blocks") if isinstance(payload, dict) else None
    if not isinstance(blocks, list) or not blocks:
        return None
    if not all(_valid_block(block) for block in blocks):
        return None
    return payload


def detect_message_type(content: str) -> MessageType:
    if parse_block_kit(content) is not None:
        return MessageType.BLOCKS
    if any(pattern.search(content or "") for pattern in _MARKDOWN_PATTERNS):
        return MessageType.MARKDOWN
    return MessageType.PLAIN


def _convert_prose(text: str) -> str:
    text = _LINK.sub(lambda m: f"<{m.group(2)}|{m.group(1)}>", text)
    text = _HEADING.sub(lambda m: f"*{m.group(1)}*", text)
    text = _BOLD.sub(lambda m: f"*{m.group(1) or m.group(2)}*", text)
    text = _STRIKE.sub(r"~\1~", text)
    text = _BULLET.sub(r"\1• ", text)
    return text


def markdown_to_mrkdwn(text: str) -> str:
    """
    Convert common Markdown to Slack mrkdwn.

    Handles ``**bold**``, ``~~strike~~``, ``[text](url)`` links, ATX
    headings and ``-``/``*`` bullets. Code spans and fenced blocks are
    left untouched.
    """
    if not text:
        return ""
    parts = _CODE_SPAN.split(text)
    for i in range(0, len(parts), 2):
        parts[i] = _convert_prose(parts[i])
    for i in range(1, len(parts), 2):
        # Slack ignores the language tag after the opening fence.
        parts[i] = re.sub(r"^```[\w+-]+\n", "```\n", parts[i])
    return "".join(parts)


def context_block(text: str) -> Dict[str, Any]:
    """Small grey block used for progress notices."""
    return {"type": "context", "elements": [{"type": "mrkdwn", "text": text}]}


def format_message(text: str) -> Tuple[str, Optional[List[Dict[str, Any]]]]:
    """
    Prepare a reply for ``chat.postMessage``.

    Returns:
        ``(text, blocks)``. ``blocks`` is None for plain text; ``text`` is
        always set and serves as the fallback.
    """
    message_type = detect_message_type(text)
    if message_type == MessageType.BLOCKS:
        payload = parse_block_kit(text)
        fallback = payload.get("text") or "New message"
        return fallback, payload["blocks"]
    if message_type == MessageType.MARKDOWN:
        return markdown_to_mrkdwn(text), None
    return text, None
