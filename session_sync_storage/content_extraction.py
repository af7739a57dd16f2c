"""
Content extraction utilities for indexing and display.

Plugins deliver message parts in several shapes:
- Plain strings: "Hello"
- Text objects: {"text": "Hello"} or {"content": "Hello"}
- Tool calls: {"name" | "toolName": ..., "args" | "arguments" | "input": {...}}
- Tool results: {"result" | "output": ...} or the raw payload itself

Every function here is pure and never raises on unexpected shapes; unknown
payloads degrade to empty text or a placeholder tool name.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

import tiktoken

logger = logging.getLogger(__name__)

UNKNOWN_TOOL_NAME = "Unknown Tool"

TEXT_PART_TYPES = frozenset({"text"})
TOOL_CALL_PART_TYPES = frozenset({"tool-call", "tool_call", "tool-use", "tool_use"})
TOOL_RESULT_PART_TYPES = frozenset({"tool-result", "tool_result"})

# Joins the text parts of one message everywhere they are flattened
PART_SEPARATOR = " "

# Embedding model token limit (text-embedding-3-* use cl100k_base encoding)
EMBED_TOKEN_LIMIT = 8192
_TIKTOKEN_ENCODING = "cl100k_base"

_MAX_NESTING = 4

# Lazy-initialized encoder (avoid import-time cost)
_encoder: tiktoken.Encoding | None = None


def _get_encoder() -> tiktoken.Encoding:
    """Get or create the tiktoken encoder (lazy singleton)."""
    global _encoder
    if _encoder is None:
        _encoder = tiktoken.get_encoding(_TIKTOKEN_ENCODING)
    return _encoder


def count_tokens(text: str) -> int:
    """Count tokens in text using the embedding model's tokenizer."""
    return len(_get_encoder().encode(text))


def truncate_to_tokens(text: str, max_tokens: int) -> str:
    """Truncate text to fit within a token limit.

    Decodes back to a valid string after truncating the token sequence.
    Returns the original text if it is already within the limit.
    """
    encoder = _get_encoder()
    tokens = encoder.encode(text)
    if len(tokens) <= max_tokens:
        return text
    return encoder.decode(tokens[:max_tokens])


# =============================================================================
# Tagged part variants
# =============================================================================


@dataclass(frozen=True)
class TextPart:
    """A plain text fragment."""

    text: str
    type: str = "text"


@dataclass(frozen=True)
class ToolCallPart:
    """A tool invocation with its display name and arguments."""

    name: str
    args: Any = field(default_factory=dict)
    type: str = "tool-call"


@dataclass(frozen=True)
class ToolResultPart:
    """The output of a tool invocation, stringified for display."""

    value: str
    type: str = "tool-result"


@dataclass(frozen=True)
class OtherPart:
    """Any part type this library does not interpret (reasoning, files, ...)."""

    type: str
    content: Any = None


PartContent = TextPart | ToolCallPart | ToolResultPart | OtherPart


# =============================================================================
# Extraction
# =============================================================================


def extract_text(content: Any) -> str:
    """
    Flatten a part's content into text.

    Strings are returned as-is. Mappings yield their ``text`` field, else
    their ``content`` field (which may itself be nested). Anything else
    yields an empty string.

    Examples:
        >>> extract_text("hello")
        'hello'
        >>> extract_text({"text": "hello"})
        'hello'
        >>> extract_text({"content": "hello"})
        'hello'
        >>> extract_text(42)
        ''
    """
    return _extract_text(content, 0)


def _extract_text(content: Any, depth: int) -> str:
    if isinstance(content, str):
        return content
    if not isinstance(content, dict) or depth >= _MAX_NESTING:
        return ""

    for key in ("text", "content"):
        value = content.get(key)
        if value:
            text = _extract_text(value, depth + 1)
            if text:
                return text
    return ""


def extract_tool_call(content: Any) -> ToolCallPart:
    """
    Extract a tool invocation's name and arguments.

    Name comes from ``name`` or ``toolName`` (falling back to "Unknown Tool"),
    args from ``args``, ``arguments`` or ``input`` (falling back to ``{}``).
    """
    if not isinstance(content, dict):
        return ToolCallPart(name=UNKNOWN_TOOL_NAME, args={})

    name = content.get("name") or content.get("toolName")
    if not isinstance(name, str) or not name:
        name = UNKNOWN_TOOL_NAME

    args = content.get("args") or content.get("arguments") or content.get("input") or {}
    return ToolCallPart(name=name, args=args)


def extract_tool_result(content: Any) -> str:
    """
    Extract a tool result as display text.

    Uses ``result`` or ``output`` when present, otherwise the raw content.
    Non-string values are rendered as indented JSON.
    """
    result = content
    if isinstance(content, dict):
        result = content.get("result") or content.get("output") or content

    if isinstance(result, str):
        return result
    if result is None:
        return ""
    try:
        return json.dumps(result, indent=2, default=str)
    except (TypeError, ValueError):
        # Circular references and similar; repr is the best we can do
        return str(result)


def decode_part(part_type: str | None, content: Any) -> PartContent:
    """Decode a raw (type, content) pair into its tagged variant."""
    tag = (part_type or "").strip().lower()

    if tag in TEXT_PART_TYPES:
        return TextPart(text=extract_text(content))
    if tag in TOOL_CALL_PART_TYPES:
        call = extract_tool_call(content)
        return ToolCallPart(name=call.name, args=call.args, type=tag)
    if tag in TOOL_RESULT_PART_TYPES:
        return ToolResultPart(value=extract_tool_result(content), type=tag)

    return OtherPart(type=part_type or "unknown", content=content)


def extract_text_from_parts(parts: Iterable[Any]) -> list[str]:
    """
    Collect non-blank text from the text-type parts of a message, in order.

    Accepts anything with ``type`` and ``content`` attributes or keys
    (raw plugin dicts, PartInput, Part rows).
    """
    texts: list[str] = []
    for part in parts:
        if isinstance(part, dict):
            part_type, content = part.get("type"), part.get("content")
        else:
            part_type = getattr(part, "type", None)
            content = getattr(part, "content", None)

        if part_type != "text":
            continue

        text = extract_text(content)
        if text and text.strip():
            texts.append(text)

    if not texts:
        logger.debug("No text parts found in message payload")
    return texts


def join_text_parts(parts: Iterable[Any]) -> str:
    """
    Flatten a message's text parts into one string, joined by PART_SEPARATOR.

    Examples:
        >>> join_text_parts([{"type": "text", "content": "a"}, {"type": "text", "content": "b"}])
        'a b'
    """
    return PART_SEPARATOR.join(extract_text_from_parts(parts))
