"""Recovery of usable replies from noisy model output.

Models wrap their answers in reasoning blocks, markdown fences, or prose, and
sometimes emit a tool call instead of an answer. ``parse_model_output`` does a
single classification step into one of three shapes:

- ``StructuredReply``: a JSON object carrying the reply schema
- ``ToolCall``: the recognised ``search_products`` tool invocation
- ``PlainText``: anything else, reduced to the text we can safely show
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from app.core.tools import ToolName, validate_tool_arguments

logger = logging.getLogger(__name__)

APOLOGY_REPLY = "Sorry, something went wrong while processing your request."

REPLY_FIELDS = ("reply", "response", "text", "message")

_THINK_RE = re.compile(r"<think>[\s\S]*?</think>", re.IGNORECASE)
_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)
_REPLY_RE = re.compile(r'"reply"\s*:\s*"((?:[^"\\]|\\.)*)"')


class ParseError(ValueError):
    """Raised when no JSON object can be recovered from model output."""
    pass


@dataclass
class StructuredReply:
    """Parsed reply object; ``data["reply"]`` is normalized from synonyms."""
    data: dict[str, Any]

    @property
    def reply(self) -> str | None:
        return self.data.get("reply")


@dataclass
class ToolCall:
    """A request to run a server-side tool instead of answering."""
    name: str
    query: str
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class PlainText:
    """Free text reply (external mode, or unparseable output)."""
    text: str


ParsedOutput = StructuredReply | ToolCall | PlainText


def strip_reasoning(text: str) -> str:
    """Remove ``<think>...</think>`` blocks emitted by reasoning models."""
    return _THINK_RE.sub("", text).strip()


def strip_code_fences(text: str) -> str:
    """Remove markdown code fence markers, keeping their content."""
    return _FENCE_RE.sub("", text).strip()


def extract_json_object(raw: str) -> Any:
    """Isolate the outermost ``{...}`` in cleaned output and decode it.

    Raises:
        ParseError: If the cleaned text does not decode as JSON.
    """
    cleaned = strip_code_fences(strip_reasoning(raw))
    first = cleaned.find("{")
    last = cleaned.rfind("}")
    if first != -1 and last > first:
        cleaned = cleaned[first:last + 1]
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise ParseError(str(e)) from e


def _first_text(data: dict[str, Any]) -> str | None:
    for key in REPLY_FIELDS:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return None


def _has_tool_shape(data: dict[str, Any]) -> bool:
    return (
        isinstance(data.get("tool"), str)
        or isinstance(data.get("tools"), list)
        or isinstance(data.get("function"), str)
        or "query" in data
    )


def _recover_reply(text: str) -> str:
    """Pull the ``reply`` string out of malformed JSON, else return the text."""
    match = _REPLY_RE.search(text)
    if match:
        try:
            return json.loads(f'"{match.group(1)}"')
        except json.JSONDecodeError:
            return match.group(1)
    return text


def parse_model_output(raw: str | None) -> ParsedOutput:
    """Classify raw model output into a reply, a tool call, or plain text."""
    raw = raw or ""
    try:
        data = extract_json_object(raw)
    except ParseError:
        cleaned = strip_reasoning(raw)
        logger.debug("Model output is not JSON, recovering reply text")
        return PlainText(_recover_reply(cleaned))

    if not isinstance(data, dict):
        return PlainText(strip_reasoning(raw))

    if data.get("tool") == ToolName.SEARCH_PRODUCTS:
        valid, problem = validate_tool_arguments(ToolName.SEARCH_PRODUCTS, data)
        if valid:
            return ToolCall(name=ToolName.SEARCH_PRODUCTS, query=data["query"].strip(), raw=data)
        logger.warning(f"Ignoring malformed tool call: {problem}")

    reply = _first_text(data)
    if reply is None and _has_tool_shape(data):
        logger.warning(f"Unhandled tool-shaped output: keys={sorted(data)}")
        return PlainText(APOLOGY_REPLY)

    normalized = dict(data)
    normalized["reply"] = reply
    return StructuredReply(normalized)
