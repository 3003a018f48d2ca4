"""Text-embedded tool calling: definition injection, invocation markup, decoding.

The upstream accepts no structured tool channel for OAuth credentials, so tools are
described inside the first user turn and the model invokes them by writing a small
markup grammar::

    <function_calls>
    <invoke name="TOOL_NAME">
    <parameter name="PARAM_NAME">VALUE</parameter>
    </invoke>
    </function_calls>

Replies are scanned for well-formed blocks, which become tool calls and are removed
from the visible text. Prior tool calls are replayed as the exact same markup so the
model recognises its own earlier invocations.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional, Sequence

logger = logging.getLogger(__name__)

FUNCTION_CALLS_OPEN = "<function_calls>"
FUNCTION_CALLS_CLOSE = "</function_calls>"
INVOKE_CLOSE = "</invoke>"
PARAMETER_CLOSE = "</parameter>"

EMPTY_REPLY_FILLER = "Done."

TOOL_USAGE_INSTRUCTIONS = (
    "When you need to use a tool, output XML:\n"
    "<function_calls>\n"
    '<invoke name="TOOL_NAME">\n'
    '<parameter name="PARAM">VALUE</parameter>\n'
    "</invoke>\n"
    "</function_calls>\n"
    "Tool results are returned to you in messages that start with [Tool Result: <id>].\n"
    "Do NOT show the XML to the user or explain it. Just use it silently."
)


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: Optional[str] = None
    parameters: Any = None


@dataclass(frozen=True)
class ToolCallRecord:
    id: str
    name: str
    arguments: str

    def to_openai(self, *, index: Optional[int] = None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }
        if index is not None:
            payload = {"index": index, **payload}
        return payload


@dataclass
class DecodedReply:
    content: Optional[str]
    tool_calls: list[ToolCallRecord] = field(default_factory=list)

    @property
    def finish_reason(self) -> str:
        return "tool_calls" if self.tool_calls else "stop"


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex}"


def build_context_block(system_texts: Sequence[str], tools: Sequence[ToolDefinition]) -> str:
    """Render caller identity and tool definitions for the first user turn."""

    context = ""
    if system_texts:
        context += "[Assistant Identity]\n" + "\n".join(system_texts) + "\n\n"
    if tools:
        definitions = "\n".join(_render_tool_definition(tool) for tool in tools)
        context += (
            "[Available Tools]\n"
            + definitions
            + "\n\n[Tool Usage]\n"
            + TOOL_USAGE_INSTRUCTIONS
            + "\n\n"
        )
    return context


def _render_tool_definition(tool: ToolDefinition) -> str:
    line = f"- {tool.name}: {tool.description or 'No description'}"
    if isinstance(tool.parameters, dict) and tool.parameters.get("properties"):
        schema = json.dumps(tool.parameters, ensure_ascii=False, separators=(",", ":"), sort_keys=True)
        line += f"\n  parameters: {schema}"
    return line


def render_invocations(records: Iterable[ToolCallRecord]) -> str:
    """Regenerate the markup for previously issued tool calls.

    Output is a pure function of the records: the same record always renders to the
    same bytes.
    """

    lines = [FUNCTION_CALLS_OPEN]
    for record in records:
        lines.append(f"<invoke name={_quote_attribute(record.name)}>")
        for name, value in _replay_arguments(record).items():
            lines.append(f"<parameter name={_quote_attribute(name)}>{value}</parameter>")
        lines.append(INVOKE_CLOSE)
    lines.append(FUNCTION_CALLS_CLOSE)
    return "\n".join(lines)


def _quote_attribute(value: str) -> str:
    # Names decoded from single-quoted attributes may carry a double quote.
    if '"' in value:
        return f"'{value}'"
    return f'"{value}"'


def render_assistant_turn(text: str, records: Sequence[ToolCallRecord]) -> str:
    markup = render_invocations(records)
    visible = text.strip()
    if visible:
        return f"{visible}\n\n{markup}"
    return markup


def _replay_arguments(record: ToolCallRecord) -> dict[str, str]:
    try:
        parsed = json.loads(record.arguments) if record.arguments else {}
    except json.JSONDecodeError:
        logger.warning("Tool call arguments are not valid JSON; replaying without parameters. call_id=%s", record.id)
        return {}
    if not isinstance(parsed, dict):
        logger.warning("Tool call arguments are not a JSON object; replaying without parameters. call_id=%s", record.id)
        return {}

    rendered: dict[str, str] = {}
    for key, value in parsed.items():
        if isinstance(value, str):
            rendered[str(key)] = value
        else:
            rendered[str(key)] = json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    return rendered


def decode_reply(
    text: str,
    *,
    id_factory: Callable[[], str] = new_call_id,
) -> DecodedReply:
    """Extract tool calls from a model reply and strip their markup."""

    calls, visible = _scan(text)
    # Removing a span can splice two fragments into a fresh block; strip until stable.
    while True:
        spurious, stripped = _scan(visible)
        if not spurious and stripped == visible:
            break
        visible = stripped

    tool_calls: list[ToolCallRecord] = []
    seen_ids: set[str] = set()
    for name, arguments in calls:
        call_id = id_factory()
        while call_id in seen_ids:
            call_id = id_factory()
        seen_ids.add(call_id)
        tool_calls.append(
            ToolCallRecord(
                id=call_id,
                name=name,
                arguments=json.dumps(arguments, ensure_ascii=False, separators=(",", ":")),
            )
        )

    visible = visible.strip()
    if visible:
        content: Optional[str] = visible
    elif tool_calls:
        content = None
    else:
        content = EMPTY_REPLY_FILLER

    decoded = DecodedReply(content=content, tool_calls=tool_calls)
    _check_decoded(decoded)
    return decoded


def _check_decoded(decoded: DecodedReply) -> None:
    if decoded.content is None and not decoded.tool_calls:
        raise RuntimeError("Decoded reply has neither content nor tool calls.")
    if decoded.content is not None and not decoded.content:
        raise RuntimeError("Decoded reply content must be absent rather than empty.")


def _scan(text: str) -> tuple[list[tuple[str, dict[str, str]]], str]:
    calls: list[tuple[str, dict[str, str]]] = []
    segments: list[str] = []
    pos = 0
    while True:
        start = text.find(FUNCTION_CALLS_OPEN, pos)
        if start < 0:
            segments.append(text[pos:])
            break
        block = _scan_block(text, start)
        if block is None:
            logger.debug("Skipping unterminated <function_calls> at offset %s.", start)
            resume = start + len(FUNCTION_CALLS_OPEN)
            segments.append(text[pos:resume])
            pos = resume
            continue
        invokes, end = block
        segments.append(text[pos:start])
        calls.extend(invokes)
        pos = end
    return calls, "".join(segments)


def _scan_block(text: str, start: int) -> Optional[tuple[list[tuple[str, dict[str, str]]], int]]:
    """Parse one block starting at ``start``; None when it never closes."""

    block_end = text.find(FUNCTION_CALLS_CLOSE, start + len(FUNCTION_CALLS_OPEN))
    if block_end < 0:
        return None

    invokes: list[tuple[str, dict[str, str]]] = []
    current: Optional[tuple[str, dict[str, str]]] = None
    pos = start + len(FUNCTION_CALLS_OPEN)
    while True:
        lt = text.find("<", pos)
        if lt < 0 or lt >= block_end:
            break

        if current is None:
            opened = _match_named_tag(text, lt, "invoke")
            if opened is not None:
                current = (opened[0], {})
                pos = opened[1]
                continue
        else:
            reopened = _match_named_tag(text, lt, "invoke")
            if reopened is not None:
                logger.debug("Dropping unterminated <invoke name=%r>.", current[0])
                current = (reopened[0], {})
                pos = reopened[1]
                continue
            if text.startswith(INVOKE_CLOSE, lt):
                invokes.append(current)
                current = None
                pos = lt + len(INVOKE_CLOSE)
                continue
            opened = _match_named_tag(text, lt, "parameter")
            if opened is not None:
                name, value_start = opened
                value_end = text.find(PARAMETER_CLOSE, value_start)
                if 0 <= value_end < block_end:
                    current[1][name] = text[value_start:value_end]
                    pos = value_end + len(PARAMETER_CLOSE)
                    continue

        # Unknown element or unterminated parameter: skip the offending "<" only.
        pos = lt + 1

    if current is not None:
        logger.debug("Dropping unterminated <invoke name=%r>.", current[0])
    return invokes, block_end + len(FUNCTION_CALLS_CLOSE)


def _match_named_tag(text: str, pos: int, tag: str) -> Optional[tuple[str, int]]:
    """Match ``<tag name="VALUE">`` at ``pos`` and return (VALUE, end offset)."""

    opener = "<" + tag
    if not text.startswith(opener, pos):
        return None
    size = len(text)
    i = pos + len(opener)
    if i >= size or not text[i].isspace():
        return None
    i = _skip_space(text, i)
    if not text.startswith("name", i):
        return None
    i = _skip_space(text, i + len("name"))
    if i >= size or text[i] != "=":
        return None
    i = _skip_space(text, i + 1)
    if i >= size or text[i] not in "\"'":
        return None
    quote = text[i]
    close = text.find(quote, i + 1)
    if close < 0:
        return None
    name = text[i + 1 : close]
    if not name or "<" in name or ">" in name:
        return None
    i = _skip_space(text, close + 1)
    if i >= size or text[i] != ">":
        return None
    return name, i + 1


def _skip_space(text: str, pos: int) -> int:
    size = len(text)
    while pos < size and text[pos].isspace():
        pos += 1
    return pos
