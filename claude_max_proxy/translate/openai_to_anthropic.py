"""Translate OpenAI chat-completion requests into Anthropic Messages payloads."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from claude_max_proxy.errors import MalformedRequest
from claude_max_proxy.translate.tool_protocol import (
    ToolCallRecord,
    ToolDefinition,
    build_context_block,
    render_assistant_turn,
)

logger = logging.getLogger(__name__)

# The OAuth credential class is only accepted with this exact system prompt.
REQUIRED_SYSTEM_PROMPT = "You are Claude Code, Anthropic's official CLI for Claude."

TOOL_CALL_PLACEHOLDER = "[Using tools...]"
TURN_SEPARATOR = "\n\n"
USER_MESSAGE_HEADER = "[User Message]\n"


@dataclass
class UpstreamTurn:
    role: str
    content: str

    def to_payload(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class ConvertedConversation:
    system: str
    turns: list[UpstreamTurn]
    tools: list[ToolDefinition] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def has_tools(self) -> bool:
        return bool(self.tools)

    def messages_payload(self) -> list[dict[str, str]]:
        return [turn.to_payload() for turn in self.turns]


def translate_chat_request(request_payload: dict[str, Any]) -> ConvertedConversation:
    """Validate a chat-completion body and convert its conversation."""

    messages = request_payload.get("messages")
    if messages is None:
        raise MalformedRequest("messages required", param="messages", code="missing_required_parameter")
    if not isinstance(messages, list):
        raise MalformedRequest("`messages` must be an array.", param="messages")
    tools = parse_tool_definitions(request_payload.get("tools"))
    return convert_messages(messages, tools)


def build_upstream_payload(
    conversation: ConvertedConversation,
    *,
    model: str,
    max_tokens: int,
    temperature: Optional[float] = None,
    stream: bool = False,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "model": model,
        "system": REQUIRED_SYSTEM_PROMPT,
        "messages": conversation.messages_payload(),
        "max_tokens": max_tokens,
    }
    if temperature is not None:
        payload["temperature"] = temperature
    if stream:
        payload["stream"] = True
    return payload


def parse_tool_definitions(tools_value: Any) -> list[ToolDefinition]:
    if tools_value is None:
        return []
    if not isinstance(tools_value, list):
        raise MalformedRequest("`tools` must be an array.", param="tools")

    definitions: list[ToolDefinition] = []
    for index, tool in enumerate(tools_value):
        if not isinstance(tool, dict):
            raise MalformedRequest("Each tool must be an object.", param=f"tools[{index}]")
        function = tool.get("function") if isinstance(tool.get("function"), dict) else tool
        name = function.get("name")
        if not isinstance(name, str) or not name.strip():
            raise MalformedRequest("Each tool requires a non-empty `name`.", param=f"tools[{index}].function.name")
        description = function.get("description")
        definitions.append(
            ToolDefinition(
                name=name.strip(),
                description=description if isinstance(description, str) and description.strip() else None,
                parameters=function.get("parameters"),
            )
        )
    return definitions


def convert_messages(
    messages: list[Any],
    tools: Optional[list[ToolDefinition]] = None,
) -> ConvertedConversation:
    tool_definitions = list(tools or [])
    warnings: list[str] = []
    system_texts: list[str] = []
    turns: list[UpstreamTurn] = []

    for index, message in enumerate(messages):
        if not isinstance(message, dict):
            warnings.append(f"Ignored non-object message at index {index}.")
            continue
        role = message.get("role")
        content = extract_text(message.get("content"))

        if role in {"system", "developer"}:
            if content:
                system_texts.append(content)
        elif role == "user":
            if content:
                turns.append(UpstreamTurn("user", content))
        elif role == "assistant":
            turn_content = _assistant_turn_content(message, content, warnings=warnings)
            if turn_content:
                turns.append(UpstreamTurn("assistant", turn_content))
        elif role == "tool":
            tool_call_id = message.get("tool_call_id") or ""
            if not tool_call_id:
                warnings.append(f"Tool message at index {index} has no tool_call_id.")
            turns.append(UpstreamTurn("user", f"[Tool Result: {tool_call_id}]\n{content}"))
        else:
            logger.warning("Dropping message with unrecognized role. index=%s role=%r", index, role)
            warnings.append(f"Dropped message with unrecognized role {role!r}.")

    turns = merge_adjacent_turns(turns)
    _inject_context(turns, build_context_block(system_texts, tool_definitions))

    return ConvertedConversation(
        system=REQUIRED_SYSTEM_PROMPT,
        turns=turns,
        tools=tool_definitions,
        warnings=warnings,
    )


def merge_adjacent_turns(turns: list[UpstreamTurn]) -> list[UpstreamTurn]:
    merged: list[UpstreamTurn] = []
    for turn in turns:
        if merged and merged[-1].role == turn.role:
            merged[-1] = UpstreamTurn(turn.role, merged[-1].content + TURN_SEPARATOR + turn.content)
        else:
            merged.append(UpstreamTurn(turn.role, turn.content))
    return merged


def _inject_context(turns: list[UpstreamTurn], context: str) -> None:
    if not context:
        return
    for index, turn in enumerate(turns):
        if turn.role == "user":
            turns[index] = UpstreamTurn("user", context + USER_MESSAGE_HEADER + turn.content)
            return


def _assistant_turn_content(message: dict[str, Any], content: str, *, warnings: list[str]) -> str:
    records = parse_tool_call_records(message.get("tool_calls"), warnings=warnings)
    if records:
        return render_assistant_turn(content, records)
    if not content.strip() and message.get("tool_calls"):
        return TOOL_CALL_PLACEHOLDER
    return content if content.strip() else ""


def parse_tool_call_records(tool_calls: Any, *, warnings: list[str]) -> list[ToolCallRecord]:
    if not isinstance(tool_calls, list):
        return []

    records: list[ToolCallRecord] = []
    for call in tool_calls:
        if not isinstance(call, dict):
            warnings.append("Ignored non-object entry in `tool_calls`.")
            continue
        function = call.get("function")
        if not isinstance(function, dict):
            warnings.append("Ignored tool call without `function`.")
            continue
        name = function.get("name")
        if not isinstance(name, str) or not name:
            warnings.append("Ignored tool call without a function name.")
            continue
        arguments = function.get("arguments")
        if arguments is None:
            arguments = "{}"
        elif not isinstance(arguments, str):
            arguments = json.dumps(arguments, ensure_ascii=False, separators=(",", ":"))
        records.append(ToolCallRecord(id=str(call.get("id") or ""), name=name, arguments=arguments))
    return records


def extract_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts: list[str] = []
        for block in content:
            if isinstance(block, str):
                texts.append(block)
            elif isinstance(block, dict) and block.get("type", "text") == "text":
                text = block.get("text")
                if isinstance(text, str):
                    texts.append(text)
        return "\n".join(texts)
    if isinstance(content, dict):
        text = content.get("text")
        if isinstance(text, str):
            return text
    return ""
