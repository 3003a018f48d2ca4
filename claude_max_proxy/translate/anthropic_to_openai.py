"""Translate Anthropic Messages replies into OpenAI chat-completion format."""

from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from claude_max_proxy.translate.tool_protocol import DecodedReply

SSE_DONE = "data: [DONE]\n\n"


def new_completion_id() -> str:
    return f"chatcmpl-{uuid.uuid4()}"


def usage_from_anthropic(usage: Optional[dict[str, Any]]) -> dict[str, int]:
    if not isinstance(usage, dict):
        return {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}
    prompt_tokens = int(usage.get("input_tokens") or 0)
    completion_tokens = int(usage.get("output_tokens") or 0)
    return {
        "prompt_tokens": prompt_tokens,
        "completion_tokens": completion_tokens,
        "total_tokens": prompt_tokens + completion_tokens,
    }


def reply_text(anthropic_payload: dict[str, Any]) -> str:
    blocks = anthropic_payload.get("content")
    if not isinstance(blocks, list):
        return ""
    texts = [
        block["text"]
        for block in blocks
        if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str)
    ]
    return "\n".join(texts)


def make_chat_completion(
    *,
    completion_id: str,
    model: str,
    decoded: DecodedReply,
    usage: dict[str, int],
    created: Optional[int] = None,
) -> dict[str, Any]:
    message: dict[str, Any] = {"role": "assistant", "content": decoded.content}
    if decoded.tool_calls:
        message["tool_calls"] = [call.to_openai() for call in decoded.tool_calls]
    return {
        "id": completion_id,
        "object": "chat.completion",
        "created": created or int(time.time()),
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": message,
                "finish_reason": decoded.finish_reason,
            }
        ],
        "usage": usage,
    }


def make_chunk(
    *,
    completion_id: str,
    model: str,
    created: int,
    delta: dict[str, Any],
    finish_reason: Optional[str] = None,
    usage: Optional[dict[str, int]] = None,
) -> dict[str, Any]:
    chunk: dict[str, Any] = {
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": created,
        "model": model,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }
    if usage is not None:
        chunk["usage"] = usage
    return chunk


def decoded_reply_chunks(
    *,
    completion_id: str,
    model: str,
    created: int,
    decoded: DecodedReply,
    usage: Optional[dict[str, int]] = None,
) -> list[dict[str, Any]]:
    """Replay a fully decoded reply as one content chunk and one terminal chunk."""

    chunks: list[dict[str, Any]] = []
    if decoded.content:
        chunks.append(
            make_chunk(
                completion_id=completion_id,
                model=model,
                created=created,
                delta={"content": decoded.content},
            )
        )
    if decoded.tool_calls:
        terminal_delta: dict[str, Any] = {
            "tool_calls": [call.to_openai(index=index) for index, call in enumerate(decoded.tool_calls)]
        }
    else:
        terminal_delta = {}
    chunks.append(
        make_chunk(
            completion_id=completion_id,
            model=model,
            created=created,
            delta=terminal_delta,
            finish_reason=decoded.finish_reason,
            usage=usage,
        )
    )
    return chunks


def sse_data(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False, separators=(',', ':'))}\n\n"


@dataclass
class StreamAggregateState:
    completion_id: str
    model: str
    created: int = field(default_factory=lambda: int(time.time()))
    input_tokens: int = 0
    output_tokens: int = 0
    finished: bool = False

    def update_usage(self, event: dict[str, Any]) -> None:
        usage: Any = None
        if event.get("type") == "message_start" and isinstance(event.get("message"), dict):
            usage = event["message"].get("usage")
        elif event.get("type") == "message_delta":
            usage = event.get("usage")
        if not isinstance(usage, dict):
            return
        if usage.get("input_tokens"):
            self.input_tokens = int(usage["input_tokens"])
        if usage.get("output_tokens"):
            self.output_tokens = int(usage["output_tokens"])

    @property
    def usage(self) -> dict[str, int]:
        return usage_from_anthropic({"input_tokens": self.input_tokens, "output_tokens": self.output_tokens})

    def content_chunk(self, text: str) -> dict[str, Any]:
        return make_chunk(
            completion_id=self.completion_id,
            model=self.model,
            created=self.created,
            delta={"content": text},
        )

    def stop_chunk(self, *, include_usage: bool = False) -> dict[str, Any]:
        self.finished = True
        return make_chunk(
            completion_id=self.completion_id,
            model=self.model,
            created=self.created,
            delta={},
            finish_reason="stop",
            usage=self.usage if include_usage else None,
        )
