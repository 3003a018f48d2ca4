"""OpenAI chat-completions endpoint."""

from __future__ import annotations

import json
import logging
from contextlib import aclosing
from typing import Any, AsyncIterator, Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from claude_max_proxy.config import resolve_upstream_model
from claude_max_proxy.errors import APIError, MalformedRequest
from claude_max_proxy.relay import RelayEngine, RelayOptions
from claude_max_proxy.translate.anthropic_to_openai import SSE_DONE, sse_data
from claude_max_proxy.translate.openai_to_anthropic import translate_chat_request

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1", tags=["chat"])


@router.post("/chat/completions")
async def create_chat_completion(request: Request) -> Response:
    payload = await _read_json_payload(request)
    options = _build_options(payload, default_max_tokens=request.app.state.settings.default_max_tokens)

    conversation = translate_chat_request(payload)
    if conversation.warnings:
        logger.warning("Request translated with degradations. warnings=%s", conversation.warnings)

    relay = _get_relay_engine(request)
    result = await relay.call(conversation, options)
    if isinstance(result, dict):
        return JSONResponse(result)

    return StreamingResponse(
        _sse_frames(result),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


async def _sse_frames(events: AsyncIterator[dict[str, Any]]) -> AsyncIterator[str]:
    # Closing this generator (client disconnect) closes the relay stream and the upstream response.
    async with aclosing(events) as stream:
        async for event in stream:
            yield sse_data(event)
    yield SSE_DONE


def _build_options(payload: dict[str, Any], *, default_max_tokens: int) -> RelayOptions:
    model = payload.get("model")
    if model is None:
        model = ""
    if not isinstance(model, str):
        raise MalformedRequest("`model` must be a string.", param="model")

    stream = payload.get("stream", False)
    if stream is None:
        stream = False
    if not isinstance(stream, bool):
        raise MalformedRequest("`stream` must be a boolean.", param="stream")

    temperature = payload.get("temperature")
    if temperature is not None and (isinstance(temperature, bool) or not isinstance(temperature, (int, float))):
        raise MalformedRequest("`temperature` must be a number.", param="temperature")

    max_tokens = payload.get("max_tokens")
    if max_tokens is not None and (
        isinstance(max_tokens, bool) or not isinstance(max_tokens, int) or max_tokens <= 0
    ):
        raise MalformedRequest("`max_tokens` must be a positive integer.", param="max_tokens")

    include_usage = False
    stream_options = payload.get("stream_options")
    if isinstance(stream_options, dict):
        include_usage = stream_options.get("include_usage") is True

    return RelayOptions(
        model=model,
        upstream_model=resolve_upstream_model(model),
        max_tokens=max_tokens or default_max_tokens,
        temperature=_optional_float(temperature),
        stream=stream,
        include_usage=include_usage,
    )


def _optional_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    return float(value)


async def _read_json_payload(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MalformedRequest("Invalid JSON", code="invalid_json") from exc

    if not isinstance(payload, dict):
        raise MalformedRequest("Request body must be a JSON object.", code="invalid_json")
    return payload


def _get_relay_engine(request: Request) -> RelayEngine:
    relay = getattr(request.app.state, "relay_engine", None)
    if relay is None:
        raise APIError(
            "Relay engine is not initialized.",
            500,
            error_type="server_error",
            code="service_unavailable",
        )
    return relay
