"""Relay translated conversations to the upstream and adapt the result."""

from __future__ import annotations

import logging
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional, Union

from claude_max_proxy.clients.anthropic_messages import AnthropicMessagesClient
from claude_max_proxy.credentials import CredentialStore
from claude_max_proxy.errors import APIError
from claude_max_proxy.store.credential_file import Credential
from claude_max_proxy.translate.anthropic_to_openai import (
    StreamAggregateState,
    decoded_reply_chunks,
    make_chat_completion,
    new_completion_id,
    reply_text,
    usage_from_anthropic,
)
from claude_max_proxy.translate.openai_to_anthropic import ConvertedConversation, build_upstream_payload
from claude_max_proxy.translate.tool_protocol import DecodedReply, decode_reply

logger = logging.getLogger(__name__)

RelayResult = Union[dict[str, Any], AsyncIterator[dict[str, Any]]]


@dataclass(frozen=True)
class RelayOptions:
    model: str
    upstream_model: str
    max_tokens: int
    temperature: Optional[float] = None
    stream: bool = False
    include_usage: bool = False


class RelayEngine:
    def __init__(self, client: AnthropicMessagesClient, credential_store: CredentialStore) -> None:
        self._client = client
        self._credentials = credential_store

    async def call(self, conversation: ConvertedConversation, options: RelayOptions) -> RelayResult:
        """Return a chat.completion object, or an async iterator of chunk events when streaming.

        Credential failures and, for single-shot upstream calls, upstream errors raise
        before anything is returned. Failures inside an incremental stream become a
        final ``{"error": ...}`` event.
        """

        credential = await self._credentials.resolve()
        incremental = options.stream and not conversation.has_tools
        logger.info(
            "[%s] model=%s tools=%d msgs=%d",
            "STREAM" if incremental else "SYNC",
            options.upstream_model,
            len(conversation.tools),
            len(conversation.turns),
        )
        completion_id = new_completion_id()

        if incremental:
            payload = build_upstream_payload(
                conversation,
                model=options.upstream_model,
                max_tokens=options.max_tokens,
                temperature=options.temperature,
                stream=True,
            )
            state = StreamAggregateState(completion_id=completion_id, model=options.model)
            return self._stream_incremental(payload, credential, state, include_usage=options.include_usage)

        decoded, usage = await self._complete(conversation, options, credential)
        if options.stream:
            state = StreamAggregateState(completion_id=completion_id, model=options.model)
            chunks = decoded_reply_chunks(
                completion_id=completion_id,
                model=options.model,
                created=state.created,
                decoded=decoded,
                usage=usage if options.include_usage else None,
            )
            return _replay(chunks)
        return make_chat_completion(
            completion_id=completion_id,
            model=options.model,
            decoded=decoded,
            usage=usage,
        )

    async def _complete(
        self,
        conversation: ConvertedConversation,
        options: RelayOptions,
        credential: Credential,
    ) -> tuple[DecodedReply, dict[str, int]]:
        payload = build_upstream_payload(
            conversation,
            model=options.upstream_model,
            max_tokens=options.max_tokens,
            temperature=options.temperature,
        )
        body = await self._client.create_message(payload, credential.access_token)
        decoded = decode_reply(reply_text(body))
        if decoded.tool_calls:
            logger.info("Decoded tool calls. names=%s", [call.name for call in decoded.tool_calls])
        return decoded, usage_from_anthropic(body.get("usage"))

    async def _stream_incremental(
        self,
        payload: dict[str, Any],
        credential: Credential,
        state: StreamAggregateState,
        *,
        include_usage: bool,
    ) -> AsyncIterator[dict[str, Any]]:
        try:
            async with aclosing(self._client.stream_message(payload, credential.access_token)) as events:
                async for event in events:
                    event_type = event.get("type")
                    state.update_usage(event)
                    if event_type == "content_block_delta":
                        delta = event.get("delta")
                        text = delta.get("text") if isinstance(delta, dict) else None
                        if isinstance(text, str) and text:
                            yield state.content_chunk(text)
                    elif event_type == "message_stop":
                        if not state.finished:
                            yield state.stop_chunk(include_usage=include_usage)
                    elif event_type == "error":
                        yield _stream_error_event(event)
                        return
            if not state.finished:
                yield state.stop_chunk(include_usage=include_usage)
        except APIError as exc:
            logger.warning("Upstream stream failed. status=%s message=%s", exc.status_code, exc.message)
            yield exc.to_payload()
        except Exception:
            logger.exception("Streaming failed. completion_id=%s", state.completion_id)
            api_error = APIError(
                "Streaming failed.",
                502,
                error_type="server_error",
                code="stream_error",
            )
            yield api_error.to_payload()


async def _replay(chunks: list[dict[str, Any]]) -> AsyncIterator[dict[str, Any]]:
    for chunk in chunks:
        yield chunk


def _stream_error_event(event: dict[str, Any]) -> dict[str, Any]:
    error = event.get("error")
    message = "Upstream stream error."
    error_type = "upstream_error"
    if isinstance(error, dict):
        message = str(error.get("message") or message)
        error_type = str(error.get("type") or error_type)
    return {"error": {"message": message, "type": error_type, "param": None, "code": None}}
