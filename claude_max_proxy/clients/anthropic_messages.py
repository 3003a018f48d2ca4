"""Client for the Anthropic Messages API using an OAuth bearer token."""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Optional

import httpx

from claude_max_proxy.errors import APIError, UpstreamError


class AnthropicMessagesClient:
    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        api_url: str,
        anthropic_version: str = "2023-06-01",
        anthropic_beta: str = "oauth-2025-04-20",
        first_byte_timeout_seconds: int = 120,
        stream_read_timeout_seconds: int = 0,
    ) -> None:
        self._http = http_client
        self._api_url = api_url
        self._anthropic_version = anthropic_version
        self._anthropic_beta = anthropic_beta
        self._first_byte_timeout_seconds = first_byte_timeout_seconds
        self._stream_read_timeout_seconds = stream_read_timeout_seconds

    def _headers(self, access_token: str) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "anthropic-version": self._anthropic_version,
        }
        if self._anthropic_beta:
            headers["anthropic-beta"] = self._anthropic_beta
        return headers

    async def create_message(self, payload: dict[str, Any], access_token: str) -> dict[str, Any]:
        try:
            response = await self._http.post(self._api_url, headers=self._headers(access_token), json=payload)
        except httpx.TimeoutException as exc:
            raise APIError(
                "Upstream request timed out.",
                504,
                error_type="server_error",
                code="upstream_timeout",
            ) from exc
        except httpx.RequestError as exc:
            raise APIError(
                f"Failed to reach upstream service: {exc.__class__.__name__}.",
                502,
                error_type="server_error",
                code="upstream_connection_error",
            ) from exc

        if response.status_code >= 400:
            raise UpstreamError(response.status_code, response.text)

        try:
            body = response.json()
        except json.JSONDecodeError as exc:
            raise APIError(
                "Upstream returned invalid JSON.",
                502,
                error_type="server_error",
                code="upstream_invalid_json",
            ) from exc
        if not isinstance(body, dict):
            raise APIError(
                "Upstream returned an unexpected payload.",
                502,
                error_type="server_error",
                code="upstream_invalid_json",
            )
        return body

    async def stream_message(self, payload: dict[str, Any], access_token: str) -> AsyncIterator[dict[str, Any]]:
        """Yield decoded SSE events; leaving the generator closes the upstream response."""

        stream_payload = {**payload, "stream": True}
        try:
            async with self._http.stream(
                "POST",
                self._api_url,
                headers=self._headers(access_token),
                json=stream_payload,
            ) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="ignore")
                    raise UpstreamError(response.status_code, body)

                lines = response.aiter_lines()
                first_event = await self._read_next_sse_event(
                    lines,
                    timeout_seconds=self._first_byte_timeout_seconds,
                )
                if first_event is None:
                    return
                yield first_event

                while True:
                    timeout_seconds: Optional[int] = None
                    if self._stream_read_timeout_seconds > 0:
                        timeout_seconds = self._stream_read_timeout_seconds
                    next_event = await self._read_next_sse_event(lines, timeout_seconds=timeout_seconds)
                    if next_event is None:
                        break
                    yield next_event
        except asyncio.TimeoutError as exc:
            raise APIError(
                "Upstream first byte timeout.",
                504,
                error_type="server_error",
                code="upstream_timeout",
            ) from exc
        except httpx.RequestError as exc:
            raise APIError(
                f"Streaming connection to upstream failed: {exc.__class__.__name__}.",
                502,
                error_type="server_error",
                code="upstream_connection_error",
            ) from exc

    async def _read_next_sse_event(
        self,
        line_iterator: Any,
        *,
        timeout_seconds: Optional[int] = None,
    ) -> Optional[dict[str, Any]]:
        async def _inner() -> Optional[dict[str, Any]]:
            async for line in line_iterator:
                if not line or not line.startswith("data:"):
                    continue
                data = line[5:].strip()
                if not data:
                    continue
                if data == "[DONE]":
                    return None
                try:
                    event = json.loads(data)
                except json.JSONDecodeError:
                    continue
                if isinstance(event, dict):
                    return event
            return None

        if timeout_seconds is None or timeout_seconds <= 0:
            return await _inner()
        return await asyncio.wait_for(_inner(), timeout=timeout_seconds)
