"""
OpenAI-compatible chat-completion client.

Works with any endpoint that speaks the OpenAI ``/v1/chat/completions`` wire
protocol -- OpenAI itself, Azure OpenAI, vLLM, LM Studio, LocalAI, etc.

Dependencies: ``httpx`` (async HTTP client).  No ``openai`` SDK needed.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import AsyncIterator

import httpx

from codeloop.errors import NetworkFatal, NetworkTransient
from codeloop.llm.providers.base import CompletionClient
from codeloop.llm.retry import RetryPolicy, call_with_retry
from codeloop.llm.tool_call_assembler import fallback_call_id
from codeloop.llm.types import (
    ChoiceDelta,
    CompletionRequest,
    FullResponse,
    Message,
    ResponseChoice,
    StreamFragment,
    ToolCall,
    ToolCallDelta,
)

logger = logging.getLogger(__name__)


class OpenAICompatClient(CompletionClient):
    """
    Stream-capable client for any OpenAI-API-compatible endpoint.

    Parameters
    ----------
    url:
        Base URL of the API, e.g. ``"https://api.openai.com/v1"`` or
        ``"http://localhost:8080/v1"``.
    api_key:
        Bearer token.  Pass ``""`` for unauthenticated local endpoints.
    timeout:
        HTTP request timeout in seconds.
    retry:
        Backoff policy for transient failures (429, 5xx, transport errors).
    transport:
        Optional httpx transport, used by tests to stub the server.
    """

    def __init__(
        self,
        url: str = "https://api.openai.com/v1",
        api_key: str = "",
        timeout: float = 120.0,
        retry: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._retry = retry or RetryPolicy()
        self._transport = transport

    @property
    def name(self) -> str:
        return "openai-compat"

    # ------------------------------------------------------------------
    # CompletionClient interface
    # ------------------------------------------------------------------

    async def send(self, request: CompletionRequest) -> FullResponse:
        body = self._build_body(request, stream=False)
        return await call_with_retry(lambda: self._post_once(body), self._retry)

    async def send_streaming(
        self, request: CompletionRequest
    ) -> AsyncIterator[StreamFragment]:
        body = self._build_body(request, stream=True)
        # Fragments of one request share one stream id even when the server
        # varies (or omits) the chunk id.
        pinned: list[str] = []
        # Once part of the answer is out the stream cannot be replayed, so a
        # failure after the first fragment ends the retries.
        interrupted: NetworkTransient | None = None

        async for attempt in self._retry.retrying():
            with attempt:
                yielded = False
                try:
                    async for fragment in self._stream_once(body, pinned):
                        yielded = True
                        yield fragment
                except NetworkTransient as exc:
                    if not yielded:
                        raise
                    interrupted = exc

        if interrupted is not None:
            raise interrupted

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    def _build_headers(self, stream: bool) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if stream:
            headers["Accept"] = "text/event-stream"
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _build_body(self, request: CompletionRequest, stream: bool) -> dict:
        wire_messages = []
        for msg in request.messages:
            m: dict = {"role": msg.role, "content": msg.content}
            if msg.name:
                m["name"] = msg.name
            if msg.tool_calls:
                m["tool_calls"] = [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {
                            "name": tc.name,
                            "arguments": tc.arguments or "{}",
                        },
                    }
                    for tc in msg.tool_calls
                ]
            if msg.tool_call_id:
                m["tool_call_id"] = msg.tool_call_id
            wire_messages.append(m)

        body: dict = {
            "model": request.model,
            "messages": wire_messages,
            "stream": stream,
        }
        if request.max_tokens:
            body["max_tokens"] = request.max_tokens
        if request.user:
            body["user"] = request.user
        if request.tools:
            body["tools"] = request.tools
            body["tool_choice"] = "auto"
        logger.info(
            "REQUEST: model=%s stream=%s tools=%d messages=%d",
            request.model,
            stream,
            len(request.tools) if request.tools else 0,
            len(wire_messages),
        )
        return body

    @staticmethod
    def _check_status(response: httpx.Response) -> None:
        code = response.status_code
        if code < 400:
            return
        detail = response.text[:200]
        if code == 429 or code >= 500:
            raise NetworkTransient(f"HTTP {code}: {detail}", status_code=code)
        raise NetworkFatal(f"HTTP {code}: {detail}", status_code=code)

    # ------------------------------------------------------------------
    # Non-streaming request
    # ------------------------------------------------------------------

    async def _post_once(self, body: dict) -> FullResponse:
        url = f"{self._url}/chat/completions"
        try:
            async with self._client() as client:
                resp = await client.post(
                    url, json=body, headers=self._build_headers(stream=False)
                )
        except httpx.TransportError as exc:
            raise NetworkTransient(f"Transport error: {exc}") from exc

        self._check_status(resp)
        try:
            data = resp.json()
        except ValueError as exc:
            raise NetworkFatal(f"Undecodable response body: {exc}") from exc
        return self._parse_full(data)

    def _parse_full(self, data: dict) -> FullResponse:
        choices: list[ResponseChoice] = []
        for position, raw in enumerate(data.get("choices") or []):
            message = raw.get("message") or {}
            tool_calls = [
                ToolCall(
                    id=tc.get("id") or fallback_call_id(),
                    name=(tc.get("function") or {}).get("name", ""),
                    arguments=(tc.get("function") or {}).get("arguments", "") or "",
                )
                for tc in message.get("tool_calls") or []
            ]
            choices.append(
                ResponseChoice(
                    index=raw.get("index", position),
                    message=Message(
                        role=message.get("role", "assistant"),
                        content=message.get("content") or "",
                        tool_calls=tool_calls or None,
                    ),
                    finish_reason=raw.get("finish_reason"),
                )
            )
        return FullResponse(id=data.get("id") or f"resp-{uuid.uuid4().hex}", choices=choices)

    # ------------------------------------------------------------------
    # Streaming request
    # ------------------------------------------------------------------

    async def _stream_once(
        self, body: dict, pinned: list[str]
    ) -> AsyncIterator[StreamFragment]:
        url = f"{self._url}/chat/completions"
        try:
            async with self._client() as client:
                async with client.stream(
                    "POST", url, json=body, headers=self._build_headers(stream=True)
                ) as response:
                    if response.status_code >= 400:
                        # Read the body so the error detail is available.
                        await response.aread()
                        self._check_status(response)

                    async for data in self._parse_sse_stream(response):
                        if not pinned:
                            pinned.append(data.get("id") or f"stream-{uuid.uuid4().hex}")
                        fragment = self._sse_data_to_fragment(data, pinned[0])
                        if fragment is not None:
                            yield fragment
        except httpx.TransportError as exc:
            raise NetworkTransient(f"Transport error: {exc}") from exc

    async def _parse_sse_stream(self, response: httpx.Response) -> AsyncIterator[dict]:
        """
        Parse Server-Sent Events from the response byte stream.

        Each SSE event has the form::

            data: {json}\\n\\n

        The sentinel ``data: [DONE]`` terminates the stream.
        """
        buffer = ""
        async for raw_bytes in response.aiter_bytes():
            buffer += raw_bytes.decode("utf-8", errors="replace")

            while "\n" in buffer:
                line, buffer = buffer.split("\n", 1)
                line = line.rstrip("\r")

                if not line.startswith("data:"):
                    continue

                data_str = line[len("data:"):].strip()
                if data_str == "[DONE]":
                    return

                try:
                    data = json.loads(data_str)
                except json.JSONDecodeError:
                    logger.warning("Failed to parse SSE data: %s", data_str[:200])
                    continue
                if isinstance(data, dict):
                    yield data

    @staticmethod
    def _sse_data_to_fragment(data: dict, stream_id: str) -> StreamFragment | None:
        """Convert a parsed SSE ``data`` payload into a ``StreamFragment``."""
        raw_choices = data.get("choices")
        if not raw_choices:
            return None

        choices: list[ChoiceDelta] = []
        for position, raw in enumerate(raw_choices):
            delta = raw.get("delta") or {}

            tool_deltas: list[ToolCallDelta] | None = None
            raw_tcs = delta.get("tool_calls")
            if raw_tcs:
                tool_deltas = []
                for raw_tc in raw_tcs:
                    func = raw_tc.get("function") or {}
                    tool_deltas.append(
                        ToolCallDelta(
                            position=raw_tc.get("index", 0),
                            id=raw_tc.get("id"),
                            name_delta=func.get("name") or "",
                            args_delta=func.get("arguments") or "",
                        )
                    )

            choices.append(
                ChoiceDelta(
                    index=raw.get("index", position),
                    content=delta.get("content") or "",
                    tool_deltas=tool_deltas,
                    finish_reason=raw.get("finish_reason"),
                )
            )

        return StreamFragment(stream_id=stream_id, choices=choices)
