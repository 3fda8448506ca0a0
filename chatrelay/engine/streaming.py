"""Streaming chat-completion adapter for the local inference backend.

The backend speaks the OpenAI-style `/v1/chat/completions` protocol with
`stream: true`: the response body is a sequence of newline-delimited records,
`data: {json}` lines carrying content deltas and a final `data: [DONE]`.

`SSEDecoder` turns raw text chunks into fragments and is independent of HTTP;
`ChatStreamClient` owns the request and maps transport failures onto
`UpstreamError` subclasses.
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Protocol, Sequence

import httpx

from .chat_types import ChatMessage

logger = logging.getLogger(__name__)

CHAT_COMPLETIONS_PATH = "/v1/chat/completions"
DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


class UpstreamError(RuntimeError):
    pass


class ConnectError(UpstreamError):
    """The request to the backend could not be established."""


class StreamInterruptedError(UpstreamError):
    """The backend connection failed after the stream had started."""


def extract_delta_content(payload: Any) -> str | None:
    """Return `choices[0].delta.content` when present and a string."""
    if not isinstance(payload, dict):
        return None
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    choice = choices[0]
    if not isinstance(choice, dict):
        return None
    delta = choice.get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    return content if isinstance(content, str) else None


class SSEDecoder:
    """Incremental record parser.

    Chunks may end mid-record; the unterminated tail is held until the next
    `feed` (or `flush` at end of transport). Records that are not `data:` lines,
    carry invalid JSON, or have no content delta are dropped.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self.done = False

    def feed(self, chunk: str) -> list[str]:
        if self.done:
            return []
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        return self._parse_lines(lines)

    def flush(self) -> list[str]:
        tail, self._buffer = self._buffer, ""
        if self.done or not tail:
            return []
        return self._parse_lines([tail])

    def _parse_lines(self, lines: list[str]) -> list[str]:
        fragments: list[str] = []
        for line in lines:
            fragment = self._parse_line(line.rstrip("\r"))
            if self.done:
                break
            if fragment:
                fragments.append(fragment)
        return fragments

    def _parse_line(self, line: str) -> str | None:
        if not line.startswith(DATA_PREFIX):
            return None
        data = line[len(DATA_PREFIX) :]
        if data.startswith(" "):
            data = data[1:]
        if data.strip() == DONE_SENTINEL:
            self.done = True
            return None
        try:
            payload = json.loads(data)
        except ValueError:
            logger.debug("Dropping malformed upstream record: %r", line)
            return None
        content = extract_delta_content(payload)
        if content is None:
            logger.debug("Dropping upstream record without content delta: %r", line)
        return content


class BackendLocator(Protocol):
    @property
    def base_url(self) -> str: ...


class FragmentStream:
    """Lazy, single-pass sequence of text fragments from one upstream response.

    Closing the stream releases the HTTP response; iterating after the end (or
    a second time) yields nothing.
    """

    def __init__(self, client: httpx.AsyncClient, response: httpx.Response) -> None:
        self._client = client
        self._response = response
        self._decoder = SSEDecoder()
        self._closed = False

    def __aiter__(self) -> AsyncIterator[str]:
        return self._iter_fragments()

    async def _iter_fragments(self) -> AsyncIterator[str]:
        if self._closed:
            return
        try:
            async for chunk in self._response.aiter_text():
                for fragment in self._decoder.feed(chunk):
                    yield fragment
                if self._decoder.done:
                    return
            for fragment in self._decoder.flush():
                yield fragment
        except httpx.HTTPError as exc:
            raise StreamInterruptedError(f"Backend stream interrupted: {exc}") from exc
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._response.aclose()
        finally:
            await self._client.aclose()

    async def __aenter__(self) -> FragmentStream:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()


class ChatStreamClient:
    """Issues streaming chat completions against whichever backend is active."""

    def __init__(self, backend: BackendLocator, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.backend = backend
        self._transport = transport

    def build_payload(self, conversation: Sequence[ChatMessage]) -> dict[str, Any]:
        return {
            "messages": [{"role": m.role.upstream, "content": m.content} for m in conversation],
            "stream": True,
        }

    async def chat_stream(self, conversation: Sequence[ChatMessage]) -> FragmentStream:
        url = self.backend.base_url.rstrip("/") + CHAT_COMPLETIONS_PATH
        # No timeout: a stalled backend stalls only the session that owns this request.
        client = httpx.AsyncClient(timeout=None, transport=self._transport)
        request = client.build_request(
            "POST",
            url,
            json=self.build_payload(conversation),
            headers={"Accept": "text/event-stream"},
        )

        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError as exc:
            await client.aclose()
            raise ConnectError(f"Failed to reach backend at {url}: {exc}") from exc

        if not response.is_success:
            try:
                body = (await response.aread()).decode("utf-8", errors="replace")
            except httpx.HTTPError:
                body = ""
            finally:
                await response.aclose()
                await client.aclose()
            message = f"Backend returned status={response.status_code}"
            if body:
                message += f": {body}"
            raise UpstreamError(message)

        return FragmentStream(client, response)
