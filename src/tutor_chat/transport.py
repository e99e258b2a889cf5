"""HTTP transport for an OpenAI-style streaming chat-completions endpoint."""
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from .config import ProviderSettings
from .errors import ConfigurationError, SerializationError, TransportError
from .sanitize import sanitize_messages

logger = logging.getLogger(__name__)

_ERROR_BODY_CHARS = 500


class ChatCompletionsTransport:
    """Opens one streaming request per exchange and yields raw byte chunks.

    The credential and endpoint come from :class:`ProviderSettings`, handed in
    by whoever composes the pipeline. An ``httpx.AsyncClient`` may be injected
    (tests use one backed by ``httpx.MockTransport``); otherwise a client is
    created per request and closed with it.
    """

    def __init__(self, settings: ProviderSettings, *, client: Optional[httpx.AsyncClient] = None) -> None:
        self.settings = settings
        self._client = client

    def ensure_configured(self) -> None:
        if not self.settings.api_key:
            raise ConfigurationError(
                "API key is not configured. Set provider.api_key "
                "(or TUTOR_CHAT__PROVIDER__API_KEY) to your provider key."
            )

    def build_payload(self, messages: List[Dict[str, Any]]) -> Dict[str, Any]:
        return {
            "model": self.settings.model,
            "messages": sanitize_messages(messages),
            "stream": True,
            "temperature": self.settings.temperature,
        }

    @staticmethod
    def encode_payload(payload: Dict[str, Any]) -> bytes:
        """UTF-8 JSON body, verified to parse back."""
        try:
            body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
            json.loads(body)
        except (TypeError, ValueError) as e:  # UnicodeEncodeError is a ValueError
            raise SerializationError(f"Could not serialize request: {e}") from e
        return body

    def _timeout(self) -> httpx.Timeout:
        s = self.settings
        return httpx.Timeout(s.read_timeout, connect=s.connect_timeout)

    @asynccontextmanager
    async def open_stream(self, messages: List[Dict[str, Any]]) -> AsyncIterator[AsyncIterator[bytes]]:
        """POST the conversation and yield the response body as byte chunks.

        Leaving the context (normally, on error or on cancellation) closes
        the response and releases the connection.
        """
        self.ensure_configured()
        body = self.encode_payload(self.build_payload(messages))
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.settings.api_key}",
        }

        owns_client = self._client is None
        client = self._client or httpx.AsyncClient(timeout=self._timeout())
        try:
            async with client.stream(
                "POST", self.settings.url, content=body, headers=headers, timeout=self._timeout()
            ) as response:
                if response.status_code >= 400:
                    detail = (await response.aread()).decode("utf-8", errors="replace")
                    raise TransportError(
                        f"Provider error: {response.status_code} - {detail[:_ERROR_BODY_CHARS]}"
                    )
                logger.debug("stream opened: %s %s", response.status_code, self.settings.url)
                yield _guard(response.aiter_bytes())
        except httpx.HTTPError as e:
            raise TransportError(f"Network error: {e}") from e
        finally:
            if owns_client:
                await client.aclose()


async def _guard(chunks: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
    # Errors raised while reading the body surface at the consumer's
    # ``async for``, outside open_stream's except clause.
    try:
        async for chunk in chunks:
            yield chunk
    except httpx.HTTPError as e:
        raise TransportError(f"Network error while streaming: {e}") from e


MOCK_REPLY = """Hello! Let me walk you through this question.

**Core idea**

This question checks three things:

1. Understanding the basic concept
2. Where it applies in practice
3. Common mistakes

```python
def example():
    return "Hello World"
```

I hope this helps! Ask me anything else about it."""


class MockTransport:
    """Offline stand-in that replays a canned reply as a provider-shaped stream.

    Enabled only through ``provider.mock: true``; it is never used as a
    fallback for a missing credential.
    """

    def __init__(self, reply: str = MOCK_REPLY, *, batch_size: int = 3, delay: float = 0.01) -> None:
        self.reply = reply
        self.batch_size = max(1, batch_size)
        self.delay = delay

    def ensure_configured(self) -> None:
        return None

    @asynccontextmanager
    async def open_stream(self, messages: List[Dict[str, Any]]) -> AsyncIterator[AsyncIterator[bytes]]:
        yield self._frames()

    async def _frames(self) -> AsyncIterator[bytes]:
        for i in range(0, len(self.reply), self.batch_size):
            piece = self.reply[i : i + self.batch_size]
            frame = {"choices": [{"delta": {"content": piece}}]}
            yield f"data: {json.dumps(frame, ensure_ascii=False)}\n\n".encode("utf-8")
            if self.delay:
                await asyncio.sleep(self.delay)
        yield b"data: [DONE]\n\n"


def create_transport(settings: ProviderSettings, client: Optional[httpx.AsyncClient] = None):
    """Pick the transport the configuration asks for."""
    if settings.mock:
        logger.info("provider.mock is enabled, using the offline mock transport")
        return MockTransport()
    return ChatCompletionsTransport(settings, client=client)
