"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Callable, Iterable, List

import httpx
import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from tutor_chat.config import ProviderSettings  # noqa: E402
from tutor_chat.memory import ConversationStore  # noqa: E402
from tutor_chat.transport import ChatCompletionsTransport  # noqa: E402


def delta_line(text: str) -> str:
    """One provider frame carrying ``text`` as a delta."""
    return "data: " + json.dumps({"choices": [{"delta": {"content": text}}]}) + "\n"


def sse_body(deltas: Iterable[str], done: bool = True) -> bytes:
    body = "".join(delta_line(d) + "\n" for d in deltas)
    if done:
        body += "data: [DONE]\n\n"
    return body.encode("utf-8")


class ProviderStub:
    """Records requests and answers them with a canned event stream."""

    def __init__(self, body: bytes = b"", status: int = 200, chunk_size: int = 0) -> None:
        self.body = body
        self.status = status
        self.chunk_size = chunk_size
        self.requests: List[httpx.Request] = []

    def _chunks(self):
        size = self.chunk_size or len(self.body) or 1
        for i in range(0, len(self.body), size):
            yield self.body[i : i + size]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status >= 400:
            return httpx.Response(self.status, content=self.body)

        async def stream():
            for chunk in self._chunks():
                yield chunk

        return httpx.Response(self.status, content=stream())

    def payloads(self) -> List[dict]:
        return [json.loads(r.content) for r in self.requests]


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the root directory of the project."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture(scope="function")
def tmp_data_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for stored conversations during tests."""
    d = tmp_path / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


@pytest.fixture(scope="function")
def store(tmp_data_dir: Path) -> ConversationStore:
    return ConversationStore(str(tmp_data_dir))


@pytest.fixture(scope="function")
def make_transport() -> Callable[..., ChatCompletionsTransport]:
    """Build a transport whose HTTP client is served by a ProviderStub."""

    def _make(stub: ProviderStub, api_key: str | None = "sk-test") -> ChatCompletionsTransport:
        client = httpx.AsyncClient(transport=httpx.MockTransport(stub.handler))
        settings = ProviderSettings(url="https://provider.test/chat/completions", api_key=api_key)
        return ChatCompletionsTransport(settings, client=client)

    return _make


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    import os

    for var in ["TUTOR_CHAT_CONFIG", *[k for k in os.environ if k.startswith("TUTOR_CHAT__")]]:
        monkeypatch.delenv(var, raising=False)
    yield
