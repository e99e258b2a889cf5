"""Reassembles the provider's line-delimited event stream into deltas.

Each event is one line ``data: <payload>`` where the payload is either a JSON
object of the shape ``{"choices": [{"delta": {"content": "..."}}]}`` or the
sentinel ``[DONE]``. Chunks from the network do not respect line boundaries,
so the parser carries the incomplete last line over to the next chunk.

A payload that fails to parse is skipped, not fatal: one bad frame should not
throw away an otherwise useful answer. Skips are counted and logged.
"""
from __future__ import annotations

import codecs
import json
import logging
from typing import Any, AsyncIterable, AsyncIterator, Callable, List, Optional, Union

from .errors import FrameError

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"


def parse_frame(payload: str) -> str:
    """Extract the delta text from one JSON payload ('' when absent).

    Raises :class:`FrameError` when the payload is not valid JSON.
    """
    try:
        obj = json.loads(payload)
    except ValueError as e:
        raise FrameError(f"malformed frame: {e}") from e
    try:
        content = obj["choices"][0]["delta"].get("content")
    except (KeyError, IndexError, TypeError, AttributeError):
        return ""
    return content if isinstance(content, str) else ""


class FrameParser:
    """Incremental parser for one response stream."""

    def __init__(self, on_malformed: Optional[Callable[[str, FrameError], None]] = None) -> None:
        self.tail = ""
        self.done = False
        self.malformed_frames = 0
        self._on_malformed = on_malformed
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, chunk: Union[bytes, str]) -> List[str]:
        """Consume one chunk and return the deltas from its complete lines."""
        if self.done:
            return []
        text = self._decoder.decode(chunk) if isinstance(chunk, (bytes, bytearray)) else chunk
        if not text:
            return []

        pieces = (self.tail + text).split("\n")
        self.tail = pieces.pop()

        out: List[str] = []
        for line in pieces:
            delta = self._line(line.rstrip("\r"))
            if self.done:
                self.tail = ""
                break
            if delta:
                out.append(delta)
        return out

    def finish(self) -> None:
        """Mark end of stream; an unterminated tail is dropped as truncated."""
        if not self.done:
            rest = self._decoder.decode(b"", final=True)
            leftover = (self.tail + rest).strip()
            if leftover:
                logger.warning("discarding incomplete trailing frame (%d chars)", len(leftover))
        self.tail = ""

    def _line(self, line: str) -> str:
        if not line.startswith(DATA_PREFIX):
            # blank separators, ":" keep-alive comments, event names
            return ""
        payload = line[len(DATA_PREFIX):]
        if payload.strip() == DONE_SENTINEL:
            self.done = True
            return ""
        try:
            return parse_frame(payload)
        except FrameError as e:
            self.malformed_frames += 1
            logger.warning("skipping malformed frame #%d: %s", self.malformed_frames, e)
            if self._on_malformed is not None:
                self._on_malformed(line, e)
            return ""


async def iter_deltas(
    chunks: AsyncIterable[Any], parser: Optional[FrameParser] = None
) -> AsyncIterator[str]:
    """Yield deltas from an async chunk iterator, stopping at the sentinel."""
    parser = parser or FrameParser()
    async for chunk in chunks:
        for delta in parser.feed(chunk):
            yield delta
        if parser.done:
            return
    parser.finish()
