"""Coalesces bursts of deltas into at most one consumer update per tick."""
from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class DeliveryMode(str, Enum):
    SNAPSHOT = "snapshot"  # consumer receives the full text so far and replaces
    DELTA = "delta"        # consumer receives only the new increment and appends


class DeliveryBatcher:
    """Buffer deltas and hand them to ``consumer`` once per rendering tick.

    Both modes share the same buffer and scheduling; they differ only in what
    a flush hands over. In delta mode the concatenation of everything ever
    delivered equals the concatenation of everything pushed, in order.

    Scheduling uses the running asyncio loop (``call_soon`` for a zero tick,
    ``call_later`` otherwise). Outside a loop, pushes are delivered at once.
    """

    def __init__(
        self,
        consumer: Callable[[str], None],
        *,
        mode: DeliveryMode = DeliveryMode.DELTA,
        tick_interval: float = 0.0,
    ) -> None:
        self._consumer = consumer
        self.mode = DeliveryMode(mode)
        self.tick_interval = max(0.0, float(tick_interval))
        self._buffer: List[str] = []
        self._assembled: List[str] = []
        self._handle: Optional[asyncio.Handle] = None
        self._closed = False
        self.flushes = 0

    @property
    def scheduled(self) -> bool:
        return self._handle is not None

    @property
    def pending(self) -> str:
        return "".join(self._buffer)

    @property
    def text(self) -> str:
        """Everything pushed so far, delivered or not."""
        return "".join(self._assembled)

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, delta: str) -> None:
        if self._closed:
            raise RuntimeError("push() on a cancelled DeliveryBatcher")
        if not delta:
            return
        self._buffer.append(delta)
        self._assembled.append(delta)
        if self._handle is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._drain()
            return
        if self.tick_interval > 0:
            self._handle = loop.call_later(self.tick_interval, self._on_tick)
        else:
            self._handle = loop.call_soon(self._on_tick)

    def flush_now(self) -> None:
        """Synchronously deliver anything pending and drop the scheduled flush."""
        self._unschedule()
        if not self._closed:
            self._drain()

    def cancel(self) -> None:
        """Teardown: drop pending text and make sure no flush fires later."""
        self._unschedule()
        if self._buffer:
            logger.debug("dropping %d undelivered chars on cancel", len(self.pending))
        self._buffer.clear()
        self._closed = True

    def _unschedule(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _on_tick(self) -> None:
        self._handle = None
        self._drain()

    def _drain(self) -> None:
        if not self._buffer:
            return
        chunk = "".join(self._buffer)
        self._buffer.clear()
        self.flushes += 1
        self._consumer(self.text if self.mode is DeliveryMode.SNAPSHOT else chunk)
