"""Orchestrates one streaming exchange per user message for a single conversation.

State machine per conversation::

    idle -> sending -> streaming -> finalizing -> idle
                            \\-> error_finalizing -> idle

Only one exchange is in flight at a time; a ``send`` that arrives while one
is running is ignored, not queued. The store is written only from here: when
the user message is accepted, when the exchange finishes (either way), on
retry trimming and on clear.
"""
from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from .config import PersonaSettings
from .context import BankMeta, QuestionContext, build_greeting, build_system_prompt
from .delivery import DeliveryBatcher, DeliveryMode
from .errors import TransportError
from .framing import FrameParser, iter_deltas
from .memory import ConversationStore
from .models import Message, Role, Status
from .sanitize import PROGRESS_MARKER, sanitize

logger = logging.getLogger(__name__)

Listener = Callable[[List[Message]], None]


class ExchangeState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    ERROR_FINALIZING = "error_finalizing"


def _now_ms() -> int:
    return int(time.time() * 1000)


class ChatSession:
    """Send/retry/clear surface for one (topic, sub-topic) conversation.

    ``on_update`` and :meth:`subscribe` listeners receive a copy of the message
    list after each visible change. ``on_complete`` receives the final list
    once an exchange ends or the conversation is cleared. ``on_delta`` sees
    each batched delivery as produced by the batcher (increment in delta mode,
    full text in snapshot mode).
    """

    def __init__(
        self,
        store: ConversationStore,
        transport: Any,
        topic_id: str,
        sub_topic_id: str,
        *,
        persona: Optional[PersonaSettings] = None,
        bank_meta: Optional[BankMeta] = None,
        question_context: Optional[QuestionContext] = None,
        mode: Union[DeliveryMode, str] = DeliveryMode.DELTA,
        tick_interval: float = 0.016,
        progress_marker: bool = True,
        greeting: bool = True,
        on_update: Optional[Listener] = None,
        on_complete: Optional[Listener] = None,
        on_delta: Optional[Callable[[str], None]] = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self.store = store
        self.transport = transport
        self.topic_id = topic_id
        self.sub_topic_id = sub_topic_id
        self.persona = persona or PersonaSettings()
        self.bank_meta = bank_meta
        self.question_context = question_context
        self.mode = DeliveryMode(mode)
        self.tick_interval = tick_interval
        self.progress_marker = progress_marker
        self.greeting = greeting
        self.on_complete = on_complete
        self.on_delta = on_delta
        self._clock = clock

        self.state = ExchangeState.IDLE
        self._messages: List[Message] = []
        self._listeners: List[Listener] = [on_update] if on_update else []
        self._batcher: Optional[DeliveryBatcher] = None
        self._task: Optional[asyncio.Task] = None
        self.last_parser: Optional[FrameParser] = None

    # --------- read side ----------
    @property
    def messages(self) -> List[Message]:
        return [m.model_copy() for m in self._messages]

    @property
    def in_flight(self) -> bool:
        return self.state is not ExchangeState.IDLE

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def open(self) -> List[Message]:
        """Load the stored conversation, creating and persisting the greeting if new."""
        conv = self.store.load(self.topic_id, self.sub_topic_id)
        if conv is not None:
            self._messages = list(conv.messages)
        elif self.greeting:
            q = self.question_context
            text = build_greeting(
                self.persona,
                is_correct=q.is_correct if q else None,
                has_analysis=bool(q and q.analysis),
            )
            self._messages = [self._message(Role.ASSISTANT, text, Status.DONE)]
            self._persist()
        else:
            self._messages = []
        self._notify()
        return self.messages

    # --------- write side ----------
    async def send(self, text: str) -> Optional[Message]:
        """Run one exchange for ``text``; returns the final assistant message.

        Returns None without side effects for blank text or while another
        exchange is in flight. Raises ConfigurationError before touching any
        state when the transport has no credential.
        """
        text = (text or "").strip()
        if not text:
            return None
        if self.in_flight:
            logger.info("send ignored: exchange already in flight for %s", self._label())
            return None
        self.transport.ensure_configured()

        self.state = ExchangeState.SENDING
        self._task = asyncio.current_task()
        try:
            return await self._exchange(text)
        finally:
            self.state = ExchangeState.IDLE
            self._task = None
            self._batcher = None

    async def retry(self) -> Optional[Message]:
        """Replay the most recent user turn, dropping it and everything after it."""
        if self.in_flight:
            logger.info("retry ignored: exchange already in flight for %s", self._label())
            return None
        self.transport.ensure_configured()
        idx = next(
            (i for i in range(len(self._messages) - 1, -1, -1) if self._messages[i].role is Role.USER),
            None,
        )
        if idx is None:
            return None
        text = self._messages[idx].text
        self._messages = self._messages[:idx]
        self._persist()
        self._notify()
        return await self.send(text)

    def clear(self, confirm: Union[bool, Callable[[], bool], None] = None) -> bool:
        """Delete the conversation after explicit confirmation."""
        ok = confirm() if callable(confirm) else bool(confirm)
        if not ok:
            return False
        if self.in_flight:
            logger.info("clear rejected: exchange in flight for %s", self._label())
            return False
        self.store.clear(self.topic_id, self.sub_topic_id)
        self._messages = []
        self._notify()
        self._complete()
        return True

    async def close(self) -> None:
        """Teardown: cancel pending flushes and the in-flight exchange."""
        if self._batcher is not None:
            self._batcher.cancel()
        task = self._task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._listeners.clear()

    # --------- exchange ----------
    async def _exchange(self, text: str) -> Message:
        history = self._provider_history()
        self._messages.append(self._message(Role.USER, text, Status.DONE))
        self._persist()

        placeholder = self._message(
            Role.ASSISTANT, PROGRESS_MARKER if self.progress_marker else "", Status.STREAMING
        )
        self._messages.append(placeholder)

        system = build_system_prompt(self.bank_meta, self.question_context, self.persona)
        provider_messages: List[Dict[str, str]] = (
            [{"role": "system", "content": system}] + history + [{"role": "user", "content": text}]
        )

        batcher = DeliveryBatcher(self._deliver, mode=self.mode, tick_interval=self.tick_interval)
        self._batcher = batcher
        parser = FrameParser()
        self.last_parser = parser
        self.state = ExchangeState.STREAMING
        try:
            self._notify()
            async with self.transport.open_stream(provider_messages) as chunks:
                async for delta in iter_deltas(chunks, parser):
                    batcher.push(delta)
            self.state = ExchangeState.FINALIZING
            batcher.flush_now()
            final = self._replace_last(sanitize(batcher.text), Status.DONE)
        except TransportError as e:
            self.state = ExchangeState.ERROR_FINALIZING
            batcher.cancel()
            logger.warning("exchange failed for %s: %s", self._label(), e)
            final = self._replace_last(f"Failed to reach the AI: {e}", Status.ERROR)
        except asyncio.CancelledError:
            self._abandon(batcher)
            raise
        except Exception:
            logger.exception("exchange aborted for %s", self._label())
            self._abandon(batcher)
            raise
        else:
            if parser.malformed_frames:
                logger.info("exchange for %s skipped %d malformed frames", self._label(), parser.malformed_frames)

        self._persist()
        self._notify()
        self._complete()
        return final

    def _abandon(self, batcher: DeliveryBatcher) -> None:
        # The placeholder was never persisted; the user message already is.
        batcher.cancel()
        if self._messages and self._messages[-1].status is Status.STREAMING:
            self._messages.pop()

    def _deliver(self, payload: str) -> None:
        last = self._messages[-1] if self._messages else None
        if last is None or last.status is not Status.STREAMING:
            return
        marker = PROGRESS_MARKER if self.progress_marker else ""
        if self.mode is DeliveryMode.SNAPSHOT:
            body = payload
        else:
            body = last.text[: len(last.text) - len(marker)] if marker else last.text
            body += payload
        last.text = body + marker
        if self.on_delta is not None:
            self.on_delta(payload)
        self._notify()

    def _provider_history(self) -> List[Dict[str, str]]:
        return [
            {"role": m.role.value, "content": sanitize(m.text)}
            for m in self._messages
            if m.status is Status.DONE
        ]

    def _replace_last(self, text: str, status: Status) -> Message:
        msg = self._message(Role.ASSISTANT, text, status)
        if self._messages and self._messages[-1].status is Status.STREAMING:
            self._messages[-1] = msg
        else:
            self._messages.append(msg)
        return msg

    # --------- helpers ----------
    def _message(self, role: Role, text: str, status: Status) -> Message:
        ts = self._clock()
        if self._messages:
            ts = max(ts, self._messages[-1].timestamp + 1)
        return Message(role=role, text=text, timestamp=ts, status=status)

    def _persist(self) -> None:
        self.store.save(
            self.topic_id,
            self.sub_topic_id,
            [m for m in self._messages if not m.is_transient],
        )

    def _notify(self) -> None:
        snapshot = self.messages
        for listener in list(self._listeners):
            listener(snapshot)

    def _complete(self) -> None:
        if self.on_complete is not None:
            self.on_complete(self.messages)

    def _label(self) -> str:
        return f"{self.topic_id}/{self.sub_topic_id}" if self.topic_id else self.sub_topic_id
