"""FastAPI application exposing the chat pipeline (send / retry / clear)."""
from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from .config import ChatSettings, PersonaSettings, ProviderSettings, load_config
from .context import BankMeta, QuestionContext
from .delivery import DeliveryMode
from .errors import ConfigurationError
from .memory import ConversationStore
from .models import Message, Status
from .pipeline import ChatSession
from .transport import create_transport

logger = logging.getLogger(__name__)


# -----------------------------
# Pydantic request/response
# -----------------------------
class BankMetaIn(BaseModel):
    title: str
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


class OptionIn(BaseModel):
    key: str
    text: str


class QuestionIn(BaseModel):
    question_id: str
    stem: str
    options: List[OptionIn] = Field(default_factory=list)
    user_answer: Any = None
    correct_answer: Any = None
    is_correct: Optional[bool] = None
    analysis: Optional[str] = None


class ConversationRef(BaseModel):
    topic_id: str = Field(default="", description="Bank id; empty for legacy records.")
    sub_topic_id: str = Field(..., min_length=1, description="Question id.")
    bank_meta: Optional[BankMetaIn] = None
    question: Optional[QuestionIn] = None
    stream: bool = Field(default=False)


class ChatRequest(ConversationRef):
    message: str = Field(..., min_length=1)


class ChatResponse(BaseModel):
    reply: Optional[Message] = None
    messages: List[Message]


# -----------------------------
# Utilities
# -----------------------------
def _bank_meta(m: Optional[BankMetaIn]) -> Optional[BankMeta]:
    if m is None:
        return None
    return BankMeta(title=m.title, description=m.description, tags=list(m.tags))


def _question(q: Optional[QuestionIn]) -> Optional[QuestionContext]:
    if q is None:
        return None
    return QuestionContext(
        question_id=q.question_id,
        stem=q.stem,
        options=[o.model_dump() for o in q.options],
        user_answer=q.user_answer,
        correct_answer=q.correct_answer,
        is_correct=q.is_correct,
        analysis=q.analysis,
    )


def _make_store(cfg: Dict[str, Any]) -> ConversationStore:
    mem_cfg = cfg.get("memory", {})
    return ConversationStore(
        mem_cfg.get("data_dir") or "data/conversations",
        key_prefix=mem_cfg.get("key_prefix") or "qb_chat",
    )


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    store: Optional[ConversationStore] = None,
    transport: Any = None,
) -> FastAPI:
    cfg = load_config(config_path)

    # CORS
    cors_origins = cfg.get("server", {}).get("cors_origins", ["*"])

    # Services
    store = store or _make_store(cfg)
    transport = transport or create_transport(ProviderSettings.from_config(cfg))
    persona = PersonaSettings.from_config(cfg)
    chat_cfg = ChatSettings.from_config(cfg)
    max_sessions = max(1, int(cfg.get("server", {}).get("max_sessions") or 256))
    # LRU order: most recently used last.
    sessions: "OrderedDict[Tuple[str, str], ChatSession]" = OrderedDict()

    app = FastAPI(title="Tutor Chat Server", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def get_session(ref: ConversationRef) -> ChatSession:
        key = (ref.topic_id, ref.sub_topic_id)
        session = sessions.get(key)
        if session is None:
            session = ChatSession(
                store,
                transport,
                ref.topic_id,
                ref.sub_topic_id,
                persona=persona,
                bank_meta=_bank_meta(ref.bank_meta),
                question_context=_question(ref.question),
                mode=chat_cfg.mode,
                tick_interval=chat_cfg.tick_interval,
                progress_marker=chat_cfg.progress_marker,
                greeting=chat_cfg.greeting,
            )
            session.open()
            sessions[key] = session
            logger.info("opened conversation %s/%s", ref.topic_id or "-", ref.sub_topic_id)
            evict_idle(keep=key)
            return session
        sessions.move_to_end(key)
        # Context is rebuilt every exchange, so fresh request data wins.
        if ref.bank_meta is not None:
            session.bank_meta = _bank_meta(ref.bank_meta)
        if ref.question is not None:
            session.question_context = _question(ref.question)
        return session

    def evict_idle(keep: Tuple[str, str]) -> None:
        for key in list(sessions):
            if len(sessions) <= max_sessions:
                break
            if key == keep or sessions[key].in_flight:
                continue
            del sessions[key]
            logger.info("evicted idle conversation %s/%s", key[0] or "-", key[1])

    def check_ready(session: ChatSession) -> None:
        if session.in_flight:
            raise HTTPException(status_code=409, detail="An answer is already being generated.")
        try:
            transport.ensure_configured()
        except ConfigurationError as e:
            raise HTTPException(status_code=503, detail=str(e))

    def respond(session: ChatSession, run, stream: bool):
        if not stream:
            return None
        queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
        sent = {"n": 0}

        def on_delta(payload: str) -> None:
            if session.mode is DeliveryMode.SNAPSHOT:
                payload, sent["n"] = payload[sent["n"]:], len(payload)
            queue.put_nowait(payload)

        async def body() -> AsyncIterator[str]:
            session.on_delta = on_delta
            task = asyncio.create_task(run())
            task.add_done_callback(lambda _: queue.put_nowait(None))
            try:
                while True:
                    item = await queue.get()
                    if item is None:
                        break
                    yield item
                final = task.result()
                if final is not None and final.status is Status.ERROR:
                    yield final.text
            finally:
                session.on_delta = None
                if not task.done():
                    task.cancel()

        return StreamingResponse(body(), media_type="text/plain")

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "memory_dir": str(store.root),
            "active_sessions": len(sessions),
            "config_keys": list(cfg.keys()),
        }

    @app.get("/conversations/{sub_topic_id}", response_model=List[Message])
    def get_conversation(sub_topic_id: str, topic_id: str = Query(default="")):
        conv = store.load(topic_id, sub_topic_id)
        return conv.messages if conv is not None else []

    @app.delete("/conversations/{sub_topic_id}")
    def delete_conversation(
        sub_topic_id: str,
        topic_id: str = Query(default=""),
        confirm: bool = Query(default=False),
    ) -> Dict[str, Any]:
        if not confirm:
            raise HTTPException(status_code=400, detail="Pass confirm=true to clear the conversation.")
        session = sessions.get((topic_id, sub_topic_id))
        if session is not None:
            if not session.clear(confirm=True):
                raise HTTPException(status_code=409, detail="An answer is still being generated.")
            return {"cleared": True}
        return {"cleared": store.clear(topic_id, sub_topic_id)}

    @app.post("/chat", response_model=ChatResponse)
    async def chat(req: ChatRequest):
        msg = (req.message or "").strip()
        if not msg:
            raise HTTPException(status_code=400, detail="Message cannot be empty.")
        session = get_session(req)
        check_ready(session)

        streaming = respond(session, lambda: session.send(msg), req.stream)
        if streaming is not None:
            return streaming
        reply = await session.send(msg)
        return ChatResponse(reply=reply, messages=session.messages)

    @app.post("/chat/retry", response_model=ChatResponse)
    async def retry(req: ConversationRef):
        session = get_session(req)
        check_ready(session)

        streaming = respond(session, session.retry, req.stream)
        if streaming is not None:
            return streaming
        reply = await session.retry()
        return ChatResponse(reply=reply, messages=session.messages)

    return app
