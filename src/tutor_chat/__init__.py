"""Streaming tutor chat pipeline with per-question conversation memory.

The core pieces can be composed directly:

from tutor_chat import ChatSession, ConversationStore, ChatCompletionsTransport
session = ChatSession(store, transport, "bank-1", "q1")

or served over HTTP through the FastAPI application factory ``create_app``
(see :func:`create_app`), typically via the provided launcher:

python scripts/run_server.py --host 127.0.0.1 --port 8000
"""

from __future__ import annotations

from .config import ChatSettings, PersonaSettings, ProviderSettings, load_config
from .context import (
    BankMeta,
    QuestionContext,
    build_greeting,
    build_system_prompt,
    question_context_from_question,
)
from .delivery import DeliveryBatcher, DeliveryMode
from .errors import (
    ConfigurationError,
    FrameError,
    SerializationError,
    TransportError,
    TutorChatError,
)
from .framing import FrameParser, iter_deltas
from .memory import ConversationStore
from .models import Conversation, Message, Role, Status
from .pipeline import ChatSession, ExchangeState
from .sanitize import sanitize
from .transport import ChatCompletionsTransport, MockTransport, create_transport

__all__ = [
    "create_app",
    "__version__",
    "get_version",
    "BankMeta",
    "ChatCompletionsTransport",
    "ChatSession",
    "ChatSettings",
    "ConfigurationError",
    "Conversation",
    "ConversationStore",
    "DeliveryBatcher",
    "DeliveryMode",
    "ExchangeState",
    "FrameError",
    "FrameParser",
    "Message",
    "MockTransport",
    "PersonaSettings",
    "ProviderSettings",
    "QuestionContext",
    "Role",
    "SerializationError",
    "Status",
    "TransportError",
    "TutorChatError",
    "build_greeting",
    "build_system_prompt",
    "create_transport",
    "iter_deltas",
    "load_config",
    "question_context_from_question",
    "sanitize",
]

# ---------------------------------------------------------------------
# Version handling
# ---------------------------------------------------------------------
__version__ = "0.1.0"

def get_version() -> str:
    """Return the package version."""
    return __version__


def create_app(*args, **kwargs):
    """Return a configured FastAPI application.

    Forwards to :func:`tutor_chat.server.create_app`; imported lazily so the
    pipeline can be used without pulling in FastAPI.
    """
    from .server import create_app as _create_app

    return _create_app(*args, **kwargs)
