"""Data model shared by the store, the orchestrator and the HTTP surface."""
from __future__ import annotations

from enum import Enum
from typing import List

from pydantic import BaseModel, Field, field_validator


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class Status(str, Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    DONE = "done"
    ERROR = "error"


# Statuses that must never be the terminal state of a stored message.
TRANSIENT_STATUSES = frozenset({Status.PENDING, Status.STREAMING})


class Message(BaseModel):
    role: Role
    text: str = ""
    timestamp: int = 0  # ms since epoch
    status: Status = Status.DONE

    @field_validator("role", mode="before")
    @classmethod
    def _legacy_role(cls, v):
        # Older records used "model" for the assistant side.
        if v == "model":
            return Role.ASSISTANT
        return v

    @field_validator("status", mode="before")
    @classmethod
    def _missing_status(cls, v):
        return Status.DONE if v is None else v

    @property
    def is_transient(self) -> bool:
        return self.status in TRANSIENT_STATUSES


class Conversation(BaseModel):
    """Ordered message history for one (topic, sub-topic) pair."""

    topic_id: str = ""
    sub_topic_id: str
    messages: List[Message] = Field(default_factory=list)

    @property
    def is_legacy(self) -> bool:
        return not self.topic_id
