"""Exception taxonomy for the chat pipeline."""
from __future__ import annotations


class TutorChatError(Exception):
    """Base class for every error raised by :mod:`tutor_chat`."""


class ConfigurationError(TutorChatError):
    """Raised before any network activity when the provider is not configured."""


class TransportError(TutorChatError):
    """Raised on non-2xx responses and network failures."""


class SerializationError(TransportError):
    """The outgoing payload could not be encoded as valid UTF-8 JSON."""


class FrameError(TutorChatError):
    """A single stream frame could not be decoded.

    Recovered inside the frame parser: the frame is skipped and counted.
    """
