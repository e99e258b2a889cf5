"""Text sanitation applied before sending to the provider and before persisting.

Three things are removed:

* the in-flight progress marker shown at the end of a streaming answer,
* ASCII control characters other than newline and tab,
* UTF-16 surrogate halves that are not part of a valid pair (valid pairs are
  folded into the code point they encode).

The result always encodes cleanly as UTF-8, which is what ``json.dumps`` and
the provider need.
"""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, Iterable, List

logger = logging.getLogger(__name__)

PROGRESS_MARKER = "\u25cf"  # black circle

_CONTROL_RE = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")
_SURROGATE_PAIR_RE = re.compile("[\ud800-\udbff][\udc00-\udfff]")
_SURROGATE_RE = re.compile("[\ud800-\udfff]")
_C1_RE = re.compile(r"[\x80-\x9f]")


def _join_pair(m: "re.Match[str]") -> str:
    hi, lo = m.group(0)
    return chr(0x10000 + ((ord(hi) - 0xD800) << 10) + (ord(lo) - 0xDC00))


def _conservative(text: str) -> str:
    text = text.replace(PROGRESS_MARKER, "")
    text = _SURROGATE_RE.sub("", text)
    text = _CONTROL_RE.sub("", text)
    return _C1_RE.sub("", text)


def sanitize(text: Any) -> str:
    """Return ``text`` safe to serialize and display. Never raises.

    Idempotent: ``sanitize(sanitize(x)) == sanitize(x)``. Marker and control
    characters go first so that removing them cannot bring a high and a low
    surrogate next to each other after pairs have been folded.
    """
    if not isinstance(text, str):
        return ""
    try:
        cleaned = text.replace(PROGRESS_MARKER, "")
        cleaned = _CONTROL_RE.sub("", cleaned)
        cleaned = _SURROGATE_PAIR_RE.sub(_join_pair, cleaned)
        return _SURROGATE_RE.sub("", cleaned)
    except Exception as e:  # pragma: no cover - regex on str does not fail in practice
        logger.warning("sanitize failed, using conservative fallback: %s", e)
        try:
            return _conservative(text)
        except Exception:
            return ""


def sanitize_messages(messages: Iterable[Dict[str, Any]]) -> List[Dict[str, str]]:
    """Sanitize the ``content`` of provider-format ``{role, content}`` dicts."""
    return [
        {"role": str(m.get("role", "")), "content": sanitize(str(m.get("content") or ""))}
        for m in messages
    ]
