"""Disk-based conversation store keyed by (topic, sub-topic) (thread-safe, atomic)."""
from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Any, Iterable, List, Optional, Tuple

from pydantic import ValidationError

from .models import Conversation, Message, Status
from .sanitize import sanitize

logger = logging.getLogger(__name__)

INTERRUPTED_TEXT = "The answer was interrupted before it finished. Please retry."


# -----------------------------
# Helpers
# -----------------------------
def _safe_key(name: str) -> str:
    # Keep it readable but filesystem-safe.
    s = re.sub(r"[^\w.\-@]+", "_", name.strip() or "default")
    return s[:128]  # avoid absurdly long filenames


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False, dir=str(path.parent)) as tmp:
        tmp.write(text)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    os.replace(tmp_name, path)


def _read_json(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def _write_json(path: Path, obj: Any) -> None:
    _atomic_write_text(path, json.dumps(obj, ensure_ascii=False, indent=2))


# -----------------------------
# ConversationStore
# -----------------------------
Owner = Tuple[str, str]


class ConversationStore:
    """JSON-file store holding one ordered message list per conversation.

    Layout:
        data_dir/
          <prefix>_<topic>_<sub>.json   # {"topic_id", "sub_topic_id", "messages": [...]}
          <prefix>_<sub>.json           # legacy record written before topic scoping

    Ids may contain ``_``, so two conversations can map to the same file name
    (``("a", "b_c")`` and ``("a_b", "c")``; or a legacy ``sub`` spelled like a
    composite key). Each record therefore carries its owner and is ignored
    when read for anyone else. A bare list is the pre-wrapper format and is
    accepted as-is.

    ``save`` replaces the whole file atomically, so a reader never sees a
    half-written conversation.
    """

    def __init__(self, data_dir: str, *, key_prefix: str = "qb_chat") -> None:
        self.root = Path(data_dir)
        self.root.mkdir(parents=True, exist_ok=True)
        self.key_prefix = key_prefix
        self._lock = threading.RLock()

    # --------- keys ----------
    def key(self, topic_id: str, sub_topic_id: str) -> str:
        if topic_id:
            return f"{self.key_prefix}_{topic_id}_{sub_topic_id}"
        return self.legacy_key(sub_topic_id)

    def legacy_key(self, sub_topic_id: str) -> str:
        return f"{self.key_prefix}_{sub_topic_id}"

    def _path(self, key: str) -> Path:
        return self.root / f"{_safe_key(key)}.json"

    # --------- core API ----------
    def load(self, topic_id: str, sub_topic_id: str) -> Optional[Conversation]:
        """Load a conversation, falling back to the legacy key when needed.

        Messages left ``streaming``/``pending`` by a crash are normalized to
        ``error`` and never resumed.
        """
        with self._lock:
            raw = self._owned(self.key(topic_id, sub_topic_id), topic_id, sub_topic_id)
            found_topic = topic_id
            if raw is None and topic_id:
                raw = self._owned(self.legacy_key(sub_topic_id), "", sub_topic_id)
                found_topic = ""
                if raw is not None:
                    logger.info("loaded legacy conversation record for %s", sub_topic_id)
        if raw is None:
            return None
        return Conversation(
            topic_id=found_topic,
            sub_topic_id=sub_topic_id,
            messages=self._normalize(raw),
        )

    def save(self, topic_id: str, sub_topic_id: str, messages: Iterable[Message]) -> None:
        """Full-replace write of ``messages`` under the composite key."""
        rows = [
            m.model_copy(update={"text": sanitize(m.text)}).model_dump(mode="json")
            for m in messages
        ]
        record = {"topic_id": topic_id, "sub_topic_id": sub_topic_id, "messages": rows}
        with self._lock:
            _write_json(self._path(self.key(topic_id, sub_topic_id)), record)

    def clear(self, topic_id: str, sub_topic_id: str) -> bool:
        """Delete the conversation and its legacy record. True if anything was removed.

        Files owned by another conversation are left alone.
        """
        owners = [(topic_id, sub_topic_id)]
        if topic_id:
            owners.append(("", sub_topic_id))
        removed = False
        with self._lock:
            for topic, sub in owners:
                key = self.key(topic, sub)
                if self._owned(key, topic, sub) is not None:
                    self._path(key).unlink()
                    removed = True
        return removed

    def list_keys(self) -> List[str]:
        """Return all keys with a stored conversation."""
        return sorted(p.stem for p in self.root.glob("*.json") if not p.stem.endswith(".corrupt"))

    # --------- internals ----------
    def _owned(self, key: str, topic_id: str, sub_topic_id: str) -> Optional[List[Any]]:
        """Rows stored under ``key`` if they belong to (topic_id, sub_topic_id)."""
        found = self._read(key)
        if found is None:
            return None
        owner, rows = found
        if owner is not None and owner != (topic_id, sub_topic_id):
            logger.warning(
                "record %s belongs to %s/%s, not %s/%s; ignoring it",
                key, owner[0] or "-", owner[1], topic_id or "-", sub_topic_id,
            )
            return None
        return rows

    def _read(self, key: str) -> Optional[Tuple[Optional[Owner], List[Any]]]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            data = _read_json(path)
            if isinstance(data, list):
                return None, data
            if isinstance(data, dict) and isinstance(data.get("messages"), list):
                owner = (str(data.get("topic_id") or ""), str(data.get("sub_topic_id") or ""))
                return owner, data["messages"]
            raise ValueError(f"expected a conversation record, got {type(data).__name__}")
        except ValueError as e:  # json.JSONDecodeError is a ValueError
            # Corruption fallback: keep a backup and start fresh.
            bad = path.with_suffix(".corrupt.json")
            logger.warning("corrupt conversation file %s (%s), moved to %s", path, e, bad)
            os.replace(path, bad)
            return None

    def _normalize(self, raw: List[Any]) -> List[Message]:
        out: List[Message] = []
        for i, row in enumerate(raw):
            try:
                msg = Message.model_validate(row)
            except ValidationError as e:
                logger.warning("skipping unreadable message #%d: %s", i, e.errors()[:1])
                continue
            if msg.is_transient:
                logger.warning(
                    "message #%d stored with status %r; marking it interrupted", i, msg.status.value
                )
                msg = msg.model_copy(update={"status": Status.ERROR, "text": INTERRUPTED_TEXT})
            out.append(msg)
        return out
