"""Configuration loading for the tutor chat pipeline.

Layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable TUTOR_CHAT_CONFIG
3. Fallback to "config/default.yaml"

Values can be overridden from environment variables with prefix
``TUTOR_CHAT__`` (e.g., TUTOR_CHAT__PROVIDER__API_KEY=sk-...).

The typed settings below are what the pipeline actually consumes; they are
built once by whoever composes the pipeline and passed in explicitly.
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER_URL = "https://api.deepseek.com/chat/completions"
DEFAULT_MODEL = "deepseek-chat"

DEFAULTS: Dict[str, Any] = {
    "provider": {
        "url": DEFAULT_PROVIDER_URL,
        "model": DEFAULT_MODEL,
        "api_key": None,
        "temperature": 1.0,
        "connect_timeout": 10.0,
        "read_timeout": 120.0,
        "mock": False,
    },
    "persona": {"role_name": "", "custom_prompt": "", "language": "English"},
    "chat": {
        "mode": "delta",
        "tick_interval": 0.016,
        "progress_marker": True,
        "greeting": True,
    },
    "memory": {"data_dir": "data/conversations", "key_prefix": "qb_chat"},
    "server": {"cors_origins": ["*"], "max_sessions": 256},
}


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides with prefix TUTOR_CHAT__."""
    prefix = "TUTOR_CHAT__"
    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue
        # e.g., TUTOR_CHAT__PROVIDER__API_KEY -> cfg["provider"]["api_key"]
        parts = key[len(prefix):].lower().split("__")
        sub = cfg
        for p in parts[:-1]:
            if p not in sub or not isinstance(sub[p], dict):
                sub[p] = {}
            sub = sub[p]
        leaf = parts[-1]
        # Attempt to parse simple types (bool, int, float)
        if value.lower() in {"true", "false"}:
            sub[leaf] = value.lower() == "true"
        else:
            try:
                if "." in value:
                    sub[leaf] = float(value)
                else:
                    sub[leaf] = int(value)
            except ValueError:
                sub[leaf] = value
    return cfg


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge(out[k], v)
        else:
            out[k] = v
    return out


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Load YAML configuration merged over :data:`DEFAULTS`.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``TUTOR_CHAT_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Parsed configuration dictionary with environment overrides applied.
    """
    if path is None:
        path = os.environ.get("TUTOR_CHAT_CONFIG", "config/default.yaml")

    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("config file not found at %s, using defaults", path_obj)
        return _apply_env_overrides(copy.deepcopy(DEFAULTS))

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            cfg = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RuntimeError(f"Failed to parse config file {path_obj}: {e}")

    if not isinstance(cfg, dict):
        raise RuntimeError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(_merge(DEFAULTS, cfg))


def _section(cfg: Optional[Dict[str, Any]], name: str) -> Dict[str, Any]:
    sec = (cfg or {}).get(name) if isinstance(cfg, dict) else None
    return sec if isinstance(sec, dict) else {}


def _optional_float(v: Any) -> Optional[float]:
    return None if v is None else float(v)


@dataclass(frozen=True)
class ProviderSettings:
    url: str = DEFAULT_PROVIDER_URL
    model: str = DEFAULT_MODEL
    api_key: Optional[str] = None
    temperature: float = 1.0
    connect_timeout: Optional[float] = 10.0
    read_timeout: Optional[float] = 120.0  # None waits forever
    mock: bool = False

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "ProviderSettings":
        p = _section(cfg, "provider")
        key = p.get("api_key")
        return cls(
            url=str(p.get("url") or DEFAULT_PROVIDER_URL),
            model=str(p.get("model") or DEFAULT_MODEL),
            # env overrides may have coerced a numeric-looking key to int
            api_key=str(key) if key not in (None, "") else None,
            temperature=float(p.get("temperature", 1.0)),
            connect_timeout=_optional_float(p.get("connect_timeout", 10.0)),
            read_timeout=_optional_float(p.get("read_timeout", 120.0)),
            mock=bool(p.get("mock", False)),
        )


@dataclass(frozen=True)
class PersonaSettings:
    """Operator-configurable persona for the tutor."""

    role_name: str = ""
    custom_prompt: str = ""
    language: str = "English"

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "PersonaSettings":
        p = _section(cfg, "persona")
        return cls(
            role_name=str(p.get("role_name") or ""),
            custom_prompt=str(p.get("custom_prompt") or ""),
            language=str(p.get("language") or "English"),
        )


@dataclass(frozen=True)
class ChatSettings:
    mode: str = "delta"
    tick_interval: float = 0.016
    progress_marker: bool = True
    greeting: bool = True

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "ChatSettings":
        c = _section(cfg, "chat")
        mode = str(c.get("mode") or "delta").lower()
        if mode not in {"delta", "snapshot"}:
            raise RuntimeError(f"Invalid chat.mode {mode!r}, expected 'delta' or 'snapshot'.")
        return cls(
            mode=mode,
            tick_interval=float(c.get("tick_interval", 0.016)),
            progress_marker=bool(c.get("progress_marker", True)),
            greeting=bool(c.get("greeting", True)),
        )
