from __future__ import annotations

from pathlib import Path

import pytest

from tutor_chat.config import ChatSettings, PersonaSettings, ProviderSettings, load_config


def test_missing_file_falls_back_to_defaults(tmp_path: Path, clean_env):
    cfg = load_config(str(tmp_path / "nope.yaml"))
    assert cfg["provider"]["model"] == "deepseek-chat"
    assert ProviderSettings.from_config(cfg).api_key is None


def test_yaml_merges_over_defaults(tmp_path: Path, clean_env):
    p = tmp_path / "c.yaml"
    p.write_text("persona:\n  role_name: Coach\nchat:\n  mode: snapshot\n", encoding="utf-8")
    cfg = load_config(str(p))
    assert PersonaSettings.from_config(cfg).role_name == "Coach"
    assert PersonaSettings.from_config(cfg).language == "English"
    assert ChatSettings.from_config(cfg).mode == "snapshot"
    assert cfg["memory"]["key_prefix"] == "qb_chat"


def test_env_overrides(tmp_path: Path, clean_env, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("TUTOR_CHAT__PROVIDER__API_KEY", "12345")
    monkeypatch.setenv("TUTOR_CHAT__PROVIDER__READ_TIMEOUT", "5.5")
    cfg = load_config(str(tmp_path / "nope.yaml"))
    settings = ProviderSettings.from_config(cfg)
    assert settings.api_key == "12345"
    assert settings.read_timeout == 5.5


def test_invalid_yaml_raises(tmp_path: Path, clean_env):
    p = tmp_path / "bad.yaml"
    p.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(RuntimeError):
        load_config(str(p))


def test_invalid_mode_rejected():
    with pytest.raises(RuntimeError):
        ChatSettings.from_config({"chat": {"mode": "words"}})


def test_shipped_default_config_loads(project_root: Path, clean_env):
    cfg = load_config(str(project_root / "config" / "default.yaml"))
    assert ChatSettings.from_config(cfg).mode == "delta"
    assert ProviderSettings.from_config(cfg).mock is False
