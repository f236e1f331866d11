"""
Tests for config loading.
"""

import pytest

from chatwire import config


@pytest.fixture(autouse=True)
def fresh_config(monkeypatch):
    monkeypatch.delenv("CHATWIRE_CONFIG", raising=False)
    config.reset_config()
    yield
    config.reset_config()


def test_missing_default_file_uses_defaults(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "_CONFIG_PATH", tmp_path / "config.yaml")
    cfg = config.load_config()
    assert cfg["backend"]["url"] == "http://localhost:8080"
    assert cfg["models"]["fallback_default"] == "qianwen"


def test_file_merges_over_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("backend:\n  url: http://chat.internal:9000\n  timeout: 30\n")
    cfg = config.load_config(path)
    assert cfg["backend"]["url"] == "http://chat.internal:9000"
    assert cfg["backend"]["timeout"] == 30
    # Untouched nested keys survive
    assert cfg["backend"]["endpoints"]["send"] == "/chat/send"
    assert cfg["chat"]["user_id"] == "web-user"


def test_fallback_models_replaced_wholesale(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("models:\n  fallback:\n    local: Local model\n  fallback_default: local\n")
    cfg = config.load_config(path)
    assert cfg["models"]["fallback"] == {"local": "Local model"}


def test_env_vars_resolved(tmp_path, monkeypatch):
    monkeypatch.setenv("CHAT_BACKEND", "http://from-env:8080")
    path = tmp_path / "config.yaml"
    path.write_text("backend:\n  url: ${CHAT_BACKEND}\n")
    assert config.load_config(path)["backend"]["url"] == "http://from-env:8080"


def test_env_var_selects_file(tmp_path, monkeypatch):
    path = tmp_path / "other.yaml"
    path.write_text("chat:\n  user_id: tester\n")
    monkeypatch.setenv("CHATWIRE_CONFIG", str(path))
    assert config.get_config()["chat"]["user_id"] == "tester"


def test_explicit_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        config.load_config(tmp_path / "missing.yaml")


def test_config_is_cached(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "_CONFIG_PATH", tmp_path / "config.yaml")
    assert config.get_config() is config.get_config()
