"""
Config loader for chatwire.
Reads config.yaml once at startup and merges it over built-in defaults.
All other modules import from here.

Lookup order for the file: explicit path, $CHATWIRE_CONFIG, then
config.yaml next to the package. ${ENV_VAR} references in any string value
are resolved (a .env file is honoured via python-dotenv).
"""

import copy
import os
import re
from pathlib import Path

import yaml
from dotenv import load_dotenv

load_dotenv()

_CONFIG_PATH = Path(__file__).parent.parent / "config.yaml"

DEFAULTS: dict = {
    "backend": {
        "url": "http://localhost:8080",
        "timeout": 120,
        "endpoints": {
            "models": "/chat/models",
            "send": "/chat/send",
            "clear": "/chat/history",
        },
    },
    "chat": {
        "user_id": "web-user",
        "title_length": 50,
    },
    "models": {
        "fallback": {
            "qianwen": "Alibaba Qianwen",
            "xinghuo": "iFlytek Spark",
            "doubao": "Doubao",
            "deepseek": "DeepSeek",
        },
        "fallback_default": "qianwen",
    },
    "wiretap": {
        "enabled": False,
        "path": "./data/wire.jsonl",
    },
    "logging": {
        "level": "WARNING",
        "file": None,
    },
}

_config: dict | None = None


def _resolve_env_vars(value: str) -> str:
    """Replace ${ENV_VAR} patterns with actual environment variable values."""
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
    return re.sub(r"\$\{(\w+)\}", replacer, value)


def _walk_and_resolve(obj):
    """Recursively resolve env vars in all string values."""
    if isinstance(obj, dict):
        return {k: _walk_and_resolve(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_walk_and_resolve(v) for v in obj]
    elif isinstance(obj, str):
        return _resolve_env_vars(obj)
    return obj


def _merge(base: dict, override: dict) -> dict:
    """Deep-merge override into a copy of base. Mappings merge, everything else replaces."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            # The fallback model set is replaced wholesale, not merged
            if key == "fallback":
                merged[key] = dict(value)
            else:
                merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(path: Path | str | None = None) -> dict:
    """Load and cache config. An explicitly named file must exist."""
    global _config
    if _config is not None and path is None:
        return _config

    explicit = path or os.environ.get("CHATWIRE_CONFIG")
    config_path = Path(explicit) if explicit else _CONFIG_PATH

    raw: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
    elif explicit:
        raise FileNotFoundError(f"Config not found: {config_path}")

    _config = _walk_and_resolve(_merge(DEFAULTS, raw))
    return _config


def get_config() -> dict:
    """Return cached config, loading if necessary."""
    if _config is None:
        return load_config()
    return _config


def reset_config() -> None:
    """Drop the cached config so the next get_config() reloads it."""
    global _config
    _config = None
