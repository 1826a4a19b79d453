"""
Configuration management for Catchr.

Uses XDG base directories:
- Config: ~/.config/catchr/config.toml
- Data: ~/catchr/ (database lives here)
"""

from pathlib import Path
from typing import Any
import copy
import os

# XDG defaults
DEFAULT_CONFIG_HOME = Path.home() / ".config"
DEFAULT_DATA_HOME = Path.home() / "catchr"


def get_config_dir() -> Path:
    """Get the config directory (XDG_CONFIG_HOME/catchr)."""
    base = Path(os.environ.get("XDG_CONFIG_HOME", DEFAULT_CONFIG_HOME))
    return base / "catchr"


def get_catchr_home() -> Path:
    """Get the catchr data directory (~/catchr or CATCHR_HOME)."""
    if env_home := os.environ.get("CATCHR_HOME"):
        return Path(env_home)
    return DEFAULT_DATA_HOME


def get_config_path() -> Path:
    """Get the path to config.toml."""
    return get_config_dir() / "config.toml"


def get_db_path() -> Path:
    """Get the path to catchr.db."""
    return get_catchr_home() / "catchr.db"


def ensure_dirs() -> None:
    """Ensure all required directories exist."""
    get_config_dir().mkdir(parents=True, exist_ok=True)
    get_catchr_home().mkdir(parents=True, exist_ok=True)


def load_config() -> dict[str, Any]:
    """
    Load configuration from config.toml.

    Sections missing from the file fall back to defaults, key by key.
    """
    config_path = get_config_path()
    defaults = get_default_config()

    if not config_path.exists():
        return defaults

    # Lazy import tomli only when needed
    import tomli

    with open(config_path, "rb") as f:
        user_config = tomli.load(f)

    return merge_config(defaults, user_config)


def merge_config(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override into a copy of base."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = value
    return merged


def get_default_config() -> dict[str, Any]:
    """Return default configuration."""
    return {
        "catchr": {
            "home": str(get_catchr_home()),
        },
        "user": {
            "id": "local",  # Owner id used by the CLI capture path
        },
        "pipeline": {
            "max_attempts": 3,
            "backoff_strategy": "exponential",  # none, fixed or exponential
            "backoff_base_seconds": 2.0,
            "poll_interval_seconds": 1.0,
            "concurrency": {
                "transcribe": 2,
                "enrich": 3,
                "calendar": 1,  # Calendar writes are order-sensitive per user
            },
        },
        "calendar": {
            "confidence_threshold": 0.7,
            "default_timezone": "America/Los_Angeles",
            "timeout_seconds": 20.0,
        },
        "llm": {
            "provider": "anthropic",  # or "openai"
            "model": "claude-haiku-4-5-20251001",
            "timeout_seconds": 30.0,
        },
        "transcription": {
            "model": "whisper-1",
            "base_url": "https://api.openai.com/v1",
            "timeout_seconds": 60.0,
        },
        "telegram": {
            "chats": {},  # owner id -> chat id for notifications
        },
    }
