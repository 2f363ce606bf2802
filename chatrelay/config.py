"""
Config loader for chatrelay.
Reads config.yaml once at startup. All other modules import from here.
String values may reference environment variables as ${ENV_VAR}; a .env file
in the working directory is loaded first so secrets never live in the YAML.

Every section the app reads is filled in from DEFAULTS, so a partial file
works, and the enumerated settings are checked at load time instead of on
the first request that needs them.
"""

import copy
import os
import re
import yaml
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

_CONFIG_PATH = Path(__file__).parent.parent / "config.yaml"

_config: dict | None = None

DEFAULTS = {
    "server": {"host": "0.0.0.0", "port": 3001},
    "cors": {"allowed_origin": "*"},
    "ollama": {
        "default_url": "http://localhost:11434",
        "timeout": 120,
        "list_timeout": 10,
        "health_timeout": 5,
        "models_cache_ttl": 300,
    },
    "storage": {"backend": "sqlite", "sqlite_path": "./data/chatrelay.db"},
    "supabase": {"url": "", "service_key": "", "timeout": 10},
    "auth": {"provider": "static", "tokens": {}},
    "sse": {"terminal_frame": "json"},
    "logging": {"level": "INFO", "file": None},
}

CHOICES = {
    ("storage", "backend"): ("sqlite", "supabase"),
    ("auth", "provider"): ("supabase", "static"),
    ("sse", "terminal_frame"): ("json", "legacy"),
}


def _resolve_env_vars(value: str) -> str:
    """Replace ${ENV_VAR} with its value; unset variables become ''."""
    return re.sub(r"\$\{(\w+)\}", lambda m: os.environ.get(m.group(1), ""), value)


def _walk_and_resolve(obj):
    if isinstance(obj, dict):
        return {k: _walk_and_resolve(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_walk_and_resolve(v) for v in obj]
    if isinstance(obj, str):
        return _resolve_env_vars(obj)
    return obj


def apply_defaults(raw: dict) -> dict:
    """Overlay a parsed file on DEFAULTS, one section at a time."""
    merged = copy.deepcopy(DEFAULTS)
    for section, values in raw.items():
        if section in merged:
            if values is None:
                continue
            if not isinstance(values, dict):
                raise ValueError(f"Config section '{section}' must be a mapping")
            merged[section].update(values)
        else:
            merged[section] = values
    return merged


def validate(cfg: dict):
    """Raise ValueError for settings the app cannot run with."""
    for (section, key), allowed in CHOICES.items():
        value = cfg[section][key]
        if value not in allowed:
            raise ValueError(f"{section}.{key} must be one of {', '.join(allowed)}; got '{value}'")

    for key in ("timeout", "list_timeout", "health_timeout"):
        value = cfg["ollama"][key]
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            raise ValueError(f"ollama.{key} must be a positive number of seconds; got {value!r}")

    if not isinstance(cfg["auth"]["tokens"] or {}, dict):
        raise ValueError("auth.tokens must map tokens to profile ids")


def load_config(path: Path | None = None) -> dict:
    """Load, fill in and check config.yaml, then cache it."""
    global _config
    if _config is not None:
        return _config

    config_path = Path(path or os.environ.get("CHATRELAY_CONFIG", _CONFIG_PATH))
    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"Config {config_path} must be a mapping of sections")

    cfg = apply_defaults(_walk_and_resolve(raw))
    validate(cfg)
    _config = cfg
    return _config


def get_config() -> dict:
    """Return cached config, loading if necessary."""
    if _config is None:
        return load_config()
    return _config


def reset_config():
    """Drop the cached config so the next get_config() re-reads the file."""
    global _config
    _config = None
