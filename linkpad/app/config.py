from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Optional

GLOBAL_CONFIG = Path.home() / ".linkpad_config.json"

DEFAULT_DEBOUNCE_MS = 2000
DEFAULT_PACING_MS = 300
DEFAULT_PROBE_TIMEOUT = 10.0
DEFAULT_SESSION_HOURS = 12
DEFAULT_STORE_PATH = Path.home() / ".linkpad" / "notes.db"
DEFAULT_GITHUB_API = "https://api.github.com"
STORE_BACKENDS = ("local", "gist")


def init_settings() -> None:
    GLOBAL_CONFIG.parent.mkdir(parents=True, exist_ok=True)


def _read_global_config() -> dict:
    """Return the parsed global config, or an empty dict on error/missing."""
    if not GLOBAL_CONFIG.exists():
        return {}
    try:
        payload = json.loads(GLOBAL_CONFIG.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError):
        return {}
    return payload if isinstance(payload, dict) else {}


def _update_global_config(updates: dict) -> None:
    """Merge updates into global config file."""
    existing = _read_global_config()
    existing.update(updates)
    GLOBAL_CONFIG.write_text(json.dumps(existing, indent=2), encoding="utf-8")


def _setting(key: str, env_var: str) -> Optional[object]:
    """Environment first, then the global config file."""
    raw = os.getenv(env_var)
    if raw not in (None, ""):
        return raw
    return _read_global_config().get(key)


def _load_number(key: str, env_var: str, default: float, minimum: float = 0) -> float:
    value = _setting(key, env_var)
    if value is None:
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if number >= minimum else default


def _load_flag(key: str, env_var: str, default: bool = False) -> bool:
    value = _setting(key, env_var)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def load_debounce_seconds() -> float:
    """Quiet period after the last edit before new links are probed (default 2s)."""
    return _load_number("debounce_ms", "LINKPAD_DEBOUNCE_MS", DEFAULT_DEBOUNCE_MS) / 1000.0


def load_pacing_seconds() -> float:
    """Delay between probes during "check all" (default 300ms)."""
    return _load_number("check_all_pacing_ms", "LINKPAD_PACING_MS", DEFAULT_PACING_MS) / 1000.0


def load_probe_timeout() -> float:
    return _load_number("probe_timeout", "LINKPAD_PROBE_TIMEOUT", DEFAULT_PROBE_TIMEOUT, minimum=0.1)


def load_client_errors_reachable() -> bool:
    """Whether a 4xx answer counts as reachable (the server did respond)."""
    return _load_flag("client_errors_reachable", "LINKPAD_CLIENT_ERRORS_REACHABLE")


def load_store_backend() -> str:
    value = str(_setting("store_backend", "LINKPAD_STORE") or "local").strip().lower()
    return value if value in STORE_BACKENDS else "local"


def save_store_backend(backend: str) -> None:
    if backend not in STORE_BACKENDS:
        raise ValueError(f"Unknown store backend: {backend}")
    _update_global_config({"store_backend": backend})


def load_local_store_path() -> Path:
    value = _setting("local_store_path", "LINKPAD_DB")
    if isinstance(value, str) and value.strip():
        return Path(value).expanduser()
    return DEFAULT_STORE_PATH


def load_github_api() -> str:
    value = _setting("github_api", "LINKPAD_GITHUB_API")
    if isinstance(value, str) and value.strip():
        return value.strip().rstrip("/")
    return DEFAULT_GITHUB_API


def load_session_hours() -> float:
    return _load_number("session_hours", "LINKPAD_SESSION_HOURS", DEFAULT_SESSION_HOURS, minimum=0.1)
