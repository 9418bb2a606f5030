from __future__ import annotations

import json
import os
import warnings
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from .errors import ConfigError

DEFAULT_CONFIG_PATH = Path("~/.config/tabmem/config.json").expanduser()

CONFIG_ENV_OVERRIDES = {
    "api_base_url": "TABMEM_API_BASE_URL",
    "db_path": "TABMEM_DB",
    "sync_interval_s": "TABMEM_SYNC_INTERVAL_S",
    "sync_batch_size": "TABMEM_SYNC_BATCH_SIZE",
    "sync_threshold": "TABMEM_SYNC_THRESHOLD",
    "sync_timeout_s": "TABMEM_SYNC_TIMEOUT_S",
    "max_local_events": "TABMEM_MAX_LOCAL_EVENTS",
    "session_mode": "TABMEM_SESSION_MODE",
    "server_host": "TABMEM_SERVER_HOST",
    "server_port": "TABMEM_SERVER_PORT",
    "server_db_path": "TABMEM_SERVER_DB",
    "jwt_secret": "TABMEM_JWT_SECRET",
    "refresh_secret": "TABMEM_REFRESH_SECRET",
    "clustering_threshold": "TABMEM_CLUSTERING_THRESHOLD",
    "similarity_strategy": "TABMEM_SIMILARITY_STRATEGY",
    "embedding_provider": "TABMEM_EMBEDDING_PROVIDER",
    "summary_provider": "TABMEM_SUMMARY_PROVIDER",
    "provider_model": "TABMEM_PROVIDER_MODEL",
    "provider_api_key": "TABMEM_PROVIDER_API_KEY",
}

_INT_KEYS = {
    "sync_interval_s",
    "sync_batch_size",
    "sync_threshold",
    "sync_timeout_s",
    "max_local_events",
    "server_port",
    "access_token_ttl_s",
    "refresh_token_ttl_s",
    "clustering_threshold",
}
_SESSION_MODES = {"strict", "loose"}
LOCAL_OVERRIDE_KEYS = frozenset(
    {"sync_interval_s", "sync_batch_size", "sync_threshold", "sync_timeout_s", "max_local_events"}
)


def get_config_path(path: Path | None = None) -> Path:
    candidate = path or Path(os.getenv("TABMEM_CONFIG", DEFAULT_CONFIG_PATH))
    return candidate.expanduser()


def read_config_file(path: Path | None = None) -> dict[str, Any]:
    config_path = get_config_path(path)
    if not config_path.exists():
        return {}
    raw = config_path.read_text()
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError("invalid config json") from exc
    if not isinstance(data, dict):
        raise ValueError("config must be an object")
    return data


def write_config_file(data: dict[str, Any], path: Path | None = None) -> Path:
    config_path = get_config_path(path)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(json.dumps(data, ensure_ascii=False, indent=2) + "\n")
    return config_path


def get_env_overrides() -> dict[str, str]:
    overrides: dict[str, str] = {}
    for key, env_var in CONFIG_ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if value is not None:
            overrides[key] = value
    return overrides


@dataclass
class TabmemConfig:
    # client agent
    api_base_url: str = "http://127.0.0.1:8787"
    db_path: str = "~/.tabmem/agent.sqlite"
    sync_interval_s: int = 300
    sync_batch_size: int = 50
    sync_threshold: int = 10
    sync_timeout_s: int = 10
    max_local_events: int = 1000
    session_mode: str = "loose"

    # ingestion server
    server_host: str = "127.0.0.1"
    server_port: int = 8787
    server_db_path: str = "~/.tabmem/server.sqlite"
    jwt_secret: str | None = None
    refresh_secret: str | None = None
    access_token_ttl_s: int = 86400
    refresh_token_ttl_s: int = 30 * 86400

    # clustering
    clustering_threshold: int = 5
    clustering_weights: dict[str, int] = field(default_factory=dict)
    similarity_strategy: str = "token_overlap"

    # AI providers
    embedding_provider: str = "mock"
    summary_provider: str = "mock"
    provider_model: str | None = None
    provider_api_key: str | None = None


def _parse_int(value: object, default: int, *, key: str) -> int:
    if value is None:
        return default
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid int for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def _coerce_weights(value: object, *, key: str) -> dict[str, int] | None:
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            warnings.warn(f"Invalid weights for {key}: {value!r}", RuntimeWarning, stacklevel=2)
            return None
    if not isinstance(value, dict):
        warnings.warn(f"Invalid weights for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return None
    weights: dict[str, int] = {}
    for name, weight in value.items():
        if not isinstance(name, str):
            continue
        weights[name] = _parse_int(weight, 0, key=f"{key}.{name}")
    return weights


def _coerce_session_mode(value: object, default: str) -> str:
    if isinstance(value, str) and value.strip().lower() in _SESSION_MODES:
        return value.strip().lower()
    if value is not None:
        warnings.warn(f"Invalid session_mode: {value!r}", RuntimeWarning, stacklevel=2)
    return default


def load_config(path: Path | None = None) -> TabmemConfig:
    cfg = TabmemConfig()
    config_path = get_config_path(path)
    if config_path.exists():
        try:
            data = json.loads(config_path.read_text())
        except json.JSONDecodeError:
            data = {}
        if isinstance(data, dict):
            cfg = _apply_dict(cfg, data)
    cfg = _apply_env(cfg)
    return cfg


def _apply_dict(cfg: TabmemConfig, data: dict[str, Any]) -> TabmemConfig:
    for key, value in data.items():
        if not hasattr(cfg, key):
            continue
        if key in _INT_KEYS:
            setattr(cfg, key, _parse_int(value, getattr(cfg, key), key=key))
            continue
        if key == "clustering_weights":
            parsed = _coerce_weights(value, key=key)
            if parsed is not None:
                cfg.clustering_weights = parsed
            continue
        if key == "session_mode":
            cfg.session_mode = _coerce_session_mode(value, cfg.session_mode)
            continue
        setattr(cfg, key, value)
    return cfg


def _apply_env(cfg: TabmemConfig) -> TabmemConfig:
    overrides = get_env_overrides()
    for key, value in overrides.items():
        if key in _INT_KEYS:
            setattr(cfg, key, _parse_int(value, getattr(cfg, key), key=key))
        elif key == "session_mode":
            cfg.session_mode = _coerce_session_mode(value, cfg.session_mode)
        else:
            setattr(cfg, key, value)
    weights = _coerce_weights(os.getenv("TABMEM_CLUSTERING_WEIGHTS"), key="clustering_weights")
    if weights is not None:
        cfg.clustering_weights = weights
    return cfg


def apply_local_overrides(cfg: TabmemConfig, overrides: dict[str, Any]) -> TabmemConfig:
    """Layer sync settings saved in the local store over the file values.

    Only ``LOCAL_OVERRIDE_KEYS`` are honored and an env var for the same
    key still wins. Returns a new config; ``cfg`` is left untouched.
    """

    env = get_env_overrides()
    selected = {
        key: value
        for key, value in overrides.items()
        if key in LOCAL_OVERRIDE_KEYS and key not in env
    }
    return _apply_dict(replace(cfg), selected)


def require_server_secrets(cfg: TabmemConfig) -> tuple[str, str]:
    """Return the token secrets or fail before the server binds a port."""

    missing = [
        env
        for attr, env in (
            ("jwt_secret", "TABMEM_JWT_SECRET"),
            ("refresh_secret", "TABMEM_REFRESH_SECRET"),
        )
        if not str(getattr(cfg, attr) or "").strip()
    ]
    if missing:
        raise ConfigError(f"missing required secret(s): {', '.join(missing)}")
    return str(cfg.jwt_secret), str(cfg.refresh_secret)
