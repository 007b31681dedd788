"""Load notifier settings from config/settings.yaml over built-in defaults."""

import logging
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

_DEFAULTS: dict[str, Any] = {
    "broker": {
        "backend": "sqlite",  # sqlite | memory
        "db_path": "data/broker.db",
        "partitions": 4,
        "busy_timeout": 5000,
    },
    "topics": {
        # Topic names and group id are per-environment, not constants
        "events": "patient",
    },
    "consumer": {
        "group_id": "notification-service-group",
        "poll_timeout": 1.0,
        "idempotency_capacity": 10000,
        "shutdown_grace": 10.0,
        "handler_timeout": None,
    },
    "retry": {
        "max_attempts": 5,
        "base_delay": 0.5,
        "max_delay": 30.0,
        "jitter_ratio": 0.1,
    },
    "reconnect": {
        "base_delay": 0.5,
        "max_delay": 10.0,
    },
    "dead_letter": {
        "backend": "sqlite",  # sqlite | memory
        "db_path": "data/dead_letter.db",
    },
    "publisher": {
        "source": "",
        "schema_version": 2,
    },
    "logging": {
        "file": "logs/notifier.log",
        "level": "INFO",
        "log_to_console": True,
        "max_bytes": 10485760,  # 10 MB
        "backup_count": 3,
    },
}

# Values a YAML typo would otherwise carry into broker/dispatcher construction
_TYPED: dict[str, type] = {
    "broker.partitions": int,
    "broker.busy_timeout": int,
    "consumer.poll_timeout": float,
    "consumer.idempotency_capacity": int,
    "consumer.shutdown_grace": float,
    "retry.max_attempts": int,
    "retry.base_delay": float,
    "retry.max_delay": float,
    "retry.jitter_ratio": float,
    "reconnect.base_delay": float,
    "reconnect.max_delay": float,
    "publisher.schema_version": int,
}

_cached: dict[str, Any] | None = None


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Merge overlay into base recursively. Mutates base."""
    for key, value in overlay.items():
        if value is None:
            continue
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _deep_copy_nested(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {k: _deep_copy_nested(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_deep_copy_nested(x) for x in obj]
    return obj


def get_default_settings() -> dict[str, Any]:
    return _deep_copy_nested(_DEFAULTS)


def get_setting(settings: dict[str, Any], path: str, default: Any = None) -> Any:
    """Get a nested value by dot path (e.g. 'consumer.group_id')."""
    current: Any = settings
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def _check_types(settings: dict[str, Any]) -> None:
    """Coerce numeric settings in place; a value that won't convert reverts to its default."""
    for path, kind in _TYPED.items():
        section, key = path.split(".")
        if not isinstance(settings.get(section), dict):
            logger.warning("Setting section %s is not a mapping, using defaults", section)
            settings[section] = _deep_copy_nested(_DEFAULTS[section])
        value = settings[section].get(key)
        if isinstance(value, kind) and not isinstance(value, bool):
            continue
        try:
            if isinstance(value, bool):
                raise TypeError("boolean")
            settings[section][key] = kind(value)
        except (TypeError, ValueError):
            default = _DEFAULTS[section][key]
            logger.warning("Setting %s=%r is not %s, using %r", path, value, kind.__name__, default)
            settings[section][key] = default


def reload_settings() -> None:
    """Clear the settings cache."""
    global _cached
    _cached = None


def load_settings(config_dir: Path | None = None) -> dict[str, Any]:
    """Return defaults merged with config/settings.yaml. Cached after the first call."""
    global _cached
    if _cached is not None:
        return _cached

    if config_dir is None:
        config_dir = Path(__file__).resolve().parent.parent / "config"
    path = config_dir / "settings.yaml"

    result = get_default_settings()
    if path.exists():
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                _deep_merge(result, data)
        except (yaml.YAMLError, OSError) as e:
            logger.warning("Ignoring unreadable settings file %s: %s", path, e)

    _check_types(result)
    _cached = result
    return result
